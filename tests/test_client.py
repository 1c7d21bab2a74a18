import asyncio
import gc
import json
import sys
from pathlib import Path

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authbridge import ApiClient, ApiError, ClientSettings, FailureKind, JsonFileSessionStore, MemorySessionStore
from authbridge.core.errors import ClientClosedError, SessionStoreError
from authbridge.services.session_store import ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, SessionStore
from fake_backend import FakeBackend


def make_client(backend: FakeBackend, store: SessionStore | None = None, **overrides) -> ApiClient:
    settings = ClientSettings(API_URL="http://testserver/api", **overrides)
    return ApiClient(
        settings,
        store=store if store is not None else MemorySessionStore(),
        transport=httpx.ASGITransport(app=backend.app),
    )


@pytest.fixture()
def backend():
    return FakeBackend()


def test_stored_access_token_is_sent_as_bearer(backend):
    token = backend.issue("access")

    async def scenario():
        async with make_client(backend) as client:
            client.session.set_tokens(token)
            return await client.get("/users/me")

    result = asyncio.run(scenario())
    assert result == {"success": True, "data": {"_id": "u1", "name": "Ada"}, "message": "Current user"}
    assert backend.bearer_for("/api/users/me") == [f"Bearer {token}"]


def test_request_without_token_goes_out_unauthenticated(backend):
    async def scenario():
        async with make_client(backend) as client:
            with pytest.raises(ApiError) as excinfo:
                await client.get("/always-401")
            return excinfo.value

    error = asyncio.run(scenario())
    assert backend.bearer_for("/api/always-401") == [None]
    # No refresh token stored, so the session is torn down.
    assert error.kind is FailureKind.REFRESH_FAILURE


def test_expired_token_is_refreshed_and_request_replayed(backend):
    stale = backend.issue("access")
    refresh = backend.issue("refresh")
    backend.expired.add(stale)

    async def scenario():
        async with make_client(backend) as client:
            client.session.set_tokens(stale, refresh)
            result = await client.get("/users/me")
            return result, client.session.access_token

    result, stored = asyncio.run(scenario())

    assert result["data"] == {"_id": "u1", "name": "Ada"}
    assert stored != stale
    assert backend.refresh_calls == [{"refreshToken": refresh}]
    assert backend.bearer_for("/api/users/me") == [f"Bearer {stale}", f"Bearer {stored}"]
    # The refresh call itself never carries the access token.
    assert backend.bearer_for("/api/login/refresh-token") == [None]


def test_replay_is_never_retried_twice(backend):
    events = []

    async def scenario():
        async with make_client(backend) as client:
            client.session.set_tokens(backend.issue("access"), backend.issue("refresh"))
            client.events.subscribe(events.append)
            with pytest.raises(ApiError) as excinfo:
                await client.get("/always-401")
            return excinfo.value, client.session.access_token

    error, stored = asyncio.run(scenario())

    assert len(backend.refresh_calls) == 1
    assert len(backend.bearer_for("/api/always-401")) == 2
    assert error.kind is FailureKind.EXPIRED_CREDENTIAL
    assert error.to_dict() == {"statusCode": 401, "message": "Still unauthorized", "errors": [], "success": False}
    assert events == []
    assert stored is not None


@pytest.mark.parametrize("path", ["/login", "/login/refresh-token"])
def test_login_and_refresh_calls_never_trigger_recovery(backend, path):
    async def scenario():
        async with make_client(backend) as client:
            client.session.set_tokens(backend.issue("access"), backend.issue("refresh"))
            with pytest.raises(ApiError) as excinfo:
                await client.post(path, json={"password": "wrong", "refreshToken": "garbage"})
            return excinfo.value

    backend.refresh_mode = "fail"
    error = asyncio.run(scenario())

    assert error.status_code == 401
    assert error.kind is FailureKind.APPLICATION
    # Only the direct call to the refresh endpoint, never one issued by recovery.
    assert len(backend.refresh_calls) == (1 if path.endswith("refresh-token") else 0)


def test_invalid_access_token_clears_session_without_refresh(backend):
    revoked = backend.issue("access")
    backend.revoked.add(revoked)
    events = []

    async def scenario():
        store = MemorySessionStore({"userType": "user", "cachedUserData": "{}"})
        async with make_client(backend, store=store) as client:
            client.session.set_tokens(revoked, backend.issue("refresh"))
            client.events.subscribe(events.append)
            with pytest.raises(ApiError) as excinfo:
                await client.get("/users/me")
            return excinfo.value, store.keys()

    error, remaining = asyncio.run(scenario())

    assert error.kind is FailureKind.INVALID_CREDENTIAL
    assert error.to_dict() == {"statusCode": 404, "message": "Invalid Access Token", "errors": [], "success": False}
    assert backend.refresh_calls == []
    assert remaining == []
    assert len(events) == 1
    assert events[0].redirect_to == "/auth/login"
    assert events[0].reason is FailureKind.INVALID_CREDENTIAL


def test_missing_refresh_token_terminates_with_original_error(backend):
    stale = backend.issue("access")
    backend.expired.add(stale)
    events = []

    async def scenario():
        async with make_client(backend) as client:
            client.session.set_tokens(stale)

            @client.events.subscribe
            async def on_invalidated(event):
                events.append(event)

            with pytest.raises(ApiError) as excinfo:
                await client.get("/users/me")
            return excinfo.value, client.is_authenticated

    error, authenticated = asyncio.run(scenario())

    assert error.to_dict() == {"statusCode": 401, "message": "jwt expired", "errors": [], "success": False}
    assert error.kind is FailureKind.REFRESH_FAILURE
    assert backend.refresh_calls == []
    assert authenticated is False
    assert [event.status_code for event in events] == [401]


@pytest.mark.parametrize("mode", ["fail", "no_token", "not_success"])
def test_failed_refresh_terminates_session(backend, mode):
    stale = backend.issue("access")
    backend.expired.add(stale)
    backend.refresh_mode = mode
    events = []

    async def scenario():
        store = MemorySessionStore()
        async with make_client(backend, store=store) as client:
            client.session.set_tokens(stale, backend.issue("refresh"))
            client.events.subscribe(events.append)
            with pytest.raises(ApiError) as excinfo:
                await client.get("/users/me")
            return excinfo.value, store.keys()

    error, remaining = asyncio.run(scenario())

    assert error.kind is FailureKind.REFRESH_FAILURE
    assert error.status_code == 401
    assert error.message == "jwt expired"
    assert remaining == []
    assert len(backend.refresh_calls) == 1
    assert len(backend.bearer_for("/api/users/me")) == 1
    assert len(events) == 1


def test_network_timeout_maps_to_generic_error():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        raise httpx.ReadTimeout("timed out", request=request)

    async def scenario():
        settings = ClientSettings(API_URL="http://testserver/api")
        store = MemorySessionStore({ACCESS_TOKEN_KEY: "a", REFRESH_TOKEN_KEY: "r"})
        async with ApiClient(settings, store=store, transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ApiError) as excinfo:
                await client.get("/users/me")
            return excinfo.value, store.keys()

    error, remaining = asyncio.run(scenario())

    assert error.to_dict() == {"statusCode": 500, "message": "Network error occurred", "errors": [], "success": False}
    assert error.kind is FailureKind.TRANSPORT
    assert calls == ["/api/users/me"]
    assert remaining == [ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY]


def test_refresh_transport_failure_terminates_session():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/refresh-token"):
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(401, json={"statusCode": 401, "message": "jwt expired"})

    async def scenario():
        settings = ClientSettings(API_URL="http://testserver/api")
        store = MemorySessionStore({ACCESS_TOKEN_KEY: "a", REFRESH_TOKEN_KEY: "r"})
        async with ApiClient(settings, store=store, transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ApiError) as excinfo:
                await client.get("/users/me")
            return excinfo.value, store.keys()

    error, remaining = asyncio.run(scenario())
    assert error.kind is FailureKind.REFRESH_FAILURE
    assert error.status_code == 401
    assert remaining == []


def test_application_errors_are_normalized(backend):
    async def scenario():
        async with make_client(backend) as client:
            client.session.set_tokens(backend.issue("access"))
            with pytest.raises(ApiError) as validation:
                await client.post("/jobs", json={"title": ""})
            with pytest.raises(ApiError) as unavailable:
                await client.get("/broken")
            return validation.value, unavailable.value

    validation, unavailable = asyncio.run(scenario())

    assert validation.to_dict() == {
        "statusCode": 400,
        "message": "Validation failed",
        "errors": ["title is required"],
        "success": False,
    }
    assert unavailable.to_dict() == {"statusCode": 503, "message": "Something went wrong", "errors": [], "success": False}
    assert backend.refresh_calls == []


def test_empty_success_body_returns_none(backend):
    async def scenario():
        async with make_client(backend) as client:
            return await client.get("/plain")

    assert asyncio.run(scenario()) is None


def test_replay_keeps_request_id(backend):
    stale = backend.issue("access")
    backend.expired.add(stale)

    async def scenario():
        async with make_client(backend) as client:
            client.session.set_tokens(stale, backend.issue("refresh"))
            await client.get("/users/me")

    asyncio.run(scenario())
    ids = [entry["request_id"] for entry in backend.seen if entry["path"] == "/api/users/me"]
    assert len(ids) == 2
    assert ids[0] and ids[0] == ids[1]


def _concurrent_handler(state):
    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/refresh-token"):
            state["refresh_calls"] += 1
            number = state["refresh_calls"]
            await asyncio.wait_for(state["both_failed"].wait(), timeout=2)
            await asyncio.sleep(0.05)
            return httpx.Response(200, json={"success": True, "data": {"accessToken": f"T{number}"}})
        auth = request.headers.get("authorization")
        if auth == "Bearer stale":
            state["unauthorized"] += 1
            if state["unauthorized"] == 2:
                state["both_failed"].set()
            return httpx.Response(401, json={"statusCode": 401, "message": "jwt expired"})
        state["replayed_with"].append(auth)
        return httpx.Response(200, json={"success": True, "data": {"path": request.url.path}})

    return handler


@pytest.mark.parametrize("dedupe, expected_refreshes", [(False, 2), (True, 1)])
def test_concurrent_unauthorized_requests(dedupe, expected_refreshes):
    async def scenario():
        state = {
            "refresh_calls": 0,
            "unauthorized": 0,
            "both_failed": asyncio.Event(),
            "replayed_with": [],
        }
        settings = ClientSettings(API_URL="http://testserver/api", DEDUPE_REFRESH=dedupe)
        store = MemorySessionStore({ACCESS_TOKEN_KEY: "stale", REFRESH_TOKEN_KEY: "r"})
        transport = httpx.MockTransport(_concurrent_handler(state))
        async with ApiClient(settings, store=store, transport=transport) as client:
            results = await asyncio.gather(client.get("/a"), client.get("/b"))
        return state, results

    state, results = asyncio.run(scenario())

    assert state["refresh_calls"] == expected_refreshes
    assert sorted(result["data"]["path"] for result in results) == ["/api/a", "/api/b"]
    if dedupe:
        assert state["replayed_with"] == ["Bearer T1", "Bearer T1"]
    else:
        # Each replay uses the token its own refresh returned.
        assert sorted(state["replayed_with"]) == ["Bearer T1", "Bearer T2"]


def test_failing_listener_does_not_mask_error(backend):
    revoked = backend.issue("access")
    backend.revoked.add(revoked)

    def broken_listener(event):
        raise RuntimeError("listener exploded")

    async def scenario():
        async with make_client(backend) as client:
            client.session.set_tokens(revoked)
            client.events.subscribe(broken_listener)
            with pytest.raises(ApiError) as excinfo:
                await client.get("/users/me")
            return excinfo.value

    error = asyncio.run(scenario())
    assert error.kind is FailureKind.INVALID_CREDENTIAL


def test_login_and_logout_manage_session_keys(backend):
    async def scenario():
        async with make_client(backend) as client:
            response = await client.post("/login", json={"email": "ada@example.com", "password": "secret"})
            client.login(response["data"])
            snapshot = {
                "authenticated": client.is_authenticated,
                "profile": client.session.cached_profile(),
                "keys": client.session.store.keys(),
            }
            me = await client.get("/users/me")
            client.logout()
            snapshot["after_logout"] = client.session.store.keys()
            return snapshot, me

    snapshot, me = asyncio.run(scenario())

    assert snapshot["authenticated"] is True
    assert snapshot["profile"]["email"] == "ada@example.com"
    assert snapshot["keys"] == ["accessToken", "cachedUserData", "refreshToken", "userId", "userType"]
    assert me["success"] is True
    assert snapshot["after_logout"] == ["refreshToken"]


def test_closed_client_raises_normalized_error(backend):
    async def scenario():
        client = make_client(backend)
        await client.aclose()
        with pytest.raises(ApiError) as excinfo:
            await client.get("/users/me")
        return excinfo.value

    error = asyncio.run(scenario())

    assert error.kind is FailureKind.CLIENT
    assert error.to_dict() == {
        "statusCode": 500,
        "message": "Something went wrong",
        "errors": ["ApiClient is closed"],
        "success": False,
    }
    assert isinstance(error.__cause__, ClientClosedError)
    assert backend.seen == []


def test_unreadable_session_file_is_treated_as_signed_out(backend, tmp_path):
    path = tmp_path / "session.json"
    path.write_text('{"accessToken": "a', encoding="utf-8")
    events = []

    async def scenario():
        async with make_client(backend, store=JsonFileSessionStore(path)) as client:
            client.events.subscribe(events.append)
            with pytest.raises(ApiError) as excinfo:
                await client.get("/users/me")
            return excinfo.value

    error = asyncio.run(scenario())

    assert backend.bearer_for("/api/users/me") == [None]
    assert error.kind is FailureKind.REFRESH_FAILURE
    assert error.to_dict() == {"statusCode": 401, "message": "Unauthorized request", "errors": [], "success": False}
    assert backend.refresh_calls == []
    # Terminating the session rewrites the file as an empty object.
    assert json.loads(path.read_text(encoding="utf-8")) == {}
    assert len(events) == 1


class ReadOnlyStore(MemorySessionStore):
    def set(self, key: str, value: str) -> None:
        raise SessionStoreError("session store is read-only")


def test_store_write_failure_surfaces_as_client_error(backend):
    stale = backend.issue("access")
    backend.expired.add(stale)
    store = ReadOnlyStore({ACCESS_TOKEN_KEY: stale, REFRESH_TOKEN_KEY: backend.issue("refresh")})

    async def scenario():
        async with make_client(backend, store=store) as client:
            with pytest.raises(ApiError) as excinfo:
                await client.get("/users/me")
            return excinfo.value

    error = asyncio.run(scenario())

    assert error.kind is FailureKind.CLIENT
    assert error.status_code == 500
    assert error.errors == ["session store is read-only"]
    assert isinstance(error.__cause__, SessionStoreError)
    assert len(backend.refresh_calls) == 1


@pytest.mark.parametrize("with_credentials, expected_cookie", [(True, "sid=abc123"), (False, None)])
def test_login_cookie_reaches_refresh_call_only_with_credentials(with_credentials, expected_cookie):
    cookies = {}

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        cookies.setdefault(path, []).append(request.headers.get("cookie"))
        if path == "/api/login":
            return httpx.Response(200, json={"success": True, "data": {}}, headers={"set-cookie": "sid=abc123; Path=/"})
        if path.endswith("/refresh-token"):
            return httpx.Response(200, json={"success": True, "data": {"accessToken": "fresh"}})
        if request.headers.get("authorization") == "Bearer stale":
            return httpx.Response(401, json={"statusCode": 401, "message": "jwt expired"})
        return httpx.Response(200, json={"success": True, "data": {}})

    async def scenario():
        settings = ClientSettings(API_URL="http://example.org/api", WITH_CREDENTIALS=with_credentials)
        store = MemorySessionStore({ACCESS_TOKEN_KEY: "stale", REFRESH_TOKEN_KEY: "r"})
        async with ApiClient(settings, store=store, transport=httpx.MockTransport(handler)) as client:
            await client.post("/login", json={})
            await client.get("/users/me")

    asyncio.run(scenario())

    assert cookies["/api/login"] == [None]
    assert cookies["/api/login/refresh-token"] == [expected_cookie]
    assert cookies["/api/users/me"] == [expected_cookie, expected_cookie]


def test_rotated_refresh_token_is_persisted_and_used_next(backend):
    stale = backend.issue("access")
    original = backend.issue("refresh")
    backend.expired.add(stale)
    backend.refresh_mode = "rotate"

    async def scenario():
        async with make_client(backend) as client:
            client.session.set_tokens(stale, original)
            await client.get("/users/me")
            rotated = client.session.refresh_token
            backend.expired.add(client.session.access_token)
            await client.get("/users/me")
            return rotated

    rotated = asyncio.run(scenario())

    assert rotated and rotated != original
    assert backend.refresh_calls == [{"refreshToken": original}, {"refreshToken": rotated}]


def test_cancelled_refresh_waiter_leaves_no_unretrieved_error():
    async def scenario():
        reported = []
        asyncio.get_running_loop().set_exception_handler(lambda loop, context: reported.append(context))
        release = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            await release.wait()
            raise RuntimeError("refresh endpoint exploded")

        settings = ClientSettings(API_URL="http://testserver/api", DEDUPE_REFRESH=True)
        async with ApiClient(settings, store=MemorySessionStore(), transport=httpx.MockTransport(handler)) as client:
            waiter = asyncio.ensure_future(client.recovery._obtain_access_token("r"))
            await asyncio.sleep(0)
            shared = client.recovery._inflight
            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter
            release.set()
            await asyncio.wait([shared])
            assert shared.done() and not shared.cancelled()
            client.recovery._inflight = None
            del shared
        gc.collect()
        return reported

    assert asyncio.run(scenario()) == []
