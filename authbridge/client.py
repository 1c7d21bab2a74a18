"""The client every part of the application talks to the backend through.

Outbound calls go through a fixed middleware pipeline (request id, bearer
token), then over httpx. 2xx bodies are handed back as the backend's envelope;
everything else goes to ``SessionRecovery``.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Iterable, Mapping
from uuid import uuid4

import httpx

from .core.config import ClientSettings, get_settings
from .core.errors import ApiError, ClientClosedError, FailureKind, SessionStoreError, client_error, network_error
from .middlewares import (
    BearerAuthMiddleware,
    RequestMiddleware,
    apply_pipeline,
    recovery_state_ctx_var,
    request_id_ctx_var,
    tag_request_id,
)
from .schemas.envelope import LoginPayload
from .schemas.request import PendingRequest
from .services.events import SessionEvents
from .services.recovery import SessionRecovery, read_body
from .services.session_store import SessionState, SessionStore, build_store

logger = logging.getLogger("authbridge.request")


class ApiClient:
    def __init__(
        self,
        settings: ClientSettings | None = None,
        *,
        store: SessionStore | None = None,
        session: SessionState | None = None,
        events: SessionEvents | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        middlewares: Iterable[RequestMiddleware] = (),
    ) -> None:
        self.settings = settings or get_settings()
        if session is None:
            session = SessionState(store if store is not None else build_store(self.settings))
        self.session = session
        self.events = events or SessionEvents()
        self.middlewares: tuple[RequestMiddleware, ...] = (
            tag_request_id,
            *middlewares,
            BearerAuthMiddleware(self.session),
        )
        self.recovery = SessionRecovery(self)
        self._http = httpx.AsyncClient(
            base_url=self.settings.API_URL,
            timeout=httpx.Timeout(self.settings.TIMEOUT_SECONDS),
            transport=transport,
            follow_redirects=True,
        )
        self._closed = False

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._http.aclose()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_authenticated(self) -> bool:
        return bool(self.session.access_token)

    # ------------------------------------------------------------------
    # Public request surface
    # ------------------------------------------------------------------
    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """Issue one call; return the decoded envelope or raise ``ApiError``."""

        pending = PendingRequest(
            method=method,
            url=path,
            headers=dict(headers or {}),
            params=dict(params) if params else None,
            body=json,
        )
        request_token = request_id_ctx_var.set(request_id_ctx_var.get() or str(uuid4()))
        state_token = recovery_state_ctx_var.set(None)
        try:
            return await self.dispatch(pending)
        except (ClientClosedError, SessionStoreError) as exc:
            logger.warning(
                "request.failed",
                extra={"extra_data": {"method": pending.method, "path": pending.url, "error": type(exc).__name__}},
            )
            raise ApiError(client_error(exc), FailureKind.CLIENT) from exc
        finally:
            recovery_state_ctx_var.reset(state_token)
            request_id_ctx_var.reset(request_token)

    async def get(self, path: str, **kwargs: Any) -> Any:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, json: Any = None, **kwargs: Any) -> Any:
        return await self.request("POST", path, json=json, **kwargs)

    async def put(self, path: str, json: Any = None, **kwargs: Any) -> Any:
        return await self.request("PUT", path, json=json, **kwargs)

    async def patch(self, path: str, json: Any = None, **kwargs: Any) -> Any:
        return await self.request("PATCH", path, json=json, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> Any:
        return await self.request("DELETE", path, **kwargs)

    # ------------------------------------------------------------------
    # Session helpers
    # ------------------------------------------------------------------
    def login(self, payload: Mapping[str, Any] | LoginPayload) -> LoginPayload:
        """Persist the credentials and profile from a login response."""

        login = payload if isinstance(payload, LoginPayload) else LoginPayload.model_validate(payload)
        if login.access_token:
            self.session.set_tokens(login.access_token, login.refresh_token)
        self.session.remember_profile(login.resolved_user_type(), login.profile())
        return login

    def logout(self) -> None:
        """Soft logout: drop the access token and cached profile, publish nothing."""

        self.session.logout()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    async def dispatch(self, pending: PendingRequest) -> Any:
        prepared = apply_pipeline(pending, self.middlewares)
        try:
            response = await self.transmit(prepared)
        except httpx.RequestError as exc:
            logger.warning(
                "request.failed",
                extra={"extra_data": {"method": prepared.method, "path": prepared.url, "error": type(exc).__name__}},
            )
            raise ApiError(network_error(), FailureKind.TRANSPORT) from exc
        if response.is_success:
            return read_body(response)
        return await self.recovery.handle(prepared, response)

    async def transmit(self, request: PendingRequest) -> httpx.Response:
        """Send ``request`` as-is on the underlying httpx client."""

        if self._closed:
            raise ClientClosedError("ApiClient is closed")
        http_request = self._http.build_request(
            request.method,
            request.url,
            headers=request.headers,
            params=request.params,
            json=request.body,
        )
        start = time.perf_counter()
        response = await self._http.send(http_request)
        duration_ms = (time.perf_counter() - start) * 1000
        if not self.settings.WITH_CREDENTIALS:
            self._http.cookies.clear()
        logger.info(
            "request.completed",
            extra={
                "extra_data": {
                    "method": request.method,
                    "path": request.url,
                    "status": response.status_code,
                    "duration_ms": round(duration_ms, 2),
                    "retried": request.retried,
                }
            },
        )
        return response
