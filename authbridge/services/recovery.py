"""Session recovery for failed calls.

A failed response walks ``INITIAL -> AUTH_FAILED -> REFRESHING`` and ends in
either ``REPLAYED`` (one refresh, one replay) or ``TERMINATED`` (session wiped,
``SessionInvalidated`` published). Anything that is not an authentication
failure is normalized and raised straight away.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import ValidationError

from ..core.errors import (
    ApiError,
    FailureKind,
    NormalizedError,
    SessionStoreError,
    is_invalid_token_body,
    normalize_error_body,
)
from ..middlewares import AUTHORIZATION_HEADER, bearer, recovery_state_ctx_var
from ..schemas.envelope import RefreshData, RefreshRequest, SuccessEnvelope
from ..schemas.request import PendingRequest
from .events import SessionInvalidated

if TYPE_CHECKING:
    from ..client import ApiClient

logger = logging.getLogger("authbridge.session")


class RecoveryState(str, Enum):
    INITIAL = "initial"
    AUTH_FAILED = "auth_failed"
    REFRESHING = "refreshing"
    REPLAYED = "replayed"
    TERMINATED = "terminated"


def read_body(response: httpx.Response) -> Any:
    """Decode a response body: JSON when possible, text otherwise, ``None`` when empty."""

    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class SessionRecovery:
    def __init__(self, client: "ApiClient") -> None:
        self.client = client
        self._inflight: asyncio.Task | None = None

    def _transition(self, state: RecoveryState, request: PendingRequest, **details: Any) -> None:
        recovery_state_ctx_var.set(state.value)
        extra = {"method": request.method, "path": request.url, "retried": request.retried}
        extra.update(details)
        log = logger.warning if state is RecoveryState.TERMINATED else logger.info
        log("session.%s", state.value, extra={"extra_data": extra})

    def is_recoverable(self, request: PendingRequest) -> bool:
        if request.retried:
            return False
        return not request.url_contains_any(self.client.settings.RECOVERY_EXCLUDED_PATHS)

    async def handle(self, request: PendingRequest, response: httpx.Response) -> Any:
        """Resolve a non-2xx response: replay result on recovery, otherwise raise ``ApiError``."""

        body = read_body(response)
        status = response.status_code
        self._transition(RecoveryState.INITIAL, request, status=status)

        if is_invalid_token_body(body):
            self._transition(RecoveryState.AUTH_FAILED, request, status=status)
            error = normalize_error_body(body, status)
            raise await self._terminate(request, error, FailureKind.INVALID_CREDENTIAL, "invalid access token")

        if status == httpx.codes.UNAUTHORIZED and self.is_recoverable(request):
            self._transition(RecoveryState.AUTH_FAILED, request, status=status)
            return await self._refresh_and_replay(request, normalize_error_body(body, status))

        if status == httpx.codes.UNAUTHORIZED and request.retried:
            kind = FailureKind.EXPIRED_CREDENTIAL
        else:
            kind = FailureKind.APPLICATION
        raise ApiError(normalize_error_body(body, status), kind)

    async def _refresh_and_replay(self, request: PendingRequest, original: NormalizedError) -> Any:
        replay = request.mark_retried()
        self._transition(RecoveryState.REFRESHING, replay)

        try:
            refresh_token = self.client.session.refresh_token
        except SessionStoreError as exc:
            logger.warning("session.store_unreadable", extra={"extra_data": {"error": str(exc)}})
            refresh_token = None
        if not refresh_token:
            raise await self._terminate(replay, original, FailureKind.REFRESH_FAILURE, "missing refresh token")

        access_token = await self._obtain_access_token(refresh_token)
        if not access_token:
            raise await self._terminate(replay, original, FailureKind.REFRESH_FAILURE, "refresh rejected")

        replay = replay.with_header(AUTHORIZATION_HEADER, bearer(access_token))
        self._transition(RecoveryState.REPLAYED, replay)
        return await self.client.dispatch(replay)

    async def _obtain_access_token(self, refresh_token: str) -> str | None:
        if not self.client.settings.DEDUPE_REFRESH:
            return await self.refresh(refresh_token)
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self.refresh(refresh_token))
        # Shielded so one cancelled waiter does not cancel the refresh shared by the others.
        return await asyncio.shield(self._inflight)

    async def refresh(self, refresh_token: str) -> str | None:
        """Exchange ``refresh_token`` for a new access token and persist it.

        Goes out on the raw transport, outside the middleware pipeline. Returns
        ``None`` on any failure.
        """

        settings = self.client.settings
        payload = RefreshRequest(refresh_token=refresh_token).model_dump(by_alias=True)
        call = PendingRequest(method="POST", url=settings.refresh_url, body=payload)
        try:
            response = await self.client.transmit(call)
        except httpx.RequestError as exc:
            logger.warning("session.refresh_failed", extra={"extra_data": {"error": type(exc).__name__}})
            return None

        if not response.is_success:
            logger.warning("session.refresh_failed", extra={"extra_data": {"status": response.status_code}})
            return None

        try:
            envelope = SuccessEnvelope.model_validate(read_body(response))
            data = RefreshData.model_validate(envelope.data) if envelope.success else None
        except ValidationError:
            data = None
        if data is None:
            logger.warning("session.refresh_failed", extra={"extra_data": {"status": response.status_code, "reason": "no token"}})
            return None

        self.client.session.set_tokens(data.access_token, data.refresh_token)
        logger.info("session.refreshed")
        return data.access_token

    async def _terminate(
        self, request: PendingRequest, error: NormalizedError, kind: FailureKind, reason: str
    ) -> ApiError:
        self._transition(RecoveryState.TERMINATED, request, status=error.status_code, reason=reason)
        self.client.session.clear()
        await self.client.events.publish(
            SessionInvalidated(
                reason=kind,
                status_code=error.status_code,
                message=error.message,
                redirect_to=self.client.settings.LOGIN_ROUTE,
                url=request.url,
            )
        )
        return ApiError(error, kind)
