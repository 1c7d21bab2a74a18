from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..core.errors import SessionStoreError
from ..schemas.request import PendingRequest

if TYPE_CHECKING:
    from ..services.session_store import SessionState

logger = logging.getLogger("authbridge.request")

AUTHORIZATION_HEADER = "Authorization"


def bearer(token: str) -> str:
    return f"Bearer {token}"


class BearerAuthMiddleware:
    """Attach the stored access token to every outbound request.

    A missing or unreadable token is not an error; the request goes out
    unauthenticated. A replay keeps the token its own refresh returned.
    """

    def __init__(self, state: "SessionState") -> None:
        self.state = state

    def __call__(self, request: PendingRequest) -> PendingRequest:
        if request.retried and request.header(AUTHORIZATION_HEADER):
            return request
        try:
            token = self.state.access_token
        except SessionStoreError as exc:
            logger.warning("session.store_unreadable", extra={"extra_data": {"error": str(exc)}})
            return request
        if not token:
            return request
        return request.with_header(AUTHORIZATION_HEADER, bearer(token))
