from __future__ import annotations

from contextvars import ContextVar
from uuid import uuid4

from ..schemas.request import PendingRequest

REQUEST_ID_HEADER = "X-Request-ID"

request_id_ctx_var: ContextVar[str | None] = ContextVar("request_id", default=None)
recovery_state_ctx_var: ContextVar[str | None] = ContextVar("recovery_state", default=None)


def tag_request_id(request: PendingRequest) -> PendingRequest:
    """Ensure every request carries a correlation id.

    The id active in the current context wins so a replay keeps the id of the
    call it replays.
    """

    if request.header(REQUEST_ID_HEADER):
        return request
    request_id = request_id_ctx_var.get() or str(uuid4())
    return request.with_header(REQUEST_ID_HEADER, request_id)
