from __future__ import annotations

from typing import Callable, Iterable

from ..schemas.request import PendingRequest
from .auth import AUTHORIZATION_HEADER, BearerAuthMiddleware, bearer
from .request_id import REQUEST_ID_HEADER, recovery_state_ctx_var, request_id_ctx_var, tag_request_id

RequestMiddleware = Callable[[PendingRequest], PendingRequest]


def apply_pipeline(request: PendingRequest, middlewares: Iterable[RequestMiddleware]) -> PendingRequest:
    for middleware in middlewares:
        request = middleware(request)
    return request


__all__ = [
    "AUTHORIZATION_HEADER",
    "REQUEST_ID_HEADER",
    "BearerAuthMiddleware",
    "RequestMiddleware",
    "apply_pipeline",
    "bearer",
    "recovery_state_ctx_var",
    "request_id_ctx_var",
    "tag_request_id",
]
