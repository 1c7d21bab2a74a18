from __future__ import annotations

from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_ERROR_MESSAGE = "Something went wrong"
NETWORK_ERROR_MESSAGE = "Network error occurred"
NETWORK_ERROR_STATUS = 500
CLIENT_ERROR_STATUS = 500

# Backend sentinel for a malformed/rejected token, as opposed to a stale one.
INVALID_TOKEN_STATUS = 404
INVALID_TOKEN_MESSAGE = "Invalid Access Token"


class FailureKind(str, Enum):
    INVALID_CREDENTIAL = "invalid_credential"
    EXPIRED_CREDENTIAL = "expired_credential"
    REFRESH_FAILURE = "refresh_failure"
    TRANSPORT = "transport"
    APPLICATION = "application"
    CLIENT = "client"


class NormalizedError(BaseModel):
    """The single error shape every caller receives."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    status_code: int = Field(alias="statusCode")
    message: str
    errors: list[str] = Field(default_factory=list)
    success: bool = False

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class ApiError(Exception):
    """Raised for every failed call; carries the normalized error body."""

    def __init__(self, error: NormalizedError, kind: FailureKind = FailureKind.APPLICATION) -> None:
        super().__init__(error.message)
        self.error = error
        self.kind = kind

    @property
    def status_code(self) -> int:
        return self.error.status_code

    @property
    def message(self) -> str:
        return self.error.message

    @property
    def errors(self) -> list[str]:
        return list(self.error.errors)

    @property
    def is_terminal(self) -> bool:
        return self.kind in {FailureKind.INVALID_CREDENTIAL, FailureKind.REFRESH_FAILURE}

    def to_dict(self) -> dict[str, Any]:
        return self.error.to_dict()

    def __repr__(self) -> str:
        return f"ApiError(kind={self.kind.value!r}, status_code={self.status_code}, message={self.message!r})"


class SessionStoreError(Exception):
    """Raised when a durable session store cannot be read or written."""


class ClientClosedError(RuntimeError):
    """Raised when a request is issued on a closed client."""


def _coerce_errors(raw: Any) -> list[str]:
    if not raw:
        return []
    if isinstance(raw, str):
        return [raw]
    if isinstance(raw, (list, tuple)):
        return [item if isinstance(item, str) else str(item) for item in raw]
    return [str(raw)]


def normalize_error_body(body: Any, http_status: int) -> NormalizedError:
    """Map a backend error body (or anything else) onto ``NormalizedError``."""

    data: Mapping[str, Any] = body if isinstance(body, Mapping) else {}
    status_code = data.get("statusCode")
    if not isinstance(status_code, int) or isinstance(status_code, bool) or not status_code:
        status_code = http_status
    message = data.get("message")
    if not isinstance(message, str) or not message:
        message = DEFAULT_ERROR_MESSAGE
    return NormalizedError(
        status_code=status_code,
        message=message,
        errors=_coerce_errors(data.get("errors")),
    )


def network_error() -> NormalizedError:
    return NormalizedError(status_code=NETWORK_ERROR_STATUS, message=NETWORK_ERROR_MESSAGE)


def client_error(exc: BaseException) -> NormalizedError:
    """Failure raised on this side of the wire (closed client, unreadable session store)."""

    return NormalizedError(status_code=CLIENT_ERROR_STATUS, message=DEFAULT_ERROR_MESSAGE, errors=[str(exc)])


def is_invalid_token_body(body: Any) -> bool:
    if not isinstance(body, Mapping):
        return False
    return body.get("statusCode") == INVALID_TOKEN_STATUS and body.get("message") == INVALID_TOKEN_MESSAGE
