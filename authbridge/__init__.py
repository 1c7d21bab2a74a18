"""Client-side access layer for the backend API.

``create_client`` wires settings, the persisted session store, the event hub
and the httpx transport into one ``ApiClient``. Applications subscribe to
``client.events`` to learn when the session was invalidated and route the user
to the login page.
"""

from __future__ import annotations

from typing import Any

from .client import ApiClient
from .core.config import ClientSettings, get_settings
from .core.errors import ApiError, FailureKind, NormalizedError
from .services.events import SessionEvents, SessionInvalidated
from .services.recovery import RecoveryState
from .services.session_store import (
    JsonFileSessionStore,
    MemorySessionStore,
    SessionState,
    SessionStore,
    SqlSessionStore,
)

__all__ = [
    "ApiClient",
    "ApiError",
    "ClientSettings",
    "FailureKind",
    "JsonFileSessionStore",
    "MemorySessionStore",
    "NormalizedError",
    "RecoveryState",
    "SessionEvents",
    "SessionInvalidated",
    "SessionState",
    "SessionStore",
    "SqlSessionStore",
    "create_client",
]


def create_client(settings: ClientSettings | None = None, **overrides: Any) -> ApiClient:
    """Build a client from settings; ``overrides`` replace individual settings fields."""

    settings = settings or get_settings()
    if overrides:
        settings = ClientSettings.model_validate({**settings.model_dump(), **overrides})
    return ApiClient(settings)
