from __future__ import annotations

import inspect
import logging
from typing import Awaitable, Callable, List, Union

from pydantic import BaseModel, ConfigDict

from ..core.errors import FailureKind

logger = logging.getLogger(__name__)


class SessionInvalidated(BaseModel):
    """Published when the session is torn down; the owner should route to ``redirect_to``."""

    model_config = ConfigDict(frozen=True)

    reason: FailureKind
    status_code: int
    message: str
    redirect_to: str
    url: str | None = None


Listener = Callable[[SessionInvalidated], Union[None, Awaitable[None]]]


class SessionEvents:
    """Fan-out of session-invalidated events to the owning application."""

    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Listener:
        """Register ``listener``; usable as a decorator."""

        self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listeners(self) -> tuple[Listener, ...]:
        return tuple(self._listeners)

    async def publish(self, event: SessionInvalidated) -> None:
        # A failing listener must not replace the error the caller is about to receive.
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "session.listener_failed",
                    extra={"extra_data": {"listener": getattr(listener, "__name__", repr(listener))}},
                )
