from __future__ import annotations

from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PendingRequest(BaseModel):
    """Immutable description of one outbound call.

    Middlewares return a new value instead of mutating this one. ``retried``
    is the one-shot marker set on the replay derived during session recovery.
    """

    model_config = ConfigDict(frozen=True)

    method: str
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    params: dict[str, Any] | None = None
    body: Any = None
    retried: bool = False

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, value: Any) -> str:
        method = str(value or "").strip().upper()
        if not method:
            raise ValueError("method is required")
        return method

    def header(self, name: str) -> str | None:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    def with_header(self, name: str, value: str) -> "PendingRequest":
        lowered = name.lower()
        headers = {key: val for key, val in self.headers.items() if key.lower() != lowered}
        headers[name] = value
        return self.model_copy(update={"headers": headers})

    def without_header(self, name: str) -> "PendingRequest":
        lowered = name.lower()
        headers = {key: val for key, val in self.headers.items() if key.lower() != lowered}
        return self.model_copy(update={"headers": headers})

    def mark_retried(self) -> "PendingRequest":
        return self.model_copy(update={"retried": True})

    def url_contains_any(self, markers: Iterable[str]) -> bool:
        return any(marker and marker in self.url for marker in markers)
