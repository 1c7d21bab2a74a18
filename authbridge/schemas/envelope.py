from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SuccessEnvelope(BaseModel):
    success: bool
    data: Any = None
    message: str | None = None

    model_config = {
        "extra": "allow",
        "json_schema_extra": {
            "example": {"success": True, "data": {"_id": "64f0"}, "message": "OK"}
        },
    }


class ErrorEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    status_code: int = Field(alias="statusCode")
    message: str
    errors: list[str] = Field(default_factory=list)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., alias="refreshToken", min_length=1)

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {"example": {"refreshToken": "<token>"}},
    }


class RefreshData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    access_token: str = Field(..., alias="accessToken", min_length=1)
    refresh_token: str | None = Field(default=None, alias="refreshToken")


class LoginPayload(BaseModel):
    """Body returned by the backend's login endpoints (``data`` of the envelope)."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    access_token: str | None = Field(default=None, alias="accessToken")
    refresh_token: str | None = Field(default=None, alias="refreshToken")
    user_type: str | None = Field(default=None, alias="userType")
    user: dict[str, Any] | None = None
    admin: dict[str, Any] | None = None

    def resolved_user_type(self) -> str:
        if self.user_type:
            return self.user_type
        if self.user and self.user.get("role") == "admin":
            return "admin"
        return "user"

    def profile(self) -> dict[str, Any]:
        if self.resolved_user_type() == "admin":
            return self.admin or self.model_dump(by_alias=True, exclude_none=True)
        return self.user or self.model_dump(by_alias=True, exclude_none=True)
