"""Request/response schemas for the API layer."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from joinery.auth.keys import parse_scopes
from joinery.auth.scopes import Scope

# --- Auth ---


class RefreshRequest(BaseModel):
    """Request body for POST /api/auth/refresh."""

    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    """Optional body for POST /api/auth/logout."""

    refresh_token: str | None = None


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = Field(description="Access token lifetime in seconds.")
    session_id: str | None = None


class LogoutAllResponse(BaseModel):
    sessions_revoked: int


# --- API keys ---


class ApiKeyCreateRequest(BaseModel):
    """Request body for POST /api/api-keys."""

    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    scopes: list[Scope] = Field(default_factory=lambda: [Scope.READ], min_length=1)
    expires_in_days: int | None = Field(default=None, gt=0, le=3650)


class ApiKeyResponse(BaseModel):
    """API key metadata. The secret itself is never returned here."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    description: str | None
    key_prefix: str
    scopes: list[str]
    is_active: bool
    is_revoked: bool
    expires_at: datetime | None
    last_used_at: datetime | None
    created_at: datetime

    @field_validator("scopes", mode="before")
    @classmethod
    def split_scopes(cls, value: object) -> object:
        if isinstance(value, str):
            return sorted(parse_scopes(value))
        return value


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Returned once on creation; ``key`` cannot be retrieved again."""

    key: str


class RevokeRequest(BaseModel):
    reason: str = Field(default="Revoked by user", max_length=500)


# --- Sessions ---


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    session_id: str
    ip_address: str | None
    user_agent: str | None
    device_info: str | None
    login_method: str | None
    is_active: bool
    is_suspicious: bool
    suspicious_reasons: str | None
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    is_current: bool = False


class SuspiciousSessionResponse(SessionResponse):
    user_id: uuid.UUID


class RevokedCountResponse(BaseModel):
    revoked: int
