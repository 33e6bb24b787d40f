"""Request/response schemas for the API layer."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

# --- Business API keys ---


class ApiKeyCreateRequest(BaseModel):
    """Request body for POST /admin/businesses/{business_id}/api-keys."""

    name: str = Field(..., min_length=1, max_length=100)
    scopes: list[str] | None = Field(
        default=None,
        description="Requested scopes. Unknown scopes are dropped; "
        "an empty selection falls back to the default read scopes.",
    )
    expires_at: datetime | None = None


class ApiKeyResponse(BaseModel):
    """Key metadata. Never contains the plaintext or the hash."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    key_preview: str
    scopes: list[str]
    is_active: bool
    expires_at: datetime | None
    last_used_at: datetime | None
    request_count: int
    revoked_at: datetime | None
    created_at: datetime


class ApiKeyCreatedResponse(BaseModel):
    """Returned once on create/regenerate; ``key`` is not retrievable later."""

    message: str
    key: str
    api_key: ApiKeyResponse


class ScopeInfo(BaseModel):
    id: str
    name: str
    description: str


class ApiKeyListResponse(BaseModel):
    items: list[ApiKeyResponse]
    available_scopes: list[ScopeInfo]


# --- Integrations ---


class IntegrationCreateRequest(BaseModel):
    """Request body for POST /admin/integrations."""

    name: str = Field(..., min_length=1, max_length=200)
    slug: str = Field(..., min_length=1, max_length=100)
    description: str | None = None
    scopes: list[str] | None = None
    rate_limit: int | None = Field(default=None, ge=1)
    rate_window_seconds: int | None = Field(default=None, ge=1)


class IntegrationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    slug: str
    description: str | None
    api_key_preview: str
    scopes: list[str]
    is_active: bool
    rate_limit: int
    rate_window_seconds: int
    last_used_at: datetime | None
    request_count: int
    created_at: datetime


class IntegrationCreatedResponse(BaseModel):
    message: str
    key: str
    integration: IntegrationResponse


class IntegrationStatusRequest(BaseModel):
    is_active: bool


# --- Audit log ---


class AuditLogEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    created_at: datetime
    key_kind: str
    outcome: str
    reason: str | None
    required_scope: str | None
    key_id: uuid.UUID | None
    owner_id: uuid.UUID | None
    key_preview: str | None
    method: str | None
    path: str | None
    ip_address: str | None
    user_agent: str | None


class AuditLogListResponse(BaseModel):
    """Paginated audit log page, newest first."""

    items: list[AuditLogEntryResponse]
    total: int = Field(description="Total entries matching the filters.")
    limit: int
    offset: int


# --- Authenticated caller ---


class IdentityResponse(BaseModel):
    """Summary of the key used for the current request."""

    key_id: uuid.UUID
    kind: str
    owner_id: uuid.UUID
    owner_name: str
    key_preview: str
    scopes: list[str]
    plan: str | None
    rate_limit: int | None
    rate_window_seconds: int | None
