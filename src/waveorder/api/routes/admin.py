"""Administrative endpoints: business keys, integrations, audit log.

All routes require the platform admin token (``X-Admin-Token``).
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from waveorder.api.deps import get_session, require_admin
from waveorder.api.schemas import (
    ApiKeyCreatedResponse,
    ApiKeyCreateRequest,
    ApiKeyListResponse,
    ApiKeyResponse,
    AuditLogEntryResponse,
    AuditLogListResponse,
    IntegrationCreatedResponse,
    IntegrationCreateRequest,
    IntegrationResponse,
    IntegrationStatusRequest,
    ScopeInfo,
)
from waveorder.auth.management import ApiKeyManager, IntegrationManager
from waveorder.auth.scopes import AVAILABLE_SCOPES
from waveorder.config import Settings, get_settings
from waveorder.errors import (
    ApiKeyNotFoundError,
    ApiKeyRevokedError,
    BusinessNotFoundError,
    IntegrationNotFoundError,
    IntegrationSlugTakenError,
    KeyLimitExceededError,
    PlanRestrictedError,
)
from waveorder.storage.repositories import AuditLogRepository

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)

SessionDep = Annotated[AsyncSession, Depends(get_session)]
SettingsDep = Annotated[Settings, Depends(get_settings)]

SHOWN_ONCE = "Save this key now -- it won't be shown again."


# --- Business API keys ---


@router.get("/businesses/{business_id}/api-keys")
async def list_api_keys(
    business_id: uuid.UUID,
    session: SessionDep,
    settings: SettingsDep,
) -> ApiKeyListResponse:
    """List keys with preview and usage; plaintext is never returned."""
    manager = ApiKeyManager(session, settings)
    try:
        keys = await manager.list_keys(business_id)
    except BusinessNotFoundError:
        raise HTTPException(status_code=404, detail="Business not found") from None
    return ApiKeyListResponse(
        items=[ApiKeyResponse.model_validate(k) for k in keys],
        available_scopes=[ScopeInfo(**s) for s in AVAILABLE_SCOPES],
    )


@router.post("/businesses/{business_id}/api-keys", status_code=201)
async def create_api_key(
    business_id: uuid.UUID,
    body: ApiKeyCreateRequest,
    session: SessionDep,
    settings: SettingsDep,
) -> ApiKeyCreatedResponse:
    """Issue a new key. The plaintext is in this response only."""
    if not body.name.strip():
        raise HTTPException(status_code=400, detail="Key name is required")

    manager = ApiKeyManager(session, settings)
    try:
        issued = await manager.create_key(
            business_id,
            name=body.name,
            scopes=body.scopes,
            expires_at=body.expires_at,
        )
    except BusinessNotFoundError:
        raise HTTPException(status_code=404, detail="Business not found") from None
    except PlanRestrictedError as e:
        raise HTTPException(
            status_code=403,
            detail={"code": "plan_restricted", "message": str(e)},
        ) from None
    except KeyLimitExceededError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None

    await session.refresh(issued.record)
    return ApiKeyCreatedResponse(
        message=f"API key created successfully. {SHOWN_ONCE}",
        key=issued.plain_key,
        api_key=ApiKeyResponse.model_validate(issued.record),
    )


@router.delete("/businesses/{business_id}/api-keys/{key_id}", status_code=204)
async def revoke_api_key(
    business_id: uuid.UUID,
    key_id: uuid.UUID,
    session: SessionDep,
    settings: SettingsDep,
) -> None:
    """Revoke (soft-delete) a key. Subsequent requests with it are rejected."""
    manager = ApiKeyManager(session, settings)
    try:
        await manager.revoke_key(business_id, key_id)
    except ApiKeyNotFoundError:
        raise HTTPException(status_code=404, detail="API key not found") from None
    except ApiKeyRevokedError:
        raise HTTPException(status_code=409, detail="API key already revoked") from None


@router.post("/businesses/{business_id}/api-keys/{key_id}/regenerate")
async def regenerate_api_key(
    business_id: uuid.UUID,
    key_id: uuid.UUID,
    session: SessionDep,
    settings: SettingsDep,
) -> ApiKeyCreatedResponse:
    """Rotate the key secret. The previous plaintext stops working immediately."""
    manager = ApiKeyManager(session, settings)
    try:
        issued = await manager.regenerate_key(business_id, key_id)
    except BusinessNotFoundError:
        raise HTTPException(status_code=404, detail="Business not found") from None
    except PlanRestrictedError as e:
        raise HTTPException(
            status_code=403,
            detail={"code": "plan_restricted", "message": str(e)},
        ) from None
    except ApiKeyNotFoundError:
        raise HTTPException(status_code=404, detail="API key not found") from None
    except ApiKeyRevokedError:
        raise HTTPException(
            status_code=409, detail="Revoked keys cannot be regenerated"
        ) from None

    return ApiKeyCreatedResponse(
        message=f"API key regenerated. {SHOWN_ONCE}",
        key=issued.plain_key,
        api_key=ApiKeyResponse.model_validate(issued.record),
    )


# --- Integrations ---


@router.get("/integrations")
async def list_integrations(
    session: SessionDep,
    settings: SettingsDep,
) -> list[IntegrationResponse]:
    integrations = await IntegrationManager(session, settings).list_integrations()
    return [IntegrationResponse.model_validate(i) for i in integrations]


@router.post("/integrations", status_code=201)
async def create_integration(
    body: IntegrationCreateRequest,
    session: SessionDep,
    settings: SettingsDep,
) -> IntegrationCreatedResponse:
    """Register an integration and issue its ``wo_int_`` key."""
    manager = IntegrationManager(session, settings)
    try:
        issued = await manager.create_integration(
            name=body.name,
            slug=body.slug,
            description=body.description,
            scopes=body.scopes,
            rate_limit=body.rate_limit,
            rate_window_seconds=body.rate_window_seconds,
        )
    except IntegrationSlugTakenError as e:
        raise HTTPException(
            status_code=409,
            detail=f'An integration with slug "{e}" already exists',
        ) from None
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None

    await session.refresh(issued.record)
    return IntegrationCreatedResponse(
        message=f"Integration created successfully. {SHOWN_ONCE}",
        key=issued.plain_key,
        integration=IntegrationResponse.model_validate(issued.record),
    )


@router.post("/integrations/{integration_id}/regenerate-key")
async def regenerate_integration_key(
    integration_id: uuid.UUID,
    session: SessionDep,
    settings: SettingsDep,
) -> IntegrationCreatedResponse:
    manager = IntegrationManager(session, settings)
    try:
        issued = await manager.regenerate_key(integration_id)
    except IntegrationNotFoundError:
        raise HTTPException(status_code=404, detail="Integration not found") from None
    return IntegrationCreatedResponse(
        message=f"Integration key regenerated. {SHOWN_ONCE}",
        key=issued.plain_key,
        integration=IntegrationResponse.model_validate(issued.record),
    )


@router.post("/integrations/{integration_id}/status", status_code=204)
async def set_integration_status(
    integration_id: uuid.UUID,
    body: IntegrationStatusRequest,
    session: SessionDep,
    settings: SettingsDep,
) -> None:
    manager = IntegrationManager(session, settings)
    try:
        await manager.set_active(integration_id, is_active=body.is_active)
    except IntegrationNotFoundError:
        raise HTTPException(status_code=404, detail="Integration not found") from None


# --- Audit log ---


@router.get("/audit-log")
async def list_audit_log(
    session: SessionDep,
    owner_id: uuid.UUID | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    outcome: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> AuditLogListResponse:
    """Query authentication decisions by owner and time range."""
    entries, total = await AuditLogRepository(session).list_entries(
        owner_id=owner_id,
        since=since,
        until=until,
        outcome=outcome,
        limit=limit,
        offset=offset,
    )
    return AuditLogListResponse(
        items=[AuditLogEntryResponse.model_validate(e) for e in entries],
        total=total,
        limit=limit,
        offset=offset,
    )
