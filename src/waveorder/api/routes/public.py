"""Key-authenticated endpoints for businesses and integrations."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from waveorder.api.deps import require_integration, require_scope
from waveorder.api.schemas import IdentityResponse
from waveorder.auth.context import ApiIdentity

router = APIRouter(tags=["api"])

BusinessDep = Annotated[ApiIdentity, Depends(require_scope())]
IntegrationDep = Annotated[ApiIdentity, Depends(require_integration())]


def _identity_response(identity: ApiIdentity) -> IdentityResponse:
    return IdentityResponse(
        key_id=identity.key_id,
        kind=identity.kind.name.lower(),
        owner_id=identity.owner_id,
        owner_name=identity.owner_name,
        key_preview=identity.key_preview,
        scopes=sorted(identity.scopes),
        plan=identity.plan,
        rate_limit=identity.policy.limit if identity.policy else None,
        rate_window_seconds=(
            identity.policy.window_seconds if identity.policy else None
        ),
    )


@router.get("/v1/me")
async def get_current_key(identity: BusinessDep) -> IdentityResponse:
    """Describe the business key used for this request."""
    return _identity_response(identity)


@router.get("/integrations/{slug}/ping")
async def ping_integration(slug: str, identity: IntegrationDep) -> IdentityResponse:
    """Verify an integration key against the integration named in the path."""
    if identity.integration_slug != slug:
        raise HTTPException(
            status_code=403,
            detail={
                "code": "forbidden",
                "message": "API key does not belong to this integration",
            },
        )
    return _identity_response(identity)
