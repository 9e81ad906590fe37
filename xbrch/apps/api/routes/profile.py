from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from xbrch.apps.api.deps import Principal, get_db, require_role
from xbrch.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from xbrch.apps.api.response import SuccessEnvelope, success_response
from xbrch.domain.models import BusinessProfile
from xbrch.persistence.db import unit_of_work
from xbrch.persistence.repos import tenants as tenants_repo
from xbrch.services.audit import get_request_context, record_event


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/profile", tags=["profile"], responses=DEFAULT_ERROR_RESPONSES)

ACTION_UPDATE_PROFILE = "UPDATE_PROFILE"


class ProfileRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    city: str = Field(min_length=1, max_length=200)
    industry: str | None = Field(default=None, max_length=200)
    tone: str | None = Field(default=None, max_length=100)

    model_config = {"extra": "forbid"}


class ProfileResponse(BaseModel):
    name: str
    city: str
    industry: str | None
    tone: str | None
    updated_at: str | None


def _to_response(profile: BusinessProfile) -> ProfileResponse:
    return ProfileResponse(
        name=profile.name,
        city=profile.city,
        industry=profile.industry,
        tone=profile.tone,
        updated_at=profile.updated_at.isoformat() if profile.updated_at else None,
    )


@router.get("", response_model=SuccessEnvelope[ProfileResponse])
async def get_profile(
    request: Request,
    principal: Principal = Depends(require_role("user")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        profile = await tenants_repo.get_business_profile(db, principal.tenant_id)
    except SQLAlchemyError as exc:
        logger.error("profile_fetch_failed tenant_id=%s", principal.tenant_id, exc_info=exc)
        raise HTTPException(
            status_code=500,
            detail={"code": "INTERNAL_ERROR", "message": "Internal server error"},
        ) from exc
    if profile is None:
        raise HTTPException(status_code=404, detail="Business profile not found")
    return success_response(request=request, data=_to_response(profile))


@router.put("", response_model=SuccessEnvelope[ProfileResponse])
async def put_profile(
    request: Request,
    payload: ProfileRequest,
    principal: Principal = Depends(require_role("user")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    values = payload.model_dump()
    try:
        async with unit_of_work(db):
            profile = await tenants_repo.upsert_business_profile(db, principal.tenant_id, **values)
            await record_event(
                session=db,
                tenant_id=principal.tenant_id,
                actor_id=principal.api_key_id,
                actor_role=principal.role,
                action=ACTION_UPDATE_PROFILE,
                resource_type="business_profile",
                resource_id=principal.tenant_id,
                new_values=values,
                context=get_request_context(request),
            )
        # Load server-side timestamps written by the upsert.
        await db.refresh(profile)
    except SQLAlchemyError as exc:
        logger.error("profile_update_failed tenant_id=%s", principal.tenant_id, exc_info=exc)
        raise HTTPException(
            status_code=500,
            detail={"code": "INTERNAL_ERROR", "message": "Internal server error"},
        ) from exc
    logger.info("profile_updated tenant_id=%s", principal.tenant_id)
    return success_response(request=request, data=_to_response(profile))
