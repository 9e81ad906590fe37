from __future__ import annotations

import logging
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from xbrch.apps.api.deps import Principal, get_db, require_role
from xbrch.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from xbrch.apps.api.response import SuccessEnvelope, success_response
from xbrch.core.config import get_settings
from xbrch.persistence.db import unit_of_work
from xbrch.persistence.repos import tenants as tenants_repo
from xbrch.services.audit import get_request_context, record_event


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)

ACTION_UPDATE_PLAN = "UPDATE_PLAN"


class PlanUpdateRequest(BaseModel):
    plan: Literal["free", "pro", "authority"]
    # Explicit override; otherwise the limit follows the plan.
    monthly_limit: int | None = Field(default=None, ge=0)

    model_config = {"extra": "forbid"}


class TenantPlanResponse(BaseModel):
    tenant_id: str
    plan: str
    monthly_limit: int


@router.patch("/tenants/{tenant_id}/plan", response_model=SuccessEnvelope[TenantPlanResponse])
async def update_tenant_plan(
    tenant_id: str,
    request: Request,
    payload: PlanUpdateRequest,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    monthly_limit = (
        payload.monthly_limit
        if payload.monthly_limit is not None
        else get_settings().plan_limit(payload.plan)
    )
    try:
        async with unit_of_work(db):
            tenant = await tenants_repo.update_plan(
                db, tenant_id, plan=payload.plan, monthly_limit=monthly_limit
            )
            if tenant is None:
                raise HTTPException(status_code=404, detail="Tenant not found")
            await record_event(
                session=db,
                tenant_id=tenant_id,
                actor_id=principal.api_key_id,
                actor_role=principal.role,
                action=ACTION_UPDATE_PLAN,
                resource_type="tenant",
                resource_id=tenant_id,
                new_values={"plan": payload.plan, "monthly_limit": monthly_limit},
                context=get_request_context(request),
            )
    except SQLAlchemyError as exc:
        logger.error("plan_update_failed tenant_id=%s", tenant_id, exc_info=exc)
        raise HTTPException(
            status_code=500,
            detail={"code": "INTERNAL_ERROR", "message": "Internal server error"},
        ) from exc

    logger.info(
        "tenant_plan_updated tenant_id=%s plan=%s monthly_limit=%s actor_tenant_id=%s",
        tenant_id,
        payload.plan,
        monthly_limit,
        principal.tenant_id,
    )
    return success_response(
        request=request,
        data=TenantPlanResponse(tenant_id=tenant_id, plan=payload.plan, monthly_limit=monthly_limit),
    )
