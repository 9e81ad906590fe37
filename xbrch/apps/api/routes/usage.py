from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from xbrch.apps.api.deps import Principal, get_db, require_role
from xbrch.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from xbrch.apps.api.response import SuccessEnvelope, success_response
from xbrch.persistence.repos import tenants as tenants_repo
from xbrch.services.ledger import get_usage_ledger


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage", tags=["usage"], responses=DEFAULT_ERROR_RESPONSES)


class UsageStatsResponse(BaseModel):
    month: str
    plan: str
    broadcasts_used: int
    ai_tokens_used: int
    monthly_limit: int
    remaining: int


@router.get("/stats", response_model=SuccessEnvelope[UsageStatsResponse])
async def usage_stats(
    request: Request,
    principal: Principal = Depends(require_role("user")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    ledger = get_usage_ledger()
    try:
        snapshot = await ledger.get_remaining(db, principal.tenant_id)
        tenant = await tenants_repo.get_tenant(db, principal.tenant_id)
    except SQLAlchemyError as exc:
        logger.error("usage_stats_failed tenant_id=%s", principal.tenant_id, exc_info=exc)
        raise HTTPException(
            status_code=500,
            detail={"code": "INTERNAL_ERROR", "message": "Internal server error"},
        ) from exc

    payload = UsageStatsResponse(
        month=snapshot.month,
        plan=tenant.plan if tenant is not None else "free",
        broadcasts_used=snapshot.used,
        ai_tokens_used=snapshot.ai_tokens_used,
        monthly_limit=snapshot.limit,
        # Over-limit tenants report zero remaining rather than a negative count.
        remaining=max(0, snapshot.remaining),
    )
    return success_response(request=request, data=payload)
