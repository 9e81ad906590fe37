from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from xbrch.apps.api.deps import Principal, get_db, require_role
from xbrch.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from xbrch.apps.api.response import SuccessEnvelope, success_response
from xbrch.domain.models import AuditEvent
from xbrch.persistence.repos import audit as audit_repo


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditEventResponse(BaseModel):
    id: int
    occurred_at: str
    tenant_id: str | None
    actor_id: str | None
    actor_role: str | None
    action: str
    outcome: str
    resource_type: str | None
    resource_id: str | None
    new_values: dict[str, Any] | None
    request_id: str | None
    ip_address: str | None
    user_agent: str | None


class AuditEventsPage(BaseModel):
    items: list[AuditEventResponse]
    next_offset: int | None


def _to_response(event: AuditEvent) -> AuditEventResponse:
    # Serialize audit event datetimes to ISO 8601 for API clients.
    return AuditEventResponse(
        id=event.id,
        occurred_at=event.occurred_at.isoformat(),
        tenant_id=event.tenant_id,
        actor_id=event.actor_id,
        actor_role=event.actor_role,
        action=event.action,
        outcome=event.outcome,
        resource_type=event.resource_type,
        resource_id=event.resource_id,
        new_values=event.new_values,
        request_id=event.request_id,
        ip_address=event.ip_address,
        user_agent=event.user_agent,
    )


def _database_error(exc: SQLAlchemyError, tenant_id: str) -> HTTPException:
    logger.error("audit_fetch_failed tenant_id=%s", tenant_id, exc_info=exc)
    return HTTPException(
        status_code=500,
        detail={"code": "INTERNAL_ERROR", "message": "Internal server error"},
    )


@router.get("/events", response_model=SuccessEnvelope[AuditEventsPage])
async def list_audit_events(
    request: Request,
    tenant_id: str | None = None,
    action: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Enforce tenant scoping even for admins to avoid cross-tenant data access.
    if tenant_id and tenant_id != principal.tenant_id:
        raise HTTPException(status_code=403, detail="Tenant scope does not match admin key")

    try:
        events = await audit_repo.list_events(
            db,
            tenant_id=principal.tenant_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            occurred_from=occurred_from,
            occurred_to=occurred_to,
            offset=offset,
            limit=limit + 1,
        )
    except SQLAlchemyError as exc:
        raise _database_error(exc, principal.tenant_id) from exc

    next_offset = None
    if len(events) > limit:
        events = events[:limit]
        next_offset = offset + limit

    page = AuditEventsPage(items=[_to_response(event) for event in events], next_offset=next_offset)
    return success_response(request=request, data=page)


@router.get("/events/{event_id}", response_model=SuccessEnvelope[AuditEventResponse])
async def get_audit_event(
    event_id: int,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        event = await audit_repo.get_event_by_id(db, tenant_id=principal.tenant_id, event_id=event_id)
    except SQLAlchemyError as exc:
        raise _database_error(exc, principal.tenant_id) from exc
    if event is None:
        raise HTTPException(status_code=404, detail="Audit event not found")
    return success_response(request=request, data=_to_response(event))
