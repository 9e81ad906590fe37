from __future__ import annotations

import logging
import math
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from xbrch.apps.api.deps import Principal, get_broadcasts, get_db, require_role
from xbrch.apps.api.openapi import DEFAULT_ERROR_RESPONSES, QUOTA_ERROR_RESPONSE
from xbrch.apps.api.response import SuccessEnvelope, success_response
from xbrch.core.errors import DatabaseError, InvalidTransitionError, QuotaExceededError
from xbrch.domain.models import Broadcast, BroadcastOutput
from xbrch.persistence.repos import broadcasts as broadcasts_repo
from xbrch.services.audit import get_request_context
from xbrch.services.broadcasts import BroadcastService
from xbrch.services.oracle import OriginalityResult, ScoreResult


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/broadcasts", tags=["broadcasts"], responses=DEFAULT_ERROR_RESPONSES)

Platform = Literal["x", "facebook", "instagram", "linkedin", "whatsapp", "sms"]


def _internal_error() -> HTTPException:
    # Storage failures are opaque to clients; details stay in the logs.
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": "INTERNAL_ERROR", "message": "Internal server error"},
    )


class CreateBroadcastRequest(BaseModel):
    message: str = Field(max_length=5000)
    platforms: list[Platform] = Field(min_length=1)

    # Reject unknown fields so tenant_id cannot be supplied in the payload.
    model_config = {"extra": "forbid"}

    @field_validator("message")
    @classmethod
    def _non_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("message must not be empty")
        return stripped


class StatusUpdateRequest(BaseModel):
    status: Literal["published", "archived"]

    model_config = {"extra": "forbid"}


class OutputResponse(BaseModel):
    id: str
    platform: str
    content: str
    character_count: int
    published_at: str | None = None
    platform_post_id: str | None = None
    engagement_stats: dict[str, Any] | None = None


class BroadcastResponse(BaseModel):
    id: str
    original_message: str
    score: int
    confidence_badge: str
    originality_score: int
    status: str
    created_at: str
    outputs: list[OutputResponse] = Field(default_factory=list)


class UsageResponse(BaseModel):
    month: str
    used: int
    limit: int
    remaining: int


class CreateBroadcastResponse(BaseModel):
    broadcast: BroadcastResponse
    outputs: list[OutputResponse]
    scoring: ScoreResult
    originality: OriginalityResult
    usage: UsageResponse


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class BroadcastPage(BaseModel):
    items: list[BroadcastResponse]
    pagination: Pagination


def _output_response(output: BroadcastOutput) -> OutputResponse:
    return OutputResponse(
        id=output.id,
        platform=output.platform,
        content=output.content,
        character_count=output.character_count,
        published_at=output.published_at.isoformat() if output.published_at else None,
        platform_post_id=output.platform_post_id,
        engagement_stats=output.engagement_stats,
    )


def _broadcast_response(broadcast: Broadcast, *, include_outputs: bool = True) -> BroadcastResponse:
    return BroadcastResponse(
        id=broadcast.id,
        original_message=broadcast.original_message,
        score=broadcast.score,
        confidence_badge=broadcast.confidence_badge,
        originality_score=broadcast.originality_score,
        status=broadcast.status,
        created_at=broadcast.created_at.isoformat(),
        outputs=[_output_response(output) for output in broadcast.outputs] if include_outputs else [],
    )


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[CreateBroadcastResponse],
    responses=QUOTA_ERROR_RESPONSE,
)
async def create_broadcast(
    request: Request,
    payload: CreateBroadcastRequest,
    principal: Principal = Depends(require_role("user")),
    db: AsyncSession = Depends(get_db),
    service: BroadcastService = Depends(get_broadcasts),
) -> dict:
    try:
        result = await service.create_broadcast(
            db,
            actor=principal.as_actor(),
            message=payload.message,
            platforms=payload.platforms,
            context=get_request_context(request),
        )
    except QuotaExceededError as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "code": "QUOTA_EXCEEDED",
                "message": "Monthly limit reached",
                "used": exc.used,
                "limit": exc.limit,
            },
        ) from exc
    except (DatabaseError, SQLAlchemyError) as exc:
        logger.error(
            "broadcast_create_failed tenant_id=%s; broadcast and ledger may need reconciliation",
            principal.tenant_id,
            exc_info=exc,
        )
        raise _internal_error() from exc

    data = CreateBroadcastResponse(
        broadcast=_broadcast_response(result.broadcast, include_outputs=False),
        outputs=[_output_response(output) for output in result.outputs],
        scoring=result.scoring,
        originality=result.originality,
        usage=UsageResponse(
            month=result.usage.month,
            used=result.usage.used,
            limit=result.usage.limit,
            remaining=result.usage.remaining,
        ),
    )
    return success_response(request=request, data=data)


@router.get("", response_model=SuccessEnvelope[BroadcastPage])
async def list_broadcasts(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    principal: Principal = Depends(require_role("user")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    offset = (page - 1) * limit
    try:
        broadcasts = await broadcasts_repo.list_broadcasts_by_tenant(
            db, principal.tenant_id, offset=offset, limit=limit
        )
        total = await broadcasts_repo.count_broadcasts_by_tenant(db, principal.tenant_id)
    except SQLAlchemyError as exc:
        logger.error("broadcast_list_failed tenant_id=%s", principal.tenant_id, exc_info=exc)
        raise _internal_error() from exc

    data = BroadcastPage(
        items=[_broadcast_response(broadcast) for broadcast in broadcasts],
        pagination=Pagination(
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit),
        ),
    )
    return success_response(request=request, data=data)


@router.get("/{broadcast_id}", response_model=SuccessEnvelope[BroadcastResponse])
async def get_broadcast(
    broadcast_id: str,
    request: Request,
    principal: Principal = Depends(require_role("user")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        broadcast = await broadcasts_repo.get_for_tenant(db, principal.tenant_id, broadcast_id)
    except SQLAlchemyError as exc:
        logger.error("broadcast_fetch_failed tenant_id=%s", principal.tenant_id, exc_info=exc)
        raise _internal_error() from exc
    if broadcast is None:
        # Use 404 to avoid leaking cross-tenant broadcast existence.
        raise HTTPException(status_code=404, detail="Broadcast not found")
    return success_response(request=request, data=_broadcast_response(broadcast))


@router.patch("/{broadcast_id}/status", response_model=SuccessEnvelope[BroadcastResponse])
async def update_broadcast_status(
    broadcast_id: str,
    request: Request,
    payload: StatusUpdateRequest,
    principal: Principal = Depends(require_role("user")),
    db: AsyncSession = Depends(get_db),
    service: BroadcastService = Depends(get_broadcasts),
) -> dict:
    try:
        broadcast = await service.update_status(
            db,
            actor=principal.as_actor(),
            broadcast_id=broadcast_id,
            status=payload.status,
            context=get_request_context(request),
        )
    except InvalidTransitionError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "INVALID_STATUS_TRANSITION", "message": str(exc)},
        ) from exc
    except SQLAlchemyError as exc:
        logger.error("broadcast_status_failed tenant_id=%s", principal.tenant_id, exc_info=exc)
        raise _internal_error() from exc
    if broadcast is None:
        raise HTTPException(status_code=404, detail="Broadcast not found")
    return success_response(request=request, data=_broadcast_response(broadcast))


@router.delete("/{broadcast_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_broadcast(
    broadcast_id: str,
    request: Request,
    principal: Principal = Depends(require_role("user")),
    db: AsyncSession = Depends(get_db),
    service: BroadcastService = Depends(get_broadcasts),
) -> None:
    try:
        deleted = await service.delete_broadcast(
            db,
            actor=principal.as_actor(),
            broadcast_id=broadcast_id,
            context=get_request_context(request),
        )
    except SQLAlchemyError as exc:
        logger.error("broadcast_delete_failed tenant_id=%s", principal.tenant_id, exc_info=exc)
        raise _internal_error() from exc
    if not deleted:
        raise HTTPException(status_code=404, detail="Broadcast not found")
