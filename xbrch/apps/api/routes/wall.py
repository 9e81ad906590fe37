from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import math
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, HttpUrl, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from xbrch.apps.api.deps import Principal, get_db, require_role
from xbrch.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from xbrch.apps.api.response import SuccessEnvelope, success_response
from xbrch.apps.api.routes.broadcasts import Pagination
from xbrch.core.text import slugify, timestamped_slug
from xbrch.domain.models import WallUpdate
from xbrch.persistence.db import unit_of_work
from xbrch.persistence.repos import tenants as tenants_repo
from xbrch.persistence.repos import wall as wall_repo
from xbrch.services.audit import get_request_context, record_event


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/wall", tags=["wall"], responses=DEFAULT_ERROR_RESPONSES)

ACTION_CREATE_UPDATE = "CREATE_WALL_UPDATE"
ACTION_UPDATE_UPDATE = "UPDATE_WALL_UPDATE"
ACTION_DELETE_UPDATE = "DELETE_WALL_UPDATE"

_RECENT_WINDOW = timedelta(days=30)
_PUBLIC_WALL_SIZE = 50


def _stripped(value: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError("content must not be empty")
    return stripped


class CreateWallUpdateRequest(BaseModel):
    content: str = Field(max_length=300)
    image_url: HttpUrl | None = None
    link_url: HttpUrl | None = None
    link_title: str | None = Field(default=None, max_length=200)
    is_public: bool = True

    model_config = {"extra": "forbid"}

    @field_validator("content")
    @classmethod
    def _non_blank(cls, value: str) -> str:
        return _stripped(value)


class EditWallUpdateRequest(BaseModel):
    content: str | None = Field(default=None, max_length=300)
    image_url: HttpUrl | None = None
    link_url: HttpUrl | None = None
    link_title: str | None = Field(default=None, max_length=200)
    is_public: bool | None = None

    model_config = {"extra": "forbid"}

    @field_validator("content")
    @classmethod
    def _non_blank(cls, value: str | None) -> str | None:
        return _stripped(value) if value is not None else None


class WallUpdateResponse(BaseModel):
    id: str
    content: str
    image_url: str | None
    link_url: str | None
    link_title: str | None
    slug: str
    is_public: bool
    view_count: int
    created_at: str
    updated_at: str | None


class WallUpdatePage(BaseModel):
    items: list[WallUpdateResponse]
    pagination: Pagination


class WallStatsResponse(BaseModel):
    total_updates: int
    total_views: int
    updates_with_images: int
    updates_with_links: int
    recent_updates: int


class PublicWallResponse(BaseModel):
    business_name: str
    city: str
    slug: str
    updates: list[WallUpdateResponse]


def _url(value: HttpUrl | None) -> str | None:
    return str(value) if value is not None else None


def _update_response(wall_update: WallUpdate) -> WallUpdateResponse:
    return WallUpdateResponse(
        id=wall_update.id,
        content=wall_update.content,
        image_url=wall_update.image_url,
        link_url=wall_update.link_url,
        link_title=wall_update.link_title,
        slug=wall_update.slug,
        is_public=wall_update.is_public,
        view_count=wall_update.view_count,
        created_at=wall_update.created_at.isoformat(),
        updated_at=wall_update.updated_at.isoformat() if wall_update.updated_at else None,
    )


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Update not found")


@router.post(
    "/updates",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[WallUpdateResponse],
)
async def create_wall_update(
    request: Request,
    payload: CreateWallUpdateRequest,
    principal: Principal = Depends(require_role("user")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    now = datetime.now(timezone.utc)
    async with unit_of_work(db):
        profile = await tenants_repo.get_business_profile(db, principal.tenant_id)
        # Wall slugs start from the business name so public links read naturally.
        slug = timestamped_slug(profile.name if profile else "business", now)
        wall_update = WallUpdate(
            id=uuid4().hex,
            tenant_id=principal.tenant_id,
            content=payload.content,
            image_url=_url(payload.image_url),
            link_url=_url(payload.link_url),
            link_title=payload.link_title,
            slug=slug,
            is_public=payload.is_public,
            view_count=0,
            created_at=now,
            updated_at=now,
        )
        db.add(wall_update)
        await db.flush()
        await record_event(
            session=db,
            tenant_id=principal.tenant_id,
            actor_id=principal.api_key_id,
            actor_role=principal.role,
            action=ACTION_CREATE_UPDATE,
            resource_type="wall_update",
            resource_id=wall_update.id,
            new_values={"content": payload.content, "is_public": payload.is_public},
            context=get_request_context(request),
            occurred_at=now,
        )
    logger.info("wall_update_created tenant_id=%s update_id=%s", principal.tenant_id, wall_update.id)
    return success_response(request=request, data=_update_response(wall_update))


@router.get("/updates", response_model=SuccessEnvelope[WallUpdatePage])
async def list_wall_updates(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    principal: Principal = Depends(require_role("user")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    updates = await wall_repo.list_updates_by_tenant(
        db, principal.tenant_id, offset=(page - 1) * limit, limit=limit
    )
    total = await wall_repo.count_updates_by_tenant(db, principal.tenant_id)
    data = WallUpdatePage(
        items=[_update_response(wall_update) for wall_update in updates],
        pagination=Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
    )
    return success_response(request=request, data=data)


@router.get("/updates/{update_id}", response_model=SuccessEnvelope[WallUpdateResponse])
async def get_wall_update(
    update_id: str,
    request: Request,
    principal: Principal = Depends(require_role("user")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    async with unit_of_work(db):
        wall_update = await wall_repo.get_for_tenant(db, principal.tenant_id, update_id)
        if wall_update is None:
            raise _not_found()
        await wall_repo.increment_views(db, update_id)
        await db.refresh(wall_update)
    return success_response(request=request, data=_update_response(wall_update))


@router.put("/updates/{update_id}", response_model=SuccessEnvelope[WallUpdateResponse])
async def edit_wall_update(
    update_id: str,
    request: Request,
    payload: EditWallUpdateRequest,
    principal: Principal = Depends(require_role("user")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Only fields present in the body change; explicit nulls clear optional links.
    provided = payload.model_fields_set
    async with unit_of_work(db):
        wall_update = await wall_repo.get_for_tenant(db, principal.tenant_id, update_id)
        if wall_update is None:
            raise _not_found()
        if "content" in provided and payload.content is not None:
            wall_update.content = payload.content
        if "image_url" in provided:
            wall_update.image_url = _url(payload.image_url)
        if "link_url" in provided:
            wall_update.link_url = _url(payload.link_url)
        if "link_title" in provided:
            wall_update.link_title = payload.link_title
        if "is_public" in provided and payload.is_public is not None:
            wall_update.is_public = payload.is_public
        wall_update.updated_at = datetime.now(timezone.utc)
        await record_event(
            session=db,
            tenant_id=principal.tenant_id,
            actor_id=principal.api_key_id,
            actor_role=principal.role,
            action=ACTION_UPDATE_UPDATE,
            resource_type="wall_update",
            resource_id=update_id,
            new_values={"content": wall_update.content, "is_public": wall_update.is_public},
            context=get_request_context(request),
        )
    return success_response(request=request, data=_update_response(wall_update))


@router.delete("/updates/{update_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_wall_update(
    update_id: str,
    request: Request,
    principal: Principal = Depends(require_role("user")),
    db: AsyncSession = Depends(get_db),
) -> None:
    async with unit_of_work(db):
        deleted = await wall_repo.delete_for_tenant(db, principal.tenant_id, update_id)
        if not deleted:
            raise _not_found()
        await record_event(
            session=db,
            tenant_id=principal.tenant_id,
            actor_id=principal.api_key_id,
            actor_role=principal.role,
            action=ACTION_DELETE_UPDATE,
            resource_type="wall_update",
            resource_id=update_id,
            context=get_request_context(request),
        )


@router.get("/stats", response_model=SuccessEnvelope[WallStatsResponse])
async def wall_stats(
    request: Request,
    principal: Principal = Depends(require_role("user")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    stats = await wall_repo.stats_for_tenant(
        db, principal.tenant_id, since=datetime.now(timezone.utc) - _RECENT_WINDOW
    )
    data = WallStatsResponse(
        total_updates=stats.total_updates,
        total_views=stats.total_views,
        updates_with_images=stats.updates_with_images,
        updates_with_links=stats.updates_with_links,
        recent_updates=stats.recent_updates,
    )
    return success_response(request=request, data=data)


@router.get("/public/{business_slug}", response_model=SuccessEnvelope[PublicWallResponse])
async def public_wall(
    business_slug: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Unauthenticated: only public updates of the matching business are listed.
    slug = slugify(business_slug, default="")
    profile = None
    if slug:
        candidates = await wall_repo.profiles_matching(db, slug.split("-")[0])
        profile = next((item for item in candidates if slugify(item.name) == slug), None)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Business not found")
    updates = await wall_repo.list_updates_by_tenant(
        db, profile.tenant_id, limit=_PUBLIC_WALL_SIZE, public_only=True
    )
    data = PublicWallResponse(
        business_name=profile.name,
        city=profile.city,
        slug=slug,
        updates=[_update_response(wall_update) for wall_update in updates],
    )
    return success_response(request=request, data=data)
