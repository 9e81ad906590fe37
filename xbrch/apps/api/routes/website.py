from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import math
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from xbrch.apps.api.deps import Principal, get_db, get_website, require_role
from xbrch.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from xbrch.apps.api.response import SuccessEnvelope, success_response
from xbrch.apps.api.routes.broadcasts import Pagination
from xbrch.core.text import count_words
from xbrch.domain.models import WebsitePost
from xbrch.persistence.db import unit_of_work
from xbrch.persistence.repos import website as website_repo
from xbrch.services.audit import get_request_context, record_event
from xbrch.services.website import ACTION_DELETE_POST, ACTION_UPDATE_POST, WebsiteService


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/website", tags=["website"], responses=DEFAULT_ERROR_RESPONSES)

PostType = Literal["announcement", "blog"]
PostStatus = Literal["draft", "published", "archived"]

_RECENT_WINDOW = timedelta(days=30)


def _stripped(value: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError("must not be empty")
    return stripped


class AnnouncementRequest(BaseModel):
    message: str = Field(max_length=5000)
    publish_immediately: bool = False

    model_config = {"extra": "forbid"}

    @field_validator("message")
    @classmethod
    def _non_blank(cls, value: str) -> str:
        return _stripped(value)


class BlogRequest(BaseModel):
    topic: str = Field(max_length=300)
    publish_immediately: bool = False

    model_config = {"extra": "forbid"}

    @field_validator("topic")
    @classmethod
    def _non_blank(cls, value: str) -> str:
        return _stripped(value)


class UpdatePostRequest(BaseModel):
    title: str | None = Field(default=None, max_length=200)
    content: str | None = None
    status: PostStatus | None = None

    model_config = {"extra": "forbid"}

    @field_validator("title", "content")
    @classmethod
    def _non_blank(cls, value: str | None) -> str | None:
        return _stripped(value) if value is not None else None


class WebsitePostResponse(BaseModel):
    id: str
    type: str
    title: str
    content: str
    slug: str
    meta_description: str | None
    meta_keywords: str | None
    status: str
    word_count: int
    published_at: str | None
    created_at: str
    updated_at: str | None


class WebsitePostPage(BaseModel):
    items: list[WebsitePostResponse]
    pagination: Pagination


class PostTypeStats(BaseModel):
    type: str
    count: int
    total_words: int
    avg_words: int


class WebsiteStatsResponse(BaseModel):
    by_type: list[PostTypeStats]
    recent_posts: int


def _post_response(post: WebsitePost) -> WebsitePostResponse:
    return WebsitePostResponse(
        id=post.id,
        type=post.type,
        title=post.title,
        content=post.content,
        slug=post.slug,
        meta_description=post.meta_description,
        meta_keywords=post.meta_keywords,
        status=post.status,
        word_count=post.word_count,
        published_at=post.published_at.isoformat() if post.published_at else None,
        created_at=post.created_at.isoformat(),
        updated_at=post.updated_at.isoformat() if post.updated_at else None,
    )


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Post not found")


@router.post(
    "/announcement",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[WebsitePostResponse],
)
async def create_announcement(
    request: Request,
    payload: AnnouncementRequest,
    principal: Principal = Depends(require_role("user")),
    db: AsyncSession = Depends(get_db),
    service: WebsiteService = Depends(get_website),
) -> dict:
    post = await service.create_announcement(
        db,
        actor=principal.as_actor(),
        message=payload.message,
        publish=payload.publish_immediately,
        context=get_request_context(request),
    )
    return success_response(request=request, data=_post_response(post))


@router.post(
    "/blog",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[WebsitePostResponse],
)
async def create_blog_post(
    request: Request,
    payload: BlogRequest,
    principal: Principal = Depends(require_role("user")),
    db: AsyncSession = Depends(get_db),
    service: WebsiteService = Depends(get_website),
) -> dict:
    post = await service.create_blog_post(
        db,
        actor=principal.as_actor(),
        topic=payload.topic,
        publish=payload.publish_immediately,
        context=get_request_context(request),
    )
    return success_response(request=request, data=_post_response(post))


@router.get("/posts", response_model=SuccessEnvelope[WebsitePostPage])
async def list_posts(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    post_type: PostType | None = Query(default=None, alias="type"),
    post_status: PostStatus | None = Query(default=None, alias="status"),
    principal: Principal = Depends(require_role("user")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    posts = await website_repo.list_posts_by_tenant(
        db,
        principal.tenant_id,
        post_type=post_type,
        status=post_status,
        offset=(page - 1) * limit,
        limit=limit,
    )
    total = await website_repo.count_posts_by_tenant(
        db, principal.tenant_id, post_type=post_type, status=post_status
    )
    data = WebsitePostPage(
        items=[_post_response(post) for post in posts],
        pagination=Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
    )
    return success_response(request=request, data=data)


@router.get("/posts/{post_id}", response_model=SuccessEnvelope[WebsitePostResponse])
async def get_post(
    post_id: str,
    request: Request,
    principal: Principal = Depends(require_role("user")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    post = await website_repo.get_for_tenant(db, principal.tenant_id, post_id)
    if post is None:
        raise _not_found()
    return success_response(request=request, data=_post_response(post))


@router.put("/posts/{post_id}", response_model=SuccessEnvelope[WebsitePostResponse])
async def update_post(
    post_id: str,
    request: Request,
    payload: UpdatePostRequest,
    principal: Principal = Depends(require_role("user")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    changes = payload.model_dump(exclude_none=True)
    async with unit_of_work(db):
        post = await website_repo.get_for_tenant(db, principal.tenant_id, post_id)
        if post is None:
            raise _not_found()
        now = datetime.now(timezone.utc)
        if payload.title is not None:
            post.title = payload.title
        if payload.content is not None:
            post.content = payload.content
            post.word_count = count_words(payload.content)
        if payload.status is not None:
            post.status = payload.status
            if payload.status == "published" and post.published_at is None:
                post.published_at = now
        post.updated_at = now
        await record_event(
            session=db,
            tenant_id=principal.tenant_id,
            actor_id=principal.api_key_id,
            actor_role=principal.role,
            action=ACTION_UPDATE_POST,
            resource_type="website_post",
            resource_id=post_id,
            new_values={key: value for key, value in changes.items() if key != "content"},
            context=get_request_context(request),
        )
    logger.info("website_post_updated tenant_id=%s post_id=%s", principal.tenant_id, post_id)
    return success_response(request=request, data=_post_response(post))


@router.delete("/posts/{post_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_post(
    post_id: str,
    request: Request,
    principal: Principal = Depends(require_role("user")),
    db: AsyncSession = Depends(get_db),
) -> None:
    async with unit_of_work(db):
        deleted = await website_repo.delete_for_tenant(db, principal.tenant_id, post_id)
        if not deleted:
            raise _not_found()
        await record_event(
            session=db,
            tenant_id=principal.tenant_id,
            actor_id=principal.api_key_id,
            actor_role=principal.role,
            action=ACTION_DELETE_POST,
            resource_type="website_post",
            resource_id=post_id,
            context=get_request_context(request),
        )


@router.get("/stats", response_model=SuccessEnvelope[WebsiteStatsResponse])
async def website_stats(
    request: Request,
    principal: Principal = Depends(require_role("user")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await website_repo.stats_by_type(db, principal.tenant_id)
    recent = await website_repo.count_created_since(
        db, principal.tenant_id, datetime.now(timezone.utc) - _RECENT_WINDOW
    )
    data = WebsiteStatsResponse(
        by_type=[
            PostTypeStats(
                type=post_type,
                count=count,
                total_words=total_words,
                avg_words=round(total_words / count) if count else 0,
            )
            for post_type, count, total_words in rows
        ],
        recent_posts=recent,
    )
    return success_response(request=request, data=data)
