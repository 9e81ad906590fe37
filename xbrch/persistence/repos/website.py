from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from xbrch.domain.models import WebsitePost


def _tenant_filters(tenant_id: str, *, post_type: str | None, status: str | None) -> list:
    filters = [WebsitePost.tenant_id == tenant_id]
    if post_type is not None:
        filters.append(WebsitePost.type == post_type)
    if status is not None:
        filters.append(WebsitePost.status == status)
    return filters


async def list_posts_by_tenant(
    session: AsyncSession,
    tenant_id: str,
    *,
    post_type: str | None = None,
    status: str | None = None,
    offset: int = 0,
    limit: int = 20,
) -> list[WebsitePost]:
    result = await session.execute(
        select(WebsitePost)
        .where(*_tenant_filters(tenant_id, post_type=post_type, status=status))
        .order_by(WebsitePost.created_at.desc(), WebsitePost.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def count_posts_by_tenant(
    session: AsyncSession,
    tenant_id: str,
    *,
    post_type: str | None = None,
    status: str | None = None,
) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(WebsitePost)
        .where(*_tenant_filters(tenant_id, post_type=post_type, status=status))
    )
    return int(result.scalar_one())


async def get_for_tenant(session: AsyncSession, tenant_id: str, post_id: str) -> WebsitePost | None:
    # Tenant scoping keeps other tenants' posts indistinguishable from missing ones.
    result = await session.execute(
        select(WebsitePost).where(WebsitePost.id == post_id, WebsitePost.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def delete_for_tenant(session: AsyncSession, tenant_id: str, post_id: str) -> bool:
    post = await get_for_tenant(session, tenant_id, post_id)
    if post is None:
        return False
    await session.delete(post)
    return True


async def stats_by_type(session: AsyncSession, tenant_id: str) -> list[tuple[str, int, int]]:
    # (type, count, total words) per post type.
    result = await session.execute(
        select(
            WebsitePost.type,
            func.count(),
            func.coalesce(func.sum(WebsitePost.word_count), 0),
        )
        .where(WebsitePost.tenant_id == tenant_id)
        .group_by(WebsitePost.type)
        .order_by(WebsitePost.type)
    )
    return [(row[0], int(row[1]), int(row[2])) for row in result.all()]


async def count_created_since(session: AsyncSession, tenant_id: str, since: datetime) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(WebsitePost)
        .where(WebsitePost.tenant_id == tenant_id, WebsitePost.created_at >= since)
    )
    return int(result.scalar_one())
