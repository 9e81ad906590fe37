from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from xbrch.domain.models import BusinessProfile, Tenant, WallUpdate


@dataclass(frozen=True)
class WallStats:
    total_updates: int
    total_views: int
    updates_with_images: int
    updates_with_links: int
    recent_updates: int


async def list_updates_by_tenant(
    session: AsyncSession,
    tenant_id: str,
    *,
    offset: int = 0,
    limit: int = 20,
    public_only: bool = False,
) -> list[WallUpdate]:
    stmt = select(WallUpdate).where(WallUpdate.tenant_id == tenant_id)
    if public_only:
        stmt = stmt.where(WallUpdate.is_public.is_(True))
    result = await session.execute(
        stmt.order_by(WallUpdate.created_at.desc(), WallUpdate.id.desc()).offset(offset).limit(limit)
    )
    return list(result.scalars().all())


async def count_updates_by_tenant(session: AsyncSession, tenant_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(WallUpdate).where(WallUpdate.tenant_id == tenant_id)
    )
    return int(result.scalar_one())


async def get_for_tenant(session: AsyncSession, tenant_id: str, update_id: str) -> WallUpdate | None:
    result = await session.execute(
        select(WallUpdate).where(WallUpdate.id == update_id, WallUpdate.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def increment_views(session: AsyncSession, update_id: str) -> None:
    # Single UPDATE so concurrent readers never lose a view.
    await session.execute(
        update(WallUpdate)
        .where(WallUpdate.id == update_id)
        .values(view_count=WallUpdate.view_count + 1)
    )


async def delete_for_tenant(session: AsyncSession, tenant_id: str, update_id: str) -> bool:
    wall_update = await get_for_tenant(session, tenant_id, update_id)
    if wall_update is None:
        return False
    await session.delete(wall_update)
    return True


async def stats_for_tenant(session: AsyncSession, tenant_id: str, *, since: datetime) -> WallStats:
    result = await session.execute(
        select(
            func.count(),
            func.coalesce(func.sum(WallUpdate.view_count), 0),
            func.count(WallUpdate.image_url),
            func.count(WallUpdate.link_url),
        ).where(WallUpdate.tenant_id == tenant_id)
    )
    total, views, with_images, with_links = result.one()
    recent = await session.execute(
        select(func.count())
        .select_from(WallUpdate)
        .where(WallUpdate.tenant_id == tenant_id, WallUpdate.created_at >= since)
    )
    return WallStats(
        total_updates=int(total),
        total_views=int(views),
        updates_with_images=int(with_images),
        updates_with_links=int(with_links),
        recent_updates=int(recent.scalar_one()),
    )


async def profiles_matching(session: AsyncSession, fragment: str) -> list[BusinessProfile]:
    # Candidates only; callers match the exact slug.
    result = await session.execute(
        select(BusinessProfile)
        .join(Tenant, BusinessProfile.tenant_id == Tenant.id)
        .where(
            Tenant.is_active.is_(True),
            func.lower(BusinessProfile.name).like(f"%{fragment.lower()}%"),
        )
        .order_by(BusinessProfile.tenant_id)
    )
    return list(result.scalars().all())
