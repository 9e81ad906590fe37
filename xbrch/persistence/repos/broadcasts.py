from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from xbrch.domain.models import Broadcast


async def recent_messages(session: AsyncSession, tenant_id: str, *, limit: int = 10) -> list[str]:
    # Newest first; feeds the originality comparison.
    result = await session.execute(
        select(Broadcast.original_message)
        .where(Broadcast.tenant_id == tenant_id)
        .order_by(Broadcast.created_at.desc(), Broadcast.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_broadcasts_by_tenant(
    session: AsyncSession,
    tenant_id: str,
    *,
    offset: int = 0,
    limit: int = 20,
) -> list[Broadcast]:
    # Stable ordering avoids non-deterministic pages for the same tenant.
    result = await session.execute(
        select(Broadcast)
        .options(selectinload(Broadcast.outputs))
        .where(Broadcast.tenant_id == tenant_id)
        .order_by(Broadcast.created_at.desc(), Broadcast.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def count_broadcasts_by_tenant(session: AsyncSession, tenant_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(Broadcast).where(Broadcast.tenant_id == tenant_id)
    )
    return int(result.scalar_one())


async def get_for_tenant(session: AsyncSession, tenant_id: str, broadcast_id: str) -> Broadcast | None:
    # Ensure tenant scoping to prevent cross-tenant broadcast access.
    result = await session.execute(
        select(Broadcast)
        .options(selectinload(Broadcast.outputs))
        .where(Broadcast.id == broadcast_id, Broadcast.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def delete_for_tenant(session: AsyncSession, tenant_id: str, broadcast_id: str) -> bool:
    # Outputs are loaded with the broadcast so the ORM cascade removes them too.
    broadcast = await get_for_tenant(session, tenant_id, broadcast_id)
    if broadcast is None:
        return False
    await session.delete(broadcast)
    return True
