from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from xbrch.domain.models import BusinessProfile, Tenant


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def get_business_profile(session: AsyncSession, tenant_id: str) -> BusinessProfile | None:
    result = await session.execute(
        select(BusinessProfile).where(BusinessProfile.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def upsert_business_profile(
    session: AsyncSession,
    tenant_id: str,
    *,
    name: str,
    city: str,
    industry: str | None,
    tone: str | None,
) -> BusinessProfile:
    # Profiles are one-per-tenant; update in place when present.
    profile = await get_business_profile(session, tenant_id)
    if profile is None:
        profile = BusinessProfile(tenant_id=tenant_id, name=name, city=city)
        session.add(profile)
    profile.name = name
    profile.city = city
    profile.industry = industry
    profile.tone = tone
    return profile


async def update_plan(
    session: AsyncSession,
    tenant_id: str,
    *,
    plan: str,
    monthly_limit: int,
) -> Tenant | None:
    # Fetch first to avoid accidental upserts of unknown tenants.
    tenant = await get_tenant(session, tenant_id)
    if tenant is None:
        return None
    tenant.plan = plan
    tenant.monthly_limit = monthly_limit
    return tenant
