from __future__ import annotations

import pytest
from sqlalchemy import select

from xbrch.domain.models import ApiKey, Tenant
from xbrch.services.auth.api_keys import (
    generate_api_key,
    hash_api_key,
    normalize_plan,
    normalize_role,
    provision_tenant,
    role_allows,
)


def test_generated_key_embeds_id_and_hash() -> None:
    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    assert raw_key.startswith(f"xbk_{key_id}_")
    assert raw_key.startswith(key_prefix)
    assert key_hash == hash_api_key(raw_key)
    assert key_hash != raw_key


def test_role_and_plan_normalization() -> None:
    assert normalize_role(" Admin ") == "admin"
    assert normalize_plan("PRO") == "pro"
    with pytest.raises(ValueError):
        normalize_role("owner")
    with pytest.raises(ValueError):
        normalize_plan("enterprise")


def test_role_ranking() -> None:
    assert role_allows(role="admin", minimum_role="user")
    assert role_allows(role="user", minimum_role="user")
    assert not role_allows(role="user", minimum_role="admin")
    assert not role_allows(role="guest", minimum_role="user")


async def test_provision_tenant_applies_plan_limit(database) -> None:
    async with database.session() as session:
        issued = await provision_tenant(session, email="owner@example.com", plan="pro")
        await session.commit()

    async with database.session() as session:
        tenant = await session.get(Tenant, issued.tenant_id)
        api_key = (
            await session.execute(select(ApiKey).where(ApiKey.id == issued.key_id))
        ).scalar_one()
    assert tenant.plan == "pro"
    assert tenant.monthly_limit == 100
    assert tenant.role == "user"
    assert api_key.key_hash == hash_api_key(issued.raw_key)
    assert api_key.key_prefix == issued.key_prefix


async def test_explicit_limit_overrides_plan(database) -> None:
    async with database.session() as session:
        issued = await provision_tenant(session, email=None, plan="authority", monthly_limit=3)
        await session.commit()
    async with database.session() as session:
        tenant = await session.get(Tenant, issued.tenant_id)
    assert tenant.monthly_limit == 3
