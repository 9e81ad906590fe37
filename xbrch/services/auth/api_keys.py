from __future__ import annotations

from dataclasses import dataclass
import hashlib
import secrets
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from xbrch.core.config import PLANS, get_settings
from xbrch.domain.models import ApiKey, Tenant


ROLE_ORDER: dict[str, int] = {
    "user": 1,
    "admin": 2,
}

_KEY_PREFIX = "xbk"


@dataclass(frozen=True)
class IssuedKey:
    # The raw key is only ever available at issue time.
    tenant_id: str
    key_id: str
    key_prefix: str
    raw_key: str


def normalize_role(role: str) -> str:
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def normalize_plan(plan: str) -> str:
    normalized = plan.strip().lower()
    if normalized not in PLANS:
        raise ValueError(f"Unsupported plan: {plan}")
    return normalized


def role_allows(*, role: str, minimum_role: str) -> bool:
    # Compare roles by rank; unknown roles never pass.
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def hash_api_key(raw_key: str) -> str:
    # Only the SHA-256 digest is stored.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key() -> tuple[str, str, str, str]:
    # Returns (key_id, raw_key, key_prefix, key_hash); the id is embedded for traceability.
    key_id = uuid4().hex
    raw_key = f"{_KEY_PREFIX}_{key_id}_{secrets.token_urlsafe(32)}"
    return key_id, raw_key, raw_key[:12], hash_api_key(raw_key)


async def provision_tenant(
    session: AsyncSession,
    *,
    email: str | None,
    plan: str = "free",
    role: str = "user",
    monthly_limit: int | None = None,
    key_name: str | None = None,
    tenant_id: str | None = None,
) -> IssuedKey:
    """Create a tenant with its first API key; the caller commits.

    The monthly limit follows the plan unless given explicitly.
    """
    resolved_plan = normalize_plan(plan)
    tenant = Tenant(
        id=tenant_id or uuid4().hex,
        email=email,
        role=normalize_role(role),
        plan=resolved_plan,
        monthly_limit=(
            monthly_limit if monthly_limit is not None else get_settings().plan_limit(resolved_plan)
        ),
        is_active=True,
    )
    session.add(tenant)
    # Flush the tenant before the key to satisfy the foreign key.
    await session.flush()
    return await issue_api_key(session, tenant_id=tenant.id, name=key_name)


async def issue_api_key(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str | None = None,
) -> IssuedKey:
    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    session.add(
        ApiKey(
            id=key_id,
            tenant_id=tenant_id,
            key_prefix=key_prefix,
            key_hash=key_hash,
            name=name,
        )
    )
    return IssuedKey(tenant_id=tenant_id, key_id=key_id, key_prefix=key_prefix, raw_key=raw_key)
