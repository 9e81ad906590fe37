from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from xbrch.core.config import get_settings
from xbrch.core.errors import DatabaseError
from xbrch.domain.models import Tenant, UsageLedgerEntry


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerSnapshot:
    # Usage for one tenant-month; remaining may be <= 0 when the quota is spent.
    month: str
    used: int
    limit: int
    remaining: int
    ai_tokens_used: int = 0

    @property
    def exhausted(self) -> bool:
        return self.remaining <= 0


def _utc_now() -> datetime:
    # Use UTC for consistent month boundaries.
    return datetime.now(timezone.utc)


def month_key(now: datetime) -> str:
    # Normalize to the UTC calendar month, formatted YYYY-MM.
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return f"{now.year:04d}-{now.month:02d}"


def _insert_for(session: AsyncSession):
    # Pick the dialect insert that supports ON CONFLICT for the bound engine.
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Atomic ledger upsert not supported on dialect: {dialect}")


class UsageLedger:
    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        # Allow time injection for deterministic rollover tests.
        self._time_provider = time_provider or _utc_now

    def now(self) -> datetime:
        return self._time_provider()

    def current_month(self) -> str:
        return month_key(self._time_provider())

    async def get_remaining(
        self,
        session: AsyncSession,
        tenant_id: str,
        *,
        month: str | None = None,
    ) -> LedgerSnapshot:
        # Read counters and the tenant limit; absent rows read as zero usage.
        resolved_month = month or self.current_month()
        limit = await _tenant_limit(session, tenant_id)
        # Column select reads the stored values, not a possibly stale identity-map row.
        result = await session.execute(
            select(UsageLedgerEntry.broadcasts_used, UsageLedgerEntry.ai_tokens_used).where(
                UsageLedgerEntry.tenant_id == tenant_id,
                UsageLedgerEntry.month == resolved_month,
            )
        )
        row = result.first()
        used = int(row.broadcasts_used or 0) if row else 0
        tokens = int(row.ai_tokens_used or 0) if row else 0
        return LedgerSnapshot(
            month=resolved_month,
            used=used,
            limit=limit,
            remaining=limit - used,
            ai_tokens_used=tokens,
        )

    async def record_usage(
        self,
        session: AsyncSession,
        tenant_id: str,
        tokens_consumed: int,
        *,
        month: str | None = None,
    ) -> LedgerSnapshot:
        """Add one broadcast and ``tokens_consumed`` tokens to the tenant-month.

        The increment is a single ``INSERT ... ON CONFLICT DO UPDATE`` so
        concurrent callers never lose updates. The caller owns the
        transaction; the returned snapshot is read inside it.
        """
        resolved_month = month or self.current_month()
        tokens = max(0, int(tokens_consumed))
        insert = _insert_for(session)
        stmt = insert(UsageLedgerEntry).values(
            tenant_id=tenant_id,
            month=resolved_month,
            broadcasts_used=1,
            ai_tokens_used=tokens,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[UsageLedgerEntry.tenant_id, UsageLedgerEntry.month],
            set_={
                "broadcasts_used": UsageLedgerEntry.broadcasts_used + 1,
                "ai_tokens_used": UsageLedgerEntry.ai_tokens_used + tokens,
                "updated_at": func.now(),
            },
        )
        await session.execute(stmt)
        snapshot = await self.get_remaining(session, tenant_id, month=resolved_month)
        if snapshot.used < 1:
            raise DatabaseError("ledger upsert failed unexpectedly")
        logger.debug(
            "ledger_usage_recorded tenant_id=%s month=%s used=%s tokens=%s",
            tenant_id,
            resolved_month,
            snapshot.used,
            snapshot.ai_tokens_used,
        )
        return snapshot


async def _tenant_limit(session: AsyncSession, tenant_id: str) -> int:
    # Fall back to the default limit when the tenant has none stored.
    result = await session.execute(select(Tenant.monthly_limit).where(Tenant.id == tenant_id))
    limit = result.scalar_one_or_none()
    if limit is None:
        return get_settings().default_monthly_limit
    return int(limit)


_ledger: UsageLedger | None = None


def get_usage_ledger() -> UsageLedger:
    # Cache the ledger for reuse across requests.
    global _ledger
    if _ledger is None:
        _ledger = UsageLedger()
    return _ledger


def reset_usage_ledger() -> None:
    # Reset cached services for deterministic tests.
    global _ledger
    _ledger = None
