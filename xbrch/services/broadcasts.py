from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable, Sequence
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from xbrch.core.config import get_settings
from xbrch.core.errors import InvalidTransitionError, QuotaExceededError
from xbrch.domain.models import AiTokenUsage, Broadcast, BroadcastOutput
from xbrch.persistence.db import unit_of_work
from xbrch.persistence.repos import broadcasts as broadcasts_repo
from xbrch.persistence.repos import tenants as tenants_repo
from xbrch.providers.llm.factory import get_llm_provider
from xbrch.services.audit import RequestContext, record_event
from xbrch.services.ledger import LedgerSnapshot, UsageLedger, get_usage_ledger, month_key
from xbrch.services.oracle import (
    DEFAULT_BUSINESS_CONTEXT,
    BusinessContext,
    ContentOracle,
    OriginalityResult,
    ScoreResult,
)


logger = logging.getLogger(__name__)

ACTION_CREATE = "CREATE_BROADCAST"
ACTION_DELETE = "DELETE_BROADCAST"
ACTION_UPDATE_STATUS = "UPDATE_BROADCAST_STATUS"

# Forward-only lifecycle: generated -> published -> archived.
_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "generated": frozenset({"published", "archived"}),
    "published": frozenset({"archived"}),
    "archived": frozenset(),
}

# Estimated split of the fixed per-platform token charge.
_PROMPT_TOKEN_SHARE = 0.7


@dataclass(frozen=True)
class Actor:
    # Authenticated caller identity used for ownership and audit rows.
    tenant_id: str
    actor_id: str
    role: str


@dataclass(frozen=True)
class BroadcastResult:
    broadcast: Broadcast
    outputs: list[BroadcastOutput]
    scoring: ScoreResult
    originality: OriginalityResult
    usage: LedgerSnapshot


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def dedupe_platforms(platforms: Sequence[str]) -> list[str]:
    # Keep the first occurrence of each platform, preserving request order.
    seen: set[str] = set()
    ordered: list[str] = []
    for platform in platforms:
        if platform not in seen:
            seen.add(platform)
            ordered.append(platform)
    return ordered


def business_context(profile) -> BusinessContext:
    # Substitute the generic profile rather than failing when none is stored.
    if profile is None:
        return DEFAULT_BUSINESS_CONTEXT
    return BusinessContext(
        name=profile.name,
        city=profile.city,
        industry=profile.industry or DEFAULT_BUSINESS_CONTEXT.industry,
        tone=profile.tone or DEFAULT_BUSINESS_CONTEXT.tone,
    )


class BroadcastService:
    def __init__(
        self,
        *,
        oracle: ContentOracle | None = None,
        ledger: UsageLedger | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._oracle = oracle or ContentOracle(get_llm_provider())
        self._ledger = ledger or get_usage_ledger()
        # Allow time injection so month attribution can be tested at boundaries.
        self._time_provider = time_provider or _utc_now

    @property
    def oracle(self) -> ContentOracle:
        return self._oracle

    async def aclose(self) -> None:
        await self._oracle.aclose()

    async def create_broadcast(
        self,
        session: AsyncSession,
        *,
        actor: Actor,
        message: str,
        platforms: Sequence[str],
        context: RequestContext | None = None,
    ) -> BroadcastResult:
        """Gate on quota, consult the oracle, then persist everything in one transaction.

        Raises :class:`QuotaExceededError` before any oracle call or write when
        the tenant has no broadcasts left this month. Oracle failures degrade
        to fallbacks. Database errors propagate with the transaction rolled back.
        """
        settings = get_settings()
        requested = dedupe_platforms(platforms)
        if not requested:
            raise ValueError("at least one platform is required")

        # Freeze the clock once so every month-keyed step lands in the same ledger row.
        now = self._time_provider()
        month = month_key(now)

        usage = await self._ledger.get_remaining(session, actor.tenant_id, month=month)
        if usage.exhausted:
            logger.warning(
                "broadcast_quota_exceeded tenant_id=%s month=%s used=%s limit=%s",
                actor.tenant_id,
                month,
                usage.used,
                usage.limit,
            )
            raise QuotaExceededError(used=usage.used, limit=usage.limit)

        profile = await tenants_repo.get_business_profile(session, actor.tenant_id)
        business = business_context(profile)
        history = await broadcasts_repo.recent_messages(
            session, actor.tenant_id, limit=settings.originality_history_size
        )
        # Release the read transaction before any external call.
        await session.commit()

        # Oracle calls run sequentially, one in flight per request, before any write.
        scoring = await self._oracle.score(message, requested[0], business)
        originality = await self._oracle.check_originality(message, history)
        adapted: list[tuple[str, str]] = []
        total_tokens = 0
        for platform in requested:
            content = await self._oracle.adapt(message, platform, business)
            adapted.append((platform, content))
            total_tokens += settings.tokens_per_platform

        async with unit_of_work(session):
            broadcast = Broadcast(
                id=uuid4().hex,
                tenant_id=actor.tenant_id,
                original_message=message,
                score=scoring.score,
                confidence_badge=originality.risk_tier,
                originality_score=originality.originality_score,
                status="generated",
                created_at=now,
            )
            outputs = [
                BroadcastOutput(
                    id=uuid4().hex,
                    position=position,
                    platform=platform,
                    content=content,
                    character_count=len(content),
                    created_at=now,
                )
                for position, (platform, content) in enumerate(adapted)
            ]
            broadcast.outputs = outputs
            session.add(broadcast)
            await session.flush()

            updated_usage = await self._ledger.record_usage(
                session, actor.tenant_id, total_tokens, month=month
            )
            prompt_tokens = int(total_tokens * _PROMPT_TOKEN_SHARE)
            session.add(
                AiTokenUsage(
                    tenant_id=actor.tenant_id,
                    model=settings.openai_model,
                    prompt_tokens=prompt_tokens,
                    completion_tokens=total_tokens - prompt_tokens,
                    total_tokens=total_tokens,
                    operation_type="broadcast",
                    created_at=now,
                )
            )
            await record_event(
                session=session,
                tenant_id=actor.tenant_id,
                actor_id=actor.actor_id,
                actor_role=actor.role,
                action=ACTION_CREATE,
                resource_type="broadcast",
                resource_id=broadcast.id,
                new_values={"platforms": requested, "score": scoring.score},
                context=context,
                occurred_at=now,
            )

        logger.info(
            "broadcast_created tenant_id=%s broadcast_id=%s platforms=%s month=%s used=%s",
            actor.tenant_id,
            broadcast.id,
            ",".join(requested),
            month,
            updated_usage.used,
        )
        return BroadcastResult(
            broadcast=broadcast,
            outputs=outputs,
            scoring=scoring,
            originality=originality,
            usage=updated_usage,
        )

    async def delete_broadcast(
        self,
        session: AsyncSession,
        *,
        actor: Actor,
        broadcast_id: str,
        context: RequestContext | None = None,
    ) -> bool:
        # Usage counters are not refunded when a broadcast is deleted.
        async with unit_of_work(session):
            deleted = await broadcasts_repo.delete_for_tenant(session, actor.tenant_id, broadcast_id)
            if not deleted:
                return False
            await record_event(
                session=session,
                tenant_id=actor.tenant_id,
                actor_id=actor.actor_id,
                actor_role=actor.role,
                action=ACTION_DELETE,
                resource_type="broadcast",
                resource_id=broadcast_id,
                context=context,
            )
        return True

    async def update_status(
        self,
        session: AsyncSession,
        *,
        actor: Actor,
        broadcast_id: str,
        status: str,
        context: RequestContext | None = None,
    ) -> Broadcast | None:
        async with unit_of_work(session):
            broadcast = await broadcasts_repo.get_for_tenant(session, actor.tenant_id, broadcast_id)
            if broadcast is None:
                return None
            allowed = _ALLOWED_TRANSITIONS.get(broadcast.status, frozenset())
            if status not in allowed:
                raise InvalidTransitionError(
                    f"Cannot change broadcast status from {broadcast.status} to {status}"
                )
            previous = broadcast.status
            broadcast.status = status
            if status == "published":
                published_at = self._time_provider()
                for output in broadcast.outputs:
                    if output.published_at is None:
                        output.published_at = published_at
            await record_event(
                session=session,
                tenant_id=actor.tenant_id,
                actor_id=actor.actor_id,
                actor_role=actor.role,
                action=ACTION_UPDATE_STATUS,
                resource_type="broadcast",
                resource_id=broadcast_id,
                new_values={"from": previous, "status": status},
                context=context,
            )
        return broadcast


_broadcast_service: BroadcastService | None = None


def get_broadcast_service() -> BroadcastService:
    # Cache the service (and its oracle HTTP client) for reuse across requests.
    global _broadcast_service
    if _broadcast_service is None:
        _broadcast_service = BroadcastService()
    return _broadcast_service


async def close_broadcast_service() -> None:
    # Release the cached oracle client at shutdown.
    global _broadcast_service
    service = _broadcast_service
    _broadcast_service = None
    if service is not None:
        await service.aclose()


def reset_broadcast_service() -> None:
    # Reset cached services for deterministic tests.
    global _broadcast_service
    _broadcast_service = None
