from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from xbrch.domain.models import AuditEvent


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"


@dataclass(frozen=True)
class RequestContext:
    # Request provenance stored with audit rows.
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_context(request: Request | None) -> RequestContext:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return RequestContext()
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return RequestContext(request_id=request_id, ip_address=ip_address, user_agent=user_agent)


def build_event(
    *,
    tenant_id: str | None,
    actor_id: str | None,
    actor_role: str | None,
    action: str,
    outcome: str = "success",
    resource_type: str | None = None,
    resource_id: str | None = None,
    new_values: dict[str, Any] | None = None,
    context: RequestContext | None = None,
    occurred_at: datetime | None = None,
) -> AuditEvent:
    context = context or RequestContext()
    return AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_id=actor_id,
        actor_role=actor_role,
        action=action,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        new_values=sanitize_metadata(new_values or {}),
        request_id=context.request_id,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    )


async def record_event(
    *,
    session: AsyncSession,
    tenant_id: str | None,
    actor_id: str | None,
    actor_role: str | None,
    action: str,
    outcome: str = "success",
    resource_type: str | None = None,
    resource_id: str | None = None,
    new_values: dict[str, Any] | None = None,
    context: RequestContext | None = None,
    occurred_at: datetime | None = None,
    commit: bool = False,
    best_effort: bool = True,
) -> None:
    """Append an audit row to ``session``.

    With ``commit=False`` the row joins the caller's open transaction and is
    written or rolled back together with it; that is how mutating actions
    keep their audit entry atomic with the change. ``best_effort`` only
    applies to standalone commits: failures are logged instead of raised.
    """
    event = build_event(
        tenant_id=tenant_id,
        actor_id=actor_id,
        actor_role=actor_role,
        action=action,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        new_values=new_values,
        context=context,
        occurred_at=occurred_at,
    )
    session.add(event)
    if not commit:
        return

    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        request_id = context.request_id if context else None
        if not best_effort:
            raise
        logger.warning(
            "audit_event_write_failed action=%s request_id=%s",
            action,
            request_id,
            exc_info=exc,
        )
