from __future__ import annotations

import pytest
from sqlalchemy import func, inspect, select

from xbrch.domain.models import AuditEvent
from xbrch.services.audit import record_event, sanitize_metadata
from xbrch.tests.utils.auth import create_test_tenant


def test_audit_redacts_keys_and_secrets() -> None:
    payload = {
        "api_key": "xbk_secret",
        "client_secret": "super-secret",
        "nested": {"Authorization": "Bearer abc", "items": [{"password": "hunter2"}]},
        "platforms": ["x", "sms"],
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["api_key"] == "[REDACTED]"
    assert sanitized["client_secret"] == "[REDACTED]"
    assert sanitized["nested"]["Authorization"] == "[REDACTED]"
    assert sanitized["nested"]["items"][0]["password"] == "[REDACTED]"
    assert sanitized["platforms"] == ["x", "sms"]


async def test_event_rolls_back_with_callers_transaction(database) -> None:
    tenant_id, _headers = await create_test_tenant(database)
    async with database.session() as session:
        with pytest.raises(RuntimeError):
            async with session.begin():
                await record_event(
                    session=session,
                    tenant_id=tenant_id,
                    actor_id="key-1",
                    actor_role="user",
                    action="CREATE_BROADCAST",
                )
                await session.flush()
                raise RuntimeError("write failed")

    async with database.session() as session:
        count = (
            await session.execute(select(func.count()).select_from(AuditEvent))
        ).scalar_one()
    assert count == 0


async def test_standalone_event_commits_sanitized_values(database) -> None:
    tenant_id, _headers = await create_test_tenant(database)
    async with database.session() as session:
        await record_event(
            session=session,
            tenant_id=tenant_id,
            actor_id="create_api_key",
            actor_role="system",
            action="CREATE_API_KEY",
            new_values={"key_prefix": "xbk_1234", "api_key": "xbk_raw"},
            commit=True,
        )

    async with database.session() as session:
        event = (await session.execute(select(AuditEvent))).scalar_one()
    assert event.action == "CREATE_API_KEY"
    assert event.outcome == "success"
    assert event.new_values == {"key_prefix": "xbk_1234", "api_key": "[REDACTED]"}


async def test_tenant_timeline_index_is_part_of_the_schema(database) -> None:
    assert "ix_audit_events_tenant_occurred_at" in {index.name for index in AuditEvent.__table__.indexes}

    async with database.engine.connect() as conn:
        indexes = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_indexes("audit_events"))
    by_name = {index["name"]: index["column_names"] for index in indexes}
    assert by_name["ix_audit_events_tenant_occurred_at"] == ["tenant_id", "occurred_at"]
