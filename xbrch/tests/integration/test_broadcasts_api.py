from __future__ import annotations

from datetime import datetime, timezone

from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from xbrch.apps.api.main import create_app
from xbrch.core.errors import DatabaseError
from xbrch.domain.models import AiTokenUsage, AuditEvent, Broadcast, UsageLedgerEntry
from xbrch.providers.llm.fake import FakeLLMProvider
from xbrch.services.broadcasts import BroadcastService
from xbrch.services.ledger import UsageLedger, month_key
from xbrch.services.oracle import ContentOracle
from xbrch.tests.utils.auth import create_test_tenant, seed_usage


def _client(database, provider: FakeLLMProvider | None = None) -> AsyncClient:
    service = BroadcastService(
        oracle=ContentOracle(provider or FakeLLMProvider()),
        ledger=UsageLedger(),
    )
    app = create_app(database=database, broadcast_service=service)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _this_month() -> str:
    return month_key(datetime.now(timezone.utc))


async def _create(client: AsyncClient, headers: dict, message: str, platforms: list[str]):
    return await client.post(
        "/v1/broadcasts",
        json={"message": message, "platforms": platforms},
        headers=headers,
    )


async def test_create_broadcast_returns_enveloped_result(database) -> None:
    _tenant_id, headers = await create_test_tenant(database)
    async with _client(database) as client:
        response = await client.post(
            "/v1/broadcasts",
            json={"message": "  Live music tonight at 8  ", "platforms": ["facebook", "sms"]},
            headers={**headers, "X-Request-Id": "req-create-1"},
        )

    assert response.status_code == 201
    assert response.headers["X-Request-Id"] == "req-create-1"
    body = response.json()
    assert body["meta"]["request_id"] == "req-create-1"
    assert body["meta"]["api_version"] == "v1"
    data = body["data"]
    assert data["broadcast"]["original_message"] == "Live music tonight at 8"
    assert data["broadcast"]["status"] == "generated"
    assert [output["platform"] for output in data["outputs"]] == ["facebook", "sms"]
    assert data["outputs"][0]["character_count"] == len(data["outputs"][0]["content"])
    assert data["scoring"]["score"] == 82
    assert data["originality"]["riskTier"] == "Low"
    assert data["usage"] == {"month": _this_month(), "used": 1, "limit": 10, "remaining": 9}

    async with database.session() as session:
        event = (await session.execute(select(AuditEvent))).scalar_one()
    assert event.action == "CREATE_BROADCAST"
    assert event.request_id == "req-create-1"


async def test_exhausted_quota_returns_429_envelope(database) -> None:
    tenant_id, headers = await create_test_tenant(database)
    await seed_usage(database, tenant_id=tenant_id, month=_this_month(), used=10)
    provider = FakeLLMProvider()
    async with _client(database, provider) as client:
        response = await _create(client, headers, "Over the limit", ["x"])

    assert response.status_code == 429
    body = response.json()
    assert body["error"]["code"] == "QUOTA_EXCEEDED"
    assert body["error"]["message"] == "Monthly limit reached"
    assert body["error"]["details"] == {"used": 10, "limit": 10}
    assert body["meta"]["request_id"]
    assert provider.calls == []

    async with database.session() as session:
        broadcasts = (
            await session.execute(select(func.count()).select_from(Broadcast))
        ).scalar_one()
        audits = (await session.execute(select(func.count()).select_from(AuditEvent))).scalar_one()
    assert broadcasts == 0
    assert audits == 0


async def test_invalid_payloads_are_rejected_before_work(database) -> None:
    tenant_id, headers = await create_test_tenant(database)
    provider = FakeLLMProvider()
    async with _client(database, provider) as client:
        blank = await _create(client, headers, "   ", ["x"])
        no_platforms = await _create(client, headers, "Hello", [])
        unknown = await _create(client, headers, "Hello", ["myspace"])
        smuggled = await client.post(
            "/v1/broadcasts",
            json={"message": "Hello", "platforms": ["x"], "tenant_id": "someone-else"},
            headers=headers,
        )

    for response in (blank, no_platforms, unknown, smuggled):
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"
    assert provider.calls == []
    async with database.session() as session:
        rows = (
            await session.execute(
                select(func.count())
                .select_from(UsageLedgerEntry)
                .where(UsageLedgerEntry.tenant_id == tenant_id)
            )
        ).scalar_one()
    assert rows == 0


async def test_missing_or_unknown_key_is_unauthorized(database) -> None:
    async with _client(database) as client:
        missing = await _create(client, {}, "Hello", ["x"])
        unknown = await _create(client, {"Authorization": "Bearer xbk_nope"}, "Hello", ["x"])

    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert missing.headers["WWW-Authenticate"] == "Bearer"
    assert unknown.status_code == 401


async def test_history_pages_newest_first(database) -> None:
    _tenant_id, headers = await create_test_tenant(database)
    async with _client(database) as client:
        await _create(client, headers, "First post", ["x"])
        await _create(client, headers, "Second post", ["x", "sms"])
        page_one = await client.get("/v1/broadcasts?page=1&limit=1", headers=headers)
        page_two = await client.get("/v1/broadcasts?page=2&limit=1", headers=headers)

    assert page_one.status_code == 200
    first = page_one.json()["data"]
    assert first["pagination"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}
    assert first["items"][0]["original_message"] == "Second post"
    assert [o["platform"] for o in first["items"][0]["outputs"]] == ["x", "sms"]
    assert page_two.json()["data"]["items"][0]["original_message"] == "First post"


async def test_detail_is_tenant_scoped(database) -> None:
    _owner_id, owner_headers = await create_test_tenant(database)
    _other_id, other_headers = await create_test_tenant(database)
    async with _client(database) as client:
        created = await _create(client, owner_headers, "Owner only", ["linkedin"])
        broadcast_id = created.json()["data"]["broadcast"]["id"]
        own = await client.get(f"/v1/broadcasts/{broadcast_id}", headers=owner_headers)
        foreign = await client.get(f"/v1/broadcasts/{broadcast_id}", headers=other_headers)

    assert own.status_code == 200
    assert own.json()["data"]["outputs"][0]["platform"] == "linkedin"
    assert foreign.status_code == 404
    assert foreign.json()["error"]["code"] == "NOT_FOUND"


async def test_delete_keeps_usage_and_audits(database) -> None:
    tenant_id, headers = await create_test_tenant(database)
    async with _client(database) as client:
        created = await _create(client, headers, "Short lived", ["x"])
        broadcast_id = created.json()["data"]["broadcast"]["id"]
        deleted = await client.delete(f"/v1/broadcasts/{broadcast_id}", headers=headers)
        again = await client.delete(f"/v1/broadcasts/{broadcast_id}", headers=headers)
        fetched = await client.get(f"/v1/broadcasts/{broadcast_id}", headers=headers)
        stats = await client.get("/v1/usage/stats", headers=headers)

    assert deleted.status_code == 204
    assert again.status_code == 404
    assert fetched.status_code == 404
    assert stats.json()["data"]["broadcasts_used"] == 1
    async with database.session() as session:
        actions = (
            await session.execute(
                select(AuditEvent.action).where(AuditEvent.tenant_id == tenant_id)
            )
        ).scalars().all()
    assert sorted(actions) == ["CREATE_BROADCAST", "DELETE_BROADCAST"]


async def test_status_transitions(database) -> None:
    _tenant_id, headers = await create_test_tenant(database)
    async with _client(database) as client:
        created = await _create(client, headers, "Publish me", ["x"])
        broadcast_id = created.json()["data"]["broadcast"]["id"]
        url = f"/v1/broadcasts/{broadcast_id}/status"
        published = await client.patch(url, json={"status": "published"}, headers=headers)
        repeated = await client.patch(url, json={"status": "published"}, headers=headers)
        archived = await client.patch(url, json={"status": "archived"}, headers=headers)
        invalid = await client.patch(url, json={"status": "generated"}, headers=headers)

    assert published.status_code == 200
    assert published.json()["data"]["status"] == "published"
    assert published.json()["data"]["outputs"][0]["published_at"] is not None
    assert repeated.status_code == 409
    assert repeated.json()["error"]["code"] == "INVALID_STATUS_TRANSITION"
    assert archived.status_code == 200
    assert archived.json()["data"]["status"] == "archived"
    assert invalid.status_code == 422


async def test_usage_stats_reflect_broadcasts(database) -> None:
    _tenant_id, headers = await create_test_tenant(database, plan="pro")
    async with _client(database) as client:
        await _create(client, headers, "Counting", ["x", "facebook", "instagram"])
        stats = await client.get("/v1/usage/stats", headers=headers)

    assert stats.status_code == 200
    assert stats.json()["data"] == {
        "month": _this_month(),
        "plan": "pro",
        "broadcasts_used": 1,
        "ai_tokens_used": 300,
        "monthly_limit": 100,
        "remaining": 99,
    }


async def test_storage_failure_returns_opaque_500(database, monkeypatch) -> None:
    tenant_id, headers = await create_test_tenant(database)
    await seed_usage(database, tenant_id=tenant_id, month=_this_month(), used=3)

    async def failing_record_event(**_kwargs) -> None:
        raise OperationalError("INSERT INTO audit_events", {}, Exception("disk I/O error"))

    monkeypatch.setattr("xbrch.services.broadcasts.record_event", failing_record_event)
    async with _client(database) as client:
        response = await _create(client, headers, "Storage is down", ["x"])

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == {"code": "INTERNAL_ERROR", "message": "Internal server error"}
    assert body["meta"]["request_id"]
    assert "disk I/O" not in response.text
    assert "audit_events" not in response.text

    async with database.session() as session:
        broadcasts = await session.execute(select(func.count()).select_from(Broadcast))
        token_rows = await session.execute(select(func.count()).select_from(AiTokenUsage))
        used = await session.execute(
            select(UsageLedgerEntry.broadcasts_used).where(UsageLedgerEntry.tenant_id == tenant_id)
        )
    assert broadcasts.scalar_one() == 0
    assert token_rows.scalar_one() == 0
    assert used.scalar_one() == 3


async def test_ledger_database_error_maps_to_500(database, monkeypatch) -> None:
    _tenant_id, headers = await create_test_tenant(database)

    async def failing_record_usage(*_args, **_kwargs):
        raise DatabaseError("ledger upsert failed unexpectedly")

    monkeypatch.setattr(UsageLedger, "record_usage", failing_record_usage)
    async with _client(database) as client:
        response = await _create(client, headers, "Ledger is broken", ["sms"])

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "INTERNAL_ERROR"
    assert "ledger upsert" not in response.text
