from __future__ import annotations

from httpx import ASGITransport, AsyncClient

from xbrch.apps.api import main as main_module
from xbrch.apps.api.main import create_app
from xbrch.core.config import get_settings
from xbrch.providers.llm.fake import FakeLLMProvider
from xbrch.services import broadcasts as broadcasts_module
from xbrch.services.broadcasts import BroadcastService
from xbrch.services.ledger import UsageLedger
from xbrch.services.oracle import ContentOracle
from xbrch.tests.utils.auth import create_test_tenant


def _client(database) -> AsyncClient:
    service = BroadcastService(oracle=ContentOracle(FakeLLMProvider()), ledger=UsageLedger())
    app = create_app(database=database, broadcast_service=service)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def test_health_reports_ok(database) -> None:
    async with _client(database) as client:
        response = await client.get("/v1/health")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "ok"
    assert "checked_out" in data["db_pool"]


async def test_profile_round_trip_is_audited(database) -> None:
    tenant_id, headers = await create_test_tenant(database, role="admin")
    payload = {"name": "Harbor Bakery", "city": "Portland", "industry": "food", "tone": "friendly"}
    async with _client(database) as client:
        missing = await client.get("/v1/profile", headers=headers)
        created = await client.put("/v1/profile", json=payload, headers=headers)
        updated = await client.put(
            "/v1/profile", json={**payload, "tone": "playful"}, headers=headers
        )
        fetched = await client.get("/v1/profile", headers=headers)
        events = await client.get("/v1/audit/events?action=UPDATE_PROFILE", headers=headers)

    assert missing.status_code == 404
    assert created.status_code == 200
    assert created.json()["data"]["city"] == "Portland"
    assert updated.json()["data"]["tone"] == "playful"
    assert fetched.json()["data"]["name"] == "Harbor Bakery"
    assert fetched.json()["data"]["tone"] == "playful"
    items = events.json()["data"]["items"]
    assert len(items) == 2
    assert all(item["resource_id"] == tenant_id for item in items)


async def test_profile_requires_name_and_city(database) -> None:
    _tenant_id, headers = await create_test_tenant(database)
    async with _client(database) as client:
        response = await client.put("/v1/profile", json={"name": "", "city": "Portland"}, headers=headers)
    assert response.status_code == 422


async def test_admin_updates_tenant_plan(database) -> None:
    _admin_id, admin_headers = await create_test_tenant(database, role="admin")
    target_id, target_headers = await create_test_tenant(database)
    async with _client(database) as client:
        upgraded = await client.patch(
            f"/v1/admin/tenants/{target_id}/plan", json={"plan": "pro"}, headers=admin_headers
        )
        stats = await client.get("/v1/usage/stats", headers=target_headers)
        overridden = await client.patch(
            f"/v1/admin/tenants/{target_id}/plan",
            json={"plan": "authority", "monthly_limit": 25},
            headers=admin_headers,
        )

    assert upgraded.status_code == 200
    assert upgraded.json()["data"] == {"tenant_id": target_id, "plan": "pro", "monthly_limit": 100}
    assert stats.json()["data"]["plan"] == "pro"
    assert stats.json()["data"]["monthly_limit"] == 100
    assert overridden.json()["data"]["monthly_limit"] == 25


async def test_plan_update_requires_admin_and_known_tenant(database) -> None:
    _admin_id, admin_headers = await create_test_tenant(database, role="admin")
    user_id, user_headers = await create_test_tenant(database)
    async with _client(database) as client:
        forbidden = await client.patch(
            f"/v1/admin/tenants/{user_id}/plan", json={"plan": "pro"}, headers=user_headers
        )
        unknown = await client.patch(
            "/v1/admin/tenants/missing/plan", json={"plan": "pro"}, headers=admin_headers
        )
        bad_plan = await client.patch(
            f"/v1/admin/tenants/{user_id}/plan", json={"plan": "gold"}, headers=admin_headers
        )

    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["code"] == "AUTH_FORBIDDEN"
    assert unknown.status_code == 404
    assert bad_plan.status_code == 422


async def test_audit_events_are_admin_only_and_tenant_scoped(database) -> None:
    admin_id, admin_headers = await create_test_tenant(database, role="admin")
    _user_id, user_headers = await create_test_tenant(database)
    async with _client(database) as client:
        await client.post(
            "/v1/broadcasts",
            json={"message": "Admin post", "platforms": ["x"]},
            headers=admin_headers,
        )
        await client.post(
            "/v1/broadcasts",
            json={"message": "User post", "platforms": ["x"]},
            headers=user_headers,
        )
        listed = await client.get("/v1/audit/events", headers=admin_headers)
        denied = await client.get("/v1/audit/events", headers=user_headers)
        cross = await client.get("/v1/audit/events?tenant_id=other", headers=admin_headers)
        event_id = listed.json()["data"]["items"][0]["id"]
        single = await client.get(f"/v1/audit/events/{event_id}", headers=admin_headers)
        missing = await client.get("/v1/audit/events/999999", headers=admin_headers)

    assert listed.status_code == 200
    items = listed.json()["data"]["items"]
    assert len(items) == 1
    assert items[0]["tenant_id"] == admin_id
    assert items[0]["action"] == "CREATE_BROADCAST"
    assert items[0]["new_values"] == {"platforms": ["x"], "score": 82}
    assert denied.status_code == 403
    assert cross.status_code == 403
    assert single.status_code == 200
    assert single.json()["data"]["id"] == event_id
    assert missing.status_code == 404


class _ClosingProvider(FakeLLMProvider):
    def __init__(self) -> None:
        super().__init__()
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True


async def test_shutdown_closes_cached_oracle_client(database, monkeypatch) -> None:
    provider = _ClosingProvider()
    cached = BroadcastService(oracle=ContentOracle(provider), ledger=UsageLedger())
    monkeypatch.setattr(broadcasts_module, "_broadcast_service", cached)
    app = create_app(database=database)

    async with app.router.lifespan_context(app):
        assert provider.closed is False
    assert provider.closed is True
    assert broadcasts_module._broadcast_service is None
    # An injected database handle stays open for its owner.
    assert app.state.database is database


def test_runner_binds_from_settings(monkeypatch) -> None:
    monkeypatch.setenv("APP_HOST", "0.0.0.0")
    monkeypatch.setenv("APP_PORT", "9100")
    get_settings.cache_clear()
    settings = get_settings()
    assert (settings.app_host, settings.app_port) == ("0.0.0.0", 9100)
    assert main_module.app.title == "XBRCH Broadcast API"
