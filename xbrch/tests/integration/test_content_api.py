from __future__ import annotations

from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select

from xbrch.apps.api.main import create_app
from xbrch.core.errors import DatabaseError
from xbrch.domain.models import AiTokenUsage, AuditEvent, UsageLedgerEntry, WallUpdate, WebsitePost
from xbrch.providers.llm.fake import FakeLLMProvider
from xbrch.services.broadcasts import BroadcastService
from xbrch.services.ledger import UsageLedger
from xbrch.services.oracle import ContentOracle
from xbrch.tests.utils.auth import create_test_tenant


_PROFILE = {"name": "Harbor Bakery", "city": "Portland", "industry": "food", "tone": "friendly"}


def _client(database) -> AsyncClient:
    service = BroadcastService(oracle=ContentOracle(FakeLLMProvider()), ledger=UsageLedger())
    app = create_app(database=database, broadcast_service=service)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _count(database, model, *filters) -> int:
    async with database.session() as session:
        result = await session.execute(select(func.count()).select_from(model).where(*filters))
        return int(result.scalar_one())


async def test_announcement_is_stored_with_token_usage_and_audit(database) -> None:
    tenant_id, headers = await create_test_tenant(database)
    async with _client(database) as client:
        response = await client.post(
            "/v1/website/announcement",
            json={"message": "  Patio opens Friday  ", "publish_immediately": True},
            headers={**headers, "X-Request-Id": "req-announce-1"},
        )

    assert response.status_code == 201
    post = response.json()["data"]
    assert post["type"] == "announcement"
    assert post["title"] == "Patio opens Friday"
    assert post["content"] == "Patio opens Friday"
    assert post["status"] == "published"
    assert post["published_at"] is not None
    assert post["slug"].startswith("patio-opens-friday-")
    assert post["word_count"] == 3
    assert post["meta_keywords"] == "announcement, update"

    async with database.session() as session:
        usage = (
            await session.execute(select(AiTokenUsage).where(AiTokenUsage.tenant_id == tenant_id))
        ).scalar_one()
        event = (
            await session.execute(select(AuditEvent).where(AuditEvent.tenant_id == tenant_id))
        ).scalar_one()
    assert usage.operation_type == "announcement"
    assert (usage.prompt_tokens, usage.completion_tokens, usage.total_tokens) == (200, 300, 500)
    assert event.action == "CREATE_ANNOUNCEMENT"
    assert event.resource_id == post["id"]
    assert event.request_id == "req-announce-1"
    # Website drafting does not spend broadcast quota.
    assert await _count(database, UsageLedgerEntry, UsageLedgerEntry.tenant_id == tenant_id) == 0


async def test_posts_list_filter_and_stats(database) -> None:
    _tenant_id, headers = await create_test_tenant(database)
    async with _client(database) as client:
        blog = await client.post("/v1/website/blog", json={"topic": "Patio season"}, headers=headers)
        await client.post("/v1/website/announcement", json={"message": "Patio opens Friday"}, headers=headers)
        everything = await client.get("/v1/website/posts", headers=headers)
        blogs = await client.get("/v1/website/posts?type=blog", headers=headers)
        drafts = await client.get("/v1/website/posts?status=draft&limit=1", headers=headers)
        stats = await client.get("/v1/website/stats", headers=headers)

    assert blog.status_code == 201
    blog_post = blog.json()["data"]
    assert blog_post["title"] == "Patio season"
    assert blog_post["status"] == "draft"
    assert blog_post["published_at"] is None
    assert blog_post["word_count"] == 11
    assert blog_post["meta_keywords"] == "blog, Patio season"

    assert everything.json()["data"]["pagination"]["total"] == 2
    assert [item["type"] for item in blogs.json()["data"]["items"]] == ["blog"]
    assert drafts.json()["data"]["pagination"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}
    data = stats.json()["data"]
    assert data["recent_posts"] == 2
    assert data["by_type"] == [
        {"type": "announcement", "count": 1, "total_words": 3, "avg_words": 3},
        {"type": "blog", "count": 1, "total_words": 11, "avg_words": 11},
    ]


async def test_post_edit_publishes_once_and_delete_is_audited(database) -> None:
    tenant_id, headers = await create_test_tenant(database)
    async with _client(database) as client:
        created = await client.post(
            "/v1/website/announcement", json={"message": "Holiday hours"}, headers=headers
        )
        post_id = created.json()["data"]["id"]
        published = await client.put(
            f"/v1/website/posts/{post_id}",
            json={"status": "published", "content": "Open nine to five all week"},
            headers=headers,
        )
        archived = await client.put(
            f"/v1/website/posts/{post_id}", json={"status": "archived"}, headers=headers
        )
        deleted = await client.delete(f"/v1/website/posts/{post_id}", headers=headers)
        missing = await client.get(f"/v1/website/posts/{post_id}", headers=headers)

    first = published.json()["data"]
    assert first["status"] == "published"
    assert first["word_count"] == 6
    assert first["published_at"] is not None
    assert archived.json()["data"]["status"] == "archived"
    # The first publish time is kept.
    assert archived.json()["data"]["published_at"][:19] == first["published_at"][:19]
    assert deleted.status_code == 204
    assert missing.status_code == 404
    assert missing.json()["error"] == {"code": "NOT_FOUND", "message": "Post not found"}
    assert await _count(database, WebsitePost, WebsitePost.tenant_id == tenant_id) == 0
    assert await _count(database, AuditEvent, AuditEvent.action == "UPDATE_WEBSITE_POST") == 2
    assert await _count(database, AuditEvent, AuditEvent.action == "DELETE_WEBSITE_POST") == 1


async def test_posts_are_tenant_scoped(database) -> None:
    _owner_id, owner_headers = await create_test_tenant(database)
    _other_id, other_headers = await create_test_tenant(database)
    async with _client(database) as client:
        created = await client.post(
            "/v1/website/announcement", json={"message": "Owner only"}, headers=owner_headers
        )
        post_id = created.json()["data"]["id"]
        peek = await client.get(f"/v1/website/posts/{post_id}", headers=other_headers)
        edit = await client.put(
            f"/v1/website/posts/{post_id}", json={"title": "Hijacked"}, headers=other_headers
        )
        listing = await client.get("/v1/website/posts", headers=other_headers)

    assert peek.status_code == 404
    assert edit.status_code == 404
    assert listing.json()["data"]["items"] == []


async def test_blank_announcement_is_rejected(database) -> None:
    _tenant_id, headers = await create_test_tenant(database)
    async with _client(database) as client:
        response = await client.post(
            "/v1/website/announcement", json={"message": "   "}, headers=headers
        )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


async def test_wall_update_lifecycle(database) -> None:
    tenant_id, headers = await create_test_tenant(database)
    async with _client(database) as client:
        await client.put("/v1/profile", json=_PROFILE, headers=headers)
        created = await client.post(
            "/v1/wall/updates",
            json={
                "content": "Fresh croissants",
                "link_url": "https://harbor.example/menu",
                "link_title": "Menu",
            },
            headers=headers,
        )
        update_id = created.json()["data"]["id"]
        first_view = await client.get(f"/v1/wall/updates/{update_id}", headers=headers)
        second_view = await client.get(f"/v1/wall/updates/{update_id}", headers=headers)
        edited = await client.put(
            f"/v1/wall/updates/{update_id}",
            json={"is_public": False, "link_url": None},
            headers=headers,
        )
        stats = await client.get("/v1/wall/stats", headers=headers)
        deleted = await client.delete(f"/v1/wall/updates/{update_id}", headers=headers)
        missing = await client.delete(f"/v1/wall/updates/{update_id}", headers=headers)

    assert created.status_code == 201
    update = created.json()["data"]
    assert update["slug"].startswith("harbor-bakery-")
    assert update["link_url"] == "https://harbor.example/menu"
    assert update["is_public"] is True
    assert update["view_count"] == 0
    assert first_view.json()["data"]["view_count"] == 1
    assert second_view.json()["data"]["view_count"] == 2
    assert edited.json()["data"]["is_public"] is False
    assert edited.json()["data"]["link_url"] is None
    assert edited.json()["data"]["link_title"] == "Menu"
    assert stats.json()["data"] == {
        "total_updates": 1,
        "total_views": 2,
        "updates_with_images": 0,
        "updates_with_links": 0,
        "recent_updates": 1,
    }
    assert deleted.status_code == 204
    assert missing.status_code == 404
    assert await _count(database, WallUpdate, WallUpdate.tenant_id == tenant_id) == 0
    for action in ("CREATE_WALL_UPDATE", "UPDATE_WALL_UPDATE", "DELETE_WALL_UPDATE"):
        assert await _count(database, AuditEvent, AuditEvent.action == action) == 1


async def test_public_wall_lists_public_updates_without_auth(database) -> None:
    _tenant_id, headers = await create_test_tenant(database)
    async with _client(database) as client:
        await client.put("/v1/profile", json=_PROFILE, headers=headers)
        await client.post("/v1/wall/updates", json={"content": "Morning bake is out"}, headers=headers)
        await client.post(
            "/v1/wall/updates", json={"content": "Staff notes", "is_public": False}, headers=headers
        )
        await client.post("/v1/wall/updates", json={"content": "Evening bake is out"}, headers=headers)
        wall = await client.get("/v1/wall/public/harbor-bakery")
        unknown = await client.get("/v1/wall/public/no-such-bakery")

    assert wall.status_code == 200
    data = wall.json()["data"]
    assert data["business_name"] == "Harbor Bakery"
    assert data["city"] == "Portland"
    assert [item["content"] for item in data["updates"]] == ["Evening bake is out", "Morning bake is out"]
    assert unknown.status_code == 404
    assert unknown.json()["error"]["message"] == "Business not found"


async def test_wall_update_content_is_bounded(database) -> None:
    _tenant_id, headers = await create_test_tenant(database)
    async with _client(database) as client:
        too_long = await client.post("/v1/wall/updates", json={"content": "x" * 301}, headers=headers)
        bad_link = await client.post(
            "/v1/wall/updates", json={"content": "Menu", "link_url": "not a url"}, headers=headers
        )
    assert too_long.status_code == 422
    assert bad_link.status_code == 422


async def test_storage_errors_on_content_routes_map_to_500(database, monkeypatch) -> None:
    tenant_id, headers = await create_test_tenant(database)

    async def failing_record_event(**_kwargs) -> None:
        raise DatabaseError("audit insert failed unexpectedly")

    monkeypatch.setattr("xbrch.apps.api.routes.wall.record_event", failing_record_event)
    async with _client(database) as client:
        response = await client.post(
            "/v1/wall/updates", json={"content": "Never stored"}, headers=headers
        )

    assert response.status_code == 500
    assert response.json()["error"] == {"code": "INTERNAL_ERROR", "message": "Internal server error"}
    assert "audit insert" not in response.text
    assert await _count(database, WallUpdate, WallUpdate.tenant_id == tenant_id) == 0
