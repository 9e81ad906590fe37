from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Callable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from xbrch.core.config import get_settings
from xbrch.core.text import count_words, timestamped_slug
from xbrch.domain.models import AiTokenUsage, WebsitePost
from xbrch.persistence.db import unit_of_work
from xbrch.persistence.repos import tenants as tenants_repo
from xbrch.services.audit import RequestContext, record_event
from xbrch.services.broadcasts import Actor, business_context
from xbrch.services.oracle import ContentOracle, WebsiteDraft


logger = logging.getLogger(__name__)

ACTION_CREATE_ANNOUNCEMENT = "CREATE_ANNOUNCEMENT"
ACTION_CREATE_BLOG = "CREATE_BLOG"
ACTION_UPDATE_POST = "UPDATE_WEBSITE_POST"
ACTION_DELETE_POST = "DELETE_WEBSITE_POST"

# Estimated (prompt, completion) tokens charged per generated post type.
_TOKEN_ESTIMATES: dict[str, tuple[int, int]] = {
    "announcement": (200, 300),
    "blog": (300, 1500),
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WebsiteService:
    """Draft website announcements and blog posts through the content oracle.

    Generation does not consume broadcast quota. Each post is written together
    with its token-usage row and audit event in a single transaction.
    """

    def __init__(
        self,
        *,
        oracle: ContentOracle,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._oracle = oracle
        self._time_provider = time_provider or _utc_now

    async def create_announcement(
        self,
        session: AsyncSession,
        *,
        actor: Actor,
        message: str,
        publish: bool = False,
        context: RequestContext | None = None,
    ) -> WebsitePost:
        profile = await tenants_repo.get_business_profile(session, actor.tenant_id)
        business = business_context(profile)
        await session.commit()

        draft = await self._oracle.generate_announcement(message, business)
        return await self._persist(
            session,
            actor=actor,
            post_type="announcement",
            draft=draft,
            publish=publish,
            action=ACTION_CREATE_ANNOUNCEMENT,
            context=context,
        )

    async def create_blog_post(
        self,
        session: AsyncSession,
        *,
        actor: Actor,
        topic: str,
        publish: bool = False,
        context: RequestContext | None = None,
    ) -> WebsitePost:
        profile = await tenants_repo.get_business_profile(session, actor.tenant_id)
        business = business_context(profile)
        await session.commit()

        draft = await self._oracle.generate_blog_post(topic, business)
        return await self._persist(
            session,
            actor=actor,
            post_type="blog",
            draft=draft,
            publish=publish,
            action=ACTION_CREATE_BLOG,
            context=context,
        )

    async def _persist(
        self,
        session: AsyncSession,
        *,
        actor: Actor,
        post_type: str,
        draft: WebsiteDraft,
        publish: bool,
        action: str,
        context: RequestContext | None,
    ) -> WebsitePost:
        now = self._time_provider()
        word_count = count_words(draft.content)
        prompt_tokens, completion_tokens = _TOKEN_ESTIMATES[post_type]
        async with unit_of_work(session):
            post = WebsitePost(
                id=uuid4().hex,
                tenant_id=actor.tenant_id,
                type=post_type,
                title=draft.title,
                content=draft.content,
                slug=timestamped_slug(draft.title, now, default=post_type),
                meta_description=draft.meta_description or None,
                meta_keywords=draft.meta_keywords or None,
                status="published" if publish else "draft",
                word_count=word_count,
                published_at=now if publish else None,
                created_at=now,
                updated_at=now,
            )
            session.add(post)
            await session.flush()
            session.add(
                AiTokenUsage(
                    tenant_id=actor.tenant_id,
                    model=get_settings().openai_model,
                    prompt_tokens=prompt_tokens,
                    completion_tokens=completion_tokens,
                    total_tokens=prompt_tokens + completion_tokens,
                    operation_type=post_type,
                    created_at=now,
                )
            )
            await record_event(
                session=session,
                tenant_id=actor.tenant_id,
                actor_id=actor.actor_id,
                actor_role=actor.role,
                action=action,
                resource_type="website_post",
                resource_id=post.id,
                new_values={"title": post.title, "word_count": word_count},
                context=context,
                occurred_at=now,
            )
        logger.info(
            "website_post_created tenant_id=%s post_id=%s type=%s status=%s",
            actor.tenant_id,
            post.id,
            post_type,
            post.status,
        )
        return post
