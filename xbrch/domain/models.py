from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# JSONB on Postgres, plain JSON elsewhere so the schema also builds on SQLite.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntegerId = BigInteger().with_variant(Integer(), "sqlite")

BROADCAST_STATUSES: tuple[str, ...] = ("generated", "published", "archived")

RISK_TIERS: tuple[str, ...] = ("Low", "Minor", "Moderate", "High Risk")

WEBSITE_POST_TYPES: tuple[str, ...] = ("announcement", "blog")

WEBSITE_POST_STATUSES: tuple[str, ...] = ("draft", "published", "archived")


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    # Persist RBAC role as a simple string for fast lookup and migration safety.
    role: Mapped[str] = mapped_column(String, default="user")
    plan: Mapped[str] = mapped_column(String, default="free")
    # Monthly broadcast quota; follows the plan unless overridden by an admin.
    monthly_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Gate access for disabled tenants without deleting historical data.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(
        String, ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    # Keep a short prefix for operator display without exposing the secret.
    key_prefix: Mapped[str] = mapped_column(String)
    # Store only the hashed key to avoid plaintext credentials at rest.
    key_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class BusinessProfile(Base):
    __tablename__ = "business_profiles"

    # One profile per tenant; feeds prompt context for scoring and adaptation.
    tenant_id: Mapped[str] = mapped_column(
        String, ForeignKey("tenants.id", ondelete="CASCADE"), primary_key=True
    )
    name: Mapped[str] = mapped_column(String)
    city: Mapped[str] = mapped_column(String)
    industry: Mapped[str | None] = mapped_column(String, nullable=True)
    tone: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UsageLedgerEntry(Base):
    __tablename__ = "usage_ledger"

    # One row per tenant per calendar month ("YYYY-MM"); created lazily by upsert.
    tenant_id: Mapped[str] = mapped_column(
        String, ForeignKey("tenants.id", ondelete="CASCADE"), primary_key=True
    )
    month: Mapped[str] = mapped_column(String(7), primary_key=True)
    broadcasts_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ai_tokens_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Broadcast(Base):
    __tablename__ = "broadcasts"
    __table_args__ = (
        Index("ix_broadcasts_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(
        String, ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    original_message: Mapped[str] = mapped_column(Text)
    score: Mapped[int] = mapped_column(Integer)
    # Risk tier from the originality check (Low/Minor/Moderate/High Risk).
    confidence_badge: Mapped[str] = mapped_column(String)
    originality_score: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String, default="generated", index=True)
    # Set explicitly from the orchestrator clock so month attribution is stable.
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    outputs: Mapped[list["BroadcastOutput"]] = relationship(
        back_populates="broadcast",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="BroadcastOutput.position",
    )


class BroadcastOutput(Base):
    __tablename__ = "broadcast_outputs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    broadcast_id: Mapped[str] = mapped_column(
        String, ForeignKey("broadcasts.id", ondelete="CASCADE"), index=True
    )
    # Preserve the requested platform order.
    position: Mapped[int] = mapped_column(Integer, default=0)
    platform: Mapped[str] = mapped_column(String)
    content: Mapped[str] = mapped_column(Text)
    character_count: Mapped[int] = mapped_column(Integer)
    # Publish metadata is recorded later; generated text is never rewritten.
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    platform_post_id: Mapped[str | None] = mapped_column(String, nullable=True)
    engagement_stats: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    broadcast: Mapped[Broadcast] = relationship(back_populates="outputs")


class WebsitePost(Base):
    __tablename__ = "website_posts"
    __table_args__ = (
        Index("ix_website_posts_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(
        String, ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    # announcement or blog
    type: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    content: Mapped[str] = mapped_column(Text)
    slug: Mapped[str] = mapped_column(String, unique=True)
    meta_description: Mapped[str | None] = mapped_column(String, nullable=True)
    meta_keywords: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="draft", index=True)
    word_count: Mapped[int] = mapped_column(Integer, default=0)
    # Set the first time the post moves to published.
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class WallUpdate(Base):
    __tablename__ = "wall_updates"
    __table_args__ = (
        Index("ix_wall_updates_tenant_created", "tenant_id", "created_at"),
    )

    # Short public status posts shown on the business's broadcast wall.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(
        String, ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    content: Mapped[str] = mapped_column(Text)
    image_url: Mapped[str | None] = mapped_column(String, nullable=True)
    link_url: Mapped[str | None] = mapped_column(String, nullable=True)
    link_title: Mapped[str | None] = mapped_column(String, nullable=True)
    slug: Mapped[str] = mapped_column(String, unique=True)
    is_public: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    view_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AiTokenUsage(Base):
    __tablename__ = "ai_token_usage"

    # Per-operation token accounting; values are estimates, not provider-reported counts.
    id: Mapped[int] = mapped_column(BigIntegerId, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(
        String, ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    model: Mapped[str | None] = mapped_column(String, nullable=True)
    prompt_tokens: Mapped[int] = mapped_column(Integer)
    completion_tokens: Mapped[int] = mapped_column(Integer)
    total_tokens: Mapped[int] = mapped_column(Integer)
    operation_type: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_tenant_occurred_at", "tenant_id", "occurred_at"),
    )

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(BigIntegerId, primary_key=True, autoincrement=True)
    # Store the event timestamp separately from creation to preserve source clocks.
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Allow null tenant_id for system events.
    tenant_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("tenants.id", ondelete="CASCADE"), index=True, nullable=True
    )
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    # Stable action vocabulary, e.g. CREATE_BROADCAST.
    action: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String, default="success")
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Sanitized snapshot of the values written by the action.
    new_values: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
