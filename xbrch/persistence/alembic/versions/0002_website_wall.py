"""add website posts and broadcast wall updates

Revision ID: 0002_website_wall
Revises: 0001_init
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0002_website_wall"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "website_posts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False, unique=True),
        sa.Column("meta_description", sa.String(), nullable=True),
        sa.Column("meta_keywords", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="draft"),
        sa.Column("word_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_website_posts_tenant_id", "website_posts", ["tenant_id"], unique=False)
    op.create_index("ix_website_posts_status", "website_posts", ["status"], unique=False)
    op.create_index(
        "ix_website_posts_tenant_created",
        "website_posts",
        ["tenant_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "wall_updates",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("image_url", sa.String(), nullable=True),
        sa.Column("link_url", sa.String(), nullable=True),
        sa.Column("link_title", sa.String(), nullable=True),
        sa.Column("slug", sa.String(), nullable=False, unique=True),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("view_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_wall_updates_tenant_id", "wall_updates", ["tenant_id"], unique=False)
    op.create_index(
        "ix_wall_updates_tenant_created",
        "wall_updates",
        ["tenant_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_wall_updates_tenant_created", table_name="wall_updates")
    op.drop_index("ix_wall_updates_tenant_id", table_name="wall_updates")
    op.drop_table("wall_updates")
    op.drop_index("ix_website_posts_tenant_created", table_name="website_posts")
    op.drop_index("ix_website_posts_status", table_name="website_posts")
    op.drop_index("ix_website_posts_tenant_id", table_name="website_posts")
    op.drop_table("website_posts")
