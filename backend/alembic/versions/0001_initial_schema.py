"""initial keygate schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _hex_id(name: str, **kwargs) -> sa.Column:
    return sa.Column(name, sa.LargeBinary(length=16), **kwargs)


def _created_at(**kwargs) -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        **kwargs,
    )


def upgrade() -> None:
    op.create_table(
        "owners",
        _hex_id("id", primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True, index=True),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        _created_at(),
    )

    op.create_table(
        "keys",
        _hex_id("id", primary_key=True),
        _hex_id("owner_id", sa.ForeignKey("owners.id", ondelete="RESTRICT"), nullable=True, index=True),
        sa.Column("type", sa.String(length=16), nullable=False, index=True),
        sa.Column("secret_hash", sa.String(length=255), nullable=False),
        sa.Column("permissions", sa.JSON(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true(), index=True),
        _hex_id("issued_by_key_id", sa.ForeignKey("keys.id", ondelete="RESTRICT"), nullable=True, index=True),
        _hex_id("parent_key_id", sa.ForeignKey("keys.id", ondelete="RESTRICT"), nullable=True, index=True),
        _hex_id("initial_author_key_id", nullable=False, index=True),
        _hex_id("rotated_from_id", nullable=True),
        _hex_id("rotated_to_id", nullable=True),
        sa.Column("retired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("use_count_limit", sa.Integer(), nullable=True),
        sa.Column("use_count_current", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("device_limit", sa.Integer(), nullable=True),
        sa.Column("label", sa.String(length=255), nullable=True),
        _created_at(),
    )

    op.create_table(
        "key_public_ids",
        _hex_id("key_id", sa.ForeignKey("keys.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("public_id", sa.String(length=64), nullable=False, unique=True, index=True),
        _created_at(),
    )

    op.create_table(
        "key_devices",
        _hex_id("id", primary_key=True),
        _hex_id("key_id", sa.ForeignKey("keys.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("device_fingerprint", sa.String(length=64), nullable=False),
        _created_at(),
        sa.UniqueConstraint("key_id", "device_fingerprint", name="uq_key_device"),
    )

    op.create_table(
        "groups",
        _hex_id("id", primary_key=True),
        _hex_id("owner_id", sa.ForeignKey("owners.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        _created_at(),
    )

    op.create_table(
        "group_members",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _hex_id("group_id", sa.ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True),
        _hex_id("key_id", sa.ForeignKey("keys.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.UniqueConstraint("group_id", "key_id", name="uq_group_member"),
    )

    op.create_table(
        "posts",
        _hex_id("id", primary_key=True),
        _hex_id("author_key_id", sa.ForeignKey("keys.id", ondelete="RESTRICT"), nullable=False, index=True),
        _hex_id("initial_author_key_id", nullable=False, index=True),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        _created_at(index=True),
    )

    op.create_table(
        "post_access",
        _hex_id("id", primary_key=True),
        _hex_id("post_id", sa.ForeignKey("posts.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("target_type", sa.String(length=8), nullable=False),
        _hex_id("target_id", nullable=False, index=True),
        sa.Column("permission_mask", sa.Integer(), nullable=False),
        _created_at(),
        sa.UniqueConstraint("post_id", "target_type", "target_id", name="uq_post_access_target"),
    )

    op.create_table(
        "refresh_tokens",
        _hex_id("id", primary_key=True),
        sa.Column("subject_type", sa.String(length=8), nullable=False),
        _hex_id("subject_id", nullable=False, index=True),
        sa.Column("token_hash", sa.String(length=255), nullable=False),
        sa.Column("lookup_hash", sa.String(length=64), nullable=False, unique=True, index=True),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rotated_at", sa.DateTime(timezone=True), nullable=True),
        _hex_id("replaced_by_id", nullable=True),
        sa.Column("ip", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=256), nullable=True),
    )

    op.create_table(
        "audit_events",
        _hex_id("id", primary_key=True),
        sa.Column("actor_type", sa.String(length=32), nullable=False, index=True),
        _hex_id("actor_id", nullable=False, index=True),
        sa.Column("action", sa.String(length=64), nullable=False, index=True),
        sa.Column("subject_type", sa.String(length=32), nullable=True),
        _hex_id("subject_id", nullable=True, index=True),
        sa.Column("severity", sa.String(length=16), nullable=False, server_default="info"),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("ip", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=256), nullable=True),
        _created_at(index=True),
    )


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("refresh_tokens")
    op.drop_table("post_access")
    op.drop_table("posts")
    op.drop_table("group_members")
    op.drop_table("groups")
    op.drop_table("key_devices")
    op.drop_table("key_public_ids")
    op.drop_table("keys")
    op.drop_table("owners")
