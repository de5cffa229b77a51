"""comments and keychains

Revision ID: 0002_comments_and_keychains
Revises: 0001_initial_schema
Create Date: 2026-10-18
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0002_comments_and_keychains"
down_revision = "0001_initial_schema"
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
        "comments",
        _hex_id("id", primary_key=True),
        _hex_id("post_id", sa.ForeignKey("posts.id", ondelete="CASCADE"), nullable=False, index=True),
        _hex_id(
            "created_by_key_id",
            sa.ForeignKey("keys.id", ondelete="RESTRICT"),
            nullable=False,
            index=True,
        ),
        sa.Column("body", sa.Text(), nullable=False),
        _created_at(index=True),
    )

    op.create_table(
        "keychains",
        _hex_id("id", primary_key=True),
        _hex_id("owner_id", sa.ForeignKey("owners.id", ondelete="CASCADE"), nullable=True, index=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        _created_at(),
    )

    op.create_table(
        "keychain_members",
        _hex_id("keychain_id", sa.ForeignKey("keychains.id", ondelete="CASCADE"), primary_key=True),
        _hex_id("key_id", sa.ForeignKey("keys.id", ondelete="CASCADE"), primary_key=True, index=True),
        _created_at(),
    )


def downgrade() -> None:
    op.drop_table("keychain_members")
    op.drop_table("keychains")
    op.drop_table("comments")
