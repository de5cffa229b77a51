"""SQLAlchemy ORM models."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base
from .types import HexId


class Owner(Base):
    """Human account at the root of a key delegation tree."""

    __tablename__ = "owners"

    id: Mapped[str] = mapped_column(HexId, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class Key(Base):
    """Machine credential. Lineage columns are written once at insert."""

    __tablename__ = "keys"

    id: Mapped[str] = mapped_column(HexId, primary_key=True)
    owner_id: Mapped[str | None] = mapped_column(
        HexId, ForeignKey("owners.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    type: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    secret_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    permissions: Mapped[list] = mapped_column(JSON, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    issued_by_key_id: Mapped[str | None] = mapped_column(
        HexId, ForeignKey("keys.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    parent_key_id: Mapped[str | None] = mapped_column(
        HexId, ForeignKey("keys.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    initial_author_key_id: Mapped[str] = mapped_column(HexId, nullable=False, index=True)
    rotated_from_id: Mapped[str | None] = mapped_column(HexId, nullable=True)
    rotated_to_id: Mapped[str | None] = mapped_column(HexId, nullable=True)
    retired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    use_count_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    use_count_current: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    device_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class KeyPublicId(Base):
    """Public identifier used only for credential exchange."""

    __tablename__ = "key_public_ids"

    key_id: Mapped[str] = mapped_column(
        HexId, ForeignKey("keys.id", ondelete="CASCADE"), primary_key=True
    )
    public_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class KeyDevice(Base):
    """Device fingerprints seen for a use key."""

    __tablename__ = "key_devices"
    __table_args__ = (UniqueConstraint("key_id", "device_fingerprint", name="uq_key_device"),)

    id: Mapped[str] = mapped_column(HexId, primary_key=True)
    key_id: Mapped[str] = mapped_column(
        HexId, ForeignKey("keys.id", ondelete="CASCADE"), nullable=False, index=True
    )
    device_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class Group(Base):
    __tablename__ = "groups"

    id: Mapped[str] = mapped_column(HexId, primary_key=True)
    owner_id: Mapped[str] = mapped_column(
        HexId, ForeignKey("owners.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class GroupMember(Base):
    __tablename__ = "group_members"
    __table_args__ = (UniqueConstraint("group_id", "key_id", name="uq_group_member"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_id: Mapped[str] = mapped_column(
        HexId, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True
    )
    key_id: Mapped[str] = mapped_column(
        HexId, ForeignKey("keys.id", ondelete="CASCADE"), nullable=False, index=True
    )


class Post(Base):
    """Resource protected by post-scoped access grants."""

    __tablename__ = "posts"

    id: Mapped[str] = mapped_column(HexId, primary_key=True)
    author_key_id: Mapped[str] = mapped_column(
        HexId, ForeignKey("keys.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    initial_author_key_id: Mapped[str] = mapped_column(HexId, nullable=False, index=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )


class PostAccess(Base):
    """Grant of a permission mask on a post to a key or a group."""

    __tablename__ = "post_access"
    __table_args__ = (
        UniqueConstraint("post_id", "target_type", "target_id", name="uq_post_access_target"),
    )

    id: Mapped[str] = mapped_column(HexId, primary_key=True)
    post_id: Mapped[str] = mapped_column(
        HexId, ForeignKey("posts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    target_type: Mapped[str] = mapped_column(String(8), nullable=False)
    target_id: Mapped[str] = mapped_column(HexId, nullable=False, index=True)
    permission_mask: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class Comment(Base):
    __tablename__ = "comments"

    id: Mapped[str] = mapped_column(HexId, primary_key=True)
    post_id: Mapped[str] = mapped_column(
        HexId, ForeignKey("posts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_by_key_id: Mapped[str] = mapped_column(
        HexId, ForeignKey("keys.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    body: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )


class Keychain(Base):
    """Named set of keys. ``owner_id`` is NULL for keychains created through the gateway."""

    __tablename__ = "keychains"

    id: Mapped[str] = mapped_column(HexId, primary_key=True)
    owner_id: Mapped[str | None] = mapped_column(
        HexId, ForeignKey("owners.id", ondelete="CASCADE"), nullable=True, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class KeychainMember(Base):
    __tablename__ = "keychain_members"

    keychain_id: Mapped[str] = mapped_column(
        HexId, ForeignKey("keychains.id", ondelete="CASCADE"), primary_key=True
    )
    key_id: Mapped[str] = mapped_column(
        HexId, ForeignKey("keys.id", ondelete="CASCADE"), primary_key=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class RefreshToken(Base):
    """Single-use refresh credential. Rows are kept for replay forensics."""

    __tablename__ = "refresh_tokens"

    id: Mapped[str] = mapped_column(HexId, primary_key=True)
    subject_type: Mapped[str] = mapped_column(String(8), nullable=False)
    subject_id: Mapped[str] = mapped_column(HexId, nullable=False, index=True)
    token_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    lookup_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rotated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    replaced_by_id: Mapped[str | None] = mapped_column(HexId, nullable=True)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(256), nullable=True)


class AuditEvent(Base):
    """Append-only record of lifecycle and security events."""

    __tablename__ = "audit_events"

    id: Mapped[str] = mapped_column(HexId, primary_key=True)
    actor_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    actor_id: Mapped[str] = mapped_column(HexId, nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    subject_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    subject_id: Mapped[str | None] = mapped_column(HexId, nullable=True, index=True)
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default="info")
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )
