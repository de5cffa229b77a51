"""Post-scoped access grants and the resolver combining them.

A key's effective mask on a post is the OR of its direct grant and the grants
of every group it belongs to. Callers treat a mask without VIEW as if the post
did not exist.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Protocol, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keygate.core.errors import AuditEmissionError, Forbidden, NotFound, ValidationError
from keygate.db import models
from keygate.ids import is_hex32, new_id
from keygate.services import bitmask
from keygate.services.audit import AuditSink
from keygate.services.key_store import KeySQLStore
from keygate.services.permissions import KEY_TYPE_USE


logger = logging.getLogger(__name__)

TARGET_KEY = "key"
TARGET_GROUP = "group"
TARGET_TYPES = (TARGET_KEY, TARGET_GROUP)

MAX_CONTENT_LENGTH = 10_000
MAX_TITLE_LENGTH = 255


@dataclass(slots=True, frozen=True)
class AccessGrant:
    post_id: str
    target_type: str
    target_id: str
    permission_mask: int
    created_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class PostRecord:
    id: str
    author_key_id: str
    initial_author_key_id: str
    content: str
    title: str | None = None
    created_at: datetime | None = None


def _grant(row: models.PostAccess) -> AccessGrant:
    return AccessGrant(
        post_id=row.post_id,
        target_type=row.target_type,
        target_id=row.target_id,
        permission_mask=row.permission_mask,
        created_at=row.created_at,
    )


def to_post_record(row: models.Post) -> PostRecord:
    return PostRecord(
        id=row.id,
        author_key_id=row.author_key_id,
        initial_author_key_id=row.initial_author_key_id,
        content=row.content,
        title=row.title,
        created_at=row.created_at,
    )


class PostAccessStore(Protocol):
    async def find_direct(self, post_id: str, key_id: str) -> int | None:
        ...

    async def find_for_groups(self, post_id: str, group_ids: Sequence[str]) -> list[int]:
        ...


class PostAccessSQLStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _find(self, post_id: str, target_type: str, target_id: str) -> models.PostAccess | None:
        stmt = select(models.PostAccess).where(
            models.PostAccess.post_id == post_id,
            models.PostAccess.target_type == target_type,
            models.PostAccess.target_id == target_id,
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def upsert(
        self, post_id: str, target_type: str, target_id: str, mask: int
    ) -> tuple[AccessGrant, int | None]:
        """Write ``mask`` for the target, returning the grant and the replaced mask."""

        row = await self._find(post_id, target_type, target_id)
        previous = None
        if row is None:
            row = models.PostAccess(
                id=new_id(),
                post_id=post_id,
                target_type=target_type,
                target_id=target_id,
                permission_mask=mask,
                created_at=datetime.now(timezone.utc),
            )
            self._session.add(row)
        else:
            previous = row.permission_mask
            row.permission_mask = mask
        await self._session.flush()
        return _grant(row), previous

    async def delete(self, post_id: str, target_type: str, target_id: str) -> bool:
        stmt = (
            delete(models.PostAccess)
            .where(
                models.PostAccess.post_id == post_id,
                models.PostAccess.target_type == target_type,
                models.PostAccess.target_id == target_id,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0

    async def find_direct(self, post_id: str, key_id: str) -> int | None:
        stmt = select(models.PostAccess.permission_mask).where(
            models.PostAccess.post_id == post_id,
            models.PostAccess.target_type == TARGET_KEY,
            models.PostAccess.target_id == key_id,
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def find_for_groups(self, post_id: str, group_ids: Sequence[str]) -> list[int]:
        if not group_ids:
            return []
        stmt = select(models.PostAccess.permission_mask).where(
            models.PostAccess.post_id == post_id,
            models.PostAccess.target_type == TARGET_GROUP,
            models.PostAccess.target_id.in_(list(group_ids)),
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def list_for_post(self, post_id: str) -> list[AccessGrant]:
        stmt = (
            select(models.PostAccess)
            .where(models.PostAccess.post_id == post_id)
            .order_by(models.PostAccess.created_at)
            .execution_options(populate_existing=True)
        )
        return [_grant(r) for r in (await self._session.execute(stmt)).scalars().all()]


class GroupMembershipSQLStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find_groups_for_key(self, key_id: str) -> list[str]:
        stmt = select(models.GroupMember.group_id).where(models.GroupMember.key_id == key_id)
        return list((await self._session.execute(stmt)).scalars().all())

    async def find_members(self, group_id: str) -> list[str]:
        stmt = (
            select(models.GroupMember.key_id)
            .where(models.GroupMember.group_id == group_id)
            .order_by(models.GroupMember.id)
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def add(self, group_id: str, key_id: str) -> bool:
        stmt = select(models.GroupMember.id).where(
            models.GroupMember.group_id == group_id, models.GroupMember.key_id == key_id
        )
        if (await self._session.execute(stmt)).first() is not None:
            return False
        self._session.add(models.GroupMember(group_id=group_id, key_id=key_id))
        await self._session.flush()
        return True

    async def remove(self, group_id: str, key_id: str) -> bool:
        stmt = (
            delete(models.GroupMember)
            .where(models.GroupMember.group_id == group_id, models.GroupMember.key_id == key_id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0


class PostSQLStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert(
        self, *, author_key_id: str, initial_author_key_id: str, content: str, title: str | None
    ) -> PostRecord:
        row = models.Post(
            id=new_id(),
            author_key_id=author_key_id,
            initial_author_key_id=initial_author_key_id,
            title=title,
            content=content,
            created_at=datetime.now(timezone.utc),
        )
        self._session.add(row)
        await self._session.flush()
        return to_post_record(row)

    async def find_by_id(self, post_id: str) -> PostRecord | None:
        if not is_hex32(post_id):
            return None
        row = await self._session.get(models.Post, post_id.lower())
        return to_post_record(row) if row else None


class PostAccessResolver:
    """Combine direct and group grants into one mask. Order never matters."""

    def __init__(self, store: PostAccessStore) -> None:
        self._store = store

    async def resolve(self, post_id: str, key_id: str, group_ids: Iterable[str] = ()) -> int:
        mask = 0
        direct = await self._store.find_direct(post_id, key_id)
        if direct:
            mask |= direct
        for group_mask in await self._store.find_for_groups(post_id, sorted(set(group_ids))):
            mask |= group_mask
        return mask


async def resolve_mask(session: AsyncSession, post_id: str, key_id: str) -> int:
    """Effective mask of ``key_id`` on ``post_id`` within ``session``."""

    groups = await GroupMembershipSQLStore(session).find_groups_for_key(key_id)
    return await PostAccessResolver(PostAccessSQLStore(session)).resolve(post_id, key_id, groups)


async def require_post_access(session: AsyncSession, post_id: str, key_id: str, bit: int) -> int:
    """Return the key's mask or raise NotFound (no VIEW) / Forbidden (missing ``bit``)."""

    if await PostSQLStore(session).find_by_id(post_id) is None:
        raise NotFound("Post not found")
    mask = await resolve_mask(session, post_id.lower(), key_id)
    if not bitmask.has_view(mask):
        raise NotFound("Post not found")
    if not bitmask.has_bit(mask, bit):
        raise Forbidden(required_mask=bitmask.bit_name(bit))
    return mask


class PostAccessService:
    """Visibility policy and grant mutations on top of the resolver."""

    def __init__(self, session_maker: async_sessionmaker, audit: AuditSink) -> None:
        self._session_maker = session_maker
        self._audit = audit

    async def resolve_for_key(self, post_id: str, key_id: str) -> int:
        if not is_hex32(post_id):
            return 0
        async with self._session_maker() as session:
            return await resolve_mask(session, post_id, key_id)

    async def require(self, post_id: str, key_id: str, bit: int) -> int:
        """Return the key's mask on the post or raise NotFound/Forbidden."""

        async with self._session_maker() as session:
            return await require_post_access(session, post_id, key_id, bit)

    async def get_post(self, post_id: str, key_id: str) -> PostRecord:
        async with self._session_maker() as session:
            await require_post_access(session, post_id, key_id, bitmask.VIEW)
            post = await PostSQLStore(session).find_by_id(post_id)
        if post is None:
            raise NotFound("Post not found")
        return post

    async def list_grants(self, post_id: str, key_id: str) -> list[AccessGrant]:
        async with self._session_maker() as session:
            await require_post_access(session, post_id, key_id, bitmask.MANAGE_ACCESS)
            return await PostAccessSQLStore(session).list_for_post(post_id)

    async def grant(
        self,
        post_id: str,
        requester_key_id: str,
        requester_permissions: Iterable[str],
        target_type: str,
        target_id: str,
        mask: int,
    ) -> AccessGrant:
        self._check_target(target_type, target_id)
        post_id = post_id.lower()
        bitmask.validate_mask(mask)
        async with self._session_maker() as session:
            await self._authorize_manage(session, post_id, requester_key_id, requester_permissions)
            await self._require_target(session, target_type, target_id)
            grant, previous = await PostAccessSQLStore(session).upsert(
                post_id, target_type, target_id.lower(), mask
            )
            await session.commit()

        await self._emit(
            grant,
            requester_key_id,
            "posts:access:grant",
            post_id,
            {
                "target_type": target_type,
                "target_id": grant.target_id,
                "permission_mask": mask,
                "previous_mask": previous,
            },
        )
        return grant

    async def revoke(
        self,
        post_id: str,
        requester_key_id: str,
        requester_permissions: Iterable[str],
        target_type: str,
        target_id: str,
    ) -> None:
        self._check_target(target_type, target_id)
        post_id = post_id.lower()
        async with self._session_maker() as session:
            await self._authorize_manage(session, post_id, requester_key_id, requester_permissions)
            removed = await PostAccessSQLStore(session).delete(
                post_id, target_type, target_id.lower()
            )
            if not removed:
                raise NotFound("Grant not found")
            await session.commit()

        await self._emit(
            None,
            requester_key_id,
            "posts:access:revoke",
            post_id,
            {"target_type": target_type, "target_id": target_id.lower()},
        )

    async def create_post(
        self, author_key_id: str, content: str, title: str | None = None
    ) -> PostRecord:
        """Create a post and give its author an ADMIN grant in the same transaction."""

        content = (content or "").strip()
        if not content or len(content) > MAX_CONTENT_LENGTH:
            raise ValidationError(f"Content must be 1..{MAX_CONTENT_LENGTH} characters")
        if title is not None:
            title = title.strip()
            if not title or len(title) > MAX_TITLE_LENGTH:
                raise ValidationError(f"Title must be 1..{MAX_TITLE_LENGTH} characters")

        async with self._session_maker() as session:
            author = await KeySQLStore(session).find_by_id(author_key_id)
            if author is None:
                raise NotFound("Key not found")
            if not author.active or author.is_retired:
                raise Forbidden("Key is inactive", required_permissions=["posts:create"])
            if author.type == KEY_TYPE_USE or "posts:create" not in author.permissions:
                raise Forbidden(required_permissions=["posts:create"])
            post = await PostSQLStore(session).insert(
                author_key_id=author.id,
                initial_author_key_id=author.initial_author_key_id,
                content=content,
                title=title,
            )
            await PostAccessSQLStore(session).upsert(post.id, TARGET_KEY, author.id, bitmask.ADMIN)
            await session.commit()

        await self._emit(
            post,
            author.id,
            "posts:create",
            post.id,
            {"title": post.title, "initial_author_key_id": post.initial_author_key_id},
        )
        logger.info("post created", extra={"post_id": post.id, "author_key_id": author.id})
        return post

    async def _authorize_manage(
        self,
        session: AsyncSession,
        post_id: str,
        requester_key_id: str,
        requester_permissions: Iterable[str],
    ) -> None:
        if await PostSQLStore(session).find_by_id(post_id) is None:
            raise NotFound("Post not found")
        mask = await resolve_mask(session, post_id.lower(), requester_key_id)
        if not bitmask.has_view(mask):
            raise NotFound("Post not found")
        if "posts:access:manage" not in set(requester_permissions):
            raise Forbidden(required_permissions=["posts:access:manage"])
        if not bitmask.has_manage_access(mask):
            raise Forbidden(required_mask=bitmask.bit_name(bitmask.MANAGE_ACCESS))
        requester = await KeySQLStore(session).find_by_id(requester_key_id)
        if requester is None or not requester.active or requester.is_retired:
            raise Forbidden("Key is inactive", required_permissions=["posts:access:manage"])

    @staticmethod
    def _check_target(target_type: str, target_id: str) -> None:
        if target_type not in TARGET_TYPES:
            raise ValidationError(f"Unknown target type: {target_type}")
        if not is_hex32(target_id):
            raise ValidationError("Target id must be a 32-character hex string")

    @staticmethod
    async def _require_target(session: AsyncSession, target_type: str, target_id: str) -> None:
        model = models.Key if target_type == TARGET_KEY else models.Group
        if await session.get(model, target_id.lower()) is None:
            raise NotFound(f"Target {target_type} not found")

    async def _emit(
        self,
        result: Any,
        actor_key_id: str,
        action: str,
        post_id: str,
        metadata: Mapping[str, Any],
    ) -> None:
        try:
            await self._audit.emit(
                "key",
                actor_key_id,
                action,
                subject_type="post",
                subject_id=post_id.lower(),
                metadata=metadata,
            )
        except Exception as exc:
            logger.error("audit emission failed", extra={"action": action}, exc_info=True)
            raise AuditEmissionError(action, result, exc) from exc


__all__ = [
    "AccessGrant",
    "GroupMembershipSQLStore",
    "PostAccessResolver",
    "PostAccessSQLStore",
    "PostAccessService",
    "PostRecord",
    "PostSQLStore",
    "TARGET_GROUP",
    "TARGET_KEY",
    "require_post_access",
    "resolve_mask",
    "to_post_record",
]
