"""Post feeds filtered by the VIEW bit of the reading key.

A post appears in a key's feed only when a direct grant or a grant to one of
the key's groups carries VIEW; this is the same mask the resolver computes for
single-post reads, expressed as a query.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from keygate.core.errors import Forbidden, NotFound
from keygate.db import models
from keygate.services import bitmask
from keygate.services.comments import check_cursor, check_page_limit
from keygate.services.key_store import KeySQLStore
from keygate.services.permissions import KEY_TYPE_USE
from keygate.services.post_access import TARGET_GROUP, TARGET_KEY, PostRecord, to_post_record


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FeedPage:
    limit: int
    posts: list[PostRecord] = field(default_factory=list)
    cursor: str | None = None


def _view_granted():
    return models.PostAccess.permission_mask.op("&")(bitmask.VIEW) != 0


def visible_directly(key_id: str):
    return (
        select(models.PostAccess.id)
        .where(
            models.PostAccess.post_id == models.Post.id,
            models.PostAccess.target_type == TARGET_KEY,
            models.PostAccess.target_id == key_id,
            _view_granted(),
        )
        .exists()
    )


def visible_via_groups(key_id: str):
    groups = select(models.GroupMember.group_id).where(models.GroupMember.key_id == key_id)
    return (
        select(models.PostAccess.id)
        .where(
            models.PostAccess.post_id == models.Post.id,
            models.PostAccess.target_type == TARGET_GROUP,
            models.PostAccess.target_id.in_(groups),
            _view_granted(),
        )
        .exists()
    )


def _after_cursor(cursor_id: str, *, older: bool):
    cursor = aliased(models.Post)
    cursor_at = select(cursor.created_at).where(cursor.id == cursor_id).scalar_subquery()
    if older:
        return or_(
            models.Post.created_at < cursor_at,
            and_(models.Post.created_at == cursor_at, models.Post.id < cursor_id),
        )
    return or_(
        models.Post.created_at > cursor_at,
        and_(models.Post.created_at == cursor_at, models.Post.id > cursor_id),
    )


class FeedService:
    def __init__(self, session_maker: async_sessionmaker) -> None:
        self._session_maker = session_maker

    async def use_key_feed(
        self,
        path_key_id: str,
        key_id: str,
        permissions: Iterable[str],
        *,
        limit: int = 20,
        before_id: str | None = None,
        since_id: str | None = None,
    ) -> FeedPage:
        """Posts the calling key can VIEW. Another key's feed is reported as missing."""

        check_page_limit(limit)
        before_id = check_cursor(before_id, "before_id")
        since_id = check_cursor(since_id, "since_id")
        if (path_key_id or "").lower() != key_id.lower():
            raise NotFound("Feed not found")
        if "posts:read" not in set(permissions):
            raise Forbidden(required_permissions=["posts:read"])
        async with self._session_maker() as session:
            if await KeySQLStore(session).find_by_id(key_id) is None:
                raise NotFound("Key not found")
            visible = or_(visible_directly(key_id), visible_via_groups(key_id))
            posts = await self._page(session, visible, limit, before_id, since_id)
        return FeedPage(limit=limit, posts=posts, cursor=posts[-1].id if posts else None)

    async def author_feed(
        self,
        key_id: str,
        permissions: Iterable[str],
        *,
        limit: int = 20,
        before_id: str | None = None,
        since_id: str | None = None,
    ) -> FeedPage:
        """Visible posts of the key's own lineage plus posts shared with its groups."""

        check_page_limit(limit)
        before_id = check_cursor(before_id, "before_id")
        since_id = check_cursor(since_id, "since_id")
        if "posts:read" not in set(permissions):
            raise Forbidden(required_permissions=["posts:read"])
        async with self._session_maker() as session:
            key = await KeySQLStore(session).find_by_id(key_id)
            if key is None:
                raise NotFound("Key not found")
            if key.type == KEY_TYPE_USE:
                raise NotFound("Feed not found")
            shared = visible_via_groups(key.id)
            own_lineage = and_(
                models.Post.initial_author_key_id == key.initial_author_key_id,
                visible_directly(key.id),
            )
            posts = await self._page(session, or_(own_lineage, shared), limit, before_id, since_id)
        return FeedPage(limit=limit, posts=posts, cursor=posts[-1].id if posts else None)

    @staticmethod
    async def _page(
        session: AsyncSession,
        clause,
        limit: int,
        before_id: str | None,
        since_id: str | None,
    ) -> list[PostRecord]:
        stmt = select(models.Post).where(clause)
        if before_id is not None:
            stmt = stmt.where(_after_cursor(before_id, older=True))
        if since_id is not None:
            stmt = stmt.where(_after_cursor(since_id, older=False))
        stmt = stmt.order_by(models.Post.created_at.desc(), models.Post.id.desc()).limit(limit)
        rows = (await session.execute(stmt)).scalars().all()
        return [to_post_record(r) for r in rows]


__all__ = ["FeedPage", "FeedService", "visible_directly", "visible_via_groups"]
