"""Comments on posts, gated by the caller's resolved post mask."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from keygate.core.errors import AuditEmissionError, Forbidden, ValidationError
from keygate.db import models
from keygate.ids import is_hex32, new_id
from keygate.services import bitmask
from keygate.services.audit import AuditSink
from keygate.services.post_access import require_post_access


logger = logging.getLogger(__name__)

MAX_BODY_LENGTH = 5000
MAX_PAGE_SIZE = 100


@dataclass(slots=True, frozen=True)
class CommentRecord:
    id: str
    post_id: str
    created_by_key_id: str
    body: str
    created_at: datetime | None = None


@dataclass(slots=True)
class CommentPage:
    limit: int
    comments: list[CommentRecord] = field(default_factory=list)
    before_id: str | None = None
    next_cursor: str | None = None


def _comment(row: models.Comment) -> CommentRecord:
    return CommentRecord(
        id=row.id,
        post_id=row.post_id,
        created_by_key_id=row.created_by_key_id,
        body=row.body,
        created_at=row.created_at,
    )


def check_page_limit(limit: int) -> None:
    if not isinstance(limit, int) or isinstance(limit, bool) or not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"Limit must be between 1 and {MAX_PAGE_SIZE}")


def check_cursor(cursor: str | None, name: str) -> str | None:
    if cursor is None:
        return None
    if not is_hex32(cursor):
        raise ValidationError(f"{name} must be a 32-character hex string")
    return cursor.lower()


class CommentSQLStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert(self, post_id: str, created_by_key_id: str, body: str) -> CommentRecord:
        row = models.Comment(
            id=new_id(),
            post_id=post_id,
            created_by_key_id=created_by_key_id,
            body=body,
            created_at=datetime.now(timezone.utc),
        )
        self._session.add(row)
        await self._session.flush()
        return _comment(row)

    async def find_by_post(
        self, post_id: str, limit: int, before_id: str | None = None
    ) -> list[CommentRecord]:
        """Newest first. ``before_id`` pages past a comment of the same post."""

        stmt = select(models.Comment).where(models.Comment.post_id == post_id)
        if before_id is not None:
            cursor = aliased(models.Comment)
            cursor_at = (
                select(cursor.created_at)
                .where(cursor.id == before_id, cursor.post_id == post_id)
                .scalar_subquery()
            )
            stmt = stmt.where(
                or_(
                    models.Comment.created_at < cursor_at,
                    and_(models.Comment.created_at == cursor_at, models.Comment.id < before_id),
                )
            )
        stmt = stmt.order_by(models.Comment.created_at.desc(), models.Comment.id.desc()).limit(limit)
        rows = (await self._session.execute(stmt)).scalars().all()
        return [_comment(r) for r in rows]


class CommentService:
    def __init__(self, session_maker: async_sessionmaker, audit: AuditSink) -> None:
        self._session_maker = session_maker
        self._audit = audit

    async def create_comment(
        self,
        post_id: str,
        author_key_id: str,
        author_permissions: Iterable[str],
        body: str,
    ) -> CommentRecord:
        """Add a comment as ``author_key_id``.

        An invisible post is reported as missing. A visible one still needs the
        ``comments:write`` permission and the COMMENT bit.
        """

        if not isinstance(body, str) or not 1 <= len(body) <= MAX_BODY_LENGTH:
            raise ValidationError(f"Comment body must be 1..{MAX_BODY_LENGTH} characters")
        post_id = post_id.lower()
        async with self._session_maker() as session:
            mask = await require_post_access(session, post_id, author_key_id, bitmask.VIEW)
            if "comments:write" not in set(author_permissions):
                raise Forbidden(required_permissions=["comments:write"])
            if not bitmask.has_comment(mask):
                raise Forbidden(
                    required_permissions=["comments:write"],
                    required_mask=bitmask.bit_name(bitmask.COMMENT),
                )
            comment = await CommentSQLStore(session).insert(post_id, author_key_id, body)
            await session.commit()

        await self._emit(comment, author_key_id, "comments:create", comment.id, {"post_id": post_id})
        logger.info("comment created", extra={"comment_id": comment.id, "post_id": post_id})
        return comment

    async def list_comments(
        self,
        post_id: str,
        viewer_key_id: str,
        viewer_permissions: Iterable[str],
        *,
        limit: int = 20,
        before_id: str | None = None,
    ) -> CommentPage:
        check_page_limit(limit)
        before_id = check_cursor(before_id, "before_id")
        post_id = post_id.lower()
        async with self._session_maker() as session:
            await require_post_access(session, post_id, viewer_key_id, bitmask.VIEW)
            if "posts:read" not in set(viewer_permissions):
                raise Forbidden(required_permissions=["posts:read"])
            comments = await CommentSQLStore(session).find_by_post(post_id, limit, before_id)

        next_cursor = comments[-1].id if len(comments) == limit else None
        return CommentPage(
            limit=limit, comments=comments, before_id=before_id, next_cursor=next_cursor
        )

    async def _emit(
        self,
        result: Any,
        actor_key_id: str,
        action: str,
        comment_id: str,
        metadata: Mapping[str, Any],
    ) -> None:
        try:
            await self._audit.emit(
                "key",
                actor_key_id,
                action,
                subject_type="comment",
                subject_id=comment_id,
                metadata=metadata,
            )
        except Exception as exc:
            logger.error("audit emission failed", extra={"action": action}, exc_info=True)
            raise AuditEmissionError(action, result, exc) from exc


__all__ = [
    "CommentPage",
    "CommentRecord",
    "CommentSQLStore",
    "CommentService",
    "MAX_BODY_LENGTH",
    "MAX_PAGE_SIZE",
    "check_cursor",
    "check_page_limit",
]
