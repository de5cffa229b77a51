"""Owner-scoped key groups used to share post access."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keygate.core.errors import AuditEmissionError, NotFound, ValidationError
from keygate.db import models
from keygate.ids import is_hex32, new_id
from keygate.services.audit import AuditSink
from keygate.services.key_store import KeySQLStore
from keygate.services.post_access import GroupMembershipSQLStore


logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 255


@dataclass(slots=True, frozen=True)
class GroupRecord:
    id: str
    owner_id: str
    name: str
    created_at: datetime | None = None


def _group(row: models.Group) -> GroupRecord:
    return GroupRecord(id=row.id, owner_id=row.owner_id, name=row.name, created_at=row.created_at)


class GroupService:
    def __init__(self, session_maker: async_sessionmaker, audit: AuditSink) -> None:
        self._session_maker = session_maker
        self._audit = audit

    async def create_group(self, owner_id: str, name: str) -> GroupRecord:
        name = (name or "").strip()
        if not name or len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"Group name must be 1..{MAX_NAME_LENGTH} characters")
        async with self._session_maker() as session:
            if not is_hex32(owner_id) or await session.get(models.Owner, owner_id) is None:
                raise NotFound("Owner not found")
            row = models.Group(
                id=new_id(), owner_id=owner_id, name=name, created_at=datetime.now(timezone.utc)
            )
            session.add(row)
            await session.flush()
            group = _group(row)
            await session.commit()

        await self._emit(group, owner_id, "groups:create", group.id, {"name": name})
        return group

    async def list_groups(self, owner_id: str) -> list[GroupRecord]:
        stmt = (
            select(models.Group)
            .where(models.Group.owner_id == owner_id)
            .order_by(models.Group.created_at)
        )
        async with self._session_maker() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_group(r) for r in rows]

    async def members(self, owner_id: str, group_id: str) -> list[str]:
        async with self._session_maker() as session:
            await self._owned_group(session, owner_id, group_id)
            return await GroupMembershipSQLStore(session).find_members(group_id)

    async def add_member(self, owner_id: str, group_id: str, key_id: str) -> bool:
        """Add ``key_id`` to the group; ``False`` if it was already a member."""

        async with self._session_maker() as session:
            group = await self._owned_group(session, owner_id, group_id)
            await self._owned_key(session, owner_id, key_id)
            added = await GroupMembershipSQLStore(session).add(group.id, key_id)
            await session.commit()

        if added:
            await self._emit(added, owner_id, "groups:member:add", group.id, {"key_id": key_id})
        return added

    async def remove_member(self, owner_id: str, group_id: str, key_id: str) -> None:
        async with self._session_maker() as session:
            group = await self._owned_group(session, owner_id, group_id)
            if not is_hex32(key_id):
                raise NotFound("Member not found")
            if not await GroupMembershipSQLStore(session).remove(group.id, key_id):
                raise NotFound("Member not found")
            await session.commit()

        await self._emit(None, owner_id, "groups:member:remove", group.id, {"key_id": key_id})

    async def groups_for_key(self, key_id: str) -> list[str]:
        if not is_hex32(key_id):
            return []
        async with self._session_maker() as session:
            return await GroupMembershipSQLStore(session).find_groups_for_key(key_id)

    @staticmethod
    async def _owned_group(session: AsyncSession, owner_id: str, group_id: str) -> GroupRecord:
        # another owner's group is reported as missing
        row = await session.get(models.Group, group_id) if is_hex32(group_id) else None
        if row is None or row.owner_id != owner_id:
            raise NotFound("Group not found")
        return _group(row)

    @staticmethod
    async def _owned_key(session: AsyncSession, owner_id: str, key_id: str) -> None:
        if await KeySQLStore(session).find_owner_id(key_id) != owner_id:
            raise NotFound("Key not found")

    async def _emit(
        self,
        result: Any,
        owner_id: str,
        action: str,
        group_id: str,
        metadata: Mapping[str, Any],
    ) -> None:
        try:
            await self._audit.emit(
                "owner",
                owner_id,
                action,
                subject_type="group",
                subject_id=group_id,
                metadata=metadata,
            )
        except Exception as exc:
            logger.error("audit emission failed", extra={"action": action}, exc_info=True)
            raise AuditEmissionError(action, result, exc) from exc


__all__ = ["GroupRecord", "GroupService"]
