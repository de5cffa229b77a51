"""Named key sets.

Owner keychains are managed from the console and may only hold keys of the
owner's own lineage. External keychains have no owner and are managed by keys
through the gateway; an owner never sees them and a key never sees an owner's
keychain.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keygate.core.errors import AuditEmissionError, NotFound, ValidationError
from keygate.db import models
from keygate.ids import is_hex32, new_id
from keygate.services.audit import AuditSink
from keygate.services.key_store import KeySQLStore


logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 255


@dataclass(slots=True, frozen=True)
class KeychainRecord:
    id: str
    name: str
    owner_id: str | None = None
    created_at: datetime | None = None

    @property
    def is_external(self) -> bool:
        return self.owner_id is None


def _keychain(row: models.Keychain) -> KeychainRecord:
    return KeychainRecord(id=row.id, name=row.name, owner_id=row.owner_id, created_at=row.created_at)


def _check_name(name: str) -> str:
    name = (name or "").strip()
    if not name or len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"Keychain name must be 1..{MAX_NAME_LENGTH} characters")
    return name


class KeychainMemberSQLStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find_members(self, keychain_id: str) -> list[str]:
        stmt = (
            select(models.KeychainMember.key_id)
            .where(models.KeychainMember.keychain_id == keychain_id)
            .order_by(models.KeychainMember.created_at)
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def add(self, keychain_id: str, key_id: str) -> bool:
        if await self._session.get(models.KeychainMember, (keychain_id, key_id)) is not None:
            return False
        self._session.add(
            models.KeychainMember(
                keychain_id=keychain_id, key_id=key_id, created_at=datetime.now(timezone.utc)
            )
        )
        await self._session.flush()
        return True

    async def remove(self, keychain_id: str, key_id: str) -> bool:
        stmt = (
            delete(models.KeychainMember)
            .where(
                models.KeychainMember.keychain_id == keychain_id,
                models.KeychainMember.key_id == key_id,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0


class KeychainService:
    def __init__(self, session_maker: async_sessionmaker, audit: AuditSink) -> None:
        self._session_maker = session_maker
        self._audit = audit

    # Owner keychains

    async def create_keychain(self, owner_id: str, name: str) -> KeychainRecord:
        name = _check_name(name)
        async with self._session_maker() as session:
            if not is_hex32(owner_id) or await session.get(models.Owner, owner_id) is None:
                raise NotFound("Owner not found")
            keychain = await self._insert(session, name, owner_id)
            await session.commit()

        await self._emit(keychain, "owner", owner_id, "keychains:create", keychain.id, {"name": name})
        return keychain

    async def list_keychains(self, owner_id: str) -> list[KeychainRecord]:
        if not is_hex32(owner_id):
            return []
        stmt = (
            select(models.Keychain)
            .where(models.Keychain.owner_id == owner_id)
            .order_by(models.Keychain.created_at)
        )
        async with self._session_maker() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_keychain(r) for r in rows]

    async def members(self, owner_id: str, keychain_id: str) -> list[str]:
        async with self._session_maker() as session:
            keychain = await self._find(session, keychain_id, owner_id=owner_id)
            return await KeychainMemberSQLStore(session).find_members(keychain.id)

    async def add_member(self, owner_id: str, keychain_id: str, key_id: str) -> bool:
        """Add a key of the owner's lineage; ``False`` if it was already a member."""

        async with self._session_maker() as session:
            keychain = await self._find(session, keychain_id, owner_id=owner_id)
            if await KeySQLStore(session).find_owner_id(key_id) != owner_id:
                raise NotFound("Key not found")
            added = await KeychainMemberSQLStore(session).add(keychain.id, key_id.lower())
            await session.commit()

        if added:
            await self._emit(
                added,
                "owner",
                owner_id,
                "keychains:member:add",
                keychain.id,
                {"key_id": key_id.lower()},
            )
        return added

    async def remove_member(self, owner_id: str, keychain_id: str, key_id: str) -> bool:
        async with self._session_maker() as session:
            keychain = await self._find(session, keychain_id, owner_id=owner_id)
            removed = await self._remove(session, keychain.id, key_id)
            await session.commit()

        if removed:
            await self._emit(
                None,
                "owner",
                owner_id,
                "keychains:member:remove",
                keychain.id,
                {"key_id": key_id.lower()},
            )
        return removed

    # External keychains

    async def create_external(self, actor_key_id: str, name: str) -> KeychainRecord:
        name = _check_name(name)
        async with self._session_maker() as session:
            if await KeySQLStore(session).find_by_id(actor_key_id) is None:
                raise NotFound("Key not found")
            keychain = await self._insert(session, name, None)
            await session.commit()

        await self._emit(
            keychain,
            "key",
            actor_key_id,
            "keychains:create",
            keychain.id,
            {"name": name, "external": True},
        )
        return keychain

    async def external_members(self, keychain_id: str) -> list[str]:
        async with self._session_maker() as session:
            keychain = await self._find(session, keychain_id, owner_id=None)
            return await KeychainMemberSQLStore(session).find_members(keychain.id)

    async def add_external_member(
        self, actor_key_id: str, keychain_id: str, member_key_id: str
    ) -> bool:
        async with self._session_maker() as session:
            keychain = await self._find(session, keychain_id, owner_id=None)
            if await KeySQLStore(session).find_by_id(member_key_id) is None:
                raise NotFound("Key not found")
            added = await KeychainMemberSQLStore(session).add(keychain.id, member_key_id.lower())
            await session.commit()

        if added:
            await self._emit(
                added,
                "key",
                actor_key_id,
                "keychains:member:add",
                keychain.id,
                {"key_id": member_key_id.lower(), "external": True},
            )
        return added

    async def remove_external_member(
        self, actor_key_id: str, keychain_id: str, member_key_id: str
    ) -> bool:
        async with self._session_maker() as session:
            keychain = await self._find(session, keychain_id, owner_id=None)
            removed = await self._remove(session, keychain.id, member_key_id)
            await session.commit()

        if removed:
            await self._emit(
                None,
                "key",
                actor_key_id,
                "keychains:member:remove",
                keychain.id,
                {"key_id": member_key_id.lower(), "external": True},
            )
        return removed

    @staticmethod
    async def _insert(session: AsyncSession, name: str, owner_id: str | None) -> KeychainRecord:
        row = models.Keychain(
            id=new_id(), owner_id=owner_id, name=name, created_at=datetime.now(timezone.utc)
        )
        session.add(row)
        await session.flush()
        return _keychain(row)

    @staticmethod
    async def _find(
        session: AsyncSession, keychain_id: str, *, owner_id: str | None
    ) -> KeychainRecord:
        # owner_id=None selects external keychains
        row = await session.get(models.Keychain, keychain_id.lower()) if is_hex32(keychain_id) else None
        if row is None or row.owner_id != owner_id:
            raise NotFound("Keychain not found")
        return _keychain(row)

    @staticmethod
    async def _remove(session: AsyncSession, keychain_id: str, key_id: str) -> bool:
        if not is_hex32(key_id):
            return False
        return await KeychainMemberSQLStore(session).remove(keychain_id, key_id.lower())

    async def _emit(
        self,
        result: Any,
        actor_type: str,
        actor_id: str,
        action: str,
        keychain_id: str,
        metadata: Mapping[str, Any],
    ) -> None:
        try:
            await self._audit.emit(
                actor_type,
                actor_id,
                action,
                subject_type="keychain",
                subject_id=keychain_id,
                metadata=metadata,
            )
        except Exception as exc:
            logger.error("audit emission failed", extra={"action": action}, exc_info=True)
            raise AuditEmissionError(action, result, exc) from exc


__all__ = ["KeychainMemberSQLStore", "KeychainRecord", "KeychainService"]
