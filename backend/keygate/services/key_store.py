"""SQL stores for keys, public ids and use-key devices.

Every store is bound to one ``AsyncSession`` so a service can pair several
writes inside a single transaction. Stores never commit.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from keygate.db import models
from keygate.ids import is_hex32, new_id


@dataclass(slots=True, frozen=True)
class KeyRecord:
    """Read view of a key. Deliberately carries no secret material."""

    id: str
    type: str
    permissions: tuple[str, ...]
    active: bool
    initial_author_key_id: str
    owner_id: str | None = None
    issued_by_key_id: str | None = None
    parent_key_id: str | None = None
    rotated_from_id: str | None = None
    rotated_to_id: str | None = None
    retired_at: datetime | None = None
    use_count_limit: int | None = None
    use_count_current: int = 0
    device_limit: int | None = None
    label: str | None = None
    created_at: datetime | None = None

    @property
    def is_retired(self) -> bool:
        return self.retired_at is not None

    @property
    def is_root(self) -> bool:
        return self.type == "primary" and self.initial_author_key_id == self.id


def _to_record(row: models.Key) -> KeyRecord:
    return KeyRecord(
        id=row.id,
        type=row.type,
        permissions=tuple(sorted(row.permissions or [])),
        active=bool(row.active),
        initial_author_key_id=row.initial_author_key_id,
        owner_id=row.owner_id,
        issued_by_key_id=row.issued_by_key_id,
        parent_key_id=row.parent_key_id,
        rotated_from_id=row.rotated_from_id,
        rotated_to_id=row.rotated_to_id,
        retired_at=row.retired_at,
        use_count_limit=row.use_count_limit,
        use_count_current=row.use_count_current or 0,
        device_limit=row.device_limit,
        label=row.label,
        created_at=row.created_at,
    )


class KeySQLStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert(
        self,
        *,
        key_id: str,
        key_type: str,
        secret_hash: str,
        permissions: Iterable[str],
        initial_author_key_id: str,
        owner_id: str | None = None,
        issued_by_key_id: str | None = None,
        parent_key_id: str | None = None,
        rotated_from_id: str | None = None,
        use_count_limit: int | None = None,
        device_limit: int | None = None,
        label: str | None = None,
    ) -> KeyRecord:
        row = models.Key(
            id=key_id,
            owner_id=owner_id,
            type=key_type,
            secret_hash=secret_hash,
            permissions=sorted(set(permissions)),
            active=True,
            issued_by_key_id=issued_by_key_id,
            parent_key_id=parent_key_id,
            initial_author_key_id=initial_author_key_id,
            rotated_from_id=rotated_from_id,
            use_count_limit=use_count_limit,
            use_count_current=0,
            device_limit=device_limit,
            label=label,
            created_at=datetime.now(timezone.utc),
        )
        self._session.add(row)
        await self._session.flush()
        return _to_record(row)

    async def find_by_id(self, key_id: str, *, lock: bool = False) -> KeyRecord | None:
        if not is_hex32(key_id):
            return None
        stmt = (
            select(models.Key)
            .where(models.Key.id == key_id)
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update()
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return _to_record(row) if row else None

    async def find_many(self, key_ids: Sequence[str]) -> list[KeyRecord]:
        if not key_ids:
            return []
        stmt = (
            select(models.Key)
            .where(models.Key.id.in_(list(key_ids)))
            .order_by(models.Key.created_at)
            .execution_options(populate_existing=True)
        )
        rows = (await self._session.execute(stmt)).scalars().all()
        return [_to_record(r) for r in rows]

    async def find_secret_hash(self, key_id: str) -> str | None:
        stmt = select(models.Key.secret_hash).where(models.Key.id == key_id)
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def find_children(self, parent_key_id: str) -> list[KeyRecord]:
        stmt = (
            select(models.Key)
            .where(models.Key.parent_key_id == parent_key_id)
            .order_by(models.Key.created_at)
            .execution_options(populate_existing=True)
        )
        rows = (await self._session.execute(stmt)).scalars().all()
        return [_to_record(r) for r in rows]

    async def find_child_ids(self, parent_key_ids: Sequence[str]) -> list[tuple[str, str]]:
        """Return ``(child_id, parent_id)`` pairs for one traversal level."""

        if not parent_key_ids:
            return []
        stmt = select(models.Key.id, models.Key.parent_key_id).where(
            models.Key.parent_key_id.in_(list(parent_key_ids))
        )
        return [(row[0], row[1]) for row in (await self._session.execute(stmt)).all()]

    async def find_by_owner(self, owner_id: str) -> list[KeyRecord]:
        """All keys whose lineage is rooted at a primary key of ``owner_id``."""

        if not is_hex32(owner_id):
            return []
        roots = select(models.Key.initial_author_key_id).where(models.Key.owner_id == owner_id)
        return await self._find_where(models.Key.initial_author_key_id.in_(roots))

    async def find_by_initial_author(self, initial_author_key_id: str) -> list[KeyRecord]:
        if not is_hex32(initial_author_key_id):
            return []
        return await self._find_where(
            models.Key.initial_author_key_id == initial_author_key_id.lower()
        )

    async def _find_where(self, clause) -> list[KeyRecord]:
        stmt = (
            select(models.Key)
            .where(clause)
            .order_by(models.Key.created_at)
            .execution_options(populate_existing=True)
        )
        rows = (await self._session.execute(stmt)).scalars().all()
        return [_to_record(r) for r in rows]

    async def find_owner_id(self, key_id: str) -> str | None:
        """Owner of the primary key at the root of ``key_id``'s lineage."""

        key = await self.find_by_id(key_id)
        if key is None:
            return None
        if key.owner_id:
            return key.owner_id
        root = await self.find_by_id(key.initial_author_key_id)
        return root.owner_id if root else None

    async def update_active(self, key_ids: Sequence[str], active: bool) -> int:
        if not key_ids:
            return 0
        stmt = (
            update(models.Key)
            .where(models.Key.id.in_(list(key_ids)))
            .values(active=active)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount or 0

    async def mark_rotated(self, old_key_id: str, new_key_id: str, retired_at: datetime) -> bool:
        """Retire ``old_key_id`` unless it is already retired."""

        stmt = (
            update(models.Key)
            .where(models.Key.id == old_key_id, models.Key.retired_at.is_(None))
            .values(rotated_to_id=new_key_id, retired_at=retired_at, active=False)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) == 1

    async def increment_use_count(self, key_id: str) -> bool:
        """Consume one use; ``False`` once the limit is reached."""

        stmt = (
            update(models.Key)
            .where(
                models.Key.id == key_id,
                (models.Key.use_count_limit.is_(None))
                | (models.Key.use_count_current < models.Key.use_count_limit),
            )
            .values(use_count_current=models.Key.use_count_current + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) == 1


class PublicIdSQLStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert(self, key_id: str, public_id: str) -> None:
        self._session.add(
            models.KeyPublicId(
                key_id=key_id, public_id=public_id, created_at=datetime.now(timezone.utc)
            )
        )
        await self._session.flush()

    async def find_key_id(self, public_id: str) -> str | None:
        stmt = select(models.KeyPublicId.key_id).where(models.KeyPublicId.public_id == public_id)
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def find_public_id(self, key_id: str) -> str | None:
        stmt = select(models.KeyPublicId.public_id).where(models.KeyPublicId.key_id == key_id)
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def find_public_ids(self, key_ids: Sequence[str]) -> dict[str, str]:
        if not key_ids:
            return {}
        stmt = select(models.KeyPublicId.key_id, models.KeyPublicId.public_id).where(
            models.KeyPublicId.key_id.in_(list(key_ids))
        )
        return {row[0]: row[1] for row in (await self._session.execute(stmt)).all()}


class KeyDeviceSQLStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def exists(self, key_id: str, fingerprint: str) -> bool:
        stmt = select(models.KeyDevice.id).where(
            models.KeyDevice.key_id == key_id,
            models.KeyDevice.device_fingerprint == fingerprint,
        )
        return (await self._session.execute(stmt)).first() is not None

    async def count(self, key_id: str) -> int:
        stmt = select(func.count()).select_from(models.KeyDevice).where(
            models.KeyDevice.key_id == key_id
        )
        return int((await self._session.execute(stmt)).scalar_one())

    async def register(self, key_id: str, fingerprint: str) -> None:
        self._session.add(
            models.KeyDevice(
                id=new_id(),
                key_id=key_id,
                device_fingerprint=fingerprint,
                created_at=datetime.now(timezone.utc),
            )
        )
        await self._session.flush()


__all__ = ["KeyDeviceSQLStore", "KeyRecord", "KeySQLStore", "PublicIdSQLStore"]
