"""Key minting, rotation and activation state.

Lifecycle per key: ``active <-> inactive`` through activate/deactivate and
``active -> retired`` through rotation, retired being terminal. Lineage
columns are written once at insert and copied forward on rotation.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Iterable, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keygate.core.errors import (
    AuditEmissionError,
    Forbidden,
    Inconsistency,
    KeygateError,
    KeyRetired,
    NotFound,
    ValidationError,
)
from keygate.db import models
from keygate.ids import is_hex32, new_id, new_key_secret, new_public_id
from keygate.security import SecretHasher
from keygate.services.audit import AuditSink, sanitize
from keygate.services.key_store import KeyRecord, KeySQLStore, PublicIdSQLStore
from keygate.services.permissions import (
    DEFAULT_CATALOG,
    KEY_TYPE_PRIMARY,
    KEY_TYPE_SECONDARY,
    KEY_TYPE_USE,
    PermissionCatalog,
    validate_envelope,
)


logger = logging.getLogger(__name__)

MAX_LABEL_LENGTH = 255


@dataclass(slots=True, frozen=True)
class MintedKey:
    """One-shot result of minting or rotation; the only place a secret appears."""

    key: KeyRecord
    public_id: str
    secret: str = field(repr=False)

    @property
    def key_id(self) -> str:
        return self.key.id


@dataclass(slots=True, frozen=True)
class UseKeyLimits:
    use_count_limit: int | None = None
    device_limit: int | None = None


@dataclass(slots=True, frozen=True)
class Actor:
    type: str
    id: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_label(label: str | None) -> str | None:
    if label is None:
        return None
    label = label.strip()
    if not label:
        return None
    if len(label) > MAX_LABEL_LENGTH:
        raise ValidationError(f"Label must be at most {MAX_LABEL_LENGTH} characters")
    return label


def _check_limits(key_type: str, limits: UseKeyLimits | None) -> UseKeyLimits:
    if limits is None:
        return UseKeyLimits()
    if key_type != KEY_TYPE_USE:
        if limits.use_count_limit is not None or limits.device_limit is not None:
            raise ValidationError("Only use keys carry use or device limits")
        return UseKeyLimits()
    for name, value in (
        ("use_count_limit", limits.use_count_limit),
        ("device_limit", limits.device_limit),
    ):
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ValidationError(f"{name} must be a positive integer")
    return limits


class KeyLifecycleManager:
    def __init__(
        self,
        session_maker: async_sessionmaker,
        audit: AuditSink,
        hasher: SecretHasher,
        *,
        catalog: PermissionCatalog = DEFAULT_CATALOG,
        max_depth: int = 32,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_maker = session_maker
        self._audit = audit
        self._hasher = hasher
        self._catalog = catalog
        self._max_depth = max_depth
        self._clock = clock

    # ------------------------------------------------------------------
    # Minting
    # ------------------------------------------------------------------

    async def mint_primary(
        self,
        owner_id: str,
        permissions: Iterable[str],
        label: str | None = None,
    ) -> MintedKey:
        requested = sorted(set(permissions))
        validate_envelope(requested, None, KEY_TYPE_PRIMARY, self._catalog)
        label = _normalize_label(label)
        secret = new_key_secret()
        secret_hash = await asyncio.to_thread(self._hasher.hash, secret)

        async with self._transaction("mint_primary", owner_id=owner_id) as session:
            if not is_hex32(owner_id) or await session.get(models.Owner, owner_id) is None:
                raise NotFound("Owner not found")
            key_id = new_id()
            public_id = new_public_id()
            record = await KeySQLStore(session).insert(
                key_id=key_id,
                key_type=KEY_TYPE_PRIMARY,
                secret_hash=secret_hash,
                permissions=requested,
                initial_author_key_id=key_id,
                owner_id=owner_id,
                label=label,
            )
            await PublicIdSQLStore(session).insert(key_id, public_id)

        minted = MintedKey(key=record, public_id=public_id, secret=secret)
        await self._emit(
            minted,
            Actor("owner", owner_id),
            "keys:mint",
            record.id,
            {"key_type": record.type, "permissions": list(record.permissions), "public_id": public_id},
        )
        logger.info("minted primary key", extra={"key_id": record.id, "owner_id": owner_id})
        return minted

    async def mint_child(
        self,
        parent_key_id: str,
        permissions: Iterable[str],
        key_type: str,
        limits: UseKeyLimits | None = None,
        label: str | None = None,
    ) -> MintedKey:
        """Mint a secondary or use key under ``parent_key_id``.

        The parent must be active, not retired, not a use key, and hold
        ``keys:issue``. Envelope checks run before anything is written.
        """

        if key_type not in (KEY_TYPE_SECONDARY, KEY_TYPE_USE):
            raise ValidationError("Child keys must be secondary or use keys")
        requested = sorted(set(permissions))
        limits = _check_limits(key_type, limits)
        label = _normalize_label(label)

        async with self._transaction("mint_child", parent_key_id=parent_key_id) as session:
            keys = KeySQLStore(session)
            parent = await keys.find_by_id(parent_key_id)
            if parent is None:
                raise NotFound("Parent key not found")
            if not parent.active or parent.is_retired:
                raise Forbidden("Parent key is inactive", required_permissions=["keys:issue"])
            if parent.type == KEY_TYPE_USE:
                raise Forbidden("Use keys cannot mint keys", required_permissions=["keys:issue"])
            if "keys:issue" not in parent.permissions:
                raise Forbidden(
                    "Parent key lacks keys:issue", required_permissions=["keys:issue"]
                )
            validate_envelope(requested, parent.permissions, key_type, self._catalog)

            secret = new_key_secret()
            secret_hash = await asyncio.to_thread(self._hasher.hash, secret)
            key_id = new_id()
            public_id = new_public_id()
            record = await keys.insert(
                key_id=key_id,
                key_type=key_type,
                secret_hash=secret_hash,
                permissions=requested,
                initial_author_key_id=parent.initial_author_key_id,
                issued_by_key_id=parent.id,
                parent_key_id=parent.id,
                use_count_limit=limits.use_count_limit,
                device_limit=limits.device_limit,
                label=label,
            )
            await PublicIdSQLStore(session).insert(key_id, public_id)

        minted = MintedKey(key=record, public_id=public_id, secret=secret)
        await self._emit(
            minted,
            Actor("key", parent.id),
            "keys:mint",
            record.id,
            {
                "key_type": record.type,
                "permissions": list(record.permissions),
                "public_id": public_id,
                "parent_key_id": parent.id,
                "use_count_limit": record.use_count_limit,
                "device_limit": record.device_limit,
            },
        )
        logger.info(
            "minted child key",
            extra={"key_id": record.id, "parent_key_id": parent.id, "key_type": key_type},
        )
        return minted

    async def mint_secondary(
        self, parent_key_id: str, permissions: Iterable[str], label: str | None = None
    ) -> MintedKey:
        return await self.mint_child(parent_key_id, permissions, KEY_TYPE_SECONDARY, label=label)

    async def mint_use(
        self,
        parent_key_id: str,
        permissions: Iterable[str],
        *,
        use_count_limit: int | None = None,
        device_limit: int | None = None,
        label: str | None = None,
    ) -> MintedKey:
        return await self.mint_child(
            parent_key_id,
            permissions,
            KEY_TYPE_USE,
            limits=UseKeyLimits(use_count_limit=use_count_limit, device_limit=device_limit),
            label=label,
        )

    # ------------------------------------------------------------------
    # Rotation and state
    # ------------------------------------------------------------------

    async def rotate(self, old_key_id: str, actor: Actor | None = None) -> MintedKey:
        """Replace a key with a successor and retire the old one atomically."""

        secret = new_key_secret()
        secret_hash = await asyncio.to_thread(self._hasher.hash, secret)

        async with self._transaction("rotate", key_id=old_key_id) as session:
            keys = KeySQLStore(session)
            old = await keys.find_by_id(old_key_id, lock=True)
            if old is None:
                raise NotFound("Key not found")
            if old.is_retired:
                raise KeyRetired(old.id)
            key_id = new_id()
            public_id = new_public_id()
            record = await keys.insert(
                key_id=key_id,
                key_type=old.type,
                secret_hash=secret_hash,
                permissions=old.permissions,
                initial_author_key_id=old.initial_author_key_id,
                owner_id=old.owner_id,
                issued_by_key_id=old.issued_by_key_id,
                parent_key_id=old.parent_key_id,
                rotated_from_id=old.id,
                use_count_limit=old.use_count_limit,
                device_limit=old.device_limit,
                label=old.label,
            )
            await PublicIdSQLStore(session).insert(key_id, public_id)
            if not await keys.mark_rotated(old.id, key_id, self._clock()):
                # a concurrent rotation retired the key first
                raise KeyRetired(old.id)
            actor = actor or await self._default_actor(keys, old)

        minted = MintedKey(key=record, public_id=public_id, secret=secret)
        await self._emit(
            minted,
            actor,
            "keys:rotate",
            old.id,
            {"rotated_from_id": old.id, "rotated_to_id": record.id, "public_id": public_id},
        )
        logger.info("rotated key", extra={"key_id": old.id, "successor_id": record.id})
        return minted

    async def deactivate(
        self, key_id: str, cascade: bool = False, actor: Actor | None = None
    ) -> int:
        """Deactivate a key, and with ``cascade`` every transitive descendant.

        Traversal and the bulk update share one transaction. A child minted
        concurrently under the subtree may escape the cascade.
        """

        async with self._transaction("deactivate", key_id=key_id, cascade=cascade) as session:
            keys = KeySQLStore(session)
            key = await keys.find_by_id(key_id)
            if key is None:
                raise NotFound("Key not found")
            if cascade:
                target_ids = await self._collect_subtree(keys, key.id)
            else:
                target_ids = [key.id]
            affected = await keys.update_active(target_ids, False)
            actor = actor or await self._default_actor(keys, key)

        await self._emit(
            affected,
            actor,
            "keys:deactivate",
            key.id,
            {"cascade": cascade, "affected": affected, "key_ids": target_ids},
        )
        logger.info(
            "deactivated keys",
            extra={"key_id": key.id, "cascade": cascade, "affected": affected},
        )
        return affected

    async def activate(self, key_id: str, actor: Actor | None = None) -> KeyRecord:
        async with self._transaction("activate", key_id=key_id) as session:
            keys = KeySQLStore(session)
            key = await keys.find_by_id(key_id)
            if key is None:
                raise NotFound("Key not found")
            if key.is_retired:
                raise KeyRetired(key.id)
            await keys.update_active([key.id], True)
            updated = await keys.find_by_id(key.id)
            actor = actor or await self._default_actor(keys, key)

        await self._emit(updated, actor, "keys:activate", key.id, {"was_active": key.active})
        return updated

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, key_id: str) -> KeyRecord:
        async with self._session_maker() as session:
            key = await KeySQLStore(session).find_by_id(key_id)
        if key is None:
            raise NotFound("Key not found")
        return key

    async def public_ids(self, key_ids: Iterable[str]) -> dict[str, str]:
        async with self._session_maker() as session:
            return await PublicIdSQLStore(session).find_public_ids(list(key_ids))

    async def lineage(self, key_id: str) -> list[KeyRecord]:
        """Return the parent chain of ``key_id`` ordered root to leaf.

        The top of the chain is a primary key. When that primary is itself a
        rotation successor, its ``initial_author_key_id`` must still name a
        self-rooted primary key, otherwise the lineage is inconsistent.
        """

        async with self._session_maker() as session:
            keys = KeySQLStore(session)
            current = await keys.find_by_id(key_id)
            if current is None:
                raise NotFound("Key not found")
            chain = [current]
            seen = {current.id}
            while current.parent_key_id is not None:
                if len(chain) > self._max_depth:
                    raise Inconsistency(f"Lineage of {key_id} exceeds depth {self._max_depth}")
                parent = await keys.find_by_id(current.parent_key_id)
                if parent is None:
                    raise Inconsistency(f"Key {current.id} references a missing parent")
                if parent.id in seen:
                    raise Inconsistency(f"Lineage cycle detected at {parent.id}")
                seen.add(parent.id)
                chain.append(parent)
                current = parent
            top = chain[-1]
            if top.type != KEY_TYPE_PRIMARY:
                raise Inconsistency(f"Lineage of {key_id} does not end at a primary key")
            if not top.is_root:
                anchor = await keys.find_by_id(top.initial_author_key_id)
                if anchor is None or not anchor.is_root:
                    raise Inconsistency(f"Lineage root of {key_id} is not a primary key")
        if any(k.initial_author_key_id != top.initial_author_key_id for k in chain):
            raise Inconsistency(f"Lineage of {key_id} mixes initial authors")
        chain.reverse()
        return chain

    async def descendants(self, key_id: str) -> list[KeyRecord]:
        async with self._session_maker() as session:
            keys = KeySQLStore(session)
            if await keys.find_by_id(key_id) is None:
                raise NotFound("Key not found")
            subtree = await self._collect_subtree(keys, key_id)
            return await keys.find_many(subtree[1:])

    async def list_for_owner(self, owner_id: str) -> list[KeyRecord]:
        async with self._session_maker() as session:
            return await KeySQLStore(session).find_by_owner(owner_id)

    async def owns(self, owner_id: str, key_id: str) -> bool:
        async with self._session_maker() as session:
            return await KeySQLStore(session).find_owner_id(key_id) == owner_id

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _transaction(self, operation: str, **context: Any) -> AsyncIterator[AsyncSession]:
        async with self._session_maker() as session:
            try:
                yield session
                await session.commit()
            except KeygateError:
                await session.rollback()
                raise
            except SQLAlchemyError:
                await session.rollback()
                logger.error(
                    "key transaction rolled back",
                    extra={"operation": operation, "context": sanitize(context)},
                    exc_info=True,
                )
                raise

    async def _collect_subtree(self, keys: KeySQLStore, root_id: str) -> list[str]:
        """Breadth-first ids of ``root_id`` and all its descendants."""

        ordered = [root_id]
        seen = {root_id}
        frontier = [root_id]
        depth = 0
        while frontier:
            pairs = await keys.find_child_ids(frontier)
            if not pairs:
                break
            depth += 1
            if depth > self._max_depth:
                raise Inconsistency(f"Descendants of {root_id} exceed depth {self._max_depth}")
            frontier = []
            for child_id, _parent_id in pairs:
                if child_id in seen:
                    raise Inconsistency(f"Lineage cycle detected at {child_id}")
                seen.add(child_id)
                ordered.append(child_id)
                frontier.append(child_id)
        return ordered

    async def _default_actor(self, keys: KeySQLStore, key: KeyRecord) -> Actor:
        owner_id = await keys.find_owner_id(key.id)
        if owner_id:
            return Actor("owner", owner_id)
        return Actor("key", key.id)

    async def _emit(
        self,
        result: Any,
        actor: Actor,
        action: str,
        subject_id: str,
        metadata: Mapping[str, Any],
    ) -> None:
        try:
            await self._audit.emit(
                actor.type,
                actor.id,
                action,
                subject_type="key",
                subject_id=subject_id,
                metadata=sanitize(metadata),
            )
        except Exception as exc:
            logger.error(
                "audit emission failed",
                extra={"action": action, "subject_id": subject_id},
                exc_info=True,
            )
            raise AuditEmissionError(action, result, exc) from exc


__all__ = ["Actor", "KeyLifecycleManager", "MintedKey", "UseKeyLimits"]
