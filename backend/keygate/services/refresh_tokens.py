"""Single-use refresh tokens with replay detection.

A token moves from issued to exactly one of rotated or revoked; expiry is
derived from ``expires_at``. Redeeming a rotated token again is a replay: it
is audited at critical severity and rejected like any other bad credential.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keygate.core.errors import AuditEmissionError, InvalidCredential, ValidationError
from keygate.db import models
from keygate.ids import new_id, new_refresh_token
from keygate.security import AccessTokenSigner, SecretHasher, lookup_hash
from keygate.services.audit import SEVERITY_CRITICAL, AuditSink
from keygate.services.key_store import KeySQLStore, PublicIdSQLStore
from keygate.services.permissions import DEFAULT_CATALOG, PermissionCatalog


logger = logging.getLogger(__name__)

SUBJECT_OWNER = "owner"
SUBJECT_KEY = "key"
SUBJECT_TYPES = (SUBJECT_OWNER, SUBJECT_KEY)


@dataclass(slots=True, frozen=True)
class RequestContext:
    ip: str | None = None
    user_agent: str | None = None


@dataclass(slots=True, frozen=True)
class TokenPair:
    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    expires_in: int
    refresh_expires_in: int
    token_type: str = "Bearer"


@dataclass(slots=True, frozen=True)
class TokenRecord:
    id: str
    subject_type: str
    subject_id: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    revoked_at: datetime | None = None
    rotated_at: datetime | None = None
    replaced_by_id: str | None = None


def _record(row: models.RefreshToken) -> TokenRecord:
    return TokenRecord(
        id=row.id,
        subject_type=row.subject_type,
        subject_id=row.subject_id,
        token_hash=row.token_hash,
        issued_at=row.issued_at,
        expires_at=row.expires_at,
        revoked_at=row.revoked_at,
        rotated_at=row.rotated_at,
        replaced_by_id=row.replaced_by_id,
    )


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenSQLStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert(
        self,
        *,
        subject_type: str,
        subject_id: str,
        token_hash: str,
        token_lookup: str,
        issued_at: datetime,
        expires_at: datetime,
        context: RequestContext,
    ) -> TokenRecord:
        row = models.RefreshToken(
            id=new_id(),
            subject_type=subject_type,
            subject_id=subject_id,
            token_hash=token_hash,
            lookup_hash=token_lookup,
            issued_at=issued_at,
            expires_at=expires_at,
            ip=context.ip,
            user_agent=context.user_agent[:256] if context.user_agent else None,
        )
        self._session.add(row)
        await self._session.flush()
        return _record(row)

    async def find_by_lookup_hash(self, token_lookup: str, *, lock: bool = False) -> TokenRecord | None:
        stmt = (
            select(models.RefreshToken)
            .where(models.RefreshToken.lookup_hash == token_lookup)
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update()
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return _record(row) if row else None

    async def mark_rotated(self, token_id: str, replaced_by_id: str, rotated_at: datetime) -> bool:
        """Mark the token rotated unless it already left the issued state."""

        stmt = (
            update(models.RefreshToken)
            .where(
                models.RefreshToken.id == token_id,
                models.RefreshToken.rotated_at.is_(None),
                models.RefreshToken.revoked_at.is_(None),
            )
            .values(rotated_at=rotated_at, replaced_by_id=replaced_by_id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) == 1

    async def revoke(self, token_id: str, revoked_at: datetime) -> bool:
        stmt = (
            update(models.RefreshToken)
            .where(
                models.RefreshToken.id == token_id,
                models.RefreshToken.rotated_at.is_(None),
                models.RefreshToken.revoked_at.is_(None),
            )
            .values(revoked_at=revoked_at)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) == 1


class RefreshTokenRotationEngine:
    def __init__(
        self,
        session_maker: async_sessionmaker,
        audit: AuditSink,
        hasher: SecretHasher,
        signer: AccessTokenSigner,
        *,
        refresh_ttl_seconds: int = 30 * 24 * 3600,
        catalog: PermissionCatalog = DEFAULT_CATALOG,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_maker = session_maker
        self._audit = audit
        self._hasher = hasher
        self._signer = signer
        self._refresh_ttl = refresh_ttl_seconds
        self._catalog = catalog
        self._clock = clock

    async def issue(
        self, subject_type: str, subject_id: str, context: RequestContext | None = None
    ) -> TokenPair:
        async with self._session_maker() as session:
            pair, _ = await self.issue_in(session, subject_type, subject_id, context)
            await session.commit()
        return pair

    async def issue_in(
        self,
        session: AsyncSession,
        subject_type: str,
        subject_id: str,
        context: RequestContext | None = None,
    ) -> tuple[TokenPair, TokenRecord]:
        """Issue a pair inside the caller's transaction; the caller commits."""

        if subject_type not in SUBJECT_TYPES:
            raise ValidationError(f"Unknown subject type: {subject_type}")
        access_token = await self._access_token(session, subject_type, subject_id)
        plaintext, record = await self._insert(
            session, subject_type, subject_id, context or RequestContext(), self._clock()
        )
        return self._pair(access_token, plaintext), record

    async def rotate(self, presented: str, context: RequestContext | None = None) -> TokenPair:
        """Redeem ``presented`` for a new access/refresh pair.

        The row is read under a lock and the old token is retired with a
        guarded update, so of two concurrent redemptions only one can win.
        """

        context = context or RequestContext()
        if not presented or not isinstance(presented, str):
            raise self._reject("malformed")
        now = self._clock()
        replayed: TokenRecord | None = None

        async with self._session_maker() as session:
            tokens = TokenSQLStore(session)
            record = await tokens.find_by_lookup_hash(lookup_hash(presented), lock=True)
            if record is None:
                raise self._reject("not_found")
            if not await asyncio.to_thread(self._hasher.verify, presented, record.token_hash):
                raise self._reject("hash_mismatch", record)
            if _as_utc(record.expires_at) <= now:
                raise self._reject("expired", record)
            if record.revoked_at is not None:
                raise self._reject("revoked", record)
            if record.rotated_at is not None:
                replayed = record
            else:
                access_token = await self._access_token(
                    session, record.subject_type, record.subject_id
                )
                plaintext, successor = await self._insert(
                    session, record.subject_type, record.subject_id, context, now
                )
                if await tokens.mark_rotated(record.id, successor.id, now):
                    await session.commit()
                else:
                    # lost the race to a concurrent redemption
                    await session.rollback()
                    replayed = record

        if replayed is not None:
            await self._report_replay(replayed, context)
            raise InvalidCredential("replay")

        pair = self._pair(access_token, plaintext)
        await self._emit(
            pair,
            record,
            "refresh_token:rotate",
            {"successor_id": successor.id},
            context,
        )
        return pair

    async def revoke(self, presented: str, context: RequestContext | None = None) -> None:
        context = context or RequestContext()
        if not presented or not isinstance(presented, str):
            raise self._reject("malformed")
        now = self._clock()
        async with self._session_maker() as session:
            tokens = TokenSQLStore(session)
            record = await tokens.find_by_lookup_hash(lookup_hash(presented), lock=True)
            if record is None:
                raise self._reject("not_found")
            if not await asyncio.to_thread(self._hasher.verify, presented, record.token_hash):
                raise self._reject("hash_mismatch", record)
            if _as_utc(record.expires_at) <= now:
                raise self._reject("expired", record)
            if not await tokens.revoke(record.id, now):
                raise self._reject("already_terminal", record)
            await session.commit()

        await self._emit(None, record, "refresh_token:revoke", {}, context)

    async def _access_token(self, session: AsyncSession, subject_type: str, subject_id: str) -> str:
        if subject_type == SUBJECT_OWNER:
            if await session.get(models.Owner, subject_id) is None:
                raise self._reject("subject_missing")
            return self._signer.issue_owner_token(
                subject_id, sorted(self._catalog.owner_permissions)
            )
        key = await KeySQLStore(session).find_by_id(subject_id)
        if key is None or not key.active or key.is_retired:
            raise self._reject("subject_inactive")
        public_id = await PublicIdSQLStore(session).find_public_id(key.id)
        return self._signer.issue_key_token(key.id, key.type, list(key.permissions), public_id)

    async def _insert(
        self,
        session: AsyncSession,
        subject_type: str,
        subject_id: str,
        context: RequestContext,
        now: datetime,
    ) -> tuple[str, TokenRecord]:
        plaintext = new_refresh_token()
        token_hash = await asyncio.to_thread(self._hasher.hash, plaintext)
        record = await TokenSQLStore(session).insert(
            subject_type=subject_type,
            subject_id=subject_id,
            token_hash=token_hash,
            token_lookup=lookup_hash(plaintext),
            issued_at=now,
            expires_at=now + timedelta(seconds=self._refresh_ttl),
            context=context,
        )
        return plaintext, record

    def _pair(self, access_token: str, refresh_token: str) -> TokenPair:
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self._signer.ttl_seconds,
            refresh_expires_in=self._refresh_ttl,
        )

    def _reject(self, reason: str, record: TokenRecord | None = None) -> InvalidCredential:
        logger.info(
            "refresh token rejected",
            extra={"reason": reason, "token_id": record.id if record else None},
        )
        return InvalidCredential(reason)

    async def _report_replay(self, record: TokenRecord, context: RequestContext) -> None:
        logger.critical(
            "refresh token replay detected",
            extra={
                "token_id": record.id,
                "subject_type": record.subject_type,
                "subject_id": record.subject_id,
                "ip": context.ip,
            },
        )
        try:
            await self._audit.emit(
                record.subject_type,
                record.subject_id,
                "refresh_token:replay_detected",
                subject_type="refresh_token",
                subject_id=record.id,
                metadata={
                    "replaced_by_id": record.replaced_by_id,
                    "rotated_at": record.rotated_at.isoformat() if record.rotated_at else None,
                },
                severity=SEVERITY_CRITICAL,
                ip=context.ip,
                user_agent=context.user_agent,
            )
        except Exception:
            # the caller still gets InvalidCredential; the replay is in the log above
            logger.error(
                "audit emission failed for replay",
                extra={"token_id": record.id},
                exc_info=True,
            )

    async def _emit(
        self,
        result: Any,
        record: TokenRecord,
        action: str,
        metadata: Mapping[str, Any],
        context: RequestContext,
    ) -> None:
        try:
            await self._audit.emit(
                record.subject_type,
                record.subject_id,
                action,
                subject_type="refresh_token",
                subject_id=record.id,
                metadata=metadata,
                ip=context.ip,
                user_agent=context.user_agent,
            )
        except Exception as exc:
            logger.error("audit emission failed", extra={"action": action}, exc_info=True)
            raise AuditEmissionError(action, result, exc) from exc


__all__ = [
    "RefreshTokenRotationEngine",
    "RequestContext",
    "SUBJECT_KEY",
    "SUBJECT_OWNER",
    "TokenPair",
    "TokenRecord",
    "TokenSQLStore",
]
