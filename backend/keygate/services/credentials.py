"""Owner registration/login and key credential exchange.

Every credential failure surfaces as the same :class:`InvalidCredential`; the
internal reason only reaches the log.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keygate.core.errors import AuditEmissionError, Forbidden, InvalidCredential, ValidationError
from keygate.db import models
from keygate.ids import is_public_id, new_id
from keygate.security import SecretHasher
from keygate.services.audit import SEVERITY_WARNING, AuditSink
from keygate.services.key_store import KeyDeviceSQLStore, KeySQLStore, PublicIdSQLStore
from keygate.services.refresh_tokens import (
    SUBJECT_KEY,
    SUBJECT_OWNER,
    RefreshTokenRotationEngine,
    RequestContext,
    TokenPair,
)


logger = logging.getLogger(__name__)

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8
MAX_EMAIL_LENGTH = 255


@dataclass(slots=True, frozen=True)
class OwnerRecord:
    id: str
    email: str
    created_at: datetime | None = None


def device_fingerprint(ip: str | None, user_agent: str | None) -> str:
    """Soft device identity: SHA-256 of caller IP and user agent."""

    return hashlib.sha256(f"{ip or ''}{user_agent or ''}".encode("utf-8")).hexdigest()


class OwnerSQLStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert(self, email: str, password_hash: str) -> OwnerRecord:
        row = models.Owner(
            id=new_id(),
            email=email,
            password_hash=password_hash,
            created_at=datetime.now(timezone.utc),
        )
        self._session.add(row)
        await self._session.flush()
        return OwnerRecord(id=row.id, email=row.email, created_at=row.created_at)

    async def find_by_email(self, email: str) -> models.Owner | None:
        stmt = select(models.Owner).where(models.Owner.email == email)
        return (await self._session.execute(stmt)).scalar_one_or_none()


class CredentialService:
    def __init__(
        self,
        session_maker: async_sessionmaker,
        audit: AuditSink,
        hasher: SecretHasher,
        tokens: RefreshTokenRotationEngine,
    ) -> None:
        self._session_maker = session_maker
        self._audit = audit
        self._hasher = hasher
        self._tokens = tokens

    async def register_owner(self, email: str, password: str) -> OwnerRecord:
        email = (email or "").strip().lower()
        if not _EMAIL.match(email) or len(email) > MAX_EMAIL_LENGTH:
            raise ValidationError("Invalid email address")
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        password_hash = await asyncio.to_thread(self._hasher.hash, password)

        async with self._session_maker() as session:
            owners = OwnerSQLStore(session)
            if await owners.find_by_email(email) is not None:
                raise ValidationError("Registration failed")
            try:
                owner = await owners.insert(email, password_hash)
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ValidationError("Registration failed") from exc

        await self._emit(owner, "owner", owner.id, "owners:register", "owner", owner.id, {})
        logger.info("owner registered", extra={"owner_id": owner.id})
        return owner

    async def login_owner(
        self, email: str, password: str, context: RequestContext | None = None
    ) -> TokenPair:
        context = context or RequestContext()
        email = (email or "").strip().lower()
        async with self._session_maker() as session:
            owner = await OwnerSQLStore(session).find_by_email(email)
            if owner is None:
                raise self._reject("unknown_email")
            if not await asyncio.to_thread(self._hasher.verify, password or "", owner.password_hash):
                raise self._reject("bad_password")
            if self._hasher.needs_rehash(owner.password_hash):
                # cost parameters changed since the password was stored
                owner.password_hash = await asyncio.to_thread(self._hasher.hash, password)
                logger.info("owner password rehashed", extra={"owner_id": owner.id})
            pair, _ = await self._tokens.issue_in(session, SUBJECT_OWNER, owner.id, context)
            await session.commit()
            owner_id = owner.id

        await self._emit(
            pair, "owner", owner_id, "owners:login", "owner", owner_id, {}, context=context
        )
        return pair

    async def exchange_key(
        self, public_id: str, secret: str, context: RequestContext | None = None
    ) -> TokenPair:
        """Trade a key's public id and secret for an access/refresh pair.

        Use keys consume one use per exchange and may be bound to a limited
        number of devices.
        """

        context = context or RequestContext()
        if not is_public_id(public_id or "") or not secret:
            raise self._reject("malformed")

        failed_key_id: str | None = None
        async with self._session_maker() as session:
            keys = KeySQLStore(session)
            key_id = await PublicIdSQLStore(session).find_key_id(public_id)
            key = await keys.find_by_id(key_id, lock=True) if key_id else None
            if key is None:
                raise self._reject("unknown_public_id")
            secret_hash = await keys.find_secret_hash(key.id)
            verified = bool(secret_hash) and await asyncio.to_thread(
                self._hasher.verify, secret, secret_hash
            )
            if not verified:
                failed_key_id = key.id
            else:
                if not key.active or key.is_retired:
                    raise self._reject("inactive", key.id)
                if (
                    key.use_count_limit is not None
                    and key.use_count_current >= key.use_count_limit
                ):
                    raise Forbidden("Use count limit reached")
                device_registered = False
                if key.device_limit is not None:
                    devices = KeyDeviceSQLStore(session)
                    fingerprint = device_fingerprint(context.ip, context.user_agent)
                    if not await devices.exists(key.id, fingerprint):
                        if await devices.count(key.id) >= key.device_limit:
                            raise Forbidden("Device limit reached")
                        await devices.register(key.id, fingerprint)
                        device_registered = True
                # guarded increment; loses to a concurrent exchange taking the last use
                if not await keys.increment_use_count(key.id):
                    raise Forbidden("Use count limit reached")
                pair, _ = await self._tokens.issue_in(session, SUBJECT_KEY, key.id, context)
                await session.commit()

        if failed_key_id is not None:
            await self._report_failed_exchange(failed_key_id, context)
            raise self._reject("bad_secret", failed_key_id)

        await self._emit(
            pair,
            "key",
            key.id,
            "keys:exchange",
            "key",
            key.id,
            {
                "key_type": key.type,
                "use_count": key.use_count_current + 1,
                "device_registered": device_registered,
            },
            context=context,
        )
        return pair

    def _reject(self, reason: str, key_id: str | None = None) -> InvalidCredential:
        logger.info("credential rejected", extra={"reason": reason, "key_id": key_id})
        return InvalidCredential(reason)

    async def _report_failed_exchange(self, key_id: str, context: RequestContext) -> None:
        try:
            await self._audit.emit(
                "key",
                key_id,
                "keys:exchange:failed",
                subject_type="key",
                subject_id=key_id,
                metadata={"reason": "bad_secret"},
                severity=SEVERITY_WARNING,
                ip=context.ip,
                user_agent=context.user_agent,
            )
        except Exception:
            # the caller still gets InvalidCredential
            logger.error(
                "audit emission failed for failed exchange",
                extra={"key_id": key_id},
                exc_info=True,
            )

    async def _emit(
        self,
        result: Any,
        actor_type: str,
        actor_id: str,
        action: str,
        subject_type: str,
        subject_id: str,
        metadata: Mapping[str, Any],
        *,
        context: RequestContext | None = None,
    ) -> None:
        context = context or RequestContext()
        try:
            await self._audit.emit(
                actor_type,
                actor_id,
                action,
                subject_type=subject_type,
                subject_id=subject_id,
                metadata=metadata,
                ip=context.ip,
                user_agent=context.user_agent,
            )
        except Exception as exc:
            logger.error("audit emission failed", extra={"action": action}, exc_info=True)
            raise AuditEmissionError(action, result, exc) from exc


__all__ = ["CredentialService", "OwnerRecord", "OwnerSQLStore", "device_fingerprint"]
