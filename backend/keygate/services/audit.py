"""Append-only audit events with JSONL or SQL storage.

Metadata is sanitized before an event is constructed, so nothing downstream
of :func:`build_event` ever sees a secret value.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Protocol

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from keygate.db import models
from keygate.ids import is_hex32, new_id


logger = logging.getLogger(__name__)

SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"
SEVERITIES = (SEVERITY_INFO, SEVERITY_WARNING, SEVERITY_CRITICAL)

REDACTED = "[REDACTED]"
SENSITIVE_MARKERS = ("secret", "password", "token", "private_key")


def is_sensitive_key(key: str) -> bool:
    lowered = str(key).lower()
    return any(marker in lowered for marker in SENSITIVE_MARKERS)


def sanitize(data: Mapping[str, Any] | None) -> Dict[str, Any]:
    """Return a copy of ``data`` with sensitive keys redacted, recursively."""

    if not data:
        return {}
    cleaned: Dict[str, Any] = {}
    for key, value in data.items():
        if is_sensitive_key(key):
            cleaned[key] = REDACTED
        elif isinstance(value, Mapping):
            cleaned[key] = sanitize(value)
        elif isinstance(value, (list, tuple)):
            cleaned[key] = [sanitize(v) if isinstance(v, Mapping) else v for v in value]
        else:
            cleaned[key] = value
    return cleaned


@dataclass(slots=True)
class AuditEvent:
    actor_type: str
    actor_id: str
    action: str
    subject_type: str | None = None
    subject_id: str | None = None
    severity: str = SEVERITY_INFO
    metadata: Dict[str, Any] = field(default_factory=dict)
    ip: str | None = None
    user_agent: str | None = None
    id: str = field(default_factory=new_id)
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


def build_event(
    actor_type: str,
    actor_id: str,
    action: str,
    subject_type: str | None = None,
    subject_id: str | None = None,
    metadata: Mapping[str, Any] | None = None,
    severity: str = SEVERITY_INFO,
    ip: str | None = None,
    user_agent: str | None = None,
) -> AuditEvent:
    if severity not in SEVERITIES:
        raise ValueError(f"Unknown audit severity: {severity}")
    return AuditEvent(
        actor_type=actor_type,
        actor_id=actor_id,
        action=action,
        subject_type=subject_type,
        subject_id=subject_id,
        severity=severity,
        metadata=sanitize(metadata),
        ip=ip,
        user_agent=user_agent[:256] if user_agent else None,
    )


class AuditSink(Protocol):
    async def emit(
        self,
        actor_type: str,
        actor_id: str,
        action: str,
        subject_type: str | None = None,
        subject_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        severity: str = SEVERITY_INFO,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> AuditEvent:
        ...


class _EmittingSink:
    async def emit(
        self,
        actor_type: str,
        actor_id: str,
        action: str,
        subject_type: str | None = None,
        subject_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        severity: str = SEVERITY_INFO,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> AuditEvent:
        event = build_event(
            actor_type,
            actor_id,
            action,
            subject_type=subject_type,
            subject_id=subject_id,
            metadata=metadata,
            severity=severity,
            ip=ip,
            user_agent=user_agent,
        )
        await self.log(event)
        return event

    async def log(self, event: AuditEvent) -> None:
        raise NotImplementedError


class AuditLogger(_EmittingSink):
    """JSONL file sink, one event per line."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    async def log(self, event: AuditEvent) -> None:
        payload = json.dumps(asdict(event), ensure_ascii=False)
        async with self._lock:
            await asyncio.to_thread(self._append_line, payload)

    def _append_line(self, payload: str) -> None:
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(payload)
            fh.write("\n")


class AuditSQLLogger(_EmittingSink):
    """Writes each event in its own short transaction."""

    def __init__(self, session_maker: async_sessionmaker) -> None:
        self._session_maker = session_maker

    async def log(self, event: AuditEvent) -> None:
        async with self._session_maker() as session:
            session.add(
                models.AuditEvent(
                    id=event.id,
                    actor_type=event.actor_type,
                    actor_id=event.actor_id,
                    action=event.action,
                    subject_type=event.subject_type,
                    subject_id=event.subject_id,
                    severity=event.severity,
                    metadata_json=event.metadata or None,
                    ip=event.ip,
                    user_agent=event.user_agent,
                    created_at=datetime.fromisoformat(event.created_at),
                )
            )
            await session.commit()


class AuditRepository:
    async def list_events(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        actor_type: str | None = None,
        actor_id: str | None = None,
        action: str | None = None,
        subject_id: str | None = None,
        severity: str | None = None,
        since: datetime | None = None,
    ) -> list[AuditEvent]:
        raise NotImplementedError


class FileAuditRepository(AuditRepository):
    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    async def list_events(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        actor_type: str | None = None,
        actor_id: str | None = None,
        action: str | None = None,
        subject_id: str | None = None,
        severity: str | None = None,
        since: datetime | None = None,
    ) -> list[AuditEvent]:
        if not self._path.exists():
            return []
        events = await asyncio.to_thread(self._read_all)
        events.sort(key=lambda e: e.created_at, reverse=True)
        if actor_type:
            events = [e for e in events if e.actor_type == actor_type]
        if actor_id:
            events = [e for e in events if e.actor_id == actor_id]
        if action:
            events = [e for e in events if e.action == action]
        if subject_id:
            events = [e for e in events if e.subject_id == subject_id]
        if severity:
            events = [e for e in events if e.severity == severity]
        if since:
            events = [e for e in events if _parse_datetime(e.created_at) >= _as_utc(since)]
        start = max(0, offset)
        end = start + max(1, min(limit, 200))
        return events[start:end]

    def _read_all(self) -> list[AuditEvent]:
        events: list[AuditEvent] = []
        with self._path.open("r", encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    obj = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(
                        "skipping malformed audit line",
                        extra={"path": str(self._path), "line": lineno},
                    )
                    continue
                events.append(
                    AuditEvent(
                        id=obj.get("id", "-"),
                        actor_type=obj.get("actor_type", "unknown"),
                        actor_id=obj.get("actor_id", "-"),
                        action=obj.get("action", "-"),
                        subject_type=obj.get("subject_type"),
                        subject_id=obj.get("subject_id"),
                        severity=obj.get("severity", SEVERITY_INFO),
                        metadata=obj.get("metadata") or {},
                        ip=obj.get("ip"),
                        user_agent=obj.get("user_agent"),
                        created_at=obj.get("created_at", datetime.now(timezone.utc).isoformat()),
                    )
                )
        return events


class SQLAuditRepository(AuditRepository):
    def __init__(self, session_maker: async_sessionmaker) -> None:
        self._session_maker = session_maker

    async def list_events(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        actor_type: str | None = None,
        actor_id: str | None = None,
        action: str | None = None,
        subject_id: str | None = None,
        severity: str | None = None,
        since: datetime | None = None,
    ) -> list[AuditEvent]:
        for value in (actor_id, subject_id):
            if value and not is_hex32(value):
                return []
        filters = []
        if actor_type:
            filters.append(models.AuditEvent.actor_type == actor_type)
        if actor_id:
            filters.append(models.AuditEvent.actor_id == actor_id)
        if action:
            filters.append(models.AuditEvent.action == action)
        if subject_id:
            filters.append(models.AuditEvent.subject_id == subject_id)
        if severity:
            filters.append(models.AuditEvent.severity == severity)
        if since:
            filters.append(models.AuditEvent.created_at >= since)
        stmt: Select[models.AuditEvent] = (
            select(models.AuditEvent)
            .where(*filters)
            .order_by(models.AuditEvent.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        async with self._session_maker() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            AuditEvent(
                id=row.id,
                actor_type=row.actor_type,
                actor_id=row.actor_id,
                action=row.action,
                subject_type=row.subject_type,
                subject_id=row.subject_id,
                severity=row.severity,
                metadata=row.metadata_json or {},
                ip=row.ip,
                user_agent=row.user_agent,
                created_at=_as_utc(row.created_at).isoformat(),
            )
            for row in rows
        ]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_datetime(value: str) -> datetime:
    try:
        return _as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
