from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from keygate.core.config import Settings, get_settings
from keygate.db.base import Base
from keygate.db import models
from keygate.ids import new_id
from keygate.main import app
from keygate.security import AccessTokenSigner, SecretHasher
from keygate.services.audit import AuditLogger, FileAuditRepository
from keygate.services.key_lifecycle import KeyLifecycleManager
from keygate.services.post_access import PostAccessService
from keygate.services.refresh_tokens import RefreshTokenRotationEngine


@pytest.fixture
def anyio_backend() -> str:
    """Force anyio-based tests to run with asyncio backend only."""

    return "asyncio"


class RecordingSink:
    """In-memory audit sink capturing emitted events."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    async def emit(self, actor_type, actor_id, action, **kwargs):  # type: ignore[no-untyped-def]
        event = {"actor_type": actor_type, "actor_id": actor_id, "action": action, **kwargs}
        self.events.append(event)
        return event

    def actions(self) -> list[str]:
        return [e["action"] for e in self.events]


class FailingSink:
    async def emit(self, *args, **kwargs):  # type: ignore[no-untyped-def]
        raise OSError("audit backend down")


@pytest.fixture
async def session_maker(tmp_path: Path):
    engine = create_async_engine("sqlite+aiosqlite:///" + str(tmp_path / "keygate.db"))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def hasher() -> SecretHasher:
    # cheap cost parameters keep the suite fast
    return SecretHasher(n=2**4, r=8, p=1)


@pytest.fixture
def signer() -> AccessTokenSigner:
    return AccessTokenSigner(signing_key="test-secret", verifying_key="test-secret")


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def manager(session_maker, sink, hasher) -> KeyLifecycleManager:
    return KeyLifecycleManager(session_maker, sink, hasher)


@pytest.fixture
def posts(session_maker, sink) -> PostAccessService:
    return PostAccessService(session_maker, sink)


@pytest.fixture
def tokens(session_maker, sink, hasher, signer) -> RefreshTokenRotationEngine:
    return RefreshTokenRotationEngine(session_maker, sink, hasher, signer, refresh_ttl_seconds=3600)


@pytest.fixture
def jsonl_audit(tmp_path: Path) -> tuple[AuditLogger, FileAuditRepository]:
    path = tmp_path / "audit.jsonl"
    return AuditLogger(path), FileAuditRepository(path)


@pytest.fixture
async def owner_id(session_maker) -> str:
    async with session_maker() as session:
        owner = models.Owner(id=new_id(), email="owner@example.com", password_hash="x")
        session.add(owner)
        await session.commit()
        return owner.id


@pytest.fixture
def failing_sink() -> FailingSink:
    return FailingSink()


@pytest.fixture
def api_settings(tmp_path: Path) -> Settings:
    db_path = tmp_path / "api.db"
    engine = create_engine("sqlite:///" + str(db_path))
    Base.metadata.create_all(engine)
    engine.dispose()
    return Settings(
        database_url="sqlite+aiosqlite:///" + str(db_path),
        jwt_secret="test-secret",
        scrypt_n=2**4,
        auth_basic_username="admin",
        auth_basic_password_plain="secret",
        auth_rate_max_requests=1000,
    )


@pytest.fixture(name="client")
def client_fixture(api_settings: Settings):
    app.dependency_overrides[get_settings] = lambda: api_settings
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.pop(get_settings, None)
