"""FastAPI dependency helpers."""
from __future__ import annotations

from functools import lru_cache
from typing import Union

from fastapi import Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from keygate.core.config import Settings, get_settings
from keygate.db.session import get_session_maker
from keygate.security import AccessTokenSigner, SecretHasher, get_token_signer
from keygate.services.audit import (
    AuditLogger,
    AuditRepository,
    AuditSQLLogger,
    FileAuditRepository,
    SQLAuditRepository,
)
from keygate.services.comments import CommentService
from keygate.services.credentials import CredentialService
from keygate.services.feed import FeedService
from keygate.services.groups import GroupService
from keygate.services.key_lifecycle import KeyLifecycleManager
from keygate.services.keychains import KeychainService
from keygate.services.post_access import PostAccessService
from keygate.services.refresh_tokens import RefreshTokenRotationEngine


@lru_cache
def _create_audit_logger(path: str) -> AuditLogger:
    return AuditLogger(path)


@lru_cache
def _create_hasher(n: int, r: int, p: int) -> SecretHasher:
    return SecretHasher(n=n, r=r, p=p)


def get_audit_sink(
    settings: Settings = Depends(get_settings),
) -> Union[AuditLogger, AuditSQLLogger]:
    """Return the SQL sink when a database is configured, else the JSONL file."""

    if settings.database_url:
        return AuditSQLLogger(get_session_maker(settings))
    return _create_audit_logger(settings.audit_log_store_path)


def get_audit_repository(settings: Settings = Depends(get_settings)) -> AuditRepository:
    if settings.database_url:
        return SQLAuditRepository(get_session_maker(settings))
    return FileAuditRepository(settings.audit_log_store_path)


def get_db_session_maker(settings: Settings = Depends(get_settings)) -> async_sessionmaker:
    return get_session_maker(settings)


def get_hasher(settings: Settings = Depends(get_settings)) -> SecretHasher:
    return _create_hasher(settings.scrypt_n, settings.scrypt_r, settings.scrypt_p)


def get_key_manager(
    settings: Settings = Depends(get_settings),
    session_maker: async_sessionmaker = Depends(get_db_session_maker),
    audit=Depends(get_audit_sink),
    hasher: SecretHasher = Depends(get_hasher),
) -> KeyLifecycleManager:
    return KeyLifecycleManager(
        session_maker, audit, hasher, max_depth=settings.lineage_max_depth
    )


def get_token_engine(
    settings: Settings = Depends(get_settings),
    session_maker: async_sessionmaker = Depends(get_db_session_maker),
    audit=Depends(get_audit_sink),
    hasher: SecretHasher = Depends(get_hasher),
    signer: AccessTokenSigner = Depends(get_token_signer),
) -> RefreshTokenRotationEngine:
    return RefreshTokenRotationEngine(
        session_maker,
        audit,
        hasher,
        signer,
        refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
    )


def get_credential_service(
    session_maker: async_sessionmaker = Depends(get_db_session_maker),
    audit=Depends(get_audit_sink),
    hasher: SecretHasher = Depends(get_hasher),
    tokens: RefreshTokenRotationEngine = Depends(get_token_engine),
) -> CredentialService:
    return CredentialService(session_maker, audit, hasher, tokens)


def get_post_access_service(
    session_maker: async_sessionmaker = Depends(get_db_session_maker),
    audit=Depends(get_audit_sink),
) -> PostAccessService:
    return PostAccessService(session_maker, audit)


def get_group_service(
    session_maker: async_sessionmaker = Depends(get_db_session_maker),
    audit=Depends(get_audit_sink),
) -> GroupService:
    return GroupService(session_maker, audit)


def get_comment_service(
    session_maker: async_sessionmaker = Depends(get_db_session_maker),
    audit=Depends(get_audit_sink),
) -> CommentService:
    return CommentService(session_maker, audit)


def get_feed_service(
    session_maker: async_sessionmaker = Depends(get_db_session_maker),
) -> FeedService:
    return FeedService(session_maker)


def get_keychain_service(
    session_maker: async_sessionmaker = Depends(get_db_session_maker),
    audit=Depends(get_audit_sink),
) -> KeychainService:
    return KeychainService(session_maker, audit)
