"""Security primitives: secret hashing, access tokens and HTTP principals.

Secrets, refresh tokens and the admin password are hashed with scrypt
(memory-hard, stdlib).
"""
from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import (
    HTTPAuthorizationCredentials,
    HTTPBasic,
    HTTPBasicCredentials,
    HTTPBearer,
)

from keygate.core.config import Settings, get_settings
from keygate.core.errors import Forbidden, InvalidCredential


logger = logging.getLogger(__name__)


# ---------------------
# Secret hashing
# ---------------------


def lookup_hash(plaintext: str) -> str:
    """Deterministic digest used only to locate a row, never to authenticate."""

    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


class SecretHasher:
    """scrypt hasher producing ``scrypt$n$r$p$salt$hash`` strings."""

    algorithm = "scrypt"

    def __init__(self, *, n: int = 2**14, r: int = 8, p: int = 1, dklen: int = 32) -> None:
        self._n = n
        self._r = r
        self._p = p
        self._dklen = dklen

    def _derive(self, plaintext: str, salt: bytes, n: int, r: int, p: int, dklen: int) -> bytes:
        # scrypt needs 128 * n * r bytes; leave headroom over the 32 MiB default
        maxmem = max(64 * 1024 * 1024, 256 * n * r)
        return hashlib.scrypt(
            plaintext.encode("utf-8"), salt=salt, n=n, r=r, p=p, maxmem=maxmem, dklen=dklen
        )

    def hash(self, plaintext: str) -> str:
        salt = os.urandom(16)
        digest = self._derive(plaintext, salt, self._n, self._r, self._p, self._dklen)
        return "$".join(
            [
                self.algorithm,
                str(self._n),
                str(self._r),
                str(self._p),
                base64.b64encode(salt).decode(),
                base64.b64encode(digest).decode(),
            ]
        )

    def verify(self, plaintext: str, encoded: str) -> bool:
        parsed = self._parse(encoded)
        if parsed is None:
            return False
        n, r, p, salt, expected = parsed
        digest = self._derive(plaintext, salt, n, r, p, len(expected))
        return hmac.compare_digest(digest, expected)

    def needs_rehash(self, encoded: str) -> bool:
        parsed = self._parse(encoded)
        if parsed is None:
            return True
        n, r, p, _, expected = parsed
        return (n, r, p, len(expected)) != (self._n, self._r, self._p, self._dklen)

    def _parse(self, encoded: str) -> tuple[int, int, int, bytes, bytes] | None:
        parts = (encoded or "").split("$")
        if len(parts) != 6 or parts[0] != self.algorithm:
            return None
        try:
            n, r, p = int(parts[1]), int(parts[2]), int(parts[3])
            salt = base64.b64decode(parts[4], validate=True)
            expected = base64.b64decode(parts[5], validate=True)
        except ValueError:
            return None
        return n, r, p, salt, expected


# ---------------------
# Access tokens (JWT)
# ---------------------


class AccessTokenSigner:
    """Issue and verify short-lived access tokens for owners and keys."""

    def __init__(
        self,
        *,
        signing_key: Any,
        verifying_key: Any,
        algorithm: str = "HS256",
        issuer: str = "keygate",
        audience_console: str = "keygate/console",
        audience_api: str = "keygate/api",
        ttl_seconds: int = 900,
        leeway_seconds: int = 10,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._signing_key = signing_key
        self._verifying_key = verifying_key
        self._algorithm = algorithm
        self._issuer = issuer
        self._audience_console = audience_console
        self._audience_api = audience_api
        self._leeway = leeway_seconds
        self._clock = clock
        self.ttl_seconds = ttl_seconds

    def _encode(self, subject: str, audience: str, extra: dict[str, Any]) -> str:
        now = int(self._clock())
        claims = {
            "iss": self._issuer,
            "sub": subject,
            "aud": audience,
            "iat": now,
            "nbf": now,
            "exp": now + self.ttl_seconds,
            "jti": uuid.uuid4().hex,
        }
        claims.update(extra)
        return jwt.encode(claims, self._signing_key, algorithm=self._algorithm)

    def issue_owner_token(self, owner_id: str, permissions: list[str]) -> str:
        return self._encode(
            f"owner:{owner_id}",
            self._audience_console,
            {
                "typ": "owner",
                "owner_id": owner_id,
                "roles": ["owner"],
                "permissions": sorted(permissions),
            },
        )

    def issue_key_token(
        self, key_id: str, key_type: str, permissions: list[str], public_id: str | None
    ) -> str:
        return self._encode(
            f"key:{key_id}",
            self._audience_api,
            {
                "typ": "key",
                "key_id": key_id,
                "key_type": key_type,
                "roles": ["use"] if key_type == "use" else ["author"],
                "permissions": sorted(permissions),
                "key_public_id": public_id,
            },
        )

    def decode(self, token: str, *, typ: str) -> dict[str, Any]:
        audience = self._audience_console if typ == "owner" else self._audience_api
        try:
            claims = jwt.decode(
                token,
                self._verifying_key,
                algorithms=[self._algorithm],
                audience=audience,
                issuer=self._issuer,
                leeway=self._leeway,
                options={"require": ["exp", "iat", "sub", "aud", "iss"]},
            )
        except jwt.PyJWTError as exc:
            raise InvalidCredential(f"access token rejected: {exc.__class__.__name__}") from exc
        if claims.get("typ") != typ:
            raise InvalidCredential("access token type mismatch")
        return claims


@lru_cache
def _create_signer(
    algorithm: str,
    secret: str | None,
    private_key_path: str | None,
    public_key_path: str | None,
    issuer: str,
    audience_console: str,
    audience_api: str,
    ttl_seconds: int,
    leeway_seconds: int,
) -> AccessTokenSigner:
    if algorithm.startswith("HS"):
        if not secret:
            raise RuntimeError("JWT_SECRET is not configured")
        signing_key = verifying_key = secret
    else:
        if not private_key_path or not public_key_path:
            raise RuntimeError("JWT key paths are not configured")
        signing_key = Path(private_key_path).read_text(encoding="utf-8")
        verifying_key = Path(public_key_path).read_text(encoding="utf-8")
    return AccessTokenSigner(
        signing_key=signing_key,
        verifying_key=verifying_key,
        algorithm=algorithm,
        issuer=issuer,
        audience_console=audience_console,
        audience_api=audience_api,
        ttl_seconds=ttl_seconds,
        leeway_seconds=leeway_seconds,
    )


def get_token_signer(settings: Settings = Depends(get_settings)) -> AccessTokenSigner:
    """Signer for the configured algorithm; PEM files are read once per configuration."""

    return _create_signer(
        settings.jwt_algorithm.upper(),
        settings.jwt_secret,
        settings.jwt_private_key_path,
        settings.jwt_public_key_path,
        settings.jwt_issuer,
        settings.jwt_audience_console,
        settings.jwt_audience_api,
        settings.access_token_ttl_seconds,
        settings.jwt_leeway_seconds,
    )


# ---------------------
# Bearer principals
# ---------------------

_bearer = HTTPBearer(auto_error=False)


@dataclass(slots=True)
class OwnerPrincipal:
    owner_id: str
    permissions: list[str] = field(default_factory=list)

    def require(self, permission: str) -> None:
        if permission not in self.permissions:
            raise Forbidden(required_permissions=[permission])


@dataclass(slots=True)
class KeyPrincipal:
    key_id: str
    key_type: str
    permissions: list[str] = field(default_factory=list)
    public_id: str | None = None

    def require(self, permission: str) -> None:
        if permission not in self.permissions:
            raise Forbidden(required_permissions=[permission])


async def require_owner(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
    signer: AccessTokenSigner = Depends(get_token_signer),
) -> OwnerPrincipal:
    """Authenticate an owner access token from the Authorization header."""

    if not credentials or credentials.scheme.lower() != "bearer":
        raise InvalidCredential("missing bearer token")
    claims = signer.decode(credentials.credentials, typ="owner")
    principal = OwnerPrincipal(
        owner_id=str(claims["owner_id"]), permissions=list(claims.get("permissions") or [])
    )
    request.state.actor = {"type": "owner", "id": principal.owner_id}
    return principal


async def require_key(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
    signer: AccessTokenSigner = Depends(get_token_signer),
) -> KeyPrincipal:
    """Authenticate a key access token.

    Only the token is checked here; the gateway router reloads the key to
    reject tokens of keys deactivated or rotated after issue.
    """

    if not credentials or credentials.scheme.lower() != "bearer":
        raise InvalidCredential("missing bearer token")
    claims = signer.decode(credentials.credentials, typ="key")
    principal = KeyPrincipal(
        key_id=str(claims["key_id"]),
        key_type=str(claims.get("key_type") or ""),
        permissions=list(claims.get("permissions") or []),
        public_id=claims.get("key_public_id"),
    )
    request.state.actor = {"type": "key", "id": principal.key_id}
    return principal


# ---------------------
# Basic auth (admin)
# ---------------------

_basic = HTTPBasic(auto_error=False)
_BASIC_CHALLENGE = {"WWW-Authenticate": 'Basic realm="keygate-admin"'}


@lru_cache
def _hash_plain_admin_password(password: str, n: int, r: int, p: int) -> str:
    # derived once per process and cost configuration
    return SecretHasher(n=n, r=r, p=p).hash(password)


def _admin_password_hash(settings: Settings) -> str | None:
    """The configured scrypt hash, or one derived from the plain password."""

    if settings.auth_basic_password_hash:
        return settings.auth_basic_password_hash
    if settings.auth_basic_password_plain:
        return _hash_plain_admin_password(
            settings.auth_basic_password_plain,
            settings.scrypt_n,
            settings.scrypt_r,
            settings.scrypt_p,
        )
    return None


async def require_basic_user(
    request: Request,
    settings: Settings = Depends(get_settings),
    credentials: HTTPBasicCredentials | None = Depends(_basic),
) -> dict:
    """Validate HTTP Basic credentials against the configured admin user."""

    encoded = _admin_password_hash(settings)
    if not credentials or not settings.auth_basic_username or not encoded:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin authentication required",
            headers=_BASIC_CHALLENGE,
        )

    username = credentials.username or ""
    # cost parameters come from the stored hash, not from this instance
    verified = await asyncio.to_thread(SecretHasher().verify, credentials.password or "", encoded)
    if not (hmac.compare_digest(username, settings.auth_basic_username) and verified):
        logger.warning("admin basic auth failed", extra={"username": username})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication failed",
            headers=_BASIC_CHALLENGE,
        )

    request.state.actor = {"type": "admin", "id": username}
    return {"username": username, "roles": ["admin"]}


__all__ = [
    "AccessTokenSigner",
    "KeyPrincipal",
    "OwnerPrincipal",
    "SecretHasher",
    "get_token_signer",
    "lookup_hash",
    "require_basic_user",
    "require_key",
    "require_owner",
]
