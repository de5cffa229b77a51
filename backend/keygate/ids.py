"""Identifier helpers: 128-bit ids as lowercase hex, public key ids, secrets."""
from __future__ import annotations

import re
import secrets

_HEX32 = re.compile(r"^[0-9a-f]{32}$")
_PUBLIC_ID = re.compile(r"^apub_[a-zA-Z0-9_-]+$")

PUBLIC_ID_PREFIX = "apub_"
SECRET_PREFIX = "sec_"
REFRESH_TOKEN_PREFIX = "rt_"


def new_id() -> str:
    return secrets.token_hex(16)


def new_public_id() -> str:
    return PUBLIC_ID_PREFIX + secrets.token_hex(8)


def new_key_secret() -> str:
    return SECRET_PREFIX + secrets.token_hex(24)


def new_refresh_token() -> str:
    return REFRESH_TOKEN_PREFIX + secrets.token_hex(48)


def is_hex32(value: str) -> bool:
    return isinstance(value, str) and bool(_HEX32.match(value.lower()))


def is_public_id(value: str) -> bool:
    return isinstance(value, str) and bool(_PUBLIC_ID.match(value))


def hex32_to_bytes(value: str) -> bytes:
    normalized = value.lower()
    if not _HEX32.match(normalized):
        raise ValueError(f"Invalid hex32 id: {value!r}")
    return bytes.fromhex(normalized)


__all__ = [
    "hex32_to_bytes",
    "is_hex32",
    "is_public_id",
    "new_id",
    "new_key_secret",
    "new_public_id",
    "new_refresh_token",
]
