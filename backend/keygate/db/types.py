"""Column types for identifiers stored as raw 128-bit values."""
from __future__ import annotations

from sqlalchemy import LargeBinary
from sqlalchemy.types import TypeDecorator

from keygate.ids import hex32_to_bytes


class HexId(TypeDecorator):
    """Store 32-char lowercase hex ids as 16 raw bytes.

    The engine only ever sees hex strings; conversion happens at the column.
    """

    impl = LargeBinary(16)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # type: ignore[override]
        if value is None:
            return None
        return hex32_to_bytes(value)

    def process_result_value(self, value, dialect):  # type: ignore[override]
        if value is None:
            return None
        return bytes(value).hex()
