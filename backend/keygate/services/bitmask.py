"""Post-scoped access bits and presets."""
from __future__ import annotations

from keygate.core.errors import ValidationError


VIEW = 0x01
COMMENT = 0x02
MANAGE_ACCESS = 0x08

ALL_BITS = VIEW | COMMENT | MANAGE_ACCESS

PRESETS: dict[str, int] = {
    "read_only": VIEW,
    "interact": VIEW | COMMENT,
    "admin": VIEW | COMMENT | MANAGE_ACCESS,
}
READ_ONLY = PRESETS["read_only"]
INTERACT = PRESETS["interact"]
ADMIN = PRESETS["admin"]

BIT_NAMES: dict[int, str] = {
    VIEW: "VIEW",
    COMMENT: "COMMENT",
    MANAGE_ACCESS: "MANAGE_ACCESS",
}


def has_view(mask: int) -> bool:
    return bool(mask & VIEW)


def has_comment(mask: int) -> bool:
    return bool(mask & COMMENT)


def has_manage_access(mask: int) -> bool:
    return bool(mask & MANAGE_ACCESS)


def has_bit(mask: int, bit: int) -> bool:
    return (mask & bit) == bit


def bit_name(bit: int) -> str:
    if bit in BIT_NAMES:
        return BIT_NAMES[bit]
    return "|".join(name for value, name in BIT_NAMES.items() if bit & value) or "NONE"


def validate_mask(mask: int) -> int:
    """Return ``mask`` if it is a non-zero combination of defined bits."""

    if isinstance(mask, bool) or not isinstance(mask, int):
        raise ValidationError("Permission mask must be an integer")
    if mask == 0:
        raise ValidationError("Permission mask must not be zero; revoke access instead")
    if mask < 0 or mask & ~ALL_BITS:
        raise ValidationError(f"Permission mask contains undefined bits: {mask:#x}")
    return mask


def to_names(mask: int) -> list[str]:
    return [name for value, name in BIT_NAMES.items() if mask & value]
