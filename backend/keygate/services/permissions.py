"""Permission catalog and the envelope rule for delegated keys."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable

from keygate.core.errors import EnvelopeViolation, ValidationError


KEY_TYPE_PRIMARY = "primary"
KEY_TYPE_SECONDARY = "secondary"
KEY_TYPE_USE = "use"
KEY_TYPES = (KEY_TYPE_PRIMARY, KEY_TYPE_SECONDARY, KEY_TYPE_USE)

PERMISSION_PATTERN = r"^[a-z]+(:[a-z]+)*(:[a-z]+)$"


@dataclass(frozen=True, slots=True)
class PermissionCatalog:
    """Immutable permission grammar and well-known permission sets.

    Passed explicitly wherever permissions are checked so tests can swap in
    their own catalog.
    """

    pattern: str = PERMISSION_PATTERN
    use_key_forbidden: frozenset[str] = frozenset({"posts:create", "keys:issue"})
    owner_permissions: frozenset[str] = frozenset(
        {
            "owners:manage",
            "keys:issue",
            "keys:read",
            "keys:rotate",
            "keys:state:update",
            "groups:manage",
            "keychains:manage",
            "posts:admin:read",
            "posts:access:manage",
        }
    )
    _compiled: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_compiled", re.compile(self.pattern))

    def is_valid(self, permission: str) -> bool:
        return isinstance(permission, str) and bool(self._compiled.match(permission))

    def invalid(self, permissions: Iterable[str]) -> list[str]:
        return sorted({str(p) for p in permissions if not self.is_valid(p)})


DEFAULT_CATALOG = PermissionCatalog()


def validate_envelope(
    child: Iterable[str],
    parent: Iterable[str] | None,
    key_type: str,
    catalog: PermissionCatalog = DEFAULT_CATALOG,
) -> None:
    """Accept ``child`` as the permission set of a new key or raise.

    Grammar failures raise :class:`ValidationError`. For delegated keys the
    child must be a subset of ``parent``; use keys additionally may never hold
    the catalog's forbidden permissions. Both kinds of offence are reported on
    a single :class:`EnvelopeViolation`.
    """

    if key_type not in KEY_TYPES:
        raise ValidationError(f"Unknown key type: {key_type}")
    requested = set(child)
    malformed = catalog.invalid(requested)
    if malformed:
        raise ValidationError("Invalid permission format: " + ", ".join(malformed))
    if key_type == KEY_TYPE_PRIMARY:
        return

    excess = requested - set(parent or ())
    forbidden: set[str] = set()
    if key_type == KEY_TYPE_USE:
        forbidden = requested & catalog.use_key_forbidden
    if excess or forbidden:
        raise EnvelopeViolation(excess=excess, forbidden=forbidden)


__all__ = [
    "DEFAULT_CATALOG",
    "KEY_TYPES",
    "KEY_TYPE_PRIMARY",
    "KEY_TYPE_SECONDARY",
    "KEY_TYPE_USE",
    "PERMISSION_PATTERN",
    "PermissionCatalog",
    "validate_envelope",
]
