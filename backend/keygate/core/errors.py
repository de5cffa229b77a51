"""Typed outcomes raised by the key lifecycle and authorization engine.

Everything except ``Inconsistency`` is an expected control-flow result the
caller handles; none of them are retried by the engine.
"""
from __future__ import annotations

from typing import Any, Iterable


class KeygateError(Exception):
    """Base class for all engine errors."""


class ValidationError(KeygateError):
    """Caller input is structurally wrong (bad permission string, bad mask...)."""


class EnvelopeViolation(KeygateError):
    """Requested permissions exceed what the parent may delegate."""

    def __init__(
        self,
        *,
        excess: Iterable[str] = (),
        forbidden: Iterable[str] = (),
    ) -> None:
        self.excess = tuple(sorted(set(excess)))
        self.forbidden = tuple(sorted(set(forbidden)))
        parts: list[str] = []
        if self.excess:
            parts.append("not held by parent: " + ", ".join(self.excess))
        if self.forbidden:
            parts.append("forbidden for use keys: " + ", ".join(self.forbidden))
        super().__init__("Permission envelope violation (" + "; ".join(parts) + ")")

    @property
    def offending(self) -> tuple[str, ...]:
        return tuple(sorted(set(self.excess) | set(self.forbidden)))


class NotFound(KeygateError):
    """Referenced object does not exist, or the caller may not know it does."""

    def __init__(self, message: str = "Resource not found") -> None:
        super().__init__(message)


class Forbidden(KeygateError):
    """Object is visible but the caller lacks a permission string or mask bit."""

    def __init__(
        self,
        message: str = "Access denied",
        *,
        required_permissions: Iterable[str] | None = None,
        required_mask: str | None = None,
    ) -> None:
        self.required_permissions = list(required_permissions) if required_permissions else []
        self.required_mask = required_mask
        super().__init__(message)


class KeyRetired(Forbidden):
    """The key was rotated away and can no longer change state."""

    def __init__(self, key_id: str) -> None:
        self.key_id = key_id
        super().__init__("Key is already retired", required_permissions=["keys:rotate"])


class InvalidCredential(KeygateError):
    """Credential rejected. ``reason`` is for internal logging only."""

    PUBLIC_MESSAGE = "Invalid credentials"

    def __init__(self, reason: str = "invalid") -> None:
        self.reason = reason
        super().__init__(self.PUBLIC_MESSAGE)


class Inconsistency(KeygateError):
    """Stored state breaks an invariant (lineage cycle, traversal too deep...)."""


class AuditEmissionError(KeygateError):
    """The operation committed but its audit event could not be recorded.

    ``result`` holds whatever the operation returned so the caller may choose
    to proceed with a degraded audit trail.
    """

    def __init__(self, action: str, result: Any, cause: BaseException) -> None:
        self.action = action
        self.result = result
        self.cause = cause
        super().__init__(f"Audit emission failed for {action}: {cause}")


__all__ = [
    "AuditEmissionError",
    "EnvelopeViolation",
    "Forbidden",
    "Inconsistency",
    "InvalidCredential",
    "KeyRetired",
    "KeygateError",
    "NotFound",
    "ValidationError",
]
