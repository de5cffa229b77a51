"""Tests for the permission grammar and the delegation envelope."""
from __future__ import annotations

import pytest

from keygate.core.errors import EnvelopeViolation, ValidationError
from keygate.services.permissions import DEFAULT_CATALOG, PermissionCatalog, validate_envelope


@pytest.mark.parametrize(
    "permission",
    ["posts:read", "keys:state:update", "posts:access:manage", "a:b"],
)
def test_valid_permission_strings(permission: str) -> None:
    assert DEFAULT_CATALOG.is_valid(permission)


@pytest.mark.parametrize(
    "permission",
    ["posts", "Posts:read", "posts:", ":read", "posts::read", "posts:read1", "posts read", ""],
)
def test_malformed_permission_strings(permission: str) -> None:
    assert not DEFAULT_CATALOG.is_valid(permission)


def test_primary_only_checks_grammar() -> None:
    validate_envelope(["keys:issue", "posts:create"], None, "primary")
    with pytest.raises(ValidationError):
        validate_envelope(["BAD"], None, "primary")


def test_malformed_child_is_validation_error_not_envelope() -> None:
    with pytest.raises(ValidationError) as exc:
        validate_envelope(["posts:read", "nope"], ["posts:read"], "secondary")
    assert not isinstance(exc.value, EnvelopeViolation)


def test_secondary_subset_is_accepted() -> None:
    validate_envelope(["posts:read"], ["posts:read", "keys:issue"], "secondary")
    validate_envelope([], ["posts:read"], "secondary")


def test_secondary_excess_is_listed_sorted() -> None:
    with pytest.raises(EnvelopeViolation) as exc:
        validate_envelope(
            ["posts:read", "zeta:read", "alpha:read"], ["posts:read"], "secondary"
        )
    assert exc.value.excess == ("alpha:read", "zeta:read")
    assert exc.value.forbidden == ()


def test_use_key_forbidden_even_when_parent_holds_it() -> None:
    parent = ["keys:issue", "posts:create", "posts:read"]
    with pytest.raises(EnvelopeViolation) as exc:
        validate_envelope(["posts:create"], parent, "use")
    assert exc.value.forbidden == ("posts:create",)
    assert exc.value.excess == ()


def test_use_key_reports_excess_and_forbidden_together() -> None:
    with pytest.raises(EnvelopeViolation) as exc:
        validate_envelope(["keys:issue", "comments:write"], ["posts:read"], "use")
    assert exc.value.excess == ("comments:write", "keys:issue")
    assert exc.value.forbidden == ("keys:issue",)
    assert "keys:issue" in exc.value.offending


def test_unknown_key_type() -> None:
    with pytest.raises(ValidationError):
        validate_envelope([], [], "tertiary")


def test_custom_catalog_changes_forbidden_set() -> None:
    catalog = PermissionCatalog(use_key_forbidden=frozenset({"posts:read"}))
    with pytest.raises(EnvelopeViolation):
        validate_envelope(["posts:read"], ["posts:read"], "use", catalog)
    validate_envelope(["keys:issue"], ["keys:issue"], "use", catalog)
