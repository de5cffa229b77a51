from __future__ import annotations

import pytest

from keygate.core.errors import ValidationError
from keygate.services import bitmask


def test_presets() -> None:
    assert bitmask.READ_ONLY == 0x01
    assert bitmask.INTERACT == 0x03
    assert bitmask.ADMIN == 0x0B


def test_predicates() -> None:
    assert bitmask.has_view(bitmask.READ_ONLY)
    assert not bitmask.has_comment(bitmask.READ_ONLY)
    assert bitmask.has_comment(bitmask.INTERACT)
    assert bitmask.has_manage_access(bitmask.ADMIN)
    assert not bitmask.has_manage_access(bitmask.INTERACT)


def test_names() -> None:
    assert bitmask.to_names(bitmask.ADMIN) == ["VIEW", "COMMENT", "MANAGE_ACCESS"]
    assert bitmask.bit_name(bitmask.MANAGE_ACCESS) == "MANAGE_ACCESS"
    assert bitmask.bit_name(0) == "NONE"


@pytest.mark.parametrize("mask", [0, 0x04, 0x10, -1, True, "1", 1.0])
def test_validate_mask_rejects(mask: object) -> None:
    with pytest.raises(ValidationError):
        bitmask.validate_mask(mask)  # type: ignore[arg-type]


@pytest.mark.parametrize("mask", [0x01, 0x02, 0x08, 0x0B])
def test_validate_mask_accepts(mask: int) -> None:
    assert bitmask.validate_mask(mask) == mask
