"""Schemas for key minting and key management endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import BaseModel, Field

from keygate.services.key_store import KeyRecord


class MintPrimaryRequest(BaseModel):
    permissions: List[str] = Field(..., min_length=1, description="Permission strings for the key")
    label: str | None = Field(default=None, max_length=255, description="Human readable label")


class MintSecondaryRequest(BaseModel):
    permissions: List[str] = Field(..., min_length=1, description="Subset of the parent's permissions")
    label: str | None = Field(default=None, max_length=255)


class MintUseRequest(BaseModel):
    permissions: List[str] = Field(..., min_length=1, description="Subset of the parent's permissions")
    label: str | None = Field(default=None, max_length=255)
    use_count_limit: int | None = Field(default=None, description="Maximum number of exchanges")
    device_limit: int | None = Field(default=None, description="Maximum number of devices")


class DeactivateRequest(BaseModel):
    cascade: bool = Field(default=False, description="Also deactivate every descendant key")


class KeyItem(BaseModel):
    key_id: str
    public_id: str | None = None
    type: str
    permissions: List[str]
    active: bool
    label: str | None = None
    owner_id: str | None = None
    issued_by_key_id: str | None = None
    parent_key_id: str | None = None
    initial_author_key_id: str
    rotated_from_id: str | None = None
    rotated_to_id: str | None = None
    retired_at: datetime | None = None
    use_count_limit: int | None = None
    use_count_current: int = 0
    device_limit: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_record(cls, record: KeyRecord, public_id: str | None = None) -> "KeyItem":
        return cls(
            key_id=record.id,
            public_id=public_id,
            type=record.type,
            permissions=list(record.permissions),
            active=record.active,
            label=record.label,
            owner_id=record.owner_id,
            issued_by_key_id=record.issued_by_key_id,
            parent_key_id=record.parent_key_id,
            initial_author_key_id=record.initial_author_key_id,
            rotated_from_id=record.rotated_from_id,
            rotated_to_id=record.rotated_to_id,
            retired_at=record.retired_at,
            use_count_limit=record.use_count_limit,
            use_count_current=record.use_count_current,
            device_limit=record.device_limit,
            created_at=record.created_at,
        )


class MintedKeyResponse(BaseModel):
    key: KeyItem
    secret: str = Field(..., description="Plaintext secret, returned only once")


class KeyListResponse(BaseModel):
    keys: List[KeyItem]


class DeactivateResponse(BaseModel):
    key_id: str
    cascade: bool
    affected: int
