"""Schemas for owner and external keychains."""
from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import BaseModel, Field


class KeychainCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class KeychainItem(BaseModel):
    keychain_id: str
    name: str
    external: bool = False
    created_at: datetime | None = None


class KeychainMemberRequest(BaseModel):
    key_id: str


class KeychainMembersResponse(BaseModel):
    keychain_id: str
    key_ids: List[str]
