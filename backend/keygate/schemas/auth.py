"""Schemas for owner accounts and credential endpoints."""
from __future__ import annotations

from pydantic import BaseModel, Field

from keygate.services.refresh_tokens import TokenPair


class OwnerRegisterRequest(BaseModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., min_length=1, max_length=1024)


class OwnerLoginRequest(BaseModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., max_length=1024)


class OwnerResponse(BaseModel):
    owner_id: str
    email: str


class ExchangeRequest(BaseModel):
    public_id: str = Field(..., max_length=64, description="Key public id (apub_...)")
    secret: str = Field(..., max_length=256)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=512)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int = Field(..., description="Access token lifetime in seconds")
    refresh_expires_in: int = Field(..., description="Refresh token lifetime in seconds")

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            refresh_expires_in=pair.refresh_expires_in,
        )
