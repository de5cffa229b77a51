"""Credential exchange and refresh-token endpoints.

Every failure here answers with the same 401 body.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response, status

from keygate.api.routes.owners import request_context
from keygate.deps import get_credential_service, get_token_engine
from keygate.schemas.auth import ExchangeRequest, RefreshRequest, TokenResponse
from keygate.services.credentials import CredentialService
from keygate.services.refresh_tokens import RefreshTokenRotationEngine


router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/exchange", response_model=TokenResponse, summary="Exchange a key secret for tokens")
async def exchange(
    payload: ExchangeRequest,
    request: Request,
    service: CredentialService = Depends(get_credential_service),
) -> TokenResponse:
    pair = await service.exchange_key(payload.public_id, payload.secret, request_context(request))
    return TokenResponse.from_pair(pair)


@router.post("/refresh", response_model=TokenResponse, summary="Rotate a refresh token")
async def refresh(
    payload: RefreshRequest,
    request: Request,
    engine: RefreshTokenRotationEngine = Depends(get_token_engine),
) -> TokenResponse:
    pair = await engine.rotate(payload.refresh_token, request_context(request))
    return TokenResponse.from_pair(pair)


@router.post(
    "/revoke",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    summary="Revoke a refresh token",
)
async def revoke(
    payload: RefreshRequest,
    request: Request,
    engine: RefreshTokenRotationEngine = Depends(get_token_engine),
) -> Response:
    await engine.revoke(payload.refresh_token, request_context(request))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
