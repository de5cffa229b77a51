"""Owner registration and login."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status

from keygate.deps import get_credential_service
from keygate.schemas.auth import (
    OwnerLoginRequest,
    OwnerRegisterRequest,
    OwnerResponse,
    TokenResponse,
)
from keygate.services.credentials import CredentialService
from keygate.services.refresh_tokens import RequestContext


router = APIRouter(prefix="/owners", tags=["owners"])


def request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


@router.post(
    "/register",
    response_model=OwnerResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register an owner account",
)
async def register_owner(
    payload: OwnerRegisterRequest,
    service: CredentialService = Depends(get_credential_service),
) -> OwnerResponse:
    owner = await service.register_owner(payload.email, payload.password)
    return OwnerResponse(owner_id=owner.id, email=owner.email)


@router.post("/login", response_model=TokenResponse, summary="Log in as an owner")
async def login_owner(
    payload: OwnerLoginRequest,
    request: Request,
    service: CredentialService = Depends(get_credential_service),
) -> TokenResponse:
    pair = await service.login_owner(payload.email, payload.password, request_context(request))
    return TokenResponse.from_pair(pair)
