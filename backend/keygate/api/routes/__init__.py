"""API route registrations."""
from fastapi import APIRouter

from keygate.api.routes import admin, auth, console, gateway, owners


api_router = APIRouter()
api_router.include_router(owners.router)
api_router.include_router(auth.router)
api_router.include_router(console.router)
api_router.include_router(gateway.router)
api_router.include_router(admin.router)

__all__ = ["api_router"]
