"""FastAPI application entrypoint for the keygate service."""
import logging
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from keygate.api.routes import api_router
from keygate.core.config import Settings, get_settings
from keygate.core.errors import (
    AuditEmissionError,
    EnvelopeViolation,
    Forbidden,
    Inconsistency,
    InvalidCredential,
    KeygateError,
    NotFound,
    ValidationError,
)
from keygate.services.rate_limit import RateConfig, RateLimiter


logger = logging.getLogger(__name__)

RATE_LIMITED_PREFIXES = ("/api/auth/", "/api/owners/login")

# Global limiter instance so buckets persist across requests
_global_rate_limiter: RateLimiter | None = None
_global_rate_cfg: tuple[int, int] | None = None

app = FastAPI(title="Keygate API", version="0.1.0")

app.include_router(api_router, prefix="/api")


class HealthResponse(BaseModel):
    status: str = "ok"


@app.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check() -> HealthResponse:
    """Return service health information for monitoring and load-balancers."""
    return HealthResponse()


def _error_response(exc: KeygateError) -> JSONResponse:
    if isinstance(exc, EnvelopeViolation):
        return JSONResponse(
            status_code=422,
            content={
                "error": "envelope_violation",
                "detail": str(exc),
                "excess": list(exc.excess),
                "forbidden": list(exc.forbidden),
            },
        )
    if isinstance(exc, ValidationError):
        return JSONResponse(status_code=422, content={"error": "validation_error", "detail": str(exc)})
    if isinstance(exc, NotFound):
        return JSONResponse(status_code=404, content={"error": "not_found", "detail": str(exc)})
    if isinstance(exc, Forbidden):
        return JSONResponse(
            status_code=403,
            content={
                "error": "forbidden",
                "detail": str(exc),
                "required_permissions": exc.required_permissions,
                "required_mask": exc.required_mask,
            },
        )
    if isinstance(exc, InvalidCredential):
        return JSONResponse(
            status_code=401,
            content={"error": "invalid_credentials", "detail": InvalidCredential.PUBLIC_MESSAGE},
            headers={"WWW-Authenticate": "Bearer"},
        )
    if isinstance(exc, AuditEmissionError):
        return JSONResponse(
            status_code=500,
            content={"error": "audit_unavailable", "detail": "Operation recorded without audit trail"},
        )
    return JSONResponse(status_code=500, content={"error": "internal_error", "detail": "Internal server error"})


@app.exception_handler(KeygateError)
async def keygate_error_handler(request: Request, exc: KeygateError) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    if isinstance(exc, Inconsistency):
        logger.error(
            "lineage inconsistency",
            extra={"request_id": request_id, "path": request.url.path},
            exc_info=exc,
        )
    elif isinstance(exc, AuditEmissionError):
        logger.error(
            "audit emission failed after commit",
            extra={"request_id": request_id, "action": exc.action},
            exc_info=exc.cause,
        )
    elif isinstance(exc, InvalidCredential):
        logger.info(
            "credential rejected",
            extra={"request_id": request_id, "reason": exc.reason, "path": request.url.path},
        )
    return _error_response(exc)


def _resolve_settings(request: Request) -> Settings:
    # Respect dependency override for get_settings in tests
    override = request.app.dependency_overrides.get(get_settings)
    return override() if callable(override) else get_settings()


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    if not request.url.path.startswith(RATE_LIMITED_PREFIXES):
        return await call_next(request)

    settings = _resolve_settings(request)
    global _global_rate_limiter, _global_rate_cfg
    desired_cfg = (int(settings.auth_rate_window_seconds), int(settings.auth_rate_max_requests))
    if _global_rate_limiter is None or _global_rate_cfg != desired_cfg:
        _global_rate_limiter = RateLimiter(
            RateConfig(window_seconds=desired_cfg[0], max_requests=desired_cfg[1])
        )
        _global_rate_cfg = desired_cfg

    client = request.client.host if request.client else "unknown"
    if not _global_rate_limiter.allow(client):
        logger.warning("credential endpoint rate limited", extra={"client": client})
        return JSONResponse(
            status_code=429,
            content={"error": "rate_limited", "detail": "Too Many Requests"},
            headers={"Retry-After": str(_global_rate_limiter.retry_after(client))},
        )
    return await call_next(request)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    request.state.request_id = request_id
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000.0
    actor = getattr(request.state, "actor", None) or {"type": "anonymous", "id": "-"}
    logger.info(
        "request completed",
        extra={
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": round(elapsed_ms, 2),
            "actor_type": actor.get("type"),
            "actor_id": actor.get("id"),
        },
    )
    response.headers["X-Request-Id"] = request_id
    return response
