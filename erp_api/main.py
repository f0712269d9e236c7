from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from erp_api.api.routers import api_keys, auth, dispatches, finance, identity
from erp_api.domain.errors import ErpError
from erp_api.domain.models import now_utc
from erp_api.infra.audit import AuditMiddleware
from erp_api.infra.db import check_db_ready
from erp_api.infra.logging import configure_logging
from erp_api.infra.redis_state import check_redis_ready
from erp_api.infra.tenant import TenantMiddleware

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="erp-access-core",
    description="Multi-tenant authentication, session rotation and permission enforcement.",
    version="0.1.0",
)

# Starlette runs the last-added middleware first: tenant resolution wraps auditing.
app.add_middleware(AuditMiddleware)
app.add_middleware(TenantMiddleware)

app.include_router(auth.router, prefix="/auth", tags=["auth"])
app.include_router(identity.roles_router, prefix="/roles", tags=["roles"])
app.include_router(identity.permissions_router, prefix="/permissions", tags=["permissions"])
app.include_router(identity.users_router, prefix="/users", tags=["users"])
app.include_router(api_keys.router, prefix="/api-keys", tags=["api-keys"])
app.include_router(finance.router, prefix="/finance", tags=["finance"])
app.include_router(dispatches.router, prefix="/dispatches", tags=["dispatches"])


def error_envelope(request: Request, status_code: int, message: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "data": None,
            "message": message,
            "timestamp": now_utc().isoformat(),
            "path": request.url.path,
        },
    )


@app.exception_handler(ErpError)
async def erp_error_handler(request: Request, exc: ErpError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request failed", extra={"path": request.url.path}, exc_info=exc)
    return error_envelope(request, exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_envelope(request, exc.status_code, exc.detail)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error.get("loc", ()) if loc != "body")
        text = error.get("msg", "Invalid value")
        messages.append(f"{field}: {text}" if field else text)
    return error_envelope(request, status.HTTP_400_BAD_REQUEST, messages or ["Validation failed"])


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled exception", extra={"path": request.url.path}, exc_info=exc)
    return error_envelope(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> JSONResponse:
    db_ok = check_db_ready()
    redis_ok = check_redis_ready()
    checks = {
        "db": "ok" if db_ok else "fail",
        "redis": "ok" if redis_ok else "fail",
    }
    if not (db_ok and redis_ok):
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", "checks": checks},
        )
    return JSONResponse(content={"status": "ready", "checks": checks})
