from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from erp_api.infra.auth import TokenInvalidError, decode_unverified

TENANT_HEADERS = ("x-org-id", "x-tenant-id")
TENANT_CLAIM = "tenant_id"

tenant_id_ctx: ContextVar[str | None] = ContextVar("tenant_id", default=None)
user_id_ctx: ContextVar[str | None] = ContextVar("user_id", default=None)
# None means "no caller bound" (system work); False blocks financial tables.
financial_access_ctx: ContextVar[bool | None] = ContextVar("financial_access", default=None)


def set_tenant_id(tenant_id: str | None) -> None:
    tenant_id_ctx.set(tenant_id)


def get_tenant_id() -> str | None:
    return tenant_id_ctx.get()


def set_request_context(
    tenant_id: str | None,
    user_id: str | None,
    financial_access: bool | None = None,
) -> None:
    tenant_id_ctx.set(tenant_id)
    user_id_ctx.set(user_id)
    financial_access_ctx.set(financial_access)


def get_user_id() -> str | None:
    return user_id_ctx.get()


def get_financial_access() -> bool | None:
    return financial_access_ctx.get()


@contextmanager
def tenant_context(tenant_id: str | None) -> Iterator[None]:
    token = tenant_id_ctx.set(tenant_id)
    try:
        yield
    finally:
        tenant_id_ctx.reset(token)


def header_tenant_id(request: Request) -> str | None:
    for header in TENANT_HEADERS:
        value = request.headers.get(header)
        if value:
            return value
    return None


def bearer_token(request: Request) -> str | None:
    authorization = request.headers.get("authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def tenant_from_unverified_token(token: str) -> str | None:
    try:
        claims = decode_unverified(token)
    except TokenInvalidError:
        return None
    tenant_id = claims.get(TENANT_CLAIM)
    return tenant_id if isinstance(tenant_id, str) and tenant_id else None


def resolve_request_tenant(request: Request) -> str | None:
    tenant_id = header_tenant_id(request)
    if tenant_id:
        return tenant_id
    token = bearer_token(request)
    if token is None:
        return None
    return tenant_from_unverified_token(token)


class TenantMiddleware(BaseHTTPMiddleware):
    """Seeds the tenant context before any guard or handler runs.

    Signatures are not checked here; the identity dependency does that. A
    request without a resolvable tenant proceeds unbound.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        tenant_id = resolve_request_tenant(request)
        token = tenant_id_ctx.set(tenant_id)
        try:
            return await call_next(request)
        finally:
            tenant_id_ctx.reset(token)
