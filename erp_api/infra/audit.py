from __future__ import annotations

import logging
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from erp_api.domain.models import AuditLog
from erp_api.infra import db
from erp_api.infra.tenant import get_tenant_id

logger = logging.getLogger(__name__)

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
UNAUDITED_PATH_PREFIXES = ("/healthz", "/readyz", "/auth/")
AUDIT_CONTEXT_STATE_KEY = "_audit_context"

ACTION_REGISTER_ORG = "REGISTER_ORG"
ACTION_LOGIN_FAILED = "LOGIN_FAILED"
ACTION_LOGIN_SUCCESS = "LOGIN_SUCCESS"
ACTION_FORGOT_PASSWORD = "FORGOT_PASSWORD_REQUEST"
ACTION_PASSWORD_RESET = "PASSWORD_RESET_SUCCESS"
ACTION_REFRESH_REUSE = "REFRESH_TOKEN_REUSE"


class AuditService:
    """Append-only audit trail. A failed write is logged and never surfaces."""

    def log(
        self,
        *,
        user_id: str | None,
        action: str,
        resource: str,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        organization_id: str | None = None,
        method: str | None = None,
        status_code: int | None = None,
    ) -> None:
        entry = AuditLog(
            organization_id=organization_id or get_tenant_id(),
            user_id=user_id,
            action=action,
            resource=resource,
            details=details or {},
            ip_address=ip_address,
            user_agent=user_agent,
            method=method,
            status_code=status_code,
        )
        try:
            with db.open_session() as session:
                session.add(entry)
                session.commit()
        except Exception:
            logger.exception("audit write failed", extra={"action": action, "resource": resource})


audit_service = AuditService()


def get_audit_service() -> AuditService:
    return audit_service


def set_audit_context(
    request: Request,
    *,
    action: str | None = None,
    resource: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    context_raw = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, {})
    context = dict(context_raw) if isinstance(context_raw, dict) else {}
    if action is not None:
        context["action"] = action
    if resource is not None:
        context["resource"] = resource
    if detail:
        previous = context.get("detail")
        context["detail"] = {**previous, **detail} if isinstance(previous, dict) else dict(detail)
    setattr(request.state, AUDIT_CONTEXT_STATE_KEY, context)


def _status_outcome(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code in {401, 403, 404}:
        return "denied"
    if status_code >= 400:
        return "rejected"
    return "success"


class AuditMiddleware(BaseHTTPMiddleware):
    """Records every write request outside the auth flow, which audits itself."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        path = request.url.path
        if request.method not in WRITE_METHODS or path.startswith(UNAUDITED_PATH_PREFIXES):
            return response

        context_raw = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, {})
        context = context_raw if isinstance(context_raw, dict) else {}
        identity = getattr(request.state, "identity", None)
        action = context.get("action") or f"{request.method}:{path}"
        resource = context.get("resource") or path
        details: dict[str, Any] = {
            "outcome": _status_outcome(response.status_code),
            "query": request.url.query,
        }
        extra_detail = context.get("detail")
        if isinstance(extra_detail, dict):
            details.update(extra_detail)

        audit_service.log(
            user_id=getattr(identity, "id", None),
            organization_id=getattr(identity, "organization_id", None),
            action=action,
            resource=resource,
            details=details,
            ip_address=request.client.host if request.client is not None else None,
            user_agent=request.headers.get("user-agent"),
            method=request.method,
            status_code=response.status_code,
        )
        return response
