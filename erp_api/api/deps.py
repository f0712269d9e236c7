from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import col, select

from erp_api.domain.errors import AuthenticationFailure, AuthorizationFailure, NotFoundError
from erp_api.domain.identity import Identity
from erp_api.domain.models import Role, User
from erp_api.domain.permissions import PermissionConfig, PermissionScope, check_scope, permission_matches
from erp_api.domain.roles import (
    DISPATCH_INBOX_ROLES,
    FINANCIAL_ACCESS_ROLES,
    ROLE_MANAGEMENT_ROLES,
    RoleInfo,
    normalize_role_name,
)
from erp_api.infra.auth import TokenError, TokenExpiredError, decode_access_token
from erp_api.infra.db import open_session
from erp_api.infra.redis_state import enforce_rate_limit
from erp_api.infra.tenant import get_tenant_id, header_tenant_id, set_request_context
from erp_api.infra.tenant_scope import SKIP_TENANT_SCOPE
from erp_api.services.api_key_service import ApiKeyService, get_api_key_service
from erp_api.services.auth_service import RequestMeta
from erp_api.services.permission_service import PermissionService, get_permission_service

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)
api_key_scheme = APIKeyHeader(name="x-api-key", auto_error=False)

# Returns (owner_id, team_member_ids) for the addressed resource, or None when absent.
OwnershipResolver = Callable[[Request], tuple[str, list[str]] | None]


def get_request_meta(request: Request) -> RequestMeta:
    return RequestMeta(
        ip_address=request.client.host if request.client is not None else None,
        user_agent=request.headers.get("user-agent"),
    )


def _role_info(role: Role) -> RoleInfo:
    return RoleInfo(
        id=role.id,
        name=role.name,
        level=role.level,
        category=role.category,
        is_super_admin=role.is_super_admin,
    )


def _identity_from_token(token: str) -> Identity:
    try:
        claims = decode_access_token(token)
    except TokenExpiredError as exc:
        raise AuthenticationFailure("Token expired") from exc
    except TokenError as exc:
        raise AuthenticationFailure("Invalid token") from exc

    user_id = claims.get("sub")
    email = claims.get("email")
    tenant_id = claims.get("tenant_id")
    if not user_id or not email or not tenant_id:
        raise AuthenticationFailure("Invalid token payload: Missing critical fields")

    # Unscoped on purpose: a user moved to another organization must be seen
    # to report the mismatch.
    with open_session() as session:
        row = session.exec(
            select(User, Role)
            .join(Role, col(Role.id) == col(User.role_id))
            .where(col(User.id) == user_id)
            .where(col(User.is_active).is_(True))
            .where(col(User.deleted_at).is_(None))
            .execution_options(**{SKIP_TENANT_SCOPE: True})
        ).first()
    if row is None:
        raise AuthenticationFailure("User not found or access revoked")
    user, role = row
    if user.organization_id != tenant_id:
        logger.warning(
            "token tenant does not match user organization",
            extra={"target_user_id": user.id, "token_tenant": tenant_id},
        )
        raise AuthenticationFailure("Organization context mismatch")
    return Identity(
        id=user.id,
        email=user.email,
        organization_id=user.organization_id,
        role=_role_info(role),
        session_id=claims.get("sid"),
    )


def _identity_from_api_key(raw_key: str, api_keys: ApiKeyService) -> Identity:
    key, user, role = api_keys.validate_api_key(raw_key)
    return Identity(
        id=user.id,
        email=user.email,
        organization_id=key.organization_id,
        role=_role_info(role),
        is_api_key=True,
        scopes=tuple(key.scopes),
        api_key_id=key.id,
    )


def get_current_identity(
    request: Request,
    api_keys: Annotated[ApiKeyService, Depends(get_api_key_service)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)] = None,
    api_key: Annotated[str | None, Depends(api_key_scheme)] = None,
) -> Identity:
    if credentials is not None and credentials.credentials:
        identity = _identity_from_token(credentials.credentials)
    elif api_key:
        identity = _identity_from_api_key(api_key, api_keys)
    else:
        raise AuthenticationFailure("Unauthorized")
    request.state.identity = identity
    return identity


async def require_tenant(
    request: Request,
    identity: Annotated[Identity, Depends(get_current_identity)],
) -> Identity:
    """Binds the request to the caller's organization.

    Async so the context it sets is the one the handler and later guards run in.
    """
    if not identity.organization_id:
        raise AuthenticationFailure("Tenant context missing")
    requested = header_tenant_id(request)
    if requested and requested != identity.organization_id:
        logger.warning(
            "tenant header does not match identity",
            extra={"requested_tenant": requested, "identity_tenant": identity.organization_id},
        )
        raise AuthenticationFailure("Tenant mismatch")
    if get_tenant_id() != identity.organization_id:
        logger.info("tenant context healed from identity", extra={"identity_tenant": identity.organization_id})
    set_request_context(
        identity.organization_id,
        identity.id,
        identity.role.in_roles(FINANCIAL_ACCESS_ROLES),
    )
    return identity


TenantIdentity = Annotated[Identity, Depends(require_tenant)]


def require_jwt_identity(identity: TenantIdentity) -> Identity:
    if identity.is_api_key:
        raise AuthorizationFailure("API keys cannot perform this action")
    return identity


def _granted(identity: Identity, permissions: PermissionService, required: Sequence[str]) -> bool:
    if identity.is_api_key:
        return all(permission_matches(identity.scopes, item) for item in required)
    return permissions.has_permissions(identity.id, required)


def _scoped_grant(
    identity: Identity,
    permissions: PermissionService,
    config: PermissionConfig,
    owner: tuple[str, list[str]] | None,
) -> bool:
    owner_id, team_ids = owner if owner is not None else (None, [])
    if not identity.is_api_key:
        return permissions.has_advanced_permission(
            identity.id,
            config,
            resource_owner_id=owner_id,
            resource_team_ids=team_ids,
        )
    if not permission_matches(identity.scopes, config.permission):
        return False
    return check_scope(config.scope or PermissionScope.ALL, identity.id, owner_id, team_ids)


def require_access(
    *permissions: str,
    scoped: Iterable[PermissionConfig] = (),
    financial: bool = False,
    min_level: int | None = None,
    categories: Iterable[str] = (),
    owner_resolver: OwnershipResolver | None = None,
) -> Callable[..., Identity]:
    """Builds a guard where every configured requirement must hold.

    API keys are judged on their scopes for permission strings; level,
    category and financial checks use the owning user's role.
    """
    required = list(permissions)
    scoped_configs = list(scoped)
    category_list = list(categories)

    def _checker(
        request: Request,
        identity: TenantIdentity,
        evaluator: Annotated[PermissionService, Depends(get_permission_service)],
    ) -> Identity:
        if required and not _granted(identity, evaluator, required):
            raise AuthorizationFailure(f"Missing required permissions: {', '.join(required)}")

        if scoped_configs:
            owner = owner_resolver(request) if owner_resolver is not None else None
            if owner_resolver is not None and owner is None:
                raise NotFoundError("Resource not found")
            for config in scoped_configs:
                if not _scoped_grant(identity, evaluator, config, owner):
                    scope = config.scope or PermissionScope.ALL
                    raise AuthorizationFailure(
                        f"Missing required permissions: {config.permission} (scope: {scope})"
                    )

        if financial and not evaluator.has_financial_access(identity.id):
            raise AuthorizationFailure("Financial access required")
        if min_level is not None and not evaluator.has_minimum_role_level(identity.id, min_level):
            raise AuthorizationFailure(f"Requires role level {min_level} or higher")
        if category_list and not evaluator.has_role_category(identity.id, category_list):
            raise AuthorizationFailure(f"Requires role category: {' or '.join(category_list)}")
        return identity

    return _checker


def financial_guard(identity: TenantIdentity) -> Identity:
    if not identity.role.in_roles(FINANCIAL_ACCESS_ROLES):
        raise AuthorizationFailure("Financial access required")
    return identity


def require_roles(
    allowed: Iterable[str],
    message: str | None = None,
) -> Callable[[Identity], Awaitable[Identity]]:
    allowed_names = frozenset(normalize_role_name(item) for item in allowed)
    denial = message or f"Requires one of roles: {', '.join(sorted(allowed_names))}"

    async def _checker(identity: TenantIdentity) -> Identity:
        if not identity.role.in_roles(allowed_names):
            raise AuthorizationFailure(denial)
        return identity

    return _checker


superadmin_or_ceo = require_roles(
    ROLE_MANAGEMENT_ROLES,
    "Only Superadmin or CEO can perform this action",
)
executive_role = require_roles(DISPATCH_INBOX_ROLES, "Executive role required")


def rate_limited(bucket: str) -> Callable[[Request], None]:
    def _limit(request: Request) -> None:
        client = request.client.host if request.client is not None else "unknown"
        enforce_rate_limit(bucket, client)

    return _limit
