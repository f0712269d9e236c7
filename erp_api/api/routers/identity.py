from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response, status

from erp_api.api.deps import TenantIdentity, require_access, superadmin_or_ceo
from erp_api.domain.identity import Identity
from erp_api.domain.models import (
    AccessSummary,
    PermissionCreate,
    PermissionRead,
    RoleCreate,
    RoleDetailRead,
    RolePermissionsAssign,
    RoleRead,
    RoleUpdate,
    UserCreate,
    UserRead,
    UserUpdate,
)
from erp_api.domain.permissions import (
    PERM_USERS_CREATE,
    PERM_USERS_DELETE,
    PERM_USERS_READ,
    PERM_USERS_UPDATE,
)
from erp_api.infra.audit import set_audit_context
from erp_api.services.identity_service import IdentityService, get_identity_service
from erp_api.services.permission_service import PermissionService, get_permission_service

roles_router = APIRouter()
permissions_router = APIRouter()
users_router = APIRouter()

Service = Annotated[IdentityService, Depends(get_identity_service)]
RoleManager = Annotated[Identity, Depends(superadmin_or_ceo)]


@roles_router.get("", response_model=list[RoleRead])
def list_roles(_: RoleManager, service: Service) -> list[RoleRead]:
    return service.list_roles()


@roles_router.post("", response_model=RoleRead, status_code=status.HTTP_201_CREATED)
def create_role(payload: RoleCreate, identity: RoleManager, service: Service) -> RoleRead:
    return service.create_role(identity, payload)


@roles_router.get("/{role_id}", response_model=RoleDetailRead)
def get_role(role_id: str, _: RoleManager, service: Service) -> RoleDetailRead:
    return service.get_role(role_id)


@roles_router.patch("/{role_id}", response_model=RoleRead)
def update_role(role_id: str, payload: RoleUpdate, identity: RoleManager, service: Service) -> RoleRead:
    return service.update_role(identity, role_id, payload)


@roles_router.put("/{role_id}/permissions", response_model=RoleDetailRead)
def assign_role_permissions(
    role_id: str,
    payload: RolePermissionsAssign,
    request: Request,
    _: RoleManager,
    service: Service,
) -> RoleDetailRead:
    set_audit_context(
        request,
        action="ROLE_PERMISSIONS_REPLACED",
        resource=f"role:{role_id}",
        detail={"permission_ids": sorted(set(payload.permission_ids))},
    )
    return service.assign_role_permissions(role_id, payload.permission_ids)


@roles_router.delete("/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_role(role_id: str, request: Request, _: RoleManager, service: Service) -> Response:
    set_audit_context(request, action="ROLE_DELETED", resource=f"role:{role_id}")
    service.delete_role(role_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@permissions_router.get("", response_model=list[PermissionRead])
def list_permissions(_: RoleManager, service: Service, resource: str | None = None) -> list[PermissionRead]:
    return service.list_permissions(resource)


@permissions_router.get("/resources", response_model=list[str])
def list_permission_resources(_: RoleManager, service: Service) -> list[str]:
    return service.list_permission_resources()


@permissions_router.post("", response_model=PermissionRead, status_code=status.HTTP_201_CREATED)
def create_permission(payload: PermissionCreate, _: RoleManager, service: Service) -> PermissionRead:
    return service.create_permission(payload)


@permissions_router.delete("/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_permission(permission_id: str, _: RoleManager, service: Service) -> Response:
    service.delete_permission(permission_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@users_router.get("", response_model=list[UserRead])
def list_users(
    _: Annotated[Identity, Depends(require_access(PERM_USERS_READ))],
    service: Service,
) -> list[UserRead]:
    return service.list_users()


@users_router.post("", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    payload: UserCreate,
    identity: Annotated[Identity, Depends(require_access(PERM_USERS_CREATE))],
    service: Service,
) -> UserRead:
    return service.create_user(identity, payload)


@users_router.get("/me/access", response_model=AccessSummary)
def my_access(
    identity: TenantIdentity,
    evaluator: Annotated[PermissionService, Depends(get_permission_service)],
) -> AccessSummary:
    return evaluator.access_summary(identity.id)


@users_router.get("/{user_id}", response_model=UserRead)
def get_user(
    user_id: str,
    _: Annotated[Identity, Depends(require_access(PERM_USERS_READ))],
    service: Service,
) -> UserRead:
    return service.get_user(user_id)


@users_router.patch("/{user_id}", response_model=UserRead)
def update_user(
    user_id: str,
    payload: UserUpdate,
    identity: Annotated[Identity, Depends(require_access(PERM_USERS_UPDATE))],
    service: Service,
) -> UserRead:
    return service.update_user(identity, user_id, payload)


@users_router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(
    user_id: str,
    identity: Annotated[Identity, Depends(require_access(PERM_USERS_DELETE))],
    service: Service,
) -> Response:
    service.delete_user(identity, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
