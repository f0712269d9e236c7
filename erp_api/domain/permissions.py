from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum

PERM_WILDCARD = "*"
PERM_ALL = "*:*"

PERM_USERS_READ = "users:read"
PERM_USERS_CREATE = "users:create"
PERM_USERS_UPDATE = "users:update"
PERM_USERS_DELETE = "users:delete"
PERM_ROLES_READ = "roles:read"
PERM_ROLES_MANAGE = "roles:manage"
PERM_PERMISSIONS_READ = "permissions:read"
PERM_PERMISSIONS_MANAGE = "permissions:manage"
PERM_ACCOUNTS_READ = "accounts:read"
PERM_ACCOUNTS_CREATE = "accounts:create"
PERM_DISPATCHES_READ = "dispatches:read"
PERM_DISPATCHES_CREATE = "dispatches:create"
PERM_API_KEYS_MANAGE = "api_keys:manage"

DEFAULT_PERMISSION_NAMES = [
    PERM_ALL,
    PERM_USERS_READ,
    PERM_USERS_CREATE,
    PERM_USERS_UPDATE,
    PERM_USERS_DELETE,
    PERM_ROLES_READ,
    PERM_ROLES_MANAGE,
    PERM_PERMISSIONS_READ,
    PERM_PERMISSIONS_MANAGE,
    PERM_ACCOUNTS_READ,
    PERM_ACCOUNTS_CREATE,
    PERM_DISPATCHES_READ,
    PERM_DISPATCHES_CREATE,
    PERM_API_KEYS_MANAGE,
]


class PermissionAction(StrEnum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    EXPORT = "export"
    APPROVE = "approve"
    MANAGE = "manage"
    ADMIN = "admin"


class PermissionScope(StrEnum):
    OWN = "own"
    TEAM = "team"
    DEPARTMENT = "department"
    ALL = "all"


@dataclass(frozen=True)
class PermissionConfig:
    resource: str
    action: str
    scope: PermissionScope | None = None

    @property
    def permission(self) -> str:
        return f"{self.resource}:{self.action}"


def split_permission(name: str) -> tuple[str, str]:
    resource, sep, action = name.partition(":")
    if not sep or not resource or not action:
        raise ValueError(f"permission must look like resource:action, got {name!r}")
    return resource, action


def permission_matches(granted: Iterable[str], required: str) -> bool:
    """True when ``required`` is covered by an exact grant or a wildcard grant.

    Accepted grant shapes: ``resource:action``, ``resource:*``, ``*:action``
    and ``*:*``.
    """
    granted_set = set(granted)
    if required in granted_set or PERM_ALL in granted_set:
        return True
    try:
        resource, action = split_permission(required)
    except ValueError:
        return False
    return f"{resource}:{PERM_WILDCARD}" in granted_set or f"{PERM_WILDCARD}:{action}" in granted_set


def has_all_permissions(granted: Iterable[str], required: Iterable[str]) -> bool:
    granted_list = list(granted)
    return all(permission_matches(granted_list, item) for item in required)


def check_scope(
    scope: PermissionScope,
    user_id: str,
    resource_owner_id: str | None = None,
    resource_team_ids: Iterable[str] | None = None,
) -> bool:
    if scope == PermissionScope.ALL:
        return True
    if scope == PermissionScope.OWN:
        return resource_owner_id is not None and user_id == resource_owner_id
    if scope == PermissionScope.TEAM:
        if resource_owner_id is not None and user_id == resource_owner_id:
            return True
        return user_id in set(resource_team_ids or [])
    # DEPARTMENT has no membership source yet; deny.
    return False
