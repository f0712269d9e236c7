from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlmodel import Session, col, select

from erp_api.domain.errors import AuthenticationFailure
from erp_api.domain.models import AccessSummary, Permission, Role, RolePermission, User
from erp_api.domain.permissions import (
    PermissionConfig,
    PermissionScope,
    check_scope,
    has_all_permissions,
    permission_matches,
)
from erp_api.domain.roles import LEVEL_APPROVE, LEVEL_MANAGE, RoleInfo, normalize_role_name
from erp_api.infra.db import get_engine

logger = logging.getLogger(__name__)


class PermissionService:
    """Role/permission checks that always read the current user and role rows.

    Nothing is cached, so a role change or deactivation takes effect on the
    very next check.
    """

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _load_user_role(self, session: Session, user_id: str) -> tuple[User, Role] | None:
        statement = (
            select(User, Role)
            .join(Role, col(Role.id) == col(User.role_id))
            .where(col(User.id) == user_id)
            .where(col(User.is_active).is_(True))
            .where(col(User.deleted_at).is_(None))
        )
        row = session.exec(statement).first()
        if row is None:
            return None
        user, role = row
        return user, role

    def _role_permission_names(self, session: Session, role_id: str) -> list[str]:
        statement = (
            select(Permission)
            .join(RolePermission, col(RolePermission.permission_id) == col(Permission.id))
            .where(col(RolePermission.role_id) == role_id)
        )
        return sorted(item.name for item in session.exec(statement).all())

    def get_role_info(self, user_id: str) -> RoleInfo | None:
        with self._session() as session:
            loaded = self._load_user_role(session, user_id)
        if loaded is None:
            return None
        _, role = loaded
        return RoleInfo(
            id=role.id,
            name=role.name,
            level=role.level,
            category=role.category,
            is_super_admin=role.is_super_admin,
        )

    def get_user_permissions(self, user_id: str) -> list[str]:
        with self._session() as session:
            loaded = self._load_user_role(session, user_id)
            if loaded is None:
                return []
            _, role = loaded
            return self._role_permission_names(session, role.id)

    def has_permissions(self, user_id: str, required: Iterable[str]) -> bool:
        required_list = list(required)
        with self._session() as session:
            loaded = self._load_user_role(session, user_id)
            if loaded is None:
                return False
            _, role = loaded
            if role.is_super_admin:
                return True
            granted = self._role_permission_names(session, role.id)
        return has_all_permissions(granted, required_list)

    def has_advanced_permission(
        self,
        user_id: str,
        config: PermissionConfig,
        *,
        resource_owner_id: str | None = None,
        resource_team_ids: Iterable[str] | None = None,
    ) -> bool:
        with self._session() as session:
            loaded = self._load_user_role(session, user_id)
            if loaded is None:
                return False
            _, role = loaded
            if role.is_super_admin:
                return True
            granted = self._role_permission_names(session, role.id)
        if not permission_matches(granted, config.permission):
            return False
        scope = config.scope or PermissionScope.ALL
        return check_scope(scope, user_id, resource_owner_id, resource_team_ids)

    def has_financial_access(self, user_id: str) -> bool:
        role = self.get_role_info(user_id)
        return role is not None and role.has_financial_access

    def has_minimum_role_level(self, user_id: str, min_level: int) -> bool:
        role = self.get_role_info(user_id)
        if role is None:
            return False
        return role.is_super_admin or role.level >= min_level

    def has_role_category(self, user_id: str, categories: Iterable[str]) -> bool:
        role = self.get_role_info(user_id)
        if role is None:
            return False
        if role.is_super_admin:
            return True
        wanted = {normalize_role_name(item) for item in categories}
        return normalize_role_name(role.category) in wanted

    def can_approve(self, user_id: str) -> bool:
        return self.has_minimum_role_level(user_id, LEVEL_APPROVE)

    def can_manage(self, user_id: str) -> bool:
        return self.has_minimum_role_level(user_id, LEVEL_MANAGE)

    def access_summary(self, user_id: str) -> AccessSummary:
        role = self.get_role_info(user_id)
        if role is None:
            raise AuthenticationFailure("User not found or access revoked")
        return AccessSummary(
            role=role.name,
            level=role.level,
            category=role.category,
            permissions=self.get_user_permissions(user_id),
            has_financial_access=role.has_financial_access,
            can_approve=self.can_approve(user_id),
            can_manage=self.can_manage(user_id),
        )


permission_service = PermissionService()


def get_permission_service() -> PermissionService:
    return permission_service
