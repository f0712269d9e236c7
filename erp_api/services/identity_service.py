from __future__ import annotations

import logging

from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from erp_api.domain.errors import AuthorizationFailure, BadRequestError, ConflictError, NotFoundError
from erp_api.domain.identity import Identity
from erp_api.domain.models import (
    Permission,
    PermissionCreate,
    PermissionRead,
    Role,
    RoleCreate,
    RoleDetailRead,
    RolePermission,
    RoleRead,
    RoleUpdate,
    User,
    UserCreate,
    UserRead,
    UserUpdate,
    now_utc,
)
from erp_api.domain.roles import (
    SUPERADMIN_ROLES,
    default_role_category,
    default_role_level,
    normalize_role_name,
)
from erp_api.infra.db import get_engine
from erp_api.infra.hashing import hash_password
from erp_api.services.session_service import SessionService

logger = logging.getLogger(__name__)


class IdentityService:
    """Roles, the global permission catalog and users of the caller's tenant.

    Tenant filtering comes from the scoping hook on the session; lookups here
    never name the organization except when creating rows.
    """

    def __init__(self, sessions: SessionService | None = None) -> None:
        self.sessions = sessions or SessionService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    # Roles

    def _get_role(self, session: Session, role_id: str) -> Role:
        role = session.exec(select(Role).where(col(Role.id) == role_id)).first()
        if role is None:
            raise NotFoundError("Role not found")
        return role

    def _role_permissions(self, session: Session, role_id: str) -> list[str]:
        statement = (
            select(Permission)
            .join(RolePermission, col(RolePermission.permission_id) == col(Permission.id))
            .where(col(RolePermission.role_id) == role_id)
        )
        return sorted(item.name for item in session.exec(statement).all())

    def _role_name_taken(self, session: Session, name: str, exclude_id: str | None = None) -> bool:
        wanted = normalize_role_name(name)
        for role in session.exec(select(Role)).all():
            if role.id != exclude_id and normalize_role_name(role.name) == wanted:
                return True
        return False

    def _check_role_grant(
        self,
        actor: Identity,
        *,
        name: str | None = None,
        level: int | None = None,
        is_super_admin: bool | None = None,
    ) -> None:
        """Only super admins may define roles that outrank the actor."""
        if actor.is_super_admin:
            return
        if is_super_admin is not None:
            raise AuthorizationFailure("Only a super admin can change the super admin flag")
        if level is not None and level > actor.role.level:
            raise AuthorizationFailure("Cannot raise a role above your own level")
        if name is not None and normalize_role_name(name) in SUPERADMIN_ROLES:
            raise AuthorizationFailure("Cannot name a role after a super admin role")

    def list_roles(self) -> list[RoleRead]:
        with self._session() as session:
            rows = session.exec(select(Role).order_by(col(Role.level).desc(), col(Role.name))).all()
            return [RoleRead.model_validate(item) for item in rows]

    def get_role(self, role_id: str) -> RoleDetailRead:
        with self._session() as session:
            role = self._get_role(session, role_id)
            permissions = self._role_permissions(session, role.id)
        return RoleDetailRead(**RoleRead.model_validate(role).model_dump(), permissions=permissions)

    def create_role(self, actor: Identity, payload: RoleCreate) -> RoleRead:
        name = payload.name.strip()
        if not name:
            raise BadRequestError("Role name must not be empty")
        level = payload.level if payload.level is not None else default_role_level(name)
        self._check_role_grant(actor, name=name, level=level)
        with self._session() as session:
            if self._role_name_taken(session, name):
                raise ConflictError("Role already exists")
            category = payload.category or default_role_category(name)
            role = Role(
                organization_id=actor.organization_id,
                name=name,
                description=payload.description,
                level=level,
                category=str(category) if category else None,
            )
            session.add(role)
            try:
                session.commit()
            except IntegrityError as exc:
                raise ConflictError("Role already exists") from exc
            session.refresh(role)
        logger.info("role created", extra={"role_id": role.id, "role_name": role.name})
        return RoleRead.model_validate(role)

    def update_role(self, actor: Identity, role_id: str, payload: RoleUpdate) -> RoleRead:
        with self._session() as session:
            role = self._get_role(session, role_id)
            renamed = payload.name is not None and normalize_role_name(payload.name) != normalize_role_name(role.name)
            if role.is_system:
                if renamed:
                    raise ConflictError("Cannot rename system role")
                if payload.level is not None and payload.level < role.level:
                    raise ConflictError("Cannot lower the level of a system role")
                if payload.is_super_admin is False:
                    raise ConflictError("Cannot remove super admin from system role")
            if not actor.is_super_admin and role.level > actor.role.level:
                raise AuthorizationFailure("Cannot modify a role above your own level")
            raised = payload.level is not None and payload.level > role.level
            flag_changed = payload.is_super_admin is not None and payload.is_super_admin != role.is_super_admin
            self._check_role_grant(
                actor,
                name=payload.name if renamed else None,
                level=payload.level if raised else None,
                is_super_admin=payload.is_super_admin if flag_changed else None,
            )

            if payload.name is not None:
                name = payload.name.strip()
                if not name:
                    raise BadRequestError("Role name must not be empty")
                if self._role_name_taken(session, name, exclude_id=role.id):
                    raise ConflictError("Role already exists")
                role.name = name
            if payload.description is not None:
                role.description = payload.description
            if payload.level is not None:
                role.level = payload.level
            if payload.category is not None:
                role.category = payload.category
            if payload.is_super_admin is not None:
                role.is_super_admin = payload.is_super_admin
            session.add(role)
            session.commit()
            session.refresh(role)
        return RoleRead.model_validate(role)

    def assign_role_permissions(self, role_id: str, permission_ids: list[str]) -> RoleDetailRead:
        wanted = set(permission_ids)
        with self._session() as session:
            role = self._get_role(session, role_id)
            found = session.exec(select(Permission).where(col(Permission.id).in_(wanted))).all() if wanted else []
            missing = wanted - {item.id for item in found}
            if missing:
                raise NotFoundError(f"Permission not found: {', '.join(sorted(missing))}")
            session.execute(delete(RolePermission).where(col(RolePermission.role_id) == role.id))
            for permission in found:
                session.add(RolePermission(role_id=role.id, permission_id=permission.id))
            session.commit()
        logger.info("role permissions replaced", extra={"role_id": role_id, "count": len(wanted)})
        return self.get_role(role_id)

    def delete_role(self, role_id: str) -> None:
        with self._session() as session:
            role = self._get_role(session, role_id)
            if role.is_system:
                raise ConflictError("Cannot delete system role")
            assigned = session.exec(
                select(func.count()).select_from(User).where(col(User.role_id) == role.id)
            ).one()
            if assigned:
                raise ConflictError(f"Cannot delete role. It is assigned to {assigned} user(s).")
            session.execute(delete(RolePermission).where(col(RolePermission.role_id) == role.id))
            session.delete(role)
            session.commit()
        logger.info("role deleted", extra={"role_id": role_id})

    # Permissions (global catalog)

    def list_permissions(self, resource: str | None = None) -> list[PermissionRead]:
        with self._session() as session:
            statement = select(Permission).order_by(col(Permission.resource), col(Permission.action))
            if resource:
                statement = statement.where(col(Permission.resource) == resource)
            return [PermissionRead.model_validate(item) for item in session.exec(statement).all()]

    def list_permission_resources(self) -> list[str]:
        with self._session() as session:
            return sorted({item.resource for item in session.exec(select(Permission)).all()})

    def create_permission(self, payload: PermissionCreate) -> PermissionRead:
        with self._session() as session:
            existing = session.exec(
                select(Permission)
                .where(col(Permission.resource) == payload.resource)
                .where(col(Permission.action) == payload.action)
            ).first()
            if existing is not None:
                raise ConflictError(
                    f'Permission with resource "{payload.resource}" and action "{payload.action}" already exists'
                )
            permission = Permission(
                resource=payload.resource,
                action=payload.action,
                description=payload.description,
            )
            session.add(permission)
            session.commit()
            session.refresh(permission)
        return PermissionRead.model_validate(permission)

    def delete_permission(self, permission_id: str) -> None:
        with self._session() as session:
            permission = session.get(Permission, permission_id)
            if permission is None:
                raise NotFoundError("Permission not found")
            # Counted across every tenant: the catalog is shared.
            assigned = session.exec(
                select(func.count())
                .select_from(RolePermission)
                .where(col(RolePermission.permission_id) == permission.id)
            ).one()
            if assigned:
                raise ConflictError(
                    f"Cannot delete permission. It is assigned to {assigned} role(s). "
                    "Please remove it from roles first."
                )
            session.delete(permission)
            session.commit()

    # Users

    def _get_user(self, session: Session, user_id: str) -> User:
        user = session.exec(
            select(User).where(col(User.id) == user_id).where(col(User.deleted_at).is_(None))
        ).first()
        if user is None:
            raise NotFoundError("User not found")
        return user

    def _check_assignable(self, actor: Identity, role: Role) -> None:
        if actor.is_super_admin:
            return
        if role.is_super_admin or role.level > actor.role.level:
            raise AuthorizationFailure("Cannot assign a role above your own level")

    def list_users(self) -> list[UserRead]:
        with self._session() as session:
            rows = session.exec(
                select(User).where(col(User.deleted_at).is_(None)).order_by(col(User.created_at))
            ).all()
            return [UserRead.model_validate(item) for item in rows]

    def get_user(self, user_id: str) -> UserRead:
        with self._session() as session:
            return UserRead.model_validate(self._get_user(session, user_id))

    def create_user(self, actor: Identity, payload: UserCreate) -> UserRead:
        with self._session() as session:
            role = self._get_role(session, payload.role_id)
            self._check_assignable(actor, role)
            existing = session.exec(select(User).where(col(User.email) == payload.email)).first()
            if existing is not None:
                raise ConflictError("User already exists")
            user = User(
                organization_id=actor.organization_id,
                role_id=role.id,
                email=payload.email,
                password_hash=hash_password(payload.password),
                first_name=payload.first_name,
                last_name=payload.last_name,
            )
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                raise ConflictError("User already exists") from exc
            session.refresh(user)
        logger.info("user created", extra={"target_user_id": user.id})
        return UserRead.model_validate(user)

    def update_user(self, actor: Identity, user_id: str, payload: UserUpdate) -> UserRead:
        with self._session() as session:
            user = self._get_user(session, user_id)
            if payload.is_active is False and user.id == actor.id:
                raise BadRequestError("You cannot deactivate your own account")
            if payload.role_id is not None and payload.role_id != user.role_id:
                role = self._get_role(session, payload.role_id)
                self._check_assignable(actor, role)
                user.role_id = role.id
            if payload.first_name is not None:
                user.first_name = payload.first_name
            if payload.last_name is not None:
                user.last_name = payload.last_name
            if payload.is_active is not None:
                user.is_active = payload.is_active
            user.updated_at = now_utc()
            session.add(user)
            session.commit()
            session.refresh(user)
        if payload.is_active is False:
            self.sessions.revoke_all_user_sessions(user.id)
        return UserRead.model_validate(user)

    def delete_user(self, actor: Identity, user_id: str) -> None:
        with self._session() as session:
            user = self._get_user(session, user_id)
            if user.id == actor.id:
                raise BadRequestError("You cannot delete your own account")
            user.is_active = False
            user.deleted_at = now_utc()
            user.updated_at = now_utc()
            session.add(user)
            session.commit()
        self.sessions.revoke_all_user_sessions(user_id)
        logger.info("user soft-deleted", extra={"target_user_id": user_id})


identity_service = IdentityService()


def get_identity_service() -> IdentityService:
    return identity_service
