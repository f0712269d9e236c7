from __future__ import annotations

import logging
import re
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from erp_api.domain.errors import AuthenticationFailure, BadRequestError, ConflictError
from erp_api.domain.identity import Identity
from erp_api.domain.models import (
    AuthResponse,
    AuthUserRead,
    MeResponse,
    ForgotPasswordRequest,
    LoginRequest,
    Organization,
    PasswordResetToken,
    Permission,
    PermissionRef,
    RegisterRequest,
    ResetPasswordRequest,
    Role,
    RolePermission,
    RoleSummary,
    TokenPairResponse,
    User,
    ensure_utc,
    now_utc,
)
from erp_api.domain.permissions import DEFAULT_PERMISSION_NAMES, PERM_ALL, split_permission
from erp_api.domain.roles import SYSTEM_ADMIN_ROLE_LEVEL, SYSTEM_ADMIN_ROLE_NAME, RoleCategory
from erp_api.domain.state_machine import is_valid_state
from erp_api.infra.audit import (
    ACTION_FORGOT_PASSWORD,
    ACTION_LOGIN_FAILED,
    ACTION_LOGIN_SUCCESS,
    ACTION_PASSWORD_RESET,
    ACTION_REFRESH_REUSE,
    ACTION_REGISTER_ORG,
    AuditService,
    audit_service,
)
from erp_api.infra.auth import (
    AccessClaims,
    TokenExpiredError,
    TokenError,
    TokenPair,
    generate_reset_token,
    generate_tokens,
    refresh_expires_at,
    reset_expires_at,
    verify_refresh_token,
    verify_reset_token,
)
from erp_api.infra.db import get_engine
from erp_api.infra.hashing import (
    hash_password,
    placeholder_secret,
    token_digest,
    verify_password,
    verify_token_digest,
)
from erp_api.infra.tenant import tenant_context
from erp_api.services.permission_service import PermissionService, permission_service
from erp_api.services.session_service import SessionService

logger = logging.getLogger(__name__)

AUTH_RESOURCE = "AUTH"
INVALID_CREDENTIALS = "Invalid credentials"

ResetTokenNotifier = Callable[[User, str], None]


@dataclass(frozen=True)
class RequestMeta:
    ip_address: str | None = None
    user_agent: str | None = None


def log_reset_token_issued(user: User, token: str) -> None:
    # Delivery (e-mail) lives outside this service; the raw token is never logged.
    logger.info("password reset token issued", extra={"target_user_id": user.id})


@lru_cache(maxsize=1)
def _dummy_password_hash() -> str:
    # Checked when the e-mail is unknown so both failure paths cost the same.
    return hash_password(secrets.token_hex(16))


def _slugify(name: str) -> str:
    base = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "org"
    return f"{base}-{secrets.token_hex(3)}"


class AuthService:
    def __init__(
        self,
        sessions: SessionService | None = None,
        permissions: PermissionService | None = None,
        audit: AuditService | None = None,
        reset_notifier: ResetTokenNotifier | None = None,
    ) -> None:
        self.sessions = sessions or SessionService()
        self.permissions = permissions or permission_service
        self.audit = audit or audit_service
        self.reset_notifier = reset_notifier or log_reset_token_issued

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _ensure_default_permissions(self, session: Session) -> dict[str, Permission]:
        existing = session.exec(select(Permission)).all()
        by_name = {item.name: item for item in existing}
        for name in DEFAULT_PERMISSION_NAMES:
            if name in by_name:
                continue
            resource, action = split_permission(name)
            row = Permission(resource=resource, action=action, description=f"{action} on {resource}")
            session.add(row)
            by_name[name] = row
        session.flush()
        return by_name

    def _find_user_by_email(self, session: Session, email: str) -> User | None:
        # Scoped to X-Org-Id when the caller sent one; otherwise the oldest
        # account wins so repeated logins resolve to the same organization.
        statement = (
            select(User)
            .where(col(User.email) == email)
            .where(col(User.deleted_at).is_(None))
            .order_by(col(User.created_at), col(User.id))
        )
        matches = list(session.exec(statement).all())
        if len(matches) > 1:
            logger.warning(
                "email matches several organizations; using the oldest account",
                extra={"matches": len(matches), "selected_org": matches[0].organization_id},
            )
        return matches[0] if matches else None

    def _load_role(self, session: Session, role_id: str) -> Role | None:
        return session.exec(select(Role).where(col(Role.id) == role_id)).first()

    def _issue_session(
        self,
        user: User,
        role: Role,
        *,
        meta: RequestMeta,
        rotated_from_id: str | None = None,
    ) -> tuple[str, TokenPair]:
        auth_session = self.sessions.create_session(
            user_id=user.id,
            placeholder_hash=token_digest(placeholder_secret()),
            expires_at=refresh_expires_at(),
            user_agent=meta.user_agent,
            ip_address=meta.ip_address,
            rotated_from_id=rotated_from_id,
        )
        pair = generate_tokens(
            AccessClaims(
                user_id=user.id,
                email=user.email,
                role=role.name,
                session_id=auth_session.id,
                tenant_id=user.organization_id,
            )
        )
        self.sessions.update_session_token(auth_session.id, token_digest(pair.refresh_token))
        return auth_session.id, pair

    def _auth_response(self, user: User, role: Role, pair: TokenPair) -> AuthResponse:
        permissions = [
            PermissionRef(resource=resource, action=action)
            for resource, action in (
                split_permission(name) for name in self.permissions.get_user_permissions(user.id)
            )
        ]
        return AuthResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            user=AuthUserRead(
                id=user.id,
                email=user.email,
                first_name=user.first_name,
                last_name=user.last_name,
                role=role.name,
                organization_id=user.organization_id,
                permissions=permissions,
            ),
        )

    def register(self, payload: RegisterRequest, meta: RequestMeta | None = None) -> AuthResponse:
        meta = meta or RequestMeta()
        if payload.organization_id:
            raise BadRequestError("Joining an existing organization is not supported via public register")

        org_name = (payload.organization_name or "").strip() or f"{payload.first_name}'s Organization"
        organization = Organization(name=org_name, slug=_slugify(org_name))
        try:
            with self._session() as session:
                session.add(organization)
                session.flush()
                # Bound explicitly so a foreign X-Org-Id cannot restamp the new rows.
                with tenant_context(organization.id):
                    permissions = self._ensure_default_permissions(session)
                    role = Role(
                        organization_id=organization.id,
                        name=SYSTEM_ADMIN_ROLE_NAME,
                        description="Organization administrator",
                        level=SYSTEM_ADMIN_ROLE_LEVEL,
                        category=RoleCategory.SUPERADMIN,
                        is_system=True,
                        is_super_admin=True,
                    )
                    session.add(role)
                    session.flush()
                    session.add(RolePermission(role_id=role.id, permission_id=permissions[PERM_ALL].id))
                    user = User(
                        organization_id=organization.id,
                        role_id=role.id,
                        email=payload.email,
                        password_hash=hash_password(payload.password),
                        first_name=payload.first_name,
                        last_name=payload.last_name,
                    )
                    session.add(user)
                    session.commit()
        except IntegrityError as exc:
            raise ConflictError("Registration conflict") from exc

        with tenant_context(organization.id):
            _, pair = self._issue_session(user, role, meta=meta)
            self.audit.log(
                user_id=user.id,
                organization_id=organization.id,
                action=ACTION_REGISTER_ORG,
                resource=AUTH_RESOURCE,
                details={"email": user.email, "org_id": organization.id},
                ip_address=meta.ip_address,
                user_agent=meta.user_agent,
            )
            logger.info("organization registered", extra={"org_id": organization.id, "user_id": user.id})
            return self._auth_response(user, role, pair)

    def login(self, payload: LoginRequest, meta: RequestMeta | None = None) -> AuthResponse:
        meta = meta or RequestMeta()
        with self._session() as session:
            user = self._find_user_by_email(session, payload.email)
            role = self._load_role(session, user.role_id) if user is not None else None

        password_ok = verify_password(
            payload.password,
            user.password_hash if user is not None else _dummy_password_hash(),
        )
        if user is None or not password_ok:
            self.audit.log(
                user_id=None,
                action=ACTION_LOGIN_FAILED,
                resource=AUTH_RESOURCE,
                details={"email": payload.email},
                ip_address=meta.ip_address,
                user_agent=meta.user_agent,
            )
            raise AuthenticationFailure(INVALID_CREDENTIALS)
        if not user.is_active:
            raise AuthenticationFailure("Account is disabled")
        if role is None:
            logger.error("user has no role assigned", extra={"target_user_id": user.id})
            raise AuthenticationFailure(INVALID_CREDENTIALS)

        with tenant_context(user.organization_id):
            session_id, pair = self._issue_session(user, role, meta=meta)
            self.audit.log(
                user_id=user.id,
                organization_id=user.organization_id,
                action=ACTION_LOGIN_SUCCESS,
                resource=AUTH_RESOURCE,
                details={"session_id": session_id},
                ip_address=meta.ip_address,
                user_agent=meta.user_agent,
            )
            return self._auth_response(user, role, pair)

    def refresh(self, refresh_token: str, meta: RequestMeta | None = None) -> TokenPairResponse:
        try:
            pair = self._rotate(refresh_token, meta or RequestMeta())
        except AuthenticationFailure as exc:
            logger.info("refresh rejected", extra={"reason": exc.message})
            raise
        except Exception as exc:
            logger.exception("refresh failed")
            raise AuthenticationFailure("Could not refresh token") from exc
        return TokenPairResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        )

    def _rotate(self, refresh_token: str, meta: RequestMeta) -> TokenPair:
        if not refresh_token:
            raise AuthenticationFailure("Refresh token is required")
        try:
            claims = verify_refresh_token(refresh_token)
        except TokenExpiredError as exc:
            raise AuthenticationFailure("Refresh token expired") from exc
        except TokenError as exc:
            raise AuthenticationFailure("Invalid refresh token") from exc

        session_id = claims.get("sid")
        user_id = claims.get("sub")
        tenant_id = claims.get("tenant_id")
        if not session_id or not user_id or not tenant_id:
            raise AuthenticationFailure("Invalid refresh token payload")

        current = self.sessions.find_session_by_id(session_id)
        if (
            current is None
            or current.user_id != user_id
            or not is_valid_state(current.state)
            or ensure_utc(current.expires_at) <= now_utc()
        ):
            raise AuthenticationFailure("Session invalid or expired")

        if not verify_token_digest(refresh_token, current.refresh_token_hash):
            logger.warning("refresh token reuse detected", extra={"session_id": current.id})
            self.sessions.revoke_session(current.id)
            self.audit.log(
                user_id=user_id,
                organization_id=tenant_id,
                action=ACTION_REFRESH_REUSE,
                resource=AUTH_RESOURCE,
                details={"session_id": current.id},
                ip_address=meta.ip_address,
                user_agent=meta.user_agent,
            )
            raise AuthenticationFailure("Invalid refresh token (reuse)")

        with tenant_context(tenant_id):
            with self._session() as session:
                user = session.exec(
                    select(User)
                    .where(col(User.id) == user_id)
                    .where(col(User.is_active).is_(True))
                    .where(col(User.deleted_at).is_(None))
                ).first()
                role = self._load_role(session, user.role_id) if user is not None else None
            if user is None:
                raise AuthenticationFailure("User not found")
            if role is None:
                logger.error("user has no role assigned during refresh", extra={"target_user_id": user_id})
                raise AuthenticationFailure("User has no role assigned")

            if not self.sessions.consume_session(current.id, current.refresh_token_hash):
                raise AuthenticationFailure("Session invalid or expired")

            _, pair = self._issue_session(
                user,
                role,
                meta=RequestMeta(
                    ip_address=meta.ip_address or current.ip_address,
                    user_agent=meta.user_agent or current.user_agent,
                ),
                rotated_from_id=current.id,
            )
            return pair

    def me(self, identity: Identity) -> MeResponse:
        if identity.is_api_key:
            granted = list(identity.scopes)
        else:
            granted = self.permissions.get_user_permissions(identity.id)
        return MeResponse(
            id=identity.id,
            email=identity.email,
            organization_id=identity.organization_id,
            role=RoleSummary(
                id=identity.role.id,
                name=identity.role.name,
                level=identity.role.level,
                category=identity.role.category,
                is_super_admin=identity.role.is_super_admin,
            ),
            permissions=granted,
            is_api_key=identity.is_api_key,
            scopes=list(identity.scopes),
        )

    def logout(self, refresh_token: str) -> bool:
        try:
            claims = verify_refresh_token(refresh_token)
        except TokenError:
            return True
        session_id = claims.get("sid")
        if session_id:
            self.sessions.revoke_session(session_id)
        return True

    def forgot_password(self, payload: ForgotPasswordRequest, meta: RequestMeta | None = None) -> bool:
        meta = meta or RequestMeta()
        with self._session() as session:
            user = self._find_user_by_email(session, payload.email)
            if user is None or not user.is_active:
                return True

            token = generate_reset_token(user.id)
            session.execute(
                delete(PasswordResetToken)
                .where(col(PasswordResetToken.user_id) == user.id)
                .where(col(PasswordResetToken.used).is_(False))
            )
            session.add(
                PasswordResetToken(
                    user_id=user.id,
                    token_hash=token_digest(token),
                    expires_at=reset_expires_at(),
                )
            )
            session.commit()

        self.reset_notifier(user, token)
        self.audit.log(
            user_id=user.id,
            organization_id=user.organization_id,
            action=ACTION_FORGOT_PASSWORD,
            resource=AUTH_RESOURCE,
            details={"email": payload.email},
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )
        return True

    def reset_password(self, payload: ResetPasswordRequest, meta: RequestMeta | None = None) -> bool:
        meta = meta or RequestMeta()
        try:
            claims = verify_reset_token(payload.token)
        except TokenError as exc:
            raise AuthenticationFailure("Invalid or expired reset token") from exc
        user_id = claims.get("sub")
        if not user_id:
            raise AuthenticationFailure("Invalid or expired reset token")

        with self._session() as session:
            user = session.exec(
                select(User).where(col(User.id) == user_id).where(col(User.deleted_at).is_(None))
            ).first()
            if user is None:
                raise AuthenticationFailure("User not found")

            # Stored values are one-way digests, so every row for the user is checked.
            stored = session.exec(
                select(PasswordResetToken).where(col(PasswordResetToken.user_id) == user.id)
            ).all()
            record = next((item for item in stored if verify_token_digest(payload.token, item.token_hash)), None)
            if record is None:
                raise AuthenticationFailure("Invalid or expired reset token")
            if record.used:
                raise AuthenticationFailure("Token already used")
            if ensure_utc(record.expires_at) <= now_utc():
                raise AuthenticationFailure("Token expired")

            user.password_hash = hash_password(payload.password)
            user.updated_at = now_utc()
            record.used = True
            session.add(user)
            session.add(record)
            session.commit()

        revoked = self.sessions.revoke_all_user_sessions(user.id)
        self.audit.log(
            user_id=user.id,
            organization_id=user.organization_id,
            action=ACTION_PASSWORD_RESET,
            resource=AUTH_RESOURCE,
            details={"revoked_sessions": revoked},
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )
        return True


auth_service = AuthService()


def get_auth_service() -> AuthService:
    return auth_service
