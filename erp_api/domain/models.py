from __future__ import annotations

import re
from datetime import UTC, datetime
from decimal import Decimal
from typing import Annotated, Any
from uuid import uuid4

from pydantic import AfterValidator, BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel
from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from erp_api.domain.state_machine import SessionState

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PASSWORD_MIN_LENGTH = 8


def now_utc() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid4())


def ensure_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; stored values are always UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Organization(SQLModel, table=True):
    __tablename__ = "organizations"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    slug: str = Field(index=True, unique=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Role(SQLModel, table=True):
    __tablename__ = "roles"
    __table_args__ = (UniqueConstraint("organization_id", "name", name="uq_roles_org_name"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    organization_id: str = Field(foreign_key="organizations.id", index=True)
    name: str = Field(index=True)
    description: str | None = None
    level: int = Field(default=0)
    category: str | None = Field(default=None, index=True)
    is_system: bool = Field(default=False)
    is_super_admin: bool = Field(default=False)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class User(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("organization_id", "email", name="uq_users_org_email"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    organization_id: str = Field(foreign_key="organizations.id", index=True)
    role_id: str = Field(foreign_key="roles.id", index=True)
    email: str = Field(index=True)
    password_hash: str
    first_name: str
    last_name: str
    is_active: bool = Field(default=True)
    deleted_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Permission(SQLModel, table=True):
    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("resource", "action", name="uq_permissions_resource_action"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    resource: str = Field(index=True)
    action: str
    description: str | None = None
    created_at: datetime = Field(default_factory=now_utc)

    @property
    def name(self) -> str:
        return f"{self.resource}:{self.action}"


class RolePermission(SQLModel, table=True):
    __tablename__ = "role_permissions"

    role_id: str = Field(foreign_key="roles.id", primary_key=True)
    permission_id: str = Field(foreign_key="permissions.id", primary_key=True)
    created_at: datetime = Field(default_factory=now_utc)


class AuthSession(SQLModel, table=True):
    __tablename__ = "auth_sessions"

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    refresh_token_hash: str
    state: SessionState = Field(default=SessionState.PENDING, index=True)
    user_agent: str | None = None
    ip_address: str | None = None
    rotated_from_id: str | None = Field(default=None, index=True)
    expires_at: datetime
    revoked_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class PasswordResetToken(SQLModel, table=True):
    __tablename__ = "password_reset_tokens"

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    token_hash: str
    used: bool = Field(default=False)
    expires_at: datetime
    created_at: datetime = Field(default_factory=now_utc)


class ApiKey(SQLModel, table=True):
    __tablename__ = "api_keys"

    id: str = Field(default_factory=new_id, primary_key=True)
    organization_id: str = Field(foreign_key="organizations.id", index=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    name: str
    prefix: str = Field(index=True)
    key_hash: str
    scopes: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    last_used_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=new_id, primary_key=True)
    organization_id: str | None = Field(default=None, index=True)
    user_id: str | None = Field(default=None, index=True)
    action: str = Field(index=True)
    resource: str
    details: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    ip_address: str | None = None
    user_agent: str | None = None
    method: str | None = None
    status_code: int | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Account(SQLModel, table=True):
    __tablename__ = "accounts"
    __table_args__ = (UniqueConstraint("organization_id", "code", name="uq_accounts_org_code"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    organization_id: str = Field(foreign_key="organizations.id", index=True)
    code: str
    name: str
    balance: Decimal = Field(default=Decimal("0"), max_digits=18, decimal_places=2)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Dispatch(SQLModel, table=True):
    __tablename__ = "dispatches"

    id: str = Field(default_factory=new_id, primary_key=True)
    organization_id: str = Field(foreign_key="organizations.id", index=True)
    sender_id: str = Field(foreign_key="users.id", index=True)
    recipient_id: str = Field(foreign_key="users.id", index=True)
    subject: str
    body: str
    created_at: datetime = Field(default_factory=now_utc, index=True)


# Request/response schemas. JSON bodies are camelCase; snake_case is accepted too.


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


def _check_email(value: str) -> str:
    normalized = value.strip().lower()
    if not EMAIL_PATTERN.match(normalized):
        raise ValueError("Invalid email address")
    return normalized


def _check_password_strength(value: str) -> str:
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
    has_upper = any(ch.isupper() for ch in value)
    has_lower = any(ch.islower() for ch in value)
    has_digit_or_symbol = any(not ch.isalpha() for ch in value)
    if not (has_upper and has_lower and has_digit_or_symbol):
        raise ValueError("Password must contain uppercase, lowercase, number and special character")
    return value


EmailAddress = Annotated[str, AfterValidator(_check_email)]
StrongPassword = Annotated[str, AfterValidator(_check_password_strength)]


class RegisterRequest(ApiModel):
    email: EmailAddress
    password: StrongPassword
    first_name: str
    last_name: str
    organization_name: str | None = None
    organization_id: str | None = None

    @field_validator("first_name", "last_name")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value.strip()


class LoginRequest(ApiModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class RefreshRequest(ApiModel):
    refresh_token: str


class LogoutRequest(ApiModel):
    refresh_token: str


class ForgotPasswordRequest(ApiModel):
    email: str

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class ResetPasswordRequest(ApiModel):
    token: str
    password: StrongPassword


class PermissionRef(ApiModel):
    resource: str
    action: str


class AuthUserRead(ApiModel):
    id: str
    email: str
    first_name: str
    last_name: str
    role: str
    organization_id: str
    permissions: list[PermissionRef] = []


class TokenPairResponse(ApiModel):
    access_token: str
    refresh_token: str
    expires_in: int


class AuthResponse(TokenPairResponse):
    user: AuthUserRead


class RoleSummary(ApiModel):
    id: str
    name: str
    level: int
    category: str | None = None
    is_super_admin: bool = False


class MeResponse(ApiModel):
    id: str
    email: str
    organization_id: str
    role: RoleSummary
    permissions: list[str]
    is_api_key: bool = False
    scopes: list[str] = []


class RoleCreate(ApiModel):
    name: str
    description: str | None = None
    level: int | None = None
    category: str | None = None


class RoleUpdate(ApiModel):
    name: str | None = None
    description: str | None = None
    level: int | None = None
    category: str | None = None
    is_super_admin: bool | None = None


class RoleRead(ApiModel):
    id: str
    organization_id: str
    name: str
    description: str | None = None
    level: int
    category: str | None = None
    is_system: bool
    is_super_admin: bool
    created_at: datetime


class RoleDetailRead(RoleRead):
    permissions: list[str] = []


class RolePermissionsAssign(ApiModel):
    permission_ids: list[str]


class PermissionCreate(ApiModel):
    resource: str
    action: str
    description: str | None = None

    @field_validator("resource", "action")
    @classmethod
    def _no_separator(cls, value: str) -> str:
        value = value.strip()
        if not value or ":" in value:
            raise ValueError("must be non-empty and must not contain ':'")
        return value


class PermissionRead(ApiModel):
    id: str
    resource: str
    action: str
    description: str | None = None


class UserCreate(ApiModel):
    email: EmailAddress
    password: StrongPassword
    first_name: str
    last_name: str
    role_id: str


class UserUpdate(ApiModel):
    first_name: str | None = None
    last_name: str | None = None
    role_id: str | None = None
    is_active: bool | None = None


class UserRead(ApiModel):
    id: str
    organization_id: str
    role_id: str
    email: str
    first_name: str
    last_name: str
    is_active: bool
    created_at: datetime


class AccessSummary(ApiModel):
    """What the current user's role lets them do, as seen by the evaluator."""

    role: str
    level: int
    category: str | None = None
    permissions: list[str]
    has_financial_access: bool
    can_approve: bool
    can_manage: bool


class ApiKeyCreate(ApiModel):
    name: str
    scopes: list[str] = []


class ApiKeyRead(ApiModel):
    id: str
    name: str
    prefix: str
    scopes: list[str]
    last_used_at: datetime | None = None
    created_at: datetime


class ApiKeyCreated(ApiKeyRead):
    key: str


class AccountCreate(ApiModel):
    code: str
    name: str
    balance: Decimal = Decimal("0")


class AccountRead(ApiModel):
    id: str
    organization_id: str
    code: str
    name: str
    balance: Decimal
    created_at: datetime


class DispatchCreate(ApiModel):
    recipient_id: str
    subject: str
    body: str


class DispatchRead(ApiModel):
    id: str
    organization_id: str
    sender_id: str
    recipient_id: str
    subject: str
    body: str
    created_at: datetime
