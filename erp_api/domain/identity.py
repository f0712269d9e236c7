from __future__ import annotations

from dataclasses import dataclass, field

from erp_api.domain.roles import RoleInfo


@dataclass(frozen=True)
class Identity:
    """The authenticated caller, rebuilt from storage on every request."""

    id: str
    email: str
    organization_id: str
    role: RoleInfo
    session_id: str | None = None
    is_api_key: bool = False
    scopes: tuple[str, ...] = field(default_factory=tuple)
    api_key_id: str | None = None

    @property
    def is_super_admin(self) -> bool:
        return self.role.is_super_admin
