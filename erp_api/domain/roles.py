from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum


class RoleCategory(StrEnum):
    SUPERADMIN = "SUPERADMIN"
    EXECUTIVE = "EXECUTIVE"
    FINANCIAL = "FINANCIAL"
    PROJECT_MANAGEMENT = "PROJECT_MANAGEMENT"
    DEVELOPMENT = "DEVELOPMENT"
    OPERATIONS = "OPERATIONS"


SYSTEM_ADMIN_ROLE_NAME = "ADMIN"
SYSTEM_ADMIN_ROLE_LEVEL = 100

LEVEL_APPROVE = 70
LEVEL_MANAGE = 60


def normalize_role_name(name: str | None) -> str:
    if not name:
        return ""
    return re.sub(r"[\s_]+", " ", name).strip().upper()


def _names(*items: str) -> frozenset[str]:
    return frozenset(normalize_role_name(item) for item in items)


# Single source of truth for every role-name allow-list used by the guards.
SUPERADMIN_ROLES = _names(
    "SUPERADMIN",
    "SUPER ADMIN",
    "SUPERADMINISTRATOR",
    "SUPER ADMINISTRATOR",
    "ADMINISTRATOR",
    "ADMIN",
)
C_LEVEL_ROLES = _names("CEO", "CFO", "CTO", "COO", "CCO", "OWNER")
FINANCIAL_ROLES = _names(
    "CONTADOR",
    "CONTADOR SENIOR",
    "ACCOUNTANT",
    "FINANCIAL MANAGER",
    "GERENTE FINANCIERO",
)
PROJECT_MANAGEMENT_ROLES = _names("PROJECT MANAGER", "PM", "SCRUM MASTER", "PRODUCT OWNER")
DEVELOPMENT_ROLES = _names("DEVELOPER", "DEV", "PROGRAMMER", "SOFTWARE ENGINEER", "ENGINEER")
OPERATIONS_ROLES = _names("OPERARIO", "OPERATOR", "EMPLOYEE", "WORKER", "SUPERVISOR")

EXECUTIVE_ROLES = SUPERADMIN_ROLES | C_LEVEL_ROLES
FINANCIAL_ACCESS_ROLES = EXECUTIVE_ROLES | FINANCIAL_ROLES
ROLE_MANAGEMENT_ROLES = SUPERADMIN_ROLES | _names("CEO")
DISPATCH_INBOX_ROLES = EXECUTIVE_ROLES | _names("GERENTE OPERACIONES")

ROLE_LEVELS: dict[str, int] = {
    **{name: 100 for name in SUPERADMIN_ROLES},
    **{name: 90 for name in C_LEVEL_ROLES},
    "CONTADOR": 70,
    "ACCOUNTANT": 70,
    "CONTADOR SENIOR": 75,
    "FINANCIAL MANAGER": 80,
    "GERENTE FINANCIERO": 80,
    "PROJECT MANAGER": 60,
    "PM": 60,
    "SCRUM MASTER": 55,
    "PRODUCT OWNER": 55,
    "MANAGER": 50,
    "GERENTE": 50,
    "GERENTE OPERACIONES": 50,
    **{name: 40 for name in DEVELOPMENT_ROLES},
    "OPERARIO": 20,
    "OPERATOR": 20,
    "EMPLOYEE": 20,
    "WORKER": 20,
    "SUPERVISOR": 25,
}


def default_role_level(name: str) -> int:
    return ROLE_LEVELS.get(normalize_role_name(name), 0)


def default_role_category(name: str) -> RoleCategory | None:
    normalized = normalize_role_name(name)
    if normalized in SUPERADMIN_ROLES:
        return RoleCategory.SUPERADMIN
    if normalized in C_LEVEL_ROLES:
        return RoleCategory.EXECUTIVE
    if normalized in FINANCIAL_ROLES:
        return RoleCategory.FINANCIAL
    if normalized in PROJECT_MANAGEMENT_ROLES:
        return RoleCategory.PROJECT_MANAGEMENT
    if normalized in DEVELOPMENT_ROLES:
        return RoleCategory.DEVELOPMENT
    if normalized in OPERATIONS_ROLES:
        return RoleCategory.OPERATIONS
    return None


@dataclass(frozen=True)
class RoleInfo:
    """Normalized role attached to every authenticated identity."""

    id: str
    name: str
    level: int
    category: str | None
    is_super_admin: bool = False

    @property
    def normalized_name(self) -> str:
        return normalize_role_name(self.name)

    def in_roles(self, allowed: frozenset[str]) -> bool:
        return self.is_super_admin or self.normalized_name in allowed

    @property
    def has_financial_access(self) -> bool:
        return self.in_roles(FINANCIAL_ACCESS_ROLES)
