from __future__ import annotations

import pytest

from erp_api.domain.permissions import (
    PermissionConfig,
    PermissionScope,
    check_scope,
    has_all_permissions,
    permission_matches,
    split_permission,
)
from erp_api.domain.roles import (
    FINANCIAL_ACCESS_ROLES,
    RoleCategory,
    RoleInfo,
    default_role_category,
    default_role_level,
    normalize_role_name,
)
from erp_api.domain.state_machine import SessionState, can_transition, is_valid_state


@pytest.mark.parametrize(
    "granted",
    [
        ["invoices:approve"],
        ["invoices:*"],
        ["*:approve"],
        ["*:*"],
    ],
)
def test_wildcard_grants_cover_required_permission(granted: list[str]) -> None:
    assert permission_matches(granted, "invoices:approve")


@pytest.mark.parametrize(
    "granted",
    [
        [],
        ["invoices:read"],
        ["payments:*"],
        ["*:read"],
        ["invoices"],
    ],
)
def test_non_matching_grants_are_denied(granted: list[str]) -> None:
    assert not permission_matches(granted, "invoices:approve")


def test_has_all_permissions_requires_every_item() -> None:
    granted = ["users:read", "accounts:*"]
    assert has_all_permissions(granted, ["users:read", "accounts:create"])
    assert not has_all_permissions(granted, ["users:read", "users:delete"])
    assert has_all_permissions(granted, [])


def test_split_permission_rejects_malformed_names() -> None:
    assert split_permission("users:read") == ("users", "read")
    with pytest.raises(ValueError):
        split_permission("users")
    with pytest.raises(ValueError):
        split_permission(":read")


def test_scope_checks() -> None:
    assert check_scope(PermissionScope.ALL, "u1")
    assert check_scope(PermissionScope.OWN, "u1", resource_owner_id="u1")
    assert not check_scope(PermissionScope.OWN, "u1", resource_owner_id="u2")
    assert not check_scope(PermissionScope.OWN, "u1")
    assert check_scope(PermissionScope.TEAM, "u1", resource_owner_id="u2", resource_team_ids=["u1"])
    assert check_scope(PermissionScope.TEAM, "u2", resource_owner_id="u2")
    assert not check_scope(PermissionScope.TEAM, "u3", resource_owner_id="u2", resource_team_ids=["u1"])
    assert not check_scope(PermissionScope.DEPARTMENT, "u1", resource_owner_id="u1")


def test_permission_config_name() -> None:
    assert PermissionConfig("dispatches", "read", PermissionScope.OWN).permission == "dispatches:read"


def test_role_names_are_normalized_once() -> None:
    assert normalize_role_name("  contador_senior ") == "CONTADOR SENIOR"
    assert normalize_role_name("Super   Admin") == "SUPER ADMIN"
    assert normalize_role_name(None) == ""
    assert "CONTADOR SENIOR" in FINANCIAL_ACCESS_ROLES


def test_role_defaults_from_catalog() -> None:
    assert default_role_level("cfo") == 90
    assert default_role_level("unknown role") == 0
    assert default_role_category("Contador") == RoleCategory.FINANCIAL
    assert default_role_category("developer") == RoleCategory.DEVELOPMENT
    assert default_role_category("intern") is None


def test_role_info_financial_access() -> None:
    accountant = RoleInfo(id="r1", name="contador", level=70, category="FINANCIAL")
    developer = RoleInfo(id="r2", name="Developer", level=40, category="DEVELOPMENT")
    flagged = RoleInfo(id="r3", name="Platform Owner", level=10, category=None, is_super_admin=True)
    assert accountant.has_financial_access
    assert not developer.has_financial_access
    assert flagged.has_financial_access


def test_session_state_machine() -> None:
    assert can_transition(SessionState.PENDING, SessionState.ACTIVE)
    assert can_transition(SessionState.ACTIVE, SessionState.REVOKED)
    assert not can_transition(SessionState.REVOKED, SessionState.ACTIVE)
    assert not can_transition(SessionState.ACTIVE, SessionState.PENDING)
    assert is_valid_state(SessionState.PENDING)
    assert not is_valid_state(SessionState.REVOKED)
