from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from conftest import PASSWORD, ApiHelper, FakeRedis
from erp_api import main as app_main
from erp_api.domain.errors import AuthenticationFailure
from erp_api.domain.models import AuditLog, AuthSession, Organization, User
from erp_api.domain.state_machine import SessionState
from erp_api.infra import auth, redis_state
from erp_api.services.auth_service import auth_service


def _audit_rows(engine: Engine, action: str) -> list[AuditLog]:
    with Session(engine) as session:
        return list(session.exec(select(AuditLog).where(col(AuditLog.action) == action)).all())


def _auth_session(engine: Engine, session_id: str) -> AuthSession:
    with Session(engine) as session:
        row = session.get(AuthSession, session_id)
        assert row is not None
        return row


def test_register_creates_organization_admin_and_active_session(api: ApiHelper, test_engine: Engine) -> None:
    body = api.register("Ana@Example.com", organization_name="Acme Corp")

    user = body["user"]
    assert body["accessToken"]
    assert body["refreshToken"]
    assert body["expiresIn"] == auth.JWT_ACCESS_EXPIRES_MIN * 60
    assert user["email"] == "ana@example.com"
    assert user["role"] == "ADMIN"
    assert {"resource": "*", "action": "*"} in user["permissions"]

    claims = auth.decode_access_token(body["accessToken"])
    assert claims["tenant_id"] == user["organizationId"]
    assert _auth_session(test_engine, claims["sid"]).state == SessionState.ACTIVE

    with Session(test_engine) as session:
        organization = session.get(Organization, user["organizationId"])
        assert organization is not None
        assert organization.name == "Acme Corp"
        assert organization.slug.startswith("acme-corp-")

    audits = _audit_rows(test_engine, "REGISTER_ORG")
    assert [row.organization_id for row in audits] == [user["organizationId"]]


def test_register_defaults_organization_name(api: ApiHelper, test_engine: Engine) -> None:
    body = api.register("bruno@example.com", first_name="Bruno")
    with Session(test_engine) as session:
        organization = session.get(Organization, body["user"]["organizationId"])
        assert organization is not None
        assert organization.name == "Bruno's Organization"


def test_register_rejects_joining_existing_organization(client: TestClient) -> None:
    response = client.post(
        "/auth/register",
        json={
            "email": "eve@example.com",
            "password": PASSWORD,
            "firstName": "Eve",
            "lastName": "Intruder",
            "organizationId": "some-org",
        },
    )
    assert response.status_code == 400
    assert response.json()["success"] is False


def test_register_validates_password_strength(client: TestClient) -> None:
    response = client.post(
        "/auth/register",
        json={"email": "weak@example.com", "password": "short", "firstName": "W", "lastName": "K"},
    )
    assert response.status_code == 400
    assert any(item.startswith("password:") for item in response.json()["message"])


def test_login_failures_are_indistinguishable(api: ApiHelper, test_engine: Engine) -> None:
    api.register("ana@example.com")

    responses = [api.login("ana@example.com", "Wrong!Pass1") for _ in range(5)]
    responses.append(api.login("nobody@example.com"))

    assert {item.status_code for item in responses} == {401}
    assert {item.json()["message"] for item in responses} == {"Invalid credentials"}

    failures = _audit_rows(test_engine, "LOGIN_FAILED")
    assert len(failures) == 6
    for row in failures:
        assert row.user_id is None
        assert "password" not in row.details
        assert "Wrong!Pass1" not in str(row.details)


def test_login_is_case_insensitive_and_audited(api: ApiHelper, test_engine: Engine) -> None:
    api.register("ana@example.com")
    response = api.login("  ANA@example.com ")
    assert response.status_code == 200
    sid = auth.decode_access_token(response.json()["accessToken"])["sid"]

    successes = _audit_rows(test_engine, "LOGIN_SUCCESS")
    assert [row.details["session_id"] for row in successes] == [sid]


def test_disabled_account_cannot_log_in(api: ApiHelper, client: TestClient) -> None:
    admin = api.register("ana@example.com")["accessToken"]
    member_token, member = api.member_token(admin, "dev@example.com", "Developer")
    assert member_token

    response = client.patch(f"/users/{member['id']}", json={"isActive": False}, headers=api.auth(admin))
    assert response.status_code == 200

    denied = api.login("dev@example.com")
    assert denied.status_code == 401
    assert denied.json()["message"] == "Account is disabled"


def test_refresh_rotates_session_and_rejects_old_token(
    api: ApiHelper, client: TestClient, test_engine: Engine
) -> None:
    first = api.register("ana@example.com")
    old_sid = auth.decode_access_token(first["accessToken"])["sid"]

    rotated = client.post("/auth/refresh", json={"refreshToken": first["refreshToken"]})
    assert rotated.status_code == 200
    pair = rotated.json()
    assert pair["refreshToken"] != first["refreshToken"]

    new_sid = auth.decode_access_token(pair["accessToken"])["sid"]
    assert auth.verify_refresh_token(pair["refreshToken"])["sid"] == new_sid
    new_session = _auth_session(test_engine, new_sid)
    assert new_session.state == SessionState.ACTIVE
    assert new_session.rotated_from_id == old_sid
    assert _auth_session(test_engine, old_sid).state == SessionState.REVOKED

    replay = client.post("/auth/refresh", json={"refreshToken": first["refreshToken"]})
    assert replay.status_code == 401
    assert replay.json()["message"] == "Session invalid or expired"

    me = client.get("/auth/me", headers=api.auth(pair["accessToken"]))
    assert me.status_code == 200


def test_refresh_token_with_mismatched_digest_revokes_session(
    api: ApiHelper, client: TestClient, test_engine: Engine
) -> None:
    body = api.register("ana@example.com")
    claims = auth.decode_access_token(body["accessToken"])
    # Correctly signed for the same session, but not the token the session stored.
    stolen = auth.generate_tokens(
        auth.AccessClaims(
            user_id=claims["sub"],
            email=claims["email"],
            role=claims["role"],
            session_id=claims["sid"],
            tenant_id=claims["tenant_id"],
        )
    ).refresh_token

    response = client.post("/auth/refresh", json={"refreshToken": stolen})
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid refresh token (reuse)"
    assert _auth_session(test_engine, claims["sid"]).state == SessionState.REVOKED
    assert len(_audit_rows(test_engine, "REFRESH_TOKEN_REUSE")) == 1

    legit = client.post("/auth/refresh", json={"refreshToken": body["refreshToken"]})
    assert legit.status_code == 401


def test_refresh_rejects_garbage_and_access_tokens(api: ApiHelper, client: TestClient) -> None:
    body = api.register("ana@example.com")
    garbage = client.post("/auth/refresh", json={"refreshToken": "garbage"})
    assert garbage.status_code == 401
    assert garbage.json()["message"] == "Invalid refresh token"

    wrong_kind = client.post("/auth/refresh", json={"refreshToken": body["accessToken"]})
    assert wrong_kind.status_code == 401

    empty = client.post("/auth/refresh", json={"refreshToken": ""})
    assert empty.status_code == 401
    assert empty.json()["message"] == "Refresh token is required"


def test_sequential_double_refresh_succeeds_once(api: ApiHelper, client: TestClient) -> None:
    body = api.register("ana@example.com")
    results = [client.post("/auth/refresh", json={"refreshToken": body["refreshToken"]}) for _ in range(2)]
    assert [item.status_code for item in results] == [200, 401]


def test_concurrent_consume_has_exactly_one_winner(api: ApiHelper, test_engine: Engine) -> None:
    body = api.register("ana@example.com")
    sid = auth.verify_refresh_token(body["refreshToken"])["sid"]
    stored_hash = _auth_session(test_engine, sid).refresh_token_hash
    barrier = threading.Barrier(5)

    def _consume() -> bool:
        barrier.wait()
        return auth_service.sessions.consume_session(sid, stored_hash)

    with ThreadPoolExecutor(max_workers=5) as pool:
        outcomes = list(pool.map(lambda _: _consume(), range(5)))

    assert outcomes.count(True) == 1
    assert _auth_session(test_engine, sid).state == SessionState.REVOKED


def test_concurrent_refresh_requests_rotate_once(api: ApiHelper) -> None:
    body = api.register("ana@example.com")
    sid = auth.verify_refresh_token(body["refreshToken"])["sid"]
    barrier = threading.Barrier(4)

    with TestClient(app_main.app, raise_server_exceptions=False) as racer:

        def _refresh(_: int) -> int:
            barrier.wait()
            return racer.post("/auth/refresh", json={"refreshToken": body["refreshToken"]}).status_code

        with ThreadPoolExecutor(max_workers=4) as pool:
            statuses = sorted(pool.map(_refresh, range(4)))

    assert statuses == [200, 401, 401, 401]
    user_id = body["user"]["id"]
    rotated = [row for row in auth_service.sessions.list_user_sessions(user_id) if row.rotated_from_id == sid]
    assert len(rotated) == 1
    assert rotated[0].state == SessionState.ACTIVE


def test_revoked_session_cannot_be_activated(api: ApiHelper, test_engine: Engine) -> None:
    body = api.register("ana@example.com")
    sid = auth.verify_refresh_token(body["refreshToken"])["sid"]
    sessions = auth_service.sessions
    assert sessions.revoke_session(sid) is True

    with pytest.raises(AuthenticationFailure):
        sessions.update_session_token(sid, "new-digest")
    with pytest.raises(AuthenticationFailure):
        sessions.update_session_token("missing-session", "new-digest")
    assert _auth_session(test_engine, sid).state == SessionState.REVOKED


def test_login_fails_when_new_session_is_revoked_before_activation(
    api: ApiHelper, monkeypatch: pytest.MonkeyPatch
) -> None:
    api.register("ana@example.com")
    sessions = auth_service.sessions
    create_session = sessions.create_session

    def _create_then_revoke(**kwargs: Any) -> AuthSession:
        row = create_session(**kwargs)
        sessions.revoke_session(row.id)
        return row

    monkeypatch.setattr(sessions, "create_session", _create_then_revoke)
    response = api.login("ana@example.com")
    assert response.status_code == 401
    assert response.json()["message"] == "Session invalid or expired"


def test_logout_is_idempotent(api: ApiHelper, client: TestClient, test_engine: Engine) -> None:
    body = api.register("ana@example.com")
    sid = auth.verify_refresh_token(body["refreshToken"])["sid"]

    for _ in range(2):
        response = client.post("/auth/logout", json={"refreshToken": body["refreshToken"]})
        assert response.status_code == 200
        assert response.json() is True
    assert _auth_session(test_engine, sid).state == SessionState.REVOKED

    garbage = client.post("/auth/logout", json={"refreshToken": "not-a-token"})
    assert garbage.status_code == 200
    assert garbage.json() is True

    refresh = client.post("/auth/refresh", json={"refreshToken": body["refreshToken"]})
    assert refresh.status_code == 401


def test_forgot_password_never_reveals_accounts(
    api: ApiHelper, client: TestClient, reset_tokens: list[str]
) -> None:
    api.register("ana@example.com")

    unknown = client.post("/auth/forgot-password", json={"email": "ghost@example.com"})
    known = client.post("/auth/forgot-password", json={"email": "ana@example.com"})

    assert unknown.status_code == known.status_code == 200
    assert unknown.json() is True
    assert known.json() is True
    assert len(reset_tokens) == 1


def test_password_reset_flow(
    api: ApiHelper, client: TestClient, reset_tokens: list[str], test_engine: Engine
) -> None:
    body = api.register("ana@example.com")
    client.post("/auth/forgot-password", json={"email": "ana@example.com"})
    token = reset_tokens[-1]

    reset = client.post("/auth/reset-password", json={"token": token, "password": "N3w!Password"})
    assert reset.status_code == 200
    assert reset.json() is True

    assert api.login("ana@example.com").status_code == 401
    assert api.login("ana@example.com", "N3w!Password").status_code == 200

    # Every session alive before the reset is gone.
    stale = client.post("/auth/refresh", json={"refreshToken": body["refreshToken"]})
    assert stale.status_code == 401

    reused = client.post("/auth/reset-password", json={"token": token, "password": "An0ther!Pass"})
    assert reused.status_code == 401
    assert reused.json()["message"] == "Token already used"
    assert api.login("ana@example.com", "An0ther!Pass").status_code == 401
    assert api.login("ana@example.com", "N3w!Password").status_code == 200

    assert len(_audit_rows(test_engine, "PASSWORD_RESET_SUCCESS")) == 1


def test_reset_rejects_foreign_tokens(api: ApiHelper, client: TestClient, test_engine: Engine) -> None:
    body = api.register("ana@example.com")
    response = client.post(
        "/auth/reset-password",
        json={"token": body["refreshToken"], "password": "N3w!Password"},
    )
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid or expired reset token"

    with Session(test_engine) as session:
        user = session.exec(select(User).where(col(User.email) == "ana@example.com")).one()
    unissued = auth.generate_reset_token(user.id)
    response = client.post("/auth/reset-password", json={"token": unissued, "password": "N3w!Password"})
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid or expired reset token"


def test_login_is_rate_limited(
    api: ApiHelper, monkeypatch: pytest.MonkeyPatch, fake_redis: FakeRedis
) -> None:
    api.register("ana@example.com")
    monkeypatch.setattr(redis_state, "AUTH_RATE_LIMIT_PER_MINUTE", 3)

    statuses = [api.login("ana@example.com").status_code for _ in range(4)]
    assert statuses == [200, 200, 200, 429]
    assert api.login("ana@example.com").json()["message"] == "Too many requests"
    assert all(ttl == redis_state.RATE_LIMIT_WINDOW_SECONDS for ttl in fake_redis.ttls.values())


def test_rate_limiter_fails_open_without_redis(
    api: ApiHelper, monkeypatch: pytest.MonkeyPatch, fake_redis: FakeRedis
) -> None:
    api.register("ana@example.com")
    monkeypatch.setattr(redis_state, "AUTH_RATE_LIMIT_PER_MINUTE", 1)
    fake_redis.available = False

    statuses = [api.login("ana@example.com").status_code for _ in range(3)]
    assert statuses == [200, 200, 200]


def test_me_describes_the_caller(api: ApiHelper, client: TestClient) -> None:
    body = api.register("ana@example.com")
    response = client.get("/auth/me", headers=api.auth(body["accessToken"]))
    assert response.status_code == 200
    me = response.json()
    assert me["email"] == "ana@example.com"
    assert me["organizationId"] == body["user"]["organizationId"]
    assert me["role"]["name"] == "ADMIN"
    assert me["role"]["isSuperAdmin"] is True
    assert me["permissions"] == ["*:*"]
    assert me["isApiKey"] is False

    anonymous = client.get("/auth/me")
    assert anonymous.status_code == 401
    assert anonymous.json()["message"] == "Unauthorized"
