from __future__ import annotations

from collections.abc import Generator
from pathlib import Path
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from erp_api import main as app_main
from erp_api.infra import db, hashing, redis_state
from erp_api.services import auth_service as auth_service_module

PASSWORD = "Str0ng!Pass"


class FakeRedis:
    def __init__(self) -> None:
        self.counters: dict[str, int] = {}
        self.ttls: dict[str, int] = {}
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise RedisConnectionError("redis unavailable")

    def incr(self, key: str) -> int:
        self._check()
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    def expire(self, key: str, seconds: int) -> bool:
        self._check()
        self.ttls[key] = seconds
        return True

    def ping(self) -> bool:
        self._check()
        return True


@pytest.fixture()
def fake_redis(monkeypatch: pytest.MonkeyPatch) -> FakeRedis:
    fake = FakeRedis()
    monkeypatch.setattr(redis_state, "get_redis", lambda: fake)
    return fake


@pytest.fixture()
def test_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Engine:
    db_path = tmp_path / "erp_test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(engine)
    monkeypatch.setattr(db, "engine", engine)
    monkeypatch.setattr(hashing, "PASSWORD_HASH_ITERATIONS", 1000)
    monkeypatch.setattr(redis_state, "AUTH_RATE_LIMIT_PER_MINUTE", 1000)
    return engine


@pytest.fixture()
def client(test_engine: Engine, fake_redis: FakeRedis) -> Generator[TestClient, None, None]:
    test_client = TestClient(app_main.app)
    yield test_client
    test_client.close()


@pytest.fixture()
def reset_tokens(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    issued: list[str] = []
    monkeypatch.setattr(
        auth_service_module.auth_service,
        "reset_notifier",
        lambda _user, token: issued.append(token),
    )
    return issued


class ApiHelper:
    def __init__(self, client: TestClient) -> None:
        self.client = client

    @staticmethod
    def auth(token: str, org_id: str | None = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {token}"}
        if org_id is not None:
            headers["X-Org-Id"] = org_id
        return headers

    def register(
        self,
        email: str,
        *,
        first_name: str = "Ana",
        organization_name: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "email": email,
            "password": PASSWORD,
            "firstName": first_name,
            "lastName": "Owner",
        }
        if organization_name is not None:
            body["organizationName"] = organization_name
        response = self.client.post("/auth/register", json=body)
        assert response.status_code == 201, response.text
        return response.json()

    def login(self, email: str, password: str = PASSWORD, **kwargs: Any) -> httpx.Response:
        return self.client.post("/auth/login", json={"email": email, "password": password}, **kwargs)

    def login_token(self, email: str, password: str = PASSWORD) -> str:
        response = self.login(email, password)
        assert response.status_code == 200, response.text
        return response.json()["accessToken"]

    def permission_ids(self, token: str) -> dict[str, str]:
        response = self.client.get("/permissions", headers=self.auth(token))
        assert response.status_code == 200, response.text
        return {f"{item['resource']}:{item['action']}": item["id"] for item in response.json()}

    def create_role(self, token: str, name: str, permissions: list[str] | None = None, **fields: Any) -> dict[str, Any]:
        response = self.client.post("/roles", json={"name": name, **fields}, headers=self.auth(token))
        assert response.status_code == 201, response.text
        role = response.json()
        if permissions:
            ids = self.permission_ids(token)
            assigned = self.client.put(
                f"/roles/{role['id']}/permissions",
                json={"permissionIds": [ids[name] for name in permissions]},
                headers=self.auth(token),
            )
            assert assigned.status_code == 200, assigned.text
        return role

    def create_user(self, token: str, email: str, role_id: str) -> dict[str, Any]:
        response = self.client.post(
            "/users",
            json={
                "email": email,
                "password": PASSWORD,
                "firstName": "Team",
                "lastName": "Member",
                "roleId": role_id,
            },
            headers=self.auth(token),
        )
        assert response.status_code == 201, response.text
        return response.json()

    def member_token(
        self,
        admin_token: str,
        email: str,
        role_name: str,
        permissions: list[str] | None = None,
        **role_fields: Any,
    ) -> tuple[str, dict[str, Any]]:
        role = self.create_role(admin_token, role_name, permissions, **role_fields)
        user = self.create_user(admin_token, email, role["id"])
        return self.login_token(email), user


@pytest.fixture()
def api(client: TestClient) -> ApiHelper:
    return ApiHelper(client)
