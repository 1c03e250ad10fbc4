"""
Tests for the User Service: registration, login, token validation and profiles.
"""

import pytest
from fastapi.testclient import TestClient

from shared.messaging import MessageBroker
from shared.registry import ServiceRegistry
from shared.test_helpers import FakeAmqpServer
from service_users.app.main import create_app
from service_users.app.security import TokenIssuer, hash_password, verify_password


@pytest.fixture
def amqp():
    return FakeAmqpServer()


@pytest.fixture
def registry(tmp_path):
    return ServiceRegistry(str(tmp_path / "registry.json"))


@pytest.fixture
def client(tmp_path, amqp, registry):
    app = create_app(
        data_dir=str(tmp_path / "users"),
        registry=registry,
        broker=MessageBroker("amqp://test", connector=amqp.connect),
        password_hash_rounds=4,
    )
    with TestClient(app) as test_client:
        yield test_client


def register(client, username="maria", email="maria@example.com", password="secret"):
    return client.post("/auth/register", json={
        "email": email,
        "username": username,
        "password": password,
        "firstName": "Maria",
        "lastName": "Silva",
    })


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestSecurity:

    def test_password_round_trip(self):
        hashed = hash_password("admin123", rounds=4)
        assert hashed != "admin123"
        assert verify_password("admin123", hashed)
        assert not verify_password("wrong", hashed)

    def test_token_claims(self):
        issuer = TokenIssuer("user-secret", expires_hours=24)
        token = issuer.issue({"id": "u1", "email": "a@b.c", "username": "a", "role": "user"})
        claims = issuer.decode(token)
        assert claims["id"] == "u1"
        assert claims["role"] == "user"

    def test_token_signed_with_other_secret_rejected(self):
        token = TokenIssuer("other").issue({"id": "u1", "email": "a", "username": "a", "role": "user"})
        with pytest.raises(Exception) as exc_info:
            TokenIssuer("user-secret").decode(token)
        assert exc_info.value.status_code == 401


class TestRegistration:

    def test_register_returns_user_and_token(self, client, amqp):
        response = register(client)

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["user"]["username"] == "maria"
        assert data["user"]["role"] == "user"
        assert "password" not in data["user"]
        assert data["token"]

        events = [e for e in amqp.published if e["routing_key"] == "user.created"]
        assert events[0]["exchange"] == "user_events"
        assert events[0]["payload"]["id"] == data["user"]["id"]

    def test_duplicates_conflict(self, client):
        register(client)
        assert register(client, username="other").status_code == 409
        assert register(client, email="other@example.com").status_code == 409

    def test_missing_fields(self, client):
        response = client.post("/auth/register", json={"email": "x@example.com"})
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_service_registered_on_startup(self, client, registry):
        assert registry.discover("user-service").url == "http://localhost:3001"

    def test_heartbeat_reregisters_after_loss(self, client, registry):
        registry.unregister("user-service")

        service = client.app.state.service
        assert client.portal.call(service.heartbeat)
        assert registry.discover("user-service").url == "http://localhost:3001"


class TestLogin:

    def test_login_by_username_or_email(self, client):
        register(client)
        for identifier in ("maria", "MARIA@example.com"):
            response = client.post("/auth/login", json={"identifier": identifier, "password": "secret"})
            assert response.status_code == 200
            assert response.json()["data"]["token"]

    def test_bad_credentials(self, client):
        register(client)
        response = client.post("/auth/login", json={"identifier": "maria", "password": "nope"})
        assert response.status_code == 401
        assert response.json()["code"] == "AUTHENTICATION_ERROR"

    def test_seeded_admin_can_log_in(self, client):
        response = client.post("/auth/login", json={"identifier": "admin@microservices.com",
                                                    "password": "admin123"})
        assert response.status_code == 200
        assert response.json()["data"]["user"]["role"] == "admin"

    def test_gateway_relative_path(self, client):
        register(client)
        response = client.post("/login", json={"identifier": "maria", "password": "secret"})
        assert response.status_code == 200


class TestValidation:

    def test_validate_token(self, client):
        token = register(client).json()["data"]["token"]

        response = client.post("/auth/validate", json={"token": token})

        assert response.status_code == 200
        assert response.json()["data"]["user"]["username"] == "maria"

    def test_invalid_token(self, client):
        response = client.post("/auth/validate", json={"token": "garbage"})
        assert response.status_code == 401
        assert response.json()["success"] is False

    def test_missing_token(self, client):
        assert client.post("/auth/validate", json={}).status_code == 400


class TestProfiles:

    def _admin_token(self, client):
        return client.post("/auth/login", json={"identifier": "admin",
                                                "password": "admin123"}).json()["data"]["token"]

    def test_users_requires_token(self, client):
        assert client.get("/users").status_code == 401

    def test_list_users_paginated(self, client):
        register(client)
        response = client.get("/users", params={"limit": 1}, headers=bearer(self._admin_token(client)))

        assert response.status_code == 200
        body = response.json()
        assert len(body["data"]) == 1
        assert body["pagination"]["total"] == 2
        assert body["pagination"]["pages"] == 2

    def test_profile_access_is_self_or_admin(self, client):
        maria = register(client).json()["data"]
        joao = register(client, username="joao", email="joao@example.com").json()["data"]

        own = client.get(f"/users/{maria['user']['id']}", headers=bearer(maria["token"]))
        assert own.status_code == 200

        other = client.get(f"/users/{joao['user']['id']}", headers=bearer(maria["token"]))
        assert other.status_code == 403

        admin = client.get(f"/{joao['user']['id']}", headers=bearer(self._admin_token(client)))
        assert admin.status_code == 200

    def test_update_profile_publishes(self, client, amqp):
        maria = register(client).json()["data"]

        response = client.put(f"/users/{maria['user']['id']}", headers=bearer(maria["token"]),
                              json={"firstName": "Mariana", "currency": "USD"})

        assert response.status_code == 200
        user = response.json()["data"]
        assert user["firstName"] == "Mariana"
        assert user["preferences"] == {"defaultStore": "Main", "currency": "USD"}
        assert any(e["routing_key"] == "user.updated" for e in amqp.published)

    def test_search(self, client):
        maria = register(client).json()["data"]
        response = client.get("/search", params={"q": "SILVA"}, headers=bearer(maria["token"]))
        assert response.status_code == 200
        assert [u["username"] for u in response.json()["data"]["results"]] == ["maria"]
