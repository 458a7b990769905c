"""End-to-end tests for the HTTP surface over the memory store."""

import pytest
from fastapi.testclient import TestClient

from tenantauth import app as app_module
from tenantauth.service.runtime import get_runtime
from tenantauth.storage.models import Client

PASSWORD = "password123"


@pytest.fixture
def client():
    get_runtime().store.create_client(Client(id="c1", name="Client One", secret_hash="unused"))
    return TestClient(app_module.app)


def _register(client, email="alice@x.com", client_id="c1"):
    return client.post(
        "/v1/auth/register",
        json={"username": "alice", "email": email, "password": PASSWORD, "client_id": client_id},
    )


def _login(client, email="alice@x.com", password=PASSWORD, client_id="c1"):
    return client.post(
        "/v1/auth/login",
        json={"email": email, "password": password, "client_id": client_id},
    )


def test_register_returns_201(client):
    resp = _register(client)

    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    assert body["user_id"]
    assert body["error_code"] is None


def test_duplicate_registration_maps_to_409(client):
    _register(client)
    resp = _register(client, email="ALICE@x.com")

    assert resp.status_code == 409
    assert resp.json()["error_code"] == "already_exists"


def test_register_unknown_client_maps_to_400(client):
    resp = _register(client, client_id="nope")

    assert resp.status_code == 400
    assert resp.json()["error_code"] == "invalid_client"


def test_login_and_validate(client):
    _register(client)
    login = _login(client)

    assert login.status_code == 200
    body = login.json()
    assert body["token_type"] == "bearer"
    assert body["user"]["email"] == "alice@x.com"
    assert "password_hash" not in body["user"]

    resp = client.post("/v1/auth/validate", json={"access_token": body["access_token"]})
    assert resp.status_code == 200
    assert resp.json()["valid"] is True
    assert resp.json()["user_id"] == body["user"]["id"]


def test_login_records_user_agent_header(client):
    _register(client)
    client.post(
        "/v1/auth/login",
        json={"email": "alice@x.com", "password": PASSWORD, "client_id": "c1"},
        headers={"User-Agent": "integration-suite/1.0"},
    )

    store = get_runtime().store
    session = next(iter(store.sessions.values()))
    assert session.user_agent == "integration-suite/1.0"


def test_wrong_password_maps_to_401(client):
    _register(client)
    resp = _login(client, password="wrong-password")

    assert resp.status_code == 401
    assert resp.json()["error_code"] == "invalid_credentials"
    assert resp.json()["message"] == "Invalid credentials"


def test_unknown_email_matches_wrong_password(client):
    _register(client)
    unknown = _login(client, email="ghost@x.com")
    wrong = _login(client, password="wrong-password")

    assert unknown.status_code == wrong.status_code == 401
    assert unknown.json() == wrong.json()


def test_refresh_rotates_and_old_value_stops_working(client):
    _register(client)
    tokens = _login(client).json()

    first = client.post(
        "/v1/auth/refresh",
        json={"refresh_token": tokens["refresh_token"], "client_id": "c1"},
    )
    assert first.status_code == 200
    assert first.json()["refresh_token"] != tokens["refresh_token"]

    replay = client.post(
        "/v1/auth/refresh",
        json={"refresh_token": tokens["refresh_token"], "client_id": "c1"},
    )
    assert replay.status_code == 401
    assert replay.json()["error_code"] == "invalid_token"

    stale = client.post("/v1/auth/validate", json={"access_token": tokens["access_token"]})
    assert stale.status_code == 401
    assert stale.json()["valid"] is False


def test_logout_revokes_session(client):
    _register(client)
    tokens = _login(client).json()

    resp = client.post("/v1/auth/logout", json={"refresh_token": tokens["refresh_token"]})
    assert resp.status_code == 200
    assert resp.json()["success"] is True

    again = client.post("/v1/auth/logout", json={"refresh_token": tokens["refresh_token"]})
    assert again.status_code == 401

    check = client.post("/v1/auth/validate", json={"access_token": tokens["access_token"]})
    assert check.json()["valid"] is False


def test_password_change_flow(client):
    _register(client)
    tokens = _login(client).json()

    resp = client.post(
        "/v1/auth/password/change",
        json={
            "access_token": tokens["access_token"],
            "current_password": PASSWORD,
            "new_password": "new-password-456",
        },
    )
    assert resp.status_code == 200
    assert resp.json()["message"] == "Password changed successfully. Please log in again."

    assert _login(client).status_code == 401
    assert _login(client, password="new-password-456").status_code == 200


def test_profile_with_bearer_header(client):
    _register(client)
    tokens = _login(client).json()

    resp = client.get(
        "/v1/auth/profile", headers={"Authorization": f"Bearer {tokens['access_token']}"}
    )

    assert resp.status_code == 200
    assert resp.json()["user"]["username"] == "alice"


def test_profile_without_token_is_validation_error(client):
    resp = client.get("/v1/auth/profile")

    assert resp.status_code == 400
    assert resp.json()["message"] == "Access token is required"


def test_profile_with_garbage_token(client):
    resp = client.get("/v1/auth/profile", headers={"Authorization": "Bearer not.a.jwt"})

    assert resp.status_code == 401
    assert resp.json()["error_code"] == "invalid"


def test_missing_fields_become_validation_results(client):
    resp = client.post("/v1/auth/login", json={})

    assert resp.status_code == 400
    assert resp.json()["error_code"] == "validation_error"
    assert resp.json()["message"] == "Email, password, and client ID are required"


def test_malformed_body_returns_400(client):
    resp = client.post(
        "/v1/auth/login",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )

    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["error_code"] == "validation_error"
    assert body["message"] == "Invalid request body"


def test_unknown_route_uses_result_shape(client):
    resp = client.get("/v1/nope")

    assert resp.status_code == 404
    assert resp.json()["error_code"] == "not_found"


def test_healthz(client):
    resp = client.get("/healthz")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "serving"
    assert body["details"]["store_backend"] == "MemoryStore"


def test_request_id_is_echoed(client):
    resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})

    assert resp.headers["X-Request-ID"] == "req-123"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["Cache-Control"] == "no-store"


def test_request_id_generated_when_absent(client):
    resp = client.get("/healthz")
    assert resp.headers.get("X-Request-ID")
