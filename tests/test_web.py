"""Tests for the Flask API."""

from __future__ import annotations

import os

import pytest

from conftest import PASSWORD, device_hash
from devicebind.client import DeviceClient, raise_for_error
from devicebind.core.auth.janitor import TokenJanitor
from devicebind.core.device.device_hash import DeviceHashGenerator
from devicebind.core.errors import ConflictError, ErrorCode
from devicebind.web import app as web_app
from devicebind.web import build_app_from_env, create_app, shutdown_app


LAPTOP = device_hash("laptop")
DESKTOP = device_hash("desktop")


@pytest.fixture
def app(authority):
    app = create_app(authority)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def register(client, clock, username="alice", device=LAPTOP):
    return client.post("/api/auth/register", json={
        "username": username,
        "email": f"{username}@example.com",
        "password": PASSWORD,
        "deviceHash": device,
        "deviceTimestamp": clock.millis(),
    })


def login(client, clock, username="alice", device=LAPTOP, password=PASSWORD):
    return client.post("/api/auth/login", json={
        "username": username,
        "password": password,
        "deviceHash": device,
        "deviceTimestamp": clock.millis(),
    })


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def test_register_returns_token(client, clock):
    response = register(client, clock)

    assert response.status_code == 201
    body = response.get_json()
    assert body["user"]["username"] == "alice"
    assert body["token"]
    assert "passwordHash" not in body["user"]


def test_register_on_claimed_device(client, clock):
    register(client, clock)

    response = register(client, clock, username="bob")

    assert response.status_code == 409
    assert response.get_json()["code"] == "DEVICE_ALREADY_REGISTERED"


def test_missing_device_hash(client):
    response = client.post("/api/auth/login", json={"username": "alice", "password": PASSWORD})

    assert response.status_code == 400
    assert response.get_json()["code"] == "DEVICE_HASH_REQUIRED"


def test_non_object_body(client):
    response = client.post("/api/auth/login", json=["alice"])

    assert response.status_code == 400
    assert response.get_json()["code"] == "INVALID_INPUT"


def test_login_conflict_and_recovery(client, clock):
    first = register(client, clock).get_json()["token"]

    conflict = login(client, clock, device=DESKTOP)
    assert conflict.status_code == 409
    body = conflict.get_json()
    assert body["code"] == "ACCOUNT_ACTIVE_ON_OTHER_DEVICE"
    assert body["category"] == "conflict"

    evicted = client.post("/api/auth/logout-other-devices", json={
        "username": "alice",
        "password": PASSWORD,
        "deviceHash": DESKTOP,
        "deviceTimestamp": clock.millis(),
    })
    assert evicted.status_code == 200
    assert evicted.get_json()["invalidatedSessions"] == 1

    assert client.get("/api/auth/verify", headers=auth(first)).status_code == 401
    assert login(client, clock, device=DESKTOP).status_code == 200


def test_logout_other_devices_with_token(client, clock):
    token = register(client, clock).get_json()["token"]

    response = client.post(
        "/api/auth/logout-other-devices",
        json={"deviceHash": LAPTOP},
        headers=auth(token),
    )

    assert response.status_code == 200
    assert response.get_json()["invalidatedSessions"] == 0
    assert client.get("/api/auth/verify", headers=auth(token)).status_code == 200


def test_wrong_password(client, clock):
    register(client, clock)

    response = login(client, clock, password="Wrong1234")

    assert response.status_code == 401
    assert response.get_json()["code"] == "INVALID_CREDENTIALS"


def test_stale_device_hash(client, clock):
    register(client, clock)

    response = client.post("/api/auth/login", json={
        "username": "alice",
        "password": PASSWORD,
        "deviceHash": LAPTOP,
        "deviceTimestamp": clock.millis() - 10 * 60 * 1000,
    })

    assert response.status_code == 400
    assert response.get_json()["code"] == "STALE_DEVICE_HASH"


def test_verify_and_logout(client, clock):
    token = register(client, clock).get_json()["token"]

    verified = client.get("/api/auth/verify", headers=auth(token))
    assert verified.status_code == 200
    assert verified.get_json()["valid"] is True

    assert client.post("/api/auth/logout", headers=auth(token)).status_code == 200

    rejected = client.get("/api/auth/verify", headers=auth(token))
    assert rejected.status_code == 401
    assert rejected.get_json()["code"] == "TOKEN_INVALID"


def test_missing_token(client):
    response = client.get("/api/auth/verify")

    assert response.status_code == 401
    assert response.get_json()["code"] == "TOKEN_REQUIRED"


def test_force_logout(client, clock):
    token = register(client, clock).get_json()["token"]

    response = client.post("/api/auth/force-logout", headers=auth(token))

    assert response.get_json()["invalidatedSessions"] == 1
    assert login(client, clock, device=DESKTOP).status_code == 200


def test_sessions_listing(client, clock):
    token = register(client, clock).get_json()["token"]

    sessions = client.get("/api/auth/sessions", headers=auth(token)).get_json()["sessions"]

    assert len(sessions) == 1
    assert sessions[0]["isCurrent"] is True
    assert "..." in sessions[0]["deviceId"]


def test_deactivate_and_reactivate(client, clock):
    token = register(client, clock).get_json()["token"]

    assert client.post("/api/auth/deactivate", headers=auth(token)).status_code == 200

    inactive = login(client, clock)
    assert inactive.status_code == 403
    assert inactive.get_json()["code"] == "ACCOUNT_INACTIVE"

    reactivated = client.post("/api/auth/reactivate", json={"username": "alice", "password": PASSWORD})
    assert reactivated.status_code == 200

    again = client.post("/api/auth/reactivate", json={"username": "alice", "password": PASSWORD})
    assert again.status_code == 404


def test_profile_and_password(client, clock):
    token = register(client, clock).get_json()["token"]

    profile = client.get("/api/users/profile", headers=auth(token)).get_json()
    assert profile["user"]["email"] == "alice@example.com"

    updated = client.put("/api/users/profile", json={"email": "new@example.com"}, headers=auth(token))
    assert updated.get_json()["user"]["email"] == "new@example.com"

    assert client.put("/api/users/profile", json={}, headers=auth(token)).status_code == 400

    changed = client.put(
        "/api/users/password",
        json={"currentPassword": PASSWORD, "newPassword": "Better456"},
        headers=auth(token),
    )
    assert changed.status_code == 200
    assert client.get("/api/users/profile", headers=auth(token)).status_code == 401


def test_device_info_and_delete(client, clock):
    token = register(client, clock).get_json()["token"]

    info = client.get("/api/users/device/info", headers=auth(token)).get_json()
    assert info["activeDevices"] == 1

    deleted = client.delete("/api/users/account", json={"password": PASSWORD}, headers=auth(token))
    assert deleted.status_code == 200
    assert login(client, clock).status_code == 401


def test_health(client, clock):
    register(client, clock)

    body = client.get("/api/auth/health").get_json()

    assert body["status"] == "healthy"
    assert body["devices"]["live_tokens"] == 1


def test_cors_preflight(client):
    response = client.options("/api/auth/login")

    assert response.status_code == 200
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert "Authorization" in response.headers["Access-Control-Allow-Headers"]


def test_client_round_trip(client, clock, binding_store):
    device = DeviceClient(binding_store, DeviceHashGenerator(binding_store, clock_ms=clock.millis))
    device.bootstrap()

    registered = client.post(
        "/api/auth/register",
        json=device.register_payload("alice", "alice@example.com", PASSWORD),
    )
    assert registered.status_code == 201

    # Every attempt hashes a new timestamp, so the live session blocks a re-login
    clock.advance(seconds=1)
    other = client.post("/api/auth/login", json=device.login_payload("alice", PASSWORD))
    with pytest.raises(ConflictError) as excinfo:
        raise_for_error(other.get_json())
    assert excinfo.value.code is ErrorCode.ACCOUNT_ACTIVE_ON_OTHER_DEVICE


class ClosingStore:
    def __init__(self):
        self.closed = 0

    def close(self):
        self.closed += 1


def test_shutdown_stops_janitor_and_closes_store(authority, store, clock):
    janitor = TokenJanitor(store, interval=60, clock=clock)
    app = create_app(authority, janitor=janitor)
    closing = ClosingStore()
    app.extensions[web_app.STORE_KEY] = closing
    assert janitor.running

    shutdown_app(app)
    shutdown_app(app)

    assert not janitor.running
    assert closing.closed == 1


def test_build_app_from_env_registers_shutdown(monkeypatch, tmp_path):
    for key in list(os.environ):
        if key.startswith("DEVICEBIND_") or key == "DATABASE_URL":
            monkeypatch.delenv(key)
    monkeypatch.setenv("DEVICEBIND_PATHS__DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("DEVICEBIND_PATHS__LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("DEVICEBIND_TOKEN_SECRET", "t" * 32)
    monkeypatch.setenv("DEVICEBIND_DEVICE_SALT", "salt")
    monkeypatch.setattr(web_app, "configure_from_config", lambda *args: None)
    registered = []
    monkeypatch.setattr(web_app.atexit, "register", lambda func, *args: registered.append((func, args)))

    app = build_app_from_env()
    janitor = app.extensions[web_app.JANITOR_KEY]

    assert registered == [(shutdown_app, (app,))]
    assert janitor.running
    assert web_app.STORE_KEY in app.extensions

    shutdown_app(app)
    assert not janitor.running
    assert web_app.STORE_KEY not in app.extensions
