from fastapi.testclient import TestClient

from cyberdefense.main import create_app

from conftest import PASSWORD, auth_headers, make_settings, register


def test_register_returns_user_and_tokens(client):
    r = client.post("/api/auth/register", json={
        "firstName": "Alice", "lastName": "Smith", "email": "Alice@CyberLab.io", "password": PASSWORD,
    })
    assert r.status_code == 201
    body = r.json()
    assert body["success"] is True
    assert body["message"] == "User registered successfully"
    user = body["data"]["user"]
    assert user["email"] == "alice@cyberlab.io"
    assert user["firstName"] == "Alice"
    assert user["xp"] == 0 and user["streak"] == 0
    assert "passwordHash" not in user
    assert set(body["data"]["tokens"]) == {"accessToken", "refreshToken"}


def test_register_duplicate_email_conflicts(client, user):
    r = client.post("/api/auth/register", json={
        "firstName": "Alice", "lastName": "Again", "email": "ALICE@cyberlab.io", "password": PASSWORD,
    })
    assert r.status_code == 409
    assert r.json()["success"] is False
    assert r.json()["code"] == "CONFLICT_ERROR"


def test_login_updates_streak(client, user):
    r = client.post("/api/auth/login", json={"email": user["email"], "password": PASSWORD})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["user"]["streak"] == 1
    assert data["user"]["lastActivity"] is not None
    assert data["tokens"]["accessToken"]


def test_login_rejects_bad_credentials(client, user):
    r = client.post("/api/auth/login", json={"email": user["email"], "password": "Wr0ng!Pass"})
    assert r.status_code == 401
    assert r.json()["message"] == "Invalid email or password"

    r = client.post("/api/auth/login", json={"email": "nobody@cyberlab.io", "password": PASSWORD})
    assert r.status_code == 401
    assert r.json()["message"] == "Invalid email or password"


def test_me_requires_token(client, user):
    assert client.get("/api/auth/me").status_code == 401
    r = client.get("/api/auth/me", headers=auth_headers("not-a-jwt"))
    assert r.status_code == 401
    assert r.json()["message"] == "Invalid or expired token"

    r = client.get("/api/auth/me", headers=user["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["user"]["id"] == user["id"]


def test_refresh_token_cannot_be_used_as_access_token(client, user):
    r = client.get("/api/auth/me", headers=auth_headers(user["refresh"]))
    assert r.status_code == 401


def test_refresh_rotates_tokens(client, user):
    r = client.post("/api/auth/refresh", json={"refreshToken": user["refresh"]})
    assert r.status_code == 200
    tokens = r.json()["data"]["tokens"]
    assert tokens["refreshToken"] != user["refresh"]

    # The old refresh token is gone after rotation
    r = client.post("/api/auth/refresh", json={"refreshToken": user["refresh"]})
    assert r.status_code == 401
    assert r.json()["message"] == "Refresh token not found"

    r = client.post("/api/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert r.status_code == 200


def test_refresh_rejects_access_token(client, user):
    r = client.post("/api/auth/refresh", json={"refreshToken": user["access"]})
    assert r.status_code == 401
    assert r.json()["message"] == "Invalid refresh token"


def test_logout_revokes_refresh_token(client, user):
    r = client.post("/api/auth/logout", json={"refreshToken": user["refresh"]})
    assert r.status_code == 200
    assert r.json() == {"success": True, "message": "Logout successful"}

    r = client.post("/api/auth/refresh", json={"refreshToken": user["refresh"]})
    assert r.status_code == 401


def test_two_registrations_get_distinct_ids(client):
    a = register(client, email="one@cyberlab.io")
    b = register(client, email="two@cyberlab.io")
    assert a["id"] != b["id"]


def test_register_uses_app_bcrypt_cost():
    app = create_app(make_settings(BCRYPT_ROUNDS=5))
    with TestClient(app) as c:
        user = register(c)
        stored = app.state.storage.get_user(user["id"])
    assert stored.password_hash.split("$")[2] == "05"
