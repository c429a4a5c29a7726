import os

# Must be set before cyberdefense is imported; the module-level settings read them once
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient

from cyberdefense.core.config import Settings
from cyberdefense.main import create_app

PASSWORD = "Str0ng!Pass"


def make_settings(**overrides) -> Settings:
    values = dict(ENVIRONMENT="testing", BCRYPT_ROUNDS=4, RATE_LIMIT_ENABLED=False, LOG_LEVEL="WARNING")
    values.update(overrides)
    return Settings(**values)


def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def register(client, email="alice@cyberlab.io", first_name="Alice", last_name="Smith", password=PASSWORD) -> dict:
    r = client.post("/api/auth/register", json={
        "firstName": first_name, "lastName": last_name, "email": email, "password": password,
    })
    assert r.status_code == 201, r.text
    data = r.json()["data"]
    return {
        "id": data["user"]["id"],
        "email": data["user"]["email"],
        "access": data["tokens"]["accessToken"],
        "refresh": data["tokens"]["refreshToken"],
        "headers": auth_headers(data["tokens"]["accessToken"]),
    }


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db_client():
    app = create_app(make_settings(USE_DATABASE=True, DATABASE_URL="sqlite://"))
    with TestClient(app) as c:
        yield c


@pytest.fixture
def user(client):
    return register(client)


@pytest.fixture
def other_user(client):
    return register(client, email="bob@cyberlab.io", first_name="Bob", last_name="Jones")


@pytest.fixture
def admin(client):
    return register(client, email="admin@cyberlab.io", first_name="Ada", last_name="Admin")
