"""Test the authentication service and the /auth endpoints."""

import datetime
from calendar import timegm

import httpx
import pytest
from fastapi import HTTPException
from jose import jwt

from gitmap.core.auth import (
    DEMO_EMAIL,
    DEMO_PASSWORD,
    generate_token,
    hash_password,
    valid_token,
    verify_password,
)

from .conftest import JWT_SECRET

pytestmark = pytest.mark.asyncio


async def test_hash_and_verify_password():
    hashed = hash_password("secret1")
    assert hashed.startswith("$2")
    assert hashed != "secret1"
    assert verify_password("secret1", hashed)
    assert not verify_password("secret2", hashed)
    assert not verify_password("secret1", "not-a-bcrypt-hash")
    with pytest.raises(ValueError):
        hash_password("")


async def test_token_claims_and_expiry():
    token = generate_token(7, "bob", "bob@example.com", JWT_SECRET)
    claims = valid_token(token, JWT_SECRET)
    assert claims["user_id"] == 7
    assert claims["sub"] == "7"
    assert claims["username"] == "bob"
    assert claims["exp"] - claims["iat"] == 7 * 24 * 3600

    with pytest.raises(HTTPException) as exc_info:
        valid_token(token, "another-secret")
    assert exc_info.value.status_code == 401

    past = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(days=1)
    expired = jwt.encode(
        {"user_id": 7, "exp": timegm(past.utctimetuple())},
        JWT_SECRET,
        algorithm="HS256",
    )
    with pytest.raises(HTTPException) as exc_info:
        valid_token(expired, JWT_SECRET)
    assert exc_info.value.detail == "Invalid token"


async def test_signup_token_resolves_to_same_user(client, register_user):
    data = await register_user("al", "al@x.com")
    assert data["success"] is True
    assert data["user"]["username"] == "al"
    assert "password_hash" not in data["user"]

    response = await client.post("/auth/verify", json={"token": data["token"]})
    assert response.status_code == 200
    assert response.json()["user"]["id"] == data["user"]["id"]


async def test_signup_validation(client, register_user):
    response = await client.post(
        "/auth/signup", json={"username": "x", "email": "x@example.com"}
    )
    assert response.status_code == 400

    response = await client.post(
        "/auth/signup",
        json={"username": "x", "email": "x@example.com", "password": "12345"},
    )
    assert response.status_code == 400
    assert "6 characters" in response.json()["detail"]

    await register_user("carol")
    response = await client.post(
        "/auth/signup",
        json={"username": "carol", "email": "other@example.com", "password": "secret1"},
    )
    assert response.status_code == 409
    response = await client.post(
        "/auth/signup",
        json={"username": "other", "email": "carol@example.com", "password": "secret1"},
    )
    assert response.status_code == 409


async def test_login(client, register_user):
    await register_user("dave", "dave@example.com", "secret1")

    response = await client.post(
        "/auth/login", json={"email": "dave@example.com", "password": "secret1"}
    )
    assert response.status_code == 200
    data = response.json()
    assert data["user"]["username"] == "dave"
    assert data["token"]

    response = await client.post(
        "/auth/login", json={"email": "dave@example.com", "password": "wrong-pass"}
    )
    assert response.status_code == 401

    response = await client.post(
        "/auth/login", json={"email": "nobody@example.com", "password": "secret1"}
    )
    assert response.status_code == 401

    response = await client.post("/auth/login", json={"email": "dave@example.com"})
    assert response.status_code == 400


async def test_verify_errors(client):
    response = await client.post("/auth/verify", json={})
    assert response.status_code == 400
    assert response.json()["detail"] == "Token is required"

    response = await client.post("/auth/verify", json={"token": "garbage"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid token"

    # signed correctly but never issued as a session
    token = generate_token(1, "ghost", "ghost@example.com", JWT_SECRET)
    response = await client.post("/auth/verify", json={"token": token})
    assert response.status_code == 401
    assert response.json()["detail"] == "Session expired or invalid"


async def test_expired_session_is_rejected(app, client, register_user):
    data = await register_user("erin")
    storage = app.state.store.get_storage()
    past = (
        datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(minutes=1)
    ).isoformat()
    await storage.run(
        "update", "user_sessions", {"expires_at": past}, {"token": data["token"]}
    )

    response = await client.post("/auth/verify", json={"token": data["token"]})
    assert response.status_code == 401
    assert response.json()["detail"] == "Session expired or invalid"

    response = await client.get("/repositories", headers=data["headers"])
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid token"


async def test_logout_invalidates_token(client, register_user):
    data = await register_user("frank")

    response = await client.post("/auth/logout", headers=data["headers"])
    assert response.status_code == 200
    assert response.json()["revoked"] is True

    response = await client.post("/auth/verify", json={"token": data["token"]})
    assert response.status_code == 401
    response = await client.get("/repositories", headers=data["headers"])
    assert response.status_code == 401

    response = await client.post("/auth/logout", json={})
    assert response.status_code == 400


async def test_login_required(client):
    response = await client.get("/repositories")
    assert response.status_code == 401
    assert response.json()["detail"] == "No token provided"

    response = await client.get(
        "/repositories", headers={"Authorization": "Bearer not-a-token"}
    )
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid token"


async def test_demo_login(app_factory):
    app = await app_factory("--demo-mode")
    storage = app.state.store.get_storage()
    assert storage.name == "memory"
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        credentials = {"email": DEMO_EMAIL, "password": DEMO_PASSWORD}
        first = await client.post("/auth/login", json=credentials)
        assert first.status_code == 200
        assert first.json()["user"]["username"] == "demo"
        second = await client.post("/auth/login", json=credentials)
        assert second.status_code == 200
        assert second.json()["user"]["id"] == first.json()["user"]["id"]

        user_id = first.json()["user"]["id"]
        sessions = await storage.all("user_sessions", {"user_id": user_id})
        assert len(sessions) == 1
        assert sessions[0]["token"] == second.json()["token"]

        response = await client.post(
            "/auth/verify", json={"token": first.json()["token"]}
        )
        assert response.status_code == 401


async def test_demo_credentials_without_demo_mode(client):
    response = await client.post(
        "/auth/login", json={"email": DEMO_EMAIL, "password": DEMO_PASSWORD}
    )
    assert response.status_code == 401
