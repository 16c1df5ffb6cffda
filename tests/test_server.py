"""Test the application setup."""

import httpx
import pytest

from gitmap import __version__
from gitmap.server import get_args_from_env

pytestmark = pytest.mark.asyncio


async def test_health(app_factory):
    app = await app_factory(init=False)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        response = await client.get("/health/liveness")
        assert response.status_code == 200
        assert response.json()["version"] == __version__

        response = await client.get("/health/readiness")
        assert response.status_code == 503

        await app.state.store.init()
        response = await client.get("/health/readiness")
        assert response.status_code == 200
        assert response.json() == {"status": "OK"}


async def test_args_from_env(monkeypatch):
    monkeypatch.setenv("GITMAP_PORT", "4000")
    monkeypatch.setenv("GITMAP_DEMO_MODE", "true")
    monkeypatch.setenv("GITMAP_GIT_MODE", "durable")
    monkeypatch.setenv("GITMAP_SCAN_TIMEOUT", "not-a-number")

    args = get_args_from_env()

    assert args.port == 4000
    assert args.demo_mode is True
    assert args.git_mode == "durable"
    assert args.scan_timeout == 10
    assert args.storage_backend == "sql"


async def test_validation_errors_are_bad_requests(client):
    response = await client.post(
        "/auth/login",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 400
    assert response.json()["detail"]


async def test_cors(client):
    response = await client.options(
        "/auth/login",
        headers={
            "Origin": "http://example.com",
            "Access-Control-Request-Method": "POST",
        },
    )
    assert response.status_code == 200
    assert "access-control-allow-origin" in response.headers


async def test_storage_backend_selection(app_factory):
    app = await app_factory("--storage-backend", "memory")
    assert app.state.store.get_storage().name == "memory"
