"""Provide common pytest fixtures."""

import os
import uuid

# Set JWT_SECRET environment variables BEFORE importing any gitmap modules
JWT_SECRET = str(uuid.uuid4())
os.environ["JWT_SECRET"] = JWT_SECRET
os.environ["GITMAP_JWT_SECRET"] = JWT_SECRET
# Keep git operations independent from the configuration of the machine
os.environ["GIT_CONFIG_GLOBAL"] = os.devnull
os.environ["GIT_CONFIG_NOSYSTEM"] = "1"

import httpx
import pytest
import pytest_asyncio

from gitmap.server import create_application, get_argparser

from . import DEFAULT_PASSWORD


def make_args(tmp_path, *extra):
    """Parse server arguments pointing every directory into `tmp_path`."""
    home_dir = tmp_path / "home"
    home_dir.mkdir(exist_ok=True)
    parser = get_argparser(add_help=False)
    return parser.parse_args(
        [
            "--database-uri",
            f"sqlite+aiosqlite:///{tmp_path / 'gitmap.db'}",
            "--home-dir",
            str(home_dir),
            "--repositories-dir",
            str(tmp_path / "repositories"),
            *extra,
        ]
    )


@pytest_asyncio.fixture
async def app_factory(tmp_path):
    """Create initialized applications, torn down after the test."""
    apps = []

    async def _create(*extra, init=True):
        app = create_application(make_args(tmp_path, *extra))
        if init:
            # ASGITransport does not run the lifespan
            await app.state.store.init()
        apps.append(app)
        return app

    yield _create

    for app in apps:
        await app.state.store.teardown()


@pytest_asyncio.fixture
async def app(app_factory):
    """Application with the sql storage backend."""
    return await app_factory()


@pytest_asyncio.fixture
async def client(app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client


@pytest.fixture
def register_user(client):
    """Sign up a user and return its json payload with auth headers."""

    async def _register(username, email=None, password=DEFAULT_PASSWORD):
        response = await client.post(
            "/auth/signup",
            json={
                "username": username,
                "email": email or f"{username}@example.com",
                "password": password,
            },
        )
        assert response.status_code == 200, response.text
        data = response.json()
        data["headers"] = {"Authorization": f"Bearer {data['token']}"}
        return data

    return _register


@pytest_asyncio.fixture
async def user(register_user):
    return await register_user("alice")


@pytest.fixture
def create_repository(client):
    async def _create(headers, name="demo", **fields):
        response = await client.post(
            "/repositories", json={"name": name, **fields}, headers=headers
        )
        assert response.status_code == 201, response.text
        return response.json()["repository"]

    return _create


@pytest.fixture
def add_file(client):
    async def _add(headers, repository_id, file_path, file_name, content=""):
        response = await client.post(
            f"/repositories/{repository_id}/files",
            json={
                "filePath": file_path,
                "fileName": file_name,
                "fileContent": content,
            },
            headers=headers,
        )
        assert response.status_code == 201, response.text
        return response.json()["file"]

    return _add
