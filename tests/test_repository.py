"""Test the repository and file registry endpoints."""

import pytest

from gitmap.repository import guess_file_type

pytestmark = pytest.mark.asyncio


async def test_create_repository_scenario(client, register_user):
    """Sign up, log in and create a repository twice."""
    await register_user("al", "al@x.com", "secret1")
    response = await client.post(
        "/auth/login", json={"email": "al@x.com", "password": "secret1"}
    )
    assert response.status_code == 200
    headers = {"Authorization": f"Bearer {response.json()['token']}"}

    response = await client.post("/repositories", json={"name": "demo"}, headers=headers)
    assert response.status_code == 201
    data = response.json()
    assert data["success"] is True
    assert data["message"] == "Repository created successfully"
    assert data["repository"]["git_url"] == "git://localhost:3001/al/demo.git"
    assert data["repository"]["is_private"] is False

    response = await client.post("/repositories", json={"name": "demo"}, headers=headers)
    assert response.status_code == 409


async def test_repository_name_validation(client, user):
    for body in ({}, {"name": ""}, {"name": "   "}, {"name": 123}):
        response = await client.post("/repositories", json=body, headers=user["headers"])
        assert response.status_code == 400, body


async def test_list_repositories_newest_first(client, user, create_repository):
    for name in ("first", "second", "third"):
        await create_repository(user["headers"], name)
    response = await client.get("/repositories", headers=user["headers"])
    assert response.status_code == 200
    assert [r["name"] for r in response.json()] == ["third", "second", "first"]


async def test_repositories_are_scoped_to_owner(
    client, register_user, create_repository
):
    alice = await register_user("alice")
    bob = await register_user("bob")
    repository = await create_repository(alice["headers"], "private", isPrivate=True)

    # the same name is free for another user
    await create_repository(bob["headers"], "private")

    for method, url in [
        ("GET", f"/repositories/{repository['id']}"),
        ("DELETE", f"/repositories/{repository['id']}"),
        ("GET", f"/repositories/{repository['id']}/files"),
    ]:
        response = await client.request(method, url, headers=bob["headers"])
        assert response.status_code == 404, url

    response = await client.put(
        f"/repositories/{repository['id']}",
        json={"name": "stolen"},
        headers=bob["headers"],
    )
    assert response.status_code == 404

    response = await client.get(
        f"/repositories/{repository['id']}", headers=alice["headers"]
    )
    assert response.status_code == 200
    assert response.json()["is_private"] is True


async def test_update_repository(client, user, create_repository):
    repository = await create_repository(
        user["headers"], "demo", description="first version"
    )
    await create_repository(user["headers"], "taken")
    url = f"/repositories/{repository['id']}"

    response = await client.put(url, json={"isPrivate": True}, headers=user["headers"])
    assert response.status_code == 200
    updated = response.json()
    assert updated["is_private"] is True
    assert updated["name"] == "demo"
    assert updated["description"] == "first version"

    response = await client.put(url, json={"name": "renamed"}, headers=user["headers"])
    assert response.status_code == 200
    assert response.json()["git_url"] == "git://localhost:3001/alice/renamed.git"

    response = await client.put(url, json={"name": "taken"}, headers=user["headers"])
    assert response.status_code == 409


async def test_files(client, user, create_repository, add_file):
    repository = await create_repository(user["headers"])
    url = f"/repositories/{repository['id']}/files"

    saved = await add_file(user["headers"], repository["id"], "/src", "main.py", "print(1)")
    assert saved["file_size"] == len("print(1)")
    assert saved["file_type"] == "text/x-python"
    await add_file(user["headers"], repository["id"], "/", "README.md", "# demo")
    await add_file(user["headers"], repository["id"], "/src", "app.py")

    response = await client.post(
        url,
        json={"filePath": "/src", "fileName": "main.py", "fileContent": "other"},
        headers=user["headers"],
    )
    assert response.status_code == 409

    response = await client.post(url, json={"fileName": "x.py"}, headers=user["headers"])
    assert response.status_code == 400

    response = await client.get(url, headers=user["headers"])
    files = response.json()
    assert [(f["file_path"], f["file_name"]) for f in files] == [
        ("/", "README.md"),
        ("/src", "app.py"),
        ("/src", "main.py"),
    ]
    assert len([f for f in files if f["file_name"] == "main.py"]) == 1
    assert files[1]["file_size"] == 0


async def test_upload_file(client, user, create_repository):
    repository = await create_repository(user["headers"])
    url = f"/repositories/{repository['id']}/files/upload"

    response = await client.post(
        url,
        files={"file": ("main.rs", b"fn main() {}", "application/octet-stream")},
        data={"filePath": "/src"},
        headers=user["headers"],
    )
    assert response.status_code == 201
    saved = response.json()["file"]
    assert saved["file_path"] == "/src"
    assert saved["file_type"] == "text/x-rust"
    assert saved["file_size"] == len(b"fn main() {}")
    assert saved["file_content"] == "fn main() {}"

    response = await client.post(
        url,
        files={"file": ("notes.bin", b"hello", "text/plain")},
        headers=user["headers"],
    )
    assert response.status_code == 201
    assert response.json()["file"]["file_path"] == "/"
    assert response.json()["file"]["file_type"] == "text/plain"

    response = await client.post(
        url,
        files={"file": ("main.rs", b"again", "application/octet-stream")},
        data={"filePath": "/src"},
        headers=user["headers"],
    )
    assert response.status_code == 409

    response = await client.post(
        url, data={"filePath": "/src"}, headers=user["headers"]
    )
    assert response.status_code == 400


async def test_delete_file(client, register_user, create_repository, add_file):
    alice = await register_user("alice")
    bob = await register_user("bob")
    repository = await create_repository(alice["headers"])
    other = await create_repository(bob["headers"])
    saved = await add_file(alice["headers"], repository["id"], "/", "a.txt", "a")

    response = await client.delete(
        f"/repositories/{other['id']}/files/{saved['id']}", headers=bob["headers"]
    )
    assert response.status_code == 404

    url = f"/repositories/{repository['id']}/files/{saved['id']}"
    response = await client.delete(url, headers=alice["headers"])
    assert response.status_code == 200
    assert response.json() == {"success": True}

    response = await client.delete(url, headers=alice["headers"])
    assert response.status_code == 404


async def test_delete_repository_removes_files(
    app, client, user, create_repository, add_file
):
    repository = await create_repository(user["headers"])
    await add_file(user["headers"], repository["id"], "/", "a.txt", "a")
    await add_file(user["headers"], repository["id"], "/", "b.txt", "b")

    response = await client.delete(
        f"/repositories/{repository['id']}", headers=user["headers"]
    )
    assert response.status_code == 200
    assert response.json() == {"success": True}

    storage = app.state.store.get_storage()
    assert await storage.all("repository_files", {"repository_id": repository["id"]}) == []
    response = await client.get(
        f"/repositories/{repository['id']}", headers=user["headers"]
    )
    assert response.status_code == 404


async def test_invalid_repository_id(client, user):
    response = await client.get("/repositories/not-a-number", headers=user["headers"])
    assert response.status_code == 400


async def test_guess_file_type():
    assert guess_file_type("index.HTML") == "text/html"
    assert guess_file_type("Makefile") == "application/octet-stream"
    assert guess_file_type("data.xyz") == "application/octet-stream"
    assert guess_file_type("image.png", "image/png") == "image/png"


async def test_file_without_content(client, user, create_repository):
    repository = await create_repository(user["headers"])
    response = await client.post(
        f"/repositories/{repository['id']}/files",
        json={"filePath": "/", "fileName": "empty.txt"},
        headers=user["headers"],
    )
    assert response.status_code == 201
    saved = response.json()["file"]
    assert saved["file_content"] is None
    assert saved["file_size"] == 0
