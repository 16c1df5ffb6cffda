"""Test the Git Smart HTTP endpoints."""

import pytest

from gitmap.git.http import generate_refs_advertisement, parse_repository_path, pkt_line

pytestmark = pytest.mark.asyncio


async def test_pkt_line():
    assert pkt_line(b"hello\n") == b"000ahello\n"
    assert pkt_line(None) == b"0000"
    assert (
        generate_refs_advertisement("git-upload-pack")
        == b"001e# service=git-upload-pack\n0000"
    )


async def test_parse_repository_path():
    assert parse_repository_path("al/demo.git/info/refs") == ("al", "demo", "info/refs")
    for path in ("al/demo/info/refs", "demo.git/info/refs", "al/demo.git/"):
        with pytest.raises(ValueError):
            parse_repository_path(path)


async def test_info_refs(client):
    response = await client.get("/git-server/al/demo.git/info/refs")
    assert response.status_code == 200
    assert response.content == b"001e# service=git-upload-pack\n0000"
    assert response.headers["content-type"] == "application/x-git-upload-pack-advertisement"

    response = await client.get(
        "/git-server/al/demo.git/info/refs", params={"service": "git-receive-pack"}
    )
    assert response.content == b"001f# service=git-receive-pack\n0000"
    assert response.headers["content-type"] == "application/x-git-receive-pack-advertisement"


async def test_pack_endpoints(client):
    for service in ("git-upload-pack", "git-receive-pack"):
        response = await client.post(f"/git-server/al/demo.git/{service}", content=b"0000")
        assert response.status_code == 200
        assert response.content == b""
        assert response.headers["content-type"] == f"application/x-{service}-result"


async def test_invalid_requests(client):
    response = await client.get("/git-server/not-a-repository")
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid repository path"

    response = await client.post("/git-server/al/demo/git-upload-pack")
    assert response.status_code == 400

    response = await client.get("/git-server/al/demo.git/HEAD")
    assert response.status_code == 501
    assert response.json()["detail"] == "Not implemented"

    response = await client.post("/git-server/al/demo.git/objects")
    assert response.status_code == 501
