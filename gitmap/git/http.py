"""Git Smart HTTP endpoints.

Only the discovery handshake is answered: `info/refs` advertises an empty
repository and the pack endpoints return empty results. Other git commands
are not implemented.
"""

import logging
import os
import re
import sys
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Response

LOGLEVEL = os.environ.get("GITMAP_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("git-http")
logger.setLevel(LOGLEVEL)

REPOSITORY_PATH = re.compile(r"^([^/]+)/([^/]+)\.git/(.+)$")
SERVICES = ("git-upload-pack", "git-receive-pack")


def pkt_line(data: Optional[bytes]) -> bytes:
    """Format data as a pkt-line.

    A pkt-line is a 4-byte hex length prefix followed by the data.
    Length includes the 4-byte prefix itself.
    """
    if data is None:
        return b"0000"  # Flush packet
    length = len(data) + 4
    return f"{length:04x}".encode() + data


def pkt_flush() -> bytes:
    """Return a flush packet (0000)."""
    return b"0000"


def generate_refs_advertisement(service: str) -> bytes:
    """Advertise a repository without refs for `service`."""
    return pkt_line(f"# service={service}\n".encode()) + pkt_flush()


def parse_repository_path(path: str):
    """Split `{user}/{repo}.git/{command}` or raise ValueError."""
    match = REPOSITORY_PATH.match(path)
    if not match:
        raise ValueError("Invalid repository path")
    return match.group(1), match.group(2), match.group(3)


def create_git_router() -> APIRouter:
    """Create a FastAPI router for the Git HTTP protocol."""
    router = APIRouter(prefix="/git-server")

    @router.get("/{path:path}")
    async def git_get(path: str, service: Optional[str] = Query(None)):
        """Git reference discovery endpoint."""
        try:
            username, repository, command = parse_repository_path(path)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if command != "info/refs":
            raise HTTPException(status_code=501, detail="Not implemented")
        service = service if service in SERVICES else "git-upload-pack"
        logger.info(f"Advertising refs of {username}/{repository} for {service}")
        return Response(
            content=generate_refs_advertisement(service),
            media_type=f"application/x-{service}-advertisement",
        )

    @router.post("/{path:path}")
    async def git_post(path: str):
        """Pack negotiation endpoints, answered with empty results."""
        try:
            username, repository, command = parse_repository_path(path)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if command not in SERVICES:
            raise HTTPException(status_code=501, detail="Not implemented")
        logger.info(f"Answering {command} for {username}/{repository} with no data")
        return Response(content=b"", media_type=f"application/x-{command}-result")

    return router
