"""Materialize registry files into git working trees."""

import asyncio
import logging
import os
import shutil
import sys
import tempfile
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from gitmap.git.runner import GitRunner
from gitmap.utils import safe_join

LOGLEVEL = os.environ.get("GITMAP_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("git")
logger.setLevel(LOGLEVEL)

DEFAULT_COMMIT_MESSAGE = "Update files via GitMap"
FALLBACK_USER_NAME = "GitMap User"
FALLBACK_USER_EMAIL = "user@gitmap.local"
GIT_MODES = ("snapshot", "durable")


@dataclass
class Workspace:
    """A working tree prepared for one operation."""

    path: str
    files: List[Dict]
    committed: bool = False
    commit: Optional[str] = None
    status: Dict = field(default_factory=dict)


def _target_path(root: str, file: Dict) -> str:
    file_name = file.get("file_name")
    if not file_name:
        raise ValueError(f"File {file.get('id')} has no name")
    relative_dir = (file.get("file_path") or "").lstrip("/")
    target = safe_join(root, relative_dir, file_name)
    parts = os.path.relpath(target, root).split(os.sep)
    if parts[0] in (".", "..") or parts[-1] in (".", "..") or ".git" in parts:
        raise ValueError(
            f"Illegal file path: `{relative_dir}/{file_name}`, "
            "you can only operate within the work directory."
        )
    return target


def materialize_files(root: str, files: Iterable[Dict], clean=False) -> List[str]:
    """Write file rows below `root`, returning the written paths.

    With `clean`, everything except `.git` is removed first so that files
    no longer registered disappear from the tree.
    """
    targets = [(_target_path(root, file), file) for file in files]
    if clean:
        for entry in os.listdir(root):
            if entry == ".git":
                continue
            path = os.path.join(root, entry)
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            else:
                os.remove(path)
    written = []
    for target, file in targets:
        os.makedirs(os.path.dirname(target), exist_ok=True)
        with open(target, "wb") as f:
            f.write((file.get("file_content") or "").encode("utf-8"))
        written.append(target)
    return written


class GitWorkspaceManager:
    """Provide working trees for registry repositories.

    In `snapshot` mode every operation gets a fresh repository in a
    temporary directory that is removed afterwards. In `durable` mode each
    repository keeps one working tree under `repositories_dir`, and
    operations on the same repository are serialized.
    """

    def __init__(
        self,
        runner: GitRunner,
        mode: str = "snapshot",
        repositories_dir: Optional[str] = None,
    ):
        if mode not in GIT_MODES:
            raise ValueError(f"Unsupported git mode: {mode}")
        if mode == "durable" and not repositories_dir:
            raise ValueError("The durable git mode requires a repositories directory")
        self.runner = runner
        self.mode = mode
        self.repositories_dir = (
            os.path.abspath(repositories_dir) if repositories_dir else None
        )
        self._locks: Dict[int, asyncio.Lock] = {}

    def _durable_path(self, repository_id: int) -> str:
        return os.path.join(self.repositories_dir, str(int(repository_id)))

    @asynccontextmanager
    async def open(
        self,
        repository: Dict,
        files: List[Dict],
        user_info=None,
        commit_message: Optional[str] = None,
    ):
        """Yield a `Workspace` holding the registry files, committed once."""
        if self.mode == "durable":
            lock = self._locks.setdefault(repository["id"], asyncio.Lock())
            async with lock:
                path = self._durable_path(repository["id"])
                await asyncio.to_thread(os.makedirs, path, exist_ok=True)
                if not os.path.isdir(os.path.join(path, ".git")):
                    await self.runner.init(path)
                yield await self._prepare(path, files, user_info, commit_message, True)
            return

        path = await asyncio.to_thread(
            tempfile.mkdtemp, prefix=f"gitmap-{repository['id']}-{time.time_ns()}-"
        )
        try:
            await self.runner.init(path)
            yield await self._prepare(path, files, user_info, commit_message, False)
        finally:
            await asyncio.to_thread(shutil.rmtree, path, ignore_errors=True)
            logger.debug("Removed temporary working tree %s", path)

    async def _prepare(self, path, files, user_info, commit_message, clean):
        await self.runner.set_identity(
            path,
            getattr(user_info, "username", None) or FALLBACK_USER_NAME,
            getattr(user_info, "email", None) or FALLBACK_USER_EMAIL,
        )
        await asyncio.to_thread(materialize_files, path, files, clean)
        if clean:
            await self.runner.add_all(path)
        elif files:
            await self.runner.add(path, ".")
        workspace = Workspace(path=path, files=files)
        workspace.status = await self.runner.status(path)
        if workspace.status["files"]["staged"]:
            workspace.commit = await self.runner.commit(
                path, commit_message or DEFAULT_COMMIT_MESSAGE
            )
            workspace.committed = True
            logger.info("Committed %s in %s", workspace.commit, path)
        return workspace

    async def discard(self, repository_id: int):
        """Remove the durable working tree of a deleted repository."""
        if self.mode != "durable":
            return
        path = self._durable_path(repository_id)
        lock = self._locks.setdefault(repository_id, asyncio.Lock())
        async with lock:
            if os.path.isdir(path):
                await asyncio.to_thread(shutil.rmtree, path)
                logger.info("Removed working tree %s", path)
        self._locks.pop(repository_id, None)
