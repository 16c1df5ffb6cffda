"""Run git operations on working trees with dulwich.

dulwich is blocking, so every operation of `GitRunner` runs in a worker
thread with `asyncio.to_thread`, bounded by a timeout. Failures surface as
`GitCommandError`.
"""

import asyncio
import datetime
import logging
import os
import sys
from typing import Dict, List, Optional

from dulwich import porcelain
from dulwich.errors import GitProtocolError, NotGitRepository
from dulwich.repo import Repo
from dulwich.walk import Walker

LOGLEVEL = os.environ.get("GITMAP_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("git")
logger.setLevel(LOGLEVEL)

DEFAULT_BRANCH = "main"
DEFAULT_TIMEOUT = 120
BRANCH_PREFIX = b"refs/heads/"

_GIT_ERRORS = (
    NotGitRepository,
    GitProtocolError,
    porcelain.Error,
    KeyError,
    ValueError,
    OSError,
)


class GitCommandError(Exception):
    """Raised when a git operation fails."""

    def __init__(self, operation: str, path: Optional[str], cause):
        self.operation = operation
        self.path = path
        self.cause = cause
        super().__init__(f"git {operation} failed in {path}: {cause}")


class GitOperationError(Exception):
    """Raised when a repository operation fails, with a readable message."""


def _decode(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _split_identity(identity: bytes):
    """Split `Name <email>` into its parts."""
    text = _decode(identity)
    if "<" not in text:
        return text.strip(), ""
    name, email = text.rsplit("<", 1)
    return name.strip(), email.rstrip(">").strip()


def _commit_date(commit) -> str:
    offset = datetime.timezone(datetime.timedelta(seconds=commit.author_timezone))
    return datetime.datetime.fromtimestamp(commit.author_time, tz=offset).isoformat()


def _subject(commit) -> str:
    message = _decode(commit.message).strip()
    return message.splitlines()[0] if message else ""


def _head_branch(repo: Repo) -> Optional[bytes]:
    """Return the ref HEAD points to, None when it is detached."""
    head = repo.refs.read_ref(b"HEAD")
    if head and head.startswith(b"ref: "):
        return head[len(b"ref: ") :].strip()
    return None


def _working_files(path: str) -> List[str]:
    """List the files of a working tree, `.git` excluded."""
    found = []
    for root, dirs, files in os.walk(path):
        dirs[:] = [d for d in dirs if d != ".git"]
        for name in files:
            found.append(os.path.join(root, name))
    return sorted(found)


class GitRunner:
    """Run git operations inside a working tree."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout

    async def _call(self, operation: str, path: Optional[str], func, *args):
        logger.debug("Running git %s in %s", operation, path)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise GitCommandError(
                operation, path, f"timed out after {self.timeout} seconds"
            ) from e
        except _GIT_ERRORS as e:
            raise GitCommandError(operation, path, e) from e

    async def init(self, path: str, initial_branch: str = DEFAULT_BRANCH):
        def _init():
            with Repo.init(path) as repo:
                repo.refs.set_symbolic_ref(
                    b"HEAD", BRANCH_PREFIX + initial_branch.encode()
                )

        await self._call("init", path, _init)

    async def set_identity(self, path: str, name: str, email: str):
        """Set the local commit identity of a repository."""

        def _set_identity():
            with Repo(path) as repo:
                config = repo.get_config()
                config.set((b"user",), b"name", name.encode("utf-8"))
                config.set((b"user",), b"email", email.encode("utf-8"))
                config.write_to_path()

        await self._call("config", path, _set_identity)

    async def add(self, path: str, *pathspec: str):
        """Stage the given files or directories, relative to `path`."""

        def _add():
            targets = []
            for spec in pathspec:
                target = os.path.join(path, spec)
                if os.path.isdir(target):
                    targets.extend(_working_files(target))
                elif os.path.exists(target):
                    targets.append(target)
                else:
                    raise ValueError(f"pathspec '{spec}' did not match any files")
            if targets:
                with Repo(path) as repo:
                    porcelain.add(repo, paths=targets)

        await self._call("add", path, _add)

    async def add_all(self, path: str):
        """Stage additions, modifications and removals."""

        def _add_all():
            with Repo(path) as repo:
                index = repo.open_index()
                removed = [
                    name
                    for name in index
                    if not os.path.lexists(os.path.join(path, _decode(name)))
                ]
                for name in removed:
                    del index[name]
                if removed:
                    index.write()
                files = _working_files(path)
                if files:
                    porcelain.add(repo, paths=files)

        await self._call("add", path, _add_all)

    async def status(self, path: str) -> Dict:
        """Describe the branch and the changes of a working tree."""
        return await self._call("status", path, self._status, path)

    def _status(self, path: str) -> Dict:
        with Repo(path) as repo:
            result = porcelain.status(repo, untracked_files="all")
            staged = {
                key: [_decode(p) for p in value] for key, value in result.staged.items()
            }
            unstaged = [_decode(p) for p in result.unstaged]
            untracked = [_decode(p) for p in result.untracked]
            unstaged_deleted = [
                p for p in unstaged if not os.path.lexists(os.path.join(path, p))
            ]
            files = {
                "modified": staged["modify"]
                + [p for p in unstaged if p not in unstaged_deleted],
                "staged": staged["add"] + staged["modify"] + staged["delete"],
                "untracked": untracked,
                "deleted": staged["delete"] + unstaged_deleted,
            }
            status = {
                "current": None,
                "tracking": None,
                "ahead": 0,
                "behind": 0,
                "files": files,
                "isClean": not (files["staged"] or unstaged or untracked),
            }
            branch_ref = _head_branch(repo)
            if branch_ref is None:
                status["current"] = "HEAD"
                return status
            branch = branch_ref[len(BRANCH_PREFIX) :]
            status["current"] = _decode(branch)
            self._tracking(repo, branch, branch_ref, status)
            return status

    @staticmethod
    def _tracking(repo: Repo, branch: bytes, branch_ref: bytes, status: Dict):
        config = repo.get_config()
        try:
            remote = config.get((b"branch", branch), b"remote")
            merge = config.get((b"branch", branch), b"merge")
        except KeyError:
            return
        if merge.startswith(BRANCH_PREFIX):
            merge = merge[len(BRANCH_PREFIX) :]
        status["tracking"] = f"{_decode(remote)}/{_decode(merge)}"
        refs = repo.refs.as_dict()
        local = refs.get(branch_ref)
        upstream = refs.get(b"refs/remotes/" + remote + b"/" + merge)
        if local is None or upstream is None:
            return
        ahead = repo.get_walker(include=[local], exclude=[upstream])
        behind = repo.get_walker(include=[upstream], exclude=[local])
        status["ahead"] = sum(1 for _ in ahead)
        status["behind"] = sum(1 for _ in behind)

    async def commit(self, path: str, message: str) -> str:
        """Commit the index and return the new commit hash."""

        def _commit():
            with Repo(path) as repo:
                config = repo.get_config()
                identity = b"%s <%s>" % (
                    config.get((b"user",), b"name"),
                    config.get((b"user",), b"email"),
                )
                commit_id = porcelain.commit(
                    repo,
                    message=message.encode("utf-8"),
                    author=identity,
                    committer=identity,
                )
                return _decode(commit_id)

        return await self._call("commit", path, _commit)

    async def log(self, path: str, max_count: Optional[int] = None) -> List[Dict]:
        """Return the commits reachable from HEAD, newest first."""

        def _log():
            with Repo(path) as repo:
                head = _head_target(repo)
                if head is None:
                    return []
                commits = []
                for entry in Walker(repo.object_store, [head], max_entries=max_count):
                    commit = entry.commit
                    author_name, author_email = _split_identity(commit.author)
                    commits.append(
                        {
                            "hash": _decode(commit.id),
                            "date": _commit_date(commit),
                            "message": _subject(commit),
                            "author_name": author_name,
                            "author_email": author_email,
                        }
                    )
                return commits

        return await self._call("log", path, _log)

    async def current_branch(self, path: str) -> Optional[str]:
        def _current():
            with Repo(path) as repo:
                ref = _head_branch(repo)
                return _decode(ref[len(BRANCH_PREFIX) :]) if ref else None

        return await self._call("symbolic-ref", path, _current)

    async def branches(self, path: str) -> List[Dict]:
        """List local branches with their tip commit."""

        def _branches():
            with Repo(path) as repo:
                head_ref = _head_branch(repo)
                refs = repo.refs.as_dict(BRANCH_PREFIX)
                branches = []
                for name in sorted(refs):
                    commit = repo[refs[name]]
                    branches.append(
                        {
                            "name": _decode(name),
                            "current": BRANCH_PREFIX + name == head_ref,
                            "commit": _decode(commit.id),
                            "message": _subject(commit),
                        }
                    )
                return branches

        return await self._call("branch", path, _branches)

    async def clone(self, url: str, target: str):
        def _clone():
            porcelain.clone(url, target, checkout=True).close()

        await self._call("clone", target, _clone)

    async def push(self, path: str):
        await self._call("push", path, self._with_repo(porcelain.push, path))

    async def pull(self, path: str):
        await self._call("pull", path, self._with_repo(porcelain.pull, path))

    async def fetch(self, path: str):
        await self._call("fetch", path, self._with_repo(porcelain.fetch, path))

    @staticmethod
    def _with_repo(func, path: str):
        def _run():
            with Repo(path) as repo:
                return func(repo)

        return _run

    async def checkout(self, path: str, branch: str):
        """Switch HEAD to `branch` and update the working tree."""

        def _checkout():
            target = BRANCH_PREFIX + branch.encode()
            with Repo(path) as repo:
                if target not in repo.refs.as_dict():
                    raise KeyError(f"Branch '{branch}' does not exist")
                changes = porcelain.status(repo, untracked_files="no")
                if any(changes.staged.values()) or changes.unstaged:
                    raise ValueError(
                        "Your local changes would be overwritten by checkout"
                    )
                repo.refs.set_symbolic_ref(b"HEAD", target)
                porcelain.reset(repo, "hard", b"HEAD")

        await self._call("checkout", path, _checkout)

    async def create_branch(self, path: str, branch: str):
        """Create `branch` at HEAD and switch to it."""

        def _create():
            with Repo(path) as repo:
                porcelain.branch_create(repo, branch)
                repo.refs.set_symbolic_ref(b"HEAD", BRANCH_PREFIX + branch.encode())

        await self._call("checkout", path, _create)

    async def delete_branch(self, path: str, branch: str):
        def _delete():
            with Repo(path) as repo:
                if _head_branch(repo) == BRANCH_PREFIX + branch.encode():
                    raise ValueError(f"Cannot delete the checked out branch '{branch}'")
                porcelain.branch_delete(repo, branch)

        await self._call("branch", path, _delete)


def _head_target(repo: Repo) -> Optional[bytes]:
    """Return the commit HEAD resolves to, None in an empty repository."""
    try:
        return repo.head()
    except KeyError:
        return None
