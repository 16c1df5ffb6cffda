"""Operate on git repositories that live on the server's filesystem."""

import asyncio
import logging
import os
import sys
import time
from typing import Dict, List, Optional

from gitmap.git.runner import GitCommandError, GitOperationError, GitRunner

LOGLEVEL = os.environ.get("GITMAP_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("git")
logger.setLevel(LOGLEVEL)

LOCAL_USER_NAME = "GitMap User"
LOCAL_USER_EMAIL = "gitmap@example.com"
INITIAL_COMMIT_MESSAGE = "Initial commit: Add README"

README_TEMPLATE = """# {name}{description}

This repository was created with GitMap.

## Getting Started

This is a new Git repository. Start by adding some files and making your first commit.

```bash
# Add files to staging
git add .

# Make your first commit
git commit -m "Initial commit"
```

## Features

- Git repository management
- File staging and committing
- Branch management
- Remote operations (push, pull, fetch)

## Contributing

1. Fork the repository
2. Create your feature branch (`git checkout -b feature/amazing-feature`)
3. Commit your changes (`git commit -m 'Add some amazing feature'`)
4. Push to the branch (`git push origin feature/amazing-feature`)
5. Open a Pull Request

## License

This project is open source and available under the [MIT License](LICENSE).
"""


def render_readme(name: str, description: Optional[str] = None) -> str:
    description_text = f"\n\n{description}\n" if description else ""
    return README_TEMPLATE.format(name=name, description=description_text)


def scan_repositories(
    root: str, max_depth: int = 6, max_dirs: int = 10000, timeout: float = 10.0
) -> List[str]:
    """Find git repositories below `root`.

    Hidden directories are skipped and the scan does not descend into a
    repository. Unreadable directories are ignored. The walk stops early
    once `max_dirs` directories were visited or `timeout` seconds passed.
    """
    repositories = []
    deadline = time.monotonic() + timeout
    visited = 0
    stack = [(root, 0)]
    while stack:
        if visited >= max_dirs or time.monotonic() >= deadline:
            logger.warning(
                "Stopped scanning %s after visiting %d directories", root, visited
            )
            break
        directory, depth = stack.pop()
        visited += 1
        try:
            with os.scandir(directory) as it:
                subdirs = [e for e in it if e.is_dir(follow_symlinks=False)]
        except OSError:
            continue
        if any(entry.name == ".git" for entry in subdirs):
            repositories.append(directory)
            continue
        if depth >= max_depth:
            continue
        for entry in sorted(subdirs, key=lambda e: e.name, reverse=True):
            if not entry.name.startswith("."):
                stack.append((entry.path, depth + 1))
    return sorted(repositories)


class LocalGitService:
    """Run git actions on paths relative to a home directory."""

    def __init__(
        self,
        runner: GitRunner,
        home_dir: Optional[str] = None,
        scan_max_depth: int = 6,
        scan_max_dirs: int = 10000,
        scan_timeout: float = 10.0,
    ):
        self.runner = runner
        self.home_dir = os.path.abspath(home_dir or os.path.expanduser("~"))
        self.scan_max_depth = scan_max_depth
        self.scan_max_dirs = scan_max_dirs
        self.scan_timeout = scan_timeout

    def resolve(self, path: Optional[str]) -> str:
        """Resolve an absolute path or one relative to the home directory."""
        if not path:
            raise ValueError("repoPath is required")
        if os.path.isabs(path):
            return os.path.normpath(path)
        return os.path.normpath(os.path.join(self.home_dir, path))

    async def status(self, repo_path) -> Dict:
        path = self.resolve(repo_path)
        try:
            status = await self.runner.status(path)
        except (GitCommandError, OSError) as e:
            raise GitOperationError(f"Failed to get repository status: {e}") from e
        return {
            "current": status["current"] or "",
            "tracking": status["tracking"] or "",
            "ahead": status["ahead"],
            "behind": status["behind"],
            "files": status["files"],
        }

    async def init(self, repo_path, description=None) -> Dict:
        """Create a repository with a README commit, unless one exists."""
        path = self.resolve(repo_path)
        try:
            await asyncio.to_thread(os.makedirs, path, exist_ok=True)
            if os.path.exists(os.path.join(path, ".git")):
                return {
                    "success": True,
                    "path": path,
                    "message": "Repository already exists",
                }
            await self.runner.init(path)
            await self.runner.set_identity(path, LOCAL_USER_NAME, LOCAL_USER_EMAIL)
            readme = render_readme(os.path.basename(path), description)
            await asyncio.to_thread(_write_text, os.path.join(path, "README.md"), readme)
            await self.runner.add(path, "README.md")
            await self.runner.commit(path, INITIAL_COMMIT_MESSAGE)
        except (GitCommandError, OSError) as e:
            raise GitOperationError(f"Failed to initialize repository: {e}") from e
        logger.info("Created repository at %s", path)
        return {
            "success": True,
            "path": path,
            "message": "Repository created successfully",
        }

    async def clone(self, url, target_path=None) -> Dict:
        if not url:
            raise ValueError("url is required")
        if target_path:
            path = self.resolve(target_path)
        else:
            name = url.rstrip("/").replace(":", "/").rsplit("/", 1)[-1]
            if name.endswith(".git"):
                name = name[: -len(".git")]
            if not name:
                raise ValueError(f"Cannot derive a directory name from {url}")
            path = os.path.join(self.home_dir, name)
        if os.path.exists(os.path.join(path, ".git")):
            return {"success": True, "path": path, "message": "Repository already exists"}
        try:
            await self.runner.clone(url, path)
        except (GitCommandError, OSError) as e:
            raise GitOperationError(f"Failed to clone repository: {e}") from e
        return {"success": True, "path": path, "message": "Repository cloned successfully"}

    async def _simple(self, description, method, repo_path, *args):
        path = self.resolve(repo_path)
        try:
            await method(path, *args)
        except (GitCommandError, OSError) as e:
            raise GitOperationError(f"Failed to {description}: {e}") from e
        return {"success": True}

    async def add(self, repo_path, files):
        if not files:
            raise ValueError("files are required")
        if isinstance(files, str):
            files = [files]
        return await self._simple("add files", self.runner.add, repo_path, *files)

    async def commit(self, repo_path, message):
        if not message:
            raise ValueError("message is required")
        return await self._simple(
            "commit changes", self.runner.commit, repo_path, message
        )

    async def push(self, repo_path):
        return await self._simple("push changes", self.runner.push, repo_path)

    async def pull(self, repo_path):
        return await self._simple("pull changes", self.runner.pull, repo_path)

    async def fetch(self, repo_path):
        return await self._simple("fetch changes", self.runner.fetch, repo_path)

    async def checkout(self, repo_path, branch):
        if not branch:
            raise ValueError("branch is required")
        return await self._simple(
            "checkout branch", self.runner.checkout, repo_path, branch
        )

    async def create_branch(self, repo_path, branch):
        if not branch:
            raise ValueError("branch is required")
        return await self._simple(
            "create branch", self.runner.create_branch, repo_path, branch
        )

    async def delete_branch(self, repo_path, branch):
        if not branch:
            raise ValueError("branch is required")
        return await self._simple(
            "delete branch", self.runner.delete_branch, repo_path, branch
        )

    async def get_branches(self, repo_path) -> List[Dict]:
        path = self.resolve(repo_path)
        try:
            return await self.runner.branches(path)
        except (GitCommandError, OSError) as e:
            raise GitOperationError(f"Failed to get branches: {e}") from e

    async def get_commits(self, repo_path, count=None) -> List[Dict]:
        count = 10 if count is None else count
        if count < 1:
            raise ValueError("count must be a positive integer")
        path = self.resolve(repo_path)
        try:
            commits = await self.runner.log(path, max_count=count)
        except (GitCommandError, OSError) as e:
            raise GitOperationError(f"Failed to get commits: {e}") from e
        return [
            {
                "hash": commit["hash"],
                "message": commit["message"],
                "author": commit["author_name"],
                "date": commit["date"],
            }
            for commit in commits
        ]

    async def get_repositories(self) -> List[str]:
        try:
            return await asyncio.to_thread(
                scan_repositories,
                self.home_dir,
                self.scan_max_depth,
                self.scan_max_dirs,
                self.scan_timeout,
            )
        except OSError as e:
            raise GitOperationError(f"Failed to get repositories: {e}") from e


def _write_text(path: str, content: str):
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
