"""Git support for gitmap repositories.

Key components:
- GitRunner: async wrapper around dulwich repository operations
- GitWorkspaceManager: working trees built from registry files
- LocalGitService: actions on repositories of the server's filesystem
- create_git_router: FastAPI endpoints for the Git Smart HTTP handshake
"""

from gitmap.git.runner import GitCommandError, GitOperationError, GitRunner
from gitmap.git.workspace import GitWorkspaceManager
from gitmap.git.local import LocalGitService
from gitmap.git.http import create_git_router

__all__ = [
    "GitCommandError",
    "GitOperationError",
    "GitRunner",
    "GitWorkspaceManager",
    "LocalGitService",
    "create_git_router",
]
