"""Provide the git operation endpoints."""

import logging
import os
import sys

from fastapi import APIRouter, Depends, HTTPException

from gitmap.core import GitCommandRequest, GitOperationRequest
from gitmap.core.store import StorageError
from gitmap.git.local import LocalGitService
from gitmap.git.runner import GitCommandError, GitOperationError
from gitmap.git.workspace import GitWorkspaceManager
from gitmap.utils import utc_timestamp

LOGLEVEL = os.environ.get("GITMAP_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("git")
logger.setLevel(LOGLEVEL)


class GitOperationsController:
    """Serve `/git-operations` for registry repositories and `/git` for local ones."""

    def __init__(
        self,
        store,
        workspace_manager: GitWorkspaceManager,
        local_service: LocalGitService,
    ):
        self.store = store
        self._storage = store.get_storage()
        self._workspaces = workspace_manager
        self._local = local_service
        self._local_actions = {
            "status": lambda p: self._local.status(p.repo_path),
            "init": lambda p: self._local.init(p.repo_path, p.description),
            "clone": lambda p: self._local.clone(p.url, p.target_path),
            "add": lambda p: self._local.add(p.repo_path, p.files),
            "commit": lambda p: self._local.commit(p.repo_path, p.message),
            "push": lambda p: self._local.push(p.repo_path),
            "pull": lambda p: self._local.pull(p.repo_path),
            "fetch": lambda p: self._local.fetch(p.repo_path),
            "checkout": lambda p: self._local.checkout(p.repo_path, p.branch),
            "createBranch": lambda p: self._local.create_branch(p.repo_path, p.branch),
            "deleteBranch": lambda p: self._local.delete_branch(p.repo_path, p.branch),
            "getBranches": lambda p: self._local.get_branches(p.repo_path),
            "getCommits": lambda p: self._local.get_commits(p.repo_path, p.count),
            "getRepositories": lambda p: self._local.get_repositories(),
        }
        router = APIRouter()

        @router.post("/git-operations")
        async def git_operations(
            body: GitOperationRequest,
            user_info=Depends(store.login_required),
        ):
            """Run an action on a fresh working tree built from the registry."""
            try:
                return await self.run_operation(user_info, body)
            except KeyError:
                raise HTTPException(status_code=404, detail="Repository not found")
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            except StorageError as e:
                logger.error(f"Storage error during git operation: {str(e)}")
                raise HTTPException(status_code=500, detail="Internal server error")
            except (GitCommandError, OSError) as e:
                logger.error(f"Git operation {body.action} failed: {str(e)}")
                raise HTTPException(
                    status_code=500, detail=f"Failed to {body.action}"
                )

        @router.post("/git")
        async def git_command(
            body: GitCommandRequest,
            user_info=Depends(store.login_required),
        ):
            """Run an action on a repository of the server's filesystem."""
            handler = self._local_actions.get(body.action)
            if handler is None:
                raise HTTPException(status_code=400, detail="Unknown action")
            try:
                return await handler(body)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            except GitOperationError as e:
                logger.error(f"Git action {body.action} failed: {str(e)}")
                raise HTTPException(status_code=500, detail=str(e))

        store.register_router(router)

    async def run_operation(self, user_info, body: GitOperationRequest):
        """Materialize the repository files, commit once and run the action."""
        if not body.action or body.repository_id is None:
            raise ValueError("action and repositoryId are required")
        repository = await self._storage.get(
            "repositories", {"id": body.repository_id, "user_id": user_info.id}
        )
        if repository is None:
            raise KeyError(f"Repository {body.repository_id} not found")
        files = await self._storage.all(
            "repository_files",
            {"repository_id": repository["id"]},
            order_by=["file_path", "file_name"],
        )

        async with self._workspaces.open(
            repository, files, user_info, body.commit_message
        ) as workspace:
            runner = self._workspaces.runner
            action = body.action
            if action == "status":
                status = await runner.status(workspace.path)
                return {"success": True, "status": status, "files": files}
            if action == "commit":
                if not workspace.committed:
                    return {"success": True, "message": "No changes to commit"}
                return {
                    "success": True,
                    "message": "Changes committed successfully",
                    "commit": workspace.commit,
                }
            if action == "push":
                await self._storage.run(
                    "update",
                    "repositories",
                    {"updated_at": utc_timestamp()},
                    {"id": repository["id"]},
                )
                return {
                    "success": True,
                    "message": "Changes pushed successfully (simulated)",
                    "gitUrl": repository["git_url"],
                    "simulated": True,
                }
            if action == "pull":
                return {
                    "success": True,
                    "message": "Repository pulled successfully (simulated)",
                    "files": files,
                    "simulated": True,
                }
            if action == "log":
                return {"success": True, "log": await runner.log(workspace.path)}
            if action == "branch":
                branches = await runner.branches(workspace.path)
                return {
                    "success": True,
                    "branches": [branch["name"] for branch in branches],
                    "current": await runner.current_branch(workspace.path),
                }
            return {
                "success": True,
                "message": "Git operation completed",
                "files": files,
            }
