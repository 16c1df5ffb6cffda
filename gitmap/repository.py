"""Provide the repository and file registry endpoints."""

import logging
import os
import sys
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from gitmap.core import ConflictError, FileCreate, RepositoryCreate, RepositoryUpdate
from gitmap.core.store import StorageError
from gitmap.utils import utc_timestamp

LOGLEVEL = os.environ.get("GITMAP_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("repository")
logger.setLevel(LOGLEVEL)

DEFAULT_FILE_TYPE = "application/octet-stream"

FILE_TYPES = {
    "js": "text/javascript",
    "ts": "text/typescript",
    "jsx": "text/jsx",
    "tsx": "text/tsx",
    "html": "text/html",
    "htm": "text/html",
    "css": "text/css",
    "scss": "text/scss",
    "sass": "text/sass",
    "json": "application/json",
    "md": "text/markdown",
    "txt": "text/plain",
    "py": "text/x-python",
    "java": "text/x-java-source",
    "cpp": "text/x-c++src",
    "cc": "text/x-c++src",
    "cxx": "text/x-c++src",
    "c": "text/x-csrc",
    "php": "text/x-php",
    "rb": "text/x-ruby",
    "go": "text/x-go",
    "rs": "text/x-rust",
    "swift": "text/x-swift",
    "kt": "text/x-kotlin",
}


def guess_file_type(file_name: str, content_type: Optional[str] = None) -> str:
    """Pick the media type of a file from its upload header or extension."""
    if content_type and content_type != DEFAULT_FILE_TYPE:
        return content_type
    if "." not in file_name:
        return DEFAULT_FILE_TYPE
    extension = file_name.rsplit(".", 1)[-1].lower()
    return FILE_TYPES.get(extension, DEFAULT_FILE_TYPE)


def _validate_name(name) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValueError("Repository name is required")
    return name.strip()


class RepositoryController:
    """Serve the repository registry of the authenticated user."""

    def __init__(self, store, workspace_manager=None):
        """Register the `/repositories` routes."""
        self.store = store
        self._storage = store.get_storage()
        self._workspaces = workspace_manager
        router = APIRouter(prefix="/repositories")

        @router.get("")
        async def list_repositories(
            user_info=Depends(store.login_required),
        ):
            """List the repositories of the caller, newest first."""
            try:
                return await self.list_repositories(user_info.id)
            except StorageError as e:
                logger.error(f"Storage error while listing repositories: {str(e)}")
                raise HTTPException(status_code=500, detail="Internal server error")

        @router.post("", status_code=201)
        async def create_repository(
            body: RepositoryCreate,
            user_info=Depends(store.login_required),
        ):
            """Create a repository."""
            try:
                repository = await self.create_repository(user_info, body)
                return {
                    "success": True,
                    "repository": repository,
                    "message": "Repository created successfully",
                }
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            except ConflictError:
                raise HTTPException(
                    status_code=409, detail="Repository with this name already exists"
                )
            except StorageError as e:
                logger.error(f"Storage error while creating a repository: {str(e)}")
                raise HTTPException(status_code=500, detail="Internal server error")

        @router.get("/{repository_id}")
        async def get_repository(
            repository_id: int,
            user_info=Depends(store.login_required),
        ):
            """Return one repository of the caller."""
            try:
                return await self.get_repository(user_info.id, repository_id)
            except KeyError:
                raise HTTPException(status_code=404, detail="Repository not found")
            except StorageError as e:
                logger.error(f"Storage error while reading a repository: {str(e)}")
                raise HTTPException(status_code=500, detail="Internal server error")

        @router.put("/{repository_id}")
        async def update_repository(
            repository_id: int,
            body: RepositoryUpdate,
            user_info=Depends(store.login_required),
        ):
            """Update the name, description or visibility of a repository."""
            try:
                return await self.update_repository(user_info, repository_id, body)
            except KeyError:
                raise HTTPException(status_code=404, detail="Repository not found")
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            except ConflictError:
                raise HTTPException(
                    status_code=409, detail="Repository with this name already exists"
                )
            except StorageError as e:
                logger.error(f"Storage error while updating a repository: {str(e)}")
                raise HTTPException(status_code=500, detail="Internal server error")

        @router.delete("/{repository_id}")
        async def delete_repository(
            repository_id: int,
            user_info=Depends(store.login_required),
        ):
            """Delete a repository together with its files."""
            try:
                await self.delete_repository(user_info.id, repository_id)
                return {"success": True}
            except KeyError:
                raise HTTPException(status_code=404, detail="Repository not found")
            except StorageError as e:
                logger.error(f"Storage error while deleting a repository: {str(e)}")
                raise HTTPException(status_code=500, detail="Internal server error")
            except OSError as e:
                logger.error(f"Failed to remove the working tree: {str(e)}")
                raise HTTPException(
                    status_code=500,
                    detail=f"Failed to remove the working tree: {str(e)}",
                )

        @router.get("/{repository_id}/files")
        async def list_files(
            repository_id: int,
            user_info=Depends(store.login_required),
        ):
            """List the files of a repository."""
            try:
                await self.get_repository(user_info.id, repository_id)
                return await self.list_files(repository_id)
            except KeyError:
                raise HTTPException(status_code=404, detail="Repository not found")
            except StorageError as e:
                logger.error(f"Storage error while listing files: {str(e)}")
                raise HTTPException(status_code=500, detail="Internal server error")

        @router.post("/{repository_id}/files", status_code=201)
        async def create_file(
            repository_id: int,
            body: FileCreate,
            user_info=Depends(store.login_required),
        ):
            """Add a file to a repository."""
            try:
                await self.get_repository(user_info.id, repository_id)
                if not body.file_path or not body.file_name:
                    raise ValueError("File path and name are required")
                content = body.file_content or None
                saved = await self.add_file(
                    repository_id,
                    body.file_path,
                    body.file_name,
                    content,
                    len(content or ""),
                    body.file_type or guess_file_type(body.file_name),
                )
                return {
                    "success": True,
                    "file": saved,
                    "message": "File created successfully",
                }
            except KeyError:
                raise HTTPException(status_code=404, detail="Repository not found")
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            except ConflictError:
                raise HTTPException(status_code=409, detail="File already exists")
            except StorageError as e:
                logger.error(f"Storage error while creating a file: {str(e)}")
                raise HTTPException(status_code=500, detail="Internal server error")

        @router.post("/{repository_id}/files/upload", status_code=201)
        async def upload_file(
            repository_id: int,
            file: Optional[UploadFile] = File(None),
            filePath: str = Form("/"),
            user_info=Depends(store.login_required),
        ):
            """Upload a file into a repository."""
            try:
                await self.get_repository(user_info.id, repository_id)
                if file is None or not file.filename:
                    raise ValueError("No file provided")
                raw = await file.read()
                saved = await self.add_file(
                    repository_id,
                    filePath or "/",
                    file.filename,
                    raw.decode("utf-8", errors="replace"),
                    len(raw),
                    guess_file_type(file.filename, file.content_type),
                )
                return {
                    "success": True,
                    "file": saved,
                    "message": "File uploaded successfully",
                }
            except KeyError:
                raise HTTPException(status_code=404, detail="Repository not found")
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            except ConflictError:
                raise HTTPException(status_code=409, detail="File already exists")
            except StorageError as e:
                logger.error(f"Storage error while uploading a file: {str(e)}")
                raise HTTPException(status_code=500, detail="Internal server error")

        @router.delete("/{repository_id}/files/{file_id}")
        async def delete_file(
            repository_id: int,
            file_id: int,
            user_info=Depends(store.login_required),
        ):
            """Remove a file from a repository."""
            try:
                await self.get_repository(user_info.id, repository_id)
                result = await self._storage.run(
                    "delete",
                    "repository_files",
                    where={"id": file_id, "repository_id": repository_id},
                )
                if result.changes == 0:
                    raise HTTPException(status_code=404, detail="File not found")
                return {"success": True}
            except KeyError:
                raise HTTPException(status_code=404, detail="Repository not found")
            except StorageError as e:
                logger.error(f"Storage error while deleting a file: {str(e)}")
                raise HTTPException(status_code=500, detail="Internal server error")

        store.register_router(router)

    async def list_repositories(self, user_id: int):
        return await self._storage.all(
            "repositories", {"user_id": user_id}, order_by=["-created_at", "-id"]
        )

    async def get_repository(self, user_id: int, repository_id: int):
        """Return a repository owned by `user_id` or raise KeyError."""
        repository = await self._storage.get(
            "repositories", {"id": repository_id, "user_id": user_id}
        )
        if repository is None:
            raise KeyError(f"Repository {repository_id} not found")
        return repository

    async def create_repository(self, user_info, body: RepositoryCreate):
        name = _validate_name(body.name)
        if await self._storage.get(
            "repositories", {"user_id": user_info.id, "name": name}
        ):
            raise ConflictError(f"Repository {name} already exists")
        result = await self._storage.run(
            "insert",
            "repositories",
            {
                "user_id": user_info.id,
                "name": name,
                "description": body.description,
                "is_private": bool(body.is_private),
                "git_url": self.store.make_git_url(user_info.username, name),
            },
        )
        logger.info(f"Created repository {name} for user {user_info.username}")
        return await self._storage.get("repositories", {"id": result.last_id})

    async def update_repository(self, user_info, repository_id, body):
        """Apply the fields set in `body`, keeping the others."""
        repository = await self.get_repository(user_info.id, repository_id)
        fields = body.model_dump(exclude_unset=True)
        values = {"updated_at": utc_timestamp()}
        if "name" in fields:
            name = _validate_name(fields["name"])
            if name != repository["name"]:
                if await self._storage.get(
                    "repositories", {"user_id": user_info.id, "name": name}
                ):
                    raise ConflictError(f"Repository {name} already exists")
                values["name"] = name
                values["git_url"] = self.store.make_git_url(user_info.username, name)
        if "description" in fields:
            values["description"] = fields["description"]
        if "is_private" in fields and fields["is_private"] is not None:
            values["is_private"] = bool(fields["is_private"])
        await self._storage.run(
            "update", "repositories", values, {"id": repository_id}
        )
        return await self._storage.get("repositories", {"id": repository_id})

    async def delete_repository(self, user_id: int, repository_id: int):
        await self.get_repository(user_id, repository_id)
        await self._storage.run(
            "delete", "repository_files", where={"repository_id": repository_id}
        )
        await self._storage.run("delete", "repositories", where={"id": repository_id})
        if self._workspaces is not None:
            await self._workspaces.discard(repository_id)
        logger.info(f"Deleted repository {repository_id}")

    async def list_files(self, repository_id: int):
        return await self._storage.all(
            "repository_files",
            {"repository_id": repository_id},
            order_by=["file_path", "file_name"],
        )

    async def add_file(
        self, repository_id, file_path, file_name, content, file_size, file_type
    ):
        """Insert a file row unless the same path and name is taken."""
        if await self._storage.get(
            "repository_files",
            {
                "repository_id": repository_id,
                "file_path": file_path,
                "file_name": file_name,
            },
        ):
            raise ConflictError(f"File {file_path}/{file_name} already exists")
        result = await self._storage.run(
            "insert",
            "repository_files",
            {
                "repository_id": repository_id,
                "file_path": file_path,
                "file_name": file_name,
                "file_content": content,
                "file_size": file_size,
                "file_type": file_type,
            },
        )
        return await self._storage.get("repository_files", {"id": result.last_id})
