"""Provide the gitmap core data models."""

import logging
import os
import sys
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

LOGLEVEL = os.environ.get("GITMAP_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("core")
logger.setLevel(LOGLEVEL)


class ConflictError(Exception):
    """Raised when a row with the same unique key already exists."""


class UserInfo(BaseModel):
    """Represent an authenticated user, without credentials."""

    model_config = ConfigDict(extra="ignore")

    id: int
    username: str
    email: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UserInfo":
        """Build the public user view from a `users` row."""
        return cls.model_validate(
            {k: v for k, v in row.items() if k != "password_hash"}
        )


class LoginRequest(BaseModel):
    """Represent a login request."""

    email: Optional[str] = None
    password: Optional[str] = None


class SignupRequest(BaseModel):
    """Represent a signup request."""

    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None


class TokenRequest(BaseModel):
    """Represent a request carrying a bearer token in the body."""

    token: Optional[str] = None


class RepositoryCreate(BaseModel):
    """Represent a repository creation request."""

    model_config = ConfigDict(populate_by_name=True)

    name: Any = None
    description: Optional[str] = None
    is_private: Optional[bool] = Field(default=None, alias="isPrivate")


class RepositoryUpdate(RepositoryCreate):
    """Represent a repository update request, unset fields are kept."""


class FileCreate(BaseModel):
    """Represent a file creation request."""

    model_config = ConfigDict(populate_by_name=True)

    file_path: Optional[str] = Field(default=None, alias="filePath")
    file_name: Optional[str] = Field(default=None, alias="fileName")
    file_content: Optional[str] = Field(default=None, alias="fileContent")
    file_type: Optional[str] = Field(default=None, alias="fileType")


class GitOperationRequest(BaseModel):
    """Represent an operation against a registry-backed repository."""

    model_config = ConfigDict(populate_by_name=True)

    action: Optional[str] = None
    repository_id: Optional[int] = Field(default=None, alias="repositoryId")
    commit_message: Optional[str] = Field(default=None, alias="commitMessage")


class GitCommandRequest(BaseModel):
    """Represent an operation against a repository on the local filesystem."""

    model_config = ConfigDict(populate_by_name=True)

    action: Optional[str] = None
    repo_path: Optional[str] = Field(default=None, alias="repoPath")
    description: Optional[str] = None
    url: Optional[str] = None
    target_path: Optional[str] = Field(default=None, alias="targetPath")
    files: Optional[List[str]] = None
    message: Optional[str] = None
    branch: Optional[str] = None
    count: Optional[int] = None
