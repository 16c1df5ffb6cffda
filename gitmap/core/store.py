"""Provide the storage adapters and the application store."""

import abc
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import httpx
from fastapi import Request
from sqlalchemy import and_, delete, insert, select, text, update
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import Field, SQLModel, UniqueConstraint

from gitmap.core import ConflictError, UserInfo
from gitmap.core.auth import AuthService
from gitmap.utils import utc_timestamp

LOGLEVEL = os.environ.get("GITMAP_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("store")
logger.setLevel(LOGLEVEL)

DEFAULT_DATABASE_URI = "sqlite+aiosqlite:///./data/gitmap.db"
DEFAULT_GIT_URL_TEMPLATE = "git://localhost:3001/{username}/{name}.git"
CREATE_SCHEMA = "create_schema"


class UserModel(SQLModel, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(unique=True)
    email: str = Field(unique=True)
    password_hash: str
    created_at: Optional[str] = Field(default=None)
    updated_at: Optional[str] = Field(default=None)


class UserSessionModel(SQLModel, table=True):
    __tablename__ = "user_sessions"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", ondelete="CASCADE", index=True)
    token: str = Field(unique=True)
    expires_at: str
    created_at: Optional[str] = Field(default=None)


class RepositoryModel(SQLModel, table=True):
    __tablename__ = "repositories"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", ondelete="CASCADE", index=True)
    name: str
    description: Optional[str] = Field(default=None)
    is_private: bool = Field(default=False)
    # nullable so that rows created before git urls existed can be backfilled
    git_url: Optional[str] = Field(default=None, unique=True)
    git_data: Optional[str] = Field(default=None)
    created_at: Optional[str] = Field(default=None)
    updated_at: Optional[str] = Field(default=None)

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="_user_repository_name_uc"),
    )


class RepositoryFileModel(SQLModel, table=True):
    __tablename__ = "repository_files"

    id: Optional[int] = Field(default=None, primary_key=True)
    repository_id: int = Field(
        foreign_key="repositories.id", ondelete="CASCADE", index=True
    )
    file_path: str
    file_name: str
    file_content: Optional[str] = Field(default=None)
    file_size: int = Field(default=0)
    file_type: Optional[str] = Field(default=None)
    created_at: Optional[str] = Field(default=None)
    updated_at: Optional[str] = Field(default=None)


TABLES = {
    model.__tablename__: model.__table__
    for model in (UserModel, UserSessionModel, RepositoryModel, RepositoryFileModel)
}


class StorageError(Exception):
    """Raised when a backend cannot execute a storage request."""


@dataclass
class RunResult:
    """Outcome of a mutating storage request."""

    last_id: Optional[int] = None
    changes: int = 0


class StorageAdapter(abc.ABC):
    """Uniform get/all/run/exec interface over a backing store.

    `where` is a mapping of column to value, interpreted as ANDed equality
    filters (`None` matches NULL). `order_by` is a list of column names, a
    leading `-` sorts that column in descending order.
    """

    name = "abstract"

    @abc.abstractmethod
    async def get(
        self,
        table: str,
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[Sequence[str]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Return the first matching row or None."""

    @abc.abstractmethod
    async def all(
        self,
        table: str,
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return all matching rows."""

    @abc.abstractmethod
    async def run(
        self,
        action: str,
        table: str,
        values: Optional[Dict[str, Any]] = None,
        where: Optional[Dict[str, Any]] = None,
    ) -> RunResult:
        """Insert, update or delete rows."""

    @abc.abstractmethod
    async def exec(self, statement: str) -> None:
        """Execute a schema or setup statement."""

    async def close(self) -> None:
        """Release backend resources."""

    def _table(self, table: str):
        if table not in TABLES:
            raise StorageError(f"Unknown table: {table}")
        return TABLES[table]

    def _check_columns(self, table: str, columns) -> None:
        sa_table = self._table(table)
        for column in columns:
            if column not in sa_table.c:
                raise StorageError(f"Unknown column {table}.{column}")

    def _parse_order(self, table: str, order_by: Optional[Sequence[str]]):
        parsed = []
        for item in order_by or []:
            descending = item.startswith("-")
            column = item[1:] if descending else item
            self._check_columns(table, [column])
            parsed.append((column, descending))
        return parsed

    def _validate(self, action, table, values, where):
        if action not in ("insert", "update", "delete"):
            raise StorageError(f"Unsupported action: {action}")
        self._check_columns(table, (values or {}).keys())
        self._check_columns(table, (where or {}).keys())
        if action == "insert" and not values:
            raise StorageError("Insert requires values")
        if action == "update" and not values:
            raise StorageError("Update requires values")
        if action in ("update", "delete") and not where:
            raise StorageError(f"Refusing to {action} every row of {table}")

    def _with_timestamps(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        sa_table = self._table(table)
        values = dict(values)
        now = utc_timestamp()
        for column in ("created_at", "updated_at"):
            if column in sa_table.c and values.get(column) is None:
                values[column] = now
        return values


class SQLStorageAdapter(StorageAdapter):
    """Storage adapter over a SQLAlchemy async engine."""

    name = "sql"

    def __init__(self, database_uri: str = DEFAULT_DATABASE_URI, echo=False):
        """Set up the engine, creating the folder of a sqlite database file."""
        url = make_url(database_uri)
        if url.get_backend_name() == "sqlite" and url.database not in (
            None,
            "",
            ":memory:",
        ):
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        if url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:"):
            logger.warning(
                "Using in-memory SQLite database, all data will be lost on restart!"
            )
        self._database_uri = database_uri
        self._engine = create_async_engine(database_uri, echo=echo)

    def get_engine(self):
        return self._engine

    def _where(self, table: str, where):
        sa_table = self._table(table)
        self._check_columns(table, (where or {}).keys())
        clauses = []
        for key, value in (where or {}).items():
            column = sa_table.c[key]
            clauses.append(column.is_(None) if value is None else column == value)
        return and_(*clauses) if clauses else None

    def _select(self, table, where, order_by, limit):
        sa_table = self._table(table)
        query = select(sa_table)
        condition = self._where(table, where)
        if condition is not None:
            query = query.where(condition)
        for column, descending in self._parse_order(table, order_by):
            query = query.order_by(
                sa_table.c[column].desc() if descending else sa_table.c[column]
            )
        if limit is not None:
            query = query.limit(limit)
        return query

    async def get(self, table, where=None, order_by=None):
        rows = await self.all(table, where, order_by, limit=1)
        return rows[0] if rows else None

    async def all(self, table, where=None, order_by=None, limit=None):
        query = self._select(table, where, order_by, limit)
        try:
            async with self._engine.connect() as conn:
                result = await conn.execute(query)
                return [dict(row._mapping) for row in result]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to query {table}: {e}") from e

    async def run(self, action, table, values=None, where=None):
        self._validate(action, table, values, where)
        sa_table = self._table(table)
        if action == "insert":
            statement = insert(sa_table).values(**self._with_timestamps(table, values))
        elif action == "update":
            statement = (
                update(sa_table).where(self._where(table, where)).values(**values)
            )
        else:
            statement = delete(sa_table).where(self._where(table, where))
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(statement)
        except IntegrityError as e:
            raise ConflictError(f"Constraint violated on {table}") from e
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to {action} {table}: {e}") from e
        if action == "insert":
            return RunResult(last_id=result.inserted_primary_key[0], changes=1)
        return RunResult(last_id=None, changes=result.rowcount)

    async def exec(self, statement):
        try:
            async with self._engine.begin() as conn:
                if statement == CREATE_SCHEMA:
                    await conn.run_sync(
                        SQLModel.metadata.create_all, tables=list(TABLES.values())
                    )
                    logger.info("Database tables created successfully.")
                else:
                    await conn.execute(text(statement))
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to execute statement: {e}") from e

    async def close(self):
        await self._engine.dispose()


class MemoryStorageAdapter(StorageAdapter):
    """Storage adapter keeping every table as a list of records in memory."""

    name = "memory"

    def __init__(self):
        """Set up empty tables."""
        self._records: Dict[str, List[Dict[str, Any]]] = {name: [] for name in TABLES}
        self._next_ids: Dict[str, int] = {name: 1 for name in TABLES}
        logger.warning("Using in-memory storage, all data will be lost on restart!")

    def _unique_keys(self, table: str):
        sa_table = self._table(table)
        keys = {(column.name,) for column in sa_table.columns if column.unique}
        for constraint in sa_table.constraints:
            if isinstance(constraint, UniqueConstraint):
                keys.add(tuple(column.name for column in constraint.columns))
        return keys

    def _check_unique(self, table: str, record: Dict[str, Any]) -> None:
        for key in self._unique_keys(table):
            value = tuple(record.get(column) for column in key)
            if any(part is None for part in value):
                continue
            for other in self._records[table]:
                if other["id"] == record["id"]:
                    continue
                if tuple(other.get(column) for column in key) == value:
                    raise ConflictError(f"Constraint violated on {table}")

    @staticmethod
    def _matches(record, where) -> bool:
        return all(record.get(key) == value for key, value in (where or {}).items())

    def _select(self, table, where, order_by, limit):
        self._table(table)
        self._check_columns(table, (where or {}).keys())
        order = self._parse_order(table, order_by)
        rows = [dict(r) for r in self._records[table] if self._matches(r, where)]
        for column, descending in reversed(order):
            rows.sort(
                key=lambda r: (r.get(column) is not None, r.get(column)),
                reverse=descending,
            )
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def get(self, table, where=None, order_by=None):
        rows = self._select(table, where, order_by, 1)
        return rows[0] if rows else None

    async def all(self, table, where=None, order_by=None, limit=None):
        return self._select(table, where, order_by, limit)

    async def run(self, action, table, values=None, where=None):
        self._validate(action, table, values, where)
        records = self._records[table]
        if action == "insert":
            record = {}
            for column in self._table(table).columns:
                default = column.default
                record[column.name] = (
                    default.arg if default is not None and default.is_scalar else None
                )
            record.update(self._with_timestamps(table, values))
            record["id"] = self._next_ids[table]
            self._check_unique(table, record)
            self._next_ids[table] += 1
            records.append(record)
            return RunResult(last_id=record["id"], changes=1)

        matched = [r for r in records if self._matches(r, where)]
        if action == "update":
            for record in matched:
                self._check_unique(table, {**record, **values})
            for record in matched:
                record.update(values)
            return RunResult(changes=len(matched))

        self._records[table] = [r for r in records if not self._matches(r, where)]
        return RunResult(changes=len(matched))

    async def exec(self, statement):
        if statement != CREATE_SCHEMA:
            raise StorageError("The memory backend only supports schema creation")


class RestStorageAdapter(StorageAdapter):
    """Storage adapter over a PostgREST-compatible relational API."""

    name = "rest"

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30,
    ):
        """Set up the http client, `base_url` is the project url."""
        if not base_url:
            raise ValueError("The rest storage backend requires a base url")
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._base_url = base_url.rstrip("/") + "/rest/v1"
        self._headers = headers

    def _filters(self, table, where) -> Dict[str, str]:
        self._check_columns(table, (where or {}).keys())
        params = {}
        for key, value in (where or {}).items():
            if value is None:
                params[key] = "is.null"
            elif isinstance(value, bool):
                params[key] = f"eq.{str(value).lower()}"
            else:
                params[key] = f"eq.{value}"
        return params

    async def _request(self, method, table, params=None, json=None, prefer=None):
        headers = dict(self._headers)
        if prefer:
            headers["Prefer"] = prefer
        try:
            response = await self._client.request(
                method,
                f"{self._base_url}/{table}",
                params=params,
                json=json,
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise StorageError(f"Failed to reach the storage api: {e}") from e
        if response.status_code == 409:
            raise ConflictError(f"Constraint violated on {table}")
        if response.status_code >= 400:
            raise StorageError(
                f"{method} {table} failed with {response.status_code}: {response.text}"
            )
        return response.json() if response.content else []

    async def get(self, table, where=None, order_by=None):
        rows = await self.all(table, where, order_by, limit=1)
        return rows[0] if rows else None

    async def all(self, table, where=None, order_by=None, limit=None):
        self._table(table)
        params = self._filters(table, where)
        order = self._parse_order(table, order_by)
        if order:
            params["order"] = ",".join(
                f"{column}.{'desc' if descending else 'asc'}"
                for column, descending in order
            )
        if limit is not None:
            params["limit"] = str(limit)
        params["select"] = "*"
        return await self._request("GET", table, params=params)

    async def run(self, action, table, values=None, where=None):
        self._validate(action, table, values, where)
        prefer = "return=representation"
        if action == "insert":
            rows = await self._request(
                "POST", table, json=self._with_timestamps(table, values), prefer=prefer
            )
            return RunResult(last_id=rows[0]["id"] if rows else None, changes=len(rows))
        params = self._filters(table, where)
        if action == "update":
            rows = await self._request(
                "PATCH", table, params=params, json=values, prefer=prefer
            )
        else:
            rows = await self._request("DELETE", table, params=params, prefer=prefer)
        return RunResult(changes=len(rows))

    async def exec(self, statement):
        if statement != CREATE_SCHEMA:
            raise StorageError("The rest backend does not execute raw statements")
        # the remote api cannot run DDL, the tables must be provisioned there
        logger.info("Skipping schema creation, tables are managed by the remote database")

    async def close(self):
        if self._owns_client:
            await self._client.aclose()


def create_storage_adapter(
    backend: str = "sql",
    database_uri: Optional[str] = None,
    rest_url: Optional[str] = None,
    rest_key: Optional[str] = None,
) -> StorageAdapter:
    """Create the storage adapter selected by the configuration."""
    if backend == "sql":
        return SQLStorageAdapter(database_uri or DEFAULT_DATABASE_URI)
    if backend == "memory":
        return MemoryStorageAdapter()
    if backend == "rest":
        return RestStorageAdapter(rest_url, api_key=rest_key)
    raise ValueError(f"Unsupported storage backend: {backend}")


class GitMapStore:
    """Hold the storage handle and the authentication service of one app."""

    def __init__(
        self,
        app,
        storage: StorageAdapter,
        jwt_secret: Optional[str] = None,
        demo_mode: bool = False,
        git_url_template: str = DEFAULT_GIT_URL_TEMPLATE,
    ):
        """Set up the store."""
        self._app = app
        self._storage = storage
        self._git_url_template = git_url_template
        self._auth = AuthService(storage, jwt_secret=jwt_secret, demo_mode=demo_mode)
        self._ready = False

    async def init(self):
        """Create the schema and backfill legacy rows."""
        await self._storage.exec(CREATE_SCHEMA)
        await self._backfill_git_urls()
        self._ready = True
        logger.info("Store is ready (storage backend: %s)", self._storage.name)

    async def _backfill_git_urls(self):
        try:
            repositories = await self._storage.all("repositories")
            for repository in repositories:
                if repository.get("git_url"):
                    continue
                owner = await self._storage.get("users", {"id": repository["user_id"]})
                if owner is None:
                    logger.warning(
                        "Repository %s has no owner, cannot backfill git url",
                        repository["id"],
                    )
                    continue
                git_url = self.make_git_url(owner["username"], repository["name"])
                await self._storage.run(
                    "update", "repositories", {"git_url": git_url}, {"id": repository["id"]}
                )
                logger.info(
                    "Updated repository %s with git_url: %s", repository["name"], git_url
                )
        except (StorageError, ConflictError) as e:
            logger.warning("Error updating existing repositories: %s", e)

    async def teardown(self):
        self._ready = False
        await self._storage.close()

    def is_ready(self):
        """Check if the store is initialized."""
        return self._ready

    def get_storage(self) -> StorageAdapter:
        return self._storage

    def get_auth_service(self) -> AuthService:
        return self._auth

    def make_git_url(self, username: str, name: str) -> str:
        """Derive the git url of a repository from its owner and name."""
        return self._git_url_template.format(username=username, name=name)

    async def login_required(self, request: Request) -> UserInfo:
        """Return the user of the bearer token or reject the request."""
        return await self._auth.login_required(request)

    def register_router(self, router):
        """Register a router."""
        self._app.include_router(router)
