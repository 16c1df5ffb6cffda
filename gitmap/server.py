"""Create the gitmap ASGI application."""

import argparse
import logging
import os
import sys
from contextlib import asynccontextmanager
from os import environ as env

from dotenv import find_dotenv, load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gitmap import __version__
from gitmap.core.store import (
    DEFAULT_DATABASE_URI,
    DEFAULT_GIT_URL_TEMPLATE,
    GitMapStore,
    create_storage_adapter,
)
from gitmap.git import (
    GitRunner,
    GitWorkspaceManager,
    LocalGitService,
    create_git_router,
)
from gitmap.git.operations import GitOperationsController
from gitmap.local_auth import LocalAuthController
from gitmap.repository import RepositoryController

LOGLEVEL = os.environ.get("GITMAP_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("server")
logger.setLevel(LOGLEVEL)

ENV_FILE = find_dotenv()
if ENV_FILE:
    load_dotenv(ENV_FILE)

ALLOW_HEADERS = ["Content-Type", "Authorization"]
ALLOW_METHODS = ["*"]


def _format_validation_error(exc: RequestValidationError) -> str:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))
    return "; ".join(messages) or "Invalid request"


def create_application(args):
    """Create a gitmap application."""
    if args.from_env:
        logger.info("Loading arguments from environment variables")
        _args = get_args_from_env()
        # copy the _args to args
        for key, value in _args.__dict__.items():
            setattr(args, key, value)

    if args.allow_origins and isinstance(args.allow_origins, str):
        args.allow_origins = args.allow_origins.split(",")
    elif not args.allow_origins:
        args.allow_origins = env.get("ALLOW_ORIGINS", "*").split(",")

    storage_backend = args.storage_backend
    if args.demo_mode and storage_backend != "memory":
        logger.info("Demo mode is enabled, using the in-memory storage backend")
        storage_backend = "memory"

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await store.init()
        yield
        logger.info("Shutting down GitMap server...")
        await store.teardown()

    application = FastAPI(
        title="GitMap",
        lifespan=lifespan,
        docs_url="/api-docs",
        redoc_url="/api-redoc",
        description="Create, browse and operate on git repositories over HTTP",
        version=__version__,
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=args.allow_origins,
        allow_methods=ALLOW_METHODS,
        allow_headers=ALLOW_HEADERS,
        allow_credentials=True,
    )

    @application.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        return JSONResponse(
            status_code=400, content={"detail": _format_validation_error(exc)}
        )

    storage = create_storage_adapter(
        storage_backend,
        database_uri=args.database_uri,
        rest_url=args.rest_url,
        rest_key=args.rest_key,
    )
    store = GitMapStore(
        application,
        storage,
        jwt_secret=args.jwt_secret,
        demo_mode=args.demo_mode,
        git_url_template=args.git_url_template,
    )
    application.state.store = store

    runner = GitRunner(timeout=args.git_timeout)
    workspace_manager = GitWorkspaceManager(
        runner, mode=args.git_mode, repositories_dir=args.repositories_dir
    )
    local_service = LocalGitService(
        runner,
        home_dir=args.home_dir,
        scan_max_depth=args.scan_max_depth,
        scan_max_dirs=args.scan_max_dirs,
        scan_timeout=args.scan_timeout,
    )

    LocalAuthController(store)
    RepositoryController(store, workspace_manager)
    GitOperationsController(store, workspace_manager, local_service)
    store.register_router(create_git_router())

    @application.get("/health/readiness")
    async def readiness(req: Request) -> JSONResponse:
        """Used for readiness probe."""
        if not store.is_ready():
            return JSONResponse(
                {"status": "DOWN", "detail": "Store is not ready"}, status_code=503
            )
        return JSONResponse({"status": "OK"})

    @application.get("/health/liveness")
    async def liveness(req: Request) -> JSONResponse:
        """Used for liveness probe."""
        return JSONResponse({"status": "OK", "version": __version__})

    return application


def get_args_from_env():
    """Create gitmap arguments from environment variables."""
    parser = get_argparser(add_help=False)
    args = parser.parse_args([])

    # Get the argument types from the parser
    arg_types = {
        action.dest: action.type for action in parser._actions if action.type is not None
    }
    arg_bools = {
        action.dest
        for action in parser._actions
        if isinstance(action, argparse._StoreTrueAction)
    }

    for arg_name in vars(args):
        env_var = "GITMAP_" + arg_name.upper().replace("-", "_")
        if env_var in env:
            value = env[env_var]

            # Handle boolean flags
            if arg_name in arg_bools:
                value = value.lower() in ("true", "1", "yes", "y", "on")
            elif arg_name in arg_types:
                try:
                    value = arg_types[arg_name](value)
                except (ValueError, TypeError) as e:
                    logger.warning(
                        f"Failed to convert environment variable {env_var}={value} "
                        f"to type {arg_types[arg_name]}: {str(e)}"
                    )
                    continue

            setattr(args, arg_name, value)

    return args


def get_argparser(add_help=True):
    """Return the argument parser."""
    parser = argparse.ArgumentParser(add_help=add_help)
    parser.add_argument(
        "--from-env",
        action="store_true",
        help="load arguments from environment variables, the environment variables should be in the format of GITMAP_<ARG_NAME>",
    )
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="host for the gitmap server",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=3000,
        help="port for the gitmap server",
    )
    parser.add_argument(
        "--allow-origins",
        type=str,
        default="*",
        help="comma separated origins allowed by CORS",
    )
    parser.add_argument(
        "--database-uri",
        type=str,
        default=DEFAULT_DATABASE_URI,
        help="the SQLAlchemy async database URI used by the sql storage backend",
    )
    parser.add_argument(
        "--storage-backend",
        type=str,
        choices=["sql", "memory", "rest"],
        default="sql",
        help="where users, repositories and files are stored",
    )
    parser.add_argument(
        "--rest-url",
        type=str,
        default=None,
        help="base URL of the PostgREST-compatible API used by the rest storage backend",
    )
    parser.add_argument(
        "--rest-key",
        type=str,
        default=None,
        help="service key for the rest storage backend",
    )
    parser.add_argument(
        "--jwt-secret",
        type=str,
        default=None,
        help="secret used to sign tokens, defaults to GITMAP_JWT_SECRET or JWT_SECRET",
    )
    parser.add_argument(
        "--demo-mode",
        action="store_true",
        help="enable the shared demo account and in-memory storage",
    )
    parser.add_argument(
        "--git-mode",
        type=str,
        choices=["snapshot", "durable"],
        default="snapshot",
        help="build a throwaway working tree per operation (snapshot) or keep one per repository (durable)",
    )
    parser.add_argument(
        "--repositories-dir",
        type=str,
        default="./data/repositories",
        help="directory holding the working trees in durable git mode",
    )
    parser.add_argument(
        "--home-dir",
        type=str,
        default=None,
        help="base directory for relative paths of the /git endpoint, defaults to the user home",
    )
    parser.add_argument(
        "--git-url-template",
        type=str,
        default=DEFAULT_GIT_URL_TEMPLATE,
        help="template of repository git urls, with {username} and {name} placeholders",
    )
    parser.add_argument(
        "--git-timeout",
        type=float,
        default=120,
        help="timeout in seconds for a single git operation",
    )
    parser.add_argument(
        "--scan-max-depth",
        type=int,
        default=6,
        help="maximum depth of the repository discovery scan",
    )
    parser.add_argument(
        "--scan-max-dirs",
        type=int,
        default=10000,
        help="maximum number of directories visited by the repository discovery scan",
    )
    parser.add_argument(
        "--scan-timeout",
        type=float,
        default=10,
        help="time budget in seconds of the repository discovery scan",
    )
    return parser

