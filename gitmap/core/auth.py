"""Provide authentication."""

import asyncio
import datetime
import logging
import os
import sys
import uuid
from calendar import timegm
from os import environ as env
from typing import Any, Dict, Optional

import bcrypt
from dotenv import find_dotenv, load_dotenv
from fastapi import HTTPException, Request
from jose import JWTError, jwt

from gitmap.core import ConflictError, UserInfo
from gitmap.utils import parse_timestamp, utc_now, utc_timestamp

LOGLEVEL = os.environ.get("GITMAP_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("auth")
logger.setLevel(LOGLEVEL)

ENV_FILE = find_dotenv()
if ENV_FILE:
    load_dotenv(ENV_FILE)

DEFAULT_JWT_SECRET = "your-secret-key-change-in-production"
JWT_ALGORITHM = "HS256"
TOKEN_LIFETIME = datetime.timedelta(days=7)
BCRYPT_ROUNDS = 12
MIN_PASSWORD_LENGTH = 6

DEMO_USERNAME = "demo"
DEMO_EMAIL = "demo@gitmap.com"
DEMO_PASSWORD = "demo123"


def _get_jwt_secret():
    """Get the JWT secret from the environment."""
    secret = env.get("GITMAP_JWT_SECRET") or env.get("JWT_SECRET")
    if not secret:
        logger.warning(
            "Neither GITMAP_JWT_SECRET nor JWT_SECRET is defined, "
            "using the insecure default secret"
        )
        secret = DEFAULT_JWT_SECRET
    return secret


def hash_password(password: str) -> str:
    """Hash a password with bcrypt."""
    if not isinstance(password, str) or not password:
        raise ValueError("Password must be a non-empty string")
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Check a password against a stored bcrypt hash."""
    if not isinstance(password, str) or not isinstance(password_hash, str):
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # not a bcrypt hash
        return False


def generate_token(user_id: int, username: str, email: str, secret: str) -> str:
    """Generate a signed bearer token valid for seven days."""
    issued_at = utc_now()
    claims = {
        "sub": str(user_id),
        "user_id": user_id,
        "username": username,
        "email": email,
        "iat": timegm(issued_at.utctimetuple()),
        "exp": timegm((issued_at + TOKEN_LIFETIME).utctimetuple()),
        # two tokens issued within the same second must still differ
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(claims, secret, algorithm=JWT_ALGORITHM)


def valid_token(token: str, secret: str) -> Dict[str, Any]:
    """Validate the signature and expiry of a token and return its claims."""
    if not token:
        raise HTTPException(status_code=401, detail="No token provided")
    try:
        payload = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError as err:
        raise HTTPException(status_code=401, detail="Invalid token") from err
    except JWTError as err:
        raise HTTPException(status_code=401, detail="Invalid token") from err
    if not isinstance(payload.get("user_id"), int):
        raise HTTPException(status_code=401, detail="Invalid token")
    return payload


class AuthService:
    """Issue, verify and revoke user sessions."""

    def __init__(self, storage, jwt_secret: Optional[str] = None, demo_mode=False):
        """Set up the service on top of a storage adapter."""
        self._storage = storage
        self._secret = jwt_secret or _get_jwt_secret()
        self._demo_mode = demo_mode

    @property
    def demo_mode(self):
        return self._demo_mode

    async def _create_session(self, user: Dict[str, Any]) -> str:
        token = generate_token(
            user["id"], user["username"], user["email"], self._secret
        )
        await self._storage.run(
            "insert",
            "user_sessions",
            {
                "user_id": user["id"],
                "token": token,
                "expires_at": utc_timestamp(TOKEN_LIFETIME),
            },
        )
        return token

    async def signup(self, username, email, password) -> Dict[str, Any]:
        """Register a user and open a session for it."""
        if not username or not email or not password:
            raise ValueError("Username, email, and password are required")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValueError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
            )
        if await self._storage.get("users", {"username": username}) or (
            await self._storage.get("users", {"email": email})
        ):
            raise ConflictError("User with this email or username already exists")

        password_hash = await asyncio.to_thread(hash_password, password)
        result = await self._storage.run(
            "insert",
            "users",
            {"username": username, "email": email, "password_hash": password_hash},
        )
        user = await self._storage.get("users", {"id": result.last_id})
        token = await self._create_session(user)
        logger.info("Registered user %s (id: %s)", username, user["id"])
        return {"user": UserInfo.from_row(user), "token": token}

    async def _ensure_demo_user(self) -> Dict[str, Any]:
        user = await self._storage.get("users", {"email": DEMO_EMAIL})
        if user is None:
            password_hash = await asyncio.to_thread(hash_password, DEMO_PASSWORD)
            result = await self._storage.run(
                "insert",
                "users",
                {
                    "username": DEMO_USERNAME,
                    "email": DEMO_EMAIL,
                    "password_hash": password_hash,
                },
            )
            user = await self._storage.get("users", {"id": result.last_id})
            logger.info("Created the demo user (id: %s)", user["id"])
        return user

    async def login(self, email, password) -> Dict[str, Any]:
        """Check credentials and open a session."""
        if not email or not password:
            raise ValueError("Email and password are required")

        if self._demo_mode and email == DEMO_EMAIL and password == DEMO_PASSWORD:
            user = await self._ensure_demo_user()
            # a single live session for the shared demo account
            await self._storage.run("delete", "user_sessions", where={"user_id": user["id"]})
            token = await self._create_session(user)
            return {"user": UserInfo.from_row(user), "token": token}

        user = await self._storage.get("users", {"email": email})
        if user is None or not await asyncio.to_thread(
            verify_password, password, user["password_hash"]
        ):
            raise HTTPException(status_code=401, detail="Invalid credentials")
        token = await self._create_session(user)
        logger.info("User %s logged in", user["username"])
        return {"user": UserInfo.from_row(user), "token": token}

    async def verify_token(self, token: str) -> UserInfo:
        """Resolve a token to its user, requiring a live session."""
        if not token:
            raise ValueError("Token is required")
        claims = valid_token(token, self._secret)
        session = await self._storage.get(
            "user_sessions", {"token": token, "user_id": claims["user_id"]}
        )
        if session is None:
            raise HTTPException(status_code=401, detail="Session expired or invalid")
        expires_at = parse_timestamp(session["expires_at"])
        if expires_at is None or expires_at <= utc_now():
            raise HTTPException(status_code=401, detail="Session expired or invalid")
        user = await self._storage.get("users", {"id": claims["user_id"]})
        if user is None:
            raise KeyError("User not found")
        return UserInfo.from_row(user)

    async def logout(self, token: str) -> bool:
        """Delete the session of a token, returning whether one existed."""
        if not token:
            raise ValueError("Token is required")
        valid_token(token, self._secret)
        result = await self._storage.run(
            "delete", "user_sessions", where={"token": token}
        )
        return result.changes > 0

    async def login_required(self, request: Request) -> UserInfo:
        """Return the user of the `Authorization: Bearer` header."""
        authorization = request.headers.get("Authorization")
        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(status_code=401, detail="No token provided")
        token = authorization[len("Bearer ") :].strip()
        if not token:
            raise HTTPException(status_code=401, detail="No token provided")
        try:
            return await self.verify_token(token)
        except (HTTPException, KeyError) as err:
            raise HTTPException(status_code=401, detail="Invalid token") from err
