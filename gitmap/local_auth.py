"""Provide the account endpoints backed by local credentials."""

import logging
import os
import sys

from fastapi import APIRouter, HTTPException, Request

from gitmap.core import ConflictError, LoginRequest, SignupRequest, TokenRequest
from gitmap.core.store import StorageError

LOGLEVEL = os.environ.get("GITMAP_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("auth")
logger.setLevel(LOGLEVEL)


class LocalAuthController:
    """Serve signup, login, token verification and logout."""

    def __init__(self, store):
        """Register the `/auth` routes on the store's application."""
        self.store = store
        self._auth = store.get_auth_service()
        router = APIRouter(prefix="/auth")

        @router.post("/signup")
        async def signup(body: SignupRequest):
            """Create an account and return a session token."""
            try:
                result = await self._auth.signup(
                    body.username, body.email, body.password
                )
                return {
                    "success": True,
                    "user": result["user"].model_dump(),
                    "token": result["token"],
                }
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            except ConflictError:
                raise HTTPException(
                    status_code=409,
                    detail="User with this email or username already exists",
                )
            except StorageError as e:
                logger.error(f"Storage error during signup: {str(e)}")
                raise HTTPException(status_code=500, detail="Internal server error")

        @router.post("/login")
        async def login(body: LoginRequest):
            """Exchange credentials for a session token."""
            try:
                result = await self._auth.login(body.email, body.password)
                return {
                    "success": True,
                    "user": result["user"].model_dump(),
                    "token": result["token"],
                }
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            except StorageError as e:
                logger.error(f"Storage error during login: {str(e)}")
                raise HTTPException(status_code=500, detail="Internal server error")

        @router.post("/verify")
        async def verify(body: TokenRequest):
            """Resolve a token to its user."""
            try:
                user = await self._auth.verify_token(body.token)
                return {"success": True, "user": user.model_dump()}
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            except KeyError:
                raise HTTPException(status_code=404, detail="User not found")
            except StorageError as e:
                logger.error(f"Storage error during token verification: {str(e)}")
                raise HTTPException(status_code=500, detail="Internal server error")

        @router.post("/logout")
        async def logout(request: Request):
            """Revoke the session of the bearer token."""
            token = None
            authorization = request.headers.get("Authorization", "")
            if authorization.startswith("Bearer "):
                token = authorization[len("Bearer ") :].strip()
            if not token:
                try:
                    body = await request.json()
                except ValueError:
                    body = None
                if isinstance(body, dict):
                    token = body.get("token")
            try:
                revoked = await self._auth.logout(token)
                return {"success": True, "revoked": revoked}
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            except StorageError as e:
                logger.error(f"Storage error during logout: {str(e)}")
                raise HTTPException(status_code=500, detail="Internal server error")

        store.register_router(router)
