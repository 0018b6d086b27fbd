"""Auth router for account and directory endpoints.

Endpoints:
    POST /api/auth/register       - Create an account, returns a token
    POST /api/auth/login          - Exchange credentials for a token
    GET  /api/auth/user           - The caller's own record
    GET  /api/auth/users          - Every other user with live online status
    GET  /api/auth/users/search   - Username substring search
    POST /api/auth/logout         - Refresh last_active and drop the live session
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from chatpulse.config import get_config
from chatpulse.errors import StoreFailure, UserExists
from chatpulse.runtime import get_runtime
from chatpulse.store.schemas import User

from .dependencies import get_current_user
from .service import hash_password, verify_password

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


class RegisterRequest(BaseModel):
    """Request body for account registration."""
    username: str = Field(..., min_length=1, max_length=64)
    email: str = Field(..., min_length=3, max_length=255)
    password: str


class LoginRequest(BaseModel):
    """Request body for login."""
    username: str
    password: str


class TokenResponse(BaseModel):
    token: str
    user: User


def _with_live_status(users: List[User], online_ids) -> List[User]:
    return [user.model_copy(update={"online": user.id in online_ids}) for user in users]


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def register(request: RegisterRequest) -> TokenResponse:
    """Create an account and return a token for it."""
    username = request.username.strip()
    email = request.email.strip().lower()
    if not username:
        raise HTTPException(status_code=400, detail="Username is required")
    if "@" not in email:
        raise HTTPException(status_code=400, detail="A valid email is required")

    min_length = get_config().auth.min_password_length
    if len(request.password) < min_length:
        raise HTTPException(
            status_code=400,
            detail=f"Password must be at least {min_length} characters",
        )

    runtime = get_runtime()
    try:
        user = await runtime.directory.create_user(username, email, hash_password(request.password))
    except UserExists as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except StoreFailure as exc:
        logger.error("[Auth] Registration failed: %s", exc)
        raise HTTPException(status_code=503, detail="Registration failed")

    logger.info("[Auth] Registered user %s (%s)", user.id, user.username)
    return TokenResponse(token=runtime.tokens.issue(user.id), user=user)


@router.post("/login", response_model=TokenResponse)
async def login(request: LoginRequest) -> TokenResponse:
    """Verify credentials and return a token."""
    runtime = get_runtime()
    try:
        credentials = await runtime.directory.get_credentials(request.username.strip())
    except StoreFailure as exc:
        logger.error("[Auth] Login lookup failed: %s", exc)
        raise HTTPException(status_code=503, detail="Login failed")

    if credentials is None or not verify_password(request.password, credentials.password_hash):
        logger.info("[Auth] Failed login for %r", request.username)
        raise HTTPException(status_code=400, detail="Invalid credentials")

    user = User(**credentials.model_dump(exclude={"password_hash"}))
    return TokenResponse(token=runtime.tokens.issue(user.id), user=user)


@router.get("/user", response_model=User)
async def current_user(user: User = Depends(get_current_user)) -> User:
    """Return the caller's own record."""
    online_ids = get_runtime().registry.all_online_ids()
    return user.model_copy(update={"online": user.id in online_ids})


@router.get("/users", response_model=List[User])
async def list_users(user: User = Depends(get_current_user)) -> List[User]:
    """Every other user; ``online`` reflects the live registry."""
    runtime = get_runtime()
    try:
        users = await runtime.directory.list_users()
    except StoreFailure as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    others = [other for other in users if other.id != user.id]
    return _with_live_status(others, runtime.registry.all_online_ids())


@router.get("/users/search", response_model=List[User])
async def search_users(
    query: str = Query(..., min_length=1),
    user: User = Depends(get_current_user),
) -> List[User]:
    runtime = get_runtime()
    try:
        users = await runtime.directory.search_users(query, exclude_id=user.id)
    except StoreFailure as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return _with_live_status(users, runtime.registry.all_online_ids())


@router.post("/logout")
async def logout(user: User = Depends(get_current_user)) -> dict:
    """Refresh ``last_active`` and close the caller's live session, if any."""
    runtime = get_runtime()
    try:
        await runtime.directory.touch(user.id)
    except StoreFailure as exc:
        logger.warning("[Auth] Could not refresh last_active for %s: %s", user.id, exc)
    dropped = await runtime.presence.force_logout(user.id)
    logger.info("[Auth] User %s logged out (live session dropped: %s)", user.id, dropped)
    return {"message": "Logged out successfully"}
