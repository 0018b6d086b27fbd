"""FastAPI dependencies for bearer-authenticated endpoints."""
import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from chatpulse.errors import AuthenticationFailure, StoreFailure
from chatpulse.runtime import get_runtime
from chatpulse.store.schemas import User

logger = logging.getLogger(__name__)

_bearer = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> User:
    """Resolve the bearer token to a directory user or answer 401."""
    runtime = get_runtime()
    token = credentials.credentials if credentials else None
    try:
        user_id = runtime.tokens.verify(token)
    except AuthenticationFailure as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        user = await runtime.directory.get_user(user_id)
    except StoreFailure as exc:
        logger.error("[Auth] Directory lookup failed: %s", exc)
        raise HTTPException(status_code=503, detail="User directory unavailable")
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
