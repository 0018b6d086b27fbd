"""Credential issuance and verification.

Tokens are HS256 JWTs whose ``sub`` claim is the stringified user id.
The websocket layer treats ``TokenService.verify`` as the opaque identity
verifier: a token in, a user id out, or ``AuthenticationFailure``.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from chatpulse.errors import AuthenticationFailure

logger = logging.getLogger(__name__)

_pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    """Hash a password for storage."""
    return _pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    """Check a password against its stored hash."""
    if not hashed:
        return False
    try:
        return _pwd_context.verify(password, hashed)
    except ValueError:
        logger.warning("[Auth] Stored password hash is not recognised")
        return False


class TokenService:
    """Issues and verifies access tokens."""

    def __init__(self, secret_key: str, algorithm: str = "HS256", expire_minutes: int = 1440) -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm
        self.expire_minutes = expire_minutes

    def issue(self, user_id: int, expires_in: Optional[timedelta] = None) -> str:
        """Create a signed token for ``user_id``."""
        expire = datetime.now(timezone.utc) + (expires_in or timedelta(minutes=self.expire_minutes))
        return jwt.encode(
            {"sub": str(user_id), "exp": expire},
            self._secret_key,
            algorithm=self._algorithm,
        )

    def verify(self, token: Optional[str]) -> int:
        """Resolve a token to the user id it was issued for.

        Raises:
            AuthenticationFailure: Missing, expired, malformed or badly signed
                token, or a subject that is not a user id.
        """
        if not token:
            raise AuthenticationFailure("Authentication token is required")
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except ExpiredSignatureError as exc:
            raise AuthenticationFailure("Authentication token has expired") from exc
        except JWTError as exc:
            raise AuthenticationFailure("Invalid authentication token") from exc

        subject = payload.get("sub")
        try:
            return int(subject)
        except (TypeError, ValueError) as exc:
            raise AuthenticationFailure("Invalid authentication token") from exc
