"""User directory backed by the ``users`` table.

The relay core only reads users and writes ``online`` / ``last_active``;
registration and credential lookup are used by the REST auth endpoints.
"""
import logging
from typing import List, Optional

import duckdb

from chatpulse.errors import UserExists

from .database import Database, utcnow
from .schemas import User, UserCredentials

logger = logging.getLogger(__name__)

_USER_COLUMNS = "id, username, email, online, last_active"


def _row_to_user(row) -> User:
    return User(
        id=row[0],
        username=row[1],
        email=row[2],
        online=row[3],
        last_active=row[4],
    )


class UserDirectory:
    """Durable user records."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create_user(self, username: str, email: str, password_hash: str) -> User:
        """Insert a new user.

        Raises:
            UserExists: The username or email is already registered.
        """
        def _create(conn: duckdb.DuckDBPyConnection) -> User:
            existing = conn.execute(
                "SELECT username FROM users WHERE username = ? OR email = ?",
                [username, email],
            ).fetchone()
            if existing is not None:
                if existing[0] == username:
                    raise UserExists("Username already taken")
                raise UserExists("Email already registered")
            row = conn.execute(
                f"""
                INSERT INTO users (username, email, password_hash, online, last_active)
                VALUES (?, ?, ?, FALSE, ?)
                RETURNING {_USER_COLUMNS}
                """,
                [username, email, password_hash, utcnow()],
            ).fetchone()
            return _row_to_user(row)

        user = await self._db.run(_create)
        logger.info("[Store] Registered user %s (%s)", user.id, user.username)
        return user

    async def get_user(self, user_id: int) -> Optional[User]:
        def _get(conn: duckdb.DuckDBPyConnection) -> Optional[User]:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", [user_id]
            ).fetchone()
            return _row_to_user(row) if row else None

        return await self._db.run(_get)

    async def get_credentials(self, username: str) -> Optional[UserCredentials]:
        """Look up a user and its password hash by username."""
        def _get(conn: duckdb.DuckDBPyConnection) -> Optional[UserCredentials]:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS}, password_hash FROM users WHERE username = ?",
                [username],
            ).fetchone()
            if row is None:
                return None
            return UserCredentials(
                **_row_to_user(row).model_dump(), password_hash=row[5]
            )

        return await self._db.run(_get)

    async def list_users(self) -> List[User]:
        """Every user, ordered by username."""
        def _list(conn: duckdb.DuckDBPyConnection) -> List[User]:
            rows = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users ORDER BY username"
            ).fetchall()
            return [_row_to_user(row) for row in rows]

        return await self._db.run(_list)

    async def search_users(self, query: str, exclude_id: Optional[int] = None) -> List[User]:
        """Users whose username contains ``query`` (case-insensitive)."""
        def _search(conn: duckdb.DuckDBPyConnection) -> List[User]:
            sql = f"SELECT {_USER_COLUMNS} FROM users WHERE username ILIKE ?"
            params: list = [f"%{query}%"]
            if exclude_id is not None:
                sql += " AND id <> ?"
                params.append(exclude_id)
            rows = conn.execute(sql + " ORDER BY username", params).fetchall()
            return [_row_to_user(row) for row in rows]

        return await self._db.run(_search)

    async def set_online(self, user_id: int, online: bool) -> None:
        """Write back the online flag and refresh ``last_active``."""
        await self._db.run(
            lambda conn: conn.execute(
                "UPDATE users SET online = ?, last_active = ? WHERE id = ?",
                [online, utcnow(), user_id],
            )
        )

    async def touch(self, user_id: int) -> None:
        """Refresh ``last_active`` without changing the online flag."""
        await self._db.run(
            lambda conn: conn.execute(
                "UPDATE users SET last_active = ? WHERE id = ?", [utcnow(), user_id]
            )
        )

    async def reset_online(self) -> int:
        """Mark every user offline. Run at startup when the registry is empty.

        Returns:
            Number of users whose stale online flag was cleared.
        """
        def _reset(conn: duckdb.DuckDBPyConnection) -> int:
            stale = conn.execute("SELECT count(*) FROM users WHERE online").fetchone()[0]
            conn.execute("UPDATE users SET online = FALSE WHERE online")
            return stale

        cleared = await self._db.run(_reset)
        if cleared:
            logger.info("[Store] Reset stale online flag for %d user(s)", cleared)
        return cleared
