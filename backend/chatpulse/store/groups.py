"""Group and group membership storage."""
import logging
from typing import Iterable, List, Optional

import duckdb

from .database import Database, utcnow
from .schemas import Group

logger = logging.getLogger(__name__)


def _load_members(conn: duckdb.DuckDBPyConnection, group_id: int) -> List[int]:
    rows = conn.execute(
        "SELECT user_id FROM group_members WHERE group_id = ? ORDER BY user_id",
        [group_id],
    ).fetchall()
    return [row[0] for row in rows]


class GroupStore:
    """Durable groups; the admin is always stored as a member."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create_group(self, name: str, admin_id: int, member_ids: Iterable[int]) -> Group:
        members = sorted({admin_id, *member_ids})

        def _create(conn: duckdb.DuckDBPyConnection) -> Group:
            row = conn.execute(
                """
                INSERT INTO chat_groups (name, admin_id, created_at)
                VALUES (?, ?, ?)
                RETURNING id, name, admin_id, created_at
                """,
                [name, admin_id, utcnow()],
            ).fetchone()
            conn.executemany(
                "INSERT INTO group_members (group_id, user_id) VALUES (?, ?)",
                [[row[0], member] for member in members],
            )
            return Group(
                id=row[0], name=row[1], admin_id=row[2], created_at=row[3],
                member_ids=members,
            )

        group = await self._db.run(_create)
        logger.info("[Store] Group %s '%s' created with %d members", group.id, name, len(members))
        return group

    async def get_group(self, group_id: int) -> Optional[Group]:
        def _get(conn: duckdb.DuckDBPyConnection) -> Optional[Group]:
            row = conn.execute(
                "SELECT id, name, admin_id, created_at FROM chat_groups WHERE id = ?",
                [group_id],
            ).fetchone()
            if row is None:
                return None
            return Group(
                id=row[0], name=row[1], admin_id=row[2], created_at=row[3],
                member_ids=_load_members(conn, row[0]),
            )

        return await self._db.run(_get)

    async def groups_for_user(self, user_id: int) -> List[Group]:
        def _list(conn: duckdb.DuckDBPyConnection) -> List[Group]:
            rows = conn.execute(
                """
                SELECT g.id, g.name, g.admin_id, g.created_at
                FROM chat_groups g
                INNER JOIN group_members gm ON g.id = gm.group_id
                WHERE gm.user_id = ?
                ORDER BY g.id
                """,
                [user_id],
            ).fetchall()
            return [
                Group(
                    id=row[0], name=row[1], admin_id=row[2], created_at=row[3],
                    member_ids=_load_members(conn, row[0]),
                )
                for row in rows
            ]

        return await self._db.run(_list)

    async def member_ids(self, group_id: int) -> List[int]:
        return await self._db.run(_load_members, group_id)

    async def is_member(self, group_id: int, user_id: int) -> bool:
        def _check(conn: duckdb.DuckDBPyConnection) -> bool:
            row = conn.execute(
                "SELECT 1 FROM group_members WHERE group_id = ? AND user_id = ?",
                [group_id, user_id],
            ).fetchone()
            return row is not None

        return await self._db.run(_check)
