"""Append-only message table with monotonic read/seen flags."""
import logging
from enum import Enum
from typing import List, Optional, Tuple

import duckdb

from .database import Database, utcnow
from .schemas import Message, MessageType

logger = logging.getLogger(__name__)

_MESSAGE_COLUMNS = (
    "id, sender_id, recipient_id, group_id, content, message_type, "
    "media_url, is_read, is_seen, created_at"
)


class Receipt(str, Enum):
    """Flag a receipt flips on a message."""
    SEEN = "seen"
    READ = "read"


def _row_to_message(row) -> Message:
    return Message(
        id=row[0],
        sender_id=row[1],
        recipient_id=row[2],
        group_id=row[3],
        content=row[4],
        message_type=MessageType(row[5]),
        media_url=row[6],
        read=row[7],
        seen=row[8],
        created_at=row[9],
    )


class MessageStore:
    """Durable storage for direct and group messages."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create(
        self,
        sender_id: int,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        media_url: Optional[str] = None,
        *,
        recipient_id: Optional[int] = None,
        group_id: Optional[int] = None,
    ) -> Message:
        """Persist a new message and return it with its assigned id.

        Exactly one of ``recipient_id`` / ``group_id`` must be given.
        """
        if (recipient_id is None) == (group_id is None):
            raise ValueError("exactly one of recipient_id or group_id must be set")

        def _insert(conn: duckdb.DuckDBPyConnection) -> Message:
            row = conn.execute(
                f"""
                INSERT INTO messages
                    (sender_id, recipient_id, group_id, content, message_type,
                     media_url, is_read, is_seen, created_at)
                VALUES (?, ?, ?, ?, ?, ?, FALSE, FALSE, ?)
                RETURNING {_MESSAGE_COLUMNS}
                """,
                [
                    sender_id,
                    recipient_id,
                    group_id,
                    content,
                    message_type.value,
                    media_url,
                    utcnow(),
                ],
            ).fetchone()
            return _row_to_message(row)

        message = await self._db.run(_insert)
        logger.debug("[Store] Message %s persisted", message.id)
        return message

    async def get(self, message_id: int) -> Optional[Message]:
        def _get(conn: duckdb.DuckDBPyConnection) -> Optional[Message]:
            row = conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", [message_id]
            ).fetchone()
            return _row_to_message(row) if row else None

        return await self._db.run(_get)

    async def conversation(self, user_id: int, other_user_id: int) -> List[Message]:
        """Every direct message between two users, oldest first.

        Ties on ``created_at`` are broken by ``id``.
        """
        def _query(conn: duckdb.DuckDBPyConnection) -> List[Message]:
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE (sender_id = ? AND recipient_id = ?)
                   OR (sender_id = ? AND recipient_id = ?)
                ORDER BY created_at ASC, id ASC
                """,
                [user_id, other_user_id, other_user_id, user_id],
            ).fetchall()
            return [_row_to_message(row) for row in rows]

        return await self._db.run(_query)

    async def group_messages(self, group_id: int) -> List[Message]:
        def _query(conn: duckdb.DuckDBPyConnection) -> List[Message]:
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE group_id = ?
                ORDER BY created_at ASC, id ASC
                """,
                [group_id],
            ).fetchall()
            return [_row_to_message(row) for row in rows]

        return await self._db.run(_query)

    async def mark(self, message_id: int, receipt: Receipt) -> Tuple[Optional[Message], bool]:
        """Flip a receipt flag false→true.

        Marking ``seen`` also marks ``read``. The check and the update run
        under the store lock, so concurrent marks produce one transition.

        Returns:
            ``(message, changed)``; ``message`` is None for an unknown id and
            ``changed`` is False when the flag was already set.
        """
        def _mark(conn: duckdb.DuckDBPyConnection) -> Tuple[Optional[Message], bool]:
            row = conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", [message_id]
            ).fetchone()
            if row is None:
                return None, False
            message = _row_to_message(row)
            if getattr(message, receipt.value):
                return message, False
            if receipt is Receipt.SEEN:
                conn.execute(
                    "UPDATE messages SET is_seen = TRUE, is_read = TRUE WHERE id = ?",
                    [message_id],
                )
                message = message.model_copy(update={"seen": True, "read": True})
            else:
                conn.execute("UPDATE messages SET is_read = TRUE WHERE id = ?", [message_id])
                message = message.model_copy(update={"read": True})
            return message, True

        return await self._db.run(_mark)
