"""In-memory map from user id to that user's live session.

The registry is the single source of truth for "who is reachable right
now". It is process-local and starts empty, so every user is offline until
they reconnect after a restart.

Every method is synchronous and never suspends; on a single event loop
registry reads and writes are therefore atomic with respect to each other.
Callers that await between two registry reads must re-read rather than
reuse the first result.
"""
import logging
from typing import TYPE_CHECKING, Dict, List, Optional, Set

if TYPE_CHECKING:
    from chatpulse.session.session import ChatSession

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Holds at most one session per user; the last registration wins."""

    def __init__(self) -> None:
        # user_id -> session currently owning the routing slot
        self._sessions: Dict[int, "ChatSession"] = {}

    def register(self, user_id: int, session: "ChatSession") -> Optional["ChatSession"]:
        """Point ``user_id`` at ``session``.

        Returns:
            The session previously registered for the user, if any.
        """
        previous = self._sessions.get(user_id)
        self._sessions[user_id] = session
        logger.info(
            "[Presence] Registered session %s for user %s (%d online)",
            session.session_id, user_id, len(self._sessions),
        )
        return previous

    def lookup(self, user_id: int) -> Optional["ChatSession"]:
        return self._sessions.get(user_id)

    def route(self, user_id: int) -> Optional["ChatSession"]:
        """Session to push live events to, or None if the user is unreachable.

        A session still registered but already closing (grace window) keeps
        the user online in the roster but receives no pushes.
        """
        session = self._sessions.get(user_id)
        if session is None or not session.is_active:
            return None
        return session

    def remove(self, user_id: int) -> Optional["ChatSession"]:
        """Delete the mapping unconditionally."""
        session = self._sessions.pop(user_id, None)
        if session is not None:
            logger.info(
                "[Presence] Removed session %s for user %s (%d online)",
                session.session_id, user_id, len(self._sessions),
            )
        return session

    def all_online_ids(self) -> Set[int]:
        return set(self._sessions)

    def active_sessions(self) -> List["ChatSession"]:
        """Registered sessions that can currently receive pushes."""
        return [s for s in self._sessions.values() if s.is_active]

    def clear(self) -> None:
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._sessions
