"""Registration lifecycle: activation, grace-window removal and eviction.

Removal policy:
    With ``grace_seconds > 0`` a disconnecting session keeps its registry
    slot for the grace window. If the same user reconnects inside the window
    the new session takes the slot in place and no user_offline/user_online
    pair is broadcast. When the window elapses, the slot is removed only if
    it is still held by the session that disconnected (compared by identity,
    not by user id). ``grace_seconds == 0`` removes synchronously.

Duplicate logins:
    A second session for a user whose current session is still active
    evicts the older one (``session_replaced`` then close). The registry
    always routes to the newest session.

Ordering:
    Registry mutation and the matching incremental broadcast happen with no
    store access in between; the directory write-back comes afterwards and
    is only a lagging cache, so a failure there is logged and ignored.
"""
import asyncio
import logging
from typing import TYPE_CHECKING, Dict, Set

from chatpulse.errors import StoreFailure
from chatpulse.store.directory import UserDirectory

from .broadcaster import PresenceBroadcaster
from .registry import ConnectionRegistry

if TYPE_CHECKING:
    from chatpulse.session.session import ChatSession

logger = logging.getLogger(__name__)


class PresenceManager:
    """Owns session registration and the grace-window timers."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        broadcaster: PresenceBroadcaster,
        directory: UserDirectory,
        grace_seconds: float = 5.0,
    ) -> None:
        self.registry = registry
        self.broadcaster = broadcaster
        self._directory = directory
        self.grace_seconds = grace_seconds

        # user_id -> pending removal timer
        self._pending: Dict[int, asyncio.Task] = {}
        # timers past their window, removing the user
        self._expiring: Set[asyncio.Task] = set()

    # =========================================================================
    # Activation
    # =========================================================================

    async def activate(self, session: "ChatSession") -> None:
        """Register an authenticated session and announce the transition."""
        user_id = session.user_id
        self._cancel_pending(user_id)

        previous = self.registry.register(user_id, session)
        if previous is not None and previous is not session and previous.is_active:
            logger.info(
                "[Presence] User %s signed in again; evicting session %s",
                user_id, previous.session_id,
            )
            await previous.evict("signed_in_elsewhere")

        if previous is None:
            await self.broadcaster.announce_online(session.user)
        else:
            logger.info("[Presence] User %s reconnected, slot replaced in place", user_id)

        await self._write_back(user_id, True)
        await self._send_snapshot()

    # =========================================================================
    # Release
    # =========================================================================

    async def release(self, session: "ChatSession") -> None:
        """Handle a session leaving ACTIVE.

        Does nothing if the session no longer owns its user's slot (it was
        evicted, or a newer session already registered).
        """
        user_id = session.user_id
        if self.registry.lookup(user_id) is not session:
            logger.debug("[Presence] Session %s no longer owns user %s", session.session_id, user_id)
            return

        if self.grace_seconds <= 0:
            await self._expire(session)
            return

        self._cancel_pending(user_id)
        self._pending[user_id] = asyncio.create_task(self._expire_after_grace(session))
        logger.info(
            "[Presence] User %s disconnected; removal in %.1fs unless they reconnect",
            user_id, self.grace_seconds,
        )

    async def force_logout(self, user_id: int) -> bool:
        """Close the user's session and remove them immediately.

        Returns:
            True if the user was registered.
        """
        self._cancel_pending(user_id)
        session = self.registry.lookup(user_id)
        if session is None:
            return False
        if session.is_active:
            await session.evict("logged_out")
        return await self._expire(session)

    async def _expire_after_grace(self, session: "ChatSession") -> None:
        user_id = session.user_id
        task = asyncio.current_task()
        await asyncio.sleep(self.grace_seconds)
        if self._pending.get(user_id) is task:
            del self._pending[user_id]
        # No longer cancellable by a reconnect, but shutdown still waits for it.
        self._expiring.add(task)
        try:
            await self._expire(session)
        except Exception:
            logger.exception("[Presence] Removal of user %s failed", user_id)
        finally:
            self._expiring.discard(task)

    async def _expire(self, session: "ChatSession") -> bool:
        user_id = session.user_id
        if self.registry.lookup(user_id) is not session:
            return False
        self.registry.remove(user_id)
        await self.broadcaster.announce_offline(user_id)
        await self._write_back(user_id, False)
        await self._send_snapshot()
        return True

    # =========================================================================
    # Helpers
    # =========================================================================

    def _cancel_pending(self, user_id: int) -> None:
        task = self._pending.pop(user_id, None)
        if task is not None and not task.done():
            task.cancel()
            logger.debug("[Presence] Cancelled pending removal for user %s", user_id)

    def pending_removals(self) -> int:
        return sum(1 for task in self._pending.values() if not task.done())

    async def _write_back(self, user_id: int, online: bool) -> None:
        try:
            await self._directory.set_online(user_id, online)
        except StoreFailure as exc:
            logger.warning(
                "[Presence] Could not persist online=%s for user %s: %s", online, user_id, exc
            )

    async def _send_snapshot(self) -> None:
        try:
            await self.broadcaster.broadcast_snapshot()
        except StoreFailure as exc:
            logger.warning("[Presence] Snapshot after transition skipped: %s", exc)

    async def shutdown(self) -> None:
        """Cancel every pending removal timer and the periodic snapshot.

        Removals already past their grace window run to completion first.
        """
        tasks = [task for task in self._pending.values() if not task.done()]
        self._pending.clear()
        for task in tasks:
            task.cancel()
        in_flight = list(self._expiring)
        if tasks or in_flight:
            await asyncio.gather(*tasks, *in_flight, return_exceptions=True)
        await self.broadcaster.stop()
        logger.info("[Presence] Shutdown complete (%d timer(s) cancelled)", len(tasks))
