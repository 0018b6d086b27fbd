"""Presence broadcasting: incremental transitions plus periodic snapshots.

Two channels keep every client's roster eventually consistent:
    - user_online / user_offline, emitted once per registry transition
    - roster_snapshot, recomputed on a fixed interval and after every
      transition; a client that missed an incremental event converges
      within one interval

The snapshot's ``online`` flag is always derived from the registry at the
moment of broadcast, never from the directory's persisted flag.

Performance Notes:
    - Broadcasting uses asyncio.gather() for concurrent delivery
    - The snapshot payload is O(total users); switching to delta-only
      broadcasts is the path forward if the user base grows large
"""
import asyncio
import logging
from typing import Optional

from pydantic import BaseModel

from chatpulse.errors import StoreFailure
from chatpulse.protocol import RosterSnapshot, UserOffline, UserOnline
from chatpulse.store.directory import UserDirectory
from chatpulse.store.schemas import RosterEntry, User

from .registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class PresenceBroadcaster:
    """Fans presence events out to every active session.

    Attributes:
        interval: Seconds between periodic roster snapshots.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        directory: UserDirectory,
        interval: float = 5.0,
    ) -> None:
        self._registry = registry
        self._directory = directory
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    async def broadcast(self, notification: BaseModel) -> int:
        """Send a notification to every active session concurrently.

        Returns:
            Number of sessions that accepted the notification.
        """
        sessions = self._registry.active_sessions()
        if not sessions:
            return 0
        results = await asyncio.gather(
            *[session.notify(notification) for session in sessions],
            return_exceptions=True,
        )
        return sum(1 for result in results if result is True)

    async def announce_online(self, user: User) -> None:
        logger.info("[Presence] User %s (%s) is online", user.id, user.username)
        await self.broadcast(UserOnline(id=user.id, username=user.username))

    async def announce_offline(self, user_id: int) -> None:
        logger.info("[Presence] User %s is offline", user_id)
        await self.broadcast(UserOffline(id=user_id))

    async def build_snapshot(self) -> RosterSnapshot:
        """Recompute the roster from the directory and the registry."""
        users = await self._directory.list_users()
        # Read the registry after the directory await, not before it.
        online_ids = self._registry.all_online_ids()
        roster = [
            RosterEntry(
                id=user.id,
                username=user.username,
                online=user.id in online_ids,
                last_active=user.last_active,
            )
            for user in users
        ]
        return RosterSnapshot(all=roster, online=[entry for entry in roster if entry.online])

    async def broadcast_snapshot(self) -> bool:
        """Broadcast a full roster snapshot.

        Skipped entirely when nobody is connected.

        Returns:
            True if a snapshot was sent.
        """
        if not len(self._registry):
            return False
        snapshot = await self.build_snapshot()
        if not self._registry.active_sessions():
            return False
        await self.broadcast(snapshot)
        logger.debug(
            "[Presence] Snapshot sent: %d users, %d online",
            len(snapshot.all), len(snapshot.online),
        )
        return True

    async def reconcile_directory(self) -> int:
        """Clear stale online flags left over from a previous process."""
        return await self._directory.reset_online()

    # =========================================================================
    # Periodic snapshot task
    # =========================================================================

    async def _run_periodic(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.broadcast_snapshot()
            except StoreFailure as exc:
                logger.warning("[Presence] Periodic snapshot skipped: %s", exc)

    def start(self) -> None:
        """Start the periodic snapshot task on the running loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run_periodic())
            logger.info("[Presence] Periodic snapshot every %.1fs", self.interval)

    async def stop(self) -> None:
        """Cancel the periodic snapshot task and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
