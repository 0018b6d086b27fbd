"""Process-wide service wiring.

One ``Runtime`` owns the database, the stores, the token service, the
connection registry and everything built on it. The FastAPI lifespan
creates it, starts it, and shuts it down; request handlers reach it through
``get_runtime()``.
"""
import logging
from typing import Optional

from chatpulse.auth.service import TokenService
from chatpulse.config import AppSettings, get_config
from chatpulse.files.service import BlobStore
from chatpulse.presence.broadcaster import PresenceBroadcaster
from chatpulse.presence.manager import PresenceManager
from chatpulse.presence.registry import ConnectionRegistry
from chatpulse.relay.service import MessageRelay
from chatpulse.store.database import Database
from chatpulse.store.directory import UserDirectory
from chatpulse.store.groups import GroupStore
from chatpulse.store.messages import MessageStore

logger = logging.getLogger(__name__)


class Runtime:
    """All long-lived collaborators for one process."""

    def __init__(self, config: AppSettings) -> None:
        self.config = config

        self.database = Database(
            config.database.path,
            timeout=config.database.query_timeout_seconds,
        )
        self.directory = UserDirectory(self.database)
        self.messages = MessageStore(self.database)
        self.groups = GroupStore(self.database)
        self.blobs = BlobStore(config.uploads.upload_dir, config.uploads.max_size_bytes)
        self.tokens = TokenService(
            config.secrets.jwt.secret_key,
            algorithm=config.secrets.jwt.algorithm,
            expire_minutes=config.auth.token_expire_minutes,
        )

        self.registry = ConnectionRegistry()
        self.broadcaster = PresenceBroadcaster(
            self.registry,
            self.directory,
            interval=config.presence.snapshot_interval_seconds,
        )
        self.presence = PresenceManager(
            self.registry,
            self.broadcaster,
            self.directory,
            grace_seconds=config.presence.grace_seconds,
        )
        self.relay = MessageRelay(self.messages, self.directory, self.groups, self.registry)

    async def start(self) -> None:
        """Reconcile persisted presence and start the snapshot timer."""
        await self.broadcaster.reconcile_directory()
        self.broadcaster.start()

    async def shutdown(self) -> None:
        """Cancel timers and close the database."""
        await self.presence.shutdown()
        self.registry.clear()
        self.database.close()


_runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
    """Return the process runtime, building it from the config on first use."""
    global _runtime
    if _runtime is None:
        _runtime = Runtime(get_config())
    return _runtime


def set_runtime(runtime: Optional[Runtime]) -> None:
    global _runtime
    _runtime = runtime
