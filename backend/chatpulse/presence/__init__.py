"""Connection registry, presence broadcasting and registration lifecycle."""
from .broadcaster import PresenceBroadcaster
from .manager import PresenceManager
from .registry import ConnectionRegistry

__all__ = ["ConnectionRegistry", "PresenceBroadcaster", "PresenceManager"]
