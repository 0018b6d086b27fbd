"""Per-connection session state machine and websocket endpoint."""
from .session import ChatSession, SessionState

__all__ = ["ChatSession", "SessionState"]
