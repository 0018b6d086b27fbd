"""Message relay: direct and group sends, history, typing and receipts."""
from .service import MessageRelay, validate_payload

__all__ = ["MessageRelay", "validate_payload"]
