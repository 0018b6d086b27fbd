"""Websocket wire protocol.

Both directions are closed sets of pydantic models tagged by ``type``:

Client → server (``ClientCommand``):
    - send_message: {recipient_id, content, message_type, media_url?}
    - fetch_history: {other_user_id}
    - typing / stop_typing: {recipient_id}
    - mark_seen / mark_read: {message_id}

Server → client (``ServerNotification``):
    - connected: first frame after successful authentication
    - auth_error: terminal, the connection is closed right after
    - session_replaced: the same user signed in elsewhere, connection closes
    - user_online / user_offline: incremental presence transitions
    - roster_snapshot: full roster plus the online subset
    - message_delivered / message_sent_ack: the persisted record
    - send_failed: persistence failed, nothing was delivered
    - history_result: reply to fetch_history
    - peer_typing / peer_stopped_typing
    - receipt_seen / receipt_read: to the original sender
    - error: recoverable failure, the session stays open
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from chatpulse.store.schemas import Message, MessageType, RosterEntry, User

# =============================================================================
# Client commands
# =============================================================================


class SendMessage(BaseModel):
    type: Literal["send_message"] = "send_message"
    recipient_id: int
    content: str = ""
    message_type: MessageType = MessageType.TEXT
    media_url: Optional[str] = None


class FetchHistory(BaseModel):
    type: Literal["fetch_history"] = "fetch_history"
    other_user_id: int


class Typing(BaseModel):
    type: Literal["typing"] = "typing"
    recipient_id: int


class StopTyping(BaseModel):
    type: Literal["stop_typing"] = "stop_typing"
    recipient_id: int


class MarkSeen(BaseModel):
    type: Literal["mark_seen"] = "mark_seen"
    message_id: int


class MarkRead(BaseModel):
    type: Literal["mark_read"] = "mark_read"
    message_id: int


ClientCommand = Annotated[
    Union[SendMessage, FetchHistory, Typing, StopTyping, MarkSeen, MarkRead],
    Field(discriminator="type"),
]

_command_adapter: TypeAdapter = TypeAdapter(ClientCommand)


def parse_command(data: Any) -> ClientCommand:
    """Validate a decoded client frame.

    Raises:
        pydantic.ValidationError: Unknown ``type`` or a malformed payload.
    """
    return _command_adapter.validate_python(data)


# =============================================================================
# Server notifications
# =============================================================================


class Connected(BaseModel):
    type: Literal["connected"] = "connected"
    user: User


class AuthError(BaseModel):
    type: Literal["auth_error"] = "auth_error"
    reason: str


class SessionReplaced(BaseModel):
    type: Literal["session_replaced"] = "session_replaced"
    reason: str = "signed_in_elsewhere"


class ErrorNotice(BaseModel):
    """Recoverable failure reported on the session that caused it.

    ``code`` is one of ``bad_request``, ``invalid_message``, ``store_failure``.
    """
    type: Literal["error"] = "error"
    code: str
    reason: str


class UserOnline(BaseModel):
    type: Literal["user_online"] = "user_online"
    id: int
    username: str


class UserOffline(BaseModel):
    type: Literal["user_offline"] = "user_offline"
    id: int


class RosterSnapshot(BaseModel):
    type: Literal["roster_snapshot"] = "roster_snapshot"
    all: List[RosterEntry]
    online: List[RosterEntry]


class MessageDelivered(BaseModel):
    type: Literal["message_delivered"] = "message_delivered"
    message: Message


class MessageSentAck(BaseModel):
    type: Literal["message_sent_ack"] = "message_sent_ack"
    message: Message


class SendFailed(BaseModel):
    type: Literal["send_failed"] = "send_failed"
    reason: str


class HistoryResult(BaseModel):
    type: Literal["history_result"] = "history_result"
    other_user_id: int
    messages: List[Message]


class PeerTyping(BaseModel):
    type: Literal["peer_typing"] = "peer_typing"
    user_id: int
    username: str = ""


class PeerStoppedTyping(BaseModel):
    type: Literal["peer_stopped_typing"] = "peer_stopped_typing"
    user_id: int


class ReceiptSeen(BaseModel):
    type: Literal["receipt_seen"] = "receipt_seen"
    message_id: int


class ReceiptRead(BaseModel):
    type: Literal["receipt_read"] = "receipt_read"
    message_id: int


ServerNotification = Annotated[
    Union[
        Connected,
        AuthError,
        SessionReplaced,
        ErrorNotice,
        UserOnline,
        UserOffline,
        RosterSnapshot,
        MessageDelivered,
        MessageSentAck,
        SendFailed,
        HistoryResult,
        PeerTyping,
        PeerStoppedTyping,
        ReceiptSeen,
        ReceiptRead,
    ],
    Field(discriminator="type"),
]


def encode(notification: BaseModel) -> Dict[str, Any]:
    """JSON-ready dict for a notification (datetimes become ISO strings)."""
    return notification.model_dump(mode="json")
