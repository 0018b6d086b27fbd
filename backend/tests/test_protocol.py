"""Tests for the websocket command and notification models."""
from datetime import datetime

import pytest
from pydantic import ValidationError

from chatpulse.protocol import (
    MarkSeen,
    PeerTyping,
    SendMessage,
    SessionReplaced,
    UserOnline,
    encode,
    parse_command,
)
from chatpulse.store.schemas import Message, MessageType


def test_parse_send_message_defaults():
    command = parse_command({"type": "send_message", "recipient_id": 2, "content": "hi"})
    assert isinstance(command, SendMessage)
    assert command.message_type is MessageType.TEXT
    assert command.media_url is None


def test_parse_dispatches_on_type():
    assert isinstance(parse_command({"type": "mark_seen", "message_id": 7}), MarkSeen)


@pytest.mark.parametrize(
    "frame",
    [
        {"type": "unknown"},
        {"recipient_id": 2},
        {"type": "send_message", "recipient_id": "not-a-number"},
        {"type": "send_message", "recipient_id": 2, "message_type": "hologram"},
        "just a string",
    ],
)
def test_parse_rejects(frame):
    with pytest.raises(ValidationError):
        parse_command(frame)


def test_encode_tags_notifications():
    assert encode(UserOnline(id=1, username="alice")) == {"type": "user_online", "id": 1, "username": "alice"}
    assert encode(SessionReplaced()) == {"type": "session_replaced", "reason": "signed_in_elsewhere"}
    assert encode(PeerTyping(user_id=3))["username"] == ""


def test_message_requires_single_destination():
    with pytest.raises(ValidationError):
        Message(id=1, sender_id=1, content="x", created_at=datetime(2024, 1, 1))
    with pytest.raises(ValidationError):
        Message(id=1, sender_id=1, recipient_id=2, group_id=3, content="x", created_at=datetime(2024, 1, 1))
