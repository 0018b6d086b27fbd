"""Message relay: persist-then-deliver for messages, signal-only for the rest.

Direct send:
    1. Validate the payload (``InvalidMessage``)
    2. Persist (``StoreFailure`` propagates, nothing is delivered)
    3. Re-read the registry and push ``message_delivered`` to the recipient
       if reachable; an unreachable recipient is not an error, the message
       is recovered later through history
    4. Push ``message_sent_ack`` with the persisted record to the sender

There is no replay queue: each persisted message gets at most one live push
per recipient. Typing signals are never persisted and silently dropped when
the peer is unreachable. Receipts flip a monotonic flag and notify the
original sender only on an actual false→true transition.
"""
import asyncio
import logging
from typing import TYPE_CHECKING, List, Optional

from chatpulse.errors import InvalidMessage, NotAMember
from chatpulse.presence.registry import ConnectionRegistry
from chatpulse.protocol import (
    MessageDelivered,
    MessageSentAck,
    PeerStoppedTyping,
    PeerTyping,
    ReceiptRead,
    ReceiptSeen,
)
from chatpulse.store.directory import UserDirectory
from chatpulse.store.groups import GroupStore
from chatpulse.store.messages import MessageStore, Receipt
from chatpulse.store.schemas import Message, MessageType

if TYPE_CHECKING:
    from chatpulse.session.session import ChatSession

logger = logging.getLogger(__name__)


def validate_payload(content: str, message_type: MessageType, media_url: Optional[str]) -> None:
    """Check the content/media rules for a message.

    Raises:
        InvalidMessage: Text without content, text with media, or media
            without a URL.
    """
    if message_type is MessageType.TEXT:
        if not content or not content.strip():
            raise InvalidMessage("Text messages require non-empty content")
        if media_url:
            raise InvalidMessage("Text messages cannot carry a media_url")
    elif not media_url:
        raise InvalidMessage(f"{message_type.value} messages require a media_url")


class MessageRelay:
    """Orchestrates message persistence and live delivery."""

    def __init__(
        self,
        messages: MessageStore,
        directory: UserDirectory,
        groups: GroupStore,
        registry: ConnectionRegistry,
    ) -> None:
        self._messages = messages
        self._directory = directory
        self._groups = groups
        self._registry = registry

    # =========================================================================
    # Sending
    # =========================================================================

    async def send(
        self,
        sender_id: int,
        recipient_id: int,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        media_url: Optional[str] = None,
        *,
        origin: Optional["ChatSession"] = None,
    ) -> Message:
        """Persist a direct message and push it to both parties.

        Args:
            origin: Session the send arrived on; receives the ack. When None
                (REST sends) the ack goes to the sender's routed session.

        Raises:
            InvalidMessage: Validation failed or the recipient does not exist.
            StoreFailure: Persistence failed; nothing was delivered.
        """
        validate_payload(content, message_type, media_url)
        if await self._directory.get_user(recipient_id) is None:
            raise InvalidMessage(f"Unknown recipient {recipient_id}")

        message = await self._messages.create(
            sender_id,
            content or "",
            message_type,
            media_url,
            recipient_id=recipient_id,
        )

        # Routing is re-read here: the recipient may have come or gone
        # while the insert was pending.
        recipient = self._registry.route(recipient_id)
        if recipient is not None:
            await recipient.notify(MessageDelivered(message=message))
            logger.info("[Relay] Message %s delivered %s -> %s", message.id, sender_id, recipient_id)
        else:
            logger.info(
                "[Relay] Message %s stored; recipient %s unreachable", message.id, recipient_id
            )

        await self._acknowledge(sender_id, message, origin)
        return message

    async def send_group(
        self,
        sender_id: int,
        group_id: int,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        media_url: Optional[str] = None,
        *,
        origin: Optional["ChatSession"] = None,
    ) -> Message:
        """Persist a group message and push it to every reachable member."""
        validate_payload(content, message_type, media_url)
        group = await self._groups.get_group(group_id)
        if group is None:
            raise InvalidMessage(f"Unknown group {group_id}")
        if sender_id not in group.member_ids:
            raise NotAMember(f"User {sender_id} is not a member of group {group_id}")

        message = await self._messages.create(
            sender_id,
            content or "",
            message_type,
            media_url,
            group_id=group_id,
        )

        targets = [
            session
            for session in (
                self._registry.route(member_id)
                for member_id in group.member_ids
                if member_id != sender_id
            )
            if session is not None
        ]
        if targets:
            delivered = MessageDelivered(message=message)
            await asyncio.gather(
                *[session.notify(delivered) for session in targets],
                return_exceptions=True,
            )
        logger.info(
            "[Relay] Group message %s pushed to %d/%d members",
            message.id, len(targets), len(group.member_ids) - 1,
        )

        await self._acknowledge(sender_id, message, origin)
        return message

    async def _acknowledge(
        self, sender_id: int, message: Message, origin: Optional["ChatSession"]
    ) -> None:
        # Re-read after the insert; the sender may have reconnected meanwhile.
        if origin is not None and origin.is_active:
            target = origin
        else:
            target = self._registry.route(sender_id)
        if target is not None:
            await target.notify(MessageSentAck(message=message))

    # =========================================================================
    # History
    # =========================================================================

    async def history(self, user_id: int, other_user_id: int) -> List[Message]:
        """Direct messages between two users, oldest first. Side-effect free."""
        return await self._messages.conversation(user_id, other_user_id)

    async def group_history(self, user_id: int, group_id: int) -> List[Message]:
        if not await self._groups.is_member(group_id, user_id):
            raise NotAMember(f"User {user_id} is not a member of group {group_id}")
        return await self._messages.group_messages(group_id)

    # =========================================================================
    # Typing signals
    # =========================================================================

    async def typing(self, from_user_id: int, to_user_id: int, username: str = "") -> bool:
        """Best-effort typing signal; returns False if the peer is unreachable."""
        peer = self._registry.route(to_user_id)
        if peer is None:
            return False
        return await peer.notify(PeerTyping(user_id=from_user_id, username=username))

    async def stop_typing(self, from_user_id: int, to_user_id: int) -> bool:
        peer = self._registry.route(to_user_id)
        if peer is None:
            return False
        return await peer.notify(PeerStoppedTyping(user_id=from_user_id))

    # =========================================================================
    # Receipts
    # =========================================================================

    async def mark_seen(self, message_id: int, reader_id: Optional[int] = None) -> Message:
        return await self._mark(message_id, Receipt.SEEN, reader_id)

    async def mark_read(self, message_id: int, reader_id: Optional[int] = None) -> Message:
        return await self._mark(message_id, Receipt.READ, reader_id)

    async def _mark(self, message_id: int, receipt: Receipt, reader_id: Optional[int]) -> Message:
        if reader_id is not None:
            existing = await self._messages.get(message_id)
            if existing is None:
                raise InvalidMessage(f"Unknown message {message_id}")
            await self._check_reader(existing, reader_id)

        message, changed = await self._messages.mark(message_id, receipt)
        if message is None:
            raise InvalidMessage(f"Unknown message {message_id}")
        if not changed:
            logger.debug("[Relay] Message %s already %s", message_id, receipt.value)
            return message

        sender = self._registry.route(message.sender_id)
        if sender is not None:
            if receipt is Receipt.SEEN:
                await sender.notify(ReceiptSeen(message_id=message_id))
            else:
                await sender.notify(ReceiptRead(message_id=message_id))
        logger.info("[Relay] Message %s marked %s", message_id, receipt.value)
        return message

    async def _check_reader(self, message: Message, reader_id: int) -> None:
        if message.recipient_id is not None:
            if message.recipient_id != reader_id:
                raise InvalidMessage("Only the recipient can acknowledge a message")
            return
        if not await self._groups.is_member(message.group_id, reader_id):
            raise NotAMember(f"User {reader_id} is not a member of group {message.group_id}")
