"""Per-connection session state machine.

States:
    CONNECTING → AUTHENTICATING → ACTIVE → CLOSING → CLOSED
                        └──────────────────────────→ CLOSED  (auth failure)

    - CONNECTING → AUTHENTICATING: the websocket handshake is accepted and
      the credential is read from the ``token`` query parameter (or an
      ``Authorization: Bearer`` header).
    - AUTHENTICATING → ACTIVE: the token verifies and the user exists; the
      session is registered and presence is announced.
    - AUTHENTICATING → CLOSED: ``auth_error`` is sent and the socket is
      closed with code 1008. The client must reconnect with a fresh token.
    - ACTIVE → CLOSING: the transport disconnects, or a newer session for
      the same user evicts this one.
    - CLOSING → CLOSED: the presence manager has been told; removal may
      still be pending behind the grace window.

Every command handler and every outbound push is a no-op once the session
has left ACTIVE, so callbacks resuming after a disconnect cannot touch a
dead transport.
"""
import logging
import uuid
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Type

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from chatpulse.errors import AuthenticationFailure, InvalidMessage, StoreFailure
from chatpulse.protocol import (
    AuthError,
    Connected,
    ErrorNotice,
    FetchHistory,
    HistoryResult,
    MarkRead,
    MarkSeen,
    SendFailed,
    SendMessage,
    SessionReplaced,
    StopTyping,
    Typing,
    encode,
    parse_command,
)
from chatpulse.store.schemas import User

if TYPE_CHECKING:
    from chatpulse.runtime import Runtime

logger = logging.getLogger(__name__)

# Close codes
POLICY_VIOLATION = 1008
SESSION_REPLACED = 4001


class SessionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class ChatSession:
    """One live websocket connection from one client instance.

    Attributes:
        session_id: Server-generated identity of this transport session.
        state: Current lifecycle state.
        user: The authenticated user (None until ACTIVE).
    """

    def __init__(self, websocket: WebSocket, runtime: "Runtime") -> None:
        self.websocket = websocket
        self.session_id = str(uuid.uuid4())
        self.state = SessionState.CONNECTING
        self.user: Optional[User] = None

        self._tokens = runtime.tokens
        self._directory = runtime.directory
        self._presence = runtime.presence
        self._relay = runtime.relay

        self._handlers: Dict[Type[BaseModel], Callable[[Any], Awaitable[None]]] = {
            SendMessage: self._on_send_message,
            FetchHistory: self._on_fetch_history,
            Typing: self._on_typing,
            StopTyping: self._on_stop_typing,
            MarkSeen: self._on_mark_seen,
            MarkRead: self._on_mark_read,
        }

    @property
    def user_id(self) -> int:
        return self.user.id if self.user else 0

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def run(self) -> None:
        """Drive the session from handshake to teardown."""
        await self.websocket.accept()
        self.state = SessionState.AUTHENTICATING

        try:
            self.user = await self._authenticate()
        except AuthenticationFailure as exc:
            await self._reject(str(exc))
            return

        self.state = SessionState.ACTIVE
        logger.info(
            "[WS] Session %s authenticated as user %s (%s)",
            self.session_id, self.user.id, self.user.username,
        )
        await self.notify(Connected(user=self.user))
        await self._presence.activate(self)

        try:
            await self._receive_loop()
        finally:
            await self.close()

    async def _receive_loop(self) -> None:
        while self.is_active:
            try:
                data = await self.websocket.receive_json()
            except WebSocketDisconnect as exc:
                logger.info(
                    "[WS] Session %s (user %s) disconnected, code=%s",
                    self.session_id, self.user_id, exc.code,
                )
                return
            except (ValueError, KeyError, TypeError):
                # Non-JSON text, or a binary frame
                await self.notify(ErrorNotice(code="bad_request", reason="Frames must be JSON text"))
                continue

            await self.dispatch(data)

    async def close(self) -> None:
        """ACTIVE/CLOSING → CLOSED, handing the registry slot to presence."""
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSING
        if self.user is not None:
            await self._presence.release(self)
        self.state = SessionState.CLOSED

    async def evict(self, reason: str) -> None:
        """Close this session because the user signed in elsewhere or logged out."""
        await self.notify(SessionReplaced(reason=reason))
        self.state = SessionState.CLOSING
        try:
            await self.websocket.close(code=SESSION_REPLACED)
        except (RuntimeError, WebSocketDisconnect) as exc:
            logger.debug("[WS] Session %s already closed: %s", self.session_id, exc)
        logger.info("[WS] Session %s evicted (%s)", self.session_id, reason)

    # =========================================================================
    # Authentication
    # =========================================================================

    def _extract_credential(self) -> Optional[str]:
        token = self.websocket.query_params.get("token")
        if token:
            return token
        header = self.websocket.headers.get("authorization", "")
        scheme, _, value = header.partition(" ")
        if scheme.lower() == "bearer" and value:
            return value.strip()
        return None

    async def _authenticate(self) -> User:
        user_id = self._tokens.verify(self._extract_credential())
        try:
            user = await self._directory.get_user(user_id)
        except StoreFailure as exc:
            logger.error("[WS] Directory lookup failed for user %s: %s", user_id, exc)
            raise AuthenticationFailure("User directory unavailable") from exc
        if user is None:
            raise AuthenticationFailure("Unknown user")
        return user

    async def _reject(self, reason: str) -> None:
        logger.warning("[WS] Session %s rejected: %s", self.session_id, reason)
        try:
            await self.websocket.send_json(encode(AuthError(reason=reason)))
            await self.websocket.close(code=POLICY_VIOLATION)
        except (RuntimeError, WebSocketDisconnect) as exc:
            logger.debug("[WS] Could not deliver auth_error: %s", exc)
        self.state = SessionState.CLOSED

    # =========================================================================
    # Outbound
    # =========================================================================

    async def notify(self, notification: BaseModel) -> bool:
        """Push a notification; returns False if the session is not ACTIVE
        or the transport refused it."""
        if not self.is_active:
            return False
        try:
            await self.websocket.send_json(encode(notification))
            return True
        except Exception as exc:
            logger.debug("[WS] Failed to send to session %s: %s", self.session_id, exc)
            return False

    # =========================================================================
    # Inbound commands
    # =========================================================================

    async def dispatch(self, data: Any) -> None:
        """Validate and handle one client frame."""
        if not self.is_active:
            return
        try:
            command = parse_command(data)
        except ValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ()))
            await self.notify(ErrorNotice(
                code="bad_request",
                reason=f"{location}: {first.get('msg', 'invalid')}" if location else first.get("msg", "invalid"),
            ))
            return

        logger.debug("[WS] Session %s received %s", self.session_id, command.type)
        try:
            await self._handlers[type(command)](command)
        except InvalidMessage as exc:
            await self.notify(ErrorNotice(code="invalid_message", reason=str(exc)))
        except StoreFailure as exc:
            logger.error("[WS] %s failed for user %s: %s", command.type, self.user_id, exc)
            await self.notify(ErrorNotice(code="store_failure", reason=f"{command.type} failed"))

    async def _on_send_message(self, command: SendMessage) -> None:
        try:
            await self._relay.send(
                self.user_id,
                command.recipient_id,
                command.content,
                command.message_type,
                command.media_url,
                origin=self,
            )
        except StoreFailure as exc:
            logger.error("[WS] Message from user %s not persisted: %s", self.user_id, exc)
            await self.notify(SendFailed(reason="Failed to send message"))

    async def _on_fetch_history(self, command: FetchHistory) -> None:
        messages = await self._relay.history(self.user_id, command.other_user_id)
        await self.notify(HistoryResult(other_user_id=command.other_user_id, messages=messages))

    async def _on_typing(self, command: Typing) -> None:
        await self._relay.typing(self.user_id, command.recipient_id, self.user.username)

    async def _on_stop_typing(self, command: StopTyping) -> None:
        await self._relay.stop_typing(self.user_id, command.recipient_id)

    async def _on_mark_seen(self, command: MarkSeen) -> None:
        await self._relay.mark_seen(command.message_id, reader_id=self.user_id)

    async def _on_mark_read(self, command: MarkRead) -> None:
        await self._relay.mark_read(command.message_id, reader_id=self.user_id)
