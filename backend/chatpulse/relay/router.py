"""REST surface over the message relay.

Endpoints:
    GET  /api/presence                     - Current roster snapshot
    GET  /api/messages/{other_user_id}     - Direct conversation history
    POST /api/messages                     - Direct send (same pushes as websocket)
    POST /api/messages/{message_id}/seen   - Seen receipt
    POST /api/messages/{message_id}/read   - Read receipt
    POST /api/groups                       - Create a group
    GET  /api/groups                       - Groups the caller belongs to
    POST /api/groups/{group_id}/messages   - Group send
    GET  /api/groups/{group_id}/messages   - Group history (members only)
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from chatpulse.auth.dependencies import get_current_user
from chatpulse.errors import InvalidMessage, NotAMember, StoreFailure
from chatpulse.protocol import RosterSnapshot
from chatpulse.runtime import get_runtime
from chatpulse.store.schemas import Group, Message, MessageType, User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["messages"])


class SendMessageRequest(BaseModel):
    """Request body for a direct send."""
    recipient_id: int
    content: str = ""
    message_type: MessageType = MessageType.TEXT
    media_url: Optional[str] = None


class GroupMessageRequest(BaseModel):
    """Request body for a group send."""
    content: str = ""
    message_type: MessageType = MessageType.TEXT
    media_url: Optional[str] = None


class CreateGroupRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    members: List[int] = Field(default_factory=list)


def _http_error(exc: Exception) -> HTTPException:
    """Map relay errors onto status codes."""
    if isinstance(exc, NotAMember):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, InvalidMessage):
        return HTTPException(status_code=400, detail=str(exc))
    logger.error("[Relay] Store failure: %s", exc)
    return HTTPException(status_code=503, detail="Message store unavailable")


# =============================================================================
# Presence
# =============================================================================

@router.get("/presence", response_model=RosterSnapshot)
async def presence(user: User = Depends(get_current_user)) -> RosterSnapshot:
    """The same roster the periodic broadcast carries."""
    try:
        return await get_runtime().broadcaster.build_snapshot()
    except StoreFailure as exc:
        raise _http_error(exc)


# =============================================================================
# Direct messages
# =============================================================================

@router.get("/messages/{other_user_id}", response_model=List[Message])
async def get_history(other_user_id: int, user: User = Depends(get_current_user)) -> List[Message]:
    try:
        return await get_runtime().relay.history(user.id, other_user_id)
    except StoreFailure as exc:
        raise _http_error(exc)


@router.post("/messages", response_model=Message)
async def send_message(
    request: SendMessageRequest,
    user: User = Depends(get_current_user),
) -> Message:
    """Send a direct message; the recipient gets a live push if reachable."""
    try:
        return await get_runtime().relay.send(
            user.id,
            request.recipient_id,
            request.content,
            request.message_type,
            request.media_url,
        )
    except (InvalidMessage, StoreFailure) as exc:
        raise _http_error(exc)


@router.post("/messages/{message_id}/seen", response_model=Message)
async def mark_seen(message_id: int, user: User = Depends(get_current_user)) -> Message:
    try:
        return await get_runtime().relay.mark_seen(message_id, reader_id=user.id)
    except (InvalidMessage, StoreFailure) as exc:
        raise _http_error(exc)


@router.post("/messages/{message_id}/read", response_model=Message)
async def mark_read(message_id: int, user: User = Depends(get_current_user)) -> Message:
    try:
        return await get_runtime().relay.mark_read(message_id, reader_id=user.id)
    except (InvalidMessage, StoreFailure) as exc:
        raise _http_error(exc)


# =============================================================================
# Groups
# =============================================================================

@router.post("/groups", response_model=Group)
async def create_group(
    request: CreateGroupRequest,
    user: User = Depends(get_current_user),
) -> Group:
    """Create a group; the caller becomes its admin and a member."""
    runtime = get_runtime()
    try:
        for member_id in set(request.members):
            if await runtime.directory.get_user(member_id) is None:
                raise HTTPException(status_code=400, detail=f"Unknown user {member_id}")
        group = await runtime.groups.create_group(request.name.strip(), user.id, request.members)
    except StoreFailure as exc:
        raise _http_error(exc)
    logger.info("[Relay] User %s created group %s (%d members)", user.id, group.id, len(group.member_ids))
    return group


@router.get("/groups", response_model=List[Group])
async def list_groups(user: User = Depends(get_current_user)) -> List[Group]:
    try:
        return await get_runtime().groups.groups_for_user(user.id)
    except StoreFailure as exc:
        raise _http_error(exc)


@router.post("/groups/{group_id}/messages", response_model=Message)
async def send_group_message(
    group_id: int,
    request: GroupMessageRequest,
    user: User = Depends(get_current_user),
) -> Message:
    try:
        return await get_runtime().relay.send_group(
            user.id,
            group_id,
            request.content,
            request.message_type,
            request.media_url,
        )
    except (InvalidMessage, StoreFailure) as exc:
        raise _http_error(exc)


@router.get("/groups/{group_id}/messages", response_model=List[Message])
async def get_group_history(group_id: int, user: User = Depends(get_current_user)) -> List[Message]:
    try:
        return await get_runtime().relay.group_history(user.id, group_id)
    except (InvalidMessage, StoreFailure) as exc:
        raise _http_error(exc)
