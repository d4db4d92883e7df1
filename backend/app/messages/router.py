"""Message history and mutation endpoints.

Endpoints:
    GET    /messages/dms                  Direct threads, newest first
    GET    /messages/dm/{other_user_id}   Direct conversation, oldest first
    POST   /messages/dm/start             Check or open a direct thread
    POST   /messages/dm                   Send a direct message
    GET    /messages/groups               Groups the caller belongs to
    GET    /messages/group/{group_id}     Group history (members only)
    POST   /messages/group                Send a group message
    POST   /messages/group/create         Create a group
    PUT    /messages/message/{message_id} Edit own message
    DELETE /messages/message/{message_id} Delete own message

Authentication:
    ``Authorization: Bearer <jwt>`` on every route.

Errors:
    ``{"error": "<message>", "type": "<ErrorClass>"}`` with the status code
    of the messaging error (see ``app.messaging.errors``).
"""
import logging
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.auth.dependencies import require_identity, require_services
from app.auth.verifier import Identity
from app.messaging.errors import NotFoundError, ValidationError
from app.messaging.schemas import DirectThread, Group, GroupSummary, Message
from app.realtime.events import EntityId, ServerEvent
from app.services import MessagingServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["messages"])


# =============================================================================
# Request/Response Models
# =============================================================================


class StartDMRequest(BaseModel):
    recipientId: EntityId


class StartDMResponse(BaseModel):
    """Whether a thread is open with the recipient.

    Attributes:
        threadStarted: Always True once the recipient is known to exist.
        new: True if no direct message has been exchanged yet.
    """
    threadStarted: bool
    new: bool


class SendDMRequest(BaseModel):
    recipientId: EntityId
    content: str


class SendGroupMessageRequest(BaseModel):
    groupId: EntityId
    content: str


class CreateGroupRequest(BaseModel):
    name: str
    memberIds: List[EntityId] = Field(default_factory=list)


class UpdateMessageRequest(BaseModel):
    content: str


class DeleteMessageResponse(BaseModel):
    messageId: int


# =============================================================================
# Direct messages
# =============================================================================


@router.get("/dms", response_model=List[DirectThread])
async def list_direct_threads(
    identity: Identity = Depends(require_identity),
    services: MessagingServices = Depends(require_services),
) -> List[DirectThread]:
    return await services.store.direct_threads(identity.id)


@router.get("/dm/{other_user_id}", response_model=List[Message])
async def get_direct_conversation(
    other_user_id: int,
    identity: Identity = Depends(require_identity),
    services: MessagingServices = Depends(require_services),
) -> List[Message]:
    return await services.store.direct_conversation(identity.id, other_user_id)


@router.post("/dm/start", response_model=StartDMResponse)
async def start_direct_thread(
    request: StartDMRequest,
    identity: Identity = Depends(require_identity),
    services: MessagingServices = Depends(require_services),
) -> StartDMResponse:
    """Open a direct thread without sending anything.

    Nothing is persisted; the thread appears in ``/messages/dms`` once the
    first message is sent.
    """
    if request.recipientId == identity.id:
        raise ValidationError("Cannot start a conversation with yourself")
    if not await services.oracle.user_exists(request.recipientId):
        raise NotFoundError("Recipient does not exist")
    exists = await services.store.thread_exists(identity.id, request.recipientId)
    return StartDMResponse(threadStarted=True, new=not exists)


@router.post("/dm", response_model=Message, status_code=201)
async def send_direct_message(
    request: SendDMRequest,
    identity: Identity = Depends(require_identity),
    services: MessagingServices = Depends(require_services),
) -> Message:
    message = await services.store.send(
        identity.id, recipient_id=request.recipientId, content=request.content
    )
    await services.sessions.publish_message(ServerEvent.DM_MESSAGE, message)
    return message


# =============================================================================
# Groups
# =============================================================================


@router.get("/groups", response_model=List[GroupSummary])
async def list_groups(
    identity: Identity = Depends(require_identity),
    services: MessagingServices = Depends(require_services),
) -> List[GroupSummary]:
    return await services.store.list_groups(identity.id)


@router.get("/group/{group_id}", response_model=List[Message])
async def get_group_history(
    group_id: int,
    identity: Identity = Depends(require_identity),
    services: MessagingServices = Depends(require_services),
) -> List[Message]:
    return await services.store.group_history(group_id, identity.id)


@router.post("/group", response_model=Message, status_code=201)
async def send_group_message(
    request: SendGroupMessageRequest,
    identity: Identity = Depends(require_identity),
    services: MessagingServices = Depends(require_services),
) -> Message:
    message = await services.store.send(
        identity.id, group_id=request.groupId, content=request.content
    )
    await services.sessions.publish_message(ServerEvent.GROUP_MESSAGE, message)
    return message


@router.post("/group/create", response_model=Group, status_code=201)
async def create_group(
    request: CreateGroupRequest,
    identity: Identity = Depends(require_identity),
    services: MessagingServices = Depends(require_services),
) -> Group:
    """Create a group with the caller as admin.

    Every member (creator included) is told through their personal room.
    Live connections are not subscribed to the new group room; clients
    send ``joinGroup`` when they want its traffic.
    """
    group = await services.groups.create_group(identity.id, request.name, request.memberIds)
    event = {"type": ServerEvent.GROUP_CREATED.value, **group.model_dump(mode="json")}
    for member_id in group.members:
        await services.sessions.notify_user(member_id, event)
    return group


# =============================================================================
# Edit / delete
# =============================================================================


@router.put("/message/{message_id}", response_model=Message)
async def update_message(
    message_id: int,
    request: UpdateMessageRequest,
    identity: Identity = Depends(require_identity),
    services: MessagingServices = Depends(require_services),
) -> Message:
    message = await services.store.update(message_id, identity.id, request.content)
    await services.sessions.publish_message(ServerEvent.MESSAGE_UPDATED, message)
    return message


@router.delete("/message/{message_id}", response_model=DeleteMessageResponse)
async def delete_message(
    message_id: int,
    identity: Identity = Depends(require_identity),
    services: MessagingServices = Depends(require_services),
) -> DeleteMessageResponse:
    message = await services.store.delete(message_id, identity.id)
    await services.sessions.publish_deleted(message)
    return DeleteMessageResponse(messageId=message.id)
