"""Wire protocol for the realtime endpoint.

Frames are JSON objects with a ``type`` discriminator and a flat payload:

    {"type": "sendDM", "to": 2, "content": "Hello!", "tempId": "abc"}

Every client event has an explicit schema. Payloads are validated before
anything reaches the message store; unknown keys, missing keys and wrong
types are all rejected.
"""
from enum import Enum
from typing import Annotated, Any, Dict, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr
from pydantic import ValidationError as PydanticValidationError

from app.messaging.errors import ValidationError


class ClientEvent(str, Enum):
    """Events a client may send."""
    JOIN_DM = "joinDM"
    JOIN_GROUP = "joinGroup"
    SEND_DM = "sendDM"
    SEND_GROUP_MESSAGE = "sendGroupMessage"
    UPDATE_MESSAGE = "updateMessage"
    DELETE_MESSAGE = "deleteMessage"


class ServerEvent(str, Enum):
    """Events the server emits."""
    CONNECTED = "connected"
    ROOM_JOINED = "roomJoined"
    DM_MESSAGE = "dmMessage"
    GROUP_MESSAGE = "groupMessage"
    MESSAGE_UPDATED = "messageUpdated"
    MESSAGE_DELETED = "messageDeleted"
    GROUP_CREATED = "groupCreated"
    ERROR = "errorMessage"


# Strict: JSON booleans and numeric strings are shape errors, not ids
EntityId = Annotated[int, Field(strict=True, gt=0)]
TempId = Optional[Union[StrictStr, StrictInt]]


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class JoinDMPayload(_Payload):
    otherUserId: EntityId


class JoinGroupPayload(_Payload):
    groupId: EntityId


class SendDMPayload(_Payload):
    to: EntityId
    content: str
    tempId: TempId = Field(default=None, description="Client correlation id, echoed back")


class SendGroupMessagePayload(_Payload):
    groupId: EntityId
    content: str
    tempId: TempId = Field(default=None, description="Client correlation id, echoed back")


class UpdateMessagePayload(_Payload):
    messageId: EntityId
    content: str


class DeleteMessagePayload(_Payload):
    messageId: EntityId


PAYLOAD_SCHEMAS: Dict[ClientEvent, Type[_Payload]] = {
    ClientEvent.JOIN_DM: JoinDMPayload,
    ClientEvent.JOIN_GROUP: JoinGroupPayload,
    ClientEvent.SEND_DM: SendDMPayload,
    ClientEvent.SEND_GROUP_MESSAGE: SendGroupMessagePayload,
    ClientEvent.UPDATE_MESSAGE: UpdateMessagePayload,
    ClientEvent.DELETE_MESSAGE: DeleteMessagePayload,
}


def parse_frame(frame: Any) -> Tuple[ClientEvent, _Payload]:
    """Split a decoded frame into its event type and validated payload.

    Raises:
        ValidationError: Frame is not an object, has an unknown ``type``,
            or its payload does not match the event's schema.
    """
    if not isinstance(frame, dict):
        raise ValidationError("Invalid message format: expected a JSON object")

    data = dict(frame)
    raw_type = data.pop("type", None)
    try:
        event = ClientEvent(raw_type)
    except ValueError:
        raise ValidationError(f"Unknown message type: {raw_type}") from None

    try:
        payload = PAYLOAD_SCHEMAS[event].model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or "payload"
        raise ValidationError(f"Invalid {event.value} payload: {field}: {first['msg']}") from None
    return event, payload
