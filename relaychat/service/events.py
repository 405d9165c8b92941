"""Websocket event vocabulary.

Every frame in either direction is ``{"event": <name>, "data": {...}}``. The set
of names is closed: client frames are parsed into a ``ClientEventType`` and its
payload model, server frames are built as ``ServerEvent`` whose payload type is
fixed per ``ServerEventType``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from relaychat.service.errors import BadRequestError
from relaychat.storage.models import MessageType

MAX_MESSAGE_LENGTH = 10000


class ClientEventType(str, Enum):
    JOIN_ROOM = "join_room"
    LEAVE_ROOM = "leave_room"
    SEND_MESSAGE = "send_message"
    TYPING_START = "typing_start"
    TYPING_STOP = "typing_stop"
    GET_ONLINE_USERS = "get_online_users"


class ServerEventType(str, Enum):
    JOINED_ROOM = "joined_room"
    LEFT_ROOM = "left_room"
    NEW_MESSAGE = "new_message"
    USER_JOINED_ROOM = "user_joined_room"
    USER_LEFT_ROOM = "user_left_room"
    USER_ONLINE = "user_online"
    USER_OFFLINE = "user_offline"
    USER_TYPING = "user_typing"
    USER_STOPPED_TYPING = "user_stopped_typing"
    ONLINE_USERS = "online_users"
    ERROR = "error"
    ROOM_CREATED = "room_created"
    ROOM_UPDATED = "room_updated"
    ROOM_DELETED = "room_deleted"


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


# -- client payloads -------------------------------------------------------


class RoomRequest(_Payload):
    room_id: str = Field(..., min_length=1, max_length=128)


class SendMessageRequest(_Payload):
    room_id: str = Field(..., min_length=1, max_length=128)
    content: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LENGTH)
    type: MessageType = MessageType.TEXT
    file_url: Optional[str] = Field(default=None, max_length=2048)
    file_name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("content")
    @classmethod
    def _reject_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be blank")
        return value


CLIENT_PAYLOADS: Dict[ClientEventType, Type[_Payload]] = {
    ClientEventType.JOIN_ROOM: RoomRequest,
    ClientEventType.LEAVE_ROOM: RoomRequest,
    ClientEventType.SEND_MESSAGE: SendMessageRequest,
    ClientEventType.TYPING_START: RoomRequest,
    ClientEventType.TYPING_STOP: RoomRequest,
    ClientEventType.GET_ONLINE_USERS: RoomRequest,
}


def parse_client_event(frame: Any) -> Tuple[ClientEventType, _Payload]:
    """Validate a raw client frame against the closed client vocabulary.

    Raises:
        BadRequestError: unknown event name or payload of the wrong shape
    """
    if not isinstance(frame, dict):
        raise BadRequestError("frame must be a JSON object")
    try:
        kind = ClientEventType(frame.get("event"))
    except ValueError:
        raise BadRequestError(
            "unknown event", detail={"event": str(frame.get("event"))[:64]}
        ) from None
    data = frame.get("data")
    if data is None:
        data = {}
    try:
        payload = CLIENT_PAYLOADS[kind].model_validate(data)
    except ValidationError as exc:
        raise BadRequestError(
            "invalid event payload",
            detail={
                "event": kind.value,
                "errors": [
                    {"loc": list(err["loc"]), "msg": err["msg"]} for err in exc.errors()
                ],
            },
        ) from exc
    return kind, payload


# -- server payloads -------------------------------------------------------


class PublicUser(_Payload):
    id: str
    name: str
    avatar: Optional[str] = None


class RoomAck(_Payload):
    room_id: str


class NewMessage(_Payload):
    id: str
    room_id: str
    user_id: str
    content: str
    type: MessageType
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    created_at: datetime
    user: PublicUser


class UserJoinedRoom(_Payload):
    user_id: str
    name: str
    avatar: Optional[str] = None
    room_id: str


class UserLeftRoom(_Payload):
    user_id: str
    name: str
    room_id: str


class UserOnline(_Payload):
    user_id: str
    name: str
    avatar: Optional[str] = None


class UserOffline(_Payload):
    user_id: str
    name: str


class UserTyping(_Payload):
    user_id: str
    name: str
    room_id: str


class UserStoppedTyping(_Payload):
    user_id: str
    room_id: str


class OnlineUser(_Payload):
    user_id: str
    name: str
    avatar: Optional[str] = None
    last_activity: datetime


class OnlineUsers(_Payload):
    room_id: str
    users: List[OnlineUser]


class ErrorEvent(_Payload):
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None


class RoomSnapshot(_Payload):
    id: str
    name: str
    description: Optional[str] = None
    created_by: str
    members: List[str]
    created_at: datetime
    updated_at: datetime


class RoomDeleted(_Payload):
    room_id: str


SERVER_PAYLOADS: Dict[ServerEventType, Type[_Payload]] = {
    ServerEventType.JOINED_ROOM: RoomAck,
    ServerEventType.LEFT_ROOM: RoomAck,
    ServerEventType.NEW_MESSAGE: NewMessage,
    ServerEventType.USER_JOINED_ROOM: UserJoinedRoom,
    ServerEventType.USER_LEFT_ROOM: UserLeftRoom,
    ServerEventType.USER_ONLINE: UserOnline,
    ServerEventType.USER_OFFLINE: UserOffline,
    ServerEventType.USER_TYPING: UserTyping,
    ServerEventType.USER_STOPPED_TYPING: UserStoppedTyping,
    ServerEventType.ONLINE_USERS: OnlineUsers,
    ServerEventType.ERROR: ErrorEvent,
    ServerEventType.ROOM_CREATED: RoomSnapshot,
    ServerEventType.ROOM_UPDATED: RoomSnapshot,
    ServerEventType.ROOM_DELETED: RoomDeleted,
}


@dataclass(frozen=True)
class ServerEvent:
    kind: ServerEventType
    payload: _Payload

    def __post_init__(self) -> None:
        expected = SERVER_PAYLOADS[self.kind]
        if not isinstance(self.payload, expected):
            raise TypeError(
                f"{self.kind.value} carries {expected.__name__}, got {type(self.payload).__name__}"
            )

    def to_wire(self) -> Dict[str, Any]:
        return {"event": self.kind.value, "data": self.payload.model_dump(mode="json")}


def error_event(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> ServerEvent:
    return ServerEvent(ServerEventType.ERROR, ErrorEvent(code=code, message=message, details=details))
