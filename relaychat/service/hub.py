from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Set

from relaychat.logging import get_logger, sanitize_error_message
from relaychat.service.errors import (
    AuthenticationError,
    ForbiddenError,
    RateLimitedError,
    ServiceError,
)
from relaychat.service.events import (
    ClientEventType,
    NewMessage,
    OnlineUser,
    OnlineUsers,
    PublicUser,
    RoomAck,
    SendMessageRequest,
    ServerEvent,
    ServerEventType,
    UserJoinedRoom,
    UserLeftRoom,
    UserOffline,
    UserOnline,
    UserStoppedTyping,
    UserTyping,
    error_event,
    parse_client_event,
)
from relaychat.service.rate_limit import RateLimiter, chat_key
from relaychat.service.tokens import TokenService
from relaychat.storage.memory import MemoryStore
from relaychat.storage.models import ChatMessage, ChatRoom, utcnow

logger = get_logger(__name__)


class Transport(Protocol):
    """Anything that can push a JSON frame to one client (a Starlette WebSocket)."""

    async def send_json(self, data: Any) -> None: ...


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


@dataclass(frozen=True)
class SocketUser:
    user_id: str
    email: str
    name: str
    avatar: Optional[str] = None


@dataclass(eq=False)
class Connection:
    id: str
    transport: Transport
    state: ConnectionState = ConnectionState.CONNECTING
    user: Optional[SocketUser] = None
    rooms: Set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)

    @property
    def user_id(self) -> str:
        if self.user is None:
            raise AuthenticationError("connection is not authenticated")
        return self.user.user_id


class PresenceHub:
    """Tracks live connections, room subscriptions and presence, and fans out events.

    All bookkeeping for an operation happens synchronously before the first
    await, so on a single event loop a membership check and the mutation that
    depends on it can never interleave with another handler. Frames are then
    delivered concurrently; a failing transport is logged and never affects
    delivery to the other connections.
    """

    def __init__(
        self,
        store: MemoryStore,
        tokens: TokenService,
        chat_limiter: RateLimiter,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.chat_limiter = chat_limiter
        self.connections: Dict[str, Connection] = {}
        self.user_connections: Dict[str, Set[str]] = {}
        self.room_connections: Dict[str, Set[str]] = {}
        self._handlers: Dict[ClientEventType, Callable[..., Awaitable[Any]]] = {
            ClientEventType.JOIN_ROOM: lambda c, p: self.join_room(c, p.room_id),
            ClientEventType.LEAVE_ROOM: lambda c, p: self.leave_room(c, p.room_id),
            ClientEventType.SEND_MESSAGE: self.send_message,
            ClientEventType.TYPING_START: lambda c, p: self.typing_start(c, p.room_id),
            ClientEventType.TYPING_STOP: lambda c, p: self.typing_stop(c, p.room_id),
            ClientEventType.GET_ONLINE_USERS: lambda c, p: self.get_online_users(c, p.room_id),
        }

    # -- lifecycle ---------------------------------------------------------

    async def connect(self, token: Optional[str], transport: Transport) -> Connection:
        """Authenticate a new transport and auto-join it to the user's rooms.

        Raises:
            AuthenticationError: missing/invalid token or unknown user; nothing is registered
        """
        connection = Connection(id=uuid.uuid4().hex, transport=transport)
        if not token:
            connection.state = ConnectionState.CLOSED
            raise AuthenticationError("Authentication error: token required")
        payload = self.tokens.verify_access_token(token)
        if payload is None:
            connection.state = ConnectionState.CLOSED
            raise AuthenticationError("Authentication error: invalid token")
        user = self.store.get_user(payload.user_id)
        if user is None:
            connection.state = ConnectionState.CLOSED
            raise AuthenticationError("Authentication error: user not found")

        connection.user = SocketUser(
            user_id=user.id, email=user.email, name=user.name, avatar=user.avatar
        )
        connection.state = ConnectionState.AUTHENTICATED
        self.connections[connection.id] = connection
        self.user_connections.setdefault(user.id, set()).add(connection.id)

        online = ServerEvent(
            ServerEventType.USER_ONLINE,
            UserOnline(user_id=user.id, name=user.name, avatar=user.avatar),
        )
        pending = []
        for room in self.store.list_chat_rooms_for_user(user.id):
            self._attach(connection, room.id)
            pending.append((self._others_in_room(room.id, connection), online))

        logger.info(
            "hub_connected",
            connection_id=connection.id,
            user_id=user.id,
            rooms=len(connection.rooms),
        )
        for targets, event in pending:
            await self._deliver(targets, event)
        return connection

    async def disconnect(self, connection: Connection) -> None:
        """Close a connection; other members of each joined room see ``user_offline``.

        Fires per connection, so a user with another live connection is still
        announced offline.
        """
        if connection.state is ConnectionState.CLOSED:
            return
        was_authenticated = connection.state is ConnectionState.AUTHENTICATED
        connection.state = ConnectionState.CLOSED
        if not was_authenticated or connection.user is None:
            return

        user = connection.user
        offline = ServerEvent(
            ServerEventType.USER_OFFLINE, UserOffline(user_id=user.user_id, name=user.name)
        )
        pending = []
        for room_id in list(connection.rooms):
            pending.append(self._others_in_room(room_id, connection))
            self._detach(connection, room_id)

        self.connections.pop(connection.id, None)
        owned = self.user_connections.get(user.user_id)
        if owned is not None:
            owned.discard(connection.id)
            if not owned:
                del self.user_connections[user.user_id]

        logger.info("hub_disconnected", connection_id=connection.id, user_id=user.user_id)
        for targets in pending:
            await self._deliver(targets, offline)

    # -- client events -----------------------------------------------------

    async def handle_frame(self, connection: Connection, frame: Any) -> None:
        """Dispatch one client frame; failures become an ``error`` event to this connection only."""
        if connection.state is not ConnectionState.AUTHENTICATED:
            return
        connection.last_activity = utcnow()
        try:
            kind, payload = parse_client_event(frame)
            await self._handlers[kind](connection, payload)
        except ServiceError as exc:
            logger.info(
                "hub_event_rejected",
                connection_id=connection.id,
                user_id=connection.user_id,
                error_code=exc.error_code,
                message=exc.message,
            )
            await self._send(connection, error_event(exc.error_code, exc.message, exc.detail or None))
        except Exception as exc:
            logger.exception(
                "hub_event_failed",
                connection_id=connection.id,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            await self._send(connection, error_event("server_error", "internal server error"))

    async def join_room(self, connection: Connection, room_id: str) -> ChatRoom:
        user = self._require_user(connection)
        room = self.store.get_chat_room(room_id)
        if room is None or not room.is_member(user.user_id):
            raise ForbiddenError("Access denied to room", detail={"room_id": room_id})

        already_joined = room_id in connection.rooms
        self._attach(connection, room_id)
        if not already_joined:
            await self._deliver(
                self._others_in_room(room_id, connection),
                ServerEvent(
                    ServerEventType.USER_JOINED_ROOM,
                    UserJoinedRoom(
                        user_id=user.user_id, name=user.name, avatar=user.avatar, room_id=room_id
                    ),
                ),
            )
            logger.info("room_joined", connection_id=connection.id, room_id=room_id)
        await self._send(connection, ServerEvent(ServerEventType.JOINED_ROOM, RoomAck(room_id=room_id)))
        return room

    async def leave_room(self, connection: Connection, room_id: str) -> None:
        user = self._require_user(connection)
        if room_id in connection.rooms:
            self._detach(connection, room_id)
            await self._deliver(
                self._connections_in_room(room_id),
                ServerEvent(
                    ServerEventType.USER_LEFT_ROOM,
                    UserLeftRoom(user_id=user.user_id, name=user.name, room_id=room_id),
                ),
            )
            logger.info("room_left", connection_id=connection.id, room_id=room_id)
        await self._send(connection, ServerEvent(ServerEventType.LEFT_ROOM, RoomAck(room_id=room_id)))

    async def send_message(
        self, connection: Connection, request: SendMessageRequest
    ) -> ChatMessage:
        """Persist a message and broadcast it to every connection joined to the room.

        Raises:
            RateLimitedError: the per-(user, room) chat limiter denied the message
            ForbiddenError: the sender is not a member of the room
        """
        user = self._require_user(connection)
        room_id = request.room_id
        key = chat_key(user.user_id, room_id)
        if not self.chat_limiter.is_allowed(key):
            retry_after = self.chat_limiter.retry_after(key)
            raise RateLimitedError(
                "Too many messages. Please slow down.",
                retry_after=retry_after,
                detail={"room_id": room_id, "retry_after": retry_after},
            )
        room = self.store.get_chat_room(room_id)
        if room is None or not room.is_member(user.user_id):
            raise ForbiddenError("Access denied to room", detail={"room_id": room_id})

        message = self.store.create_chat_message(
            room_id,
            user.user_id,
            request.content,
            type=request.type,
            file_url=request.file_url,
            file_name=request.file_name,
        )
        if message is None:
            # Room vanished between the membership check and the insert
            raise ForbiddenError("Access denied to room", detail={"room_id": room_id})
        self.store.touch_chat_room(room_id)

        event = ServerEvent(
            ServerEventType.NEW_MESSAGE,
            NewMessage(
                id=message.id,
                room_id=message.room_id,
                user_id=message.user_id,
                content=message.content,
                type=message.type,
                file_url=message.file_url,
                file_name=message.file_name,
                created_at=message.created_at,
                user=PublicUser(id=user.user_id, name=user.name, avatar=user.avatar),
            ),
        )
        logger.info("message_sent", room_id=room_id, message_id=message.id, user_id=user.user_id)
        await self._deliver(self._connections_in_room(room_id), event)
        return message

    async def typing_start(self, connection: Connection, room_id: str) -> None:
        user = self._require_joined(connection, room_id)
        await self._deliver(
            self._others_in_room(room_id, connection),
            ServerEvent(
                ServerEventType.USER_TYPING,
                UserTyping(user_id=user.user_id, name=user.name, room_id=room_id),
            ),
        )

    async def typing_stop(self, connection: Connection, room_id: str) -> None:
        user = self._require_joined(connection, room_id)
        await self._deliver(
            self._others_in_room(room_id, connection),
            ServerEvent(
                ServerEventType.USER_STOPPED_TYPING,
                UserStoppedTyping(user_id=user.user_id, room_id=room_id),
            ),
        )

    async def get_online_users(self, connection: Connection, room_id: str) -> None:
        self._require_user(connection)
        if self.store.get_chat_room(room_id) is None:
            return
        await self._send(
            connection,
            ServerEvent(
                ServerEventType.ONLINE_USERS,
                OnlineUsers(room_id=room_id, users=self.online_users_in_room(room_id)),
            ),
        )

    # -- out-of-band API ---------------------------------------------------

    async def notify_room(
        self, room_id: str, kind: ServerEventType, payload: Any
    ) -> int:
        """Send an event to every live connection joined to ``room_id``."""
        targets = self._connections_in_room(room_id)
        await self._deliver(targets, ServerEvent(kind, payload))
        return len(targets)

    async def notify_user(
        self, user_id: str, kind: ServerEventType, payload: Any
    ) -> int:
        """Send an event to every live connection owned by ``user_id``."""
        targets = [
            self.connections[cid]
            for cid in self.user_connections.get(user_id, ())
            if cid in self.connections
        ]
        await self._deliver(targets, ServerEvent(kind, payload))
        return len(targets)

    def is_user_online(self, user_id: str) -> bool:
        return bool(self.user_connections.get(user_id))

    def online_users_in_room(self, room_id: str) -> List[OnlineUser]:
        """One entry per joined connection; a user with two tabs is listed twice."""
        users = []
        for connection in self._connections_in_room(room_id):
            if connection.user is None:
                continue
            users.append(
                OnlineUser(
                    user_id=connection.user.user_id,
                    name=connection.user.name,
                    avatar=connection.user.avatar,
                    last_activity=connection.last_activity,
                )
            )
        return users

    def sync_room_membership(self, room: ChatRoom) -> int:
        """Detach connections whose user is no longer a member of ``room``."""
        detached = 0
        for connection in self._connections_in_room(room.id):
            if connection.user and not room.is_member(connection.user.user_id):
                self._detach(connection, room.id)
                detached += 1
        return detached

    def evict_room(self, room_id: str) -> int:
        """Detach every connection from a room that no longer exists."""
        connections = self._connections_in_room(room_id)
        for connection in connections:
            self._detach(connection, room_id)
        self.room_connections.pop(room_id, None)
        return len(connections)

    # -- internals ---------------------------------------------------------

    def _require_user(self, connection: Connection) -> SocketUser:
        if connection.state is not ConnectionState.AUTHENTICATED or connection.user is None:
            raise AuthenticationError("connection is not authenticated")
        return connection.user

    def _require_joined(self, connection: Connection, room_id: str) -> SocketUser:
        user = self._require_user(connection)
        if room_id not in connection.rooms:
            raise ForbiddenError("Join the room first", detail={"room_id": room_id})
        return user

    def _attach(self, connection: Connection, room_id: str) -> None:
        connection.rooms.add(room_id)
        self.room_connections.setdefault(room_id, set()).add(connection.id)

    def _detach(self, connection: Connection, room_id: str) -> None:
        connection.rooms.discard(room_id)
        members = self.room_connections.get(room_id)
        if members is not None:
            members.discard(connection.id)
            if not members:
                del self.room_connections[room_id]

    def _connections_in_room(self, room_id: str) -> List[Connection]:
        return [
            self.connections[cid]
            for cid in self.room_connections.get(room_id, ())
            if cid in self.connections
        ]

    def _others_in_room(self, room_id: str, connection: Connection) -> List[Connection]:
        return [c for c in self._connections_in_room(room_id) if c.id != connection.id]

    async def _deliver(self, targets: Iterable[Connection], event: ServerEvent) -> None:
        targets = list(targets)
        if not targets:
            return
        await asyncio.gather(*(self._send(target, event) for target in targets))

    async def _send(self, connection: Connection, event: ServerEvent) -> bool:
        if connection.state is ConnectionState.CLOSED:
            return False
        try:
            await connection.transport.send_json(event.to_wire())
            return True
        except Exception as exc:
            logger.warning(
                "hub_delivery_failed",
                connection_id=connection.id,
                event_type=event.kind.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
