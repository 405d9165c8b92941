from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from relaychat.logging import get_logger
from relaychat.storage.errors import ConstraintViolation
from relaychat.storage.models import (
    ChatMessage,
    ChatRoom,
    MessageType,
    RefreshToken,
    User,
    utcnow,
)

_UNSET = object()


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _unique(values: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    ordered: List[str] = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


class MemoryStore:
    """Process-lifetime record store for users, rooms, messages and refresh tokens.

    Lookups by id and by email are O(1). Rooms are indexed by member and
    messages by room so the hub never scans the full collections on a hot path.
    Missing records are reported as ``None``/``False``; only uniqueness
    conflicts raise (``ConstraintViolation``).
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.users_by_email: Dict[str, str] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.chat_rooms: Dict[str, ChatRoom] = {}
        self.chat_messages: Dict[str, ChatMessage] = {}
        self._rooms_by_member: Dict[str, Set[str]] = {}
        self._messages_by_room: Dict[str, List[str]] = {}
        # RLock so helpers can be called while a mutation already holds it
        self._data_lock = threading.RLock()

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        name: str,
        password_hash: str,
        *,
        avatar: Optional[str] = None,
        is_email_verified: bool = False,
        email_verification_token: Optional[str] = None,
    ) -> User:
        normalized = _normalize_email(email)
        with self._data_lock:
            if normalized in self.users_by_email:
                raise ConstraintViolation("email already exists", field="email")
            user = User(
                id=self.new_id(),
                email=normalized,
                name=name,
                password_hash=password_hash,
                avatar=avatar,
                is_email_verified=is_email_verified,
                email_verification_token=email_verification_token,
            )
            self.users[user.id] = user
            self.users_by_email[normalized] = user.id
            self.logger.info("user_created", user_id=user.id)
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self.users_by_email.get(_normalize_email(email))
            return self.users.get(user_id) if user_id else None

    def get_user_by_verification_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.email_verification_token == token),
                None,
            )

    def get_user_by_reset_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.password_reset_token == token),
                None,
            )

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)[:limit]

    def update_user(self, user_id: str, **changes) -> Optional[User]:
        """Apply field changes to a user, keeping the email index consistent."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            new_email = changes.pop("email", None)
            if new_email is not None:
                normalized = _normalize_email(new_email)
                owner = self.users_by_email.get(normalized)
                if owner and owner != user_id:
                    raise ConstraintViolation("email already exists", field="email")
                self.users_by_email.pop(user.email, None)
                self.users_by_email[normalized] = user_id
                user.email = normalized
            for key, value in changes.items():
                if key in {"id", "created_at", "updated_at"} or not hasattr(user, key):
                    raise ValueError(f"unknown or immutable user field: {key}")
                setattr(user, key, value)
            user.updated_at = utcnow()
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.pop(user_id, None)
            if not user:
                return False
            self.users_by_email.pop(user.email, None)
            self.delete_refresh_tokens_for_user(user_id)
            return True

    # -- refresh tokens ----------------------------------------------------

    def create_refresh_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            if token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already stored", field="token")
            record = RefreshToken(
                id=self.new_id(), user_id=user_id, token=token, expires_at=expires_at
            )
            self.refresh_tokens[token] = record
            return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return self.refresh_tokens.get(token)

    def delete_refresh_token(self, token: str) -> bool:
        with self._data_lock:
            return self.refresh_tokens.pop(token, None) is not None

    def delete_refresh_tokens_for_user(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [t for t, rec in self.refresh_tokens.items() if rec.user_id == user_id]
            for token in doomed:
                del self.refresh_tokens[token]
            return len(doomed)

    def cleanup_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            expired = [t for t, rec in self.refresh_tokens.items() if rec.is_expired(now)]
            for token in expired:
                del self.refresh_tokens[token]
        if expired:
            self.logger.info("refresh_tokens_expired_removed", count=len(expired))
        return len(expired)

    # -- chat rooms --------------------------------------------------------

    def create_chat_room(
        self,
        name: str,
        created_by: str,
        *,
        description: Optional[str] = None,
        members: Optional[Iterable[str]] = None,
    ) -> ChatRoom:
        with self._data_lock:
            room = ChatRoom(
                id=self.new_id(),
                name=name,
                description=description,
                created_by=created_by,
                members=_unique([created_by, *(members or [])]),
            )
            self.chat_rooms[room.id] = room
            self._messages_by_room[room.id] = []
            for member in room.members:
                self._rooms_by_member.setdefault(member, set()).add(room.id)
            return room

    def get_chat_room(self, room_id: str) -> Optional[ChatRoom]:
        with self._data_lock:
            return self.chat_rooms.get(room_id)

    def list_chat_rooms_for_user(self, user_id: str) -> List[ChatRoom]:
        with self._data_lock:
            room_ids = self._rooms_by_member.get(user_id, set())
            rooms = [self.chat_rooms[r] for r in room_ids if r in self.chat_rooms]
            return sorted(rooms, key=lambda r: r.updated_at, reverse=True)

    def update_chat_room(
        self,
        room_id: str,
        *,
        name: Optional[str] = None,
        description=_UNSET,
        members: Optional[Iterable[str]] = None,
    ) -> Optional[ChatRoom]:
        with self._data_lock:
            room = self.chat_rooms.get(room_id)
            if not room:
                return None
            if name is not None:
                room.name = name
            if description is not _UNSET:
                room.description = description
            if members is not None:
                new_members = _unique([room.created_by, *members])
                for removed in set(room.members) - set(new_members):
                    self._rooms_by_member.get(removed, set()).discard(room_id)
                for added in new_members:
                    self._rooms_by_member.setdefault(added, set()).add(room_id)
                room.members = new_members
            room.updated_at = utcnow()
            return room

    def add_room_member(self, room_id: str, user_id: str) -> Optional[ChatRoom]:
        with self._data_lock:
            room = self.chat_rooms.get(room_id)
            if not room:
                return None
            if user_id not in room.members:
                room.members.append(user_id)
                self._rooms_by_member.setdefault(user_id, set()).add(room_id)
                room.updated_at = utcnow()
            return room

    def remove_room_member(self, room_id: str, user_id: str) -> Optional[ChatRoom]:
        with self._data_lock:
            room = self.chat_rooms.get(room_id)
            if not room:
                return None
            if user_id == room.created_by:
                raise ConstraintViolation("room creator must remain a member", field="members")
            if user_id in room.members:
                room.members.remove(user_id)
                self._rooms_by_member.get(user_id, set()).discard(room_id)
                room.updated_at = utcnow()
            return room

    def touch_chat_room(self, room_id: str) -> Optional[ChatRoom]:
        with self._data_lock:
            room = self.chat_rooms.get(room_id)
            if room:
                room.updated_at = utcnow()
            return room

    def delete_chat_room(self, room_id: str) -> bool:
        with self._data_lock:
            if room_id not in self.chat_rooms:
                return False
            # Messages go first so no message ever points at a missing room
            for message_id in self._messages_by_room.pop(room_id, []):
                self.chat_messages.pop(message_id, None)
            room = self.chat_rooms.pop(room_id)
            for member in room.members:
                self._rooms_by_member.get(member, set()).discard(room_id)
            return True

    # -- chat messages -----------------------------------------------------

    def create_chat_message(
        self,
        room_id: str,
        user_id: str,
        content: str,
        *,
        type: MessageType = MessageType.TEXT,
        file_url: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> Optional[ChatMessage]:
        with self._data_lock:
            if room_id not in self.chat_rooms:
                return None
            message = ChatMessage(
                id=self.new_id(),
                room_id=room_id,
                user_id=user_id,
                content=content,
                type=MessageType(type),
                file_url=file_url,
                file_name=file_name,
            )
            self.chat_messages[message.id] = message
            self._messages_by_room.setdefault(room_id, []).append(message.id)
            return message

    def get_chat_message(self, message_id: str) -> Optional[ChatMessage]:
        with self._data_lock:
            return self.chat_messages.get(message_id)

    def list_chat_messages(
        self, room_id: str, limit: int = 50, offset: int = 0
    ) -> List[ChatMessage]:
        """Messages of a room, newest first."""
        with self._data_lock:
            ids = self._messages_by_room.get(room_id, [])
            # Newest insert first so equal timestamps keep reverse insertion order
            messages = [self.chat_messages[m] for m in reversed(ids)]
            messages.sort(key=lambda m: m.created_at, reverse=True)
            start = max(0, offset)
            return messages[start : start + max(0, limit)]

    def count_chat_messages(self, room_id: str) -> int:
        with self._data_lock:
            return len(self._messages_by_room.get(room_id, []))

    def update_chat_message(self, message_id: str, content: str) -> Optional[ChatMessage]:
        with self._data_lock:
            message = self.chat_messages.get(message_id)
            if not message:
                return None
            message.content = content
            message.edited_at = utcnow()
            return message

    def delete_chat_message(self, message_id: str) -> bool:
        with self._data_lock:
            message = self.chat_messages.pop(message_id, None)
            if not message:
                return False
            ids = self._messages_by_room.get(message.room_id)
            if ids and message_id in ids:
                ids.remove(message_id)
            return True
