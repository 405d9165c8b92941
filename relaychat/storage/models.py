from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageType(str, Enum):
    TEXT = "text"
    FILE = "file"
    EMOJI = "emoji"


@dataclass
class User:
    id: str
    email: str
    name: str
    password_hash: str
    avatar: Optional[str] = None
    is_email_verified: bool = False
    email_verification_token: Optional[str] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class ChatRoom:
    id: str
    name: str
    created_by: str
    members: List[str] = field(default_factory=list)
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_member(self, user_id: str) -> bool:
        return user_id in self.members


@dataclass
class ChatMessage:
    id: str
    room_id: str
    user_id: str
    content: str
    type: MessageType = MessageType.TEXT
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    edited_at: Optional[datetime] = None
