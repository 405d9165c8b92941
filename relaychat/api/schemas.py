from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from relaychat.storage.models import ChatMessage, ChatRoom, MessageType, User


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "payload_too_large",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every HTTP endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_display_name(value: str) -> str:
    normalized = _normalize_unicode(value).strip()
    if not normalized:
        raise ValueError("name must not be blank")
    return normalized


# -- auth ------------------------------------------------------------------


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: str
    password: str

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _validate_display_name(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    avatar: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_display_name(value) if value is not None else None


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    avatar: Optional[str] = None
    is_email_verified: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            avatar=user.avatar,
            is_email_verified=user.is_email_verified,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class AuthResponse(BaseModel):
    user: UserResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class RegisterResponse(BaseModel):
    user: UserResponse
    message: str
    # Stands in for the verification email this service does not send
    verification_token: str


class MessageResponse(BaseModel):
    message: str
    # Only exposed in TEST_MODE since no email is delivered
    reset_token: Optional[str] = None


# -- chat ------------------------------------------------------------------


class CreateRoomRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    members: List[str] = Field(default_factory=list, max_length=500)

    @field_validator("name")
    @classmethod
    def _validate_room_name(cls, value: str) -> str:
        return _validate_display_name(value)


class UpdateRoomRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    members: Optional[List[str]] = Field(default=None, max_length=500)

    @field_validator("name")
    @classmethod
    def _validate_room_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_display_name(value) if value is not None else None


class AddMemberRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)


class RoomMember(BaseModel):
    id: str
    name: str
    email: str
    avatar: Optional[str] = None
    is_online: bool


class RoomResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    created_by: str
    members: List[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, room: ChatRoom) -> "RoomResponse":
        return cls(
            id=room.id,
            name=room.name,
            description=room.description,
            created_by=room.created_by,
            members=list(room.members),
            created_at=room.created_at,
            updated_at=room.updated_at,
        )


class RoomDetailResponse(RoomResponse):
    member_details: List[RoomMember] = Field(default_factory=list)


class RoomListResponse(BaseModel):
    items: List[RoomResponse]


class MessageAuthor(BaseModel):
    id: str
    name: str
    avatar: Optional[str] = None


class ChatMessageResponse(BaseModel):
    id: str
    room_id: str
    user_id: str
    content: str
    type: MessageType
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    created_at: datetime
    edited_at: Optional[datetime] = None
    user: Optional[MessageAuthor] = None

    @classmethod
    def from_model(
        cls, message: ChatMessage, author: Optional[User] = None
    ) -> "ChatMessageResponse":
        return cls(
            id=message.id,
            room_id=message.room_id,
            user_id=message.user_id,
            content=message.content,
            type=message.type,
            file_url=message.file_url,
            file_name=message.file_name,
            created_at=message.created_at,
            edited_at=message.edited_at,
            user=MessageAuthor(id=author.id, name=author.name, avatar=author.avatar)
            if author
            else None,
        )


class MessagePage(BaseModel):
    limit: int
    offset: int
    has_more: bool


class ChatMessageListResponse(BaseModel):
    items: List[ChatMessageResponse]
    pagination: MessagePage


# -- security --------------------------------------------------------------


class BlockedIPResponse(BaseModel):
    ip: str
    reason: str
    blocked_at: datetime
    expires_at: datetime
    attempts: int


class SecurityStatsResponse(BaseModel):
    total_events: int
    events_by_type: Dict[str, int]
    blocked_ips: List[BlockedIPResponse]
    suspicious_ips: int
