from __future__ import annotations

import json
from typing import List, Optional

from fastapi import (
    APIRouter,
    Depends,
    Header,
    HTTPException,
    Path,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
)

from relaychat.api.schemas import (
    AddMemberRequest,
    AuthResponse,
    BlockedIPResponse,
    ChatMessageListResponse,
    ChatMessageResponse,
    CreateRoomRequest,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MessagePage,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    RegisterResponse,
    RoomDetailResponse,
    RoomListResponse,
    RoomMember,
    RoomResponse,
    SecurityStatsResponse,
    TokenRefreshRequest,
    UpdateRoomRequest,
    UserResponse,
)
from relaychat.logging import bind_connection_context, clear_connection_context, get_logger
from relaychat.service.auth import AuthContext
from relaychat.service.errors import AuthenticationError
from relaychat.service.events import RoomDeleted, RoomSnapshot, ServerEventType, error_event
from relaychat.service.rate_limit import RateLimiter
from relaychat.service.runtime import get_runtime
from relaychat.service.security import SecurityEventType, client_ip
from relaychat.service.tokens import TokenPair
from relaychat.storage.models import ChatRoom, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

# Close code sent when the websocket handshake token is missing or invalid
WS_CLOSE_UNAUTHORIZED = 4401
WS_CLOSE_FORBIDDEN = 4403


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    @classmethod
    def for_identity(cls, limiter: RateLimiter, key: str) -> "RateLimitInfo":
        return cls(
            limiter.max_requests,
            limiter.get_remaining_requests(key),
            limiter.retry_after(key),
        )

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }

    def apply_headers(self, response: Response) -> None:
        """Apply rate limit headers to response per IETF draft-polli-ratelimit-headers."""
        for name, value in self.headers().items():
            response.headers[name] = value


def _request_ip(request: Request) -> str:
    return client_ip(request.headers, request.client.host if request.client else None)


def _rate_limited(runtime, limiter: RateLimiter, key: str, request: Request) -> HTTPException:
    info = RateLimitInfo.for_identity(limiter, key)
    runtime.security.log_event(
        SecurityEventType.RATE_LIMIT_EXCEEDED,
        _request_ip(request),
        user_agent=request.headers.get("user-agent"),
        details={"limiter": limiter.name, "path": request.url.path},
    )
    headers = info.headers()
    headers["Retry-After"] = str(info.reset_seconds)
    return _http_error(
        "rate_limited",
        "Too many requests, please try again later.",
        status_code=429,
        details={"retry_after": info.reset_seconds},
        headers=headers,
    )


def _enforce_rate_limit(
    runtime,
    limiter: RateLimiter,
    key: str,
    request: Request,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Count one request against ``limiter`` and optionally apply headers to response.

    Raises:
        HTTPException with 429 and Retry-After if the window is exhausted
    """
    if not limiter.is_allowed(key):
        raise _rate_limited(runtime, limiter, key, request)
    info = RateLimitInfo.for_identity(limiter, key)
    if response is not None:
        info.apply_headers(response)
    return info


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    ctx = runtime.auth.authenticate(authorization)
    if not ctx:
        event_type = (
            SecurityEventType.INVALID_TOKEN
            if authorization
            else SecurityEventType.UNAUTHORIZED_ACCESS
        )
        runtime.security.log_event(
            event_type,
            _request_ip(request),
            user_agent=request.headers.get("user-agent"),
            details={"path": request.url.path},
        )
        raise _http_error("unauthorized", "Access token required", status_code=401)
    return ctx


def _auth_response(user: User, tokens: TokenPair) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.from_model(user),
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.access_expires_in,
    )


# -- auth ------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account; the user must verify their email before logging in.

    Raises:
        409: If the email is already registered
        429: If the auth rate limit for this client is exhausted
    """
    runtime = get_runtime()
    limiter = runtime.limiters.auth
    _enforce_rate_limit(runtime, limiter, _request_ip(request), request, response=response)
    user, verification_token = runtime.auth.register(body.name, body.email, body.password)
    return Envelope(
        status="ok",
        data=RegisterResponse(
            user=UserResponse.from_model(user),
            message="User registered successfully. Please verify your email.",
            verification_token=verification_token,
        ),
    )


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest, request: Request, response: Response):
    """Mark the email verified and sign the user in."""
    runtime = get_runtime()
    limiter = runtime.limiters.general
    _enforce_rate_limit(runtime, limiter, _request_ip(request), request, response=response)
    user, tokens = runtime.auth.verify_email(body.token)
    return Envelope(status="ok", data=_auth_response(user, tokens))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate user with email and password.

    Failed attempts are additionally counted per client and email; successful
    logins do not consume that budget.

    Raises:
        401: If credentials are invalid
        403: If the email has not been verified
        429: If rate limit exceeded for this client or email
    """
    runtime = get_runtime()
    ip = _request_ip(request)
    _enforce_rate_limit(runtime, runtime.limiters.auth, ip, request, response=response)
    strict = runtime.limiters.strict_auth
    strict_key = f"{ip}:{body.email}"
    if strict.get_remaining_requests(strict_key) <= 0:
        raise _rate_limited(runtime, strict, strict_key, request)
    try:
        user, tokens = runtime.auth.login(body.email, body.password)
    except AuthenticationError:
        strict.is_allowed(strict_key, success=False)
        runtime.security.log_event(
            SecurityEventType.FAILED_LOGIN,
            ip,
            user_agent=request.headers.get("user-agent"),
            details={"path": request.url.path},
        )
        raise
    strict.is_allowed(strict_key, success=True)
    return Envelope(status="ok", data=_auth_response(user, tokens))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request, response: Response):
    """Rotate a refresh token; the presented token cannot be used again."""
    runtime = get_runtime()
    ip = _request_ip(request)
    _enforce_rate_limit(runtime, runtime.limiters.general, ip, request, response=response)
    try:
        user, tokens = runtime.auth.refresh(body.refresh_token)
    except AuthenticationError as exc:
        runtime.security.log_event(
            SecurityEventType.INVALID_TOKEN,
            ip,
            user_agent=request.headers.get("user-agent"),
            details={"reason": exc.message},
        )
        raise
    return Envelope(status="ok", data=_auth_response(user, tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: LogoutRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime, runtime.limiters.general, _request_ip(request), request, response=response
    )
    revoked = runtime.auth.logout(body.refresh_token)
    logger.info("logout_requested", user_id=principal.user_id, revoked=revoked)
    return Envelope(status="ok", data=MessageResponse(message="Logged out successfully"))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordResetRequest, request: Request, response: Response):
    """Start a password reset; the response never reveals whether the email exists."""
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime, runtime.limiters.auth, _request_ip(request), request, response=response
    )
    token = runtime.auth.request_password_reset(body.email)
    return Envelope(
        status="ok",
        data=MessageResponse(
            message="If the email exists, a reset link has been sent",
            reset_token=token if runtime.settings.test_mode else None,
        ),
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, request: Request, response: Response):
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime, runtime.limiters.auth, _request_ip(request), request, response=response
    )
    runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data=MessageResponse(message="Password reset successfully"))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Change password; every refresh token of the user is revoked."""
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime, runtime.limiters.general, _request_ip(request), request, response=response
    )
    runtime.auth.change_password(principal.user_id, body.current_password, body.new_password)
    return Envelope(status="ok", data=MessageResponse(message="Password changed successfully"))


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def get_profile(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if not user:
        raise _http_error("not_found", "User not found", status_code=404)
    return Envelope(status="ok", data=UserResponse.from_model(user))


@router.put("/auth/profile", response_model=Envelope, tags=["auth"])
@router.patch("/auth/profile", response_model=Envelope, tags=["auth"])
async def update_profile(
    body: ProfileUpdateRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime, runtime.limiters.general, _request_ip(request), request, response=response
    )
    user = runtime.auth.update_profile(principal.user_id, name=body.name, avatar=body.avatar)
    return Envelope(status="ok", data=UserResponse.from_model(user))


# -- chat rooms ------------------------------------------------------------


def _room_snapshot(room: ChatRoom) -> RoomSnapshot:
    return RoomSnapshot(
        id=room.id,
        name=room.name,
        description=room.description,
        created_by=room.created_by,
        members=list(room.members),
        created_at=room.created_at,
        updated_at=room.updated_at,
    )


def _room_detail(runtime, room: ChatRoom) -> RoomDetailResponse:
    details: List[RoomMember] = []
    for member_id in room.members:
        member = runtime.store.get_user(member_id)
        if not member:
            continue
        details.append(
            RoomMember(
                id=member.id,
                name=member.name,
                email=member.email,
                avatar=member.avatar,
                is_online=runtime.hub.is_user_online(member.id),
            )
        )
    return RoomDetailResponse(
        **RoomResponse.from_model(room).model_dump(), member_details=details
    )


def _existing_users(runtime, user_ids: List[str]) -> List[str]:
    return [uid for uid in user_ids if runtime.store.get_user(uid)]


def _get_member_room(runtime, room_id: str, principal: AuthContext) -> ChatRoom:
    room = runtime.store.get_chat_room(room_id)
    if not room:
        raise _http_error("not_found", "Chat room not found", status_code=404)
    if not room.is_member(principal.user_id):
        raise _http_error("forbidden", "Access denied to room", status_code=403)
    return room


def _get_owned_room(runtime, room_id: str, principal: AuthContext) -> ChatRoom:
    room = _get_member_room(runtime, room_id, principal)
    if room.created_by != principal.user_id:
        raise _http_error(
            "forbidden", "Only the room creator can modify this room", status_code=403
        )
    return room


@router.get("/chat/rooms", response_model=Envelope, tags=["chat"])
async def list_rooms(
    request: Request, response: Response, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime, runtime.limiters.api, principal.user_id, request, response=response
    )
    rooms = runtime.store.list_chat_rooms_for_user(principal.user_id)
    return Envelope(
        status="ok",
        data=RoomListResponse(items=[RoomResponse.from_model(room) for room in rooms]),
    )


@router.post("/chat/rooms", response_model=Envelope, status_code=201, tags=["chat"])
async def create_room(
    body: CreateRoomRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Create a room; the creator is always its first member.

    Unknown user ids in ``members`` are dropped. Every member with a live
    connection receives ``room_created``.
    """
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime, runtime.limiters.api, principal.user_id, request, response=response
    )
    room = runtime.store.create_chat_room(
        body.name,
        principal.user_id,
        description=body.description,
        members=_existing_users(runtime, body.members),
    )
    logger.info("room_created", room_id=room.id, user_id=principal.user_id, members=len(room.members))
    snapshot = _room_snapshot(room)
    for member_id in room.members:
        await runtime.hub.notify_user(member_id, ServerEventType.ROOM_CREATED, snapshot)
    return Envelope(status="ok", data=_room_detail(runtime, room))


@router.get("/chat/rooms/{room_id}", response_model=Envelope, tags=["chat"])
async def get_room(
    request: Request,
    response: Response,
    room_id: str = Path(..., min_length=1, max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime, runtime.limiters.api, principal.user_id, request, response=response
    )
    room = _get_member_room(runtime, room_id, principal)
    return Envelope(status="ok", data=_room_detail(runtime, room))


@router.put("/chat/rooms/{room_id}", response_model=Envelope, tags=["chat"])
async def update_room(
    body: UpdateRoomRequest,
    request: Request,
    response: Response,
    room_id: str = Path(..., min_length=1, max_length=128),
    principal: AuthContext = Depends(get_user),
):
    """Rename or re-member a room (creator only).

    Live connections of removed members are detached from the room after the
    ``room_updated`` notification.
    """
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime, runtime.limiters.api, principal.user_id, request, response=response
    )
    _get_owned_room(runtime, room_id, principal)
    changes = {}
    if body.name is not None:
        changes["name"] = body.name
    if body.description is not None:
        changes["description"] = body.description
    if body.members is not None:
        changes["members"] = _existing_users(runtime, body.members)
    room = runtime.store.update_chat_room(room_id, **changes)
    if not room:
        raise _http_error("not_found", "Chat room not found", status_code=404)
    await runtime.hub.notify_room(room.id, ServerEventType.ROOM_UPDATED, _room_snapshot(room))
    detached = runtime.hub.sync_room_membership(room)
    logger.info("room_updated", room_id=room.id, user_id=principal.user_id, detached=detached)
    return Envelope(status="ok", data=_room_detail(runtime, room))


@router.delete("/chat/rooms/{room_id}", response_model=Envelope, tags=["chat"])
async def delete_room(
    request: Request,
    response: Response,
    room_id: str = Path(..., min_length=1, max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime, runtime.limiters.api, principal.user_id, request, response=response
    )
    _get_owned_room(runtime, room_id, principal)
    await runtime.hub.notify_room(room_id, ServerEventType.ROOM_DELETED, RoomDeleted(room_id=room_id))
    runtime.hub.evict_room(room_id)
    runtime.store.delete_chat_room(room_id)
    logger.info("room_deleted", room_id=room_id, user_id=principal.user_id)
    return Envelope(status="ok", data=MessageResponse(message="Chat room deleted successfully"))


@router.post("/chat/rooms/{room_id}/members", response_model=Envelope, tags=["chat"])
async def add_room_member(
    body: AddMemberRequest,
    request: Request,
    response: Response,
    room_id: str = Path(..., min_length=1, max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime, runtime.limiters.api, principal.user_id, request, response=response
    )
    _get_owned_room(runtime, room_id, principal)
    if not runtime.store.get_user(body.user_id):
        raise _http_error("not_found", "User not found", status_code=404)
    room = runtime.store.add_room_member(room_id, body.user_id)
    if not room:
        raise _http_error("not_found", "Chat room not found", status_code=404)
    snapshot = _room_snapshot(room)
    await runtime.hub.notify_room(room.id, ServerEventType.ROOM_UPDATED, snapshot)
    # The new member has no connection joined to the room yet
    await runtime.hub.notify_user(body.user_id, ServerEventType.ROOM_UPDATED, snapshot)
    return Envelope(status="ok", data=_room_detail(runtime, room))


@router.delete("/chat/rooms/{room_id}/members/{user_id}", response_model=Envelope, tags=["chat"])
async def remove_room_member(
    request: Request,
    response: Response,
    room_id: str = Path(..., min_length=1, max_length=128),
    user_id: str = Path(..., min_length=1, max_length=128),
    principal: AuthContext = Depends(get_user),
):
    """Remove a member; the creator may remove anyone else, members may remove themselves.

    Raises:
        409: If the creator tries to leave their own room
    """
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime, runtime.limiters.api, principal.user_id, request, response=response
    )
    if user_id == principal.user_id:
        _get_member_room(runtime, room_id, principal)
    else:
        _get_owned_room(runtime, room_id, principal)
    room = runtime.store.remove_room_member(room_id, user_id)
    if not room:
        raise _http_error("not_found", "Chat room not found", status_code=404)
    snapshot = _room_snapshot(room)
    await runtime.hub.notify_room(room.id, ServerEventType.ROOM_UPDATED, snapshot)
    detached = runtime.hub.sync_room_membership(room)
    logger.info("room_member_removed", room_id=room.id, member_id=user_id, detached=detached)
    return Envelope(status="ok", data=_room_detail(runtime, room))


@router.get("/chat/rooms/{room_id}/messages", response_model=Envelope, tags=["chat"])
async def list_room_messages(
    request: Request,
    response: Response,
    room_id: str = Path(..., min_length=1, max_length=128),
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    principal: AuthContext = Depends(get_user),
):
    """Page through a room's messages, newest first."""
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime, runtime.limiters.api, principal.user_id, request, response=response
    )
    _get_member_room(runtime, room_id, principal)
    settings = runtime.settings
    page_size = min(limit or settings.default_message_page_size, settings.max_message_page_size)
    messages = runtime.store.list_chat_messages(room_id, limit=page_size, offset=offset)
    total = runtime.store.count_chat_messages(room_id)
    authors: dict[str, Optional[User]] = {}
    items = []
    for message in messages:
        if message.user_id not in authors:
            authors[message.user_id] = runtime.store.get_user(message.user_id)
        items.append(ChatMessageResponse.from_model(message, authors[message.user_id]))
    return Envelope(
        status="ok",
        data=ChatMessageListResponse(
            items=items,
            pagination=MessagePage(
                limit=page_size,
                offset=offset,
                has_more=offset + len(items) < total,
            ),
        ),
    )


# -- security --------------------------------------------------------------


@router.get("/security/stats", response_model=Envelope, tags=["security"])
async def security_stats(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    stats = runtime.security.stats()
    return Envelope(
        status="ok",
        data=SecurityStatsResponse(
            total_events=stats.total_events,
            events_by_type=stats.events_by_type,
            blocked_ips=[
                BlockedIPResponse(
                    ip=blocked.ip,
                    reason=blocked.reason,
                    blocked_at=blocked.blocked_at,
                    expires_at=blocked.expires_at,
                    attempts=blocked.attempts,
                )
                for blocked in stats.blocked_ips
            ],
            suspicious_ips=stats.suspicious_ips,
        ),
    )


# -- websocket -------------------------------------------------------------


def _decode_frame(message: dict) -> object:
    """Parse a received frame as JSON; binary frames must carry UTF-8 JSON."""
    raw = message.get("text")
    if raw is None:
        # UnicodeDecodeError is a ValueError, same as a JSON syntax error
        raw = (message.get("bytes") or b"").decode("utf-8")
    return json.loads(raw)


@router.websocket("/ws")
async def websocket_hub(ws: WebSocket, token: Optional[str] = Query(None)):
    """Presence and messaging socket.

    The access token comes from ``?token=`` or an ``Authorization: Bearer``
    header. A bad handshake gets one ``error`` event and close code 4401.
    """
    runtime = get_runtime()
    await ws.accept()
    ip = client_ip(ws.headers, ws.client.host if ws.client else None)
    if runtime.security.is_ip_blocked(ip):
        await ws.send_json(error_event("forbidden", "Access denied").to_wire())
        await ws.close(code=WS_CLOSE_FORBIDDEN)
        return
    token = token or runtime.auth.extract_bearer(ws.headers.get("authorization"))
    try:
        connection = await runtime.hub.connect(token, ws)
    except AuthenticationError as exc:
        runtime.security.log_event(
            SecurityEventType.INVALID_TOKEN if token else SecurityEventType.UNAUTHORIZED_ACCESS,
            ip,
            user_agent=ws.headers.get("user-agent"),
            details={"path": "/v1/ws", "reason": exc.message},
        )
        await ws.send_json(error_event(exc.error_code, exc.message).to_wire())
        await ws.close(code=WS_CLOSE_UNAUTHORIZED)
        return

    bind_connection_context(connection.id, connection.user_id)
    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
            try:
                frame = _decode_frame(message)
            except ValueError:
                await ws.send_json(
                    error_event("validation_error", "Frames must be JSON objects").to_wire()
                )
                continue
            await runtime.hub.handle_frame(connection, frame)
    except WebSocketDisconnect:
        logger.info("websocket_closed")
    finally:
        await runtime.hub.disconnect(connection)
        clear_connection_context()
