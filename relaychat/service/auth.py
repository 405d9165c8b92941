from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from relaychat.config import Settings
from relaychat.logging import get_logger
from relaychat.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from relaychat.service.tokens import TokenPair, TokenService
from relaychat.storage.errors import ConstraintViolation
from relaychat.storage.memory import MemoryStore
from relaychat.storage.models import User, utcnow

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user_id: str
    email: str


class AuthService:
    """Registration, email verification, login, refresh rotation and password flows.

    Refresh tokens are signed like access tokens but must also be present and
    unexpired in the record store. Each successful refresh deletes the
    presented token and stores its replacement, so a refresh token is good for
    exactly one use.
    """

    def __init__(self, store: MemoryStore, tokens: TokenService, settings: Settings) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    # -- passwords ---------------------------------------------------------

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: User, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError) as exc:
            self.logger.warning("password_verify_failed", user_id=user.id, error=str(exc))
            return False

    # -- registration & verification -----------------------------------------

    def register(self, name: str, email: str, password: str) -> Tuple[User, str]:
        """Create an unverified user; returns the user and its verification token."""
        if self.store.get_user_by_email(email):
            raise ConflictError("User already exists", detail={"field": "email"})
        verification_token = self.tokens.generate_random_token()
        try:
            user = self.store.create_user(
                email,
                name,
                self._hash_password(password),
                email_verification_token=verification_token,
            )
        except ConstraintViolation as exc:
            raise ConflictError("User already exists", detail=exc.detail) from exc
        self.logger.info("user_registered", user_id=user.id)
        return user, verification_token

    def verify_email(self, token: str) -> Tuple[User, TokenPair]:
        user = self.store.get_user_by_verification_token(token)
        if not user:
            raise BadRequestError("Invalid verification token")
        user = self.store.update_user(
            user.id, is_email_verified=True, email_verification_token=None
        )
        self.logger.info("email_verified", user_id=user.id)
        return user, self._issue_session(user)

    # -- sessions ----------------------------------------------------------

    def login(self, email: str, password: str) -> Tuple[User, TokenPair]:
        user = self.store.get_user_by_email(email)
        if not user or not self.verify_password(user, password):
            self.logger.info("login_failed", reason="invalid_credentials")
            raise AuthenticationError("Invalid credentials")
        if not user.is_email_verified:
            raise ForbiddenError("Please verify your email before logging in")
        self.logger.info("login_succeeded", user_id=user.id)
        return user, self._issue_session(user)

    def refresh(self, refresh_token: str) -> Tuple[User, TokenPair]:
        """Exchange a refresh token for a new pair, consuming the old token."""
        payload = self.tokens.verify_refresh_token(refresh_token)
        if payload is None:
            raise AuthenticationError("Invalid refresh token")
        record = self.store.get_refresh_token(refresh_token)
        if record is None or record.is_expired():
            if record is not None:
                self.store.delete_refresh_token(refresh_token)
            self.logger.info("refresh_rejected", user_id=payload.user_id, reason="not_stored")
            raise AuthenticationError("Refresh token expired or revoked")
        if record.user_id != payload.user_id:
            raise AuthenticationError("Invalid refresh token")
        user = self.store.get_user(payload.user_id)
        if not user:
            self.store.delete_refresh_token(refresh_token)
            raise AuthenticationError("User not found")
        if not self.store.delete_refresh_token(refresh_token):
            # Lost a race with a concurrent refresh of the same token
            raise AuthenticationError("Refresh token expired or revoked")
        tokens = self._issue_session(user)
        self.logger.info("refresh_rotated", user_id=user.id)
        return user, tokens

    def logout(self, refresh_token: Optional[str]) -> bool:
        if not refresh_token:
            return False
        removed = self.store.delete_refresh_token(refresh_token)
        self.logger.info("logout", revoked=removed)
        return removed

    def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Resolve an ``Authorization: Bearer`` header to the calling user."""
        token = self.extract_bearer(authorization)
        if not token:
            return None
        payload = self.tokens.verify_access_token(token)
        if payload is None:
            return None
        user = self.store.get_user(payload.user_id)
        if not user:
            return None
        return AuthContext(user_id=user.id, email=user.email)

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    def _issue_session(self, user: User) -> TokenPair:
        pair = self.tokens.issue_token_pair(user.id, user.email)
        self.store.create_refresh_token(user.id, pair.refresh_token, pair.refresh_expires_at)
        return pair

    # -- password reset & profile -------------------------------------------

    def request_password_reset(self, email: str) -> Optional[str]:
        """Issue a reset token; returns None for unknown addresses without revealing it."""
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info("password_reset_unknown_email")
            return None
        token = self.tokens.generate_random_token()
        self.store.update_user(
            user.id,
            password_reset_token=token,
            password_reset_expires=utcnow()
            + timedelta(minutes=self.settings.password_reset_ttl_minutes),
        )
        self.logger.info("password_reset_requested", user_id=user.id)
        return token

    def reset_password(self, token: str, new_password: str) -> User:
        user = self.store.get_user_by_reset_token(token)
        if (
            not user
            or user.password_reset_expires is None
            or user.password_reset_expires <= utcnow()
        ):
            raise BadRequestError("Invalid or expired reset token")
        user = self.store.update_user(
            user.id,
            password_hash=self._hash_password(new_password),
            password_reset_token=None,
            password_reset_expires=None,
        )
        revoked = self.store.delete_refresh_tokens_for_user(user.id)
        self.logger.info("password_reset_completed", user_id=user.id, revoked_tokens=revoked)
        return user

    def change_password(self, user_id: str, current_password: str, new_password: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        if not self.verify_password(user, current_password):
            raise AuthenticationError("Current password is incorrect")
        user = self.store.update_user(user.id, password_hash=self._hash_password(new_password))
        revoked = self.store.delete_refresh_tokens_for_user(user.id)
        self.logger.info("password_changed", user_id=user.id, revoked_tokens=revoked)
        return user

    def update_profile(
        self, user_id: str, *, name: Optional[str] = None, avatar: Optional[str] = None
    ) -> User:
        changes = {}
        if name is not None:
            changes["name"] = name
        if avatar is not None:
            changes["avatar"] = avatar
        user = self.store.update_user(user_id, **changes)
        if not user:
            raise NotFoundError("User not found")
        return user
