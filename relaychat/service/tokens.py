from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from relaychat.config import Settings
from relaychat.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPayload:
    user_id: str
    email: str
    issued_at: int
    expires_at: int
    token_type: str
    jti: str

    @property
    def expires_at_dt(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_at: datetime
    token_type: str = "bearer"


class TokenService:
    """Mints and verifies HS256 bearer tokens.

    Access and refresh tokens are signed with different secrets so a leaked
    access-token secret cannot be used to mint refresh tokens. Verification
    never raises: any malformed, forged, expired or mistyped token yields None.
    """

    def __init__(
        self, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> None:
        self.settings = settings
        self._clock = clock
        self._secrets = {
            ACCESS: settings.jwt_secret.encode(),
            REFRESH: settings.jwt_refresh_secret.encode(),
        }
        self.access_ttl_seconds = settings.access_token_ttl_minutes * 60
        self.refresh_ttl_seconds = settings.refresh_token_ttl_days * 24 * 60 * 60

    # -- issuing -----------------------------------------------------------

    def issue_access_token(self, user_id: str, email: str) -> str:
        return self._issue(user_id, email, ACCESS, self.access_ttl_seconds)

    def issue_refresh_token(self, user_id: str, email: str) -> str:
        return self._issue(user_id, email, REFRESH, self.refresh_ttl_seconds)

    def issue_token_pair(self, user_id: str, email: str) -> TokenPair:
        issued_at = int(self._clock())
        return TokenPair(
            access_token=self.issue_access_token(user_id, email),
            refresh_token=self.issue_refresh_token(user_id, email),
            access_expires_in=self.access_ttl_seconds,
            refresh_expires_at=datetime.fromtimestamp(
                issued_at + self.refresh_ttl_seconds, tz=timezone.utc
            ),
        )

    def _issue(self, user_id: str, email: str, token_type: str, ttl_seconds: int) -> str:
        now = int(self._clock())
        payload = {
            "sub": user_id,
            "email": email,
            "iat": now,
            "exp": now + ttl_seconds,
            # jti keeps two tokens minted in the same second distinct
            "jti": uuid.uuid4().hex,
            "token_type": token_type,
            "iss": self.settings.jwt_issuer,
        }
        return self._encode_jwt(payload, self._secrets[token_type])

    # -- verification ------------------------------------------------------

    def verify_access_token(self, token: Optional[str]) -> Optional[TokenPayload]:
        return self._verify(token, ACCESS)

    def verify_refresh_token(self, token: Optional[str]) -> Optional[TokenPayload]:
        return self._verify(token, REFRESH)

    def _verify(self, token: Optional[str], token_type: str) -> Optional[TokenPayload]:
        if not token or not isinstance(token, str):
            return None
        payload = self._decode_jwt(token, self._secrets[token_type])
        if payload is None:
            return None
        if payload.get("token_type") != token_type:
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or exp <= self._clock():
            return None
        user_id = payload.get("sub")
        email = payload.get("email")
        if not isinstance(user_id, str) or not isinstance(email, str):
            return None
        return TokenPayload(
            user_id=user_id,
            email=email,
            issued_at=int(payload.get("iat") or 0),
            expires_at=int(exp),
            token_type=token_type,
            jti=str(payload.get("jti") or ""),
        )

    # -- opaque tokens -----------------------------------------------------

    @staticmethod
    def generate_random_token() -> str:
        """Opaque single-use token for email verification and password reset."""
        return secrets.token_hex(32)

    # -- JWT encoding ------------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).rstrip(b"=").decode()

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * (-len(segment) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(self, token: str, secret: bytes) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        return payload
