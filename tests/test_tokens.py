"""Unit tests for the token service.

Covers issuing and verifying access and refresh tokens, expiry via an
injected clock, secret separation and tamper detection.
"""

import base64
import json

import pytest

from relaychat.config import Settings
from relaychat.service.tokens import TokenService


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="access-secret-for-unit-tests-0123456789abcdef",
        jwt_refresh_secret="refresh-secret-for-unit-tests-0123456789abcdef",
        access_token_ttl_minutes=15,
        refresh_token_ttl_days=7,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tokens(settings, clock):
    return TokenService(settings, clock=clock)


def _claims(token: str) -> dict:
    segment = token.split(".")[1]
    padded = segment + "=" * (-len(segment) % 4)
    return json.loads(base64.urlsafe_b64decode(padded))


class TestAccessTokens:
    """Tests for access token issuing and verification."""

    def test_access_token_round_trip(self, tokens):
        token = tokens.issue_access_token("user-1", "alice@example.com")
        payload = tokens.verify_access_token(token)

        assert payload is not None
        assert payload.user_id == "user-1"
        assert payload.email == "alice@example.com"
        assert payload.token_type == "access"

    def test_access_token_claims(self, tokens, clock):
        token = tokens.issue_access_token("user-1", "alice@example.com")
        claims = _claims(token)

        assert claims["sub"] == "user-1"
        assert claims["iat"] == int(clock.now)
        assert claims["exp"] == int(clock.now) + 15 * 60
        assert claims["iss"] == "relaychat"
        assert claims["jti"]

    def test_access_token_expires(self, tokens, clock):
        token = tokens.issue_access_token("user-1", "alice@example.com")

        clock.advance(15 * 60 - 1)
        assert tokens.verify_access_token(token) is not None

        clock.advance(1)
        assert tokens.verify_access_token(token) is None

    def test_tokens_minted_in_same_second_differ(self, tokens):
        first = tokens.issue_access_token("user-1", "alice@example.com")
        second = tokens.issue_access_token("user-1", "alice@example.com")

        assert first != second

    def test_refresh_token_is_not_an_access_token(self, tokens):
        refresh = tokens.issue_refresh_token("user-1", "alice@example.com")

        assert tokens.verify_access_token(refresh) is None

    def test_garbage_tokens_are_rejected(self, tokens):
        for token in (None, "", "abc", "a.b", "a.b.c", "...."):
            assert tokens.verify_access_token(token) is None

    def test_tampered_payload_is_rejected(self, tokens):
        token = tokens.issue_access_token("user-1", "alice@example.com")
        header, _, signature = token.split(".")
        forged_claims = _claims(token)
        forged_claims["sub"] = "user-2"
        forged = base64.urlsafe_b64encode(
            json.dumps(forged_claims).encode()
        ).rstrip(b"=").decode()

        assert tokens.verify_access_token(f"{header}.{forged}.{signature}") is None

    def test_token_from_other_secret_is_rejected(self, tokens, settings, clock):
        other = TokenService(
            settings.model_copy(update={"jwt_secret": "some-other-secret-0123456789abcdefghij"}),
            clock=clock,
        )
        token = other.issue_access_token("user-1", "alice@example.com")

        assert tokens.verify_access_token(token) is None

    def test_wrong_issuer_is_rejected(self, tokens, settings, clock):
        other = TokenService(settings.model_copy(update={"jwt_issuer": "elsewhere"}), clock=clock)
        token = other.issue_access_token("user-1", "alice@example.com")

        assert tokens.verify_access_token(token) is None

    def test_none_algorithm_is_rejected(self, tokens):
        token = tokens.issue_access_token("user-1", "alice@example.com")
        _, payload, _ = token.split(".")
        header = base64.urlsafe_b64encode(
            json.dumps({"alg": "none", "typ": "JWT"}).encode()
        ).rstrip(b"=").decode()

        assert tokens.verify_access_token(f"{header}.{payload}.") is None


class TestRefreshTokens:
    """Tests for refresh token issuing and verification."""

    def test_refresh_token_round_trip(self, tokens):
        token = tokens.issue_refresh_token("user-1", "alice@example.com")
        payload = tokens.verify_refresh_token(token)

        assert payload is not None
        assert payload.token_type == "refresh"
        assert payload.user_id == "user-1"

    def test_refresh_token_lifetime(self, tokens, clock):
        token = tokens.issue_refresh_token("user-1", "alice@example.com")

        clock.advance(7 * 24 * 3600 - 1)
        assert tokens.verify_refresh_token(token) is not None
        clock.advance(1)
        assert tokens.verify_refresh_token(token) is None

    def test_access_token_is_not_a_refresh_token(self, tokens):
        access = tokens.issue_access_token("user-1", "alice@example.com")

        assert tokens.verify_refresh_token(access) is None

    def test_token_pair(self, tokens, clock):
        pair = tokens.issue_token_pair("user-1", "alice@example.com")

        assert pair.token_type == "bearer"
        assert pair.access_expires_in == 15 * 60
        assert int(pair.refresh_expires_at.timestamp()) == int(clock.now) + 7 * 24 * 3600
        assert tokens.verify_access_token(pair.access_token) is not None
        assert tokens.verify_refresh_token(pair.refresh_token) is not None


class TestRandomTokens:
    def test_random_token_is_64_hex_chars(self):
        token = TokenService.generate_random_token()

        assert len(token) == 64
        int(token, 16)

    def test_random_tokens_are_unique(self):
        assert len({TokenService.generate_random_token() for _ in range(50)}) == 50
