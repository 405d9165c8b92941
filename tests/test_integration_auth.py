"""Integration tests for the auth HTTP surface.

Tests the full request path including:
- Registration, email verification and login
- Refresh token rotation and logout
- Password reset and change
- Rate limiting headers and 429 responses
- Security middleware (blocked IPs, payload inspection, size limits)
"""

import itertools
import uuid

import pytest
from fastapi.testclient import TestClient

from relaychat import app as app_module
from relaychat.service.runtime import get_runtime

_addresses = itertools.count(1)


def _fresh_ip() -> dict:
    """Headers for a client address no other request in the session has used."""
    n = next(_addresses)
    return {"X-Forwarded-For": f"198.51.{n // 250}.{n % 250 + 1}"}


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def register_verified(client, name="Alice", email=None, password="TestPassword123!"):
    """Register and verify a user from its own client address; returns auth data."""
    email = email or f"user_{uuid.uuid4().hex[:8]}@example.com"
    headers = _fresh_ip()
    response = client.post(
        "/v1/auth/register",
        json={"name": name, "email": email, "password": password},
        headers=headers,
    )
    assert response.status_code == 201, f"Register failed: {response.text}"
    token = response.json()["data"]["verification_token"]
    response = client.post("/v1/auth/verify-email", json={"token": token}, headers=headers)
    assert response.status_code == 200, f"Verify failed: {response.text}"
    data = response.json()["data"]
    return {
        "email": email,
        "password": password,
        "user_id": data["user"]["id"],
        "access_token": data["access_token"],
        "refresh_token": data["refresh_token"],
        "headers": {"Authorization": f"Bearer {data['access_token']}"},
    }


class TestRegistrationAndLogin:
    def test_register_returns_unverified_user(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"name": "Alice", "email": "Alice@Example.com", "password": "TestPassword123!"},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["user"]["email"] == "alice@example.com"
        assert body["data"]["user"]["is_email_verified"] is False
        assert "password_hash" not in body["data"]["user"]
        assert body["data"]["message"] == "User registered successfully. Please verify your email."
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"

    def test_duplicate_registration_conflicts(self, client):
        payload = {"name": "Alice", "email": "dupe@example.com", "password": "TestPassword123!"}
        client.post("/v1/auth/register", json=payload)

        response = client.post("/v1/auth/register", json=payload)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    @pytest.mark.parametrize(
        "payload",
        [
            {"name": "Alice", "email": "not-an-email", "password": "TestPassword123!"},
            {"name": "Alice", "email": "alice@example.com", "password": "short"},
            {"name": "   ", "email": "alice@example.com", "password": "TestPassword123!"},
        ],
    )
    def test_invalid_registration_is_rejected(self, client, payload):
        response = client.post("/v1/auth/register", json=payload)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"][0]["loc"][0] == "body"

    def test_unverified_user_cannot_login(self, client):
        client.post(
            "/v1/auth/register",
            json={"name": "Bob", "email": "bob@example.com", "password": "TestPassword123!"},
        )

        response = client.post(
            "/v1/auth/login", json={"email": "bob@example.com", "password": "TestPassword123!"}
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_login_after_verification(self, client):
        user = register_verified(client)

        response = client.post(
            "/v1/auth/login", json={"email": user["email"], "password": user["password"]}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["id"] == user["user_id"]
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 15 * 60

    def test_wrong_password_is_unauthorized(self, client):
        user = register_verified(client)

        response = client.post(
            "/v1/auth/login", json={"email": user["email"], "password": "WrongPassword1!"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid credentials"


class TestTokens:
    def test_refresh_rotates_and_old_token_is_rejected(self, client):
        user = register_verified(client)

        response = client.post("/v1/auth/refresh", json={"refresh_token": user["refresh_token"]})
        assert response.status_code == 200
        rotated = response.json()["data"]["refresh_token"]
        assert rotated != user["refresh_token"]

        reused = client.post("/v1/auth/refresh", json={"refresh_token": user["refresh_token"]})
        assert reused.status_code == 401
        assert reused.json()["error"]["code"] == "unauthorized"

        again = client.post("/v1/auth/refresh", json={"refresh_token": rotated})
        assert again.status_code == 200

    def test_access_token_is_not_a_refresh_token(self, client):
        user = register_verified(client)

        response = client.post("/v1/auth/refresh", json={"refresh_token": user["access_token"]})

        assert response.status_code == 401

    def test_logout_revokes_refresh_token(self, client):
        user = register_verified(client)

        response = client.post(
            "/v1/auth/logout",
            json={"refresh_token": user["refresh_token"]},
            headers=user["headers"],
        )
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Logged out successfully"

        response = client.post("/v1/auth/refresh", json={"refresh_token": user["refresh_token"]})
        assert response.status_code == 401

    def test_logout_requires_access_token(self, client):
        response = client.post("/v1/auth/logout", json={})

        assert response.status_code == 401


class TestProfileAndPasswords:
    def test_profile_round_trip(self, client):
        user = register_verified(client, name="Alice")

        response = client.get("/v1/auth/profile", headers=user["headers"])
        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Alice"

        response = client.patch(
            "/v1/auth/profile", json={"name": "Alice Liddell"}, headers=user["headers"]
        )
        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Alice Liddell"

        response = client.put(
            "/v1/auth/profile",
            json={"avatar": "https://cdn.example.com/alice.png"},
            headers=user["headers"],
        )
        assert response.json()["data"]["avatar"] == "https://cdn.example.com/alice.png"
        assert response.json()["data"]["name"] == "Alice Liddell"

    def test_profile_requires_token(self, client):
        response = client.get("/v1/auth/profile")

        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "unauthorized",
            "message": "Access token required",
            "details": None,
        }

    def test_bad_bearer_token_is_rejected(self, client):
        response = client.get("/v1/auth/profile", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401

    def test_forgot_and_reset_password(self, client):
        user = register_verified(client)
        headers = _fresh_ip()

        response = client.post(
            "/v1/auth/forgot-password", json={"email": user["email"]}, headers=headers
        )
        assert response.status_code == 200
        reset_token = response.json()["data"]["reset_token"]
        assert reset_token

        response = client.post(
            "/v1/auth/reset-password",
            json={"token": reset_token, "new_password": "BrandNewPassword1!"},
            headers=headers,
        )
        assert response.status_code == 200

        # Existing sessions are revoked
        response = client.post("/v1/auth/refresh", json={"refresh_token": user["refresh_token"]})
        assert response.status_code == 401

        response = client.post(
            "/v1/auth/login",
            json={"email": user["email"], "password": "BrandNewPassword1!"},
            headers=headers,
        )
        assert response.status_code == 200

    def test_forgot_password_for_unknown_email_looks_the_same(self, client):
        response = client.post("/v1/auth/forgot-password", json={"email": "ghost@example.com"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["message"] == "If the email exists, a reset link has been sent"
        assert data["reset_token"] is None

    def test_reset_with_bad_token(self, client):
        response = client.post(
            "/v1/auth/reset-password",
            json={"token": "bogus", "new_password": "BrandNewPassword1!"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_change_password(self, client):
        user = register_verified(client)

        response = client.post(
            "/v1/auth/change-password",
            json={"current_password": user["password"], "new_password": "BrandNewPassword1!"},
            headers=user["headers"],
        )

        assert response.status_code == 200
        response = client.post("/v1/auth/refresh", json={"refresh_token": user["refresh_token"]})
        assert response.status_code == 401


class TestRateLimits:
    def test_auth_limiter_returns_429_with_headers(self, client):
        headers = _fresh_ip()
        for _ in range(5):
            response = client.post(
                "/v1/auth/forgot-password", json={"email": "ghost@example.com"}, headers=headers
            )
            assert response.status_code == 200

        response = client.post(
            "/v1/auth/forgot-password", json={"email": "ghost@example.com"}, headers=headers
        )

        assert response.status_code == 429
        body = response.json()
        assert body["error"]["code"] == "rate_limited"
        assert body["error"]["message"] == "Too many requests, please try again later."
        assert 0 < int(response.headers["Retry-After"]) <= 15 * 60
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert body["error"]["details"]["retry_after"] == int(response.headers["Retry-After"])

    def test_limits_are_per_client_address(self, client):
        first, second = _fresh_ip(), _fresh_ip()
        for _ in range(5):
            client.post("/v1/auth/forgot-password", json={"email": "a@example.com"}, headers=first)

        response = client.post(
            "/v1/auth/forgot-password", json={"email": "a@example.com"}, headers=second
        )

        assert response.status_code == 200

    def test_failed_logins_trip_strict_limiter(self, client):
        user = register_verified(client)
        headers = _fresh_ip()
        for _ in range(3):
            response = client.post(
                "/v1/auth/login",
                json={"email": user["email"], "password": "WrongPassword1!"},
                headers=headers,
            )
            assert response.status_code == 401

        response = client.post(
            "/v1/auth/login",
            json={"email": user["email"], "password": user["password"]},
            headers=headers,
        )

        assert response.status_code == 429

    def test_successful_logins_do_not_use_strict_budget(self, client):
        user = register_verified(client)
        credentials = {"email": user["email"], "password": user["password"]}
        for _ in range(4):
            headers = _fresh_ip()
            client.post("/v1/auth/login", json=credentials, headers=headers)

        strict = get_runtime().limiters.strict_auth
        assert strict.get_remaining_requests(f"{headers['X-Forwarded-For']}:{user['email']}") == 3


class TestSecurityMiddleware:
    def test_injection_payload_blocks_client(self, client):
        headers = _fresh_ip()

        response = client.post(
            "/v1/auth/register",
            json={
                "name": "Robert'); DROP TABLE users;--",
                "email": "bobby@example.com",
                "password": "TestPassword123!",
            },
            headers=headers,
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid request"

        response = client.get("/healthz", headers=headers)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

        # Other clients are unaffected
        assert client.get("/healthz", headers=_fresh_ip()).status_code == 200

    def test_script_payload_is_rejected(self, client):
        response = client.post(
            "/v1/auth/register",
            json={
                "name": "<script>alert(1)</script>",
                "email": "eve@example.com",
                "password": "TestPassword123!",
            },
            headers=_fresh_ip(),
        )

        assert response.status_code == 400

    def test_passwords_are_not_inspected(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"name": "Carol", "email": "carol@example.com", "password": "pass--word/*1*/"},
        )

        assert response.status_code == 201

    def test_repeated_unauthorized_access_blocks_client(self, client):
        headers = _fresh_ip()
        for _ in range(5):
            assert client.get("/v1/auth/profile", headers=headers).status_code == 401

        response = client.get("/v1/auth/profile", headers=headers)

        assert response.status_code == 403

    def test_oversized_body_is_rejected(self, client):
        get_runtime().settings.max_request_bytes = 64

        response = client.post(
            "/v1/auth/forgot-password",
            json={"email": "someone@example.com", "padding": "x" * 128},
        )

        assert response.status_code == 413
        assert response.json()["error"]["code"] == "payload_too_large"

    def test_security_stats(self, client):
        user = register_verified(client)
        client.post(
            "/v1/auth/login",
            json={"email": user["email"], "password": "WrongPassword1!"},
            headers=_fresh_ip(),
        )

        response = client.get("/v1/security/stats", headers=user["headers"])

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["events_by_type"]["failed_login"] == 1
        assert data["total_events"] >= 1
        assert data["blocked_ips"] == []


class TestEnvelopeAndHeaders:
    def test_error_envelope_shape(self, client):
        response = client.get("/v1/auth/profile")
        body = response.json()

        assert set(body) == {"status", "data", "error", "request_id"}
        assert body["status"] == "error"
        assert body["data"] is None
        uuid.UUID(body["request_id"])

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert client.get("/healthz").headers["X-Request-ID"]

    def test_security_headers(self, client):
        response = client.get("/healthz")

        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]
        assert "Strict-Transport-Security" not in response.headers

    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["hub"]["connections"] == 0
        assert body["version"] == app_module.__version__

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/v1/nowhere")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
