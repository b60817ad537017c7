"""
Security tests for authentication and authorization
"""

import logging
import time

import jwt
import pytest
from fastapi.testclient import TestClient

from uploader.main import create_app

# Mark all tests in this module as security tests
pytestmark = pytest.mark.security

PROTECTED_ENDPOINTS = [
    ("GET", "/api/auth/profile"),
    ("GET", "/api/upload/repositories"),
    ("GET", "/api/upload/status/some-id"),
    ("POST", "/api/upload"),
]


class TestAccessControl:
    """Protected endpoints reject anonymous and forged callers"""

    @pytest.mark.parametrize("method,path", PROTECTED_ENDPOINTS)
    def test_anonymous_rejected(self, client, method, path):
        response = client.request(method, path)

        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "UNAUTHORIZED", "message": "Login required"}

    def test_token_signed_with_other_secret(self, client, session_store):
        session_id = session_store.create_session(1, "octocat", "gho_value_value_value_value_value")
        now = int(time.time())
        forged = jwt.encode(
            {"sub": session_id, "iat": now, "exp": now + 600},
            "attacker-controlled-secret-0123456789abcdef",
            algorithm="HS256",
        )

        response = client.get("/api/auth/profile", headers={"Authorization": f"Bearer {forged}"})

        assert response.status_code == 401

    def test_unsigned_token(self, client, session_store):
        session_id = session_store.create_session(1, "octocat", "gho_value_value_value_value_value")
        now = int(time.time())
        unsigned = jwt.encode({"sub": session_id, "iat": now, "exp": now + 600}, key=None, algorithm="none")

        response = client.get("/api/auth/profile", headers={"Authorization": f"Bearer {unsigned}"})

        assert response.status_code == 401

    def test_expired_session_rejected(self, client, auth_headers, fake_clock):
        fake_clock.advance(3601)

        assert client.get("/api/auth/profile", headers=auth_headers).status_code == 401

    def test_valid_token_for_unknown_session(self, client, session_store):
        token = session_store.generate_jwt("never-created")

        assert client.get("/api/auth/profile", headers={"Authorization": f"Bearer {token}"}).status_code == 401


class TestCookieSecurity:

    def test_oauth_state_cookie_flags(self, client):
        response = client.get("/auth/github", follow_redirects=False)

        cookie = response.headers["set-cookie"].lower()
        assert "httponly" in cookie
        assert "samesite=lax" in cookie
        assert "max-age=600" in cookie

    def test_session_cookie_flags(self, client):
        client.cookies.set("oauth_state", "st")

        response = client.get(
            "/auth/github/callback", params={"code": "c", "state": "st"}, follow_redirects=False
        )

        session_cookie = next(
            value for key, value in response.headers.multi_items()
            if key == "set-cookie" and value.startswith("session_token=")
        ).lower()
        assert "httponly" in session_cookie
        assert "samesite=lax" in session_cookie

    def test_cookies_secure_in_production(self, test_settings, github_api, session_store):
        settings = test_settings.model_copy(update={"environment": "production"})
        app = create_app(settings, github_transport=github_api.transport, session_store=session_store)

        with TestClient(app) as client:
            response = client.get("/auth/github", follow_redirects=False)

        assert "secure" in response.headers["set-cookie"].lower()

    def test_callback_without_state_cookie(self, client, session_store):
        response = client.get(
            "/auth/github/callback", params={"code": "c", "state": "st"}, follow_redirects=False
        )

        assert response.headers["location"].startswith("/?auth=error")
        assert session_store.get_active_session_count() == 0

    def test_state_mismatch_logs_masked_states(self, client, caplog):
        client.cookies.set("oauth_state", "cookie-state-value-0123")

        with caplog.at_level(logging.WARNING, logger="security.events"):
            client.get(
                "/auth/github/callback",
                params={"code": "c", "state": "forged-state-value-4567"},
                follow_redirects=False,
            )

        record = next(r for r in caplog.records if getattr(r, "event_type", None) == "oauth_state_mismatch")
        assert record.received_state == "forg****"
        assert record.cookie_state == "cook****"
        assert "forged-state-value-4567" not in caplog.text

    def test_hsts_behind_https_proxy(self, client):
        response = client.get("/health", headers={"X-Forwarded-Proto": "https"})

        assert response.headers["Strict-Transport-Security"].startswith("max-age=31536000")
