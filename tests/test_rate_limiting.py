"""
Tests for rate limiting functionality.

These tests verify that rate limiting is properly configured and that
HTTP 429 responses include the Retry-After header as required by RFC 6585.
"""

import pytest
from fastapi.testclient import TestClient

from uploader.core.config import get_settings
from uploader.core.limiter import configure_limits, settings_limit
from uploader.main import create_app


def limit_count(limit: str) -> int:
    return int(limit.split("/")[0])


def assert_retry_after(response):
    assert "retry-after" in response.headers, "HTTP 429 response must include Retry-After header"

    retry_after = response.headers["retry-after"]
    assert retry_after.isdigit(), f"Retry-After header must be a number of seconds, got: {retry_after}"
    assert 0 < int(retry_after) <= 60, f"Retry-After should be between 1-60 seconds, got: {retry_after}"


class TestRateLimitingRetryAfterHeader:
    """Test that rate limiting returns proper Retry-After headers."""

    def test_upload_endpoint_returns_429_with_retry_after_header(self, client, auth_headers):
        """
        Uploads are limited per client address. Requests inside the limit
        are answered normally (here: rejected by validation), the next one
        is refused with 429.
        """
        allowed = limit_count(get_settings().rate_limit_upload)

        statuses = []
        for _ in range(allowed):
            response = client.post(
                "/api/upload",
                headers=auth_headers,
                files={"file": ("project.zip", b"PK", "application/zip")},
                data={"projectName": "demo"},
            )
            statuses.append(response.status_code)

        assert statuses == [400] * allowed

        response = client.post(
            "/api/upload",
            headers=auth_headers,
            files={"file": ("project.zip", b"PK", "application/zip")},
            data={"projectName": "demo"},
        )
        assert response.status_code == 429
        assert_retry_after(response)

    def test_auth_endpoint_returns_429_with_retry_after_header(self, client):
        allowed = limit_count(get_settings().rate_limit_auth)

        for _ in range(allowed):
            response = client.get("/auth/github", follow_redirects=False)
            assert response.status_code == 302

        response = client.get("/auth/github", follow_redirects=False)

        assert response.status_code == 429
        assert_retry_after(response)

    def test_429_response_body_contains_error_message(self, client):
        for _ in range(limit_count(get_settings().rate_limit_auth) + 1):
            response = client.get("/auth/github/callback", follow_redirects=False)

        assert response.status_code == 429
        assert response.json() == {
            "success": False,
            "error": "TOO_MANY_REQUESTS",
            "message": "Too many requests. Please wait before retrying",
        }

    def test_limiter_reset_between_tests(self, client):
        response = client.get("/auth/github", follow_redirects=False)

        assert response.status_code == 302


class TestRateLimitingConfiguration:
    """Test that rate limiting is properly configured."""

    def test_health_endpoint_reports_storage(self, client):
        assert client.get("/health").json()["rate_limit_storage"] == "memory"

    @pytest.mark.parametrize("limit", ["rate_limit_default", "rate_limit_upload", "rate_limit_auth"])
    def test_limits_are_per_minute(self, limit):
        value = getattr(get_settings(), limit)

        assert value.endswith("/minute")
        assert limit_count(value) > 0

    def test_route_limit_follows_app_settings(self, test_settings, github_api, session_store):
        settings = test_settings.model_copy(update={"rate_limit_auth": "2/minute"})
        app = create_app(settings, github_transport=github_api.transport, session_store=session_store)

        with TestClient(app) as client:
            statuses = [client.get("/auth/github", follow_redirects=False).status_code for _ in range(3)]

        assert statuses == [302, 302, 429]

    def test_limit_provider_reads_configured_settings(self, test_settings):
        provider = settings_limit("rate_limit_upload")

        configure_limits(test_settings.model_copy(update={"rate_limit_upload": "3/minute"}))
        assert provider() == "3/minute"

        configure_limits(test_settings)
        assert provider() == test_settings.rate_limit_upload
