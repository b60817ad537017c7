"""
Unit tests for configuration module
"""

import os
from unittest.mock import patch

import pytest

from uploader.core.config import MIB, ExtractionLimits, Settings

# Mark all tests in this module as unit tests
pytestmark = pytest.mark.unit

GOOD_SECRET = "k3Y-material_for-tests-0123456789abcdefXYZ"


class TestSettings:
    """Test application settings configuration"""

    def test_default_settings(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings(_env_file=None)

        assert settings.app_name == "GitHub Uploader"
        assert settings.environment == "development"
        assert settings.port == 3000
        assert settings.max_upload_size == 100 * MIB
        assert settings.max_file_size == 50 * MIB
        assert settings.max_files_per_archive == 10_000
        assert settings.session_max_age_seconds == 86400
        assert settings.rate_limit_upload == "10/minute"
        assert settings.redis_url is None

    def test_environment_variables_override(self):
        env = {
            "PORT": "8080",
            "GITHUB_CLIENT_ID": "Iv1.fromenvironment",
            "MAX_UPLOAD_SIZE": str(5 * MIB),
            "ENVIRONMENT": "production",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = Settings(_env_file=None)

        assert settings.port == 8080
        assert settings.github_client_id == "Iv1.fromenvironment"
        assert settings.max_upload_size == 5 * MIB
        assert settings.is_production

    def test_cors_origins_comma_separated_env(self):
        with patch.dict(os.environ, {"CORS_ORIGINS": "http://a.test, http://b.test"}, clear=True):
            settings = Settings(_env_file=None)

        assert settings.cors_origins == ["http://a.test", "http://b.test"]

    def test_cors_origins_json_env(self):
        with patch.dict(os.environ, {"CORS_ORIGINS": '["http://a.test"]'}, clear=True):
            settings = Settings(_env_file=None)

        assert settings.cors_origins == ["http://a.test"]

    def test_derived_values(self):
        settings = Settings(
            _env_file=None,
            base_url="https://uploader.example/",
            max_file_size=1024,
            max_files_per_archive=7,
        )

        assert settings.oauth_redirect_uri == "https://uploader.example/auth/github/callback"
        assert settings.extraction_limits == ExtractionLimits(max_files=7, max_file_size=1024)


class TestValidateConfig:

    def test_valid_configuration(self):
        settings = Settings(
            _env_file=None,
            github_client_id="Iv1.abcdefghij",
            github_client_secret="s" * 20 + "ecretvalue",
            session_secret=GOOD_SECRET,
        )

        assert settings.validate_config() == []

    def test_reports_every_problem(self):
        settings = Settings(
            _env_file=None,
            port=70000,
            github_client_id="short",
            github_client_secret="",
            session_secret="secret",
            max_upload_size=1000,
        )

        problems = settings.validate_config()

        assert len(problems) == 5
        assert any("Port" in p for p in problems)
        assert any("Session secret" in p for p in problems)
        assert any("1MB" in p for p in problems)

    def test_safe_summary_has_no_secrets(self):
        settings = Settings(
            _env_file=None,
            github_client_id="Iv1.abcdefghij",
            github_client_secret="super-secret-client-value",
            session_secret=GOOD_SECRET,
        )

        summary = str(settings.safe_summary())

        assert "super-secret-client-value" not in summary
        assert GOOD_SECRET not in summary
        assert "Iv1.abcd..." in summary
