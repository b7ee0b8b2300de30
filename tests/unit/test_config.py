"""
Tests for AuthzSettings.
"""

import pytest

from mandi_authz.config import ApiRoutes, ApiTags, AuthzSettings


class TestAuthzSettings:
    """Tests for defaults and environment loading."""

    def test_defaults(self) -> None:
        settings = AuthzSettings()
        assert settings.enroll_route == "/system/security/2fa"
        assert settings.otp_length == 6
        assert settings.routes == ApiRoutes()
        assert settings.tags.admin_ui_config == "get_Admin_Ui_Config27"

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MANDI_AUTHZ_API_BASE_URL", "https://api.example.test/v1/")
        monkeypatch.setenv("MANDI_AUTHZ_TIMEOUT_SECONDS", "5")
        monkeypatch.setenv("MANDI_AUTHZ_OTP_LENGTH", "8")
        monkeypatch.setenv("MANDI_AUTHZ_UI_CONFIG_CACHE_VERSION", "3")

        settings = AuthzSettings.from_env()

        assert settings.api_base_url == "https://api.example.test/v1"
        assert settings.timeout_seconds == 5.0
        assert settings.otp_length == 8
        assert settings.ui_config_cache_version == 3
        assert settings.tags == ApiTags()

    def test_custom_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AUTHZ_ENROLL_ROUTE", "/2fa/setup")
        assert AuthzSettings.from_env(prefix="AUTHZ_").enroll_route == "/2fa/setup"

    def test_bad_number(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MANDI_AUTHZ_OTP_LENGTH", "six")
        with pytest.raises(ValueError):
            AuthzSettings.from_env()

    def test_frozen(self) -> None:
        settings = AuthzSettings()
        with pytest.raises(AttributeError):
            settings.otp_length = 4  # type: ignore[misc]
