"""
Settings for Mandi Authz.

Loaded from environment variables (MANDI_AUTHZ_*) with sane defaults.
Set up once at startup and pass to AuthzSession / AdminApiClient.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class ApiRoutes:
    """Endpoint paths of the admin API, relative to the base URL."""

    admin_ui_config: str = "/admin/getAdminUiConfig"
    resource_registry: str = "/admin/getResourceRegistry"
    update_resource_registry: str = "/admin/updateResourceRegistry"
    stepup_policy_screens: str = "/admin/security/getStepupPolicyScreens"
    save_stepup_selection: str = "/admin/security/saveStepupPolicySelection"
    require_stepup: str = "/admin/2fa/requireStepUp"
    verify_stepup: str = "/admin/2fa/verifyStepUp"


@dataclass(frozen=True)
class ApiTags:
    """`api` tags the server uses to dispatch each request."""

    admin_ui_config: str = "get_Admin_Ui_Config27"
    resource_registry: str = "getResourceRegistry"
    update_resource_registry: str = "updateResourceRegistry"
    stepup_policy_screens: str = "getStepupPolicyScreens"
    save_stepup_selection: str = "saveStepupPolicySelection"
    require_stepup: str = "requireStepUp"
    verify_stepup: str = "verifyStepUp"


@dataclass(frozen=True)
class AuthzSettings:
    """
    Configuration for the authz engine.

    Usage:
        settings = AuthzSettings.from_env()
        client = AdminApiClient(settings, state)
    """

    api_base_url: str = "http://localhost:8080/api"
    timeout_seconds: float = 15.0
    default_language: str = "en"
    default_country: str = "IN"

    # Where ENROLL_MANDATORY verdicts send the user
    enroll_route: str = "/system/security/2fa"
    otp_length: int = 6

    # Bump to discard UI config caches written by older builds
    ui_config_cache_key: str = "admin_ui_config_cache"
    ui_config_cache_version: int = 2

    step_up_rule_key: str = "ADMIN_SCREEN_STEPUP_V1"

    routes: ApiRoutes = field(default_factory=ApiRoutes)
    tags: ApiTags = field(default_factory=ApiTags)

    @classmethod
    def from_env(cls, prefix: str = "MANDI_AUTHZ_") -> AuthzSettings:
        """
        Load settings from environment variables.

        Recognized: API_BASE_URL, TIMEOUT_SECONDS, DEFAULT_LANGUAGE,
        DEFAULT_COUNTRY, ENROLL_ROUTE, OTP_LENGTH, UI_CONFIG_CACHE_VERSION.

        Args:
            prefix: Environment variable prefix

        Returns:
            AuthzSettings

        Raises:
            ValueError: If a numeric variable cannot be parsed
        """
        defaults = cls()

        def env(name: str, default: str) -> str:
            return os.environ.get(f"{prefix}{name}", default)

        return cls(
            api_base_url=env("API_BASE_URL", defaults.api_base_url).rstrip("/"),
            timeout_seconds=float(env("TIMEOUT_SECONDS", str(defaults.timeout_seconds))),
            default_language=env("DEFAULT_LANGUAGE", defaults.default_language),
            default_country=env("DEFAULT_COUNTRY", defaults.default_country),
            enroll_route=env("ENROLL_ROUTE", defaults.enroll_route),
            otp_length=int(env("OTP_LENGTH", str(defaults.otp_length))),
            ui_config_cache_version=int(
                env("UI_CONFIG_CACHE_VERSION", str(defaults.ui_config_cache_version))
            ),
        )
