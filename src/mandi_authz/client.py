"""
Admin API Client for Mandi Authz.

Async client for the admin endpoints the engine consumes: UI config,
resource registry, step-up policy, step-up inquiry and verification.

Every call posts an `{"items": {...}}` envelope and attaches:
- Authorization: Bearer <token> (when logged in)
- X-StepUp-Session: <token> (when a step-up session is held)
- X-StepUp-Browser-Session: <browser session id>
- X-Correlation-ID: <check id> (inside a step-up check)

Server-side rejections (`responsecode != "0"`) and transport failures raise
ApiError; nothing else escapes.

When a step-up handler is attached, a 403 whose body says
`stepup.required: true` runs one shared step-up and retries the call once.
Step-up, login and policy endpoints are never retried this way.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any

import httpx
from pydantic import ValidationError

from mandi_authz.config import AuthzSettings
from mandi_authz.core.correlation import CorrelationHeaders, get_check_id
from mandi_authz.core.errors import ApiError, ApiErrorCode
from mandi_authz.core.keys import canonicalize_resource_key
from mandi_authz.core.models import AdminIdentity, ResourceRegistryEntry
from mandi_authz.engines.stepup import (
    STEPUP_SESSION_HEADER,
    StepUpInquiry,
    StepUpVerdict,
    StepUpVerification,
)
from mandi_authz.storage import ClientSessionState

logger = logging.getLogger(__name__)

BROWSER_SESSION_HEADER = "X-StepUp-Browser-Session"

# Transforms the request body before it is sent (e.g. payload encryption).
PayloadEncoder = Callable[[dict[str, Any]], dict[str, Any]]

# Runs step-up for a challenged call; True means the call may be retried.
StepUpChallengeHandler = Callable[[str | None], Awaitable[bool]]

STEPUP_RETRY_LIMIT = 1

# Path fragments whose calls are never retried after a step-up challenge.
STEPUP_EXEMPT_PATHS: tuple[str, ...] = (
    "/admin/2fa/",
    "/auth/login",
    "/auth/loginUser",
    "/admin/security/getStepupPolicyScreens",
    "/admin/security/saveStepupPolicySelection",
    "/admin/security/getSecuritySwitches",
    "/admin/security/updateSecuritySwitches",
)

# Request fields that may name the resource a challenged call touches, in order.
_CHALLENGE_KEY_FIELDS = ("resource_key", "resourceKey", "resource", "route", "ui_route", "api")

__all__ = [
    "STEPUP_EXEMPT_PATHS",
    "STEPUP_RETRY_LIMIT",
    "AdminApiClient",
    "ApiError",
    "ApiErrorCode",
    "PayloadEncoder",
    "StepUpChallengeHandler",
    "derive_stepup_resource_key",
    "extract_stepup_challenge",
    "is_stepup_exempt_path",
]


def is_stepup_exempt_path(path: str | None) -> bool:
    """Whether calls to a path skip step-up challenge handling."""
    if not path:
        return True
    return any(segment in path for segment in STEPUP_EXEMPT_PATHS)


def derive_stepup_resource_key(items: Mapping[str, Any] | None) -> str | None:
    """
    Pick the resource key a challenged request is about.

    Args:
        items: Request items envelope

    Returns:
        First non-empty canonical key among the known fields, or None
    """
    if not items:
        return None
    for field_name in _CHALLENGE_KEY_FIELDS:
        raw = items.get(field_name)
        if isinstance(raw, str) and raw.strip():
            key = canonicalize_resource_key(raw)
            if key:
                return key
    return None


def extract_stepup_challenge(body: Any) -> dict[str, Any] | None:
    """Step-up block of an error body, or None when there is none."""
    if not isinstance(body, dict):
        return None
    stepup = body.get("stepup")
    response = body.get("response")
    candidates = (
        stepup,
        stepup.get("stepup") if isinstance(stepup, dict) else None,
        response.get("stepup") if isinstance(response, dict) else None,
        response,
    )
    for candidate in candidates:
        if isinstance(candidate, dict):
            return candidate
    return None


class AdminApiClient:
    """
    Client for the mandi admin API.

    Usage:
        state = ClientSessionState(InMemorySessionStore())
        async with AdminApiClient(AuthzSettings.from_env(), state) as client:
            config = await client.fetch_ui_config(identity)
    """

    def __init__(
        self,
        settings: AuthzSettings,
        state: ClientSessionState,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        payload_encoder: PayloadEncoder | None = None,
        stepup_handler: StepUpChallengeHandler | None = None,
    ) -> None:
        """
        Initialize client.

        Args:
            settings: Base URL, timeout, routes and api tags
            state: Client storage (bearer token, step-up token, browser session)
            transport: Custom httpx transport (tests use httpx.MockTransport)
            payload_encoder: Optional transform applied to every request body
            stepup_handler: Runs step-up when the server challenges a call
        """
        self.settings = settings
        self.state = state
        self._transport = transport
        self._payload_encoder = payload_encoder
        self._client: httpx.AsyncClient | None = None
        self._stepup_handler = stepup_handler
        self._challenge_inflight: asyncio.Task[bool] | None = None

    def attach_step_up(self, handler: StepUpChallengeHandler | None) -> None:
        """Set (or clear) the handler that answers server step-up challenges."""
        self._stepup_handler = handler

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client and release connections."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> AdminApiClient:
        await self._get_client()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # Request plumbing

    def _build_url(self, path: str) -> str:
        return f"{self.settings.api_base_url.rstrip('/')}/{path.lstrip('/')}"

    def _headers(self, identity: AdminIdentity | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}

        bearer = (identity.bearer_token if identity else None) or self.state.get_bearer_token()
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"

        stepup_token = self.state.get_stepup_token()
        if stepup_token:
            headers[STEPUP_SESSION_HEADER] = stepup_token

        headers[BROWSER_SESSION_HEADER] = self.state.get_browser_session_id()
        headers.update(CorrelationHeaders.to_headers(get_check_id()))
        return headers

    def _items(self, identity: AdminIdentity, api: str, **extra: Any) -> dict[str, Any]:
        items: dict[str, Any] = {
            "api": api,
            "username": identity.username,
            "language": identity.language or self.settings.default_language,
            "country": identity.country or self.settings.default_country,
        }
        items.update({key: value for key, value in extra.items() if value is not None})
        return items

    async def _post(self, path: str, items: dict[str, Any], identity: AdminIdentity) -> dict[str, Any]:
        """
        POST an items envelope and return the decoded JSON body.

        A step-up challenge is answered through the attached handler and the
        call is retried, at most STEPUP_RETRY_LIMIT times.

        Raises:
            ApiError: On transport failure, non-2xx status, non-object body
                or an unanswered step-up challenge
        """
        retries = 0
        while True:
            response = await self._send(path, items, identity)
            challenge = self._challenge(response, path)
            if challenge is None:
                return self._decode(response)

            if retries < STEPUP_RETRY_LIMIT:
                key = derive_stepup_resource_key(items)
                logger.info("Step-up challenge on %s for %s", path, key or "unknown")
                if await self._answer_challenge(key):
                    retries += 1
                    continue

            message = challenge.get("message") or challenge.get("description")
            raise ApiError(
                ApiErrorCode.STEPUP_REQUIRED,
                str(message or "Step-up verification is required."),
                status_code=response.status_code,
            )

    async def _send(self, path: str, items: dict[str, Any], identity: AdminIdentity) -> httpx.Response:
        request_items = dict(items)
        stepup_token = self.state.get_stepup_token()
        if stepup_token and "stepup_session_id" not in request_items:
            request_items["stepup_session_id"] = stepup_token
        request_items.setdefault("browser_session_id", self.state.get_browser_session_id())

        body: dict[str, Any] = {"items": request_items}
        if self._payload_encoder is not None:
            body = self._payload_encoder(body)

        client = await self._get_client()
        url = self._build_url(path)
        logger.debug("POST %s api=%s", url, request_items.get("api"))

        try:
            return await client.post(url, json=body, headers=self._headers(identity))
        except httpx.TimeoutException as exc:
            raise ApiError(ApiErrorCode.TRANSPORT, "Request timed out.") from exc
        except httpx.HTTPError as exc:
            raise ApiError(ApiErrorCode.TRANSPORT, f"Network error: {exc}") from exc

    def _challenge(self, response: httpx.Response, path: str) -> dict[str, Any] | None:
        """Step-up block of a challenge this client should answer, else None."""
        if response.status_code != 403 or self._stepup_handler is None:
            return None
        if is_stepup_exempt_path(path):
            return None
        try:
            challenge = extract_stepup_challenge(response.json())
        except ValueError:
            return None
        if challenge is None or challenge.get("required") is not True:
            return None
        return challenge

    async def _answer_challenge(self, resource_key: str | None) -> bool:
        """Run the handler once for all calls challenged at the same time."""
        if self._challenge_inflight is None:
            self._challenge_inflight = asyncio.ensure_future(self._run_handler(resource_key))
        return await asyncio.shield(self._challenge_inflight)

    async def _run_handler(self, resource_key: str | None) -> bool:
        handler = self._stepup_handler
        try:
            if handler is None:
                return False
            return await handler(resource_key)
        except Exception:
            logger.warning("Step-up challenge handler failed", exc_info=True)
            return False
        finally:
            self._challenge_inflight = None

    @staticmethod
    def _decode(response: httpx.Response) -> dict[str, Any]:
        if response.status_code >= 400:
            raise ApiError(
                ApiErrorCode.HTTP_STATUS,
                f"Server returned HTTP {response.status_code}.",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ApiError(
                ApiErrorCode.INVALID_RESPONSE,
                "Server returned a non-JSON response.",
                status_code=response.status_code,
            ) from exc

        if not isinstance(data, dict):
            raise ApiError(
                ApiErrorCode.INVALID_RESPONSE,
                "Server returned an unexpected response.",
                status_code=response.status_code,
            )
        return data

    @staticmethod
    def _check_envelope(data: dict[str, Any], default_message: str) -> dict[str, Any]:
        """
        Validate the `response` envelope and return it.

        Raises:
            ApiError: If responsecode is present and not "0"
        """
        envelope = data.get("response")
        if not isinstance(envelope, dict):
            return {}
        if "responsecode" in envelope and str(envelope.get("responsecode")) != "0":
            raise ApiError(
                ApiErrorCode.REJECTED,
                str(envelope.get("description") or default_message),
                response_code=str(envelope.get("responsecode")),
            )
        return envelope

    # Endpoints

    async def fetch_ui_config(self, identity: AdminIdentity) -> dict[str, Any]:
        """
        Fetch role, scope, UI resources and permissions for the caller.

        Returns:
            The `response.data` object (empty dict if absent)
        """
        routes, tags = self.settings.routes, self.settings.tags
        data = await self._post(
            routes.admin_ui_config,
            self._items(identity, tags.admin_ui_config, api_name="getAdminUiConfig"),
            identity,
        )
        envelope = self._check_envelope(data, "Failed to load admin UI config.")
        payload = envelope.get("data")
        return payload if isinstance(payload, dict) else {}

    async def fetch_resource_registry(self, identity: AdminIdentity) -> list[ResourceRegistryEntry]:
        """
        Fetch the curated resource registry.

        Rows without a usable key are dropped.

        Returns:
            Registry entries in server order
        """
        routes, tags = self.settings.routes, self.settings.tags
        data = await self._post(
            routes.resource_registry,
            self._items(identity, tags.resource_registry),
            identity,
        )
        envelope = self._check_envelope(data, "Failed to load resource registry.")
        payload = envelope.get("data")
        if isinstance(payload, dict):
            payload = payload.get("items") or payload.get("resources") or []
        if not isinstance(payload, list):
            return []

        entries: list[ResourceRegistryEntry] = []
        for row in payload:
            if not isinstance(row, dict):
                continue
            try:
                entry = ResourceRegistryEntry.model_validate(row)
            except ValidationError as exc:
                logger.debug("Dropping malformed registry row: %s", exc)
                continue
            if entry.resource_key:
                entries.append(entry)
        return entries

    async def update_resource_registry(
        self,
        identity: AdminIdentity,
        entries: Iterable[ResourceRegistryEntry],
    ) -> dict[str, Any]:
        """Replace registry entries. Returns the response envelope."""
        routes, tags = self.settings.routes, self.settings.tags
        rows = [entry.model_dump(mode="json") for entry in entries]
        data = await self._post(
            routes.update_resource_registry,
            self._items(identity, tags.update_resource_registry, entries=rows),
            identity,
        )
        return self._check_envelope(data, "Failed to update resource registry.")

    async def fetch_stepup_policy(self, identity: AdminIdentity) -> dict[str, Any]:
        """
        Fetch the step-up policy screens.

        Returns:
            Raw body; StepUpPolicy.from_payload() unwraps it
        """
        routes, tags = self.settings.routes, self.settings.tags
        data = await self._post(
            routes.stepup_policy_screens,
            self._items(identity, tags.stepup_policy_screens),
            identity,
        )
        self._check_envelope(data, "Failed to load step-up policy.")
        return data

    async def save_stepup_selection(
        self,
        identity: AdminIdentity,
        selected: Iterable[str],
    ) -> dict[str, Any]:
        """Save the explicit list of step-up locked keys."""
        routes, tags = self.settings.routes, self.settings.tags
        data = await self._post(
            routes.save_stepup_selection,
            self._items(identity, tags.save_stepup_selection, selected=list(selected)),
            identity,
        )
        return self._check_envelope(data, "Failed to save step-up selection.")

    async def require_step_up(self, inquiry: StepUpInquiry) -> StepUpVerdict:
        """
        Ask the server whether a gated check may pass.

        Returns:
            StepUpVerdict (CLEAR when the server names no mode)
        """
        routes, tags = self.settings.routes, self.settings.tags
        identity = inquiry.identity
        items = self._items(
            identity,
            tags.require_stepup,
            target_username=inquiry.target_username or identity.username,
            resource_key=inquiry.resource_key,
            action=inquiry.action,
            rule_key=self.settings.step_up_rule_key,
            stepup_session_id=inquiry.session_token,
            browser_session_id=inquiry.browser_session_id,
        )
        data = await self._post(routes.require_stepup, items, identity)
        self._check_envelope(data, "Step-up check failed.")
        return StepUpVerdict.from_response(data)

    async def verify_step_up(self, verification: StepUpVerification) -> str | None:
        """
        Submit an OTP or backup code.

        Returns:
            New step-up session token, or None if the server issued none

        Raises:
            ApiError: If the server rejects the code
        """
        routes, tags = self.settings.routes, self.settings.tags
        identity = verification.identity
        items = self._items(
            identity,
            tags.verify_stepup,
            target_username=identity.username,
            otp=verification.otp,
            backup_code=verification.backup_code,
            browser_session_id=verification.browser_session_id,
        )
        data = await self._post(routes.verify_stepup, items, identity)
        envelope = self._check_envelope(data, "Verification failed.")

        for candidate in (envelope.get("data"), envelope, data.get("data"), data):
            if isinstance(candidate, dict):
                token = candidate.get("stepup_session_id") or candidate.get("session_token")
                if token:
                    return str(token)
        logger.warning("Verification response carried no step-up session token")
        return None
