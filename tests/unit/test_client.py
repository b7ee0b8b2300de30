"""
Tests for the admin API client against a mocked transport.
"""

import asyncio
import json
from typing import Any, Callable

import httpx
import pytest

from mandi_authz.client import (
    BROWSER_SESSION_HEADER,
    AdminApiClient,
    ApiError,
    ApiErrorCode,
    derive_stepup_resource_key,
    extract_stepup_challenge,
    is_stepup_exempt_path,
)
from mandi_authz.config import AuthzSettings
from mandi_authz.core.correlation import check_context
from mandi_authz.core.models import AdminIdentity, ResourceRegistryEntry, StepUpSession
from mandi_authz.engines.stepup import (
    STEPUP_SESSION_HEADER,
    StepUpInquiry,
    StepUpMode,
    StepUpSource,
    StepUpVerification,
)
from mandi_authz.storage import ClientSessionState, InMemorySessionStore

BASE_URL = "https://api.example.test/api"
IDENTITY = AdminIdentity(username="alice", bearer_token="bearer-1")


class Recorder:
    """Captures requests and answers them with a scripted handler."""

    def __init__(self, reply: Callable[[httpx.Request], httpx.Response]) -> None:
        self.reply = reply
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.reply(request)

    @property
    def last_items(self) -> dict[str, Any]:
        return json.loads(self.requests[-1].content)["items"]


def ok(data: Any = None, **extra: Any) -> Callable[[httpx.Request], httpx.Response]:
    body = {"response": {"responsecode": "0", "description": "OK", "data": data, **extra}}
    return lambda request: httpx.Response(200, json=body)


@pytest.fixture
def state() -> ClientSessionState:
    return ClientSessionState(InMemorySessionStore(), InMemorySessionStore())


def make_client(state: ClientSessionState, recorder: Recorder, **kwargs: Any) -> AdminApiClient:
    return AdminApiClient(
        AuthzSettings(api_base_url=BASE_URL),
        state,
        transport=httpx.MockTransport(recorder),
        **kwargs,
    )


class TestRequestShape:
    """Headers and items envelope on every call."""

    @pytest.mark.asyncio
    async def test_headers_and_items(self, state: ClientSessionState) -> None:
        recorder = Recorder(ok({"role": "ORG_ADMIN"}))
        state.store_stepup_session(StepUpSession(token="su-token"))

        async with make_client(state, recorder) as client:
            with check_context("su-check"):
                await client.fetch_ui_config(IDENTITY)

        request = recorder.requests[0]
        assert str(request.url) == f"{BASE_URL}/admin/getAdminUiConfig"
        assert request.method == "POST"
        assert request.headers["Authorization"] == "Bearer bearer-1"
        assert request.headers[STEPUP_SESSION_HEADER] == "su-token"
        assert request.headers[BROWSER_SESSION_HEADER] == state.get_browser_session_id()
        assert request.headers["X-Correlation-ID"] == "su-check"

        items = recorder.last_items
        assert items["api"] == "get_Admin_Ui_Config27"
        assert items["username"] == "alice"
        assert items["language"] == "en"
        assert items["country"] == "IN"
        assert items["stepup_session_id"] == "su-token"
        assert items["browser_session_id"] == state.get_browser_session_id()

    @pytest.mark.asyncio
    async def test_no_optional_headers(self, state: ClientSessionState) -> None:
        recorder = Recorder(ok({}))
        async with make_client(state, recorder) as client:
            await client.fetch_ui_config(AdminIdentity(username="alice"))

        headers = recorder.requests[0].headers
        assert "Authorization" not in headers
        assert STEPUP_SESSION_HEADER not in headers
        assert "X-Correlation-ID" not in headers
        assert "stepup_session_id" not in recorder.last_items

    @pytest.mark.asyncio
    async def test_stored_bearer_used(self, state: ClientSessionState) -> None:
        state.store_identity(AdminIdentity(username="alice", bearer_token="stored"))
        recorder = Recorder(ok({}))
        async with make_client(state, recorder) as client:
            await client.fetch_ui_config(AdminIdentity(username="alice"))
        assert recorder.requests[0].headers["Authorization"] == "Bearer stored"

    @pytest.mark.asyncio
    async def test_payload_encoder(self, state: ClientSessionState) -> None:
        recorder = Recorder(ok({}))

        def encoder(body: dict[str, Any]) -> dict[str, Any]:
            return {"encData": json.dumps(body)[::-1]}

        async with make_client(state, recorder, payload_encoder=encoder) as client:
            await client.fetch_ui_config(IDENTITY)
        sent = json.loads(recorder.requests[0].content)
        assert set(sent) == {"encData"}


class TestErrors:
    """Failures surface as ApiError."""

    @pytest.mark.asyncio
    async def test_rejected_envelope(self, state: ClientSessionState) -> None:
        body = {"response": {"responsecode": "1", "description": "Session expired"}}
        recorder = Recorder(lambda request: httpx.Response(200, json=body))
        async with make_client(state, recorder) as client:
            with pytest.raises(ApiError) as excinfo:
                await client.fetch_ui_config(IDENTITY)
        assert excinfo.value.code is ApiErrorCode.REJECTED
        assert excinfo.value.message == "Session expired"
        assert excinfo.value.response_code == "1"

    @pytest.mark.asyncio
    async def test_rejected_without_description(self, state: ClientSessionState) -> None:
        body = {"response": {"responsecode": 2}}
        recorder = Recorder(lambda request: httpx.Response(200, json=body))
        async with make_client(state, recorder) as client:
            with pytest.raises(ApiError) as excinfo:
                await client.fetch_stepup_policy(IDENTITY)
        assert excinfo.value.message == "Failed to load step-up policy."

    @pytest.mark.asyncio
    async def test_http_status(self, state: ClientSessionState) -> None:
        recorder = Recorder(lambda request: httpx.Response(502, text="bad gateway"))
        async with make_client(state, recorder) as client:
            with pytest.raises(ApiError) as excinfo:
                await client.fetch_ui_config(IDENTITY)
        assert excinfo.value.code is ApiErrorCode.HTTP_STATUS
        assert excinfo.value.status_code == 502

    @pytest.mark.asyncio
    async def test_non_json(self, state: ClientSessionState) -> None:
        recorder = Recorder(lambda request: httpx.Response(200, text="<html>"))
        async with make_client(state, recorder) as client:
            with pytest.raises(ApiError) as excinfo:
                await client.fetch_ui_config(IDENTITY)
        assert excinfo.value.code is ApiErrorCode.INVALID_RESPONSE

    @pytest.mark.asyncio
    async def test_non_object_json(self, state: ClientSessionState) -> None:
        recorder = Recorder(lambda request: httpx.Response(200, json=[1, 2]))
        async with make_client(state, recorder) as client:
            with pytest.raises(ApiError) as excinfo:
                await client.fetch_ui_config(IDENTITY)
        assert excinfo.value.code is ApiErrorCode.INVALID_RESPONSE

    @pytest.mark.asyncio
    async def test_transport_error(self, state: ClientSessionState) -> None:
        def fail(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with make_client(state, Recorder(fail)) as client:
            with pytest.raises(ApiError) as excinfo:
                await client.fetch_ui_config(IDENTITY)
        assert excinfo.value.code is ApiErrorCode.TRANSPORT

    @pytest.mark.asyncio
    async def test_timeout(self, state: ClientSessionState) -> None:
        def slow(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        async with make_client(state, Recorder(slow)) as client:
            with pytest.raises(ApiError) as excinfo:
                await client.fetch_ui_config(IDENTITY)
        assert excinfo.value.message == "Request timed out."


class TestEndpoints:
    """Endpoint-specific request and response handling."""

    @pytest.mark.asyncio
    async def test_fetch_ui_config_returns_data(self, state: ClientSessionState) -> None:
        recorder = Recorder(ok({"role": "ORG_ADMIN", "resources": []}))
        async with make_client(state, recorder) as client:
            data = await client.fetch_ui_config(IDENTITY)
        assert data == {"role": "ORG_ADMIN", "resources": []}

    @pytest.mark.asyncio
    async def test_fetch_ui_config_without_data(self, state: ClientSessionState) -> None:
        recorder = Recorder(ok(None))
        async with make_client(state, recorder) as client:
            assert await client.fetch_ui_config(IDENTITY) == {}

    @pytest.mark.asyncio
    async def test_resource_registry(self, state: ClientSessionState) -> None:
        rows = [
            {"resource_key": "org_mandi.list", "allowed_actions": ["view", "edit"]},
            {"allowed_actions": ["VIEW"]},
            {"resource_key": " ", "allowed_actions": ["VIEW"]},
            "junk",
        ]
        recorder = Recorder(ok({"items": rows}))
        async with make_client(state, recorder) as client:
            entries = await client.fetch_resource_registry(IDENTITY)
        assert [entry.resource_key for entry in entries] == ["org_mandi_mappings.list"]
        assert entries[0].allowed_actions == ("VIEW", "UPDATE")
        assert recorder.last_items["api"] == "getResourceRegistry"

    @pytest.mark.asyncio
    async def test_update_resource_registry(self, state: ClientSessionState) -> None:
        recorder = Recorder(ok({}))
        async with make_client(state, recorder) as client:
            await client.update_resource_registry(
                IDENTITY, [ResourceRegistryEntry(resource_key="mandis.list", allowed_actions=["VIEW"])]
            )
        items = recorder.last_items
        assert items["api"] == "updateResourceRegistry"
        assert items["entries"][0]["resource_key"] == "mandis.list"
        assert str(recorder.requests[0].url).endswith("/admin/updateResourceRegistry")

    @pytest.mark.asyncio
    async def test_stepup_policy_and_selection(self, state: ClientSessionState) -> None:
        recorder = Recorder(ok({"selected": ["payments_log.menu"]}))
        async with make_client(state, recorder) as client:
            body = await client.fetch_stepup_policy(IDENTITY)
            await client.save_stepup_selection(IDENTITY, ["payments_log.menu"])

        assert body["response"]["data"] == {"selected": ["payments_log.menu"]}
        assert json.loads(recorder.requests[0].content)["items"]["api"] == "getStepupPolicyScreens"
        assert recorder.last_items["api"] == "saveStepupPolicySelection"
        assert recorder.last_items["selected"] == ["payments_log.menu"]

    @pytest.mark.asyncio
    async def test_require_step_up(self, state: ClientSessionState) -> None:
        recorder = Recorder(ok(None, stepup={"mode": "OTP_REQUIRED"}))
        inquiry = StepUpInquiry(
            identity=IDENTITY,
            resource_key="admin_users.reset_password",
            action="RESET_PASSWORD",
            browser_session_id="browser-1",
            session_token="held",
            target_username="bob",
            source=StepUpSource.GUARD,
        )
        async with make_client(state, recorder) as client:
            verdict = await client.require_step_up(inquiry)

        assert verdict.mode is StepUpMode.OTP_REQUIRED
        items = recorder.last_items
        assert items["api"] == "requireStepUp"
        assert items["target_username"] == "bob"
        assert items["resource_key"] == "admin_users.reset_password"
        assert items["action"] == "RESET_PASSWORD"
        assert items["rule_key"] == "ADMIN_SCREEN_STEPUP_V1"
        assert items["stepup_session_id"] == "held"
        assert items["browser_session_id"] == "browser-1"

    @pytest.mark.asyncio
    async def test_require_step_up_defaults_target(self, state: ClientSessionState) -> None:
        recorder = Recorder(ok(None))
        inquiry = StepUpInquiry(
            identity=IDENTITY, resource_key="x.list", action="VIEW", browser_session_id="b"
        )
        async with make_client(state, recorder) as client:
            verdict = await client.require_step_up(inquiry)
        assert verdict.mode is StepUpMode.CLEAR
        assert recorder.last_items["target_username"] == "alice"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"response": {"responsecode": "0", "data": {"stepup_session_id": "new"}}},
            {"response": {"responsecode": "0", "session_token": "new"}},
            {"data": {"stepup_session_id": "new"}},
        ],
    )
    async def test_verify_step_up_token(self, state: ClientSessionState, body: dict) -> None:
        recorder = Recorder(lambda request: httpx.Response(200, json=body))
        verification = StepUpVerification(identity=IDENTITY, browser_session_id="b", otp="123456")
        async with make_client(state, recorder) as client:
            assert await client.verify_step_up(verification) == "new"
        items = recorder.last_items
        assert items["api"] == "verifyStepUp"
        assert items["otp"] == "123456"
        assert "backup_code" not in items

    @pytest.mark.asyncio
    async def test_verify_step_up_without_token(self, state: ClientSessionState) -> None:
        recorder = Recorder(ok({}))
        verification = StepUpVerification(identity=IDENTITY, browser_session_id="b", backup_code="X")
        async with make_client(state, recorder) as client:
            assert await client.verify_step_up(verification) is None

    @pytest.mark.asyncio
    async def test_verify_step_up_rejected(self, state: ClientSessionState) -> None:
        body = {"response": {"responsecode": "1", "description": "Invalid OTP"}}
        recorder = Recorder(lambda request: httpx.Response(200, json=body))
        verification = StepUpVerification(identity=IDENTITY, browser_session_id="b", otp="000000")
        async with make_client(state, recorder) as client:
            with pytest.raises(ApiError, match="Invalid OTP"):
                await client.verify_step_up(verification)


CHALLENGE = {"response": {"responsecode": "1"}, "stepup": {"required": True, "message": "Verify to continue"}}


class StepUpHandler:
    """Answers challenges by storing a step-up token, or declines."""

    def __init__(self, state: ClientSessionState, allow: bool = True) -> None:
        self.state = state
        self.allow = allow
        self.keys: list[str | None] = []
        self.release = asyncio.Event()
        self.release.set()

    async def __call__(self, resource_key: str | None) -> bool:
        self.keys.append(resource_key)
        await self.release.wait()
        if self.allow:
            self.state.store_stepup_session(StepUpSession(token="su-ok"))
        return self.allow


def challenge_until_verified(request: httpx.Request) -> httpx.Response:
    if request.headers.get(STEPUP_SESSION_HEADER) == "su-ok":
        return httpx.Response(200, json={"response": {"responsecode": "0", "data": {"role": "ORG_ADMIN"}}})
    return httpx.Response(403, json=CHALLENGE)


class TestStepUpChallenge:
    """A 403 step-up challenge is answered once and the call retried."""

    @pytest.mark.asyncio
    async def test_retry_after_step_up(self, state: ClientSessionState) -> None:
        recorder = Recorder(challenge_until_verified)
        handler = StepUpHandler(state)
        async with make_client(state, recorder, stepup_handler=handler) as client:
            config = await client.fetch_ui_config(IDENTITY)

        assert config == {"role": "ORG_ADMIN"}
        assert handler.keys == ["get_Admin_Ui_Config27"]
        assert len(recorder.requests) == 2
        assert recorder.last_items["stepup_session_id"] == "su-ok"

    @pytest.mark.asyncio
    async def test_declined_step_up_raises(self, state: ClientSessionState) -> None:
        recorder = Recorder(challenge_until_verified)
        handler = StepUpHandler(state, allow=False)
        async with make_client(state, recorder, stepup_handler=handler) as client:
            with pytest.raises(ApiError) as excinfo:
                await client.fetch_ui_config(IDENTITY)

        assert excinfo.value.code is ApiErrorCode.STEPUP_REQUIRED
        assert excinfo.value.status_code == 403
        assert excinfo.value.message == "Verify to continue"
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_retried_once_only(self, state: ClientSessionState) -> None:
        recorder = Recorder(lambda request: httpx.Response(403, json=CHALLENGE))
        handler = StepUpHandler(state)
        async with make_client(state, recorder, stepup_handler=handler) as client:
            with pytest.raises(ApiError) as excinfo:
                await client.fetch_resource_registry(IDENTITY)

        assert excinfo.value.code is ApiErrorCode.STEPUP_REQUIRED
        assert len(handler.keys) == 1
        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_exempt_path_not_retried(self, state: ClientSessionState) -> None:
        recorder = Recorder(lambda request: httpx.Response(403, json=CHALLENGE))
        handler = StepUpHandler(state)
        async with make_client(state, recorder, stepup_handler=handler) as client:
            with pytest.raises(ApiError) as excinfo:
                await client.fetch_stepup_policy(IDENTITY)

        assert excinfo.value.code is ApiErrorCode.HTTP_STATUS
        assert handler.keys == []
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_without_handler_plain_403(self, state: ClientSessionState) -> None:
        recorder = Recorder(lambda request: httpx.Response(403, json=CHALLENGE))
        async with make_client(state, recorder) as client:
            with pytest.raises(ApiError) as excinfo:
                await client.fetch_ui_config(IDENTITY)
        assert excinfo.value.code is ApiErrorCode.HTTP_STATUS

    @pytest.mark.asyncio
    async def test_403_without_required_flag(self, state: ClientSessionState) -> None:
        body = {"stepup": {"required": "yes"}}
        recorder = Recorder(lambda request: httpx.Response(403, json=body))
        handler = StepUpHandler(state)
        async with make_client(state, recorder, stepup_handler=handler) as client:
            with pytest.raises(ApiError) as excinfo:
                await client.fetch_ui_config(IDENTITY)
        assert excinfo.value.code is ApiErrorCode.HTTP_STATUS
        assert handler.keys == []

    @pytest.mark.asyncio
    async def test_concurrent_challenges_share_one_step_up(self, state: ClientSessionState) -> None:
        recorder = Recorder(challenge_until_verified)
        handler = StepUpHandler(state)
        handler.release.clear()
        async with make_client(state, recorder, stepup_handler=handler) as client:
            calls = [asyncio.ensure_future(client.fetch_ui_config(IDENTITY)) for _ in range(3)]
            while len(recorder.requests) < 3:
                await asyncio.sleep(0)
            for _ in range(50):
                await asyncio.sleep(0)
            handler.release.set()
            results = await asyncio.gather(*calls)

        assert all(result == {"role": "ORG_ADMIN"} for result in results)
        assert len(handler.keys) == 1
        assert len(recorder.requests) == 6

    @pytest.mark.asyncio
    async def test_handler_crash_is_a_decline(self, state: ClientSessionState) -> None:
        async def crash(resource_key: str | None) -> bool:
            raise RuntimeError("boom")

        recorder = Recorder(challenge_until_verified)
        async with make_client(state, recorder, stepup_handler=crash) as client:
            with pytest.raises(ApiError) as excinfo:
                await client.fetch_ui_config(IDENTITY)
        assert excinfo.value.code is ApiErrorCode.STEPUP_REQUIRED


class TestChallengeHelpers:
    """Tests for the challenge helper functions."""

    def test_resource_key_preferred_over_api(self) -> None:
        items = {"api": "getThings", "resource_key": "org_mandi.list"}
        assert derive_stepup_resource_key(items) == "org_mandi_mappings.list"

    def test_api_tag_as_last_resort(self) -> None:
        assert derive_stepup_resource_key({"api": "getThings", "route": "  "}) == "getThings"

    def test_no_key(self) -> None:
        assert derive_stepup_resource_key({}) is None
        assert derive_stepup_resource_key(None) is None
        assert derive_stepup_resource_key({"resource_key": 7}) is None

    @pytest.mark.parametrize(
        "path,exempt",
        [
            ("/admin/2fa/verifyStepUp", True),
            ("/admin/security/getStepupPolicyScreens", True),
            ("/auth/login", True),
            ("", True),
            ("/admin/getAdminUiConfig", False),
            ("/admin/getResourceRegistry", False),
        ],
    )
    def test_exempt_paths(self, path: str, exempt: bool) -> None:
        assert is_stepup_exempt_path(path) is exempt

    def test_extract_challenge(self) -> None:
        assert extract_stepup_challenge({"stepup": {"required": True}}) == {"required": True}
        assert extract_stepup_challenge({"response": {"stepup": {"required": True}}}) == {"required": True}
        assert extract_stepup_challenge({"response": {"responsecode": "1"}}) == {"responsecode": "1"}
        assert extract_stepup_challenge("nope") is None


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, state: ClientSessionState) -> None:
        client = make_client(state, Recorder(ok({})))
        await client.fetch_ui_config(IDENTITY)
        await client.close()
        await client.close()
