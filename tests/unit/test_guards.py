"""
Tests for the action gate, step-up guard and route enforcer.
"""

import asyncio
import json
import logging

import pytest

from mandi_authz.audit import AuthzAuditor
from mandi_authz.core.models import AdminIdentity, AuthContext, UiResource
from mandi_authz.engines.permissions import PermissionIndex, PermissionResolver
from mandi_authz.engines.routes import RouteResolver
from mandi_authz.engines.stepup import (
    StepUpInquiry,
    StepUpMode,
    StepUpSessionController,
    StepUpSource,
    StepUpVerdict,
    StepUpVerification,
)
from mandi_authz.engines.stepup_policy import StepUpPolicyCache
from mandi_authz.guards import ActionGate, StepUpGuard, StepUpRouteEnforcer
from mandi_authz.storage import ClientSessionState, InMemorySessionStore


class ClearingApi:
    """Step-up API that always answers CLEAR and records inquiries."""

    def __init__(self) -> None:
        self.inquiries: list[StepUpInquiry] = []

    async def require_step_up(self, inquiry: StepUpInquiry) -> StepUpVerdict:
        self.inquiries.append(inquiry)
        return StepUpVerdict(mode=StepUpMode.CLEAR)

    async def verify_step_up(self, verification: StepUpVerification) -> str | None:
        return None


@pytest.fixture
def api() -> ClearingApi:
    return ClearingApi()


@pytest.fixture
def controller(api: ClearingApi) -> StepUpSessionController:
    async def fetch(identity: AdminIdentity) -> dict:
        return {"selected": ["reports.list", "payments_log.menu", "mandis.edit"]}

    controller = StepUpSessionController(
        api,
        StepUpPolicyCache(fetch),
        ClientSessionState(InMemorySessionStore()),
    )
    controller.bind_identity(AdminIdentity(username="alice"))
    return controller


@pytest.fixture
def routes() -> RouteResolver:
    return RouteResolver(
        [
            UiResource(resource_key="reports.menu", ui_type="MENU", route="/reports"),
            UiResource(resource_key="payments_log.list", ui_type="TABLE", route="/payments"),
            UiResource(resource_key="payments_log.menu", ui_type="MENU", route="/payments-menu"),
            UiResource(resource_key="mandis.list", ui_type="TABLE", route="/mandis"),
        ]
    )


class TestActionGate:
    """Tests for ActionGate."""

    @pytest.fixture
    def resolver(self) -> PermissionResolver:
        index = PermissionIndex.build([{"resource_key": "mandis.edit", "allowed_actions": ["UPDATE"]}])
        return PermissionResolver(index, "ORG_ADMIN")

    def test_granted_and_unlocked(self, resolver: PermissionResolver) -> None:
        gate = ActionGate(resolver, AuthContext(role="ORG_ADMIN", org_id="A"))
        assert gate.allows("mandis.edit", "edit", record={"org_scope": "ORG", "org_id": "A"})

    def test_granted_but_locked(self, resolver: PermissionResolver) -> None:
        gate = ActionGate(resolver, AuthContext(role="ORG_ADMIN", org_id="A"))
        decision = gate.evaluate("mandis.edit", "UPDATE", record={"org_scope": "ORG", "org_id": "B"})
        assert decision.allowed is False
        assert decision.reason == "Record locked: org_mismatch"

    def test_not_granted(self, resolver: PermissionResolver) -> None:
        gate = ActionGate(resolver, AuthContext(role="ORG_ADMIN", org_id="A"))
        decision = gate.evaluate("mandis.edit", "DEACTIVATE")
        assert decision.allowed is False
        assert decision.reason == "Action not granted"

    def test_no_record_skips_lock(self, resolver: PermissionResolver) -> None:
        gate = ActionGate(resolver, None)
        assert gate.allows("mandis.edit", "UPDATE") is True

    def test_denials_audited(
        self, resolver: PermissionResolver, caplog: pytest.LogCaptureFixture
    ) -> None:
        auditor = AuthzAuditor(logger_name="test.guards.audit")
        gate = ActionGate(
            resolver, AuthContext(role="ORG_ADMIN", org_id="A"), auditor=auditor, username="alice"
        )
        with caplog.at_level(logging.INFO, logger="test.guards.audit"):
            gate.allows("mandis.edit", "DEACTIVATE")
            gate.allows("mandis.edit", "UPDATE", record={"is_protected": "Y"})

        events = [json.loads(record.getMessage()) for record in caplog.records]
        assert [event["event_type"] for event in events] == ["authz.denied", "record.locked"]
        assert events[0]["username"] == "alice"


class TestStepUpGuard:
    """Tests for StepUpGuard."""

    @pytest.mark.asyncio
    async def test_unlocked_section(self, controller: StepUpSessionController, api: ClearingApi) -> None:
        assert await StepUpGuard(controller).check("mandis.list") is True
        assert api.inquiries == []

    @pytest.mark.asyncio
    async def test_locked_section_asks_server(
        self, controller: StepUpSessionController, api: ClearingApi
    ) -> None:
        assert await StepUpGuard(controller).check("mandis.edit", "edit") is True
        assert api.inquiries[0].source is StepUpSource.GUARD
        assert api.inquiries[0].action == "UPDATE"


class TestStepUpRouteEnforcer:
    """Tests for StepUpRouteEnforcer."""

    @pytest.mark.asyncio
    async def test_menu_route_gated_by_locked_list(
        self,
        controller: StepUpSessionController,
        routes: RouteResolver,
        api: ClearingApi,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        enforcer = StepUpRouteEnforcer(controller, routes)
        with caplog.at_level(logging.INFO, logger="mandi_authz.guards"):
            assert await enforcer.enforce("/reports") is True

        assert api.inquiries[0].resource_key == "reports.list"
        assert api.inquiries[0].source is StepUpSource.ROUTE
        assert any("[STEPUP_UI]" in record.getMessage() for record in caplog.records)

    @pytest.mark.asyncio
    async def test_list_route_not_gated_by_locked_menu(
        self, controller: StepUpSessionController, routes: RouteResolver, api: ClearingApi
    ) -> None:
        enforcer = StepUpRouteEnforcer(controller, routes)
        assert await enforcer.enforce("/payments") is True
        assert api.inquiries == []

    @pytest.mark.asyncio
    async def test_unknown_route(
        self, controller: StepUpSessionController, routes: RouteResolver, api: ClearingApi
    ) -> None:
        assert await StepUpRouteEnforcer(controller, routes).enforce("/nowhere") is True
        assert api.inquiries == []

    @pytest.mark.asyncio
    async def test_invalidate_during_load_still_gates(
        self, routes: RouteResolver, api: ClearingApi
    ) -> None:
        release = asyncio.Event()

        async def blocked_fetch(identity: AdminIdentity) -> dict:
            await release.wait()
            return {"selected": ["reports.list"]}

        policy = StepUpPolicyCache(blocked_fetch)
        controller = StepUpSessionController(
            api, policy, ClientSessionState(InMemorySessionStore())
        )
        controller.bind_identity(AdminIdentity(username="alice"))

        navigation = asyncio.ensure_future(StepUpRouteEnforcer(controller, routes).enforce("/reports"))
        while policy.fetch_count == 0:
            await asyncio.sleep(0)
        policy.invalidate()
        release.set()

        assert await navigation is True
        assert [inquiry.resource_key for inquiry in api.inquiries] == ["reports.list"]

    @pytest.mark.asyncio
    async def test_gating_key(self, controller: StepUpSessionController, routes: RouteResolver) -> None:
        await controller.load_policy()
        enforcer = StepUpRouteEnforcer(controller, routes)
        assert enforcer.gating_key("/reports") == "reports.list"
        assert enforcer.gating_key("/payments-menu") == "payments_log.menu"
        assert enforcer.gating_key("/mandis") is None
