"""
UI Gates for Mandi Authz.

Small adapters the UI layer calls before rendering:

- ActionGate: show a mutation control only if the caller holds the action
  AND the record is not locked against them
- StepUpGuard: hold back a section until step-up has passed
- StepUpRouteEnforcer: hold back navigation to a locked route
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from mandi_authz.audit import AuthzAuditor
from mandi_authz.core.keys import Action, canonicalize_action, canonicalize_resource_key
from mandi_authz.core.models import AuthContext
from mandi_authz.engines.permissions import PermissionResolver
from mandi_authz.engines.record_lock import RecordLockEvaluator
from mandi_authz.engines.routes import RouteResolver, resolve_stepup_variant
from mandi_authz.engines.stepup import StepUpSessionController, StepUpSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateDecision:
    """Outcome of an action gate."""

    allowed: bool
    reason: str


class ActionGate:
    """
    Combines the action-level grant with the record lock.

    Both checks are independent and both must pass.

    Usage:
        gate = ActionGate(resolver, auth_context)
        if gate.allows("mandis.edit", "UPDATE", record=row):
            # render the edit button
    """

    def __init__(
        self,
        resolver: PermissionResolver,
        auth: AuthContext | None,
        *,
        evaluator: RecordLockEvaluator | None = None,
        auditor: AuthzAuditor | None = None,
        username: str | None = None,
    ) -> None:
        self._username = username
        self._resolver = resolver
        self._auth = auth
        self._evaluator = evaluator or RecordLockEvaluator()
        self._auditor = auditor

    def evaluate(self, resource_key: str, action: str | Action, record: Any = None) -> GateDecision:
        """
        Evaluate the gate with reasoning.

        Args:
            resource_key: Resource key (any spelling)
            action: Action (any synonym)
            record: Row the action targets, if any

        Returns:
            GateDecision
        """
        permission = self._resolver.evaluate(resource_key, action)
        if not permission.allowed:
            if self._auditor:
                self._auditor.log_authz_denied(
                    username=self._username,
                    resource=permission.resource_key or str(resource_key),
                    action=permission.action or str(action),
                    reason=permission.reason,
                )
            return GateDecision(False, permission.reason)

        if record is not None:
            lock = self._evaluator.is_locked(record, self._auth)
            if lock.locked:
                if self._auditor:
                    self._auditor.log_record_locked(
                        username=self._username,
                        resource=permission.resource_key,
                        action=permission.action,
                        reason=lock.reason,
                    )
                return GateDecision(False, f"Record locked: {lock.reason}")

        return GateDecision(True, permission.reason)

    def allows(self, resource_key: str, action: str | Action, record: Any = None) -> bool:
        return self.evaluate(resource_key, action, record).allowed


class StepUpGuard:
    """Holds back a section until step-up has passed for its resource."""

    def __init__(self, controller: StepUpSessionController) -> None:
        self._controller = controller

    async def check(self, resource_key: str | None, action: str | Action = Action.VIEW) -> bool:
        """
        Run the step-up check for a guarded section.

        Returns:
            True if the section may render
        """
        return await self._controller.ensure_step_up(
            resource_key,
            canonicalize_action(action) or Action.VIEW.value,
            StepUpSource.GUARD,
        )


class StepUpRouteEnforcer:
    """
    Holds back navigation until step-up has passed for the route.

    The path is resolved to its resource key; a `.menu` key that is not
    itself locked is gated by its first locked sibling screen.
    """

    def __init__(self, controller: StepUpSessionController, routes: RouteResolver) -> None:
        self._controller = controller
        self._routes = routes

    def gating_key(self, path: str | None) -> str | None:
        """Resource key whose lock governs a path, or None."""
        resolved = self._routes.resolve_resource_key(path)
        return resolve_stepup_variant(resolved, self._controller.is_locked)

    async def enforce(self, path: str | None) -> bool:
        """
        Gate navigation to a path.

        Args:
            path: Navigation path

        Returns:
            True if navigation may proceed
        """
        locked = await self._controller.load_policy()
        resolved = self._routes.resolve_resource_key(path)
        gating = resolve_stepup_variant(resolved, locked.__contains__)
        logger.info(
            "[STEPUP_UI] resource_key=%s gating_key=%s locked=%s source=%s",
            resolved or "unknown",
            gating,
            gating is not None,
            StepUpSource.ROUTE.value,
        )
        if gating is None:
            return True
        return await self._controller.ensure_step_up(
            canonicalize_resource_key(gating),
            Action.VIEW,
            StepUpSource.ROUTE,
        )
