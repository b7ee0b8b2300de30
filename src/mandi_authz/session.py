"""
Authz Session for Mandi Authz.

One object per login session that owns every piece of authz state: the UI
config loader, the step-up policy cache, the step-up controller, the
permission resolver, the record lock evaluator and the route resolver.

Identity changes are explicit events. Calling on_identity_changed() drops
the caches, reloads the config and rebuilds the resolvers. Nothing reacts
implicitly.

Usage:
    settings = AuthzSettings.from_env()
    state = ClientSessionState(InMemorySessionStore())

    async with AuthzSession(settings, state) as session:
        await session.on_identity_changed(AdminIdentity(username="alice"))

        if session.can("mandis.edit", "UPDATE"):
            ...
        if await session.ensure_step_up("payments_log.list"):
            ...
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from mandi_authz.audit import AuthzAuditor
from mandi_authz.client import AdminApiClient
from mandi_authz.config import AuthzSettings
from mandi_authz.core.keys import Action
from mandi_authz.core.models import AdminIdentity, AuthContext
from mandi_authz.engines.permissions import CrudPermissions, PermissionIndex, PermissionResolver
from mandi_authz.engines.record_lock import LockDecision, RecordLockEvaluator
from mandi_authz.engines.resource_tree import ResourceNode, compute_allowed_sidebar
from mandi_authz.engines.routes import RouteResolver
from mandi_authz.engines.stepup import (
    Navigator,
    Notifier,
    StepUpSessionController,
    StepUpSource,
)
from mandi_authz.engines.stepup_policy import StepUpPolicyCache
from mandi_authz.guards import ActionGate, StepUpGuard, StepUpRouteEnforcer
from mandi_authz.storage import ClientSessionState
from mandi_authz.ui_config import AdminUiConfig, AdminUiConfigLoader

logger = logging.getLogger(__name__)


class AuthzSession:
    """
    Facade over the authz engine for one login session.

    Permission and record checks are synchronous and safe to call while
    rendering. Step-up checks are coroutines that may wait on the prompt.
    """

    def __init__(
        self,
        settings: AuthzSettings,
        state: ClientSessionState,
        *,
        client: AdminApiClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        notifier: Notifier | None = None,
        navigator: Navigator | None = None,
        auditor: AuthzAuditor | None = None,
    ) -> None:
        """
        Initialize session.

        Args:
            settings: Engine settings
            state: Client storage
            client: API client (created from settings when omitted)
            transport: httpx transport for a created client
            notifier: Where user-facing messages go
            navigator: Called with a route for redirects
            auditor: Optional audit sink
        """
        self.settings = settings
        self.state = state
        self._owns_client = client is None
        self.client = client or AdminApiClient(settings, state, transport=transport)
        self._auditor = auditor

        self.config_loader = AdminUiConfigLoader(
            self.client.fetch_ui_config,
            state.durable,
            cache_key=settings.ui_config_cache_key,
            version=settings.ui_config_cache_version,
        )
        self.policy = StepUpPolicyCache(self.client.fetch_stepup_policy, auditor=auditor)
        self.controller = StepUpSessionController(
            self.client,
            self.policy,
            state,
            settings=settings,
            notifier=notifier,
            navigator=navigator,
            auditor=auditor,
        )
        self.client.attach_step_up(self.controller.answer_challenge)
        self.evaluator = RecordLockEvaluator()

        self._identity: AdminIdentity | None = None
        self._apply(AdminUiConfig())

    async def __aenter__(self) -> AuthzSession:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the API client if this session created it."""
        if self._owns_client:
            await self.client.close()

    # State

    @property
    def identity(self) -> AdminIdentity | None:
        return self._identity

    @property
    def config(self) -> AdminUiConfig:
        return self._config

    @property
    def resolver(self) -> PermissionResolver:
        return self._resolver

    @property
    def routes(self) -> RouteResolver:
        return self._routes

    @property
    def auth_context(self) -> AuthContext:
        """Caller context for record lock checks."""
        return self._auth

    @property
    def is_super(self) -> bool:
        return self._auth.is_super

    @property
    def role(self) -> str:
        return self._resolver.role

    def _apply(self, config: AdminUiConfig) -> None:
        """Rebuild resolvers and gates from a config."""
        self._config = config
        self._resolver = PermissionResolver(PermissionIndex.build(config.permissions), config.role)
        self._auth = AuthContext.from_scope(config.role, config.scope)
        self._routes = RouteResolver(config.ui_resources)
        self._gate = ActionGate(
            self._resolver,
            self._auth,
            evaluator=self.evaluator,
            auditor=self._auditor,
            username=self._identity.username if self._identity else None,
        )
        self._guard = StepUpGuard(self.controller)
        self._enforcer = StepUpRouteEnforcer(self.controller, self._routes)

    # Lifecycle events

    def bootstrap(self) -> AdminUiConfig | None:
        """
        Restore the stored admin and the cached config after a reload.

        Returns:
            Cached config, or None if no usable cache exists
        """
        identity = self.state.get_stored_identity()
        if identity is None:
            return None
        self._identity = identity
        self.controller.bind_identity(identity)
        cached = self.config_loader.bootstrap()
        if cached is not None:
            self._apply(cached)
        return cached

    async def on_identity_changed(self, identity: AdminIdentity | None) -> AdminUiConfig:
        """
        Handle a login, account switch or sign-out.

        Drops cached config and policy, reloads the config for the new
        identity and rebuilds the resolvers. A different admin also loses
        the previous admin's step-up session.

        Args:
            identity: New admin, or None when signed out

        Returns:
            The config now in effect
        """
        previous = self._identity
        if previous is not None and (identity is None or identity.username != previous.username):
            self.controller.reset()

        self._identity = identity
        self.controller.bind_identity(identity)
        self.config_loader.invalidate()
        self.policy.invalidate()

        if identity is None:
            logger.info("Admin signed out; authz state cleared")
            self._apply(AdminUiConfig())
            return self._config

        logger.info("Admin identity changed to %s; reloading authz state", identity.username)
        self.state.store_identity(identity)
        config = await self.config_loader.load(identity)
        self._apply(config)
        return config

    async def refresh(self) -> AdminUiConfig:
        """Refetch config and step-up policy for the current admin."""
        if self._identity is None:
            return self._config
        self.config_loader.invalidate()
        self.policy.invalidate()
        config = await self.config_loader.load(self._identity)
        self._apply(config)
        await self.policy.load(self._identity)
        return config

    async def logout(self) -> None:
        """Tear down the session: prompt, caches and client storage."""
        self.controller.reset()
        self.config_loader.invalidate(clear_cache=True)
        self.policy.invalidate()
        self.state.clear()
        self._identity = None
        self.controller.bind_identity(None)
        self._apply(AdminUiConfig())
        logger.info("Authz session logged out")

    # Checks

    def can(self, resource_key: str | None, action: str | Action | None) -> bool:
        return self._resolver.can(resource_key, action)

    def crud(self, base_key: str, *, master_only: bool = False) -> CrudPermissions:
        return self._resolver.crud(base_key, master_only=master_only)

    def is_record_locked(self, record: Any) -> LockDecision:
        return self.evaluator.is_locked(record, self._auth)

    def action_allowed(self, resource_key: str, action: str | Action, record: Any = None) -> bool:
        """Permission AND record lock, as the UI needs for mutation controls."""
        return self._gate.allows(resource_key, action, record)

    def sidebar(self) -> list[ResourceNode]:
        """Navigation tree the caller may see."""
        return compute_allowed_sidebar(self._config.ui_resources, self._resolver)

    def resolve_resource_key(self, path: str | None) -> str | None:
        return self._routes.resolve_resource_key(path)

    async def ensure_step_up(
        self,
        resource_key: str | None,
        action: str | Action = Action.VIEW,
        source: StepUpSource = StepUpSource.OTHER,
        *,
        target_username: str | None = None,
    ) -> bool:
        return await self.controller.ensure_step_up(
            resource_key, action, source, target_username=target_username
        )

    async def guard(self, resource_key: str | None, action: str | Action = Action.VIEW) -> bool:
        return await self._guard.check(resource_key, action)

    async def enforce_route(self, path: str | None) -> bool:
        return await self._enforcer.enforce(path)

    def session_headers(self) -> dict[str, str]:
        return self.controller.session_headers()
