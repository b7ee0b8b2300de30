"""
Admin UI Configuration for Mandi Authz.

Loads the caller's role, administrative scope, UI resources and permission
grants, and keeps a copy in durable client storage so a reload can render
the last known navigation before the network answers.

The cached copy is versioned. A version mismatch discards it instead of
migrating it.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from mandi_authz.core.errors import ApiError
from mandi_authz.core.models import (
    AdminIdentity,
    AdminScope,
    PermissionEntry,
    UiResource,
    normalize_permission_payload,
)
from mandi_authz.engines.resource_tree import dedupe_resources, with_builtin_resources
from mandi_authz.storage import SessionStore

logger = logging.getLogger(__name__)

ConfigFetcher = Callable[[AdminIdentity], Awaitable[dict[str, Any]]]

DEFAULT_CACHE_KEY = "admin_ui_config_cache"
DEFAULT_CACHE_VERSION = 2


def _parse_resources(rows: Any) -> list[UiResource]:
    if not isinstance(rows, list):
        return []
    resources: list[UiResource] = []
    for row in rows:
        if isinstance(row, UiResource):
            resources.append(row)
            continue
        if not isinstance(row, dict):
            continue
        try:
            resources.append(UiResource.model_validate(row))
        except ValidationError as exc:
            logger.debug("Dropping malformed UI resource: %s", exc)
    return resources


class AdminUiConfig(BaseModel):
    """What the caller may see and do, as declared by the server."""

    model_config = {"frozen": True}

    role: str | None = None
    scope: AdminScope | None = None
    ui_resources: tuple[UiResource, ...] = Field(default_factory=tuple)
    permissions: tuple[PermissionEntry, ...] = Field(default_factory=tuple)

    @classmethod
    def from_payload(cls, data: Any) -> AdminUiConfig:
        """
        Build a config from the server's `response.data` object.

        When the payload has no `permissions` list (or an empty one), the
        resources' own allowed_actions are the grant source. A list whose
        rows are all malformed grants nothing.

        Args:
            data: Raw config object (`resources` or `ui_resources`,
                `permissions`, `role`, `scope`)

        Returns:
            AdminUiConfig (empty for non-mapping input)
        """
        if not isinstance(data, dict):
            data = {}

        raw_resources = data.get("ui_resources")
        if raw_resources is None:
            raw_resources = data.get("resources")
        server_resources = dedupe_resources(_parse_resources(raw_resources))

        raw_permissions = data.get("permissions")
        if raw_permissions:
            permissions = normalize_permission_payload(raw_permissions)
        else:
            # Resources without actions grant nothing.
            permissions = normalize_permission_payload(
                resource for resource in server_resources if resource.allowed_actions
            )

        role = data.get("role")
        return cls(
            role=str(role) if role else None,
            scope=AdminScope.from_raw(data.get("scope")),
            ui_resources=tuple(with_builtin_resources(server_resources)),
            permissions=tuple(permissions),
        )


class AdminUiConfigLoader:
    """
    Session-owned loader for the admin UI config.

    Usage:
        loader = AdminUiConfigLoader(client.fetch_ui_config, durable_store)
        cached = loader.bootstrap()          # may be None
        config = await loader.load(identity)
    """

    def __init__(
        self,
        fetch_config: ConfigFetcher,
        store: SessionStore,
        *,
        cache_key: str = DEFAULT_CACHE_KEY,
        version: int = DEFAULT_CACHE_VERSION,
    ) -> None:
        """
        Initialize loader.

        Args:
            fetch_config: Coroutine function returning the raw config object
            store: Durable store holding the cached copy
            cache_key: Storage key of the cached copy
            version: Cache format version; other versions are discarded
        """
        self._fetch_config = fetch_config
        self._store = store
        self._cache_key = cache_key
        self._version = version

        self._config: AdminUiConfig | None = None
        self._loaded = False
        self._inflight: asyncio.Task[AdminUiConfig] | None = None
        self._generation = 0
        self._fetch_count = 0
        self.error: str | None = None

    @property
    def config(self) -> AdminUiConfig | None:
        """Latest config (fetched, or bootstrapped from cache)."""
        return self._config

    @property
    def loaded(self) -> bool:
        """Whether a fetch (successful or not) has completed."""
        return self._loaded

    @property
    def fetch_count(self) -> int:
        return self._fetch_count

    def bootstrap(self) -> AdminUiConfig | None:
        """
        Read the cached config, if one of the current version exists.

        Returns:
            Cached AdminUiConfig or None
        """
        raw = self._store.get(self._cache_key)
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable UI config cache")
            self._store.delete(self._cache_key)
            return None

        if not isinstance(parsed, dict) or parsed.get("version") != self._version:
            logger.info("Discarding UI config cache of another version")
            self._store.delete(self._cache_key)
            return None

        try:
            config = AdminUiConfig.model_validate(parsed.get("config") or {})
        except ValidationError as exc:
            logger.warning("Discarding invalid UI config cache: %s", exc)
            self._store.delete(self._cache_key)
            return None
        if self._config is None:
            self._config = config
        return config

    def _write_cache(self, config: AdminUiConfig) -> None:
        self._store.set(
            self._cache_key,
            json.dumps({"version": self._version, "config": config.model_dump(mode="json")}),
        )

    async def load(self, identity: AdminIdentity) -> AdminUiConfig:
        """
        Fetch the config once per session, sharing any in-flight request.

        Never raises; a failed fetch yields an empty config.

        Args:
            identity: Caller identity

        Returns:
            AdminUiConfig
        """
        if self._loaded and self._config is not None:
            return self._config
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._fetch(identity, self._generation))
        return await asyncio.shield(self._inflight)

    async def _fetch(self, identity: AdminIdentity, generation: int) -> AdminUiConfig:
        self._fetch_count += 1
        error: str | None = None
        try:
            config = AdminUiConfig.from_payload(await self._fetch_config(identity))
        except ApiError as exc:
            logger.warning("Admin UI config load failed: %s", exc.message)
            error = exc.message
            config = AdminUiConfig.from_payload({})
        except Exception:
            logger.error("Admin UI config load crashed", exc_info=True)
            error = "Network error while loading admin UI config."
            config = AdminUiConfig.from_payload({})

        if generation != self._generation:
            logger.debug("Discarding UI config loaded before invalidation")
            return config

        self._config = config
        self._loaded = True
        self._inflight = None
        self.error = error
        if error is None:
            self._write_cache(config)
            logger.info(
                "Admin UI config loaded: role=%s resources=%d permissions=%d",
                config.role,
                len(config.ui_resources),
                len(config.permissions),
            )
        return config

    def invalidate(self, *, clear_cache: bool = False) -> None:
        """
        Forget the loaded config. The next load() fetches again.

        Args:
            clear_cache: Also delete the cached copy (logout)
        """
        self._generation += 1
        self._config = None
        self._loaded = False
        self._inflight = None
        self.error = None
        if clear_cache:
            self._store.delete(self._cache_key)
