"""
Step-Up Policy Cache for Mandi Authz.

Holds the set of canonical resource keys that require step-up verification.
The set is loaded once per session; concurrent callers share one in-flight
request. A failed load yields an empty set and is not retried until the
cache is invalidated.

The server declares the set either explicitly:

    {"selected": ["payments_log.menu", "settlements.list"]}

or as a derivation rule:

    {
        "screens": ["payments_log.menu", "payments_log.list", "mandis.list"],
        "match": {"type": "RESOURCE_KEY_PREFIX", "values": ["payments_log."]},
        "locked_defaults": ["admin_users.reset_password"],
    }
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from mandi_authz.audit import AuthzAuditor
from mandi_authz.core.keys import canonicalize_resource_key
from mandi_authz.core.models import AdminIdentity

logger = logging.getLogger(__name__)

PolicyFetcher = Callable[[AdminIdentity], Awaitable[Any]]

# Places the policy body may sit inside the response envelope, in lookup order.
_ENVELOPE_PATHS: tuple[tuple[str, ...], ...] = (
    (),
    ("data",),
    ("response",),
    ("data", "data"),
    ("response", "data"),
    ("response", "response"),
)


class PolicyMatchType(str, Enum):
    """How declared screens are tested against match values."""

    EXACT = "EXACT"
    RESOURCE_KEY_PREFIX = "RESOURCE_KEY_PREFIX"


def _canonical_keys(value: Any) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    keys = (canonicalize_resource_key(v) for v in value)
    return tuple(k for k in keys if k)


class StepUpPolicy(BaseModel):
    """Server-declared step-up policy (explicit list or derivation rule)."""

    model_config = {"frozen": True}

    selected: tuple[str, ...] | None = None
    screens: tuple[str, ...] = Field(default_factory=tuple)
    match_type: PolicyMatchType = PolicyMatchType.RESOURCE_KEY_PREFIX
    match_values: tuple[str, ...] = Field(default_factory=tuple)
    locked_defaults: tuple[str, ...] = Field(default_factory=tuple)

    @field_validator("selected", mode="before")
    @classmethod
    def _canonical_selected(cls, value: Any) -> tuple[str, ...] | None:
        if value is None:
            return None
        return _canonical_keys(value)

    @field_validator("screens", "locked_defaults", mode="before")
    @classmethod
    def _canonical_list(cls, value: Any) -> tuple[str, ...]:
        return _canonical_keys(value)

    @field_validator("match_values", mode="before")
    @classmethod
    def _match_values(cls, value: Any) -> tuple[str, ...]:
        if not isinstance(value, (list, tuple)):
            return ()
        return tuple(str(v).strip() for v in value if v is not None and str(v).strip())

    @field_validator("match_type", mode="before")
    @classmethod
    def _match_type(cls, value: Any) -> PolicyMatchType:
        try:
            return PolicyMatchType(str(value or "").strip().upper())
        except ValueError:
            return PolicyMatchType.RESOURCE_KEY_PREFIX

    @classmethod
    def from_payload(cls, payload: Any) -> StepUpPolicy:
        """
        Extract the policy from a (possibly wrapped) server response.

        Args:
            payload: Raw response body

        Returns:
            StepUpPolicy (empty when nothing usable is found)
        """
        for path in _ENVELOPE_PATHS:
            candidate = payload
            for part in path:
                candidate = candidate.get(part) if isinstance(candidate, dict) else None
            if not isinstance(candidate, dict):
                continue
            if isinstance(candidate.get("selected"), list):
                return cls(selected=candidate["selected"])
            if isinstance(candidate.get("screens"), list):
                match = candidate.get("match") if isinstance(candidate.get("match"), dict) else {}
                return cls(
                    screens=candidate["screens"],
                    match_type=match.get("type"),
                    match_values=match.get("values") or [],
                    locked_defaults=candidate.get("locked_defaults") or [],
                )
        return cls(selected=[])


def derive_locked_keys(policy: StepUpPolicy) -> frozenset[str]:
    """
    Compute the locked key set from a policy.

    An explicit `selected` list wins. Otherwise each screen is tested
    against the match values (exact membership or key prefix) and the
    locked defaults are added.

    Args:
        policy: Parsed policy

    Returns:
        Canonical locked keys
    """
    if policy.selected is not None:
        return frozenset(policy.selected)

    if policy.match_type is PolicyMatchType.EXACT:
        wanted = set(_canonical_keys(list(policy.match_values)))
        matched = {screen for screen in policy.screens if screen in wanted}
    else:
        prefixes = tuple(policy.match_values)
        matched = {screen for screen in policy.screens if prefixes and screen.startswith(prefixes)}

    return frozenset(matched) | frozenset(policy.locked_defaults)


class StepUpPolicyCache:
    """
    Session-owned cache of step-up locked keys.

    Construct once per login session; call invalidate() on logout or when
    the policy changes.

    Usage:
        cache = StepUpPolicyCache(client.fetch_stepup_policy)
        await cache.load(identity)
        if cache.is_locked("payments_log.list"):
            ...
    """

    def __init__(self, fetch_policy: PolicyFetcher, *, auditor: AuthzAuditor | None = None) -> None:
        """
        Initialize cache.

        Args:
            fetch_policy: Coroutine function returning the raw policy payload
            auditor: Optional audit sink for completed loads
        """
        self._fetch_policy = fetch_policy
        self._auditor = auditor
        self._locked: frozenset[str] | None = None
        self._inflight: asyncio.Task[frozenset[str]] | None = None
        self._generation = 0
        self._fetch_count = 0

    @property
    def loaded(self) -> bool:
        """Whether a load (successful or not) has completed."""
        return self._locked is not None

    @property
    def snapshot(self) -> frozenset[str]:
        """Current locked set; empty before the first load."""
        return self._locked or frozenset()

    @property
    def fetch_count(self) -> int:
        """Number of fetches issued since construction."""
        return self._fetch_count

    async def load(self, identity: AdminIdentity) -> frozenset[str]:
        """
        Load the locked set once, sharing any in-flight request.

        Never raises; a failed fetch resolves to an empty set.

        Args:
            identity: Caller identity for the policy request

        Returns:
            Canonical locked keys
        """
        if self._locked is not None:
            return self._locked
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._fetch(identity, self._generation))
        return await asyncio.shield(self._inflight)

    async def _fetch(self, identity: AdminIdentity, generation: int) -> frozenset[str]:
        self._fetch_count += 1
        logger.info("Fetching step-up policy for %s", identity.username)
        try:
            payload = await self._fetch_policy(identity)
            locked = derive_locked_keys(StepUpPolicy.from_payload(payload))
        except ValidationError as exc:
            logger.warning("Step-up policy payload rejected: %s", exc)
            locked = frozenset()
        except Exception:
            logger.warning("Step-up policy load failed; no screens will be gated", exc_info=True)
            locked = frozenset()

        if generation == self._generation:
            self._locked = locked
            self._inflight = None
            logger.info("Step-up policy loaded: %d locked keys", len(locked))
            if self._auditor:
                self._auditor.log_policy_loaded(username=identity.username, locked_keys=len(locked))
        else:
            logger.debug("Discarding step-up policy loaded before invalidation")
        return locked

    def is_locked(self, resource_key: str | None) -> bool:
        """
        Check a key against the current snapshot.

        Args:
            resource_key: Resource key (any spelling)

        Returns:
            True if the key requires step-up
        """
        key = canonicalize_resource_key(resource_key)
        return bool(key) and key in self.snapshot

    def invalidate(self) -> None:
        """
        Clear the cache. The next load() fetches again.

        Safe while a load is in flight: that load's result is dropped.
        """
        self._generation += 1
        self._locked = None
        self._inflight = None

    def prime(self, keys: Iterable[str]) -> None:
        """Seed the cache with a known locked set (e.g. after saving a selection)."""
        self._generation += 1
        self._inflight = None
        self._locked = frozenset(_canonical_keys(list(keys)))
