"""
Permission Index and Resolver for Mandi Authz.

The "Can you do this?" logic for UI actions. The server-provided permission
payload is authoritative: a key that is not in the index is denied.

Resolution, in order:
1. Empty canonical key or action -> deny
2. Key absent from the index -> deny
3. Key present with an empty action set -> allow (unrestricted grant)
4. Wildcard action in the set -> allow
5. Otherwise -> membership of the folded action
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from mandi_authz.core.keys import (
    SUPER_ROLE,
    WILDCARD_ACTION,
    Action,
    Role,
    canonicalize_action,
    canonicalize_actions,
    canonicalize_resource_key,
    canonicalize_role,
)
from mandi_authz.core.models import PermissionEntry, normalize_permission_payload

logger = logging.getLogger(__name__)


# Grants some legacy roles always carry, whatever the payload says.
# Driven only by role identity so the result is order-independent.
ROLE_AUGMENTATIONS: dict[str, dict[str, frozenset[str]]] = {
    Role.SUPER_ADMIN.value: {
        "admin_users.reset_password": frozenset({Action.RESET_PASSWORD.value}),
        "stepup_policies.menu": frozenset({Action.VIEW.value}),
        "stepup_policies.edit": frozenset({Action.VIEW.value, Action.UPDATE.value}),
        "resource_registry.menu": frozenset({Action.VIEW.value}),
    },
    Role.ORG_ADMIN.value: {
        "org_mandi_mappings.menu": frozenset({Action.VIEW.value}),
        "org_mandi_mappings.list": frozenset({Action.VIEW.value}),
        "admin_users.reset_password": frozenset({Action.RESET_PASSWORD.value}),
    },
}


class PermissionIndex(Mapping[str, frozenset[str]]):
    """
    Immutable map of canonical resource key -> canonical allowed actions.

    Build with PermissionIndex.build(); every "mutation" returns a new index.
    """

    __slots__ = ("_grants",)

    def __init__(self, grants: Mapping[str, frozenset[str]] | None = None) -> None:
        self._grants: dict[str, frozenset[str]] = dict(grants or {})

    @classmethod
    def build(cls, entries: Iterable[Any] | None) -> PermissionIndex:
        """
        Build an index from permission entries.

        Entries for the same canonical key are merged, never overwritten.
        Entries whose key canonicalizes to "" are dropped.

        Args:
            entries: PermissionEntry rows or raw payload rows

        Returns:
            New PermissionIndex
        """
        grants: dict[str, set[str]] = {}
        for entry in normalize_permission_payload(entries):
            grants.setdefault(entry.resource_key, set()).update(entry.actions)
        return cls({key: frozenset(actions) for key, actions in grants.items()})

    def ensure(self, resource_key: str, actions: Iterable[Any]) -> PermissionIndex:
        """
        Return an index where `actions` are granted on `resource_key`.

        Only ever widens: existing actions are kept, and an existing empty
        (unrestricted) set is left as is.

        Args:
            resource_key: Resource to grant on
            actions: Actions to add

        Returns:
            New PermissionIndex (self if nothing changes)
        """
        key = canonicalize_resource_key(resource_key)
        if not key:
            return self

        folded = frozenset(canonicalize_actions(list(actions)))
        if not folded:
            return self
        current = self._grants.get(key)
        if current is not None and not current:
            return self
        if current is not None and folded <= current:
            return self

        grants = dict(self._grants)
        grants[key] = (current or frozenset()) | folded
        return PermissionIndex(grants)

    def with_role_overrides(self, role: str | None) -> PermissionIndex:
        """
        Layer the role's fixed augmentations on top of this index.

        Args:
            role: Caller role (any spelling)

        Returns:
            Augmented index
        """
        index = self
        for key, actions in ROLE_AUGMENTATIONS.get(canonicalize_role(role), {}).items():
            index = index.ensure(key, actions)
        return index

    def actions_for(self, resource_key: str) -> frozenset[str] | None:
        """Actions granted on a key, or None if the key is absent."""
        return self._grants.get(canonicalize_resource_key(resource_key))

    def __getitem__(self, key: str) -> frozenset[str]:
        return self._grants[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._grants)

    def __len__(self) -> int:
        return len(self._grants)

    def __repr__(self) -> str:
        return f"PermissionIndex(keys={len(self._grants)})"

    def to_dict(self) -> dict[str, list[str]]:
        """Serializable view for debugging panels and logs."""
        return {key: sorted(actions) for key, actions in sorted(self._grants.items())}


@dataclass(frozen=True)
class PermissionDecision:
    """Result of a permission check with its reasoning."""

    allowed: bool
    reason: str
    resource_key: str = ""
    action: str = ""


@dataclass(frozen=True)
class CrudPermissions:
    """Standard CRUD switches for a screen family (e.g. `mandis`)."""

    can_view: bool
    can_view_detail: bool
    can_create: bool
    can_edit: bool
    can_deactivate: bool
    role: str
    is_super: bool


class PermissionResolver:
    """
    Answers permission checks for one session.

    Role overrides are applied once, at construction.

    Usage:
        resolver = PermissionResolver(PermissionIndex.build(entries), role="ORG_ADMIN")

        if resolver.can("mandis.edit", "EDIT"):
            ...
    """

    def __init__(self, index: PermissionIndex, role: str | None = None) -> None:
        """
        Initialize resolver.

        Args:
            index: Base permission index built from the server payload
            role: Caller role, used for legacy role augmentation
        """
        self._role = canonicalize_role(role)
        self._index = index.with_role_overrides(self._role)

    @property
    def role(self) -> str:
        """Canonical role of the caller."""
        return self._role

    @property
    def is_super(self) -> bool:
        """Whether the caller holds the super role."""
        return self._role == SUPER_ROLE

    @property
    def index(self) -> PermissionIndex:
        """Effective index (payload plus role overrides)."""
        return self._index

    def can(self, resource_key: str | None, action: str | Action | None) -> bool:
        """
        Check whether the caller may perform `action` on `resource_key`.

        Args:
            resource_key: Resource key (any spelling)
            action: Action (any synonym)

        Returns:
            True if allowed
        """
        return self.evaluate(resource_key, action).allowed

    def evaluate(
        self,
        resource_key: str | None,
        action: str | Action | None,
    ) -> PermissionDecision:
        """
        Evaluate a permission check with full decision details.

        Args:
            resource_key: Resource key (any spelling)
            action: Action (any synonym)

        Returns:
            PermissionDecision with allow/deny and reasoning
        """
        key = canonicalize_resource_key(resource_key)
        folded = canonicalize_action(action)

        if not key or not folded:
            return PermissionDecision(False, "Empty resource key or action", key, folded)

        actions = self._index.get(key)
        if actions is None:
            return PermissionDecision(False, "No grant for resource", key, folded)

        if not actions:
            return PermissionDecision(True, "Unrestricted grant (no actions listed)", key, folded)

        if WILDCARD_ACTION in actions:
            return PermissionDecision(True, "Wildcard grant", key, folded)

        if folded in actions:
            return PermissionDecision(True, "Action granted", key, folded)

        return PermissionDecision(False, "Action not granted", key, folded)

    def entry(self, resource_key: str) -> PermissionEntry | None:
        """
        Get the effective grant for a resource.

        Args:
            resource_key: Resource key (any spelling)

        Returns:
            PermissionEntry or None if the key is not granted
        """
        key = canonicalize_resource_key(resource_key)
        actions = self._index.get(key) if key else None
        if actions is None:
            return None
        return PermissionEntry(resource_key=key, actions=sorted(actions))

    def crud(self, base_key: str, *, master_only: bool = False) -> CrudPermissions:
        """
        Derive CRUD switches for a screen family.

        Checks `<base>.list` / `<base>.detail` (VIEW), `<base>.create`,
        `<base>.edit` and `<base>.deactivate`. With master_only, roles other
        than the super role are read-only whatever the payload grants.

        Args:
            base_key: Screen family key, e.g. "mandis"
            master_only: Restrict mutations to the super role

        Returns:
            CrudPermissions
        """
        base = canonicalize_resource_key(base_key)
        view_list = self.can(f"{base}.list", Action.VIEW)
        view_detail = self.can(f"{base}.detail", Action.VIEW)
        create = self.can(f"{base}.create", Action.CREATE)
        edit = self.can(f"{base}.edit", Action.UPDATE)
        deactivate = self.can(f"{base}.deactivate", Action.DEACTIVATE)

        if master_only and not self.is_super:
            create = edit = deactivate = False

        return CrudPermissions(
            can_view=view_list or view_detail,
            can_view_detail=view_detail,
            can_create=create,
            can_edit=edit,
            can_deactivate=deactivate,
            role=self._role,
            is_super=self.is_super,
        )


def build_index(entries: Iterable[Any] | None) -> PermissionIndex:
    """Build a PermissionIndex from raw or normalized entries."""
    return PermissionIndex.build(entries)


def can(
    index: PermissionIndex,
    role: str | None,
    resource_key: str | None,
    action: str | Action | None,
) -> bool:
    """
    Functional form of PermissionResolver.can().

    Args:
        index: Base permission index
        role: Caller role
        resource_key: Resource key
        action: Action

    Returns:
        True if allowed
    """
    return PermissionResolver(index, role).can(resource_key, action)
