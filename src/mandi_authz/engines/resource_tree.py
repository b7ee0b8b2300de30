"""
Resource Tree for Mandi Authz.

Turns the flat UI resource list into the permitted navigation tree:
dedupe by canonical key, add built-in compatibility entries, filter by
permission and prune empty menus.
"""

from __future__ import annotations

import sys
from collections.abc import Iterable
from dataclasses import dataclass, field

from mandi_authz.core.keys import Action, canonicalize_action, canonicalize_resource_key
from mandi_authz.core.models import UiResource
from mandi_authz.engines.permissions import PermissionResolver

MENU_TYPES = frozenset({"MENU"})
PAGE_TYPES = frozenset({"TABLE", "PAGE", "SCREEN", "TAB"})

# Entries the server does not return but older screens still address.
BUILTIN_RESOURCES: tuple[UiResource, ...] = (
    UiResource(
        resource_key="org_mandi_mappings.menu",
        ui_type="MENU",
        route="/org-mandi-mappings",
        parent_resource_key="organisations.menu",
    ),
    UiResource(
        resource_key="org_mandi_mappings.list",
        ui_type="TABLE",
        route="/org-mandi-mappings",
        parent_resource_key="org_mandi_mappings.menu",
        allowed_actions=("VIEW",),
    ),
    UiResource(
        resource_key="security.2fa.menu",
        ui_type="PAGE",
        route="/system/security/2fa",
    ),
)


@dataclass
class ResourceNode:
    """A UI resource with its permitted children."""

    resource: UiResource
    children: list[ResourceNode] = field(default_factory=list)

    @property
    def key(self) -> str:
        return self.resource.canonical_key

    @property
    def ui_type(self) -> str:
        return self.resource.ui_type


def dedupe_resources(resources: Iterable[UiResource]) -> list[UiResource]:
    """
    Drop later duplicates by canonical key (first wins) and keyless rows.

    Args:
        resources: Resources in server order

    Returns:
        Unique resources in original order
    """
    seen: set[str] = set()
    unique: list[UiResource] = []
    for resource in resources:
        key = resource.canonical_key
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(resource)
    return unique


def with_builtin_resources(resources: Iterable[UiResource]) -> list[UiResource]:
    """Dedupe server resources and append built-ins the server omitted."""
    return dedupe_resources([*resources, *BUILTIN_RESOURCES])


def required_action_for_ui_resource(ui_type: str | None, action_code: str | None = None) -> str:
    """
    Action a caller needs to see a UI resource.

    Args:
        ui_type: MENU, TABLE, PAGE, SCREEN, TAB, BUTTON ...
        action_code: Action a BUTTON performs

    Returns:
        Canonical action ("" for a button without an action code)
    """
    kind = str(ui_type or "").strip().upper()
    if kind == "BUTTON":
        return canonicalize_action(action_code)
    return Action.VIEW.value


def filter_resources_by_access(
    resources: Iterable[UiResource],
    resolver: PermissionResolver,
) -> list[UiResource]:
    """Active resources whose required action the caller holds."""
    visible: list[UiResource] = []
    for resource in resources:
        if not resource.is_active:
            continue
        required = required_action_for_ui_resource(resource.ui_type, resource.action_code)
        if required and resolver.can(resource.resource_key, required):
            visible.append(resource)
    return visible


def _sort_nodes(nodes: list[ResourceNode]) -> None:
    nodes.sort(
        key=lambda node: (
            node.resource.order if node.resource.order is not None else sys.maxsize,
            node.resource.resource_key,
        )
    )
    for node in nodes:
        if node.children:
            _sort_nodes(node.children)


def build_resource_tree(resources: Iterable[UiResource]) -> list[ResourceNode]:
    """
    Link resources to their parents by canonical key.

    Resources whose parent is missing become roots. Siblings are sorted by
    `order`, then resource key.

    Args:
        resources: Resources to arrange

    Returns:
        Root nodes
    """
    nodes: dict[str, ResourceNode] = {}
    for resource in resources:
        key = resource.canonical_key
        if key and key not in nodes:
            nodes[key] = ResourceNode(resource=resource)

    roots: list[ResourceNode] = []
    for node in nodes.values():
        parent_key = canonicalize_resource_key(node.resource.parent_resource_key)
        parent = nodes.get(parent_key) if parent_key else None
        if parent is not None and parent is not node:
            parent.children.append(node)
        else:
            roots.append(node)

    _sort_nodes(roots)
    return roots


def _prune(node: ResourceNode) -> ResourceNode | None:
    children = [child for child in map(_prune, node.children) if child is not None]
    if node.ui_type in MENU_TYPES:
        return ResourceNode(node.resource, children) if children else None
    if node.ui_type in PAGE_TYPES:
        return ResourceNode(node.resource, children)
    return None


def compute_allowed_sidebar(
    resources: Iterable[UiResource],
    resolver: PermissionResolver,
) -> list[ResourceNode]:
    """
    Build the navigation tree the caller may see.

    Menus survive only with at least one visible child; page-like nodes
    survive; buttons and other leaf types are pruned.

    Args:
        resources: All UI resources of the session
        resolver: Permission resolver of the session

    Returns:
        Pruned root nodes
    """
    tree = build_resource_tree(filter_resources_by_access(resources, resolver))
    return [node for node in map(_prune, tree) if node is not None]
