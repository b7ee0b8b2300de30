"""
Route Resolution for Mandi Authz.

Maps a navigation path to the resource key that governs it, and finds the
key that actually carries a step-up lock when navigation-level and
action-level keys differ (`reports.menu` vs `reports.list`).

Route patterns match in three ways:
- exact path
- prefix boundary: `/admin/users` governs `/admin/users/42/edit`
- parameterized: `/admin/users/:id` matches `/admin/users/42`

Parameterized matching requires an equal segment count, so
`/admin/users/:id` does NOT match `/admin/users/42/edit`. This is kept as is.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Sequence

from mandi_authz.core.keys import canonicalize_resource_key
from mandi_authz.core.models import UiResource

# Lookup order when a `.menu` key is not itself locked.
STEPUP_SIBLING_SUFFIXES: tuple[str, ...] = (
    ".list",
    ".view",
    ".detail",
    ".create",
    ".edit",
    ".deactivate",
)

_BACKSLASHES = re.compile(r"\\+")
_TRAILING_SLASHES = re.compile(r"/+$")


def normalize_path(path: str | None) -> str:
    """
    Normalize a navigation path.

    Strips the query string, turns backslashes into `/` and drops trailing
    slashes. The root path stays `/`.

    Args:
        path: Raw path

    Returns:
        Normalized path, or "" for empty input
    """
    if not path:
        return ""
    sanitized = _BACKSLASHES.sub("/", path.split("?", 1)[0])
    if sanitized == "/":
        return "/"
    return _TRAILING_SLASHES.sub("", sanitized)


def _segments(path: str) -> list[str]:
    return [segment for segment in path.split("/") if segment]


def matches_route_pattern(pattern: str | None, target: str | None) -> bool:
    """
    Check whether a route pattern governs a target path.

    Args:
        pattern: Resource route, may contain `:param` segments
        target: Navigation path

    Returns:
        True on exact, prefix-boundary or same-length parameterized match
    """
    normalized_pattern = normalize_path(pattern)
    normalized_target = normalize_path(target)
    if not normalized_pattern or not normalized_target:
        return False
    if normalized_pattern == normalized_target:
        return True
    if normalized_pattern != "/" and normalized_target.startswith(f"{normalized_pattern}/"):
        return True

    pattern_segments = _segments(normalized_pattern)
    target_segments = _segments(normalized_target)
    if len(pattern_segments) != len(target_segments):
        return False
    return all(
        segment.startswith(":") or segment == target_segments[i]
        for i, segment in enumerate(pattern_segments)
    )


class RouteResolver:
    """
    Resolves navigation paths against the session's UI resources.

    Resource-list order is significant: the first exact match wins, then
    the first pattern match.
    """

    def __init__(self, resources: Iterable[UiResource] = ()) -> None:
        """
        Initialize resolver.

        Args:
            resources: UI resources in server order
        """
        self._resources: tuple[UiResource, ...] = tuple(resources)

    @property
    def resources(self) -> tuple[UiResource, ...]:
        return self._resources

    def resolve_resource_key(self, path: str | None) -> str | None:
        """
        Find the resource key governing a path.

        Args:
            path: Navigation path

        Returns:
            Canonical resource key, or None if nothing matches
        """
        cleaned = normalize_path(path)
        if not cleaned:
            return None

        for resource in self._resources:
            if normalize_path(resource.route) == cleaned:
                return canonicalize_resource_key(resource.resource_key) or None

        for resource in self._resources:
            if matches_route_pattern(resource.route, cleaned):
                return canonicalize_resource_key(resource.resource_key) or None

        return None


def resolve_resource_key(path: str | None, resources: Sequence[UiResource]) -> str | None:
    """Functional form of RouteResolver.resolve_resource_key()."""
    return RouteResolver(resources).resolve_resource_key(path)


def resolve_stepup_variant(
    resource_key: str | None,
    is_locked: Callable[[str], bool],
) -> str | None:
    """
    Find the key that carries the step-up lock for a resolved resource.

    A locked key is returned as is. An unlocked `.menu` key tries its
    sibling screen keys (list, view, detail, create, edit, deactivate) in
    that order. Other keys never fall back, so `x.list` does not resolve to
    a locked `x.menu`.

    Args:
        resource_key: Resolved resource key
        is_locked: Step-up lock predicate over canonical keys

    Returns:
        The gating key, or None if nothing is locked
    """
    key = canonicalize_resource_key(resource_key)
    if not key:
        return None
    if is_locked(key):
        return key
    if not key.endswith(".menu"):
        return None

    base = key[: -len(".menu")]
    for suffix in STEPUP_SIBLING_SUFFIXES:
        candidate = canonicalize_resource_key(f"{base}{suffix}")
        if candidate and is_locked(candidate):
            return candidate
    return None
