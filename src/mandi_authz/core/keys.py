"""
Key Canonicalization for Mandi Authz.

Normalizes resource keys, actions and roles into one stable vocabulary.
Every lookup in the engine goes through these functions first.

Fail-closed: an empty canonical value means "no resource" and is always denied.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Final


class Action(str, Enum):
    """Canonical UI actions. The set is open; unknown actions pass through."""

    VIEW = "VIEW"
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DEACTIVATE = "DEACTIVATE"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    REQUEST_MORE_INFO = "REQUEST_MORE_INFO"
    RESET_PASSWORD = "RESET_PASSWORD"
    UPLOAD = "UPLOAD"


class Role(str, Enum):
    """Canonical admin roles."""

    SUPER_ADMIN = "SUPER_ADMIN"
    ORG_ADMIN = "ORG_ADMIN"
    ORG_VIEWER = "ORG_VIEWER"
    MANDI_ADMIN = "MANDI_ADMIN"
    MANDI_MANAGER = "MANDI_MANAGER"
    AUCTIONEER = "AUCTIONEER"
    GATE_OPERATOR = "GATE_OPERATOR"
    WEIGHBRIDGE_OPERATOR = "WEIGHBRIDGE_OPERATOR"
    AUDITOR = "AUDITOR"
    VIEWER = "VIEWER"


SUPER_ROLE: Final[str] = Role.SUPER_ADMIN.value
WILDCARD_ACTION: Final[str] = "*"

ACTION_SYNONYMS: dict[str, str] = {
    "ADD": Action.CREATE.value,
    "INSERT": Action.CREATE.value,
    "EDIT": Action.UPDATE.value,
    "DELETE": Action.DEACTIVATE.value,
    "DISABLE": Action.DEACTIVATE.value,
    "REMOVE": Action.DEACTIVATE.value,
    "TOGGLE": Action.DEACTIVATE.value,
    "DETAIL": Action.VIEW.value,
    "VIEW_DETAIL": Action.VIEW.value,
    "ALL": WILDCARD_ACTION,
}

# Legacy spellings of the leading key segment. Targets must never be aliases.
RESOURCE_KEY_ALIASES: dict[str, str] = {
    "org_mandi": "org_mandi_mappings",
    "org_mandi_mapping": "org_mandi_mappings",
    "organizations": "organisations",
}

ROLE_ALIASES: dict[str, str] = {
    "SUPERADMIN": Role.SUPER_ADMIN.value,
    "ADMIN": Role.SUPER_ADMIN.value,
    "ORGADMIN": Role.ORG_ADMIN.value,
    "ORGVIEWER": Role.ORG_VIEWER.value,
    "MANDIADMIN": Role.MANDI_ADMIN.value,
    "MANDIMANAGER": Role.MANDI_MANAGER.value,
    "GATEOPERATOR": Role.GATE_OPERATOR.value,
    "WEIGHBRIDGEOPERATOR": Role.WEIGHBRIDGE_OPERATOR.value,
}

_WHITESPACE = re.compile(r"\s+")
_UNDERSCORES = re.compile(r"_{2,}")
_TOKEN_SEPARATORS = re.compile(r"[\s\-]+")


def _fold_token(raw: Any) -> str:
    """Trim, upper-case and fold whitespace/hyphen runs to underscores."""
    if raw is None:
        return ""
    text = str(raw).strip().upper()
    if not text:
        return ""
    text = _TOKEN_SEPARATORS.sub("_", text)
    return _UNDERSCORES.sub("_", text).strip("_")


def canonicalize_resource_key(raw: Any) -> str:
    """
    Canonicalize a resource key.

    Segment case is preserved. Whitespace is removed, repeated underscores
    collapse, empty segments are dropped and the leading segment passes
    through the alias table.

    Args:
        raw: Any value; None and empty strings are accepted

    Returns:
        Canonical key, or "" if there is nothing to address
    """
    if raw is None:
        return ""
    text = _WHITESPACE.sub("", str(raw))
    if not text:
        return ""
    text = _UNDERSCORES.sub("_", text)

    segments = [segment for segment in text.split(".") if segment]
    if not segments:
        return ""

    head = segments[0]
    segments[0] = RESOURCE_KEY_ALIASES.get(head, head)
    return ".".join(segments)


def canonicalize_action(raw: Any) -> str:
    """
    Canonicalize an action string and fold its synonyms.

    Args:
        raw: Action value (e.g. "edit", "view-detail", Action.UPDATE)

    Returns:
        Canonical action, "*" for wildcards, or "" for empty input
    """
    if isinstance(raw, Action):
        return raw.value
    if raw is not None and str(raw).strip() == WILDCARD_ACTION:
        return WILDCARD_ACTION
    token = _fold_token(raw)
    if not token:
        return ""
    return ACTION_SYNONYMS.get(token, token)


def canonicalize_role(raw: Any) -> str:
    """
    Canonicalize a role slug ("super admin", "OrgAdmin", "ADMIN" ...).

    Args:
        raw: Role value from the server or storage

    Returns:
        Canonical role slug or "" if absent
    """
    if isinstance(raw, Role):
        return raw.value
    token = _fold_token(raw)
    if not token:
        return ""
    return ROLE_ALIASES.get(token, ROLE_ALIASES.get(token.replace("_", ""), token))


def canonicalize_actions(raw: Any) -> tuple[str, ...]:
    """
    Canonicalize an action list in any of the shapes the server sends.

    Accepts a list of strings, a list of {"action": ...} objects or a
    comma-separated string. Anything else yields an empty tuple.

    Args:
        raw: Raw actions value

    Returns:
        Folded, de-duplicated actions in first-seen order
    """
    if not raw:
        return ()
    if isinstance(raw, str):
        items: list[Any] = [part.strip() for part in raw.split(",")]
    elif isinstance(raw, (list, tuple, set, frozenset)):
        items = list(raw)
    else:
        return ()

    seen: dict[str, None] = {}
    for item in items:
        if isinstance(item, dict):
            item = item.get("action")
        action = canonicalize_action(item)
        if action:
            seen.setdefault(action, None)
    return tuple(seen)
