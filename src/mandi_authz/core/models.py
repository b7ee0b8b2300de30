"""
Data Models for Mandi Authz.

Pydantic models for everything the engine reads from the admin API:
UI resources, permission grants, administrative scope and step-up sessions.

Payload shapes from the server are loose (`allowed_actions` vs `actions` vs
`permissions`, strings vs objects). They are normalized here, once, at the
boundary, so nothing downstream has to guess.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Iterable

from pydantic import BaseModel, Field, ValidationError, field_validator

from mandi_authz.core.keys import (
    SUPER_ROLE,
    canonicalize_actions,
    canonicalize_resource_key,
    canonicalize_role,
)

logger = logging.getLogger(__name__)


def oid_to_string(value: Any) -> str | None:
    """
    Coerce an identifier to a plain string.

    Handles Mongo-style {"$oid": ...} and {"oid": ...} wrappers.

    Args:
        value: Raw identifier

    Returns:
        String form, or None for empty values
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        inner = value.get("$oid") or value.get("oid")
        return str(inner) if inner else None
    return str(value)


def _yes_no(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return True
    return str(value).strip().upper() in {"Y", "YES", "TRUE", "1"}


class UiResource(BaseModel):
    """One addressable UI surface (menu, table, button ...)."""

    model_config = {"frozen": True}

    resource_key: str = Field(..., description="Resource key as sent by the server")
    ui_type: str = Field(default="PAGE", description="MENU, TABLE, PAGE, BUTTON ...")
    route: str | None = Field(default=None, description="Navigation route, may contain :params")
    parent_resource_key: str | None = Field(default=None)
    allowed_actions: tuple[str, ...] = Field(default_factory=tuple)
    is_active: bool = Field(default=True)
    order: int | None = Field(default=None)
    action_code: str | None = Field(default=None, description="Action a BUTTON performs")

    @field_validator("ui_type", mode="before")
    @classmethod
    def _upper_ui_type(cls, value: Any) -> str:
        return str(value or "PAGE").strip().upper()

    @field_validator("allowed_actions", mode="before")
    @classmethod
    def _fold_actions(cls, value: Any) -> tuple[str, ...]:
        return canonicalize_actions(value)

    @field_validator("is_active", mode="before")
    @classmethod
    def _active_flag(cls, value: Any) -> bool:
        return _yes_no(value)

    @property
    def canonical_key(self) -> str:
        """Canonical form of resource_key."""
        return canonicalize_resource_key(self.resource_key)


class PermissionEntry(BaseModel):
    """One row of the caller's effective grant for a resource."""

    model_config = {"frozen": True}

    resource_key: str
    actions: tuple[str, ...] = Field(default_factory=tuple)

    @field_validator("resource_key", mode="before")
    @classmethod
    def _canonical_key(cls, value: Any) -> str:
        return canonicalize_resource_key(value)

    @field_validator("actions", mode="before")
    @classmethod
    def _fold_actions(cls, value: Any) -> tuple[str, ...]:
        return canonicalize_actions(value)

    @classmethod
    def from_raw(cls, row: dict[str, Any]) -> PermissionEntry:
        """
        Build an entry from any of the server's row shapes.

        Args:
            row: Raw permission or resource row

        Returns:
            Normalized PermissionEntry (key may be empty)
        """
        key = row.get("resource_key") or row.get("resource") or ""
        actions = row.get("allowed_actions")
        if actions is None:
            actions = row.get("actions")
        if actions is None:
            actions = row.get("permissions")
        return cls(resource_key=key, actions=actions or ())


def normalize_permission_payload(rows: Iterable[Any] | None) -> list[PermissionEntry]:
    """
    Normalize a raw permission payload into PermissionEntry rows.

    Malformed rows and rows without a usable key are dropped, never raised.

    Args:
        rows: Raw rows (dicts, PermissionEntry or UiResource instances)

    Returns:
        Canonical entries in input order
    """
    entries: list[PermissionEntry] = []
    for row in rows or ():
        if isinstance(row, PermissionEntry):
            entry = row
        elif isinstance(row, UiResource):
            entry = PermissionEntry(resource_key=row.resource_key, actions=row.allowed_actions)
        elif isinstance(row, dict):
            try:
                entry = PermissionEntry.from_raw(row)
            except ValidationError as exc:
                logger.debug("Dropping malformed permission row: %s", exc)
                continue
        else:
            logger.debug("Dropping permission row of type %s", type(row).__name__)
            continue

        if not entry.resource_key:
            continue
        entries.append(entry)
    return entries


class AdminScope(BaseModel):
    """Administrative boundary of the caller."""

    model_config = {"frozen": True}

    org_code: str | None = None
    org_id: str | None = None
    mandi_codes: tuple[str, ...] = Field(default_factory=tuple)
    org_level: str | None = None
    mandi_level: str | None = None
    role_scope: str | None = None

    @field_validator("org_id", mode="before")
    @classmethod
    def _oid(cls, value: Any) -> str | None:
        return oid_to_string(value)

    @field_validator("mandi_codes", mode="before")
    @classmethod
    def _mandis(cls, value: Any) -> tuple[str, ...]:
        if not isinstance(value, (list, tuple)):
            return ()
        return tuple(str(v).strip() for v in value if isinstance(v, str) and v.strip())

    @classmethod
    def from_raw(cls, raw: Any) -> AdminScope | None:
        """Parse a scope payload; non-mapping or malformed input yields None."""
        if not isinstance(raw, dict):
            return None
        try:
            return cls.model_validate(raw)
        except ValidationError as exc:
            logger.debug("Ignoring malformed scope: %s", exc)
            return None


class AuthContext(BaseModel):
    """The caller as seen by record-level checks."""

    model_config = {"frozen": True}

    role: str = ""
    org_id: str | None = None
    org_code: str | None = None
    super_flag: bool = Field(default=False, description="Explicit super marker from the caller")

    @field_validator("role", mode="before")
    @classmethod
    def _canonical_role(cls, value: Any) -> str:
        return canonicalize_role(value)

    @field_validator("org_id", mode="before")
    @classmethod
    def _oid(cls, value: Any) -> str | None:
        return oid_to_string(value)

    @property
    def is_super(self) -> bool:
        """Super callers are never record-locked."""
        return self.super_flag or self.role == SUPER_ROLE

    @classmethod
    def from_scope(cls, role: str | None, scope: AdminScope | None) -> AuthContext:
        """Derive the auth context from the loaded role and scope."""
        return cls(
            role=role or "",
            org_id=scope.org_id if scope else None,
            org_code=scope.org_code if scope else None,
        )


class AdminIdentity(BaseModel):
    """Who is asking. Sent with every API request."""

    model_config = {"frozen": True}

    username: str
    language: str = "en"
    country: str = "IN"
    bearer_token: str | None = None


class ResourceRegistryEntry(BaseModel):
    """Curated permission taxonomy row from the resource registry."""

    model_config = {"frozen": True}

    resource_key: str
    allowed_actions: tuple[str, ...] = Field(default_factory=tuple)
    aliases: tuple[str, ...] = Field(default_factory=tuple)
    is_active: bool = True

    @field_validator("resource_key", mode="before")
    @classmethod
    def _canonical_key(cls, value: Any) -> str:
        return canonicalize_resource_key(value)

    @field_validator("allowed_actions", mode="before")
    @classmethod
    def _fold_actions(cls, value: Any) -> tuple[str, ...]:
        return canonicalize_actions(value)

    @field_validator("aliases", mode="before")
    @classmethod
    def _canonical_aliases(cls, value: Any) -> tuple[str, ...]:
        if not isinstance(value, (list, tuple)):
            return ()
        keys = (canonicalize_resource_key(v) for v in value)
        return tuple(k for k in keys if k)

    @field_validator("is_active", mode="before")
    @classmethod
    def _active_flag(cls, value: Any) -> bool:
        return _yes_no(value)


class StepUpSession(BaseModel):
    """A verified step-up session token and when it was issued."""

    model_config = {"frozen": True}

    token: str
    issued_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
