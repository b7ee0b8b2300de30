"""
Record Lock Evaluation for Mandi Authz.

Per-record override that blocks mutation based on ownership and scope,
independent of the caller's action-level grant. Runs inside list rendering,
so it is a handful of field comparisons with no I/O.

Rules, first match wins:
1. No record -> unlocked
2. Protected, GLOBAL-scoped or SYSTEM-owned -> locked unless super
3. ORG-scoped and the record's org differs from the caller's -> locked unless super
4. Otherwise unlocked
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from mandi_authz.core.models import AuthContext, oid_to_string


class LockReason(str, Enum):
    """Why a record is (or would be) locked."""

    NONE = ""
    PROTECTED_OR_GLOBAL = "protected_or_global"
    ORG_MISMATCH = "org_mismatch"


@dataclass(frozen=True)
class LockDecision:
    """Result of a record lock evaluation."""

    locked: bool
    reason: str = LockReason.NONE.value


UNLOCKED = LockDecision(locked=False)


def _field(record: Any, name: str) -> Any:
    """Read a field from a mapping or an attribute object."""
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def _upper(value: Any) -> str:
    return str(value or "").strip().upper()


class RecordLockEvaluator:
    """
    Decides whether a record is locked against mutation for a caller.

    Stateless; one instance can be shared across a session.

    Usage:
        evaluator = RecordLockEvaluator()
        decision = evaluator.is_locked(row, auth_context)
        if decision.locked:
            # hide edit/deactivate buttons for this row
    """

    def is_locked(self, record: Any, auth: AuthContext | None) -> LockDecision:
        """
        Evaluate the lock rules for one record.

        Args:
            record: Mapping or object exposing org_scope, org_id, owner_type,
                owner_org_id, is_protected (all optional)
            auth: Caller context; None is treated as a non-super caller
                without an org

        Returns:
            LockDecision
        """
        if record is None:
            return UNLOCKED

        is_super = bool(auth and auth.is_super)

        is_protected = _upper(_field(record, "is_protected")) == "Y"
        org_scope = _upper(_field(record, "org_scope"))
        owner_type = _upper(_field(record, "owner_type"))

        if is_protected or org_scope == "GLOBAL" or owner_type == "SYSTEM":
            return LockDecision(
                locked=not is_super,
                reason=LockReason.PROTECTED_OR_GLOBAL.value,
            )

        if org_scope == "ORG":
            record_org = oid_to_string(_field(record, "org_id") or _field(record, "owner_org_id"))
            caller_org = auth.org_id if auth else None
            same_org = bool(record_org and caller_org and record_org == caller_org)
            if not same_org and not is_super:
                return LockDecision(locked=True, reason=LockReason.ORG_MISMATCH.value)

        return UNLOCKED


_default_evaluator = RecordLockEvaluator()


def is_record_locked(record: Any, auth: AuthContext | None) -> LockDecision:
    """Functional form of RecordLockEvaluator.is_locked()."""
    return _default_evaluator.is_locked(record, auth)
