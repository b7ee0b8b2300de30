"""
Structured Audit Logging for Mandi Authz.

Step-up checks, verification outcomes, record locks and permission denials
are logged as JSON events, so sensitive admin actions can be traced back to
the check that allowed or blocked them.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, TextIO

from mandi_authz.core.correlation import get_check_id


class AuditEventType(str, Enum):
    """Types of authz audit events."""

    STEPUP_REQUIRED = "stepup.required"
    STEPUP_VERIFIED = "stepup.verified"
    STEPUP_FAILED = "stepup.failed"
    STEPUP_ENROLL_REQUIRED = "stepup.enroll_required"
    AUTHZ_DENIED = "authz.denied"
    RECORD_LOCKED = "record.locked"
    POLICY_LOADED = "policy.loaded"


@dataclass
class AuditEvent:
    """Structured audit event."""

    event_type: AuditEventType
    timestamp: float = field(default_factory=time.time)
    username: str | None = None
    action: str | None = None
    resource: str | None = None
    result: str = "unknown"
    check_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["event_type"] = self.event_type.value
        data["timestamp_iso"] = datetime.fromtimestamp(self.timestamp).isoformat()
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class AuthzAuditor:
    """
    Authz event auditor with structured logging.

    Logs events to:
    1. Python logging (`mandi_authz.audit` by default)
    2. Optional JSONL file

    The current check ID is attached automatically when an event is
    emitted inside a check context.

    Usage:
        auditor = AuthzAuditor(log_path=Path("authz_audit.jsonl"))

        auditor.log_stepup_required(
            username="alice",
            resource="payments_log.list",
            action="VIEW",
        )
    """

    def __init__(
        self,
        *,
        log_path: Path | None = None,
        log_level: int = logging.INFO,
        logger_name: str = "mandi_authz.audit",
    ) -> None:
        """
        Initialize auditor.

        Args:
            log_path: Path to JSONL audit log file (optional)
            log_level: Python logging level
            logger_name: Name for the Python logger
        """
        self._logger = logging.getLogger(logger_name)
        self._logger.setLevel(log_level)
        self._log_path = log_path
        self._log_file: TextIO | None = None

        if log_path:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            self._log_file = open(log_path, "a", encoding="utf-8")

    def close(self) -> None:
        """Close the audit log file."""
        if self._log_file:
            self._log_file.close()
            self._log_file = None

    def _emit(self, event: AuditEvent) -> str:
        if event.check_id is None:
            event.check_id = get_check_id()
        json_line = event.to_json()

        self._logger.log(
            logging.WARNING if event.result in ("denied", "failure", "locked") else logging.INFO,
            json_line,
        )

        if self._log_file:
            self._log_file.write(json_line + "\n")
            self._log_file.flush()

        return json_line

    def log_stepup_required(self, *, username: str, resource: str, action: str) -> str:
        """
        Log that a locked resource sent the caller to OTP verification.

        Returns:
            Event JSON
        """
        return self._emit(
            AuditEvent(
                event_type=AuditEventType.STEPUP_REQUIRED,
                username=username,
                action=action,
                resource=resource,
                result="pending",
            )
        )

    def log_stepup_verified(self, *, username: str, method: str) -> str:
        """
        Log a successful verification.

        Args:
            username: Verifying admin
            method: "otp" or "backup_code"

        Returns:
            Event JSON
        """
        return self._emit(
            AuditEvent(
                event_type=AuditEventType.STEPUP_VERIFIED,
                username=username,
                action=f"verify:{method}",
                result="success",
            )
        )

    def log_stepup_failed(
        self,
        *,
        username: str,
        reason: str,
        resource: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> str:
        """
        Log a failed inquiry or verification.

        Returns:
            Event JSON
        """
        return self._emit(
            AuditEvent(
                event_type=AuditEventType.STEPUP_FAILED,
                username=username,
                resource=resource,
                result="failure",
                details={"reason": reason, **(details or {})},
            )
        )

    def log_enroll_required(self, *, username: str, resource: str, action: str) -> str:
        """Log that the caller was redirected to 2FA enrollment."""
        return self._emit(
            AuditEvent(
                event_type=AuditEventType.STEPUP_ENROLL_REQUIRED,
                username=username,
                action=action,
                resource=resource,
                result="denied",
                details={"reason": "enrollment_mandatory"},
            )
        )

    def log_authz_denied(
        self,
        *,
        username: str | None,
        resource: str,
        action: str,
        reason: str,
    ) -> str:
        """Log a permission denial."""
        return self._emit(
            AuditEvent(
                event_type=AuditEventType.AUTHZ_DENIED,
                username=username,
                action=action,
                resource=resource,
                result="denied",
                details={"reason": reason},
            )
        )

    def log_record_locked(
        self,
        *,
        username: str | None,
        resource: str,
        action: str,
        reason: str,
    ) -> str:
        """Log a mutation blocked by a record lock."""
        return self._emit(
            AuditEvent(
                event_type=AuditEventType.RECORD_LOCKED,
                username=username,
                action=action,
                resource=resource,
                result="locked",
                details={"reason": reason},
            )
        )

    def log_policy_loaded(self, *, username: str, locked_keys: int) -> str:
        """Log a completed step-up policy load."""
        return self._emit(
            AuditEvent(
                event_type=AuditEventType.POLICY_LOADED,
                username=username,
                result="success",
                details={"locked_keys": locked_keys},
            )
        )
