"""
Mandi Authz - Admin Authorization & Step-Up Verification.

Decides what an admin may see and do in the mandi admin console: permission
grants, record-level locks, permitted navigation and step-up (OTP) gating
of sensitive screens.
"""

from mandi_authz.audit import AuditEvent, AuditEventType, AuthzAuditor
from mandi_authz.client import AdminApiClient
from mandi_authz.config import AuthzSettings
from mandi_authz.core import (
    Action,
    AdminIdentity,
    AdminScope,
    ApiError,
    ApiErrorCode,
    AuthContext,
    CorrelatedLogger,
    CorrelationHeaders,
    PermissionEntry,
    Role,
    StepUpSession,
    UiResource,
    canonicalize_action,
    canonicalize_resource_key,
    canonicalize_role,
    check_context,
    get_check_id,
    normalize_permission_payload,
)
from mandi_authz.engines import (
    LockDecision,
    PermissionIndex,
    PermissionResolver,
    RecordLockEvaluator,
    RouteResolver,
    StepUpMode,
    StepUpPolicyCache,
    StepUpSessionController,
    StepUpSource,
    StepUpState,
    can,
    is_record_locked,
    resolve_resource_key,
    resolve_stepup_variant,
)
from mandi_authz.guards import ActionGate, StepUpGuard, StepUpRouteEnforcer
from mandi_authz.session import AuthzSession
from mandi_authz.storage import (
    ClientSessionState,
    InMemorySessionStore,
    RedisSessionStore,
    SessionStore,
)
from mandi_authz.ui_config import AdminUiConfig, AdminUiConfigLoader

__version__ = "0.1.0"

__all__ = [
    # Session
    "AuthzSession",
    "AuthzSettings",
    # Keys and models
    "Action",
    "Role",
    "canonicalize_resource_key",
    "canonicalize_action",
    "canonicalize_role",
    "UiResource",
    "PermissionEntry",
    "AdminScope",
    "AuthContext",
    "AdminIdentity",
    "StepUpSession",
    "normalize_permission_payload",
    # Engines
    "PermissionIndex",
    "PermissionResolver",
    "can",
    "RecordLockEvaluator",
    "LockDecision",
    "is_record_locked",
    "RouteResolver",
    "resolve_resource_key",
    "resolve_stepup_variant",
    "StepUpPolicyCache",
    "StepUpSessionController",
    "StepUpState",
    "StepUpMode",
    "StepUpSource",
    # Gates
    "ActionGate",
    "StepUpGuard",
    "StepUpRouteEnforcer",
    # Config and client
    "AdminUiConfig",
    "AdminUiConfigLoader",
    "AdminApiClient",
    "ApiError",
    "ApiErrorCode",
    # Storage
    "SessionStore",
    "InMemorySessionStore",
    "RedisSessionStore",
    "ClientSessionState",
    # Audit and correlation
    "AuthzAuditor",
    "AuditEvent",
    "AuditEventType",
    "check_context",
    "get_check_id",
    "CorrelationHeaders",
    "CorrelatedLogger",
]
