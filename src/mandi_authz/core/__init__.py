"""Canonical keys, data models and check correlation."""

from mandi_authz.core.correlation import (
    CorrelatedLogger,
    CorrelationHeaders,
    check_context,
    generate_check_id,
    get_check_context,
    get_check_id,
)
from mandi_authz.core.errors import ApiError, ApiErrorCode
from mandi_authz.core.keys import (
    Action,
    Role,
    canonicalize_action,
    canonicalize_actions,
    canonicalize_resource_key,
    canonicalize_role,
)
from mandi_authz.core.models import (
    AdminIdentity,
    AdminScope,
    AuthContext,
    PermissionEntry,
    ResourceRegistryEntry,
    StepUpSession,
    UiResource,
    normalize_permission_payload,
)

__all__ = [
    # Keys
    "Action",
    "Role",
    "canonicalize_resource_key",
    "canonicalize_action",
    "canonicalize_actions",
    "canonicalize_role",
    # Models
    "UiResource",
    "PermissionEntry",
    "AdminScope",
    "AuthContext",
    "AdminIdentity",
    "ResourceRegistryEntry",
    "StepUpSession",
    "normalize_permission_payload",
    # Errors
    "ApiError",
    "ApiErrorCode",
    # Correlation
    "check_context",
    "get_check_id",
    "get_check_context",
    "generate_check_id",
    "CorrelationHeaders",
    "CorrelatedLogger",
]
