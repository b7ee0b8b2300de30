"""Permission, record lock, routing and step-up engines."""

from mandi_authz.engines.permissions import (
    CrudPermissions,
    PermissionDecision,
    PermissionIndex,
    PermissionResolver,
    build_index,
    can,
)
from mandi_authz.engines.record_lock import (
    LockDecision,
    LockReason,
    RecordLockEvaluator,
    is_record_locked,
)
from mandi_authz.engines.resource_tree import (
    ResourceNode,
    build_resource_tree,
    compute_allowed_sidebar,
    filter_resources_by_access,
    required_action_for_ui_resource,
)
from mandi_authz.engines.routes import (
    RouteResolver,
    matches_route_pattern,
    normalize_path,
    resolve_resource_key,
    resolve_stepup_variant,
)
from mandi_authz.engines.stepup import (
    LoggingNotifier,
    Notifier,
    NotifyLevel,
    StepUpApi,
    StepUpCheck,
    StepUpInquiry,
    StepUpMode,
    StepUpPrompt,
    StepUpSessionController,
    StepUpSource,
    StepUpState,
    StepUpVerdict,
    StepUpVerification,
)
from mandi_authz.engines.stepup_policy import (
    PolicyMatchType,
    StepUpPolicy,
    StepUpPolicyCache,
    derive_locked_keys,
)

__all__ = [
    # Permissions
    "PermissionIndex",
    "PermissionResolver",
    "PermissionDecision",
    "CrudPermissions",
    "build_index",
    "can",
    # Record locks
    "RecordLockEvaluator",
    "LockDecision",
    "LockReason",
    "is_record_locked",
    # Resource tree
    "ResourceNode",
    "build_resource_tree",
    "compute_allowed_sidebar",
    "filter_resources_by_access",
    "required_action_for_ui_resource",
    # Routes
    "RouteResolver",
    "normalize_path",
    "matches_route_pattern",
    "resolve_resource_key",
    "resolve_stepup_variant",
    # Step-up policy
    "StepUpPolicy",
    "StepUpPolicyCache",
    "PolicyMatchType",
    "derive_locked_keys",
    # Step-up flow
    "StepUpSessionController",
    "StepUpState",
    "StepUpMode",
    "StepUpSource",
    "StepUpInquiry",
    "StepUpVerdict",
    "StepUpVerification",
    "StepUpCheck",
    "StepUpPrompt",
    "StepUpApi",
    "Notifier",
    "NotifyLevel",
    "LoggingNotifier",
]
