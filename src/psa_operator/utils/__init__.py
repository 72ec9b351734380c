"""Utility functions for the ProviderServiceAccount Operator."""

from .cache import (
    get_cached_object,
    invalidate_cache,
    make_cache_key,
    set_cached_object,
)
from .conditions import (
    ReconcileOutcome,
    aggregate_conditions,
    derive_condition,
    get_condition,
    project_condition_to_owner,
    set_provider_service_accounts_ready_condition,
    update_condition,
)
from .context import (
    check_deadline,
    get_context_dict,
    get_correlation_id,
    reconcile_context,
    request_options,
)
from .events import emit_event
from .retry import call_k8s, is_conflict, is_rate_limited, retry_on_conflict

__all__ = [
    "ReconcileOutcome",
    "aggregate_conditions",
    "derive_condition",
    "get_condition",
    "project_condition_to_owner",
    "set_provider_service_accounts_ready_condition",
    "update_condition",
    "emit_event",
    "get_cached_object",
    "set_cached_object",
    "invalidate_cache",
    "make_cache_key",
    "call_k8s",
    "is_conflict",
    "is_rate_limited",
    "retry_on_conflict",
    "check_deadline",
    "get_context_dict",
    "get_correlation_id",
    "reconcile_context",
    "request_options",
]
