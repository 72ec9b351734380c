"""Utilities for managing Kubernetes conditions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import urllib3
from kubernetes.client.exceptions import ApiException

from ..constants import (
    COND_PROVIDER_SERVICE_ACCOUNTS_READY,
    REASON_INVALID_REFERENCE,
    REASON_PROVISIONED,
    REASON_TOKEN_PENDING,
    SEVERITY_ERROR,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    TOKEN_PENDING_WARNING_AFTER,
)
from .errors import ReconcileError, TokenPendingError, sanitize_exception
from .retry import call_k8s, retry_on_conflict

logger = logging.getLogger(__name__)


@dataclass
class ReconcileOutcome:
    """How far one reconcile pass got, and why it stopped."""

    resolved: bool = False
    rbac_ready: bool = False
    token_ready: bool = False
    mirrored: bool = False
    error: ReconcileError | None = None

    @property
    def ready(self) -> bool:
        return (
            self.error is None
            and self.resolved
            and self.rbac_ready
            and self.token_ready
            and self.mirrored
        )


def derive_condition(outcome: ReconcileOutcome, retry: int = 0) -> dict[str, str]:
    """Map the outcome of a pass to the aggregated readiness condition.

    Args:
        outcome: Result of the pipeline
        retry: Number of consecutive retries of the current handler

    Returns:
        Dict with status, reason, severity and message
    """
    if outcome.ready:
        return {"status": "True", "reason": REASON_PROVISIONED, "severity": "", "message": ""}

    error = outcome.error
    if error is None:
        # A step reported not-ready without an error; treat as still in progress
        return {"status": "False", "reason": "Provisioning", "severity": SEVERITY_INFO, "message": ""}

    if error.reason == REASON_INVALID_REFERENCE:
        return {
            "status": "False",
            "reason": REASON_INVALID_REFERENCE,
            "severity": SEVERITY_ERROR,
            "message": error.message,
        }

    if isinstance(error, TokenPendingError):
        severity = SEVERITY_INFO if retry < TOKEN_PENDING_WARNING_AFTER else SEVERITY_WARNING
        return {
            "status": "False",
            "reason": REASON_TOKEN_PENDING,
            "severity": severity,
            "message": error.message,
        }

    return {
        "status": "False",
        "reason": error.reason,
        "severity": SEVERITY_WARNING if error.retryable else SEVERITY_ERROR,
        "message": sanitize_exception(error),
    }


def update_condition(
    conditions: list[dict[str, Any]],
    condition_type: str,
    status: str,
    reason: str,
    message: str,
    observed_generation: int | None = None,
    severity: str = "",
) -> list[dict[str, Any]]:
    """Update or add a condition to the conditions list.

    Args:
        conditions: List of existing conditions
        condition_type: Type of condition
        status: Status of condition ("True", "False", "Unknown")
        reason: Reason for the condition
        message: Human-readable message
        observed_generation: Generation when condition was observed
        severity: Error, Warning or Info; empty for True conditions

    Returns:
        Updated list of conditions
    """
    now = datetime.now(timezone.utc).isoformat()
    conditions = [dict(cond) for cond in conditions]

    # Find existing condition
    existing_idx = None
    for idx, cond in enumerate(conditions):
        if cond.get("type") == condition_type:
            existing_idx = idx
            break

    new_condition = {
        "type": condition_type,
        "status": status,
        "reason": reason,
        "severity": severity,
        "message": message,
        "lastTransitionTime": now,
    }

    if observed_generation is not None:
        new_condition["observedGeneration"] = observed_generation

    if existing_idx is not None:
        existing = conditions[existing_idx]
        # Only update lastTransitionTime if status changed
        if existing.get("status") == status:
            new_condition["lastTransitionTime"] = existing.get("lastTransitionTime", now)
        conditions[existing_idx] = new_condition
        # Drop duplicates a previous writer may have appended
        conditions = [
            cond for idx, cond in enumerate(conditions)
            if idx == existing_idx or cond.get("type") != condition_type
        ]
    else:
        conditions.append(new_condition)

    return conditions


def get_condition(conditions: list[dict[str, Any]] | None, condition_type: str) -> dict[str, Any] | None:
    """Return the condition of the given type, if present."""
    for cond in conditions or []:
        if cond.get("type") == condition_type:
            return cond
    return None


def set_provider_service_accounts_ready_condition(
    conditions: list[dict[str, Any]],
    outcome: ReconcileOutcome,
    retry: int = 0,
    observed_generation: int | None = None,
) -> list[dict[str, Any]]:
    """Set the ProviderServiceAccountsReady condition from a pass outcome."""
    derived = derive_condition(outcome, retry)
    return update_condition(
        conditions,
        COND_PROVIDER_SERVICE_ACCOUNTS_READY,
        derived["status"],
        derived["reason"],
        derived["message"],
        observed_generation,
        severity=derived["severity"],
    )


def _same_condition(a: dict[str, Any] | None, b: dict[str, Any] | None) -> bool:
    if a is None or b is None:
        return False
    keys = ("status", "reason", "severity", "message")
    return all(a.get(key, "") == b.get(key, "") for key in keys)


def _condition_rank(condition: dict[str, Any]) -> int:
    """Order conditions from healthy (0) to worst."""
    status = condition.get("status")
    if status == "True":
        return 0
    if status != "False":
        return 1
    return {SEVERITY_INFO: 2, SEVERITY_WARNING: 3, SEVERITY_ERROR: 4}.get(condition.get("severity", ""), 3)


def aggregate_conditions(conditions: dict[str, dict[str, Any]]) -> dict[str, Any] | None:
    """Worst-of summary of the readiness conditions of several PSAs.

    Args:
        conditions: ProviderServiceAccountsReady condition per PSA name

    Returns:
        status, reason, severity and message of the summary, or None when empty.
        The message names every PSA that is not ready.
    """
    if not conditions:
        return None

    failing = sorted(
        ((name, cond) for name, cond in conditions.items() if _condition_rank(cond) > 0),
        key=lambda item: (-_condition_rank(item[1]), item[0]),
    )
    if not failing:
        return {"status": "True", "reason": REASON_PROVISIONED, "severity": "", "message": ""}

    worst = failing[0][1]
    message = "; ".join(
        f"{name}: {cond['message']}" if cond.get("message") else name for name, cond in failing
    )
    return {
        "status": worst.get("status", "Unknown"),
        "reason": worst.get("reason", ""),
        "severity": worst.get("severity", ""),
        "message": message,
    }


def project_condition_to_owner(
    custom_api: Any,
    owner: dict[str, Any],
    plural: str,
    condition: dict[str, Any],
) -> bool:
    """Write a readiness condition onto the owning cluster resource.

    One-way projection: the owner is never read back into the PSA. The owner is
    re-read before writing and the patch carries its resourceVersion, so only
    this condition changes and conditions of other controllers survive.
    Failures are logged and reported as False.

    Args:
        custom_api: CustomObjectsApi of the management cluster
        owner: Owning cluster object as returned by the API
        plural: Plural resource name of the owner
        condition: Aggregated condition to write

    Returns:
        True if the owner was patched or already carried the condition
    """
    owner_meta = owner.get("metadata", {})
    group, _, version = owner.get("apiVersion", "").rpartition("/")
    location = {
        "group": group,
        "version": version,
        "namespace": owner_meta.get("namespace"),
        "plural": plural,
        "name": owner_meta.get("name"),
    }

    def apply() -> bool:
        current = call_k8s(custom_api.get_namespaced_custom_object, **location)
        owner_conditions = (current.get("status") or {}).get("conditions") or []
        existing = get_condition(owner_conditions, COND_PROVIDER_SERVICE_ACCOUNTS_READY)
        if _same_condition(existing, condition):
            return False

        projected = update_condition(
            owner_conditions,
            COND_PROVIDER_SERVICE_ACCOUNTS_READY,
            condition["status"],
            condition["reason"],
            condition.get("message", ""),
            severity=condition.get("severity", ""),
        )
        call_k8s(
            custom_api.patch_namespaced_custom_object_status,
            **location,
            body={
                "metadata": {"resourceVersion": current.get("metadata", {}).get("resourceVersion")},
                "status": {"conditions": projected},
            },
        )
        return True

    try:
        retry_on_conflict(apply)
    except (ApiException, urllib3.exceptions.HTTPError) as e:
        logger.warning(
            f"Failed to project {COND_PROVIDER_SERVICE_ACCOUNTS_READY} onto "
            f"{owner.get('kind')} {owner_meta.get('name')}: {sanitize_exception(e)}"
        )
        return False
    return True
