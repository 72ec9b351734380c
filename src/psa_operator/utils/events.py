"""Utilities for emitting Kubernetes events."""

from __future__ import annotations

from typing import Any

import kopf

from ..constants import (
    EVENT_REASON_PROVISIONED,
    EVENT_REASON_RECONCILE_FAILED,
    EVENT_REASON_RECONCILE_STARTED,
    EVENT_REASON_ROLE_BINDING_CREATED,
    EVENT_REASON_ROLE_BINDING_UPDATED,
    EVENT_REASON_ROLE_CREATED,
    EVENT_REASON_ROLE_UPDATED,
    EVENT_REASON_SERVICE_ACCOUNT_CREATED,
    EVENT_REASON_TARGET_CLEANUP_FAILED,
    EVENT_REASON_TARGET_SECRET_CREATED,
    EVENT_REASON_TARGET_SECRET_UPDATED,
    EVENT_REASON_TOKEN_PENDING,
)


def emit_event(
    meta: dict[str, Any],
    reason: str,
    message: str,
    type_: str = "Normal",
) -> None:
    """Emit a Kubernetes event.

    Args:
        meta: Resource metadata
        reason: Event reason
        message: Event message
        type_: Event type (Normal or Warning)
    """
    kopf.event(
        meta,
        reason=reason,
        message=message,
        type=type_,
    )


def emit_reconcile_started(meta: dict[str, Any]) -> None:
    """Emit reconcile started event."""
    emit_event(meta, EVENT_REASON_RECONCILE_STARTED, "Reconciliation started")


def emit_reconcile_failed(meta: dict[str, Any], message: str) -> None:
    """Emit reconcile failed event."""
    emit_event(meta, EVENT_REASON_RECONCILE_FAILED, message, type_="Warning")


def emit_provisioned(meta: dict[str, Any], target: str) -> None:
    emit_event(meta, EVENT_REASON_PROVISIONED, f"Token mirrored to {target}")


def emit_service_account_created(meta: dict[str, Any], name: str) -> None:
    emit_event(meta, EVENT_REASON_SERVICE_ACCOUNT_CREATED, f"ServiceAccount {name} created")


def emit_role_created(meta: dict[str, Any], name: str) -> None:
    emit_event(meta, EVENT_REASON_ROLE_CREATED, f"Role {name} created")


def emit_role_updated(meta: dict[str, Any], name: str) -> None:
    emit_event(meta, EVENT_REASON_ROLE_UPDATED, f"Role {name} rules updated")


def emit_role_binding_created(meta: dict[str, Any], name: str) -> None:
    emit_event(meta, EVENT_REASON_ROLE_BINDING_CREATED, f"RoleBinding {name} created")


def emit_role_binding_updated(meta: dict[str, Any], name: str) -> None:
    emit_event(meta, EVENT_REASON_ROLE_BINDING_UPDATED, f"RoleBinding {name} updated")


def emit_token_pending(meta: dict[str, Any], message: str) -> None:
    emit_event(meta, EVENT_REASON_TOKEN_PENDING, message)


def emit_target_secret_created(meta: dict[str, Any], target: str) -> None:
    emit_event(meta, EVENT_REASON_TARGET_SECRET_CREATED, f"Target secret {target} created")


def emit_target_secret_updated(meta: dict[str, Any], target: str) -> None:
    emit_event(meta, EVENT_REASON_TARGET_SECRET_UPDATED, f"Target secret {target} updated")


def emit_target_cleanup_failed(meta: dict[str, Any], message: str) -> None:
    """Emit a warning when best-effort target cleanup did not complete."""
    emit_event(meta, EVENT_REASON_TARGET_CLEANUP_FAILED, message, type_="Warning")
