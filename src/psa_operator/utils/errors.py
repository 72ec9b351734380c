"""Reconcile error taxonomy and error sanitization utilities."""

from __future__ import annotations

import re
from typing import Any

from kubernetes.client.exceptions import ApiException

from ..constants import (
    REASON_DEADLINE_EXCEEDED,
    REASON_INVALID_REFERENCE,
    REASON_INVALID_RULES,
    REASON_INVALID_TARGET,
    REASON_TARGET_CLUSTER_UNAVAILABLE,
    REASON_TOKEN_PENDING,
    REASON_TOKEN_READ_FAILED,
    REASON_UNAUTHORIZED,
)

# Patterns that might expose credentials
SENSITIVE_PATTERNS = [
    r"(Bearer)\s+[A-Za-z0-9\-_\.=/+]+",
    r"(certificate-authority-data|client-certificate-data|client-key-data)[:=\s]+[A-Za-z0-9/+=]+",
    r"(eyJ)[A-Za-z0-9\-_]{10,}\.[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]*",
]

# Fields to redact completely
SENSITIVE_FIELDS = {
    "token",
    "password",
    "secret_key",
    "credentials",
    "kubeconfig",
}


class ReconcileError(Exception):
    """A failed reconcile step.

    Attributes:
        reason: Condition reason naming the failing step
        message: Human-readable description, safe to surface in conditions
    """

    retryable = True
    reason = "ReconcileFailed"

    def __init__(self, message: str = "", reason: str | None = None):
        super().__init__(message)
        self.message = message
        if reason is not None:
            self.reason = reason


class RetryableError(ReconcileError):
    """Transient failure; the pass is requeued with a short delay."""


class TerminalError(ReconcileError):
    """Failure that will not resolve until the resource or permissions change."""

    retryable = False


class TokenPendingError(RetryableError):
    """The ServiceAccount token has not been issued yet."""

    reason = REASON_TOKEN_PENDING


class TargetClusterUnavailableError(RetryableError):
    """The owning cluster exists but its API is not reachable yet."""

    reason = REASON_TARGET_CLUSTER_UNAVAILABLE


class ProvisioningError(RetryableError):
    """A create/update against one of the clusters failed."""


class TokenReadError(RetryableError):
    """Reading the token secret failed for a reason other than absence."""

    reason = REASON_TOKEN_READ_FAILED


class MirrorError(RetryableError):
    """Writing to the target cluster failed."""


class DeadlineExceededError(RetryableError):
    """The reconcile pass ran past its deadline."""

    reason = REASON_DEADLINE_EXCEEDED


class InvalidReferenceError(TerminalError):
    """spec.ref is empty or points at a cluster that does not exist."""

    reason = REASON_INVALID_REFERENCE


class InvalidRulesError(TerminalError):
    """spec.rules cannot be turned into a valid Role."""

    reason = REASON_INVALID_RULES


class InvalidTargetError(TerminalError):
    """targetNamespace or targetSecretName is missing."""

    reason = REASON_INVALID_TARGET


class AuthorizationError(TerminalError):
    """The operator lacks permission on one of the clusters."""

    reason = REASON_UNAUTHORIZED


def classify_api_exception(
    error: ApiException,
    reason: str,
    retryable_cls: type[RetryableError] = ProvisioningError,
) -> ReconcileError:
    """Map an API exception to the reconcile error taxonomy.

    Args:
        error: Exception raised by the kubernetes client
        reason: Condition reason of the step that failed
        retryable_cls: Error class used for transient failures

    Returns:
        AuthorizationError for 401/403, ``retryable_cls`` otherwise
    """
    detail = sanitize_exception(error)
    if error.status in (401, 403):
        return AuthorizationError(f"{reason}: {detail}")
    return retryable_cls(detail, reason=reason)


def sanitize_error_message(message: str) -> str:
    """Sanitize error message to remove credential values.

    Args:
        message: Original error message

    Returns:
        Sanitized error message with sensitive data redacted
    """
    sanitized = message

    for pattern in SENSITIVE_PATTERNS:
        sanitized = re.sub(pattern, r"\1 [REDACTED]", sanitized, flags=re.IGNORECASE)

    for field in SENSITIVE_FIELDS:
        # Only "field: value" / "field=value" pairs, so prose mentioning a token survives
        sanitized = re.sub(
            rf"\b{field}\b\s*[:=]\s*([^\s,;\)]+)",
            rf"{field}: [REDACTED]",
            sanitized,
            flags=re.IGNORECASE,
        )

    return sanitized


def sanitize_exception(error: Exception) -> str:
    """Sanitize exception message.

    ``ApiException`` renders as a multi-line dump including response headers,
    so only its status, reason and body are kept.
    """
    if isinstance(error, ApiException):
        error_msg = f"({error.status}) {error.reason}"
        if error.body:
            error_msg = f"{error_msg}: {error.body}"
    else:
        error_msg = str(error)
    return sanitize_error_message(error_msg)


def sanitize_dict(data: dict[str, Any], sensitive_keys: set[str] | None = None) -> dict[str, Any]:
    """Sanitize dictionary by redacting sensitive fields.

    Args:
        data: Dictionary to sanitize
        sensitive_keys: Additional keys to redact (merged with SENSITIVE_FIELDS)

    Returns:
        Sanitized dictionary with sensitive values redacted
    """
    if sensitive_keys is None:
        sensitive_keys = set()

    all_sensitive = SENSITIVE_FIELDS | sensitive_keys
    sanitized = {}

    for key, value in data.items():
        key_lower = key.lower()
        if any(sensitive in key_lower for sensitive in all_sensitive):
            sanitized[key] = "[REDACTED]"
        elif isinstance(value, dict):
            sanitized[key] = sanitize_dict(value, sensitive_keys)
        elif isinstance(value, str):
            sanitized[key] = sanitize_error_message(value)
        else:
            sanitized[key] = value

    return sanitized
