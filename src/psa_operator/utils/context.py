"""Per-reconcile context: correlation IDs and pass deadlines."""

from __future__ import annotations

import contextvars
import time
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

from .errors import DeadlineExceededError

# Context variable for storing correlation ID
correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)

# Monotonic time after which the current reconcile pass is stale
deadline: contextvars.ContextVar[float | None] = contextvars.ContextVar(
    "deadline", default=None
)


def get_correlation_id() -> str | None:
    """Get the correlation ID from the current context.

    Returns:
        Correlation ID if set, None otherwise
    """
    return correlation_id.get()


@contextmanager
def reconcile_context(corr_id: str | None = None, timeout: float | None = None) -> Iterator[str]:
    """Bind a correlation ID and an optional deadline for one reconcile pass.

    Args:
        corr_id: Correlation ID to use (generated when omitted)
        timeout: Seconds the pass may take before it is aborted

    Yields:
        The correlation ID
    """
    corr_id = corr_id or uuid.uuid4().hex[:16]
    corr_token = correlation_id.set(corr_id)
    deadline_token = deadline.set(time.monotonic() + timeout if timeout else None)
    try:
        yield corr_id
    finally:
        deadline.reset(deadline_token)
        correlation_id.reset(corr_token)


def remaining_time() -> float | None:
    """Seconds left before the current deadline, or None when unbounded."""
    expires_at = deadline.get()
    if expires_at is None:
        return None
    return expires_at - time.monotonic()


def check_deadline(step: str) -> None:
    """Abort the pass when its deadline has passed.

    Raises:
        DeadlineExceededError: If the deadline expired before ``step``
    """
    left = remaining_time()
    if left is not None and left <= 0:
        raise DeadlineExceededError(f"reconcile deadline exceeded before {step}")


def request_options() -> dict[str, Any]:
    """Keyword arguments bounding a single API call by the pass deadline."""
    left = remaining_time()
    if left is None:
        return {}
    return {"_request_timeout": max(left, 1.0)}


def get_context_dict(additional: dict[str, Any] | None = None) -> dict[str, Any]:
    """Get a dictionary of context values.

    Args:
        additional: Additional key-value pairs to include

    Returns:
        Dictionary with context values including correlation_id
    """
    ctx = {}

    corr_id = get_correlation_id()
    if corr_id:
        ctx["correlation_id"] = corr_id

    if additional:
        ctx.update(additional)

    return ctx
