"""Rate limiting and retry helpers for Kubernetes API calls."""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any, Callable, TypeVar

from kubernetes.client.exceptions import ApiException

from .. import metrics
from ..constants import CONFLICT_RETRIES
from .context import request_options

_T = TypeVar("_T")

logger = logging.getLogger(__name__)

# Rate limit configuration
_K8S_RATE_LIMIT_PER_SECOND = float(os.getenv("K8S_RATE_LIMIT_PER_SECOND", "20.0"))
_RATE_LIMIT_RETRIES = 3

_k8s_last_call_time: float = 0.0
_k8s_lock = threading.Lock()


def _throttle() -> None:
    """Space API calls at least 1/rate seconds apart across all workers."""
    global _k8s_last_call_time
    min_interval = 1.0 / _K8S_RATE_LIMIT_PER_SECOND
    with _k8s_lock:
        time_since_last_call = time.time() - _k8s_last_call_time
        if time_since_last_call < min_interval:
            time.sleep(min_interval - time_since_last_call)
        _k8s_last_call_time = time.time()


def is_rate_limited(e: Exception) -> bool:
    """Whether the API server asked us to slow down."""
    if not isinstance(e, ApiException):
        return False
    return e.status == 429 or (e.status == 503 and "rate limit" in str(e).lower())


def call_k8s(func: Callable[..., _T], *args: Any, **kwargs: Any) -> _T:
    """Call a kubernetes client method with throttling and the pass deadline.

    Rate-limit responses are retried with exponential backoff (1s, 2s, 4s);
    every other error propagates.
    """
    kwargs = {**request_options(), **kwargs}
    operation = getattr(func, "__name__", "call")
    for attempt in range(_RATE_LIMIT_RETRIES + 1):
        _throttle()
        start_time = time.time()
        try:
            result = func(*args, **kwargs)
            metrics.api_call_total.labels(api_type="k8s", operation=operation, result="success").inc()
            return result
        except ApiException as e:
            metrics.api_call_total.labels(api_type="k8s", operation=operation, result="error").inc()
            if not is_rate_limited(e) or attempt == _RATE_LIMIT_RETRIES:
                raise
            metrics.rate_limit_hits_total.labels(api_type="k8s").inc()
            time.sleep(2 ** attempt)
        finally:
            duration = time.time() - start_time
            metrics.api_call_duration_seconds.labels(api_type="k8s", operation=operation).observe(duration)
    raise AssertionError("unreachable")


def is_conflict(e: Exception) -> bool:
    """Whether the write lost an optimistic-concurrency race."""
    return isinstance(e, ApiException) and e.status == 409


def retry_on_conflict(fn: Callable[[], _T], attempts: int = CONFLICT_RETRIES) -> _T:
    """Run a read-modify-write function until it stops conflicting.

    ``fn`` must re-read the object on every call so each attempt writes on top
    of the latest resourceVersion.

    Raises:
        ApiException: The last 409 once ``attempts`` are used up, or any other error
    """
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except ApiException as e:
            if not is_conflict(e) or attempt == attempts:
                raise
            logger.debug(f"Conflict on attempt {attempt}/{attempts}, retrying with latest version")
    raise AssertionError("unreachable")
