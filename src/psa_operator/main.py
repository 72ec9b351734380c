"""Main entry point for the ProviderServiceAccount Operator.

Run with ``kopf run -m psa_operator.main --all-namespaces``.
"""

from __future__ import annotations

import logging
from typing import Any

import kopf

from . import health
from . import logging as structured_logging
from . import tracing
from .constants import METRICS_PORT, RECONCILE_TIMEOUT_SECONDS

# Import handlers to register them
from . import handlers  # noqa: F401

logger = logging.getLogger(__name__)


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_: Any) -> None:
    """Configure the operator."""
    # Set up structured JSON logging
    structured_logging.setup_structured_logging()
    tracing.initialize_tracing()

    # Use AnnotationsProgressStorage to avoid conflicts with status updates
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage()
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage()

    settings.posting.level = logging.INFO
    settings.networking.request_timeout = RECONCILE_TIMEOUT_SECONDS
    settings.execution.max_workers = 8
    settings.networking.error_backoffs = [1, 2, 5, 10, 30]

    # Start metrics HTTP server with health check endpoints
    health.start_http_server(METRICS_PORT)
    health.mark_ready()
    logger.info(f"Serving metrics and health checks on port {METRICS_PORT}")


@kopf.on.cleanup()
def shutdown(**_: Any) -> None:
    """Report not-ready while the operator drains."""
    health.mark_not_ready()
