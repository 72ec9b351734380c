"""Prometheus metrics for the ProviderServiceAccount Operator."""

from prometheus_client import Counter, Histogram

# Reconciliation metrics
reconcile_total = Counter(
    "psa_operator_reconcile_total",
    "Total number of reconciliations",
    ["kind", "result"],
)

reconcile_duration_seconds = Histogram(
    "psa_operator_reconcile_duration_seconds",
    "Duration of reconciliations in seconds",
    ["kind"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0],
)

error_total = Counter(
    "psa_operator_error_total",
    "Total number of reconcile errors",
    ["kind", "error_type"],
)

resource_status_total = Counter(
    "psa_operator_resource_status_total",
    "Resource readiness observed at the end of a reconciliation",
    ["kind", "status"],
)

# Pipeline metrics
token_pending_total = Counter(
    "psa_operator_token_pending_total",
    "Reconciliations that found the ServiceAccount token not yet issued",
    ["namespace"],
)

target_secret_sync_total = Counter(
    "psa_operator_target_secret_sync_total",
    "Writes of mirrored token secrets into target clusters",
    ["operation", "result"],
)

# Configuration drift detection metrics
drift_detected_total = Counter(
    "psa_operator_drift_detected_total",
    "Total number of configuration drift detections",
    ["kind", "resource_type"],
)

# API call metrics
api_call_total = Counter(
    "psa_operator_api_call_total",
    "Total number of API calls",
    ["api_type", "operation", "result"],
)

api_call_duration_seconds = Histogram(
    "psa_operator_api_call_duration_seconds",
    "Duration of API calls in seconds",
    ["api_type", "operation"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0],
)

rate_limit_hits_total = Counter(
    "psa_operator_rate_limit_hits_total",
    "Total number of rate limit hits",
    ["api_type"],
)
