"""Metrics about the operator itself, served by prometheus_client."""

from prometheus_client import Counter, Gauge, Histogram

POLL_ERROR_RESOLVE = 'resolve_pvcs'
POLL_ERROR_QUERY = 'prometheus_query'
POLL_ERROR_PATCH = 'patch_pvc'

SCALE_EVENTS_TOTAL = Counter(
    'volume_autoscaler_scale_events_total',
    'Total number of PVC expansion events',
    ['namespace', 'pvc', 'volumeautoscaler'],
)

PVC_USAGE_PERCENT = Gauge(
    'volume_autoscaler_pvc_usage_percent',
    'Current usage percentage of managed PVCs',
    ['namespace', 'pvc', 'volumeautoscaler'],
)

POLL_ERRORS_TOTAL = Counter(
    'volume_autoscaler_poll_errors_total',
    'Total number of poll errors',
    ['namespace', 'volumeautoscaler', 'reason'],
)

RECONCILE_DURATION_SECONDS = Histogram(
    'volume_autoscaler_reconcile_duration_seconds',
    'Duration of reconcile loops in seconds',
)
