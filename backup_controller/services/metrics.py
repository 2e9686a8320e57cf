"""
Prometheus metrics for backup reconciliation and the out-of-band refresher.

Provides observability into handler results, state transitions and status writes.
"""
from prometheus_client import Counter, Histogram, Gauge

# Handler metrics
handle_total = Counter(
    "arango_backup_handle_total",
    "Total number of work items handled",
    ["result"],
)

handle_duration_seconds = Histogram(
    "arango_backup_handle_duration_seconds",
    "Time spent handling a work item",
    buckets=(0.05, 0.1, 0.5, 1, 5, 10, 30, 60),
)

state_transition_total = Counter(
    "arango_backup_state_transition_total",
    "Total number of backup state transitions",
    ["from_state", "to_state"],
)

finalized_total = Counter(
    "arango_backup_finalized_total",
    "Total number of backups whose finalizer was removed",
)

# Status writes
status_update_retry_total = Counter(
    "arango_backup_status_update_retry_total",
    "Total number of retried status writes",
)

# Refresher metrics
refresh_imported_total = Counter(
    "arango_backup_refresh_imported_total",
    "Total number of out-of-band backups imported",
    ["deployment"],
)

refresh_failed_total = Counter(
    "arango_backup_refresh_failed_total",
    "Total number of refresh ticks aborted by an error",
)

# Locks
deployment_locks = Gauge(
    "arango_backup_deployment_locks",
    "Number of deployment locks held in the registry",
)

# Work queue
queue_depth = Gauge(
    "arango_backup_queue_depth",
    "Number of work items waiting in the queue",
)
