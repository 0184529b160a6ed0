from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class OperatorMetrics:
    """Prometheus metrics exported by the operator on ``/metrics``.

    Per-kind series carry a ``resource_type`` label (``cluster``,
    ``collection``, ``restore``) so a stuck collection backlog can be told
    apart from a cluster rollout storm.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "qdrant_operator_reconcile_total",
            "Reconcile passes finished, by outcome",
            ["resource_type", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "qdrant_operator_reconcile_duration_seconds",
            "Wall-clock duration of a single reconcile pass",
            ["resource_type"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, float("inf")),
        )
    )
    errors_total: Counter = field(
        default_factory=lambda: Counter(
            "qdrant_operator_errors_total",
            "Errors observed while reconciling, by failure site",
            ["type"],
        )
    )
    drift_detected_total: Counter = field(
        default_factory=lambda: Counter(
            "qdrant_operator_drift_detected_total",
            "Reconciles that found the applied spec hash out of date",
            ["resource_type"],
        )
    )
    validation_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "qdrant_operator_validation_errors_total",
            "Specs rejected as InvalidSpec",
            ["resource_type"],
        )
    )
    debounced_total: Counter = field(
        default_factory=lambda: Counter(
            "qdrant_operator_debounced_total",
            "Scheduling requests dropped because the key was already pending",
            ["resource_type"],
        )
    )
    reconcile_queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "qdrant_operator_reconcile_queue_depth",
            "Keys waiting for their debounce timer to fire",
        )
    )
    active_reconciles: Gauge = field(
        default_factory=lambda: Gauge(
            "qdrant_operator_active_reconciles",
            "Reconcile passes currently running",
        )
    )
    retry_queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "qdrant_operator_retry_queue_depth",
            "Keys with an armed retry timer",
        )
    )
    retries_scheduled_total: Counter = field(
        default_factory=lambda: Counter(
            "qdrant_operator_retries_scheduled_total",
            "Retry timers armed after a failed or deferred reconcile",
            ["resource_type"],
        )
    )
    retries_exhausted_total: Counter = field(
        default_factory=lambda: Counter(
            "qdrant_operator_retries_exhausted_total",
            "Keys dropped from the retry queue after the attempt cap",
            ["resource_type"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "qdrant_operator_watch_errors_total",
            "Kubernetes list/watch failures",
            ["resource_type"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "qdrant_operator_watch_reconnects_total",
            "Watch stream reconnects after the initial connection",
            ["resource_type"],
        )
    )
    leader: Gauge = field(
        default_factory=lambda: Gauge(
            "qdrant_operator_leader",
            "Whether this replica currently holds the leader lease (1=yes, 0=no)",
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "qdrant_operator_leader_transitions_total",
            "Leadership state transitions",
            ["transition"],
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "qdrant_operator_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "qdrant_operator",
            "Build information for the operator",
        )
    )


METRICS = OperatorMetrics()
