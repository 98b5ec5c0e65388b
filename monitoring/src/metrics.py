from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class OperatorMetrics:
    """Prometheus metrics exported by the monitoring reconciler on ``/metrics``.

    Per-resource counters carry a ``kind`` label so drift on a single managed
    resource (for example someone editing the ServiceMonitor by hand) is
    visible on its own.
    """

    reconcile_passes_total: Counter = field(
        default_factory=lambda: Counter(
            "hco_monitoring_reconcile_passes_total",
            "Total monitoring reconcile passes by outcome",
            ["result"],
        )
    )
    resource_actions_total: Counter = field(
        default_factory=lambda: Counter(
            "hco_monitoring_resource_actions_total",
            "Total writes to managed monitoring resources",
            ["kind", "action"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "hco_monitoring_reconcile_errors_total",
            "Total store errors that aborted a reconcile pass",
            ["kind"],
        )
    )
    status_updates_total: Counter = field(
        default_factory=lambda: Counter(
            "hco_monitoring_status_updates_total",
            "Total related-objects status writes on the HyperConverged resource",
        )
    )
    last_success_timestamp_seconds: Gauge = field(
        default_factory=lambda: Gauge(
            "hco_monitoring_last_success_timestamp_seconds",
            "Unix time of the last reconcile pass that completed without error",
        )
    )
    feature_gate_wait_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "hco_monitoring_feature_gate_wait_seconds",
            "Seconds spent waiting for a feature gate change to be observed",
            ["condition"],
            buckets=(0.5, 1, 5, 10, 30, 60, 120, 300, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "hco_monitoring",
            "Build information for the monitoring reconciler",
        )
    )


METRICS = OperatorMetrics()
