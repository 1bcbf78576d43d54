from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Labels are limited to bounded sets (outcome, error class, watched kind)
    so that the number of series does not grow with the number of shoots or
    namespaces.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "kubeconfig_controller_reconcile_total",
            "Total finished reconciles by outcome",
            ["outcome"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "kubeconfig_controller_reconcile_errors_total",
            "Total failed reconciles by error class",
            ["error"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "kubeconfig_controller_reconcile_duration_seconds",
            "Seconds spent in a single reconcile",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    admission_denied_total: Counter = field(
        default_factory=lambda: Counter(
            "kubeconfig_controller_admission_denied_total",
            "Total reconciles requeued because the namespace ceiling was reached",
        )
    )
    in_flight_reconciles: Gauge = field(
        default_factory=lambda: Gauge(
            "kubeconfig_controller_in_flight_reconciles",
            "Reconciles currently holding an admission ticket",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "kubeconfig_controller_queue_depth",
            "Requests waiting in the work queue",
        )
    )
    artifact_writes_total: Counter = field(
        default_factory=lambda: Counter(
            "kubeconfig_controller_artifact_writes_total",
            "Total kubeconfig ConfigMap writes by operation",
            ["operation"],
        )
    )
    filtered_events_total: Counter = field(
        default_factory=lambda: Counter(
            "kubeconfig_controller_filtered_events_total",
            "Total watch events suppressed by change-detection predicates",
            ["kind"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "kubeconfig_controller_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "kubeconfig_controller_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "kubeconfig_controller_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "kubeconfig_controller_leader_state",
            "Whether this controller replica is currently leader (1=yes, 0=no)",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "kubeconfig_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
