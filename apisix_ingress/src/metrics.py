from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the ingress controller on ``/metrics``.

    Reconcile metrics carry a ``kind`` label (``ApisixRoute``, ``Ingress``,
    ``Endpoints`` ...) so operators can alert on a single resource kind that
    keeps failing without the noise of the others.
    """

    sync_operations_total: Counter = field(
        default_factory=lambda: Counter(
            "apisix_ingress_sync_operations_total",
            "Total reconcile attempts grouped by resource kind and result",
            ["kind", "result"],
        )
    )
    sync_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "apisix_ingress_sync_latency_seconds",
            "Seconds spent in one reconcile",
            ["kind"],
        )
    )
    apisix_requests_total: Counter = field(
        default_factory=lambda: Counter(
            "apisix_ingress_apisix_requests_total",
            "Total Admin API requests grouped by resource, method and status code",
            ["resource", "method", "code"],
        )
    )
    apisix_request_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "apisix_ingress_apisix_request_latency_seconds",
            "Admin API request latency",
            ["method"],
        )
    )
    cache_sync_total: Counter = field(
        default_factory=lambda: Counter(
            "apisix_ingress_cache_sync_total",
            "Total completed watch cache list operations",
            ["kind"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "apisix_ingress_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "apisix_ingress_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "apisix_ingress_queue_depth",
            "Current number of pending items in a controller queue",
            ["kind"],
        )
    )
    check_cluster_health_total: Counter = field(
        default_factory=lambda: Counter(
            "apisix_ingress_check_cluster_health_total",
            "Total APISIX cluster health checks grouped by result",
            ["name", "result"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "apisix_ingress_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "apisix_ingress_leader_state",
            "Whether this controller replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "apisix_ingress_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "apisix_ingress",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
