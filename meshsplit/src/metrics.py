from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Per-service series use a ``service`` label; object writes are split by
    ``kind`` (``VirtualService`` / ``DestinationRule``) and ``action``.
    """

    reconciles_total: Counter = field(
        default_factory=lambda: Counter(
            "meshsplit_reconciles_total",
            "Total reconcile passes per managed service",
            ["service", "outcome"],
        )
    )
    writes_total: Counter = field(
        default_factory=lambda: Counter(
            "meshsplit_object_writes_total",
            "Total Istio object writes issued by the controller",
            ["kind", "action"],
        )
    )
    errors_total: Counter = field(
        default_factory=lambda: Counter(
            "meshsplit_reconcile_errors_total",
            "Total reconcile passes that failed with a Kubernetes API error",
            ["service"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "meshsplit_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "meshsplit_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "meshsplit_reconcile_duration_seconds",
            "Seconds spent in one reconcile pass for a service",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, float("inf")),
        )
    )
    routes: Gauge = field(
        default_factory=lambda: Gauge(
            "meshsplit_header_routes",
            "Header-matched routes in the desired VirtualService",
            ["service"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "meshsplit",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
