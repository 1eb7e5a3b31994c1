from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the synchronizer on ``/metrics``.

    Target counters are labelled by load balancer so operators can see which
    CLB instance is churning; error counters are labelled by the failing
    operation (``register``, ``deregister``, ``resolve_deployment``, ...).
    """

    registered_targets_total: Counter = field(
        default_factory=lambda: Counter(
            "clb_sync_registered_targets_total",
            "Total pod IPs submitted for registration on a load balancer",
            ["load_balancer"],
        )
    )
    deregistered_targets_total: Counter = field(
        default_factory=lambda: Counter(
            "clb_sync_deregistered_targets_total",
            "Total backends submitted for deregistration from a load balancer",
            ["load_balancer"],
        )
    )
    errors_total: Counter = field(
        default_factory=lambda: Counter(
            "clb_sync_errors_total",
            "Total failed reconciliation operations",
            ["operation"],
        )
    )
    events_total: Counter = field(
        default_factory=lambda: Counter(
            "clb_sync_events_total",
            "Total pod watch events received",
            ["event_type"],
        )
    )
    skipped_events_total: Counter = field(
        default_factory=lambda: Counter(
            "clb_sync_skipped_events_total",
            "Total pod watch events skipped before reconciliation",
            ["reason"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "clb_sync_watch_errors_total",
            "Total Kubernetes pod watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "clb_sync_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    config_refreshes_total: Counter = field(
        default_factory=lambda: Counter(
            "clb_sync_config_refreshes_total",
            "Total config cache refresh attempts by outcome",
            ["result"],
        )
    )
    config_targets: Gauge = field(
        default_factory=lambda: Gauge(
            "clb_sync_config_targets",
            "ConfigTargets matched against live listeners in the last refresh",
        )
    )
    config_backends: Gauge = field(
        default_factory=lambda: Gauge(
            "clb_sync_config_backends",
            "Backend groups with registered targets in the last refresh",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "clb_sync",
            "Build information for the synchronizer",
        )
    )


METRICS = ControllerMetrics()
