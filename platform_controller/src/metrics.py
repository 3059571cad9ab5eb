from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Work-queue series carry a ``queue`` label so each controller's backlog and
    retry rate can be alerted on independently.
    """

    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "platform_workqueue_depth",
            "Current number of keys waiting in the work queue",
            ["queue"],
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "platform_workqueue_adds_total",
            "Total keys added to the work queue",
            ["queue"],
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "platform_workqueue_retries_total",
            "Total keys requeued with rate limiting after a failed sync",
            ["queue"],
        )
    )
    work_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "platform_workqueue_work_duration_seconds",
            "Seconds spent running the sync function for one key",
            ["queue"],
            buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1, 5, 10, 30, float("inf")),
        )
    )
    sync_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "platform_sync_errors_total",
            "Total failed sync attempts",
            ["queue"],
        )
    )
    worker_crashes_total: Counter = field(
        default_factory=lambda: Counter(
            "platform_worker_crashes_total",
            "Total worker loops restarted after an unexpected fault",
            ["queue"],
        )
    )
    pvc_created_total: Counter = field(
        default_factory=lambda: Counter(
            "platform_pvc_created_total",
            "Total persistent volume claims provisioned from storage plans",
        )
    )
    pvc_failed_total: Counter = field(
        default_factory=lambda: Counter(
            "platform_pvc_failed_total",
            "Total persistent volume claim provisioning failures",
        )
    )
    releases_created_total: Counter = field(
        default_factory=lambda: Counter(
            "platform_releases_created_total",
            "Total Release objects created by build triggers",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "platform_informer_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "platform_informer_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    crd_provisioned_total: Counter = field(
        default_factory=lambda: Counter(
            "platform_crd_provisioned_total",
            "Custom resource definition provisioning outcomes",
            ["crd", "outcome"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "platform_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
