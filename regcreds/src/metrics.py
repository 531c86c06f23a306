from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class RefresherMetrics:
    """Prometheus metrics exported by the refresher on ``/metrics``.

    Token and secret counters carry a ``provider`` label so operators can
    alert on a single registry going dark while the others keep refreshing.
    """

    token_attempts_total: Counter = field(
        default_factory=lambda: Counter(
            "regcreds_token_attempts_total",
            "Total token generation attempts",
            ["provider", "outcome"],
        )
    )
    token_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "regcreds_token_retries_total",
            "Total token generation retries scheduled after a failed attempt",
            ["provider"],
        )
    )
    providers_skipped_total: Counter = field(
        default_factory=lambda: Counter(
            "regcreds_providers_skipped_total",
            "Total providers skipped for a refresh cycle",
            ["provider", "reason"],
        )
    )
    secrets_reconciled_total: Counter = field(
        default_factory=lambda: Counter(
            "regcreds_secrets_reconciled_total",
            "Total pull secrets written to namespaces",
            ["operation"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "regcreds_reconcile_errors_total",
            "Total namespace reconciliation failures",
        )
    )
    namespace_events_total: Counter = field(
        default_factory=lambda: Counter(
            "regcreds_namespace_events_total",
            "Total namespace events dispatched to the refresh handler",
            ["type"],
        )
    )
    handler_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "regcreds_handler_failures_total",
            "Total namespace events whose refresh cycle failed",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "regcreds_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "regcreds_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    resyncs_total: Counter = field(
        default_factory=lambda: Counter(
            "regcreds_resyncs_total",
            "Total periodic full namespace resyncs",
        )
    )
    refresh_cycle_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "regcreds_refresh_cycle_seconds",
            "Seconds spent in one namespace refresh cycle",
            buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, float("inf")),
        )
    )
    last_successful_refresh: Gauge = field(
        default_factory=lambda: Gauge(
            "regcreds_last_successful_refresh_timestamp_seconds",
            "Unix time of the last refresh cycle that completed without error",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "regcreds",
            "Build information for the refresher",
        )
    )


METRICS = RefresherMetrics()
