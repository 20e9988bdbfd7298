from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class SidecarMetrics:
    """Prometheus metrics exported by the sidecar on ``/metrics``.

    Cycle and reload counters carry a ``result`` label so operators can alert
    on render failures separately from Asterisk-side reload failures.
    """

    cycles_total: Counter = field(
        default_factory=lambda: Counter(
            "asterisk_config_cycles_total",
            "Total render cycles by result",
            ["result"],
        )
    )
    cycle_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "asterisk_config_cycle_duration_seconds",
            "Seconds spent in one full render cycle",
            buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, float("inf")),
        )
    )
    files_rendered: Gauge = field(
        default_factory=lambda: Gauge(
            "asterisk_config_files_rendered",
            "Number of files written by the last successful render pass",
        )
    )
    watches_armed: Gauge = field(
        default_factory=lambda: Gauge(
            "asterisk_config_watches_armed",
            "Number of resource watches currently armed",
        )
    )
    watch_events_total: Counter = field(
        default_factory=lambda: Counter(
            "asterisk_config_watch_events_total",
            "Total watch wake-ups by resource kind and outcome",
            ["kind", "outcome"],
        )
    )
    module_reloads_total: Counter = field(
        default_factory=lambda: Counter(
            "asterisk_config_module_reloads_total",
            "Total Asterisk module reload calls by module and result",
            ["module", "result"],
        )
    )
    asterisk_ready: Gauge = field(
        default_factory=lambda: Gauge(
            "asterisk_config_asterisk_ready",
            "Whether Asterisk has reported system readiness (1=yes, 0=no)",
        )
    )
    short_deaths: Gauge = field(
        default_factory=lambda: Gauge(
            "asterisk_config_short_deaths",
            "Consecutive service runs that ended before the minimum runtime",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "asterisk_config",
            "Build information for the sidecar",
        )
    )


METRICS = SidecarMetrics()
