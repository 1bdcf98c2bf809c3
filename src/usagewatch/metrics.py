from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from usagewatch.models import ThresholdAlert, UsageSnapshot, UsageType


class MetricsUpdater:
    """
    applies UsageSnapshot data and fetch outcomes to Prometheus
    gauges and counters.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._usage_percent: "Gauge" = Gauge(
            "usagewatch_usage_percent",
            "Percentage of the quota window used",
            ["window"],
            registry=registry,
        )
        self._usage_used: "Gauge" = Gauge(
            "usagewatch_usage_used_estimated",
            "Estimated messages used in the quota window",
            ["window"],
            registry=registry,
        )
        self._usage_reset: "Gauge" = Gauge(
            "usagewatch_usage_reset_timestamp_seconds",
            "Unix timestamp at which the quota window resets",
            ["window"],
            registry=registry,
        )
        self._snapshot_stale: "Gauge" = Gauge(
            "usagewatch_snapshot_stale",
            "1 if the last published snapshot is a stale cache republish",
            registry=registry,
        )
        self._fetch_duration: "Histogram" = Histogram(
            "usagewatch_fetch_duration_seconds",
            "Duration of usage fetch cycles, retries included",
            registry=registry,
        )
        self._fetch_errors: "Counter" = Counter(
            "usagewatch_fetch_errors_total",
            "Total number of failed fetch attempts by kind",
            ["kind"],
            registry=registry,
        )
        self._last_fetch_success: "Gauge" = Gauge(
            "usagewatch_last_fetch_success_timestamp_seconds",
            "Unix timestamp of the last successful fetch",
            registry=registry,
        )
        self._alerts_fired: "Counter" = Counter(
            "usagewatch_alerts_fired_total",
            "Total number of threshold alerts fired",
            ["window", "percentage"],
            registry=registry,
        )

    def update_usage(self, snapshot: "UsageSnapshot") -> "None":
        """
        updates the per-window gauges from the snapshot.
        """
        for usage_type in UsageType:
            window = snapshot.window(usage_type)
            self._usage_percent.labels(window=usage_type.value).set(window.percent_used)
            self._usage_used.labels(window=usage_type.value).set(window.used)
            self._usage_reset.labels(window=usage_type.value).set(
                window.reset_at.timestamp()
            )
        self._snapshot_stale.set(1 if snapshot.is_stale else 0)

    def observe_fetch_duration(self, duration_seconds: "float") -> "None":
        self._fetch_duration.observe(duration_seconds)

    def inc_fetch_error(self, kind: "str") -> "None":
        self._fetch_errors.labels(kind=kind).inc()

    def set_last_fetch_success(self, timestamp: "float") -> "None":
        self._last_fetch_success.set(timestamp)

    def inc_alert(self, alert: "ThresholdAlert") -> "None":
        self._alerts_fired.labels(
            window=alert.usage_type.value,
            percentage=f"{alert.threshold.percentage:g}",
        ).inc()
