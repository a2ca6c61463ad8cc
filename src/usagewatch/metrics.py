from typing import Iterable, Mapping

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from usagewatch.aggregation import QuotaAlert
from usagewatch.models import ProviderIdentifier, ProviderResult


def create_usage_metrics(
    registry: "CollectorRegistry" = REGISTRY,
) -> "dict[str, Gauge]":
    """
    creates the per provider usage gauge families, all labeled by
    provider identifier.
     - usage_percent: usage percentage, may exceed 100.
     - remaining_quota / entitlement: quota based providers only.
     - cost_usd: pay-as-you-go providers reporting a cost.
     - within_limit: 1 while the provider is within its limit.
     - stale: 1 when the value was served from cache.
    """
    return {
        "usage_percent": Gauge(
            "usagewatch_usage_percent",
            "Usage percentage per provider",
            ["provider"],
            registry=registry,
        ),
        "remaining_quota": Gauge(
            "usagewatch_remaining_quota",
            "Remaining quota units per quota based provider",
            ["provider"],
            registry=registry,
        ),
        "entitlement": Gauge(
            "usagewatch_entitlement",
            "Total quota entitlement per quota based provider",
            ["provider"],
            registry=registry,
        ),
        "cost_usd": Gauge(
            "usagewatch_cost_usd",
            "Reported cost in USD per pay-as-you-go provider",
            ["provider"],
            registry=registry,
        ),
        "within_limit": Gauge(
            "usagewatch_within_limit",
            "1 if the provider is within its limit",
            ["provider"],
            registry=registry,
        ),
        "stale": Gauge(
            "usagewatch_stale",
            "1 if the provider value was served from cache",
            ["provider"],
            registry=registry,
        ),
    }


class MetricsUpdater:
    """
    applies fetch round outcomes to Prometheus metrics.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._registry: "CollectorRegistry" = registry
        self._usage: "dict[str, Gauge]" = create_usage_metrics(registry)
        self._fetch_duration: "Histogram" = Histogram(
            "usagewatch_fetch_duration_seconds",
            "Duration of provider fetches",
            ["provider"],
            registry=registry,
        )
        self._fetch_errors: "Counter" = Counter(
            "usagewatch_fetch_errors_total",
            "Total number of failed fetches by provider and error kind",
            ["provider", "kind"],
            registry=registry,
        )
        self._cache_fallbacks: "Counter" = Counter(
            "usagewatch_cache_fallbacks_total",
            "Total number of fetches answered from cache",
            ["provider"],
            registry=registry,
        )
        self._last_fetch_success: "Gauge" = Gauge(
            "usagewatch_last_fetch_success_timestamp_seconds",
            "Unix timestamp of last successful fetch per provider",
            ["provider"],
            registry=registry,
        )
        self._quota_alert: "Gauge" = Gauge(
            "usagewatch_quota_alert",
            "1 if the provider has less than the alert threshold of its quota left",
            ["provider"],
            registry=registry,
        )
        self._total_overage_cost: "Gauge" = Gauge(
            "usagewatch_total_overage_cost_usd",
            "Sum of reported pay-as-you-go cost across providers",
            registry=registry,
        )

    def update_results(
        self,
        results: "Mapping[ProviderIdentifier, ProviderResult]",
    ) -> "None":
        """
        replaces the usage gauges with the round's results. Providers
        omitted from the round disappear from the gauges.
        """
        for gauge in self._usage.values():
            gauge.clear()

        for identifier, result in results.items():
            usage = result.usage
            provider = identifier.value
            self._usage["usage_percent"].labels(provider=provider).set(
                usage.usage_percentage
            )
            self._usage["within_limit"].labels(provider=provider).set(
                1 if usage.is_within_limit else 0
            )
            self._usage["stale"].labels(provider=provider).set(
                1 if result.is_stale else 0
            )
            if usage.remaining_quota is not None:
                self._usage["remaining_quota"].labels(provider=provider).set(
                    usage.remaining_quota
                )
            if usage.total_entitlement is not None:
                self._usage["entitlement"].labels(provider=provider).set(
                    usage.total_entitlement
                )
            if usage.cost is not None:
                self._usage["cost_usd"].labels(provider=provider).set(usage.cost)

    def set_quota_alerts(
        self,
        alerts: "Iterable[QuotaAlert]",
        identifiers: "Iterable[ProviderIdentifier]",
    ) -> "None":
        alerting = {alert.identifier for alert in alerts}
        self._quota_alert.clear()
        for identifier in identifiers:
            self._quota_alert.labels(provider=identifier.value).set(
                1 if identifier in alerting else 0
            )

    def set_total_overage_cost(self, amount: "float") -> "None":
        self._total_overage_cost.set(amount)

    def observe_fetch_duration(
        self, provider: "str", duration_seconds: "float"
    ) -> "None":
        self._fetch_duration.labels(provider=provider).observe(duration_seconds)

    def inc_fetch_error(self, provider: "str", kind: "str") -> "None":
        self._fetch_errors.labels(provider=provider, kind=kind).inc()

    def inc_cache_fallback(self, provider: "str") -> "None":
        self._cache_fallbacks.labels(provider=provider).inc()

    def set_last_fetch_success(self, provider: "str", timestamp: "float") -> "None":
        self._last_fetch_success.labels(provider=provider).set(timestamp)
