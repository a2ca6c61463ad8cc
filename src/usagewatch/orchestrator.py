import asyncio
import time
from datetime import datetime, timezone

import structlog

from usagewatch.aggregation import quota_alerts, total_overage_cost
from usagewatch.cache import ResultCache
from usagewatch.errors import DecodingError, NetworkError, UsageFetchError
from usagewatch.metrics import MetricsUpdater
from usagewatch.models import ProviderIdentifier, ProviderResult, ProviderUsage
from usagewatch.provider.base import UsageProvider
from usagewatch.registry import ProviderRegistry

logger = structlog.get_logger()

DEFAULT_FETCH_TIMEOUT_SECONDS = 10.0


class FetchOrchestrator:
    """
    FetchOrchestrator runs one fetch round across every registered
    provider in parallel and merges the outcomes into a single map.

    Each provider gets its own timeout. A successful result is
    written to the cache before its branch completes; a failed or
    timed out fetch is answered from the cache when a snapshot
    exists, otherwise the provider is left out of the round. A
    single provider failing never fails the round.

    Rounds must not overlap; run() guarantees this for the polling
    loop, direct callers of fetch_all() must do the same.
    """

    def __init__(
        self,
        registry: "ProviderRegistry",
        cache: "ResultCache",
        timeout_seconds: "float" = DEFAULT_FETCH_TIMEOUT_SECONDS,
        metrics_updater: "MetricsUpdater | None" = None,
        interval_seconds: "int" = 60,
    ) -> "None":
        self._registry = registry
        self._cache = cache
        self._timeout = timeout_seconds
        self._metrics = metrics_updater
        self._interval = interval_seconds
        self._stop_event: "asyncio.Event" = asyncio.Event()

    async def fetch_all(self) -> "dict[ProviderIdentifier, ProviderUsage]":
        results = await self.fetch_all_results()
        return {identifier: result.usage for identifier, result in results.items()}

    async def fetch_all_results(self) -> "dict[ProviderIdentifier, ProviderResult]":
        providers = self._registry.all()
        # every branch settles before an escaped error is re-raised
        outcomes = await asyncio.gather(
            *(self._fetch_provider(provider) for provider in providers),
            return_exceptions=True,
        )

        results: "dict[ProviderIdentifier, ProviderResult]" = {}
        for provider, outcome in zip(providers, outcomes):
            if isinstance(outcome, BaseException):
                raise outcome
            if outcome is not None:
                results[provider.identifier] = outcome
        return results

    def stop(self) -> "None":
        """
        signals the polling loop to stop after the current round.
        """
        self._stop_event.set()

    async def close(self) -> "None":
        await self._registry.close()

    async def run(self) -> "None":
        """
        runs fetch rounds every interval until stop() is called.
        """
        while not self._stop_event.is_set():
            logger.info("fetch_round_start", providers=len(self._registry))
            results = await self.fetch_all_results()
            self._publish(results)
            logger.info(
                "fetch_round_end",
                fresh=sum(1 for r in results.values() if not r.is_stale),
                cached=sum(1 for r in results.values() if r.is_stale),
                omitted=len(self._registry) - len(results),
            )

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except TimeoutError:
                pass

    def _publish(self, results: "dict[ProviderIdentifier, ProviderResult]") -> "None":
        alerts = quota_alerts(results)
        overage = total_overage_cost(results)
        if self._metrics is None:
            return
        self._metrics.update_results(results)
        self._metrics.set_quota_alerts(alerts, results.keys())
        self._metrics.set_total_overage_cost(overage)

    async def _fetch_provider(self, provider: "UsageProvider") -> "ProviderResult | None":
        identifier = provider.identifier
        started = time.monotonic()
        error: "UsageFetchError | None" = None

        try:
            result = await asyncio.wait_for(provider.fetch(), timeout=self._timeout)
        except TimeoutError:
            error = NetworkError(f"fetch timed out after {self._timeout}s")
            logger.warning(
                "provider_fetch_timeout",
                provider=identifier.value,
                timeout=self._timeout,
            )
        except DecodingError as exc:
            error = exc
            logger.warning(
                "provider_response_drift",
                provider=identifier.value,
                error=str(exc),
            )
        except UsageFetchError as exc:
            error = exc
            logger.warning(
                "provider_fetch_failed",
                provider=identifier.value,
                error=str(exc),
            )
        except Exception as exc:
            logger.exception("provider_fetch_error", provider=identifier.value)
            error = UsageFetchError(repr(exc))

        duration = time.monotonic() - started
        if self._metrics is not None:
            self._metrics.observe_fetch_duration(identifier.value, duration)

        if error is None:
            if result.usage.provider_type != provider.type:
                raise TypeError(
                    f"{identifier.value} returned {result.usage.provider_type.value} "
                    f"usage but is a {provider.type.value} provider"
                )
            self._cache.set(identifier, result.usage)
            if self._metrics is not None:
                self._metrics.set_last_fetch_success(identifier.value, time.time())
            logger.debug(
                "provider_fetched",
                provider=identifier.value,
                usage_percent=round(result.usage.usage_percentage, 1),
                duration=round(duration, 3),
            )
            return result

        if self._metrics is not None:
            self._metrics.inc_fetch_error(identifier.value, error.kind)
        return self._fallback(identifier)

    def _fallback(self, identifier: "ProviderIdentifier") -> "ProviderResult | None":
        cached = self._cache.get_entry(identifier)
        if cached is None:
            logger.info("provider_omitted", provider=identifier.value)
            return None

        timestamp = cached.timestamp
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        age = (datetime.now(timezone.utc) - timestamp).total_seconds()
        logger.info("cache_fallback", provider=identifier.value, age_seconds=int(age))
        if self._metrics is not None:
            self._metrics.inc_cache_fallback(identifier.value)
        return ProviderResult(usage=cached.usage, cached_at=cached.timestamp)
