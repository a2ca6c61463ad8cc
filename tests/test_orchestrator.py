import asyncio
import time
from datetime import datetime, timezone

import pytest
from prometheus_client import CollectorRegistry

from usagewatch.cache import ResultCache
from usagewatch.errors import AuthenticationFailedError, DecodingError, NetworkError
from usagewatch.metrics import MetricsUpdater
from usagewatch.models import (
    PayAsYouGo,
    ProviderIdentifier,
    ProviderResult,
    ProviderType,
    ProviderUsage,
    QuotaBased,
)
from usagewatch.orchestrator import FetchOrchestrator
from usagewatch.registry import ProviderRegistry
from usagewatch.store import MemoryStore


class MockProvider:
    """
    A mock provider that returns a pre-configured usage value.
    """

    def __init__(
        self,
        identifier: "ProviderIdentifier",
        usage: "ProviderUsage",
        provider_type: "ProviderType | None" = None,
    ) -> "None":
        self._identifier = identifier
        self._usage = usage
        self._type = provider_type or usage.provider_type
        self.calls = 0

    @property
    def identifier(self) -> "ProviderIdentifier":
        return self._identifier

    @property
    def type(self) -> "ProviderType":
        return self._type

    async def fetch(self) -> "ProviderResult":
        self.calls += 1
        return ProviderResult(usage=self._usage)

    async def close(self) -> "None":
        pass


class FailingProvider:
    """
    A mock provider that always raises on fetch.
    """

    def __init__(
        self,
        identifier: "ProviderIdentifier",
        error: "Exception",
        provider_type: "ProviderType" = ProviderType.QUOTA_BASED,
    ) -> "None":
        self._identifier = identifier
        self._error = error
        self._type = provider_type

    @property
    def identifier(self) -> "ProviderIdentifier":
        return self._identifier

    @property
    def type(self) -> "ProviderType":
        return self._type

    async def fetch(self) -> "ProviderResult":
        raise self._error

    async def close(self) -> "None":
        pass


class SlowProvider(MockProvider):
    """
    A mock provider that answers after a short delay.
    """

    def __init__(
        self,
        identifier: "ProviderIdentifier",
        usage: "ProviderUsage",
        delay: "float",
    ) -> "None":
        super().__init__(identifier, usage)
        self._delay = delay
        self.finished = False

    async def fetch(self) -> "ProviderResult":
        await asyncio.sleep(self._delay)
        result = await super().fetch()
        self.finished = True
        return result


class HangingProvider:
    """
    A mock provider whose fetch never completes on its own.
    """

    def __init__(self, identifier: "ProviderIdentifier") -> "None":
        self._identifier = identifier
        self.cancelled = False

    @property
    def identifier(self) -> "ProviderIdentifier":
        return self._identifier

    @property
    def type(self) -> "ProviderType":
        return ProviderType.QUOTA_BASED

    async def fetch(self) -> "ProviderResult":
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        raise AssertionError("unreachable")

    async def close(self) -> "None":
        pass


class TestFetchAll:
    @pytest.mark.asyncio
    async def test_fresh_failed_and_cached_providers(self) -> "None":
        cache = ResultCache()
        stamp = datetime(2026, 1, 1, tzinfo=timezone.utc)
        cache.set(ProviderIdentifier.CODEX, QuotaBased(70, 100), timestamp=stamp)

        registry = ProviderRegistry(
            [
                MockProvider(ProviderIdentifier.CLAUDE, QuotaBased(91, 100)),
                FailingProvider(
                    ProviderIdentifier.GEMINI_CLI,
                    AuthenticationFailedError("expired"),
                ),
                FailingProvider(ProviderIdentifier.CODEX, NetworkError("offline")),
            ]
        )
        orchestrator = FetchOrchestrator(registry, cache)

        results = await orchestrator.fetch_all()

        assert results == {
            ProviderIdentifier.CLAUDE: QuotaBased(91, 100),
            ProviderIdentifier.CODEX: QuotaBased(70, 100),
        }

    @pytest.mark.asyncio
    async def test_cached_results_are_marked_stale(self) -> "None":
        cache = ResultCache()
        stamp = datetime(2026, 1, 1, tzinfo=timezone.utc)
        cache.set(ProviderIdentifier.CODEX, QuotaBased(70, 100), timestamp=stamp)
        registry = ProviderRegistry(
            [
                MockProvider(ProviderIdentifier.CLAUDE, QuotaBased(91, 100)),
                FailingProvider(ProviderIdentifier.CODEX, DecodingError("drift")),
            ]
        )

        results = await FetchOrchestrator(registry, cache).fetch_all_results()

        assert results[ProviderIdentifier.CLAUDE].is_stale is False
        assert results[ProviderIdentifier.CODEX].cached_at == stamp

    @pytest.mark.asyncio
    async def test_success_is_written_to_cache(self) -> "None":
        cache = ResultCache()
        registry = ProviderRegistry(
            [MockProvider(ProviderIdentifier.OPEN_ROUTER, PayAsYouGo(25.0))]
        )

        await FetchOrchestrator(registry, cache).fetch_all()

        assert cache.get(ProviderIdentifier.OPEN_ROUTER) == PayAsYouGo(25.0)

    @pytest.mark.asyncio
    async def test_failure_does_not_overwrite_cache(self) -> "None":
        cache = ResultCache()
        cache.set(ProviderIdentifier.CLAUDE, QuotaBased(50, 100))
        registry = ProviderRegistry(
            [FailingProvider(ProviderIdentifier.CLAUDE, NetworkError("offline"))]
        )

        await FetchOrchestrator(registry, cache).fetch_all()

        assert cache.get(ProviderIdentifier.CLAUDE) == QuotaBased(50, 100)

    @pytest.mark.asyncio
    async def test_unexpected_exception_falls_back(self) -> "None":
        cache = ResultCache()
        registry = ProviderRegistry(
            [FailingProvider(ProviderIdentifier.CLAUDE, RuntimeError("boom"))]
        )

        # should not raise
        assert await FetchOrchestrator(registry, cache).fetch_all() == {}

    @pytest.mark.asyncio
    async def test_empty_registry(self) -> "None":
        orchestrator = FetchOrchestrator(ProviderRegistry(), ResultCache())
        assert await orchestrator.fetch_all() == {}

    @pytest.mark.asyncio
    async def test_timeout_falls_back_to_cache(self) -> "None":
        cache = ResultCache()
        cache.set(ProviderIdentifier.CLAUDE, QuotaBased(40, 100))
        hanging = HangingProvider(ProviderIdentifier.CLAUDE)
        registry = ProviderRegistry(
            [
                hanging,
                MockProvider(ProviderIdentifier.CODEX, QuotaBased(80, 100)),
            ]
        )
        orchestrator = FetchOrchestrator(registry, cache, timeout_seconds=0.05)

        started = time.monotonic()
        results = await orchestrator.fetch_all()

        assert time.monotonic() - started < 5
        assert hanging.cancelled is True
        assert results == {
            ProviderIdentifier.CLAUDE: QuotaBased(40, 100),
            ProviderIdentifier.CODEX: QuotaBased(80, 100),
        }

    @pytest.mark.asyncio
    async def test_timeout_without_cache_omits_provider(self) -> "None":
        registry = ProviderRegistry([HangingProvider(ProviderIdentifier.ANTIGRAVITY)])
        orchestrator = FetchOrchestrator(registry, ResultCache(), timeout_seconds=0.05)
        assert await orchestrator.fetch_all() == {}

    @pytest.mark.asyncio
    async def test_variant_mismatch_is_a_programming_error(self) -> "None":
        registry = ProviderRegistry(
            [
                MockProvider(
                    ProviderIdentifier.CLAUDE,
                    PayAsYouGo(10.0),
                    provider_type=ProviderType.QUOTA_BASED,
                )
            ]
        )
        cache = ResultCache()
        with pytest.raises(TypeError):
            await FetchOrchestrator(registry, cache).fetch_all()
        assert cache.get(ProviderIdentifier.CLAUDE) is None

    @pytest.mark.asyncio
    async def test_variant_mismatch_waits_for_other_providers(self) -> "None":
        slow = SlowProvider(
            ProviderIdentifier.OPEN_ROUTER, PayAsYouGo(30.0), delay=0.05
        )
        registry = ProviderRegistry(
            [
                MockProvider(
                    ProviderIdentifier.CLAUDE,
                    PayAsYouGo(10.0),
                    provider_type=ProviderType.QUOTA_BASED,
                ),
                slow,
            ]
        )
        cache = ResultCache()

        with pytest.raises(TypeError):
            await FetchOrchestrator(registry, cache).fetch_all()

        assert slow.finished
        assert cache.get(ProviderIdentifier.OPEN_ROUTER) == PayAsYouGo(30.0)

    @pytest.mark.asyncio
    async def test_unreadable_cached_numbers_are_a_miss(self) -> "None":
        store = MemoryStore()
        for identifier, remaining in (
            (ProviderIdentifier.CODEX, "NaN"),
            (ProviderIdentifier.CLAUDE, "Infinity"),
            (ProviderIdentifier.ZAI_CODING_PLAN, '"1e400"'),
        ):
            store.set(
                ResultCache.make_key(identifier),
                (
                    '{"usage": {"type": "quotaBased", "remaining": %s, '
                    '"entitlement": 100}, "timestamp": "2026-01-01T00:00:00+00:00"}'
                    % remaining
                ).encode(),
            )
        registry = ProviderRegistry(
            [
                FailingProvider(identifier, NetworkError("down"))
                for identifier in (
                    ProviderIdentifier.CODEX,
                    ProviderIdentifier.CLAUDE,
                    ProviderIdentifier.ZAI_CODING_PLAN,
                )
            ]
        )

        assert await FetchOrchestrator(registry, ResultCache(store)).fetch_all() == {}


class TestFetchMetrics:
    @pytest.mark.asyncio
    async def test_records_errors_fallbacks_and_success(
        self,
        registry: "CollectorRegistry",
    ) -> "None":
        updater = MetricsUpdater(registry=registry)
        cache = ResultCache()
        cache.set(ProviderIdentifier.CODEX, QuotaBased(70, 100))
        providers = ProviderRegistry(
            [
                MockProvider(ProviderIdentifier.CLAUDE, QuotaBased(10, 100)),
                FailingProvider(ProviderIdentifier.CODEX, DecodingError("drift")),
            ]
        )
        orchestrator = FetchOrchestrator(providers, cache, metrics_updater=updater)

        await orchestrator.fetch_all()

        assert (
            registry.get_sample_value(
                "usagewatch_fetch_errors_total",
                {"provider": "codex", "kind": "decodingError"},
            )
            == 1.0
        )
        assert (
            registry.get_sample_value(
                "usagewatch_cache_fallbacks_total", {"provider": "codex"}
            )
            == 1.0
        )
        assert (
            registry.get_sample_value(
                "usagewatch_last_fetch_success_timestamp_seconds",
                {"provider": "claude"},
            )
            is not None
        )
        assert (
            registry.get_sample_value(
                "usagewatch_last_fetch_success_timestamp_seconds",
                {"provider": "codex"},
            )
            is None
        )

    @pytest.mark.asyncio
    async def test_timeout_counts_as_network_error(
        self,
        registry: "CollectorRegistry",
    ) -> "None":
        updater = MetricsUpdater(registry=registry)
        providers = ProviderRegistry([HangingProvider(ProviderIdentifier.CLAUDE)])
        orchestrator = FetchOrchestrator(
            providers, ResultCache(), timeout_seconds=0.05, metrics_updater=updater
        )

        await orchestrator.fetch_all()

        assert (
            registry.get_sample_value(
                "usagewatch_fetch_errors_total",
                {"provider": "claude", "kind": "networkError"},
            )
            == 1.0
        )


class TestRun:
    @pytest.mark.asyncio
    async def test_publishes_round_and_stops(
        self,
        registry: "CollectorRegistry",
    ) -> "None":
        updater = MetricsUpdater(registry=registry)
        claude = MockProvider(ProviderIdentifier.CLAUDE, QuotaBased(10, 100))
        router = MockProvider(ProviderIdentifier.OPEN_ROUTER, PayAsYouGo(30.0, cost=2.5))
        orchestrator = FetchOrchestrator(
            ProviderRegistry([claude, router]),
            ResultCache(),
            metrics_updater=updater,
            interval_seconds=3600,
        )

        task = asyncio.create_task(orchestrator.run())
        while claude.calls == 0:
            await asyncio.sleep(0.01)
        orchestrator.stop()
        await asyncio.wait_for(task, timeout=5)

        assert claude.calls == 1
        assert (
            registry.get_sample_value("usagewatch_quota_alert", {"provider": "claude"})
            == 1.0
        )
        assert (
            registry.get_sample_value(
                "usagewatch_quota_alert", {"provider": "open_router"}
            )
            == 0.0
        )
        assert registry.get_sample_value("usagewatch_total_overage_cost_usd") == 2.5
        assert (
            registry.get_sample_value(
                "usagewatch_usage_percent", {"provider": "open_router"}
            )
            == 30.0
        )
