import json
import stat
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Sequence

import pytest

from usagewatch.errors import DecodingError, NetworkError, ProviderError
from usagewatch.models import PayAsYouGo
from usagewatch.process import ProcessResult
from usagewatch.provider.open_code_zen import (
    DAILY_HISTORY_KEY,
    OpenCodeZenProvider,
    parse_stats,
    parse_total_cost,
)
from usagewatch.store import MemoryStore

_STATS_7_DAYS = """
┌────────────────────────────────────────────────────────┐
│                       OVERVIEW                         │
├────────────────────────────────────────────────────────┤
│Sessions                                             42 │
│Messages                                          1,234 │
│Days                                                  7 │
├────────────────────────────────────────────────────────┤
│                    COST & TOKENS                       │
├────────────────────────────────────────────────────────┤
│Total Cost                                       $25.50 │
│Avg Cost/Day                                      $3.64 │
├────────────────────────────────────────────────────────┤
│                     MODEL USAGE                        │
├────────────────────────────────────────────────────────┤
│ anthropic/claude-sonnet-4   800 messages    │  Cost  $20.00 │
│ openai/gpt-5                 434 messages    │  Cost   $5.50 │
└────────────────────────────────────────────────────────┘
"""

_STATS_NO_MODELS = """
│Sessions                                              3 │
│Messages                                             10 │
│Total Cost                                        $1.00 │
│Avg Cost/Day                                      $0.50 │
"""


def _stats_for_days(days: "int") -> "str":
    return {
        1: "│Total Cost                                        $2.00 │",
        2: "│Total Cost                                        $5.00 │",
    }.get(days, _STATS_7_DAYS)


class FakeRunner:
    def __init__(
        self,
        outputs: "dict[int, ProcessResult | Exception]",
    ) -> "None":
        self._outputs = outputs
        self.calls: "list[list[str]]" = []

    async def run(self, executable: "str", args: "Sequence[str]") -> "ProcessResult":
        self.calls.append(list(args))
        days = int(args[args.index("--days") + 1])
        outcome = self._outputs[days]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture()
def executable(tmp_path: "Path") -> "str":
    path = tmp_path / "opencode"
    path.write_text("#!/bin/sh\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


class TestParseStats:
    def test_parses_overview_and_models(self) -> "None":
        stats = parse_stats(_STATS_7_DAYS)
        assert stats.total_cost == 25.5
        assert stats.avg_cost_per_day == 3.64
        assert stats.sessions == 42
        assert stats.messages == 1234
        assert stats.model_costs == {
            "anthropic/claude-sonnet-4": 20.0,
            "openai/gpt-5": 5.5,
        }

    def test_model_rows_are_optional(self) -> "None":
        stats = parse_stats(_STATS_NO_MODELS)
        assert stats.total_cost == 1.0
        assert stats.model_costs == {}

    @pytest.mark.parametrize(
        "missing",
        ["│Total Cost", "│Avg Cost/Day", "│Sessions", "│Messages"],
    )
    def test_required_rows(self, missing: "str") -> "None":
        output = "\n".join(
            line for line in _STATS_NO_MODELS.splitlines() if not line.startswith(missing)
        )
        with pytest.raises(DecodingError):
            parse_stats(output)

    def test_parse_total_cost(self) -> "None":
        assert parse_total_cost(_stats_for_days(1)) == 2.0
        assert parse_total_cost("nothing here") is None


class TestOpenCodeZenProviderFetch:
    @pytest.mark.asyncio
    async def test_reports_spend_against_monthly_limit(self, executable: "str") -> "None":
        runner = FakeRunner(
            {days: ProcessResult(0, _stats_for_days(days)) for days in (1, 2, 7)}
        )
        provider = OpenCodeZenProvider(executable, runner=runner, monthly_limit=51.0)

        result = await provider.fetch()

        assert result.usage == PayAsYouGo(utilization=50.0, cost=25.5)
        assert ["stats", "--days", "7", "--models", "10"] in runner.calls
        assert result.details is not None
        assert result.details.sessions == 42
        history = result.details.daily_history
        assert history is not None
        assert len(history) == 30
        assert [day.billed_amount for day in history[:2]] == [2.0, 3.0]
        assert all(day.billed_amount == 0.0 for day in history[2:])

    @pytest.mark.asyncio
    async def test_utilization_is_capped(self, executable: "str") -> "None":
        runner = FakeRunner(
            {days: ProcessResult(0, _stats_for_days(days)) for days in (1, 2, 7)}
        )
        provider = OpenCodeZenProvider(executable, runner=runner, monthly_limit=10.0)

        result = await provider.fetch()

        assert result.usage.usage_percentage == 100.0
        assert result.usage.cost == 25.5

    @pytest.mark.asyncio
    async def test_zero_limit_is_zero_utilization(self, executable: "str") -> "None":
        runner = FakeRunner(
            {days: ProcessResult(0, _stats_for_days(days)) for days in (1, 2, 7)}
        )
        provider = OpenCodeZenProvider(executable, runner=runner, monthly_limit=0.0)

        result = await provider.fetch()

        assert result.usage.usage_percentage == 0.0

    @pytest.mark.asyncio
    async def test_daily_history_failure_is_tolerated(self, executable: "str") -> "None":
        runner = FakeRunner(
            {
                1: NetworkError("spawn failed"),
                2: ProcessResult(1, "boom"),
                7: ProcessResult(0, _STATS_7_DAYS),
            }
        )
        provider = OpenCodeZenProvider(executable, runner=runner)

        result = await provider.fetch()

        assert result.details is not None
        history = result.details.daily_history
        assert history is not None
        assert len(history) == 30
        assert all(day.billed_amount == 0.0 for day in history)

    @pytest.mark.asyncio
    async def test_non_zero_exit_is_provider_error(self, executable: "str") -> "None":
        runner = FakeRunner({7: ProcessResult(2, "error: not logged in")})
        with pytest.raises(ProviderError):
            await OpenCodeZenProvider(executable, runner=runner).fetch()

    @pytest.mark.asyncio
    async def test_missing_executable_is_provider_error(self, tmp_path: "Path") -> "None":
        provider = OpenCodeZenProvider(
            str(tmp_path / "missing"), runner=FakeRunner({})
        )
        with pytest.raises(ProviderError):
            await provider.fetch()

    @pytest.mark.asyncio
    async def test_older_days_come_from_stored_history(self, executable: "str") -> "None":
        today = datetime.now(timezone.utc).date()
        store = MemoryStore()
        store.set(
            DAILY_HISTORY_KEY,
            json.dumps(
                {
                    (today - timedelta(days=5)).isoformat(): 4.0,
                    (today - timedelta(days=40)).isoformat(): 9.0,
                }
            ).encode(),
        )
        runner = FakeRunner(
            {days: ProcessResult(0, _stats_for_days(days)) for days in (1, 2, 7)}
        )
        provider = OpenCodeZenProvider(executable, runner=runner, store=store)

        result = await provider.fetch()

        assert result.details is not None
        history = result.details.daily_history
        assert history is not None
        assert history[5].date.date() == today - timedelta(days=5)
        assert history[5].billed_amount == 4.0
        assert sum(day.billed_amount for day in history) == 9.0

        saved = json.loads(store.get(DAILY_HISTORY_KEY) or b"{}")
        assert saved == {
            (today - timedelta(days=5)).isoformat(): 4.0,
            (today - timedelta(days=1)).isoformat(): 3.0,
            today.isoformat(): 2.0,
        }

    @pytest.mark.asyncio
    async def test_failed_round_keeps_stored_recent_days(self, executable: "str") -> "None":
        today = datetime.now(timezone.utc).date()
        store = MemoryStore()
        store.set(DAILY_HISTORY_KEY, json.dumps({today.isoformat(): 1.5}).encode())
        runner = FakeRunner(
            {
                1: ProcessResult(1, "boom"),
                2: ProcessResult(1, "boom"),
                7: ProcessResult(0, _STATS_7_DAYS),
            }
        )
        provider = OpenCodeZenProvider(executable, runner=runner, store=store)

        result = await provider.fetch()

        assert result.details is not None
        history = result.details.daily_history
        assert history is not None
        assert history[0].billed_amount == 1.5

    @pytest.mark.asyncio
    async def test_unreadable_history_is_ignored(self, executable: "str") -> "None":
        store = MemoryStore()
        store.set(DAILY_HISTORY_KEY, b"{broken")
        runner = FakeRunner(
            {days: ProcessResult(0, _stats_for_days(days)) for days in (1, 2, 7)}
        )
        provider = OpenCodeZenProvider(executable, runner=runner, store=store)

        result = await provider.fetch()

        assert result.details is not None
        history = result.details.daily_history
        assert history is not None
        assert sum(day.billed_amount for day in history) == 5.0
