import asyncio
import json
import os
import re
import shutil
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone

import structlog

from usagewatch.errors import DecodingError, ProviderError, UsageFetchError
from usagewatch.models import (
    DailyUsage,
    DetailedUsage,
    PayAsYouGo,
    ProviderIdentifier,
    ProviderResult,
    ProviderType,
)
from usagewatch.parsing import coerce_float
from usagewatch.process import AsyncProcessRunner, ProcessRunner
from usagewatch.store import KeyValueStore, MemoryStore

logger = structlog.get_logger()

OPENCODE_BINARY_PATH = "~/.opencode/bin/opencode"
DEFAULT_MONTHLY_LIMIT_USD = 1000.0
DAILY_HISTORY_DAYS = 30
DAILY_HISTORY_KEY = "opencode_zen.daily_history"

_TOTAL_COST = re.compile(r"│Total Cost\s+\$([0-9.]+)")
_AVG_COST = re.compile(r"│Avg Cost/Day\s+\$([0-9.]+)")
_SESSIONS = re.compile(r"│Sessions\s+([0-9,]+)")
_MESSAGES = re.compile(r"│Messages\s+([0-9,]+)")
_MODEL_COST = re.compile(r"│ (\S+)\s+.*│\s+Cost\s+\$([0-9.]+)")


@dataclass(slots=True)
class OpenCodeStats:
    total_cost: "float"
    avg_cost_per_day: "float"
    sessions: "int"
    messages: "int"
    model_costs: "dict[str, float]" = field(default_factory=dict)


def _required(pattern: "re.Pattern[str]", output: "str", name: "str") -> "str":
    match = pattern.search(output)
    if match is None:
        logger.error("opencode_stats_field_missing", field=name)
        raise DecodingError(f"cannot parse {name}")
    return match.group(1)


def _to_float(raw: "str", name: "str") -> "float":
    try:
        return float(raw)
    except ValueError as exc:
        raise DecodingError(f"invalid {name} value: {raw!r}") from exc


def parse_stats(output: "str") -> "OpenCodeStats":
    """
    parses the table printed by `opencode stats`. Total cost, average
    cost per day, sessions and messages are required; the per model
    cost rows are best effort.
    """
    total_cost = _to_float(_required(_TOTAL_COST, output, "total cost"), "total cost")
    avg_cost = _to_float(_required(_AVG_COST, output, "avg cost"), "avg cost")
    sessions = int(_required(_SESSIONS, output, "sessions").replace(",", "") or 0)
    messages = int(_required(_MESSAGES, output, "messages").replace(",", "") or 0)

    model_costs: "dict[str, float]" = {}
    for match in _MODEL_COST.finditer(output):
        try:
            model_costs[match.group(1)] = float(match.group(2))
        except ValueError:
            logger.debug("opencode_model_cost_skipped", model=match.group(1))

    return OpenCodeStats(
        total_cost=total_cost,
        avg_cost_per_day=avg_cost,
        sessions=sessions,
        messages=messages,
        model_costs=model_costs,
    )


def parse_total_cost(output: "str") -> "float | None":
    match = _TOTAL_COST.search(output)
    if match is None:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


class OpenCodeZenProvider:
    """
    OpenCodeZenProvider shells out to the opencode CLI and reads its
    stats table. Spend over the last seven days is reported against a
    configured monthly budget.

    The CLI only reports cumulative totals, so each fetch derives
    today's and yesterday's spend. Older days of the 30 day history
    are read back from what earlier fetches saved in the store.
    """

    def __init__(
        self,
        executable: "str" = OPENCODE_BINARY_PATH,
        runner: "ProcessRunner | None" = None,
        monthly_limit: "float" = DEFAULT_MONTHLY_LIMIT_USD,
        store: "KeyValueStore | None" = None,
    ) -> "None":
        self._executable = executable
        self._runner: "ProcessRunner" = runner or AsyncProcessRunner()
        self._monthly_limit = monthly_limit
        self._store: "KeyValueStore" = store if store is not None else MemoryStore()

    @property
    def identifier(self) -> "ProviderIdentifier":
        return ProviderIdentifier.OPEN_CODE_ZEN

    @property
    def type(self) -> "ProviderType":
        return ProviderType.PAY_AS_YOU_GO

    async def close(self) -> "None":
        pass

    async def fetch(self) -> "ProviderResult":
        executable = shutil.which(os.path.expanduser(self._executable))
        if executable is None:
            logger.error("opencode_cli_not_found", path=self._executable)
            raise ProviderError(f"OpenCode CLI not found at {self._executable}")

        stats = parse_stats(await self._run_stats(executable, days=7))
        daily_history = await self._fetch_daily_history(executable)

        if self._monthly_limit > 0:
            utilization = min(stats.total_cost / self._monthly_limit * 100, 100.0)
        else:
            utilization = 0.0

        logger.info(
            "opencode_zen_usage_fetched",
            total_cost=round(stats.total_cost, 2),
            utilization=round(utilization, 1),
            monthly_limit=self._monthly_limit,
        )
        return ProviderResult(
            usage=PayAsYouGo(utilization=utilization, cost=stats.total_cost, resets_at=None),
            details=DetailedUsage(
                model_breakdown=stats.model_costs,
                sessions=stats.sessions,
                messages=stats.messages,
                avg_cost_per_day=stats.avg_cost_per_day,
                monthly_cost=stats.total_cost,
                daily_history=daily_history,
                auth_source="opencode CLI",
            ),
        )

    async def _run_stats(self, executable: "str", days: "int") -> "str":
        result = await self._runner.run(
            executable,
            ["stats", "--days", str(days), "--models", "10"],
        )
        if result.exit_code != 0:
            raise ProviderError(f"OpenCode CLI failed with exit code {result.exit_code}")
        return result.output

    async def _cumulative_cost(self, executable: "str", days: "int") -> "float | None":
        try:
            output = await self._run_stats(executable, days)
        except UsageFetchError as exc:
            logger.warning("opencode_daily_stats_failed", days=days, error=str(exc))
            return None
        return parse_total_cost(output)

    async def _fetch_daily_history(self, executable: "str") -> "list[DailyUsage]":
        """
        returns one row per day for the last 30 days, newest first.
        Today's and yesterday's spend come from the cumulative one-day
        and two-day totals; older days come from the stored history.
        Days with no record are reported as zero spend.
        """
        one_day, two_days = await asyncio.gather(
            self._cumulative_cost(executable, 1),
            self._cumulative_cost(executable, 2),
        )

        today = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        oldest = (today - timedelta(days=DAILY_HISTORY_DAYS - 1)).date()
        costs = {
            day: cost for day, cost in self._load_history().items() if day >= oldest
        }

        # a failed round keeps the stored values for today and yesterday
        if one_day is not None or two_days is not None:
            today_cost = one_day or 0.0
            costs[today.date()] = today_cost
            costs[(today - timedelta(days=1)).date()] = max(
                0.0, (two_days or 0.0) - today_cost
            )
            self._save_history(costs)

        history: "list[DailyUsage]" = []
        for offset in range(DAILY_HISTORY_DAYS):
            day = today - timedelta(days=offset)
            cost = costs.get(day.date(), 0.0)
            history.append(DailyUsage(date=day, gross_amount=cost, billed_amount=cost))
        return history

    def _load_history(self) -> "dict[date, float]":
        raw = self._store.get(DAILY_HISTORY_KEY)
        if raw is None:
            return {}
        try:
            records = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("opencode_history_unreadable", error=str(exc))
            return {}
        if not isinstance(records, dict):
            logger.warning("opencode_history_unreadable", error="not an object")
            return {}

        costs: "dict[date, float]" = {}
        for key, value in records.items():
            cost = coerce_float(value)
            try:
                day = date.fromisoformat(key)
            except ValueError:
                continue
            if cost is not None:
                costs[day] = cost
        return costs

    def _save_history(self, costs: "dict[date, float]") -> "None":
        records = {day.isoformat(): cost for day, cost in sorted(costs.items())}
        self._store.set(DAILY_HISTORY_KEY, json.dumps(records).encode("utf-8"))

