import enum
import json
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

from usagewatch.errors import DecodingError


class ProviderIdentifier(str, enum.Enum):
    """
    ProviderIdentifier names a provider. The values are stable
    and used as map keys everywhere, including persisted records.
    """

    COPILOT = "copilot"
    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI_CLI = "gemini_cli"
    OPEN_ROUTER = "open_router"
    OPEN_CODE = "open_code"
    OPEN_CODE_ZEN = "open_code_zen"
    ZAI_CODING_PLAN = "zai_coding_plan"
    ANTIGRAVITY = "antigravity"

    @property
    def display_name(self) -> "str":
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES: "dict[ProviderIdentifier, str]" = {
    ProviderIdentifier.COPILOT: "GitHub Copilot",
    ProviderIdentifier.CLAUDE: "Claude",
    ProviderIdentifier.CODEX: "Codex",
    ProviderIdentifier.GEMINI_CLI: "Gemini CLI",
    ProviderIdentifier.OPEN_ROUTER: "OpenRouter",
    ProviderIdentifier.OPEN_CODE: "OpenCode",
    ProviderIdentifier.OPEN_CODE_ZEN: "OpenCode Zen",
    ProviderIdentifier.ZAI_CODING_PLAN: "Z.AI Coding Plan",
    ProviderIdentifier.ANTIGRAVITY: "Antigravity",
}


class ProviderType(str, enum.Enum):
    """
    billing model of a provider. The values double as the
    discriminator strings of the usage codec.
    """

    PAY_AS_YOU_GO = "payAsYouGo"
    QUOTA_BASED = "quotaBased"


@dataclass(frozen=True, slots=True)
class PayAsYouGo:
    """
    PayAsYouGo usage: utilization is a percentage that may
    exceed 100.
    """

    utilization: "float"
    # dollars
    cost: "float | None" = None
    resets_at: "datetime | None" = None

    @property
    def provider_type(self) -> "ProviderType":
        return ProviderType.PAY_AS_YOU_GO

    @property
    def usage_percentage(self) -> "float":
        return float(self.utilization)

    @property
    def is_within_limit(self) -> "bool":
        return self.utilization <= 100

    @property
    def remaining_quota(self) -> "int | None":
        return None

    @property
    def total_entitlement(self) -> "int | None":
        return None

    @property
    def reset_time(self) -> "datetime | None":
        return self.resets_at

    @property
    def status_message(self) -> "str":
        message = f"{self.utilization:.1f}% used"
        if self.resets_at is not None:
            return f"{message}, resets {self.resets_at.isoformat()}"
        return message


@dataclass(frozen=True, slots=True)
class QuotaBased:
    """
    QuotaBased usage: remaining may go negative when the
    provider permits overage.
    """

    remaining: "int"
    entitlement: "int"
    overage_permitted: "bool" = False

    @property
    def provider_type(self) -> "ProviderType":
        return ProviderType.QUOTA_BASED

    @property
    def usage_percentage(self) -> "float":
        if self.entitlement <= 0:
            return 0.0
        used = self.entitlement - self.remaining
        return used / self.entitlement * 100

    @property
    def is_within_limit(self) -> "bool":
        return self.remaining >= 0

    @property
    def remaining_quota(self) -> "int | None":
        return self.remaining

    @property
    def total_entitlement(self) -> "int | None":
        return self.entitlement

    @property
    def reset_time(self) -> "datetime | None":
        return None

    @property
    def cost(self) -> "float | None":
        return None

    @property
    def status_message(self) -> "str":
        if self.remaining >= 0:
            return f"{self.remaining} of {self.entitlement} remaining"
        message = f"{abs(self.remaining)} over limit"
        if self.overage_permitted:
            return f"{message} (overage allowed)"
        return message


ProviderUsage = Union[PayAsYouGo, QuotaBased]


@dataclass(frozen=True, slots=True)
class DailyUsage:
    date: "datetime"
    included_requests: "int" = 0
    billed_requests: "int" = 0
    gross_amount: "float" = 0.0
    billed_amount: "float" = 0.0


@dataclass(slots=True)
class DetailedUsage:
    """
    DetailedUsage is an informational, provider-specific breakdown.
    Nothing in the core depends on it; every field is optional.
    """

    # model name -> remaining percent (quota) or cost (pay-as-you-go)
    model_breakdown: "dict[str, float] | None" = None
    model_reset_times: "dict[str, datetime] | None" = None
    # earliest reset across all windows or models
    next_reset: "datetime | None" = None
    plan_type: "str | None" = None
    email: "str | None" = None
    # human-readable description of where credentials came from
    auth_source: "str | None" = None
    daily_history: "list[DailyUsage] | None" = None

    sessions: "int | None" = None
    messages: "int | None" = None
    avg_cost_per_day: "float | None" = None
    monthly_cost: "float | None" = None

    five_hour_usage: "float | None" = None
    five_hour_reset: "datetime | None" = None
    seven_day_usage: "float | None" = None
    seven_day_reset: "datetime | None" = None

    token_usage_percent: "float | None" = None
    token_usage_reset: "datetime | None" = None
    token_usage_used: "int | None" = None
    token_usage_total: "int | None" = None
    mcp_usage_percent: "float | None" = None
    mcp_usage_reset: "datetime | None" = None
    mcp_usage_used: "int | None" = None
    mcp_usage_total: "int | None" = None
    model_usage_tokens: "int | None" = None
    model_usage_calls: "int | None" = None
    tool_network_search_count: "int | None" = None
    tool_web_read_count: "int | None" = None
    tool_zread_count: "int | None" = None

    credits_total: "float | None" = None
    credits_used: "float | None" = None
    limit: "float | None" = None
    limit_remaining: "float | None" = None
    usage_daily: "float | None" = None
    usage_weekly: "float | None" = None
    usage_monthly: "float | None" = None

    extra: "dict[str, Any]" = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ProviderResult:
    """
    ProviderResult is the unit every adapter produces. cached_at
    is only set when the orchestrator substituted a cached snapshot
    for a failed fetch.
    """

    usage: "ProviderUsage"
    details: "DetailedUsage | None" = None
    cached_at: "datetime | None" = None

    @property
    def is_stale(self) -> "bool":
        return self.cached_at is not None


@dataclass(frozen=True, slots=True)
class CachedUsage:
    usage: "ProviderUsage"
    timestamp: "datetime"


def encode_usage(usage: "ProviderUsage") -> "dict[str, Any]":
    """
    maps a usage value to a plain dict tagged with a "type"
    discriminator. Absent optional fields are omitted.
    """
    if isinstance(usage, PayAsYouGo):
        data: "dict[str, Any]" = {
            "type": ProviderType.PAY_AS_YOU_GO.value,
            "utilization": usage.utilization,
        }
        if usage.cost is not None:
            data["cost"] = usage.cost
        if usage.resets_at is not None:
            data["resetsAt"] = usage.resets_at.isoformat()
        return data

    if isinstance(usage, QuotaBased):
        return {
            "type": ProviderType.QUOTA_BASED.value,
            "remaining": usage.remaining,
            "entitlement": usage.entitlement,
            "overagePermitted": usage.overage_permitted,
        }

    raise TypeError(f"not a provider usage value: {usage!r}")


def decode_usage(data: "Any") -> "ProviderUsage":
    """
    inverse of encode_usage. Missing numeric fields default to 0
    and a missing overagePermitted to False. An unknown type tag,
    or a number that is unreadable or not finite, is a DecodingError.
    """
    if not isinstance(data, dict):
        raise DecodingError("usage record is not an object")

    kind = data.get("type")
    if kind == ProviderType.PAY_AS_YOU_GO.value:
        cost = data.get("cost")
        return PayAsYouGo(
            utilization=_as_float(data.get("utilization"), 0.0),
            cost=None if cost is None else _as_float(cost, 0.0),
            resets_at=_as_datetime(data.get("resetsAt")),
        )

    if kind == ProviderType.QUOTA_BASED.value:
        return QuotaBased(
            remaining=int(_as_float(data.get("remaining"), 0)),
            entitlement=int(_as_float(data.get("entitlement"), 0)),
            overage_permitted=_as_bool(data.get("overagePermitted")),
        )

    raise DecodingError(f"unknown usage type: {kind!r}")


def encode_cached_usage(cached: "CachedUsage") -> "bytes":
    record = {
        "usage": encode_usage(cached.usage),
        "timestamp": cached.timestamp.isoformat(),
    }
    return json.dumps(record).encode("utf-8")


def decode_cached_usage(raw: "bytes") -> "CachedUsage":
    try:
        record = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodingError(f"cached usage is not valid JSON: {exc}") from exc

    if not isinstance(record, dict):
        raise DecodingError("cached usage record is not an object")

    timestamp = _as_datetime(record.get("timestamp"))
    if timestamp is None:
        raise DecodingError("cached usage record has no timestamp")

    return CachedUsage(usage=decode_usage(record.get("usage")), timestamp=timestamp)


def _as_float(value: "Any", default: "float") -> "float":
    if value is None:
        return default
    if isinstance(value, bool):
        raise DecodingError(f"not a number: {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError) as exc:
        raise DecodingError(f"not a number: {value!r}") from exc
    if not math.isfinite(number):
        raise DecodingError(f"not a finite number: {value!r}")
    return number


def _as_bool(value: "Any") -> "bool":
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def _as_datetime(value: "Any") -> "datetime | None":
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
