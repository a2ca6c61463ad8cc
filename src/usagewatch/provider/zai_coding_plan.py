import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import structlog

from usagewatch.credentials import CredentialStore
from usagewatch.errors import AuthenticationFailedError, DecodingError, UsageFetchError
from usagewatch.models import (
    DetailedUsage,
    ProviderIdentifier,
    ProviderResult,
    ProviderType,
    QuotaBased,
)
from usagewatch.parsing import coerce_float, coerce_int, from_epoch_millis
from usagewatch.provider.base import (
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    check_status,
    decode_json_object,
    send_request,
)

logger = structlog.get_logger()

ZAI_MONITOR_URL = "https://api.z.ai/api/monitor/usage"
ZAI_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True, slots=True)
class QuotaLimit:
    """
    one entry of the quota/limit response. Numbers may arrive as
    JSON numbers or numeric strings.
    """

    type: "str"
    percentage: "float | None"
    current_value: "int | None"
    total: "int | None"
    next_reset_time: "datetime | None"

    @classmethod
    def from_dict(cls, data: "dict[str, Any]") -> "QuotaLimit":
        return cls(
            type=str(data.get("type") or ""),
            percentage=coerce_float(data.get("percentage")),
            current_value=coerce_int(data.get("currentValue")),
            total=coerce_int(data.get("total")),
            next_reset_time=from_epoch_millis(data.get("nextResetTime")),
        )

    @property
    def used_percent(self) -> "float | None":
        if self.percentage is not None:
            return self.percentage
        if self.current_value is None or not self.total:
            return None
        return self.current_value / self.total * 100


def _unwrap(data: "dict[str, Any]") -> "dict[str, Any]":
    # responses are usually wrapped as {"code": ..., "data": {...}}
    inner = data.get("data")
    if isinstance(inner, dict):
        return inner
    return data


class ZaiCodingPlanProvider:
    """
    ZaiCodingPlanProvider reports the more exhausted of the token
    and MCP (time) limits of a Z.AI Coding Plan. Model and tool usage
    over the last 24 hours are fetched for the details and are
    allowed to fail.
    """

    def __init__(
        self,
        credentials: "CredentialStore",
        client: "httpx.AsyncClient | None" = None,
    ) -> "None":
        self._credentials = credentials
        self._client: "httpx.AsyncClient" = client or httpx.AsyncClient(
            timeout=DEFAULT_REQUEST_TIMEOUT_SECONDS,
        )

    @property
    def identifier(self) -> "ProviderIdentifier":
        return ProviderIdentifier.ZAI_CODING_PLAN

    @property
    def type(self) -> "ProviderType":
        return ProviderType.QUOTA_BASED

    async def close(self) -> "None":
        await self._client.aclose()

    async def fetch(self) -> "ProviderResult":
        logger.debug("zai_fetch_started")
        api_key = self._credentials.get_api_key(self.identifier)
        if not api_key:
            raise AuthenticationFailedError("Z.AI Coding Plan API key not available")

        quota = await self._get(api_key, f"{ZAI_MONITOR_URL}/quota/limit")
        raw_limits = quota.get("limits")
        if not isinstance(raw_limits, list) or not raw_limits:
            raise DecodingError("missing quota limits")
        limits = [
            QuotaLimit.from_dict(item) for item in raw_limits if isinstance(item, dict)
        ]

        token_limit = _find_limit(limits, "TOKENS_LIMIT")
        mcp_limit = _find_limit(limits, "TIME_LIMIT")
        token_percent = token_limit.used_percent if token_limit else None
        mcp_percent = mcp_limit.used_percent if mcp_limit else None
        if token_percent is None and mcp_percent is None:
            raise DecodingError("quota limits carry no usage percentage")

        overall_used = max(token_percent or 0.0, mcp_percent or 0.0)
        usage = QuotaBased(
            remaining=math.floor(100.0 - overall_used + 0.5),
            entitlement=100,
            overage_permitted=False,
        )

        details = DetailedUsage(
            auth_source="~/.local/share/opencode/auth.json",
            token_usage_percent=token_percent,
            token_usage_reset=token_limit.next_reset_time if token_limit else None,
            token_usage_used=token_limit.current_value if token_limit else None,
            token_usage_total=token_limit.total if token_limit else None,
            mcp_usage_percent=mcp_percent,
            mcp_usage_reset=mcp_limit.next_reset_time if mcp_limit else None,
            mcp_usage_used=mcp_limit.current_value if mcp_limit else None,
            mcp_usage_total=mcp_limit.total if mcp_limit else None,
        )

        now = datetime.now(timezone.utc)
        params = {
            "startTime": (now - timedelta(days=1)).strftime(ZAI_TIME_FORMAT),
            "endTime": now.strftime(ZAI_TIME_FORMAT),
        }

        try:
            model_usage = await self._get(
                api_key, f"{ZAI_MONITOR_URL}/model-usage", params
            )
        except UsageFetchError as exc:
            logger.warning("zai_model_usage_failed", error=str(exc))
        else:
            totals = model_usage.get("totalUsage")
            if isinstance(totals, dict):
                details.model_usage_tokens = coerce_int(totals.get("totalTokensUsage"))
                details.model_usage_calls = coerce_int(totals.get("totalModelCallCount"))

        try:
            tool_usage = await self._get(
                api_key, f"{ZAI_MONITOR_URL}/tool-usage", params
            )
        except UsageFetchError as exc:
            logger.warning("zai_tool_usage_failed", error=str(exc))
        else:
            totals = tool_usage.get("totalUsage")
            if isinstance(totals, dict):
                details.tool_network_search_count = coerce_int(
                    totals.get("totalNetworkSearchCount")
                )
                details.tool_web_read_count = coerce_int(
                    totals.get("totalWebReadMcpCount")
                )
                details.tool_zread_count = coerce_int(totals.get("totalZreadMcpCount"))

        logger.info(
            "zai_usage_fetched",
            token_percent=token_percent,
            mcp_percent=mcp_percent,
        )
        return ProviderResult(usage=usage, details=details)

    async def _get(
        self,
        api_key: "str",
        url: "str",
        params: "dict[str, str] | None" = None,
    ) -> "dict[str, Any]":
        resp = await send_request(
            self._client,
            "GET",
            url,
            params=params,
            headers={
                # the monitor API takes the bare key, without a scheme
                "Authorization": api_key,
                "Accept-Language": "en-US,en",
                "Content-Type": "application/json",
            },
        )
        check_status(resp, self.identifier, auth_statuses=(401, 403))
        return _unwrap(decode_json_object(resp))


def _find_limit(limits: "list[QuotaLimit]", kind: "str") -> "QuotaLimit | None":
    for limit in limits:
        if limit.type.upper() == kind:
            return limit
    return None
