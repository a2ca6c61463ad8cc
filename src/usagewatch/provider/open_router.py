from typing import Any

import httpx
import structlog

from usagewatch.credentials import CredentialStore
from usagewatch.errors import AuthenticationFailedError, DecodingError, UsageFetchError
from usagewatch.models import (
    DetailedUsage,
    PayAsYouGo,
    ProviderIdentifier,
    ProviderResult,
    ProviderType,
)
from usagewatch.parsing import coerce_float
from usagewatch.provider.base import (
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    check_status,
    decode_json_object,
    send_request,
)

logger = structlog.get_logger()

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


def credit_utilization(used: "float", total: "float") -> "float":
    """
    used/total as a percentage; 0.0 when total is not positive so a
    fresh account never yields NaN or infinity.
    """
    if total <= 0:
        return 0.0
    return used / total * 100.0


class OpenRouterProvider:
    """
    OpenRouterProvider computes utilization from the account's
    purchased credits versus what has been spent so far.
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
        return ProviderIdentifier.OPEN_ROUTER

    @property
    def type(self) -> "ProviderType":
        return ProviderType.PAY_AS_YOU_GO

    async def close(self) -> "None":
        await self._client.aclose()

    async def fetch(self) -> "ProviderResult":
        api_key = self._credentials.get_api_key(self.identifier)
        if not api_key:
            raise AuthenticationFailedError("OpenRouter API key not found")
        headers = {"Authorization": f"Bearer {api_key}"}

        credits = await self._get_data(f"{OPENROUTER_BASE_URL}/credits", headers)
        total = coerce_float(credits.get("total_credits"))
        used = coerce_float(credits.get("total_usage"))
        if total is None or used is None:
            raise DecodingError("credits response missing total_credits/total_usage")

        if total <= 0:
            logger.warning("openrouter_zero_credits")
        utilization = credit_utilization(used, total)

        details = DetailedUsage(credits_total=total, credits_used=used)
        # key limits are informational; the fetch succeeds without them
        try:
            key_info = await self._get_data(f"{OPENROUTER_BASE_URL}/key", headers)
        except UsageFetchError as exc:
            logger.warning("openrouter_key_info_failed", error=str(exc))
        else:
            details.limit = coerce_float(key_info.get("limit"))
            details.limit_remaining = coerce_float(key_info.get("limit_remaining"))
            details.usage_daily = coerce_float(key_info.get("usage_daily"))
            details.usage_weekly = coerce_float(key_info.get("usage_weekly"))
            details.usage_monthly = coerce_float(key_info.get("usage_monthly"))

        logger.info(
            "openrouter_usage_fetched",
            utilization=round(utilization, 2),
            used=used,
            total=total,
        )
        return ProviderResult(
            usage=PayAsYouGo(utilization=utilization, cost=None, resets_at=None),
            details=details,
        )

    async def _get_data(
        self,
        url: "str",
        headers: "dict[str, str]",
    ) -> "dict[str, Any]":
        resp = await send_request(self._client, "GET", url, headers=headers)
        check_status(resp, self.identifier)
        data = decode_json_object(resp).get("data")
        if not isinstance(data, dict):
            raise DecodingError(f"{url} response has no data object")
        return data
