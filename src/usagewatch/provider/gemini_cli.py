from typing import Any

import httpx
import structlog

from usagewatch.errors import AuthenticationFailedError, DecodingError
from usagewatch.models import (
    DetailedUsage,
    ProviderIdentifier,
    ProviderResult,
    ProviderType,
    QuotaBased,
)
from usagewatch.parsing import coerce_float, parse_iso_datetime
from usagewatch.provider.base import (
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    check_status,
    decode_json_object,
    send_request,
)
from usagewatch.provider.google_oauth import (
    ANTIGRAVITY_ACCOUNTS_PATH,
    OAuthClientConfig,
    load_accounts,
    refresh_access_token,
)

logger = structlog.get_logger()

GEMINI_QUOTA_URL = "https://cloudcode-pa.googleapis.com/v1internal:retrieveUserQuota"


class GeminiCLIProvider:
    """
    GeminiCLIProvider refreshes an OAuth token and reads the per
    model quota buckets. The most exhausted bucket decides the
    reported quota; the per model numbers and the earliest reset
    only go to the details.
    """

    def __init__(
        self,
        oauth: "OAuthClientConfig",
        accounts_path: "str" = ANTIGRAVITY_ACCOUNTS_PATH,
        client: "httpx.AsyncClient | None" = None,
    ) -> "None":
        self._oauth = oauth
        self._accounts_path = accounts_path
        self._client: "httpx.AsyncClient" = client or httpx.AsyncClient(
            timeout=DEFAULT_REQUEST_TIMEOUT_SECONDS,
        )

    @property
    def identifier(self) -> "ProviderIdentifier":
        return ProviderIdentifier.GEMINI_CLI

    @property
    def type(self) -> "ProviderType":
        return ProviderType.QUOTA_BASED

    async def close(self) -> "None":
        await self._client.aclose()

    async def fetch(self) -> "ProviderResult":
        account = load_accounts(self._accounts_path).active
        if account is None:
            raise AuthenticationFailedError("no stored Gemini refresh token")

        access_token = await refresh_access_token(
            self._client, self._oauth, account.refresh_token, self.identifier
        )

        resp = await send_request(
            self._client,
            "POST",
            GEMINI_QUOTA_URL,
            headers={"Authorization": f"Bearer {access_token}"},
            json={},
        )
        check_status(resp, self.identifier)
        return self.parse_quota(decode_json_object(resp), email=account.email)

    def parse_quota(
        self,
        data: "dict[str, Any]",
        email: "str | None" = None,
    ) -> "ProviderResult":
        buckets = data.get("buckets")
        if not isinstance(buckets, list) or not buckets:
            raise DecodingError("quota response contains no buckets")

        breakdown: "dict[str, float]" = {}
        min_fraction: "float | None" = None
        earliest_reset = None

        for bucket in buckets:
            if not isinstance(bucket, dict):
                continue
            fraction = coerce_float(bucket.get("remainingFraction"))
            if fraction is None:
                continue
            model_id = str(bucket.get("modelId") or "unknown")
            breakdown[model_id] = fraction * 100.0
            if min_fraction is None or fraction < min_fraction:
                min_fraction = fraction

            reset = parse_iso_datetime(bucket.get("resetTime"))
            if reset is not None and (earliest_reset is None or reset < earliest_reset):
                earliest_reset = reset

        if min_fraction is None:
            raise DecodingError("no bucket carries a remainingFraction")

        remaining_percentage = min_fraction * 100.0
        logger.info(
            "gemini_quota_fetched",
            remaining_percent=remaining_percentage,
            buckets=len(breakdown),
            resets_at=earliest_reset.isoformat() if earliest_reset else None,
        )
        return ProviderResult(
            usage=QuotaBased(
                remaining=int(remaining_percentage),
                entitlement=100,
                overage_permitted=False,
            ),
            details=DetailedUsage(
                model_breakdown=breakdown,
                next_reset=earliest_reset,
                email=email or None,
                auth_source=ANTIGRAVITY_ACCOUNTS_PATH,
            ),
        )
