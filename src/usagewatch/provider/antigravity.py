from datetime import datetime
from typing import Any

import httpx
import structlog

from usagewatch.errors import ProviderError
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

ANTIGRAVITY_QUOTA_URL = (
    "https://daily-cloudcode-pa.sandbox.googleapis.com/v1internal:fetchAvailableModels"
)
ANTIGRAVITY_USER_AGENT = "antigravity/1.15.8 darwin/arm64"


class AntigravityProvider:
    """
    AntigravityProvider uses the first stored Antigravity account,
    refreshes its token and reports the lowest remaining percentage
    across the models the account can use.
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
        return ProviderIdentifier.ANTIGRAVITY

    @property
    def type(self) -> "ProviderType":
        return ProviderType.QUOTA_BASED

    async def close(self) -> "None":
        await self._client.aclose()

    async def fetch(self) -> "ProviderResult":
        accounts = load_accounts(self._accounts_path).accounts
        if not accounts:
            raise ProviderError("no Antigravity accounts found")
        account = accounts[0]
        logger.info("antigravity_account_selected", email=account.email)

        access_token = await refresh_access_token(
            self._client, self._oauth, account.refresh_token, self.identifier
        )

        resp = await send_request(
            self._client,
            "POST",
            ANTIGRAVITY_QUOTA_URL,
            headers={
                "Authorization": f"Bearer {access_token}",
                "User-Agent": ANTIGRAVITY_USER_AGENT,
            },
            json={"project": account.project_id},
        )
        check_status(resp, self.identifier)
        return self.parse_models(decode_json_object(resp), email=account.email)

    def parse_models(
        self,
        data: "dict[str, Any]",
        email: "str | None" = None,
    ) -> "ProviderResult":
        models = data.get("models")
        if not isinstance(models, dict) or not models:
            raise ProviderError("no quota data available")

        breakdown: "dict[str, float]" = {}
        reset_times: "dict[str, datetime]" = {}

        for model_name, info in models.items():
            if not isinstance(info, dict):
                continue
            quota = info.get("quotaInfo")
            if not isinstance(quota, dict):
                continue
            fraction = coerce_float(quota.get("remainingFraction"))
            if fraction is None:
                continue

            display_name = info.get("displayName") or info.get("modelName") or model_name
            breakdown[display_name] = fraction * 100.0

            reset = parse_iso_datetime(quota.get("resetTime"))
            if reset is not None:
                reset_times[display_name] = reset

        if not breakdown:
            raise ProviderError("no model carries quota information")

        min_remaining = min(breakdown.values())
        logger.info(
            "antigravity_usage_fetched",
            remaining_percent=round(min_remaining, 1),
            models=len(breakdown),
            reset_times_parsed=len(reset_times),
        )
        return ProviderResult(
            usage=QuotaBased(
                remaining=int(min_remaining),
                entitlement=100,
                overage_permitted=False,
            ),
            details=DetailedUsage(
                model_breakdown=breakdown,
                model_reset_times=reset_times or None,
                next_reset=min(reset_times.values()) if reset_times else None,
                plan_type="Antigravity",
                email=email or None,
                auth_source=ANTIGRAVITY_ACCOUNTS_PATH,
            ),
        )
