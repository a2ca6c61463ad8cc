from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import structlog

from usagewatch.credentials import CredentialStore
from usagewatch.errors import AuthenticationFailedError, DecodingError
from usagewatch.models import (
    DetailedUsage,
    ProviderIdentifier,
    ProviderResult,
    ProviderType,
    QuotaBased,
)
from usagewatch.parsing import coerce_float, from_epoch_seconds
from usagewatch.provider.base import (
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    check_status,
    decode_json_object,
    send_request,
)

logger = structlog.get_logger()

CODEX_USAGE_URL = "https://chatgpt.com/backend-api/wham/usage"
CODEX_AUTH_SOURCE = "~/.codex/auth.json"


def _window_reset(window: "dict[str, Any]", now: "datetime") -> "datetime | None":
    reset_at = from_epoch_seconds(window.get("reset_at"))
    if reset_at is not None:
        return reset_at
    after = coerce_float(window.get("reset_after_seconds"))
    if after is None:
        return None
    return now + timedelta(seconds=after)


class CodexProvider:
    """
    CodexProvider reads the ChatGPT rate limit windows used by the
    Codex CLI. The primary window drives the quota.
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
        return ProviderIdentifier.CODEX

    @property
    def type(self) -> "ProviderType":
        return ProviderType.QUOTA_BASED

    async def close(self) -> "None":
        await self._client.aclose()

    async def fetch(self) -> "ProviderResult":
        token = self._credentials.get_access_token(self.identifier)
        if not token:
            raise AuthenticationFailedError("Codex access token not available")

        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        account_id = self._credentials.get_account_id(self.identifier)
        if account_id:
            headers["chatgpt-account-id"] = account_id

        resp = await send_request(self._client, "GET", CODEX_USAGE_URL, headers=headers)
        check_status(resp, self.identifier, auth_statuses=(401, 403))
        return self.parse_usage(decode_json_object(resp))

    def parse_usage(
        self,
        data: "dict[str, Any]",
        now: "datetime | None" = None,
    ) -> "ProviderResult":
        now = now or datetime.now(timezone.utc)
        rate_limit = data.get("rate_limit")
        if not isinstance(rate_limit, dict):
            raise DecodingError("missing rate_limit")
        primary = rate_limit.get("primary_window")
        if not isinstance(primary, dict):
            raise DecodingError("missing rate_limit.primary_window")
        used_percent = coerce_float(primary.get("used_percent"))
        if used_percent is None:
            raise DecodingError("primary window has no used_percent")

        plan_type = data.get("plan_type")
        details = DetailedUsage(
            plan_type=plan_type if isinstance(plan_type, str) else None,
            five_hour_usage=used_percent,
            five_hour_reset=_window_reset(primary, now),
            auth_source=CODEX_AUTH_SOURCE,
        )
        # secondary window is informational only
        secondary = rate_limit.get("secondary_window")
        if isinstance(secondary, dict):
            details.seven_day_usage = coerce_float(secondary.get("used_percent"))
            details.seven_day_reset = _window_reset(secondary, now)

        logger.info(
            "codex_usage_fetched",
            used_percent=used_percent,
            plan_type=details.plan_type,
        )
        return ProviderResult(
            usage=QuotaBased(
                remaining=int(100 - used_percent),
                entitlement=100,
                overage_permitted=False,
            ),
            details=details,
        )

