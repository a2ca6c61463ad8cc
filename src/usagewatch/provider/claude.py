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
from usagewatch.parsing import coerce_float, parse_iso_datetime
from usagewatch.provider.base import (
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    check_status,
    decode_json_object,
    send_request,
)

logger = structlog.get_logger()

CLAUDE_USAGE_URL = "https://api.anthropic.com/api/oauth/usage"
ANTHROPIC_BETA = "oauth-2025-04-20"


class ClaudeProvider:
    """
    ClaudeProvider reads the OAuth usage endpoint and reports the
    seven day rolling window as a quota of 100 percentage points.
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
        return ProviderIdentifier.CLAUDE

    @property
    def type(self) -> "ProviderType":
        return ProviderType.QUOTA_BASED

    async def close(self) -> "None":
        await self._client.aclose()

    async def fetch(self) -> "ProviderResult":
        token = self._credentials.get_access_token(self.identifier)
        if not token:
            raise AuthenticationFailedError("Anthropic access token not available")

        resp = await send_request(
            self._client,
            "GET",
            CLAUDE_USAGE_URL,
            headers={
                "Authorization": f"Bearer {token}",
                "anthropic-beta": ANTHROPIC_BETA,
                "Accept": "application/json",
            },
        )
        check_status(resp, self.identifier)
        data = decode_json_object(resp)

        seven_day = data.get("seven_day")
        if not isinstance(seven_day, dict):
            raise DecodingError("missing seven_day usage window")
        utilization = coerce_float(seven_day.get("utilization"))
        if utilization is None:
            raise DecodingError("seven_day window has no utilization")

        details = DetailedUsage(
            seven_day_usage=utilization,
            seven_day_reset=parse_iso_datetime(seven_day.get("resets_at")),
            auth_source="Claude Code OAuth credentials",
        )
        five_hour = data.get("five_hour")
        if isinstance(five_hour, dict):
            details.five_hour_usage = coerce_float(five_hour.get("utilization"))
            details.five_hour_reset = parse_iso_datetime(five_hour.get("resets_at"))

        logger.info(
            "claude_usage_fetched",
            utilization=utilization,
            resets_at=seven_day.get("resets_at"),
        )
        return ProviderResult(
            usage=QuotaBased(
                remaining=int(100 - utilization),
                entitlement=100,
                overage_permitted=False,
            ),
            details=details,
        )
