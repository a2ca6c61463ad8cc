import httpx
import structlog

from usagewatch.credentials import CredentialStore
from usagewatch.errors import AuthenticationFailedError, DecodingError
from usagewatch.models import PayAsYouGo, ProviderIdentifier, ProviderResult, ProviderType
from usagewatch.parsing import coerce_float
from usagewatch.provider.base import (
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    check_status,
    decode_json_object,
    send_request,
)
from usagewatch.provider.open_router import credit_utilization

logger = structlog.get_logger()

OPENCODE_CREDITS_URL = "https://api.opencode.ai/v1/credits"


class OpenCodeProvider:
    """
    OpenCodeProvider reads the OpenCode credits endpoint.
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
        return ProviderIdentifier.OPEN_CODE

    @property
    def type(self) -> "ProviderType":
        return ProviderType.PAY_AS_YOU_GO

    async def close(self) -> "None":
        await self._client.aclose()

    async def fetch(self) -> "ProviderResult":
        api_key = self._credentials.get_api_key(self.identifier)
        if not api_key:
            logger.debug("opencode_api_key_missing")
            raise AuthenticationFailedError("OpenCode API key not found")

        resp = await send_request(
            self._client,
            "GET",
            OPENCODE_CREDITS_URL,
            headers={"Authorization": f"Bearer {api_key}"},
        )
        # 403/404 mean the account has no access to the credits API
        check_status(resp, self.identifier, auth_statuses=(401, 403, 404))

        # the endpoint answers a plain "Not Found" with HTTP 200 when
        # it is not enabled
        if resp.text.strip() == "Not Found":
            raise AuthenticationFailedError("OpenCode credits endpoint not available")

        data = decode_json_object(resp).get("data")
        if not isinstance(data, dict):
            raise DecodingError("credits response has no data object")
        total = coerce_float(data.get("total_credits"))
        used = coerce_float(data.get("used_credits"))
        if total is None or used is None:
            raise DecodingError("credits response missing total_credits/used_credits")

        if total <= 0:
            logger.warning("opencode_zero_credits")
        utilization = credit_utilization(used, total)

        logger.info(
            "opencode_usage_fetched",
            utilization=round(utilization, 2),
            used=used,
            total=total,
        )
        return ProviderResult(
            usage=PayAsYouGo(utilization=utilization, cost=None, resets_at=None),
        )
