from datetime import datetime, timezone

import httpx
import pytest
import respx

from tests.fakes import StaticCredentials
from usagewatch.errors import AuthenticationFailedError, DecodingError, NetworkError
from usagewatch.models import ProviderIdentifier, QuotaBased
from usagewatch.provider.claude import ANTHROPIC_BETA, CLAUDE_USAGE_URL, ClaudeProvider

_CREDENTIALS = StaticCredentials(tokens={ProviderIdentifier.CLAUDE: "oauth-token"})


class TestClaudeProviderFetch:
    @pytest.mark.asyncio
    @respx.mock
    async def test_fetches_seven_day_window(self) -> "None":
        route = respx.get(CLAUDE_USAGE_URL).mock(
            return_value=httpx.Response(
                200,
                json={
                    "five_hour": {
                        "utilization": 42.0,
                        "resets_at": "2026-01-01T05:00:00Z",
                    },
                    "seven_day": {
                        "utilization": 9.0,
                        "resets_at": "2026-01-07T00:00:00Z",
                    },
                },
            )
        )

        provider = ClaudeProvider(_CREDENTIALS)
        result = await provider.fetch()

        assert result.usage == QuotaBased(remaining=91, entitlement=100)
        assert result.details is not None
        assert result.details.five_hour_usage == 42.0
        assert result.details.seven_day_reset == datetime(
            2026, 1, 7, tzinfo=timezone.utc
        )

        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer oauth-token"
        assert request.headers["anthropic-beta"] == ANTHROPIC_BETA
        await provider.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_five_hour_window_is_optional(self) -> "None":
        respx.get(CLAUDE_USAGE_URL).mock(
            return_value=httpx.Response(200, json={"seven_day": {"utilization": 50}})
        )

        result = await ClaudeProvider(_CREDENTIALS).fetch()

        assert result.usage == QuotaBased(remaining=50, entitlement=100)
        assert result.details is not None
        assert result.details.five_hour_usage is None

    @pytest.mark.asyncio
    async def test_missing_token(self, no_credentials: "StaticCredentials") -> "None":
        with pytest.raises(AuthenticationFailedError):
            await ClaudeProvider(no_credentials).fetch()

    @pytest.mark.asyncio
    @respx.mock
    async def test_401_is_authentication_failure(self) -> "None":
        respx.get(CLAUDE_USAGE_URL).mock(return_value=httpx.Response(401))
        with pytest.raises(AuthenticationFailedError):
            await ClaudeProvider(_CREDENTIALS).fetch()

    @pytest.mark.asyncio
    @respx.mock
    async def test_500_is_network_error(self) -> "None":
        respx.get(CLAUDE_USAGE_URL).mock(return_value=httpx.Response(500))
        with pytest.raises(NetworkError):
            await ClaudeProvider(_CREDENTIALS).fetch()

    @pytest.mark.asyncio
    @respx.mock
    async def test_transport_error_is_network_error(self) -> "None":
        respx.get(CLAUDE_USAGE_URL).mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(NetworkError):
            await ClaudeProvider(_CREDENTIALS).fetch()

    @pytest.mark.asyncio
    @respx.mock
    async def test_missing_seven_day_is_decoding_error(self) -> "None":
        respx.get(CLAUDE_USAGE_URL).mock(
            return_value=httpx.Response(200, json={"five_hour": {"utilization": 1}})
        )
        with pytest.raises(DecodingError):
            await ClaudeProvider(_CREDENTIALS).fetch()

    @pytest.mark.asyncio
    @respx.mock
    async def test_invalid_json_is_decoding_error(self) -> "None":
        respx.get(CLAUDE_USAGE_URL).mock(
            return_value=httpx.Response(200, text="<html>maintenance</html>")
        )
        with pytest.raises(DecodingError):
            await ClaudeProvider(_CREDENTIALS).fetch()
