"""
shared plumbing for the adapters backed by Google's Cloud Code API
(Gemini CLI and Antigravity): the local accounts file and the
refresh-token exchange.
"""

import json
from dataclasses import dataclass
from pathlib import Path

import httpx
import structlog

from usagewatch.errors import (
    AuthenticationFailedError,
    DecodingError,
    NetworkError,
    ProviderError,
)
from usagewatch.models import ProviderIdentifier
from usagewatch.provider.base import decode_json_object, send_request

logger = structlog.get_logger()

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
ANTIGRAVITY_ACCOUNTS_PATH = "~/.config/opencode/antigravity-accounts.json"


@dataclass(frozen=True, slots=True)
class OAuthClientConfig:
    """
    client credentials for the token exchange. Injected from
    configuration, never embedded in code.
    """

    client_id: "str"
    client_secret: "str"

    @property
    def configured(self) -> "bool":
        return bool(self.client_id and self.client_secret)


@dataclass(frozen=True, slots=True)
class GoogleAccount:
    email: "str"
    refresh_token: "str"
    project_id: "str"


@dataclass(frozen=True, slots=True)
class AccountsFile:
    accounts: "list[GoogleAccount]"
    active_index: "int" = 0

    @property
    def active(self) -> "GoogleAccount | None":
        if not self.accounts:
            return None
        if 0 <= self.active_index < len(self.accounts):
            return self.accounts[self.active_index]
        return self.accounts[0]


def load_accounts(path: "str | Path") -> "AccountsFile":
    """
    reads the accounts file written by the opencode antigravity
    plugin. A missing file is a ProviderError, a malformed one a
    DecodingError.
    """
    accounts_path = Path(path).expanduser()
    try:
        raw = accounts_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ProviderError(f"accounts file not found at {accounts_path}") from exc
    except OSError as exc:
        raise ProviderError(f"accounts file not readable at {accounts_path}") from exc

    try:
        data = json.loads(raw)
        entries = data["accounts"]
        accounts = [
            GoogleAccount(
                email=str(entry.get("email", "")),
                refresh_token=str(entry["refreshToken"]),
                project_id=str(entry.get("projectId", "")),
            )
            for entry in entries
        ]
        active_index = int(data.get("activeIndex", 0))
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
        raise DecodingError(f"invalid accounts file format: {exc}") from exc

    return AccountsFile(accounts=accounts, active_index=active_index)


async def refresh_access_token(
    client: "httpx.AsyncClient",
    oauth: "OAuthClientConfig",
    refresh_token: "str",
    provider: "ProviderIdentifier",
) -> "str":
    """
    exchanges a refresh token for a short-lived access token.
    """
    if not oauth.configured:
        raise ProviderError(f"{provider.display_name} OAuth client is not configured")

    resp = await send_request(
        client,
        "POST",
        GOOGLE_TOKEN_URL,
        data={
            "client_id": oauth.client_id,
            "client_secret": oauth.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        },
    )
    # invalid_grant comes back as 400
    if resp.status_code in (400, 401):
        logger.error(
            "oauth_refresh_rejected",
            provider=provider.value,
            status=resp.status_code,
        )
        raise AuthenticationFailedError("failed to refresh access token")
    if not 200 <= resp.status_code < 300:
        raise NetworkError(f"token refresh failed: HTTP {resp.status_code}")

    token = decode_json_object(resp).get("access_token")
    if not isinstance(token, str) or not token:
        raise DecodingError("token response has no access_token")
    return token
