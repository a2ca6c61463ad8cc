import os
from dataclasses import dataclass

from usagewatch.credentials import (
    CLAUDE_CREDENTIALS_PATH,
    CODEX_AUTH_PATH,
    OPENCODE_AUTH_PATH,
)
from usagewatch.provider.google_oauth import ANTIGRAVITY_ACCOUNTS_PATH
from usagewatch.provider.open_code_zen import (
    DEFAULT_MONTHLY_LIMIT_USD,
    OPENCODE_BINARY_PATH,
)


def _env_float(name: "str", default: "float") -> "float":
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise SystemExit(f"{name} must be a number, got {raw!r}") from None


@dataclass
class Config:
    # listen_address: format ":9186" or
    # "0.0.0.0:9186"
    listen_address: "str" = ":9186"
    # fetch round interval in seconds
    scrape_interval: "int" = 60
    # per provider fetch timeout in seconds
    fetch_timeout: "float" = 10.0
    # directory for persisted cache records, empty keeps them in memory
    cache_dir: "str" = ""
    log_level: "str" = "info"
    # "console" or "json"
    log_format: "str" = "console"

    claude_credentials_path: "str" = CLAUDE_CREDENTIALS_PATH
    codex_auth_path: "str" = CODEX_AUTH_PATH
    opencode_auth_path: "str" = OPENCODE_AUTH_PATH
    antigravity_accounts_path: "str" = ANTIGRAVITY_ACCOUNTS_PATH
    opencode_binary_path: "str" = OPENCODE_BINARY_PATH
    opencode_monthly_limit: "float" = DEFAULT_MONTHLY_LIMIT_USD

    gemini_client_id: "str" = ""
    gemini_client_secret: "str" = ""
    antigravity_client_id: "str" = ""
    antigravity_client_secret: "str" = ""

    # comma separated provider identifiers to leave out
    disabled_providers: "str" = ""

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            cache_dir=os.environ.get("USAGEWATCH_CACHE_DIR", ""),
            claude_credentials_path=os.environ.get(
                "USAGEWATCH_CLAUDE_CREDENTIALS", CLAUDE_CREDENTIALS_PATH
            ),
            codex_auth_path=os.environ.get("USAGEWATCH_CODEX_AUTH", CODEX_AUTH_PATH),
            opencode_auth_path=os.environ.get(
                "USAGEWATCH_OPENCODE_AUTH", OPENCODE_AUTH_PATH
            ),
            antigravity_accounts_path=os.environ.get(
                "USAGEWATCH_ANTIGRAVITY_ACCOUNTS", ANTIGRAVITY_ACCOUNTS_PATH
            ),
            opencode_binary_path=os.environ.get(
                "USAGEWATCH_OPENCODE_BINARY", OPENCODE_BINARY_PATH
            ),
            opencode_monthly_limit=_env_float(
                "USAGEWATCH_OPENCODE_MONTHLY_LIMIT", DEFAULT_MONTHLY_LIMIT_USD
            ),
            gemini_client_id=os.environ.get("GEMINI_OAUTH_CLIENT_ID", ""),
            gemini_client_secret=os.environ.get("GEMINI_OAUTH_CLIENT_SECRET", ""),
            antigravity_client_id=os.environ.get("ANTIGRAVITY_OAUTH_CLIENT_ID", ""),
            antigravity_client_secret=os.environ.get(
                "ANTIGRAVITY_OAUTH_CLIENT_SECRET", ""
            ),
            disabled_providers=os.environ.get("USAGEWATCH_DISABLED_PROVIDERS", ""),
        )

    @property
    def gemini_enabled(self) -> "bool":
        return bool(self.gemini_client_id and self.gemini_client_secret)

    @property
    def antigravity_enabled(self) -> "bool":
        return bool(self.antigravity_client_id and self.antigravity_client_secret)

    def is_disabled(self, identifier: "str") -> "bool":
        disabled = {
            name.strip() for name in self.disabled_providers.split(",") if name.strip()
        }
        return identifier in disabled
