import json
import os
from pathlib import Path
from typing import Any, Protocol

import structlog

from usagewatch.models import ProviderIdentifier

logger = structlog.get_logger()

CLAUDE_CREDENTIALS_PATH = "~/.claude/.credentials.json"
CODEX_AUTH_PATH = "~/.codex/auth.json"
OPENCODE_AUTH_PATH = "~/.local/share/opencode/auth.json"

# provider -> entry name inside the OpenCode auth.json
_OPENCODE_AUTH_KEYS: "dict[ProviderIdentifier, str]" = {
    ProviderIdentifier.CLAUDE: "anthropic",
    ProviderIdentifier.OPEN_ROUTER: "openrouter",
    ProviderIdentifier.OPEN_CODE: "opencode",
    ProviderIdentifier.ZAI_CODING_PLAN: "zai-coding-plan",
}


class CredentialStore(Protocol):
    """
    CredentialStore is the opaque secret lookup the adapters borrow.
    A None result means the credential is not available, which
    adapters report as an authentication failure.
    """

    def get_access_token(self, provider: "ProviderIdentifier") -> "str | None": ...

    def get_api_key(self, provider: "ProviderIdentifier") -> "str | None": ...

    def get_account_id(self, provider: "ProviderIdentifier") -> "str | None": ...


def _env_name(provider: "ProviderIdentifier", suffix: "str") -> "str":
    return f"USAGEWATCH_{provider.value.upper()}_{suffix}"


class LocalCredentialStore:
    """
    LocalCredentialStore resolves credentials from environment
    variables first (USAGEWATCH_<PROVIDER>_TOKEN / _API_KEY /
    _ACCOUNT_ID), then from the files the provider CLIs leave
    behind on the local machine. Files are re-read on every lookup
    so that a re-login is picked up by the next round.
    """

    def __init__(
        self,
        claude_credentials_path: "str" = CLAUDE_CREDENTIALS_PATH,
        codex_auth_path: "str" = CODEX_AUTH_PATH,
        opencode_auth_path: "str" = OPENCODE_AUTH_PATH,
    ) -> "None":
        self._claude_path = Path(claude_credentials_path).expanduser()
        self._codex_path = Path(codex_auth_path).expanduser()
        self._opencode_path = Path(opencode_auth_path).expanduser()

    def get_access_token(self, provider: "ProviderIdentifier") -> "str | None":
        from_env = os.environ.get(_env_name(provider, "TOKEN"))
        if from_env:
            return from_env

        if provider is ProviderIdentifier.CLAUDE:
            data = _read_json(self._claude_path)
            oauth = data.get("claudeAiOauth")
            if not isinstance(oauth, dict):
                oauth = data
            token = oauth.get("accessToken") or oauth.get("access_token")
            if isinstance(token, str) and token:
                return token

        if provider is ProviderIdentifier.CODEX:
            tokens = _read_json(self._codex_path).get("tokens")
            if isinstance(tokens, dict):
                token = tokens.get("access_token")
                if isinstance(token, str) and token:
                    return token

        return self._opencode_entry(provider, "access")

    def get_api_key(self, provider: "ProviderIdentifier") -> "str | None":
        from_env = os.environ.get(_env_name(provider, "API_KEY"))
        if from_env:
            return from_env
        return self._opencode_entry(provider, "key")

    def get_account_id(self, provider: "ProviderIdentifier") -> "str | None":
        from_env = os.environ.get(_env_name(provider, "ACCOUNT_ID"))
        if from_env:
            return from_env

        if provider is ProviderIdentifier.CODEX:
            tokens = _read_json(self._codex_path).get("tokens")
            if isinstance(tokens, dict):
                account_id = tokens.get("account_id")
                if isinstance(account_id, str) and account_id:
                    return account_id
        return None

    def _opencode_entry(
        self,
        provider: "ProviderIdentifier",
        field: "str",
    ) -> "str | None":
        name = _OPENCODE_AUTH_KEYS.get(provider)
        if name is None:
            return None
        entry = _read_json(self._opencode_path).get(name)
        if not isinstance(entry, dict):
            return None
        value = entry.get(field)
        if isinstance(value, str) and value:
            return value
        return None


def _read_json(path: "Path") -> "dict[str, Any]":
    """
    returns the JSON object stored at path, or an empty dict when the
    file is missing or unreadable.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as exc:
        logger.warning("credential_file_unreadable", path=str(path), error=str(exc))
        return {}
    return data if isinstance(data, dict) else {}
