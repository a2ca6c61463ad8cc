import asyncio
import signal
from typing import Callable

import structlog
from prometheus_client import start_http_server

from usagewatch.cache import ResultCache
from usagewatch.cli import parse_args
from usagewatch.config import Config
from usagewatch.credentials import LocalCredentialStore
from usagewatch.logging import setup_logging
from usagewatch.metrics import MetricsUpdater
from usagewatch.models import ProviderIdentifier
from usagewatch.orchestrator import FetchOrchestrator
from usagewatch.provider.antigravity import AntigravityProvider
from usagewatch.provider.base import UsageProvider
from usagewatch.provider.claude import ClaudeProvider
from usagewatch.provider.codex import CodexProvider
from usagewatch.provider.gemini_cli import GeminiCLIProvider
from usagewatch.provider.google_oauth import OAuthClientConfig
from usagewatch.provider.open_code import OpenCodeProvider
from usagewatch.provider.open_code_zen import OpenCodeZenProvider
from usagewatch.provider.open_router import OpenRouterProvider
from usagewatch.provider.zai_coding_plan import ZaiCodingPlanProvider
from usagewatch.registry import ProviderRegistry
from usagewatch.store import FileStore, KeyValueStore, MemoryStore

logger = structlog.get_logger()


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9186' or '0.0.0.0:9186'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def build_registry(
    config: "Config",
    store: "KeyValueStore | None" = None,
) -> "ProviderRegistry":
    """
    creates the adapters this process can serve. Disabled providers
    are never constructed. The Copilot adapter needs a browser
    session and is only available to embedders that supply one.
    """
    credentials = LocalCredentialStore(
        claude_credentials_path=config.claude_credentials_path,
        codex_auth_path=config.codex_auth_path,
        opencode_auth_path=config.opencode_auth_path,
    )
    factories: "list[tuple[ProviderIdentifier, Callable[[], UsageProvider]]]" = [
        (ProviderIdentifier.CLAUDE, lambda: ClaudeProvider(credentials)),
        (ProviderIdentifier.CODEX, lambda: CodexProvider(credentials)),
        (ProviderIdentifier.OPEN_ROUTER, lambda: OpenRouterProvider(credentials)),
        (ProviderIdentifier.OPEN_CODE, lambda: OpenCodeProvider(credentials)),
        (ProviderIdentifier.ZAI_CODING_PLAN, lambda: ZaiCodingPlanProvider(credentials)),
        (
            ProviderIdentifier.OPEN_CODE_ZEN,
            lambda: OpenCodeZenProvider(
                executable=config.opencode_binary_path,
                monthly_limit=config.opencode_monthly_limit,
                store=store,
            ),
        ),
    ]
    if config.gemini_enabled:
        factories.append(
            (
                ProviderIdentifier.GEMINI_CLI,
                lambda: GeminiCLIProvider(
                    OAuthClientConfig(config.gemini_client_id, config.gemini_client_secret),
                    accounts_path=config.antigravity_accounts_path,
                ),
            )
        )
    else:
        logger.info(
            "provider_skipped", provider="gemini_cli", reason="oauth_client_unset"
        )
    if config.antigravity_enabled:
        factories.append(
            (
                ProviderIdentifier.ANTIGRAVITY,
                lambda: AntigravityProvider(
                    OAuthClientConfig(
                        config.antigravity_client_id, config.antigravity_client_secret
                    ),
                    accounts_path=config.antigravity_accounts_path,
                ),
            )
        )
    else:
        logger.info(
            "provider_skipped", provider="antigravity", reason="oauth_client_unset"
        )

    registry = ProviderRegistry()
    for identifier, factory in factories:
        if config.is_disabled(identifier.value):
            logger.info("provider_skipped", provider=identifier.value, reason="disabled")
            continue
        registry.register(factory())
        logger.info("provider_enabled", provider=identifier.value)
    return registry


def main() -> "None":
    config = parse_args()
    setup_logging(config.log_level, config.log_format)

    store: "KeyValueStore" = (
        FileStore(config.cache_dir) if config.cache_dir else MemoryStore()
    )
    registry = build_registry(config, store)
    if not len(registry):
        raise SystemExit("No providers enabled. Check USAGEWATCH_DISABLED_PROVIDERS.")

    cache = ResultCache(store)
    metrics_updater = MetricsUpdater()

    host, port = _parse_listen_address(config.listen_address)
    start_http_server(port, addr=host)
    logger.info("metrics_server_started", host=host, port=port)

    orchestrator = FetchOrchestrator(
        registry,
        cache,
        timeout_seconds=config.fetch_timeout,
        metrics_updater=metrics_updater,
        interval_seconds=config.scrape_interval,
    )

    async def _run() -> "None":
        loop = asyncio.get_running_loop()
        # for SIGINT and SIGTERM, signal the orchestrator
        # to stop gracefully
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, orchestrator.stop)

        try:
            await orchestrator.run()
        finally:
            logger.info("shutting_down")
            await orchestrator.close()
            logger.info("shutdown_complete")

    asyncio.run(_run())


if __name__ == "__main__":
    main()
