from typing import Iterable, Iterator

import structlog

from usagewatch.models import ProviderIdentifier
from usagewatch.provider.base import UsageProvider

logger = structlog.get_logger()


class ProviderRegistry:
    """
    ProviderRegistry holds the active adapters, at most one per
    identifier, in registration order. It is built once at startup
    and handed to whatever needs it.
    """

    def __init__(self, providers: "Iterable[UsageProvider]" = ()) -> "None":
        self._providers: "dict[ProviderIdentifier, UsageProvider]" = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: "UsageProvider") -> "None":
        """
        adds an adapter, replacing any adapter already registered
        under the same identifier.
        """
        if provider.identifier in self._providers:
            logger.warning("provider_replaced", provider=provider.identifier.value)
        self._providers[provider.identifier] = provider

    def get(self, identifier: "ProviderIdentifier") -> "UsageProvider | None":
        return self._providers.get(identifier)

    def all(self) -> "list[UsageProvider]":
        return list(self._providers.values())

    def identifiers(self) -> "list[ProviderIdentifier]":
        return list(self._providers)

    def __len__(self) -> "int":
        return len(self._providers)

    def __iter__(self) -> "Iterator[UsageProvider]":
        return iter(self.all())

    def __contains__(self, identifier: "object") -> "bool":
        return identifier in self._providers

    async def close(self) -> "None":
        """
        closes all provider sessions.
        """
        for provider in self._providers.values():
            await provider.close()
