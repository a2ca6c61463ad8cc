import threading
from datetime import datetime, timezone

import structlog

from usagewatch.errors import DecodingError
from usagewatch.models import (
    CachedUsage,
    ProviderIdentifier,
    ProviderUsage,
    decode_cached_usage,
    encode_cached_usage,
)
from usagewatch.store import KeyValueStore

logger = structlog.get_logger()

_KEY_PREFIX = "cached_usage."


class ResultCache:
    """
    ResultCache: Is a thread-safe store of the last successful
    usage per provider, used as the fallback when a live fetch
    fails.

    Every access goes through a single lock, so a reader sees
    either the previous or the new snapshot, never a partial one.
    Entries are never expired; the timestamp tells consumers how
    old a snapshot is.

    When a KeyValueStore is attached, each set() also persists the
    snapshot and a memory miss is answered from the store, which
    lets a snapshot survive a restart.
    """

    def __init__(self, store: "KeyValueStore | None" = None) -> "None":
        self._lock: "threading.Lock" = threading.Lock()
        self._entries: "dict[ProviderIdentifier, CachedUsage]" = {}
        self._store = store

    @staticmethod
    def make_key(identifier: "ProviderIdentifier") -> "str":
        return f"{_KEY_PREFIX}{identifier.value}"

    def set(
        self,
        identifier: "ProviderIdentifier",
        usage: "ProviderUsage",
        timestamp: "datetime | None" = None,
    ) -> "None":
        entry = CachedUsage(
            usage=usage,
            timestamp=timestamp or datetime.now(timezone.utc),
        )
        with self._lock:
            self._entries[identifier] = entry
            # synchronous write of one small record; callers on the event
            # loop block for its duration
            if self._store is not None:
                self._store.set(self.make_key(identifier), encode_cached_usage(entry))

    def get(self, identifier: "ProviderIdentifier") -> "ProviderUsage | None":
        entry = self.get_entry(identifier)
        return entry.usage if entry is not None else None

    def get_entry(self, identifier: "ProviderIdentifier") -> "CachedUsage | None":
        with self._lock:
            entry = self._entries.get(identifier)
            if entry is not None or self._store is None:
                return entry

            raw = self._store.get(self.make_key(identifier))
            if raw is None:
                return None
            try:
                entry = decode_cached_usage(raw)
            except (DecodingError, ValueError, OverflowError) as exc:
                logger.warning(
                    "cached_usage_unreadable",
                    provider=identifier.value,
                    error=str(exc),
                )
                return None
            self._entries[identifier] = entry
            return entry

    def clear(self) -> "None":
        """
        drops the in-memory entries. Persisted records are kept.
        """
        with self._lock:
            self._entries.clear()
