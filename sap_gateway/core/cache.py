"""
sap_gateway.core.cache - TTL caches for metadata and service catalogs
=====================================================================
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional
import hashlib
import logging
import time

from sap_gateway.core.store import CacheEntry, KeyValueStore

logger = logging.getLogger("sap_gateway.cache")

METADATA_TTL = 5 * 60.0
SERVICES_TTL = 5 * 60.0

_PREFIXES = ("metadata_", "services_")


def cache_key(host: str, service_path: str, credential_id: str = "") -> str:
    """
    Stable cache key for a (host, service path, credential) triple.

    The credential id is hashed together with the rest so it never
    appears in clear text inside the store.
    """
    raw = f"{host}::{service_path}::{credential_id}"
    return "cache_" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


class CacheManager:
    """
    TTL cache layered on a :class:`~sap_gateway.core.store.KeyValueStore`.

    Entries are checked lazily: an expired entry is deleted when read and
    reported as a miss. There is no background sweep; call
    :meth:`cleanup_expired` to purge explicitly.

    Parameters
    ----------
    store : KeyValueStore
        Backing store (usually a ``ScopedStore``)
    clock : callable, optional
        Returns the current time in epoch seconds
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.store = store
        self.clock = clock or time.time

    # ---------------- generic ----------------

    def _get(self, key: str) -> Optional[Any]:
        entry = self.store.get(key)
        if not isinstance(entry, CacheEntry):
            return None
        if entry.is_expired(self.clock()):
            self.store.delete(key)
            return None
        return entry.value

    def _set(self, key: str, value: Any, ttl: float) -> None:
        self.store.set(key, CacheEntry(value=value, expires_at=self.clock() + ttl))

    # ---------------- metadata ----------------

    def get_metadata(
        self, host: str, service_path: str, credential_id: str = ""
    ) -> Optional[Dict[str, Any]]:
        """
        Cached ``{"entity_sets": [...], "function_imports": [...], "schema": ...}``
        or None. ``schema`` is the parsed document when one was stored.
        """
        return self._get("metadata_" + cache_key(host, service_path, credential_id))

    def set_metadata(
        self,
        host: str,
        service_path: str,
        entity_sets: List[str],
        function_imports: List[str],
        credential_id: str = "",
        schema: Any = None,
    ) -> None:
        self._set(
            "metadata_" + cache_key(host, service_path, credential_id),
            {
                "entity_sets": list(entity_sets),
                "function_imports": list(function_imports),
                "schema": schema,
            },
            METADATA_TTL,
        )

    def invalidate_on_404(self, host: str, service_path: str, credential_id: str = "") -> None:
        """Drop the metadata entry only; catalog entries stay."""
        self.store.delete("metadata_" + cache_key(host, service_path, credential_id))
        logger.info("Metadata cache invalidated after 404 for %s", service_path)

    # ---------------- service catalog ----------------

    def get_services(self, host: str, credential_id: str = "") -> Optional[List[Any]]:
        return self._get("services_" + cache_key(host, "catalog", credential_id))

    def set_services(self, host: str, services: List[Any], credential_id: str = "") -> None:
        self._set("services_" + cache_key(host, "catalog", credential_id), list(services), SERVICES_TTL)

    # ---------------- maintenance ----------------

    def clear_all(self) -> int:
        """Delete every cache entry. Returns the number removed."""
        removed = 0
        for key in list(self.store.keys()):
            if key.startswith(_PREFIXES):
                self.store.delete(key)
                removed += 1
        return removed

    def cleanup_expired(self) -> int:
        """Delete expired cache entries. Returns the number removed."""
        now = self.clock()
        removed = 0
        for key in list(self.store.keys()):
            if not key.startswith(_PREFIXES):
                continue
            entry = self.store.get(key)
            if isinstance(entry, CacheEntry) and entry.is_expired(now):
                self.store.delete(key)
                removed += 1
        return removed
