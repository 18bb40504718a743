"""
sap_gateway.core.store - Key/value storage for session and cache state
=======================================================================

The engine never owns process-wide caches. Session, CSRF, metadata and
service-catalog entries live in a :class:`KeyValueStore` handed in by the
caller, optionally wrapped in a :class:`ScopedStore` so separate execution
scopes (tenants, workflows) never see each other's entries.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Generic, Iterable, List, Optional, Protocol, TypeVar
import threading

T = TypeVar("T")


class KeyValueStore(Protocol):
    """Minimal store interface. Implementations need not be transactional."""

    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> Iterable[str]: ...


class InMemoryStore:
    """
    Thread-safe dict-backed store.

    Examples
    --------
    >>> store = InMemoryStore()
    >>> store.set("a", 1)
    >>> store.get("a")
    1
    """

    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class ScopedStore:
    """
    View of another store restricted to one execution scope.

    Keys are transparently prefixed with ``"{scope}:"``.
    """

    def __init__(self, store: KeyValueStore, scope: str) -> None:
        self.store = store
        self.scope = scope
        self._prefix = f"{scope}:"

    def get(self, key: str) -> Optional[Any]:
        return self.store.get(self._prefix + key)

    def set(self, key: str, value: Any) -> None:
        self.store.set(self._prefix + key, value)

    def delete(self, key: str) -> None:
        self.store.delete(self._prefix + key)

    def keys(self) -> List[str]:
        n = len(self._prefix)
        return [k[n:] for k in self.store.keys() if k.startswith(self._prefix)]


@dataclass
class CacheEntry(Generic[T]):
    """A cached value with an absolute expiry (epoch seconds)."""
    value: T
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at
