"""Base class for TTL-cached GitHub API resources.

A resource subclass only says how to key, read, write and fetch its entries; this
module owns the lookup protocol shared by all of them:

    lookup (cache lock) -> fresh? return it
                        -> otherwise fetch (no cache lock held) -> store -> return

Entries carry a `cached_at` epoch timestamp; an entry is fresh while its age is
strictly below the resource TTL.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, Optional, Tuple, TypeVar, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .. import GitHubAPIClient

_logger = logging.getLogger(__name__)

T = TypeVar("T")

CachedEntry = Dict[str, Any]


def entry_age_s(entry: CachedEntry, now: int) -> Optional[int]:
    """Age of a cache entry in seconds, or None if it has no usable timestamp."""
    cached_at = int(entry.get("cached_at", 0) or 0)
    if cached_at <= 0:
        return None
    return now - cached_at


class CachedResourceBase(ABC, Generic[T]):
    """One GitHub resource behind a disk cache with a fixed TTL.

    Subclasses define the cache key, the (de)serialization of entries and the
    network fetch. Fetch errors always propagate to the caller.
    """

    def __init__(self, api: "GitHubAPIClient", *, ttl_s: int):
        self.api: GitHubAPIClient = api
        self.ttl_s = int(ttl_s)

    @property
    @abstractmethod
    def cache_name(self) -> str:
        """Stats label, e.g. 'pull_request'."""

    @abstractmethod
    def api_call_format(self) -> str:
        """The REST call behind this resource, for logs."""

    @abstractmethod
    def cache_key(self, **kwargs: Any) -> str:
        ...

    @abstractmethod
    def cache_read(self, *, key: str) -> Optional[CachedEntry]:
        """Stored entry regardless of age, or None."""

    @abstractmethod
    def cache_write(self, *, key: str, value: T) -> None:
        ...

    @abstractmethod
    def value_from_cache_entry(self, *, entry: CachedEntry) -> T:
        ...

    @abstractmethod
    def fetch(self, **kwargs: Any) -> T:
        ...

    def is_cache_entry_fresh(self, *, entry: CachedEntry, now: int) -> bool:
        age = entry_age_s(entry, now)
        return age is not None and age < self.ttl_s

    def inflight_lock_key(self, **kwargs: Any) -> Optional[str]:
        """Key used to collapse concurrent fetches of the same entry (None: no dedup)."""
        return self.cache_key(**kwargs)

    def _lookup(self, key: str) -> Tuple[Optional[CachedEntry], bool]:
        entry = self.cache_read(key=key)
        if entry is None:
            return None, False
        return entry, self.is_cache_entry_fresh(entry=entry, now=int(time.time()))

    def get(self, **kwargs: Any) -> T:
        """Return the cached value while fresh, else fetch and store a new one.

        An expired entry is never returned; if its refresh fails the error is raised
        and the expired entry is left in place.
        """
        key = self.cache_key(**kwargs)

        entry, fresh = self._lookup(key)
        if fresh:
            self.api._cache_hit(self.cache_name)
            return self.value_from_cache_entry(entry=entry)
        state = "expired" if entry is not None else "missing"
        self.api._cache_miss(f"{self.cache_name}.{state}")
        _logger.debug(f"{self.cache_name} {key} {state} (ttl {self.ttl_s}s), calling {self.api_call_format()}")

        lock_key = self.inflight_lock_key(**kwargs)
        if lock_key is None:
            return self._fetch_and_store(key, **kwargs)

        with self.api._inflight_lock(lock_key):
            # Another thread may have refreshed the entry while we waited.
            entry, fresh = self._lookup(key)
            if fresh:
                self.api._cache_hit(self.cache_name)
                return self.value_from_cache_entry(entry=entry)
            return self._fetch_and_store(key, **kwargs)

    def _fetch_and_store(self, key: str, **kwargs: Any) -> T:
        value = self.fetch(**kwargs)
        self.cache_write(key=key, value=value)
        self.api._cache_write(self.cache_name, entries=1)
        return value
