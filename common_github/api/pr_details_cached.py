# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""PR details cached API (REST).

Resource:
  GET /repos/{owner}/{repo}/pulls/{pr_number}

Example API Response (fields we keep):
  {
    "number": 123456,
    "title": "python3Packages.foo: 1.0 -> 1.1",
    "user": {"login": "contributor123"},
    "head": {"sha": "21a03b316dc1e5031183965e5798b0d9fe2e64b3", "ref": "foo-update"},
    "base": {"ref": "staging"}
  }

Cached Fields:
  PRRecord: id, title, author, target_branch, head_commit, cached_at

Cache:
  Internal BaseDiskCache instance (disk + memory), file pr-details.json

TTL:
  6 hours from cached_at, for every PR state. An expired entry is refetched; if the
  refetch fails the error is raised and the expired entry stays on disk.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional, TYPE_CHECKING

from cache.cache_base import BaseDiskCache
from common import DEFAULT_PR_TTL_S, PR_CACHE_FILE_NAME, pr_tracker_cache_dir
from ..exceptions import GitHubAPIError
from .base_cached import CachedResourceBase

if TYPE_CHECKING:  # pragma: no cover
    from .. import GitHubAPIClient

_logger = logging.getLogger(__name__)

CACHE_NAME = "pull_request"  # Match API label in logs
API_CALL_FORMAT = "REST GET /repos/{owner}/{repo}/pulls/{pr_number}"
CACHE_KEY_FORMAT = "{owner}/{repo}:pr:{pr_number}"


@dataclass(frozen=True)
class PRRecord:
    """Pull request metadata needed to track propagation. Immutable; replaced on refetch."""

    id: int
    title: str
    author: str
    target_branch: str
    head_commit: str
    cached_at: int

    def to_cache_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_cache_dict(cls, d: Dict[str, Any]) -> "PRRecord":
        return cls(
            id=int(d["id"]),
            title=str(d.get("title") or ""),
            author=str(d.get("author") or ""),
            target_branch=str(d["target_branch"]),
            head_commit=str(d["head_commit"]),
            cached_at=int(d.get("cached_at") or 0),
        )

    @classmethod
    def from_api(cls, pr_number: int, pr_data: Dict[str, Any], *, cached_at: int) -> "PRRecord":
        """Build a record from a pulls/{n} response.

        Raises:
            GitHubAPIError: required fields are missing
        """
        try:
            return cls(
                id=int(pr_number),
                title=str(pr_data.get("title") or ""),
                author=str((pr_data.get("user") or {}).get("login") or ""),
                target_branch=str(pr_data["base"]["ref"]),
                head_commit=str(pr_data["head"]["sha"]),
                cached_at=int(cached_at),
            )
        except (KeyError, TypeError) as e:
            raise GitHubAPIError(
                status_code=200,
                endpoint=f"pulls/{pr_number}",
                message=f"Malformed pull request payload for #{pr_number}: missing {e}",
            )


# =============================================================================
# Cache Implementation
# =============================================================================

class PRDetailsDiskCache(BaseDiskCache):
    """Cache for individual PR records, keyed by CACHE_KEY_FORMAT."""

    _SCHEMA_VERSION = 1

    def __init__(self, *, cache_file: Path):
        super().__init__(cache_file=cache_file, schema_version=self._SCHEMA_VERSION)

    def get_entry(self, key: str) -> Optional[Dict[str, Any]]:
        """Get the cached entry regardless of age (freshness is the caller's policy)."""
        with self._mu:
            self._load_once()
            ent = self._check_item(key)
            return dict(ent) if isinstance(ent, dict) else None

    def put(self, key: str, entry: Dict[str, Any]) -> None:
        """Store an entry, replacing the previous one. Disk errors only cost durability."""
        with self._mu:
            self._load_once()
            self._set_item(key, dict(entry))
        try:
            self.flush()
        except OSError as e:
            _logger.warning(f"Failed to persist PR cache {self.cache_file}: {e}")


def _get_cache_file() -> Path:
    """Get cache file path."""
    return pr_tracker_cache_dir() / PR_CACHE_FILE_NAME


# Module-level default cache instance (loaded lazily on first access)
_CACHE = PRDetailsDiskCache(cache_file=_get_cache_file())


# =============================================================================
# Public API
# =============================================================================

class PRDetailsCached(CachedResourceBase[PRRecord]):
    def __init__(self, api: "GitHubAPIClient", *, cache: Optional[PRDetailsDiskCache] = None, ttl_s: int = DEFAULT_PR_TTL_S):
        super().__init__(api, ttl_s=ttl_s)
        self._cache = cache if cache is not None else _CACHE

    @property
    def cache_name(self) -> str:
        return CACHE_NAME

    def api_call_format(self) -> str:
        return API_CALL_FORMAT

    def cache_key(self, **kwargs: Any) -> str:
        pr_number = int(kwargs["pr_number"])
        return CACHE_KEY_FORMAT.format(owner=self.api.owner, repo=self.api.repo, pr_number=pr_number)

    def cache_read(self, *, key: str) -> Optional[Dict[str, Any]]:
        return self._cache.get_entry(key)

    def value_from_cache_entry(self, *, entry: Dict[str, Any]) -> PRRecord:
        return PRRecord.from_cache_dict(entry)

    def cache_write(self, *, key: str, value: PRRecord) -> None:
        self._cache.put(key, value.to_cache_dict())

    def fetch(self, **kwargs: Any) -> PRRecord:
        pr_number = int(kwargs["pr_number"])
        _logger.debug(f"Fetching PR #{pr_number} from GitHub API")
        pr_data = self.api.get_pull_request(pr_number)
        return PRRecord.from_api(pr_number, pr_data, cached_at=int(time.time()))


def get_pr_record_cached(
    api: "GitHubAPIClient",
    *,
    pr_number: int,
    cache: Optional[PRDetailsDiskCache] = None,
    ttl_s: int = DEFAULT_PR_TTL_S,
) -> PRRecord:
    """Resolve a PR number to its record, using the cache while it's fresh.

    Raises:
        GitHubAPIError (or subclass): cache miss/expiry and the lookup failed
    """
    return PRDetailsCached(api, cache=cache, ttl_s=ttl_s).get(pr_number=pr_number)

