#!/usr/bin/env python3
# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Commit Index

Answers "which tracked branches contain commit C?" and remembers, per branch,
the tip seen at the end of the previous indexing pass (the checkpoint) so the
next pass only walks new history.

Cache file: ~/.cache/pr-tracker/commit-index.json.gz

Cache document format:
{
    "version": 1,
    "items": {                                   # commit -> branches containing it
        "21a03b316dc1e5031183965e5798b0d9fe2e64b3": ["master", "nixos-unstable-small"],
        "5fe0476e605d2564234f00e8123461e1594a9ce7": ["staging", "staging-next"]
    },
    "heads": {                                   # branch -> checkpoint (last indexed tip)
        "master": "21a03b316dc1e5031183965e5798b0d9fe2e64b3",
        "staging": "5fe0476e605d2564234f00e8123461e1594a9ce7"
    },
    "built": true                                # a full index was completed at least once
}

TTL: None. Entries are never removed; a commit stays attributed to a branch
even if that branch is later force-pushed.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, Optional, Set

from cache.cache_base import BaseDiskCache


class CommitIndex(BaseDiskCache):
    """Thread-safe commit -> branches map plus branch checkpoints.

    Every public method holds the lock only for the single map access it needs,
    so indexing workers and query threads interleave freely. Stats (hit/miss/write)
    are tracked by BaseDiskCache.
    """

    _SCHEMA_VERSION = 1
    _merge_on_write = False

    def __init__(self, *, cache_file: Path):
        super().__init__(cache_file=cache_file, schema_version=self._SCHEMA_VERSION)

    # ------------------------------------------------------------------
    # (de)serialization
    # ------------------------------------------------------------------

    def _create_empty_cache(self) -> Dict[str, Any]:
        return {"version": self._schema_version, "items": {}, "heads": {}, "built": False}

    def _from_disk_document(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        items: Dict[str, Set[str]] = {}
        for commit, branches in (raw.get("items") or {}).items():
            if isinstance(branches, list):
                items[str(commit)] = {sys.intern(str(b)) for b in branches}
        heads = raw.get("heads")
        return {
            "version": self._schema_version,
            "items": items,
            "heads": {str(k): str(v) for k, v in heads.items()} if isinstance(heads, dict) else {},
            "built": bool(raw.get("built", False)),
        }

    def _to_disk_document(self) -> Dict[str, Any]:
        return {
            "version": self._schema_version,
            "items": {commit: sorted(branches) for commit, branches in self._get_items().items()},
            "heads": dict(self._heads()),
            "built": bool(self._data.get("built", False)),
        }

    def _heads(self) -> Dict[str, str]:
        heads = self._data.get("heads")
        if not isinstance(heads, dict):
            heads = {}
            self._data["heads"] = heads
        return heads

    def load(self) -> bool:
        """Load the snapshot from disk (no-op if already loaded).

        Returns:
            True if a compatible snapshot with at least one commit or checkpoint was found
        """
        with self._mu:
            self._load_once()
            return bool(self._get_items()) or bool(self._heads())

    # ------------------------------------------------------------------
    # commit membership
    # ------------------------------------------------------------------

    def branches_containing(self, commit: str) -> Set[str]:
        """Branches known to contain `commit` (empty set if unknown)."""
        with self._mu:
            self._load_once()
            branches = self._check_item(str(commit))
            return set(branches) if branches else set()

    def contains(self, commit: str, branch: str) -> bool:
        with self._mu:
            self._load_once()
            branches = self._check_item(str(commit))
            return bool(branches) and branch in branches

    def record_membership(self, commit: str, branch: str) -> bool:
        """Record that `branch` contains `commit`. Idempotent.

        Returns:
            True if the pair wasn't known before
        """
        with self._mu:
            self._load_once()
            items = self._get_items()
            branches = items.get(commit)
            if branches is None:
                items[commit] = {sys.intern(branch)}
            elif branch in branches:
                return False
            else:
                branches.add(sys.intern(branch))
            self._dirty = True
            self.stats.write += 1
            return True

    # ------------------------------------------------------------------
    # checkpoints + build flag
    # ------------------------------------------------------------------

    def get_checkpoint(self, branch: str) -> Optional[str]:
        with self._mu:
            self._load_once()
            return self._heads().get(branch)

    def set_checkpoint(self, branch: str, commit: str) -> None:
        with self._mu:
            self._load_once()
            heads = self._heads()
            if heads.get(branch) != commit:
                heads[branch] = commit
                self._dirty = True

    @property
    def built(self) -> bool:
        with self._mu:
            self._load_once()
            return bool(self._data.get("built", False))

    def mark_built(self) -> None:
        with self._mu:
            self._load_once()
            if not self._data.get("built"):
                self._data["built"] = True
                self._dirty = True

    def counts(self) -> Dict[str, int]:
        """Sizes for status reporting: {"commits": N, "branches": M}."""
        with self._mu:
            self._load_once()
            return {"commits": len(self._get_items()), "branches": len(self._heads())}
