#!/usr/bin/env python3
# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Disk-backed cache base: one JSON document per cache, kept in memory after first use.

Used by:
- cache_commit_index.py                     (commit -> branches snapshot, gzip)
- common_github/api/pr_details_cached.py    (PR records, plain JSON)

Document layout on disk:
    {"version": <schema version>, "items": {<key>: <value>, ...}, ...extra top-level fields}

A document with another "version", or one that can't be decoded, is treated as absent.
"""

from __future__ import annotations

import gzip
import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

try:
    import fcntl  # type: ignore
except ImportError:  # pragma: no cover - non-POSIX: no inter-process lock
    fcntl = None  # type: ignore

_logger = logging.getLogger(__name__)


@dataclass
class BaseCacheStats:
    """Per-process lookup/write counters."""
    hit: int = 0
    miss: int = 0
    write: int = 0


class BaseDiskCache:
    """Thread-safe cache document with lazy load and atomic, locked writes.

    Subclass contract:
    - hold `self._mu` around every access and call `self._load_once()` first
    - use `_check_item` / `_set_item` for keyed items (stats are counted there)
    - override `_create_empty_cache`, `_from_disk_document`, `_to_disk_document`
      when the document has fields besides "items"

    Writers in other processes are serialized with an fcntl lock file next to the
    cache file. With `_merge_on_write`, items already on disk that this process
    doesn't know are kept (this process wins on conflicts).
    """

    _merge_on_write: bool = True

    def __init__(self, *, cache_file: Path, schema_version: int = 1):
        self._mu = threading.Lock()
        self._flush_mu = threading.Lock()
        self._cache_file = Path(cache_file)
        self._schema_version = schema_version
        self._data: Dict[str, Any] = {}
        self._loaded = False
        self._dirty = False
        self._initial_disk_count: Optional[int] = None
        self.stats = BaseCacheStats()

    @property
    def cache_file(self) -> Path:
        return self._cache_file

    # ------------------------------------------------------------------
    # inter-process lock
    # ------------------------------------------------------------------

    def _lock_file_path(self) -> Path:
        return self._cache_file.with_name(f".{self._cache_file.name}.lock")

    def _acquire_disk_lock(self, *, timeout_s: float = 10.0) -> Optional[object]:
        """Take the lock file, polling until `timeout_s`.

        Returns:
            Open lock file handle, or None (no fcntl, lock file unusable, timeout).
            Writing without the lock is still atomic, only merges may race.
        """
        if fcntl is None:
            return None

        lock_path = self._lock_file_path()
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            fh = open(lock_path, "w")
        except OSError:
            return None

        deadline = time.monotonic() + float(timeout_s)
        while time.monotonic() < deadline:
            try:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                return fh
            except OSError:
                time.sleep(0.1)

        _logger.warning(f"Timed out waiting for {lock_path}, writing without it")
        fh.close()
        return None

    def _release_disk_lock(self, lock_fh: Optional[object]) -> None:
        if lock_fh is None:
            return
        try:
            if fcntl is not None:
                fcntl.flock(lock_fh.fileno(), fcntl.LOCK_UN)  # type: ignore[attr-defined]
        except OSError:
            pass
        finally:
            lock_fh.close()  # type: ignore[attr-defined]

    # ------------------------------------------------------------------
    # file I/O
    # ------------------------------------------------------------------

    def _is_gzip(self) -> bool:
        return self._cache_file.suffix == ".gz"

    def _read_disk(self) -> Optional[Dict[str, Any]]:
        """Decode the cache file.

        Returns:
            The document, or None if it is missing, unreadable, corrupt or carries
            another schema version (each non-missing case is logged).
        """
        if not self._cache_file.exists():
            return None
        try:
            if self._is_gzip():
                with gzip.open(self._cache_file, "rt", encoding="utf-8") as f:
                    raw = json.load(f)
            else:
                raw = json.loads(self._cache_file.read_text(encoding="utf-8") or "{}")
        except (OSError, EOFError, ValueError) as e:
            _logger.warning(f"Ignoring unreadable cache file {self._cache_file}: {e}")
            return None

        if not isinstance(raw, dict):
            _logger.warning(f"Ignoring malformed cache file {self._cache_file}")
            return None
        version = raw.get("version")
        if version != self._schema_version:
            _logger.warning(
                f"Ignoring cache file {self._cache_file}: schema version {version!r}, "
                f"expected {self._schema_version}"
            )
            return None
        if not isinstance(raw.get("items"), dict):
            raw["items"] = {}
        return raw

    def _write_disk(self, document: Dict[str, Any]) -> None:
        """Replace the cache file with `document` via a temp file and os.replace.

        Raises:
            OSError: write or rename failed (the old file is untouched)
        """
        self._cache_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = Path(f"{self._cache_file}.tmp.{os.getpid()}.{threading.get_ident()}")
        try:
            if self._is_gzip():
                with gzip.open(tmp, "wt", encoding="utf-8") as f:
                    json.dump(document, f, separators=(",", ":"))
            else:
                tmp.write_text(json.dumps(document, separators=(",", ":")), encoding="utf-8")
            os.replace(str(tmp), str(self._cache_file))
        finally:
            if tmp.exists():
                tmp.unlink()

    # ------------------------------------------------------------------
    # document hooks
    # ------------------------------------------------------------------

    def _load_once(self) -> None:
        """First call reads the file (or starts empty); later calls are no-ops. Needs self._mu."""
        if self._loaded:
            return
        self._loaded = True

        raw = self._read_disk()
        self._data = self._create_empty_cache() if raw is None else self._from_disk_document(raw)
        self._initial_disk_count = 0 if raw is None else len(self._get_items())

    def _create_empty_cache(self) -> Dict[str, Any]:
        return {"version": self._schema_version, "items": {}}

    def _from_disk_document(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        return {"version": self._schema_version, "items": dict(raw.get("items") or {})}

    def _to_disk_document(self) -> Dict[str, Any]:
        """Serializable copy of the in-memory document. Needs self._mu."""
        return {"version": self._schema_version, "items": dict(self._get_items())}

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def flush(self) -> None:
        """Write the document if it changed.

        The document is copied under self._mu; merging and writing happen without it.
        self._flush_mu serializes flushes, so an older copy never lands last.

        Raises:
            OSError: the file couldn't be written (state stays dirty)
        """
        with self._flush_mu:
            with self._mu:
                self._load_once()
                if not self._dirty:
                    return
                document = self._to_disk_document()
                self._dirty = False

            lock_fh = None
            on_disk: Dict[str, Any] = {}
            try:
                lock_fh = self._acquire_disk_lock(timeout_s=10.0)
                if self._merge_on_write:
                    on_disk = (self._read_disk() or {}).get("items") or {}
                    document["items"] = {**on_disk, **document["items"]}
                self._write_disk(document)
            except OSError:
                with self._mu:
                    self._dirty = True
                raise
            finally:
                self._release_disk_lock(lock_fh)

            if on_disk:
                with self._mu:
                    items = self._get_items()
                    for key, value in on_disk.items():
                        items.setdefault(key, value)

    def get_cache_sizes(self) -> Tuple[int, int]:
        """(items in memory, items found on disk at load time)."""
        with self._mu:
            self._load_once()
            return (len(self._get_items()), self._initial_disk_count or 0)

    # ------------------------------------------------------------------
    # item access (caller holds self._mu)
    # ------------------------------------------------------------------

    def _get_items(self) -> Dict[str, Any]:
        items = self._data.get("items")
        if not isinstance(items, dict):
            items = {}
            self._data["items"] = items
        return items

    def _check_item(self, key: str) -> Optional[Any]:
        """Item for `key` or None; counts a hit or a miss."""
        value = self._get_items().get(key)
        if value is None:
            self.stats.miss += 1
        else:
            self.stats.hit += 1
        return value

    def _set_item(self, key: str, value: Any) -> None:
        self._get_items()[key] = value
        self._dirty = True
        self.stats.write += 1
