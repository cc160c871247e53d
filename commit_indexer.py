#!/usr/bin/env python3
# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Commit indexer.

Keeps the CommitIndex in sync with the tracked repository:
- fetch the remote, list its branches, keep the tracked ones (BranchFilter)
- walk every tracked branch over the commits added since the previous checkpoint
  (`checkpoint..tip`, merged side branches included; first pass or force push:
  the whole history), recording commit -> branch membership
- traversals run on a small fixed pool of worker threads; a pass returns only
  after every traversal finished
- a background loop repeats the pass every 15 minutes and persists the snapshot

Usage (one-shot, e.g. to pre-build the index before starting the server):
    python commit_indexer.py --repo-path nixpkgs --cache-dir ~/.cache/pr-tracker
"""

from __future__ import annotations

import argparse
import logging
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional

from cache.cache_commit_index import CommitIndex
from common import (
    DEFAULT_INDEX_WORKERS,
    DEFAULT_REFRESH_INTERVAL_S,
    BaseUtils,
    GitUtils,
    TrackerConfig,
)
from common_branch_rules import BranchFilter


class IndexRefreshError(Exception):
    """A refresh pass was aborted before any branch was traversed."""


class RefreshInProgressError(IndexRefreshError):
    """Another refresh pass is still running."""


@dataclass
class BranchIndexResult:
    """Outcome of one branch traversal."""

    branch: str
    ok: bool
    tip: Optional[str] = None
    visited: int = 0
    new_commits: int = 0
    reached_checkpoint: bool = False
    error: Optional[str] = None


@dataclass
class RefreshResult:
    """Outcome of one refresh pass."""

    indexed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    new_commits: int = 0
    duration_s: float = 0.0


class CommitIndexer(BaseUtils):
    """Builds and incrementally maintains a CommitIndex from a git clone.

    Example:
        index = CommitIndex(cache_file=config.snapshot_file)
        indexer = CommitIndexer(index, repo_path=config.repo_path, repo_url=config.repo_url)
        indexer.start()      # setup + refresh every 15 minutes in a daemon thread
        ...
        indexer.stop()
    """

    def __init__(
        self,
        index: CommitIndex,
        *,
        repo_path: Any,
        repo_url: str,
        workers: int = DEFAULT_INDEX_WORKERS,
        interval_s: int = DEFAULT_REFRESH_INTERVAL_S,
        branch_filter: Optional[BranchFilter] = None,
        repo_factory: Optional[Callable[[], Any]] = None,
        clone_fn: Optional[Callable[[str, Any], Any]] = None,
        verbose: bool = False,
    ):
        """Initialize the indexer.

        Args:
            index: Commit index to fill (loaded lazily from its snapshot file)
            repo_path: Local clone location
            repo_url: Remote URL (cloned from when repo_path is missing)
            workers: Concurrent branch traversals per pass
            interval_s: Delay between two passes of the background loop
            branch_filter: Which remote branches to index
            repo_factory: Returns a fresh repository handle (defaults to GitUtils(repo_path))
            clone_fn: Clones (url, path) and returns a handle (defaults to GitUtils.clone)
            verbose: Verbose logging
        """
        super().__init__(verbose)
        self.index = index
        self.repo_path = Path(repo_path)
        self.repo_url = repo_url
        self.workers = max(1, int(workers))
        self.interval_s = max(1, int(interval_s))
        self.branch_filter = branch_filter or BranchFilter()
        self._repo_factory = repo_factory or (lambda: GitUtils(self.repo_path, verbose=self.verbose))
        self._clone_fn = clone_fn or (lambda url, path: GitUtils.clone(url, path, verbose=self.verbose))

        self._refresh_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_result: Optional[RefreshResult] = None

    # ------------------------------------------------------------------
    # one pass
    # ------------------------------------------------------------------

    def refresh(self, update_remote: bool = True) -> RefreshResult:
        """Run one indexing pass and wait for every branch traversal to finish.

        Args:
            update_remote: Fetch the remote first

        Returns:
            RefreshResult (per-branch failures are listed, not raised)

        Raises:
            RefreshInProgressError: another pass is running
            IndexRefreshError: fetch or branch listing failed (index untouched)
        """
        if not self._refresh_lock.acquire(blocking=False):
            raise RefreshInProgressError("A refresh is already in progress")
        try:
            start = time.monotonic()
            branches = self._list_tracked_branches(update_remote)

            self.logger.info(f"Starting to build commit index for {len(branches)} branches ({self.workers} workers)...")
            result = RefreshResult()
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="index-worker") as executor:
                futures = {executor.submit(self.index_branch, name): name for name in branches}
                for future in as_completed(futures):
                    branch_result = future.result()
                    if branch_result.ok:
                        result.indexed.append(branch_result.branch)
                        result.new_commits += branch_result.new_commits
                    else:
                        result.failed.append(branch_result.branch)

            result.indexed.sort()
            result.failed.sort()
            result.duration_s = time.monotonic() - start
            self.last_result = result
            self.logger.info(
                f"Commit index updated: {len(result.indexed)} branches, {result.new_commits} new entries, "
                f"{len(result.failed)} failed, {result.duration_s:.1f}s"
            )
            self.logger.debug(f"Commit index stats: {self.index.stats}")
            return result
        finally:
            self._refresh_lock.release()

    def _list_tracked_branches(self, update_remote: bool) -> List[str]:
        try:
            repo = self._repo_factory()
        except Exception as e:
            raise IndexRefreshError(f"refresh: failed to open repository at {self.repo_path}: {e}") from e
        try:
            if update_remote:
                self.logger.info("Fetching remote...")
                repo.fetch_all()
            names = repo.list_remote_branches() if update_remote else repo.list_tracking_branches()
        except Exception as e:
            raise IndexRefreshError(f"refresh: {e}") from e
        finally:
            repo.close()

        tracked = sorted({name for name in names if self.branch_filter.is_tracked(name)})
        self.logger.debug(f"{len(tracked)} of {len(names)} remote branches are tracked")
        return tracked

    def index_branch(self, branch: str) -> BranchIndexResult:
        """Walk the commits `branch` gained since its checkpoint, recording membership.

        Never raises: failures are logged and reported in the result, and leave the
        branch checkpoint where it was so the next pass retries the same range.
        """
        worker = threading.current_thread().name
        try:
            repo = self._repo_factory()
        except Exception as e:
            self.logger.error(f"Couldn't open repository for branch {branch} ({worker}): {e}")
            return BranchIndexResult(branch=branch, ok=False, error=str(e))

        try:
            tip = repo.resolve_remote_branch(branch)
            if tip is None:
                self.logger.error(f"Couldn't get reference for branch {branch} ({worker}), skipping")
                return BranchIndexResult(branch=branch, ok=False, error="unresolvable reference")

            checkpoint = self.index.get_checkpoint(branch)
            self.logger.info(f"Building map for {branch} ({worker})")

            result = BranchIndexResult(branch=branch, ok=True, tip=tip)
            since: Optional[str] = None
            if checkpoint is not None:
                if repo.is_ancestor(checkpoint, tip):
                    since = checkpoint
                else:
                    # Whole current history gets walked, so nothing is missing; commits
                    # dropped by the rewrite stay attributed to the branch.
                    self.logger.warning(
                        f"Checkpoint {checkpoint[:12]} of {branch} is no longer in its history "
                        f"(force-pushed?), re-indexing the whole branch"
                    )
            result.reached_checkpoint = since is not None

            for sha in repo.iter_commit_hashes(tip, since=since):
                result.visited += 1
                if self.index.record_membership(sha, branch):
                    result.new_commits += 1

            self.index.set_checkpoint(branch, tip)
            self.logger.info(f"Completed mapping {branch}: {result.visited} commits walked, {result.new_commits} new ({worker})")
            return result
        except Exception as e:
            self.logger.error(f"Failed to index branch {branch} ({worker}): {e}")
            return BranchIndexResult(branch=branch, ok=False, error=str(e))
        finally:
            repo.close()

    def save(self) -> bool:
        """Persist the index snapshot. A failure only costs durability for this pass."""
        try:
            self.index.flush()
            return True
        except OSError as e:
            self.logger.error(f"Failed to save commit index to {self.index.cache_file}: {e}")
            return False

    # ------------------------------------------------------------------
    # startup + scheduling
    # ------------------------------------------------------------------

    def setup(self) -> RefreshResult:
        """Load the snapshot, make sure a clone exists, run a full pass, mark the index built.

        Raises:
            IndexRefreshError: clone, remote setup or the pass itself failed
        """
        if self.index.load():
            counts = self.index.counts()
            self.logger.info(f"Loaded commit index: {counts['commits']} commits, {counts['branches']} branches")
        else:
            self.logger.info("No usable commit index snapshot, building from scratch")

        if not GitUtils.repo_exists(self.repo_path):
            self.logger.info(f"'{self.repo_path}' not found, cloning a fresh copy. This may take a while...")
            try:
                self._clone_fn(self.repo_url, self.repo_path).close()
            except Exception as e:
                raise IndexRefreshError(f"failed to clone {self.repo_url}: {e}") from e
            result = self.refresh(update_remote=False)
        else:
            try:
                repo = self._repo_factory()
                try:
                    repo.ensure_remote_url(self.repo_url)
                finally:
                    repo.close()
            except Exception as e:
                raise IndexRefreshError(f"failed to configure remote of {self.repo_path}: {e}") from e
            result = self.refresh(update_remote=True)

        self.index.mark_built()
        self.save()
        return result

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        """Setup, then refresh every `interval_s` seconds until `stop_event` is set.

        No failure ends the loop: it is logged and retried on the next tick.
        """
        stop_event = stop_event or self._stop_event
        needs_setup = True
        while not stop_event.is_set():
            try:
                if needs_setup:
                    self.setup()
                    needs_setup = False
                else:
                    self.logger.info("scheduler: Updating commit index")
                    self.refresh(update_remote=True)
                    self.save()
            except RefreshInProgressError as e:
                self.logger.warning(f"scheduler: {e}")
            except IndexRefreshError as e:
                self.logger.error(f"scheduler: Failed to update commit index: {e}")
            except Exception as e:
                self.logger.error(f"scheduler: Unexpected error: {e}", exc_info=True)

            if stop_event.wait(self.interval_s):
                break
        self.logger.info("scheduler: stopped")

    def start(self) -> None:
        """Start the scheduler loop in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            self.logger.warning("scheduler: already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, args=(self._stop_event,), name="commit-indexer", daemon=True)
        self._thread.start()
        self.logger.info(f"scheduler: started (interval {self.interval_s}s)")

    def stop(self, timeout_s: float = 5.0) -> None:
        """Stop the scheduler. A traversal in flight finishes in the background."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout_s)


def main(argv: Optional[List[str]] = None) -> int:
    config = TrackerConfig.from_env()

    parser = argparse.ArgumentParser(description="Build or update the commit index once, then exit.")
    parser.add_argument("--repo-path", type=Path, default=config.repo_path, help="Local clone (cloned if missing)")
    parser.add_argument("--repo-url", default=config.repo_url, help="Remote repository URL")
    parser.add_argument("--cache-dir", type=Path, default=config.cache_dir, help="Where the snapshot is stored")
    parser.add_argument("--workers", type=int, default=config.workers, help="Concurrent branch traversals")
    parser.add_argument("--oldest-year", type=int, default=config.oldest_year, help="Skip releases older than this (YY)")
    parser.add_argument("--no-fetch", action="store_true", help="Index the local clone without fetching")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format='[%(levelname)s] %(message)s')

    config.cache_dir = args.cache_dir.expanduser()
    index = CommitIndex(cache_file=config.snapshot_file)
    indexer = CommitIndexer(
        index,
        repo_path=args.repo_path,
        repo_url=args.repo_url,
        workers=args.workers,
        branch_filter=BranchFilter(oldest_year=args.oldest_year),
        verbose=args.verbose,
    )

    try:
        if args.no_fetch:
            index.load()
            indexer.refresh(update_remote=False)
            index.mark_built()
            if not indexer.save():
                return 1
        else:
            indexer.setup()
    except IndexRefreshError as e:
        logging.error(f"Indexing failed: {e}")
        return 1

    result = indexer.last_result
    if result is not None and result.failed:
        logging.warning(f"Branches not indexed: {', '.join(result.failed)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
