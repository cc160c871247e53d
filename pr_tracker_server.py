#!/usr/bin/env python3
# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
PR tracker HTTP server.

Serves propagation queries for pull requests while a background thread keeps the
commit index up to date.

Endpoints:
    GET /pr?id=<number>   propagation tree of the PR's head commit
    GET /status           index readiness and size

Usage:
    GH_TOKEN=... python pr_tracker_server.py --port 8082 --repo-path nixpkgs

Example /pr response:
    {"id": 123456, "title": "python3Packages.foo: 1.0 -> 1.1", "author": "contributor123",
     "accepted": true,
     "branches": {"branch": "staging", "accepted": true, "hydra_link": null, "children": [...]}}
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from flask import Flask, jsonify, request

from cache.cache_commit_index import CommitIndex
from commit_indexer import CommitIndexer
from common import DEFAULT_REFRESH_INTERVAL_S, TrackerConfig, summarize_config
from common_branch_nodes import get_branches_for_pr
from common_branch_rules import BranchFilter
from common_github import GitHubAPIClient, GitHubAPIError, GitHubNotFoundError
from common_github.api.pr_details_cached import PRDetailsDiskCache

_logger = logging.getLogger(__name__)

NOT_READY_MESSAGE = "Commits are not yet fully indexed. Please try again in a few minutes."
INVALID_ID_MESSAGE = "Invalid pull request ID."
NOT_FOUND_MESSAGE = "Pull request not found."
FETCH_FAILED_MESSAGE = "Failed to fetch pull request."


def _parse_pr_id(raw: Optional[str]) -> Optional[int]:
    try:
        pr_id = int(str(raw or "").strip())
    except ValueError:
        return None
    return pr_id if pr_id > 0 else None


def create_app(
    index: CommitIndex,
    api: GitHubAPIClient,
    *,
    pr_cache: Optional[PRDetailsDiskCache] = None,
    pr_ttl_s: Optional[int] = None,
    refresh_interval_s: int = DEFAULT_REFRESH_INTERVAL_S,
) -> Flask:
    """Build the Flask app serving queries against `index`.

    Args:
        index: Commit index filled by the CommitIndexer
        api: GitHub client used on PR cache misses
        pr_cache: PR record cache (module default when None)
        pr_ttl_s: PR record TTL (module default when None)
        refresh_interval_s: Reported by /status
    """
    app = Flask(__name__)

    @app.route("/pr", methods=["GET"])
    def pr_status():
        """Propagation status of one pull request."""
        if not index.built:
            return jsonify({"error": NOT_READY_MESSAGE, "ready": False}), 503

        pr_id = _parse_pr_id(request.args.get("id"))
        if pr_id is None:
            return jsonify({"error": INVALID_ID_MESSAGE}), 400

        try:
            status = get_branches_for_pr(pr_id, api=api, index=index, pr_cache=pr_cache, ttl_s=pr_ttl_s)
        except GitHubNotFoundError:
            return jsonify({"error": NOT_FOUND_MESSAGE}), 404
        except GitHubAPIError as e:
            _logger.error(f"Failed to fetch pull request #{pr_id}: {e}")
            return jsonify({"error": FETCH_FAILED_MESSAGE}), 502

        return jsonify(status.to_dict())

    @app.route("/status", methods=["GET"])
    def index_status():
        """Readiness and size of the commit index."""
        counts = index.counts()
        return jsonify({
            "ready": index.built,
            "commits": counts["commits"],
            "branches": counts["branches"],
            "refresh_interval_s": int(refresh_interval_s),
        })

    return app


def main(argv: Optional[List[str]] = None) -> int:
    try:
        config = TrackerConfig.from_env()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    parser = argparse.ArgumentParser(description="PR tracker HTTP server")
    parser.add_argument("--host", type=str, default="0.0.0.0", help="Host to bind to (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=config.port, help=f"Port to listen on (default: {config.port})")
    parser.add_argument("--repo-path", type=Path, default=config.repo_path, help="Local clone (cloned if missing)")
    parser.add_argument("--cache-dir", type=Path, default=config.cache_dir, help="Snapshot and PR cache directory")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format='[%(levelname)s] %(message)s')

    config.port = args.port
    config.repo_path = args.repo_path
    config.cache_dir = args.cache_dir.expanduser()
    _logger.info(f"Configuration: {summarize_config(config)}")

    index = CommitIndex(cache_file=config.snapshot_file)
    pr_cache = PRDetailsDiskCache(cache_file=config.pr_cache_file)
    api = GitHubAPIClient(config.github_token, owner=config.github_owner, repo=config.github_repo)

    indexer = CommitIndexer(
        index,
        repo_path=config.repo_path,
        repo_url=config.repo_url,
        workers=config.workers,
        interval_s=config.refresh_interval_s,
        branch_filter=BranchFilter(oldest_year=config.oldest_year),
        verbose=args.verbose,
    )
    indexer.start()

    app = create_app(
        index,
        api,
        pr_cache=pr_cache,
        pr_ttl_s=config.pr_ttl_s,
        refresh_interval_s=config.refresh_interval_s,
    )

    _logger.info(f"Starting PR tracker on http://{args.host}:{args.port}")
    try:
        app.run(host=args.host, port=args.port, debug=False, threaded=True)
    except KeyboardInterrupt:
        _logger.info("Stopping indexer...")
    finally:
        indexer.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
