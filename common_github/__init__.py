# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""GitHub API client for the PR tracker.

Only the pull request endpoint is used:
    GET /repos/{owner}/{repo}/pulls/{pr_number}

Cached resources live in `common_github/api/` (one module per resource, each owning
its cache file, key format and TTL policy).

Unauthenticated clients work but are limited to 60 requests/hour; set GH_TOKEN or
GITHUB_TOKEN (or log in with `gh auth login`) for 5000/hour.
"""

# Standard library imports
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional

# Third-party imports
import requests
import yaml

# Local imports
from .exceptions import (
    GitHubAPIError,
    GitHubNotFoundError,
    GitHubRateLimitError,
    GitHubRequestError,
)

# Module logger
_logger = logging.getLogger(__name__)

__all__ = [
    "GitHubAPIClient",
    "GitHubAPIError",
    "GitHubNotFoundError",
    "GitHubRateLimitError",
    "GitHubRequestError",
]


class GitHubAPIClient:
    """GitHub REST client with automatic token detection and rate limit handling.

    Features:
    - Automatic token detection (token arg > GH_TOKEN env > GITHUB_TOKEN env > GitHub CLI config)
    - Typed errors (not found / rate limited / other)
    - Per-run REST call and cache accounting, shared by the cached resources

    Example:
        client = GitHubAPIClient(owner="NixOS", repo="nixpkgs")
        pr_data = client.get_pull_request(123456)
    """

    @staticmethod
    def get_github_token_from_cli() -> Optional[str]:
        """Get GitHub token from GitHub CLI configuration.

        Reads the token from ~/.config/gh/hosts.yml if available.

        Returns:
            GitHub token string, or None if not found
        """
        try:
            gh_config_path = Path.home() / '.config' / 'gh' / 'hosts.yml'
            if gh_config_path.exists():
                with open(gh_config_path, 'r') as f:
                    config = yaml.safe_load(f)
                    if config and 'github.com' in config:
                        github_config = config['github.com'] or {}
                        if 'oauth_token' in github_config:
                            return github_config['oauth_token']
                        for user_config in (github_config.get('users') or {}).values():
                            if isinstance(user_config, dict) and 'oauth_token' in user_config:
                                return user_config['oauth_token']
        except (OSError, yaml.YAMLError) as e:
            _logger.debug(f"Could not read GitHub CLI config: {e}")
        return None

    def __init__(
        self,
        token: Optional[str] = None,
        *,
        owner: str = "NixOS",
        repo: str = "nixpkgs",
        session: Optional[Any] = None,
        timeout_s: int = 10,
        use_cli_token: bool = True,
    ):
        """Initialize GitHub API client.

        Args:
            token: GitHub personal access token. If not provided, will try:
                   1. GH_TOKEN environment variable
                   2. GITHUB_TOKEN environment variable
                   3. GitHub CLI config (~/.config/gh/hosts.yml), unless use_cli_token is False
            owner: Repository owner the PR numbers refer to
            repo: Repository name the PR numbers refer to
            session: requests-compatible session (tests pass a fake)
            timeout_s: Per-request timeout
        """
        self.token = (
            token
            or os.environ.get('GH_TOKEN')
            or os.environ.get('GITHUB_TOKEN')
            or (self.get_github_token_from_cli() if use_cli_token else None)
        )
        self.owner = owner
        self.repo = repo
        self.base_url = "https://api.github.com"
        self.headers = {'Accept': 'application/vnd.github.v3+json'}
        self.timeout_s = int(timeout_s)
        self.session = session if session is not None else requests.Session()
        self.logger = logging.getLogger(self.__class__.__name__)

        if self.token:
            self.headers['Authorization'] = f'token {self.token}'
        else:
            self.logger.warning("GITHUB_TOKEN is not set, you may hit the API rate limit...")

        # Per-run REST call accounting
        self._stats_mu = threading.Lock()
        self.rest_calls_total: int = 0
        self.rest_errors_by_status: Dict[int, int] = {}
        # Per-run cache accounting, keyed by "<cache_name>" or "<cache_name>.<reason>"
        self.cache_hits: Dict[str, int] = {}
        self.cache_misses: Dict[str, int] = {}
        self.cache_writes: Dict[str, int] = {}

        # One lock per in-flight cache key, so identical concurrent lookups fetch once
        self._inflight_mu = threading.Lock()
        self._inflight_locks: Dict[str, threading.Lock] = {}

    # ----------------------------
    # accounting hooks used by common_github/api/*
    # ----------------------------

    def _bump(self, counter: Dict[Any, int], key: Any, n: int = 1) -> None:
        with self._stats_mu:
            counter[key] = counter.get(key, 0) + n

    def _cache_hit(self, name: str) -> None:
        self._bump(self.cache_hits, name)

    def _cache_miss(self, name: str) -> None:
        self._bump(self.cache_misses, name)

    def _cache_write(self, name: str, *, entries: int = 1) -> None:
        self._bump(self.cache_writes, name, entries)

    def _inflight_lock(self, key: str) -> threading.Lock:
        with self._inflight_mu:
            lock = self._inflight_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._inflight_locks[key] = lock
            return lock

    # ----------------------------
    # REST
    # ----------------------------

    def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None, timeout: Optional[int] = None) -> Dict[str, Any]:
        """Make GET request to GitHub API.

        Args:
            endpoint: API endpoint (e.g., "/repos/NixOS/nixpkgs/pulls/123")
            params: Query parameters
            timeout: Request timeout in seconds (defaults to the client timeout)

        Returns:
            JSON response as dict

            Example return value for the pull request endpoint (trimmed):
            {
                "number": 123456,
                "title": "python3Packages.foo: 1.0 -> 1.1",
                "user": {"login": "johndoe"},
                "head": {"sha": "21a03b316dc1e5031183965e5798b0d9fe2e64b3", "ref": "foo-update"},
                "base": {"ref": "staging"}
            }

        Raises:
            GitHubNotFoundError: 404
            GitHubRateLimitError: 403/429 with an exhausted quota
            GitHubRequestError: transport failure
            GitHubAPIError: any other non-2xx response
        """
        url = f"{self.base_url}{endpoint}" if endpoint.startswith('/') else f"{self.base_url}/{endpoint}"

        with self._stats_mu:
            self.rest_calls_total += 1

        try:
            response = self.session.get(url, headers=self.headers, params=params, timeout=timeout or self.timeout_s)
        except requests.exceptions.RequestException as e:
            raise GitHubRequestError(status_code=0, endpoint=endpoint, message=f"GitHub API request failed for {endpoint}: {e}")

        status = int(response.status_code)
        if status >= 400:
            self._bump(self.rest_errors_by_status, status)

        if status == 404:
            raise GitHubNotFoundError(status_code=status, endpoint=endpoint, message=f"GitHub API: {endpoint} not found")
        if status in (403, 429):
            if status == 429 or response.headers.get('X-RateLimit-Remaining') == '0':
                raise GitHubRateLimitError(
                    status_code=status,
                    endpoint=endpoint,
                    message="GitHub API rate limit exceeded. Set GH_TOKEN/GITHUB_TOKEN environment variable.",
                )
            raise GitHubAPIError(status_code=status, endpoint=endpoint, message=f"GitHub API returned 403 Forbidden: {response.text}")
        if status >= 400:
            raise GitHubAPIError(status_code=status, endpoint=endpoint, message=f"GitHub API returned {status} for {endpoint}")

        try:
            data = response.json()
        except ValueError as e:
            raise GitHubAPIError(status_code=status, endpoint=endpoint, message=f"GitHub API returned invalid JSON for {endpoint}: {e}")
        if not isinstance(data, dict):
            raise GitHubAPIError(status_code=status, endpoint=endpoint, message=f"GitHub API returned unexpected payload for {endpoint}")
        return data

    def get_pull_request(self, pr_number: int) -> Dict[str, Any]:
        """GET /repos/{owner}/{repo}/pulls/{pr_number} (uncached)."""
        return self.get(f"/repos/{self.owner}/{self.repo}/pulls/{int(pr_number)}")
