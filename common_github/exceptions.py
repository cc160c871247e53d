# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""GitHub API error types.

Kept free of project imports so cached API modules and the HTTP server can
catch specific error classes (e.g. 404 Not Found) without import cycles.
"""

from __future__ import annotations


class GitHubAPIError(Exception):
    def __init__(self, *, status_code: int, endpoint: str, message: str):
        super().__init__(message)
        self.status_code = int(status_code)
        self.endpoint = str(endpoint or "")


class GitHubNotFoundError(GitHubAPIError):
    pass


class GitHubRateLimitError(GitHubAPIError):
    pass


class GitHubRequestError(GitHubAPIError):
    """Transport-level failure (DNS, timeout, connection reset); status_code is 0."""
