"""
Pytest tests for the GitHub client and the cached PR details resource.

Run from the repository root:
    pytest test_pr_details_cached.py -v
"""

import json
import logging
import sys
import time
from pathlib import Path

import pytest
import requests

# Set up path for imports
parent_dir = Path(__file__).parent
if str(parent_dir) not in sys.path:
    sys.path.insert(0, str(parent_dir))

from common_github import (
    GitHubAPIClient,
    GitHubAPIError,
    GitHubNotFoundError,
    GitHubRateLimitError,
    GitHubRequestError,
)
from common_github.api.pr_details_cached import PRDetailsDiskCache, PRRecord, get_pr_record_cached


PR_URL = "https://api.github.com/repos/NixOS/nixpkgs/pulls/42"
HEAD_1 = "1" * 40
HEAD_2 = "2" * 40
T0 = 1_700_000_000
SIX_HOURS = 6 * 3600


def pr_payload(head_sha=HEAD_1, base="staging", title="foo: 1.0 -> 1.1"):
    return {
        "number": 42,
        "title": title,
        "user": {"login": "alice"},
        "head": {"sha": head_sha, "ref": "foo-update"},
        "base": {"ref": base},
    }


class FakeResponse:
    def __init__(self, status_code, payload=None, headers=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = json.dumps(payload) if payload is not None else ""

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    """Queue of responses (or exceptions) per URL; the last one repeats."""

    def __init__(self):
        self.queue = {}
        self.calls = []
        self.last_headers = None

    def add(self, url, *responses):
        self.queue.setdefault(url, []).extend(responses)

    def get(self, url, headers=None, params=None, timeout=None):
        self.calls.append(url)
        self.last_headers = dict(headers or {})
        pending = self.queue.get(url) or [FakeResponse(404, {"message": "Not Found"})]
        item = pending.pop(0) if len(pending) > 1 else pending[0]
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def clock(monkeypatch):
    now = [T0]
    monkeypatch.setattr(time, "time", lambda: now[0])
    return now


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def api(session, monkeypatch):
    monkeypatch.delenv("GH_TOKEN", raising=False)
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    return GitHubAPIClient("test-token", owner="NixOS", repo="nixpkgs", session=session, use_cli_token=False)


@pytest.fixture
def pr_cache(tmp_path):
    return PRDetailsDiskCache(cache_file=tmp_path / "pr-details.json")


# ============================================================================
# GitHubAPIClient error mapping
# ============================================================================

def test_get_returns_json(api, session):
    session.add(PR_URL, FakeResponse(200, pr_payload()))
    assert api.get_pull_request(42)["base"]["ref"] == "staging"
    assert api.rest_calls_total == 1
    assert session.last_headers["Authorization"] == "token test-token"


def test_not_found(api, session):
    with pytest.raises(GitHubNotFoundError) as exc:
        api.get_pull_request(42)
    assert exc.value.status_code == 404
    assert api.rest_errors_by_status == {404: 1}


def test_rate_limited(api, session):
    session.add(PR_URL, FakeResponse(403, {"message": "API rate limit exceeded"}, headers={"X-RateLimit-Remaining": "0"}))
    with pytest.raises(GitHubRateLimitError):
        api.get_pull_request(42)

    session.queue.clear()
    session.add(PR_URL, FakeResponse(429, {"message": "slow down"}))
    with pytest.raises(GitHubRateLimitError):
        api.get_pull_request(42)


def test_forbidden_is_not_rate_limit(api, session):
    session.add(PR_URL, FakeResponse(403, {"message": "Resource not accessible"}, headers={"X-RateLimit-Remaining": "4999"}))
    with pytest.raises(GitHubAPIError) as exc:
        api.get_pull_request(42)
    assert not isinstance(exc.value, GitHubRateLimitError)
    assert exc.value.status_code == 403


def test_server_error_and_transport_error(api, session):
    session.add(PR_URL, FakeResponse(502, {"message": "Bad Gateway"}))
    with pytest.raises(GitHubAPIError) as exc:
        api.get_pull_request(42)
    assert exc.value.status_code == 502

    session.queue.clear()
    session.add(PR_URL, requests.exceptions.ConnectionError("connection reset"))
    with pytest.raises(GitHubRequestError) as exc:
        api.get_pull_request(42)
    assert exc.value.status_code == 0


def test_invalid_json(api, session):
    session.add(PR_URL, FakeResponse(200, None))
    with pytest.raises(GitHubAPIError):
        api.get_pull_request(42)


# ============================================================================
# Token discovery
# ============================================================================

def test_token_priority(monkeypatch, tmp_path):
    monkeypatch.setattr(Path, "home", classmethod(lambda cls: tmp_path))
    monkeypatch.setenv("GH_TOKEN", "from-gh-token")
    monkeypatch.setenv("GITHUB_TOKEN", "from-github-token")

    assert GitHubAPIClient("explicit", session=FakeSession()).token == "explicit"
    assert GitHubAPIClient(session=FakeSession()).token == "from-gh-token"

    monkeypatch.delenv("GH_TOKEN")
    assert GitHubAPIClient(session=FakeSession()).token == "from-github-token"

    monkeypatch.delenv("GITHUB_TOKEN")
    assert GitHubAPIClient(session=FakeSession()).token is None


def test_token_from_gh_cli_config(monkeypatch, tmp_path):
    monkeypatch.setattr(Path, "home", classmethod(lambda cls: tmp_path))
    monkeypatch.delenv("GH_TOKEN", raising=False)
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)

    hosts = tmp_path / ".config" / "gh" / "hosts.yml"
    hosts.parent.mkdir(parents=True)
    hosts.write_text("github.com:\n    users:\n        alice:\n            oauth_token: gho_from_cli\n    user: alice\n")

    client = GitHubAPIClient(session=FakeSession())
    assert client.token == "gho_from_cli"
    assert client.headers["Authorization"] == "token gho_from_cli"

    assert GitHubAPIClient(session=FakeSession(), use_cli_token=False).token is None


# ============================================================================
# PRDetailsCached: TTL policy
# ============================================================================

def test_fresh_entry_is_served_from_cache(api, session, pr_cache, clock):
    session.add(PR_URL, FakeResponse(200, pr_payload()))

    first = get_pr_record_cached(api, pr_number=42, cache=pr_cache)
    clock[0] = T0 + SIX_HOURS - 1
    second = get_pr_record_cached(api, pr_number=42, cache=pr_cache)

    assert first == second
    assert first == PRRecord(id=42, title="foo: 1.0 -> 1.1", author="alice", target_branch="staging", head_commit=HEAD_1, cached_at=T0)
    assert len(session.calls) == 1
    assert api.cache_hits == {"pull_request": 1}
    assert api.cache_misses == {"pull_request.missing": 1}
    assert api.cache_writes == {"pull_request": 1}


def test_expired_entry_is_refetched(api, session, pr_cache, clock):
    session.add(PR_URL, FakeResponse(200, pr_payload(HEAD_1)), FakeResponse(200, pr_payload(HEAD_2, base="master")))

    get_pr_record_cached(api, pr_number=42, cache=pr_cache)
    clock[0] = T0 + SIX_HOURS
    record = get_pr_record_cached(api, pr_number=42, cache=pr_cache)

    assert len(session.calls) == 2
    assert record.head_commit == HEAD_2
    assert record.target_branch == "master"
    assert record.cached_at == T0 + SIX_HOURS
    assert api.cache_misses.get("pull_request.expired") == 1


def test_failed_refetch_keeps_stale_entry(api, session, pr_cache, clock):
    session.add(PR_URL, FakeResponse(200, pr_payload()), FakeResponse(500, {"message": "boom"}), FakeResponse(200, pr_payload(HEAD_2)))

    get_pr_record_cached(api, pr_number=42, cache=pr_cache)
    clock[0] = T0 + SIX_HOURS + 60

    with pytest.raises(GitHubAPIError):
        get_pr_record_cached(api, pr_number=42, cache=pr_cache)

    stale = pr_cache.get_entry("NixOS/nixpkgs:pr:42")
    assert stale["head_commit"] == HEAD_1
    assert stale["cached_at"] == T0

    # The stale entry is never served: the next lookup retries.
    record = get_pr_record_cached(api, pr_number=42, cache=pr_cache)
    assert record.head_commit == HEAD_2
    assert len(session.calls) == 3


def test_custom_ttl(api, session, pr_cache, clock):
    session.add(PR_URL, FakeResponse(200, pr_payload()))

    get_pr_record_cached(api, pr_number=42, cache=pr_cache, ttl_s=60)
    clock[0] = T0 + 60
    get_pr_record_cached(api, pr_number=42, cache=pr_cache, ttl_s=60)

    assert len(session.calls) == 2


def test_not_found_is_not_cached(api, session, pr_cache, clock):
    with pytest.raises(GitHubNotFoundError):
        get_pr_record_cached(api, pr_number=42, cache=pr_cache)
    assert pr_cache.get_entry("NixOS/nixpkgs:pr:42") is None


def test_malformed_payload(api, session, pr_cache, clock):
    payload = pr_payload()
    del payload["base"]
    session.add(PR_URL, FakeResponse(200, payload))

    with pytest.raises(GitHubAPIError, match="Malformed"):
        get_pr_record_cached(api, pr_number=42, cache=pr_cache)


# ============================================================================
# PRDetailsDiskCache: persistence
# ============================================================================

def test_entries_survive_restart(api, session, tmp_path, clock):
    cache_file = tmp_path / "pr-details.json"
    session.add(PR_URL, FakeResponse(200, pr_payload()))

    get_pr_record_cached(api, pr_number=42, cache=PRDetailsDiskCache(cache_file=cache_file))

    doc = json.loads(cache_file.read_text())
    assert doc["version"] == PRDetailsDiskCache._SCHEMA_VERSION
    assert doc["items"]["NixOS/nixpkgs:pr:42"]["target_branch"] == "staging"

    clock[0] = T0 + 3600
    record = get_pr_record_cached(api, pr_number=42, cache=PRDetailsDiskCache(cache_file=cache_file))
    assert record.head_commit == HEAD_1
    assert len(session.calls) == 1


def test_cache_key_includes_repository(session, pr_cache, clock, monkeypatch):
    monkeypatch.delenv("GH_TOKEN", raising=False)
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    fork_url = "https://api.github.com/repos/someone/nixpkgs/pulls/42"
    session.add(PR_URL, FakeResponse(200, pr_payload(HEAD_1)))
    session.add(fork_url, FakeResponse(200, pr_payload(HEAD_2)))

    upstream = GitHubAPIClient("t", owner="NixOS", repo="nixpkgs", session=session, use_cli_token=False)
    fork = GitHubAPIClient("t", owner="someone", repo="nixpkgs", session=session, use_cli_token=False)

    assert get_pr_record_cached(upstream, pr_number=42, cache=pr_cache).head_commit == HEAD_1
    assert get_pr_record_cached(fork, pr_number=42, cache=pr_cache).head_commit == HEAD_2


def test_put_writes_file_without_holding_cache_lock(pr_cache, monkeypatch):
    """Lookups from other threads aren't blocked while an entry is written to disk."""
    real_write = pr_cache._write_disk
    lock_held = []

    def write_disk(document):
        lock_held.append(pr_cache._mu.locked())
        real_write(document)

    monkeypatch.setattr(pr_cache, "_write_disk", write_disk)
    pr_cache.put("NixOS/nixpkgs:pr:1", {"cached_at": T0, "record": {}})

    assert lock_held == [False]
    assert "NixOS/nixpkgs:pr:1" in json.loads(pr_cache.cache_file.read_text())["items"]


def test_put_write_failure_is_logged_and_retried(pr_cache, monkeypatch, caplog):
    real_write = pr_cache._write_disk

    def failing_write(document):
        raise OSError("disk full")

    monkeypatch.setattr(pr_cache, "_write_disk", failing_write)
    with caplog.at_level(logging.WARNING, logger="common_github.api.pr_details_cached"):
        pr_cache.put("NixOS/nixpkgs:pr:1", {"cached_at": T0, "record": {}})
    assert "disk full" in caplog.text
    assert pr_cache.get_entry("NixOS/nixpkgs:pr:1") is not None
    assert pr_cache._dirty is True

    monkeypatch.setattr(pr_cache, "_write_disk", real_write)
    pr_cache.flush()
    assert pr_cache._dirty is False
    assert "NixOS/nixpkgs:pr:1" in json.loads(pr_cache.cache_file.read_text())["items"]


def test_miss_logs_rest_call(api, session, pr_cache, clock, caplog):
    session.add(PR_URL, FakeResponse(200, pr_payload()))

    with caplog.at_level(logging.DEBUG, logger="common_github.api.base_cached"):
        get_pr_record_cached(api, pr_number=42, cache=pr_cache)
        get_pr_record_cached(api, pr_number=42, cache=pr_cache)

    lines = [r.getMessage() for r in caplog.records if r.name == "common_github.api.base_cached"]
    assert len(lines) == 1
    assert "REST GET /repos/{owner}/{repo}/pulls/{pr_number}" in lines[0]
    assert "missing" in lines[0]
