"""
PR tracker shared utilities.

Shared constants, configuration and git helpers used by the commit indexer,
the PR lookup layer and the HTTP query server.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

# GitPython is required - hard error if not installed
try:
    import git  # type: ignore[import-not-found]
except ImportError as e:
    raise ImportError("GitPython is required. Install with: pip install gitpython") from e

# Global logger for the module
_logger = logging.getLogger(__name__)

#
# Policy constants (single source of truth)
#
# Defined at module level so the indexer, the server and the CLI entry points
# don't duplicate literals (15min / 6h / etc) across scripts.
#
DEFAULT_REFRESH_INTERVAL_S: int = 15 * 60
# ^ Delay between two indexing passes of the background loop.
#   Expected to exceed the duration of one incremental pass (a few seconds to minutes).
DEFAULT_INDEX_WORKERS: int = 3
# ^ Branch traversals running concurrently within one pass.
#   All workers walk the same object store, so this stays small.
DEFAULT_PR_TTL_S: int = 6 * 3600
# ^ Age after which a cached PR record is refetched from GitHub.
#   Example: a PR looked up at 09:00 is served from cache until 15:00.
DEFAULT_OLDEST_RELEASE_YEAR: int = 23
# ^ Release branches with an older two-digit year (e.g. "release-22.11") are not indexed.

DEFAULT_REPO_URL = "https://github.com/NixOS/nixpkgs.git"
DEFAULT_GITHUB_REPO = "NixOS/nixpkgs"
DEFAULT_REPO_PATH = "nixpkgs"
DEFAULT_PORT = 8082
REMOTE_NAME = "origin"

SNAPSHOT_FILE_NAME = "commit-index.json.gz"
PR_CACHE_FILE_NAME = "pr-details.json"


def pr_tracker_cache_dir() -> Path:
    """Return the cache directory for the PR tracker.

    Resolution order:
    - PR_TRACKER_CACHE_DIR (explicit override)
    - ~/.cache/pr-tracker
    """
    override = os.environ.get("PR_TRACKER_CACHE_DIR")
    if override:
        return Path(override).expanduser()

    return Path.home() / ".cache" / "pr-tracker"


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = str(environ.get(name, "") or "").strip()
    if not raw:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


@dataclass
class TrackerConfig:
    """Runtime configuration, read from the environment.

    Example:
        config = TrackerConfig.from_env()
        config.snapshot_file  # ~/.cache/pr-tracker/commit-index.json.gz
    """

    repo_url: str = DEFAULT_REPO_URL
    github_owner: str = "NixOS"
    github_repo: str = "nixpkgs"
    repo_path: Path = Path(DEFAULT_REPO_PATH)
    cache_dir: Path = field(default_factory=pr_tracker_cache_dir)
    port: int = DEFAULT_PORT
    github_token: Optional[str] = None
    refresh_interval_s: int = DEFAULT_REFRESH_INTERVAL_S
    workers: int = DEFAULT_INDEX_WORKERS
    pr_ttl_s: int = DEFAULT_PR_TTL_S
    oldest_year: int = DEFAULT_OLDEST_RELEASE_YEAR

    @property
    def snapshot_file(self) -> Path:
        return self.cache_dir / SNAPSHOT_FILE_NAME

    @property
    def pr_cache_file(self) -> Path:
        return self.cache_dir / PR_CACHE_FILE_NAME

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TrackerConfig":
        """Build a config from environment variables.

        Raises:
            ValueError: a numeric setting or the GitHub repo slug is malformed
        """
        env = os.environ if environ is None else environ

        slug = str(env.get("PR_TRACKER_GITHUB_REPO", "") or DEFAULT_GITHUB_REPO).strip()
        owner, sep, repo = slug.partition("/")
        if not sep or not owner or not repo or "/" in repo:
            raise ValueError(f"PR_TRACKER_GITHUB_REPO must look like 'owner/repo', got {slug!r}")

        cache_dir_raw = str(env.get("PR_TRACKER_CACHE_DIR", "") or "").strip()
        cache_dir = Path(cache_dir_raw).expanduser() if cache_dir_raw else pr_tracker_cache_dir()

        return cls(
            repo_url=str(env.get("PR_TRACKER_REPO_URL", "") or DEFAULT_REPO_URL).strip(),
            github_owner=owner,
            github_repo=repo,
            repo_path=Path(str(env.get("PR_TRACKER_REPO_PATH", "") or DEFAULT_REPO_PATH)).expanduser(),
            cache_dir=cache_dir,
            port=_env_int(env, "PORT", DEFAULT_PORT),
            github_token=(env.get("GH_TOKEN") or env.get("GITHUB_TOKEN") or None),
            refresh_interval_s=_env_int(env, "PR_TRACKER_REFRESH_INTERVAL_S", DEFAULT_REFRESH_INTERVAL_S),
            workers=_env_int(env, "PR_TRACKER_WORKERS", DEFAULT_INDEX_WORKERS),
            pr_ttl_s=_env_int(env, "PR_TRACKER_PR_TTL_S", DEFAULT_PR_TTL_S),
            oldest_year=_env_int(env, "PR_TRACKER_OLDEST_YEAR", DEFAULT_OLDEST_RELEASE_YEAR),
        )


class BaseUtils:
    """Base class for utility classes with a common, class-named logger"""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

        # Set up logger with class name
        self.logger = logging.getLogger(self.__class__.__name__)
        self.logger.setLevel(logging.DEBUG if verbose else logging.INFO)

        # Remove any existing handlers
        self.logger.handlers.clear()

        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)

        # Verbose mode shows class/method, simple mode only the level and message
        class LocationFormatter(logging.Formatter):
            def __init__(self, verbose: bool) -> None:
                super().__init__()
                self.verbose = verbose

            def format(self, record: logging.LogRecord) -> str:
                if self.verbose:
                    location = f"{record.name}.{record.funcName}" if record.funcName != '<module>' else record.name
                    return f"{record.levelname} - [{location}] {record.getMessage()}"
                return f"[{record.levelname}] {record.getMessage()}"

        console_handler.setFormatter(LocationFormatter(verbose))
        self.logger.addHandler(console_handler)

        # Prevent propagation to root logger
        self.logger.propagate = False


# Git utilities using GitPython API (NO subprocess calls)
class GitUtils(BaseUtils):
    """Repository access for the indexer, using GitPython only.

    One instance wraps one `git.Repo` handle. GitPython handles are not meant to be
    shared between threads, so every indexing worker opens its own instance.

    Example:
        with GitUtils(repo_path="nixpkgs") as git_utils:
            git_utils.fetch_all()
            for name in git_utils.list_remote_branches():
                tip = git_utils.resolve_remote_branch(name)
    """

    def __init__(self, repo_path: Any, verbose: bool = False):
        """Initialize GitUtils.

        Args:
            repo_path: Path to an existing clone (Path object or str)
            verbose: Verbose logging
        """
        super().__init__(verbose)

        self.repo_path = Path(repo_path) if not isinstance(repo_path, Path) else repo_path

        try:
            self.repo = git.Repo(self.repo_path)
            self.logger.debug(f"Initialized git repo at {self.repo_path}")
        except Exception as e:
            self.logger.error(f"Failed to initialize git repository at {self.repo_path}: {e}")
            raise

    @staticmethod
    def repo_exists(repo_path: Any) -> bool:
        return Path(repo_path).exists()

    @classmethod
    def clone(cls, url: str, repo_path: Any, verbose: bool = False) -> "GitUtils":
        """Clone `url` into `repo_path` and return a handle on the new clone.

        Raises:
            git.GitCommandError: clone failed
        """
        _logger.info(f"Cloning {url} into {repo_path}. This may take a while...")
        git.Repo.clone_from(url, str(repo_path))
        return cls(repo_path, verbose=verbose)

    def ensure_remote_url(self, url: str) -> bool:
        """Point the tracked remote at `url`, creating it if needed.

        Returns:
            True if the remote was created or its URL changed
        """
        names = [r.name for r in self.repo.remotes]
        if REMOTE_NAME not in names:
            self.repo.create_remote(REMOTE_NAME, url)
            self.logger.info(f"Added remote {REMOTE_NAME} -> {url}")
            return True

        remote = self.repo.remote(REMOTE_NAME)
        current = next(remote.urls, None)
        if current == url:
            return False
        remote.set_url(url)
        self.logger.warning(f"Remote {REMOTE_NAME} pointed at {current}, reset to {url}")
        return True

    def fetch_all(self) -> None:
        """Fetch all refs of the tracked remote (pruning deleted branches).

        Raises:
            git.GitCommandError: fetch failed
        """
        self.repo.remote(REMOTE_NAME).fetch(prune=True)

    def list_remote_branches(self) -> List[str]:
        """List branch names advertised by the remote (`git ls-remote --heads`).

        Returns:
            List of branch names without the refs/heads/ prefix

            Example return value:
            ["master", "staging", "staging-next", "release-24.05", "nixos-24.05-small"]
        """
        output = self.repo.git.ls_remote("--heads", REMOTE_NAME)
        ref_prefix = "refs/heads/"
        branches: List[str] = []
        for line in output.splitlines():
            parts = line.split("\t", 1)
            if len(parts) != 2:
                continue
            ref_name = parts[1].strip()
            if not ref_name.startswith(ref_prefix):
                continue
            branches.append(ref_name[len(ref_prefix):])
        return branches

    def list_tracking_branches(self) -> List[str]:
        """List branch names from the local refs/remotes/origin/* tracking refs (no network).

        Returns:
            List of branch names without the origin/ prefix, as of the last fetch or clone
        """
        return [ref.remote_head for ref in self.repo.remote(REMOTE_NAME).refs if ref.remote_head != "HEAD"]

    def resolve_remote_branch(self, branch_name: str) -> Optional[str]:
        """Resolve refs/remotes/origin/<branch_name> to its tip commit SHA.

        Returns:
            Full commit SHA (40 characters) or None if the ref can't be resolved
        """
        ref = f"refs/remotes/{REMOTE_NAME}/{branch_name}"
        try:
            return self.repo.commit(ref).hexsha
        except Exception as e:
            self.logger.error(f"Failed to resolve {ref}: {e}")
            return None

    def is_ancestor(self, ancestor: str, rev: str) -> bool:
        """True if `ancestor` is reachable from `rev` (`git merge-base --is-ancestor`).

        An unknown object (e.g. a checkpoint dropped by a force push and gc'd) counts as False.
        """
        try:
            return self.repo.is_ancestor(ancestor, rev)
        except git.GitCommandError as e:
            self.logger.warning(f"Couldn't check whether {ancestor[:12]} is an ancestor of {rev[:12]}: {e}")
            return False

    def iter_commit_hashes(self, tip: str, since: Optional[str] = None) -> Iterator[str]:
        """Lazily yield the SHAs reachable from `tip`, most recent first.

        With `since`, yield only what is reachable from `tip` but not from `since`
        (`since..tip`), which includes commits merged in from older side branches.
        `since` must be an ancestor of `tip` (see is_ancestor).

        The underlying `git rev-list` is streamed, so a caller that stops early
        doesn't pay for the rest of the history.
        """
        rev = f"{since}..{tip}" if since else tip
        for commit in self.repo.iter_commits(rev):
            yield commit.hexsha

    def close(self) -> None:
        self.repo.close()

    def __enter__(self) -> "GitUtils":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def summarize_config(config: TrackerConfig) -> Dict[str, Any]:
    """Loggable view of the config (the token is never included)."""
    return {
        "repo_url": config.repo_url,
        "github": f"{config.github_owner}/{config.github_repo}",
        "repo_path": str(config.repo_path),
        "cache_dir": str(config.cache_dir),
        "port": config.port,
        "github_token": "set" if config.github_token else "unset",
        "refresh_interval_s": config.refresh_interval_s,
        "workers": config.workers,
        "pr_ttl_s": config.pr_ttl_s,
        "oldest_year": config.oldest_year,
    }
