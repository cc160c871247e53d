"""
Pytest tests for common_branch_rules.py (branch filter, propagation table, Hydra links).

Run from the repository root:
    pytest test_common_branch_rules.py -v
"""

import sys
from pathlib import Path

import pytest

# Set up path for imports
parent_dir = Path(__file__).parent
if str(parent_dir) not in sys.path:
    sys.path.insert(0, str(parent_dir))

from common_branch_rules import (
    BranchFilter,
    HYDRA_BASE_URL,
    hydra_link,
    hydra_url,
    is_tracked_branch,
    successors,
)
from common_types import HydraLinkKind


# ============================================================================
# Branch filter
# ============================================================================

def test_tracked_branch_families():
    """Every tracked prefix family is accepted."""
    for name in [
        "master",
        "staging",
        "staging-next",
        "staging-24.05",
        "staging-next-24.05",
        "python-updates",
        "haskell-updates",
        "release-24.05",
        "nixpkgs-unstable",
        "nixpkgs-24.05-darwin",
        "nixos-unstable",
        "nixos-unstable-small",
        "nixos-24.11-small",
    ]:
        assert is_tracked_branch(name), f"Should be tracked: {name}"


def test_untracked_branch_names():
    """Anything outside the tracked families is rejected."""
    for name in ["feature/foo", "wip-master", "backport-12345-to-release-24.05", "gh-pages", "", "Master"]:
        assert not is_tracked_branch(name), f"Should NOT be tracked: {name}"


def test_old_releases_are_rejected():
    """A release token older than the cutoff year excludes the branch."""
    assert not is_tracked_branch("release-22.11")
    assert not is_tracked_branch("nixos-22.05-small")
    assert not is_tracked_branch("nixpkgs-18.09-darwin")
    assert not is_tracked_branch("staging-next-21.11")
    assert is_tracked_branch("release-23.05")
    assert is_tracked_branch("nixos-25.05")


def test_oldest_year_is_configurable():
    f = BranchFilter(oldest_year=25)
    assert not f.is_tracked("release-24.11")
    assert f.is_tracked("release-25.05")
    assert f.is_tracked("master")

    f = BranchFilter(oldest_year=0)
    assert f.is_tracked("release-13.10")


# ============================================================================
# Propagation graph (all matching rules fire)
# ============================================================================

@pytest.mark.parametrize(
    "branch,expected",
    [
        ("python-updates", ["staging"]),
        ("staging", ["staging-next"]),
        ("staging-next", ["master"]),
        ("haskell-updates", ["master"]),
        ("master", ["nixpkgs-unstable", "nixos-unstable-small"]),
        ("nixos-unstable-small", ["nixos-unstable"]),
        ("release-24.05", ["nixpkgs-24.05-darwin", "nixos-24.05-small"]),
        ("nixos-24.05-small", ["nixos-24.05"]),
        ("staging-next-24.05", ["release-24.05"]),
        ("staging-24.05", ["staging-next-24.05"]),
        ("staging-20.09", ["release-20.09"]),
        ("staging-19.03", ["release-19.03"]),
    ],
)
def test_successors(branch, expected):
    assert successors(branch) == expected


def test_terminal_branches_have_no_successors():
    for name in ["nixpkgs-unstable", "nixos-unstable", "nixos-24.05", "nixpkgs-24.05-darwin", "feature/foo"]:
        assert successors(name) == [], f"{name} should be terminal"


def test_release_branch_fires_both_rules_in_table_order():
    """Two rules match release-*: both successors are returned, darwin first."""
    out = successors("release-23.11")
    assert out == ["nixpkgs-23.11-darwin", "nixos-23.11-small"]


# ============================================================================
# Hydra links (first match wins)
# ============================================================================

@pytest.mark.parametrize(
    "branch,expected",
    [
        ("master", "https://hydra.nixos.org/jobset/nixpkgs/trunk#tabs-jobs"),
        ("python-updates", "https://hydra.nixos.org/jobset/nixpkgs/python-updates#tabs-jobs"),
        ("staging-next", "https://hydra.nixos.org/jobset/nixpkgs/staging-next#tabs-jobs"),
        ("staging-next-24.05", "https://hydra.nixos.org/jobset/nixpkgs/staging-next-24.05#tabs-jobs"),
        ("staging-next-21.05", "https://hydra.nixos.org/jobset/nixpkgs/staging-next-21.05#tabs-jobs"),
        ("haskell-updates", "https://hydra.nixos.org/jobset/nixpkgs/haskell-updates#tabs-jobs"),
        ("nixpkgs-unstable", "https://hydra.nixos.org/job/nixpkgs/trunk/unstable#tabs-constituents"),
        ("nixos-unstable-small", "https://hydra.nixos.org/job/nixos/unstable-small/tested#tabs-constituents"),
        ("nixos-unstable", "https://hydra.nixos.org/job/nixos/trunk-combined/tested#tabs-constituents"),
        ("nixos-24.05", "https://hydra.nixos.org/job/nixos/release-24.05/tested#tabs-constituents"),
        ("nixos-24.05-small", "https://hydra.nixos.org/job/nixos/release-24.05-small/tested#tabs-constituents"),
    ],
)
def test_hydra_link(branch, expected):
    assert hydra_link(branch) == expected


def test_hydra_link_absent():
    """Branches without a Hydra jobset get no link."""
    for name in ["staging", "staging-24.05", "staging-next-21.11", "release-24.05", "nixpkgs-24.05-darwin", "feature/foo"]:
        assert hydra_link(name) is None, f"{name} should have no Hydra link"


def test_hydra_url_kinds():
    assert hydra_url("nixpkgs/trunk", HydraLinkKind.BRANCH) == f"{HYDRA_BASE_URL}/jobset/nixpkgs/trunk#tabs-jobs"
    assert hydra_url("nixos/x/tested", HydraLinkKind.CHANNEL) == f"{HYDRA_BASE_URL}/job/nixos/x/tested#tabs-constituents"
    assert hydra_url("p", HydraLinkKind.BRANCH, base_url="http://localhost") == "http://localhost/jobset/p#tabs-jobs"
