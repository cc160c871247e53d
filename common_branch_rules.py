#!/usr/bin/env python3
# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Branch rule tables for the nixpkgs branch/channel layout.

Three tables, three evaluation modes:
- TRACKED_BRANCH_PREFIXES : which remote branches get indexed (prefix + release year cutoff)
- PROPAGATION_RULES       : branch -> next branch(es); ALL matching rules fire, in table order
- HYDRA_LINK_RULES        : branch -> Hydra page; FIRST matching rule wins

Pure data and lookups: no I/O, and no project imports besides `common_types`.

Example (how a change travels):
    python-updates -> staging -> staging-next -> master -> nixpkgs-unstable
                                                        -> nixos-unstable-small -> nixos-unstable
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Pattern, Tuple

from common_types import HydraLinkKind

#
# =============================================================================
# Branch filter
# =============================================================================
#

TRACKED_BRANCH_PREFIXES: Tuple[str, ...] = (
    "python-updates",
    "staging",
    "haskell-updates",
    "master",
    "release-",
    "nixpkgs-",
    "nixos-",
)

# Release token embedded in branch names, e.g. "release-24.05", "nixos-23.11-small".
RELEASE_YEAR_RE: Pattern[str] = re.compile(r"-(\d\d)\.(\d\d)")

DEFAULT_OLDEST_YEAR = 23


class BranchFilter:
    """Decides whether a remote branch is worth indexing."""

    def __init__(self, oldest_year: int = DEFAULT_OLDEST_YEAR, prefixes: Tuple[str, ...] = TRACKED_BRANCH_PREFIXES):
        self.oldest_year = int(oldest_year)
        self.prefixes = tuple(prefixes)

    def is_tracked(self, branch_name: str) -> bool:
        """True iff the branch belongs to a tracked family and isn't an old release.

        Examples (oldest_year=23):
            "master"            -> True
            "release-24.05"     -> True
            "nixos-22.11-small" -> False  (2022 release)
            "feature/foo"       -> False
        """
        name = str(branch_name or "")
        if not name.startswith(self.prefixes):
            return False
        m = RELEASE_YEAR_RE.search(name)
        if m and int(m.group(1)) < self.oldest_year:
            return False
        return True


_DEFAULT_FILTER = BranchFilter()


def is_tracked_branch(branch_name: str) -> bool:
    return _DEFAULT_FILTER.is_tracked(branch_name)


#
# =============================================================================
# Propagation graph (all matches fire)
# =============================================================================
#

@dataclass(frozen=True)
class PropagationRule:
    pattern: Pattern[str]
    successor: str  # re template, \1 refers to the first capture group

    def apply(self, branch_name: str) -> Optional[str]:
        m = self.pattern.match(branch_name)
        if m is None:
            return None
        return m.expand(self.successor)


def _prop(pattern: str, successor: str) -> PropagationRule:
    return PropagationRule(pattern=re.compile(pattern), successor=successor)


# Order matters: successors are reported in table order.
# The table must stay acyclic (tree building only guards against cycles, it doesn't resolve them).
PROPAGATION_RULES: Tuple[PropagationRule, ...] = (
    _prop(r"^python-updates$", "staging"),
    _prop(r"^staging$", "staging-next"),
    _prop(r"^staging-next$", "master"),
    _prop(r"^staging-next-([\d.]+)$", r"release-\1"),
    _prop(r"^haskell-updates$", "master"),
    _prop(r"^master$", "nixpkgs-unstable"),
    _prop(r"^master$", "nixos-unstable-small"),
    _prop(r"^nixos-(.*)-small$", r"nixos-\1"),
    _prop(r"^release-([\d.]+)$", r"nixpkgs-\1-darwin"),
    _prop(r"^release-([\d.]+)$", r"nixos-\1-small"),
    # Before 21.05 staging-XX.YY merged straight into the release branch.
    _prop(r"^staging-((1.|20)\.\d{2})$", r"release-\1"),
    _prop(r"^staging-((2[1-9]|[3-90].)\.\d{2})$", r"staging-next-\1"),
)


def successors(branch_name: str) -> List[str]:
    """Every branch a change on `branch_name` flows into next, in table order.

    Examples:
        successors("master")        -> ["nixpkgs-unstable", "nixos-unstable-small"]
        successors("release-24.05") -> ["nixpkgs-24.05-darwin", "nixos-24.05-small"]
        successors("nixos-24.05")   -> []
    """
    out: List[str] = []
    for rule in PROPAGATION_RULES:
        nxt = rule.apply(branch_name)
        if nxt is not None:
            out.append(nxt)
    return out


#
# =============================================================================
# Hydra links (first match wins)
# =============================================================================
#

HYDRA_BASE_URL = "https://hydra.nixos.org"


@dataclass(frozen=True)
class HydraLinkRule:
    pattern: Pattern[str]
    path: str  # re template
    kind: HydraLinkKind


def _hydra(pattern: str, path: str, kind: HydraLinkKind) -> HydraLinkRule:
    return HydraLinkRule(pattern=re.compile(pattern), path=path, kind=kind)


HYDRA_LINK_RULES: Tuple[HydraLinkRule, ...] = (
    # Branches
    _hydra(r"^python-updates$", "nixpkgs/python-updates", HydraLinkKind.BRANCH),
    _hydra(r"^staging-next$", "nixpkgs/staging-next", HydraLinkKind.BRANCH),
    # No staging-next-21.11 jobset exists.
    _hydra(
        r"^staging-next-([013-9]\d\.\d{2}|2(1\.05|[2-90]\.\d{2}))$",
        r"nixpkgs/staging-next-\1",
        HydraLinkKind.BRANCH,
    ),
    _hydra(r"^haskell-updates$", "nixpkgs/haskell-updates", HydraLinkKind.BRANCH),
    _hydra(r"^master$", "nixpkgs/trunk", HydraLinkKind.BRANCH),
    # Channels
    _hydra(r"^nixpkgs-unstable$", "nixpkgs/trunk/unstable", HydraLinkKind.CHANNEL),
    _hydra(r"^nixos-unstable-small$", "nixos/unstable-small/tested", HydraLinkKind.CHANNEL),
    _hydra(r"^nixos-unstable$", "nixos/trunk-combined/tested", HydraLinkKind.CHANNEL),
    _hydra(r"^nixos-(\d.*)$", r"nixos/release-\1/tested", HydraLinkKind.CHANNEL),
)


def hydra_url(path: str, kind: HydraLinkKind, *, base_url: str = HYDRA_BASE_URL) -> str:
    if kind == HydraLinkKind.BRANCH:
        return f"{base_url}/jobset/{path}#tabs-jobs"
    return f"{base_url}/job/{path}#tabs-constituents"


def hydra_link(branch_name: str) -> Optional[str]:
    """Hydra page for a branch, or None if no rule matches.

    Examples:
        hydra_link("master")           -> "https://hydra.nixos.org/jobset/nixpkgs/trunk#tabs-jobs"
        hydra_link("nixpkgs-unstable") -> "https://hydra.nixos.org/job/nixpkgs/trunk/unstable#tabs-constituents"
        hydra_link("staging")          -> None
    """
    for rule in HYDRA_LINK_RULES:
        m = rule.pattern.match(str(branch_name or ""))
        if m is not None:
            return hydra_url(m.expand(rule.path), rule.kind)
    return None
