#!/usr/bin/env python3
# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Branch tree nodes for PR propagation queries.

Given a starting branch and a commit, build the tree of every branch the change
flows into (common_branch_rules.successors), each node annotated with whether
the commit is already in that branch and with its Hydra link.

Example tree for a PR merged into staging (JSON as served by /pr):
    {"branch": "staging", "accepted": true, "hydra_link": null, "children": [
        {"branch": "staging-next", "accepted": true, "hydra_link": "https://hydra.nixos.org/jobset/nixpkgs/staging-next#tabs-jobs",
         "children": [
            {"branch": "master", "accepted": false, ...}]}]}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, TYPE_CHECKING

from common_branch_rules import hydra_link, successors
from common_github.api.pr_details_cached import get_pr_record_cached

if TYPE_CHECKING:  # pragma: no cover
    from cache.cache_commit_index import CommitIndex
    from common_github import GitHubAPIClient
    from common_github.api.pr_details_cached import PRDetailsDiskCache

_logger = logging.getLogger(__name__)

# Deeper than any real propagation chain (python-updates -> ... -> nixos-unstable is 6).
MAX_TREE_DEPTH = 16


@dataclass
class BranchTreeNode:
    """One branch in a propagation tree."""

    branch: str
    accepted: bool
    hydra_link: Optional[str] = None
    children: List["BranchTreeNode"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "branch": self.branch,
            "accepted": self.accepted,
            "hydra_link": self.hydra_link,
            "children": [c.to_dict() for c in self.children],
        }

    def iter_nodes(self):
        """Pre-order walk over this node and its descendants."""
        yield self
        for child in self.children:
            yield from child.iter_nodes()


@dataclass
class PRStatus:
    """Query result for one pull request."""

    id: int
    title: str
    author: str
    accepted: bool
    branches: BranchTreeNode

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "accepted": self.accepted,
            "branches": self.branches.to_dict(),
        }


def build_branch_tree(
    branch_name: str,
    commit: str,
    index: "CommitIndex",
    *,
    _path: FrozenSet[str] = frozenset(),
) -> BranchTreeNode:
    """Build the propagation tree rooted at `branch_name` for `commit`.

    Children are built for every successor, in rule order, whether or not the
    commit reached the parent yet. A successor already on the current path (or a
    chain longer than MAX_TREE_DEPTH) is returned as a leaf.
    """
    node = BranchTreeNode(
        branch=branch_name,
        accepted=index.contains(commit, branch_name),
        hydra_link=hydra_link(branch_name),
    )

    path = _path | {branch_name}
    if len(path) > MAX_TREE_DEPTH:
        _logger.warning(f"Propagation chain deeper than {MAX_TREE_DEPTH} at {branch_name}, not expanding")
        return node

    for nxt in successors(branch_name):
        if nxt in path:
            _logger.warning(f"Propagation cycle {branch_name} -> {nxt}, not expanding")
            node.children.append(BranchTreeNode(branch=nxt, accepted=index.contains(commit, nxt), hydra_link=hydra_link(nxt)))
            continue
        node.children.append(build_branch_tree(nxt, commit, index, _path=path))
    return node


def get_branches_for_pr(
    pr_number: int,
    *,
    api: "GitHubAPIClient",
    index: "CommitIndex",
    pr_cache: Optional["PRDetailsDiskCache"] = None,
    ttl_s: Optional[int] = None,
) -> PRStatus:
    """Resolve a PR and build the propagation tree from its target branch.

    The PR counts as accepted when its head commit is in the target branch itself;
    descendants don't change that flag.

    Raises:
        GitHubAPIError (or subclass): PR lookup failed
    """
    kwargs: Dict[str, Any] = {"pr_number": int(pr_number), "cache": pr_cache}
    if ttl_s is not None:
        kwargs["ttl_s"] = int(ttl_s)
    pr = get_pr_record_cached(api, **kwargs)

    tree = build_branch_tree(pr.target_branch, pr.head_commit, index)
    return PRStatus(
        id=pr.id,
        title=pr.title,
        author=pr.author,
        accepted=tree.accepted,
        branches=tree,
    )
