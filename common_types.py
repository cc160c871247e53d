#!/usr/bin/env python3
# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Common shared enums/types used by both:
- `common_branch_rules.py` (rule tables)
- `common_branch_nodes.py` / `pr_tracker_server.py` (tree + JSON rendering)

This module MUST NOT import `common.py` or any other project module to avoid cycles.
"""

from __future__ import annotations

from enum import Enum


class HydraLinkKind(str, Enum):
    """Which Hydra page a branch links to."""

    # A jobset page (branches built as a whole: master, staging-next, ...)
    BRANCH = "branch"
    # A channel's aggregate job page (nixpkgs-unstable, nixos-24.05, ...)
    CHANNEL = "channel"
