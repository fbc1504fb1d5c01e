# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .selector import (
    CandidateSelector,
    estimate_cost,
    estimate_tokens,
    required_capabilities,
)

__all__ = [
    "CandidateSelector",
    "estimate_cost",
    "estimate_tokens",
    "required_capabilities",
]
