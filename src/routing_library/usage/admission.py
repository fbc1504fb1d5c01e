# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Admission control for (provider, model) pairs.

A pair stops accepting requests once its minute usage reaches a configured
fraction of either per-minute cap. The check is a pure read of the ledger:
an elapsed window reads as zero usage without being reset here.
"""

import time
from typing import Callable, Optional

from ..config.defaults import DEFAULT_RATE_LIMIT_THRESHOLD
from ..core.types import AdmissionResult, ModelSpec, UsageWindow
from .ledger import UsageLedger, window_elapsed


def _ratio(used: int, cap: Optional[int]) -> float:
    if not cap:
        return 0.0
    return used / cap


def _remaining(used: int, cap: Optional[int]) -> Optional[int]:
    if not cap:
        return None
    return max(0, cap - used)


def evaluate_window(
    window: UsageWindow,
    model: ModelSpec,
    now: float,
    threshold: float = DEFAULT_RATE_LIMIT_THRESHOLD,
) -> AdmissionResult:
    """
    Decide admission from a window snapshot.

    Args:
        window: Usage window of the pair
        model: Model spec holding the per-minute caps
        now: Current timestamp
        threshold: Fraction of a cap at which the pair is closed

    Returns:
        AdmissionResult with remaining headroom
    """
    if window_elapsed(window, now):
        tokens, requests = 0, 0
    else:
        tokens, requests = window.tokens_this_minute, window.requests_this_minute

    token_ratio = _ratio(tokens, model.tokens_per_minute)
    request_ratio = _ratio(requests, model.requests_per_minute)

    reason = None
    if model.tokens_per_minute and token_ratio >= threshold:
        reason = f"tokens {tokens}/{model.tokens_per_minute} >= {threshold:.0%}"
    elif model.requests_per_minute and request_ratio >= threshold:
        reason = f"requests {requests}/{model.requests_per_minute} >= {threshold:.0%}"

    return AdmissionResult(
        admissible=reason is None,
        remaining_tokens=_remaining(tokens, model.tokens_per_minute),
        remaining_requests=_remaining(requests, model.requests_per_minute),
        token_ratio=token_ratio,
        request_ratio=request_ratio,
        reason=reason,
    )


class AdmissionController:
    """
    Answers "may this pair take one more request right now?".

    Has no side effects; safe to call as often as needed during selection.
    """

    def __init__(
        self,
        ledger: UsageLedger,
        threshold: float = DEFAULT_RATE_LIMIT_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ):
        self._ledger = ledger
        self.threshold = threshold
        self._clock = clock

    def check(self, provider: str, model: ModelSpec) -> AdmissionResult:
        window = self._ledger.snapshot(provider, model.name)
        return evaluate_window(window, model, self._clock(), self.threshold)

    def is_admissible(self, provider: str, model: ModelSpec) -> bool:
        return self.check(provider, model).admissible
