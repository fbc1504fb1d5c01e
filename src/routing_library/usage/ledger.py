# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Usage ledger: per (provider, model) request/token counters.

The ledger is the authoritative in-memory store for usage. Every mutation of a
pair goes through record() under that pair's lock, so two requests finishing
in the same minute never lose an update. Persistence is a separate concern
(see usage.storage); nothing here reads from disk before writing.
"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Tuple

from ..config.defaults import USAGE_WINDOW_SECONDS
from ..core.types import UsageWindow

if TYPE_CHECKING:
    from ..config.catalog import ProviderCatalog

lib_logger = logging.getLogger("routing_library")

PairKey = Tuple[str, str]


def window_elapsed(window: UsageWindow, now: float) -> bool:
    """True once a full window has passed since ``window_start``."""
    return now - window.window_start >= USAGE_WINDOW_SECONDS


def calculate_cost(
    input_tokens: int, output_tokens: int, input_price: float, output_price: float
) -> float:
    """Cost in currency units for per-million-token prices."""
    return (
        input_tokens / 1_000_000 * input_price
        + output_tokens / 1_000_000 * output_price
    )


class UsageLedger:
    """
    Per (provider, model) usage windows and lifetime totals.

    Windows are created lazily on first use and live for the process
    lifetime, or until reset().

    Example:
        ledger = UsageLedger(catalog)
        await ledger.record("openai", "gpt-4o-mini", 1200, 300)
        window = ledger.snapshot("openai", "gpt-4o-mini")
    """

    def __init__(
        self,
        catalog: Optional["ProviderCatalog"] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._catalog = catalog
        self._clock = clock
        self._windows: Dict[PairKey, UsageWindow] = {}
        self._locks: Dict[PairKey, asyncio.Lock] = {}
        self._dirty = False

    def set_catalog(self, catalog: "ProviderCatalog") -> None:
        """Use new prices for future records; history is kept."""
        self._catalog = catalog

    def _lock_for(self, key: PairKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _prices(self, provider: str, model: str) -> Tuple[float, float]:
        spec = self._catalog.get_model(provider, model) if self._catalog else None
        if spec is None:
            return 0.0, 0.0
        return spec.input_price, spec.output_price

    async def record(
        self,
        provider: str,
        model: str,
        input_tokens: int = 0,
        output_tokens: int = 0,
        is_error: bool = False,
    ) -> UsageWindow:
        """
        Record one request against a pair.

        The minute window is rolled over before the new usage is added, so a
        request arriving after a full minute starts a fresh window.

        Args:
            provider: Provider name
            model: Model name
            input_tokens: Prompt tokens consumed
            output_tokens: Completion tokens produced
            is_error: Whether the request failed

        Returns:
            Copy of the window after the update
        """
        input_tokens = max(0, int(input_tokens))
        output_tokens = max(0, int(output_tokens))
        key = (provider, model)
        input_price, output_price = self._prices(provider, model)

        async with self._lock_for(key):
            now = self._clock()
            window = self._windows.get(key)
            if window is None:
                window = self._windows[key] = UsageWindow(window_start=now)
            elif window_elapsed(window, now):
                window.tokens_this_minute = 0
                window.requests_this_minute = 0
                window.window_start = now

            tokens = input_tokens + output_tokens
            window.tokens_this_minute += tokens
            window.requests_this_minute += 1
            window.total_tokens += tokens
            window.total_input_tokens += input_tokens
            window.total_output_tokens += output_tokens
            window.total_requests += 1
            window.total_cost += calculate_cost(
                input_tokens, output_tokens, input_price, output_price
            )
            if is_error:
                window.error_count += 1
            window.last_used_at = now
            self._dirty = True
            result = window.copy()

        lib_logger.debug(
            f"Recorded {'error' if is_error else 'usage'} for {provider}/{model}: "
            f"{input_tokens}+{output_tokens} tokens "
            f"(minute: {result.tokens_this_minute} tok, {result.requests_this_minute} req)"
        )
        return result

    def snapshot(self, provider: str, model: str) -> UsageWindow:
        """
        Read-only copy of a pair's window.

        A pair that was never used returns an empty window.
        """
        window = self._windows.get((provider, model))
        return window.copy() if window else UsageWindow()

    def totals(self) -> Dict[str, Any]:
        """Lifetime totals across every pair."""
        windows = list(self._windows.values())
        return {
            "requests": sum(w.total_requests for w in windows),
            "errors": sum(w.error_count for w in windows),
            "input_tokens": sum(w.total_input_tokens for w in windows),
            "output_tokens": sum(w.total_output_tokens for w in windows),
            "tokens": sum(w.total_tokens for w in windows),
            "cost": sum(w.total_cost for w in windows),
        }

    async def reset(self, provider: str, model: Optional[str] = None) -> int:
        """
        Drop the windows of a provider (or a single pair).

        Returns:
            Number of windows removed
        """
        keys = [
            key
            for key in list(self._windows)
            if key[0] == provider and (model is None or key[1] == model)
        ]
        for key in keys:
            async with self._lock_for(key):
                self._windows.pop(key, None)
        if keys:
            self._dirty = True
            lib_logger.info(f"Reset {len(keys)} usage window(s) for {provider}")
        return len(keys)

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    @property
    def dirty(self) -> bool:
        return self._dirty

    def mark_clean(self) -> None:
        self._dirty = False

    def to_dict(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for (provider, model), window in self._windows.items():
            data.setdefault(provider, {})[model] = window.to_dict()
        return data

    def load_dict(self, data: Dict[str, Dict[str, Dict[str, Any]]]) -> int:
        """
        Replace in-memory windows with persisted ones.

        Only called at startup, before any request runs.

        Returns:
            Number of windows loaded
        """
        loaded = 0
        for provider, models in (data or {}).items():
            for model, raw in models.items():
                try:
                    self._windows[(provider, model)] = UsageWindow.from_dict(raw)
                    loaded += 1
                except (TypeError, ValueError) as e:
                    lib_logger.warning(
                        f"Skipping corrupt usage window {provider}/{model}: {e}"
                    )
        return loaded
