# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Runtime settings for the routing engine.

Settings start from config.defaults and can be overridden by ROUTING_*
environment variables or by the "settings" section of a catalog file.
"""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Mapping, Optional, Tuple

from ..core.errors import ConfigurationError
from . import defaults

lib_logger = logging.getLogger("routing_library")


def _env_int(name: str, default: int) -> int:
    """Parse an integer from environment variable with fallback to default."""
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        lib_logger.warning(f"Invalid {name} value, using default {default}")
        return default


def _env_float(name: str, default: float) -> float:
    """Parse a float from environment variable with fallback to default."""
    try:
        return float(os.environ.get(name, str(default)))
    except ValueError:
        lib_logger.warning(f"Invalid {name} value, using default {default}")
        return default


@dataclass(frozen=True)
class RoutingSettings:
    """
    Tunable parameters of the orchestration engine.

    rate_limit_threshold and output_ratio are configuration defaults, not
    derived values; tune them per deployment.
    """

    rate_limit_threshold: float = defaults.DEFAULT_RATE_LIMIT_THRESHOLD
    output_ratio: float = defaults.DEFAULT_OUTPUT_RATIO
    max_retries: int = defaults.DEFAULT_MAX_RETRIES
    retries_per_model: int = defaults.DEFAULT_RETRIES_PER_MODEL
    retry_delay: float = defaults.DEFAULT_RETRY_DELAY
    attempt_timeout: float = defaults.DEFAULT_ATTEMPT_TIMEOUT
    rate_limit_cooldown_minutes: float = defaults.DEFAULT_RATE_LIMIT_COOLDOWN_MINUTES
    batch_max_concurrent: int = defaults.DEFAULT_BATCH_MAX_CONCURRENT
    batch_timeout: float = defaults.DEFAULT_BATCH_TIMEOUT
    save_debounce_seconds: float = defaults.DEFAULT_SAVE_DEBOUNCE_SECONDS
    tier_order: Dict[str, Tuple[str, ...]] = field(
        default_factory=lambda: dict(defaults.DEFAULT_TIER_ORDER)
    )

    def __post_init__(self) -> None:
        if not 0.0 < self.rate_limit_threshold <= 1.0:
            raise ConfigurationError(
                f"rate_limit_threshold must be in (0, 1], got {self.rate_limit_threshold}"
            )
        if self.output_ratio < 0:
            raise ConfigurationError(
                f"output_ratio must be >= 0, got {self.output_ratio}"
            )
        if self.max_retries < 1:
            raise ConfigurationError(f"max_retries must be >= 1, got {self.max_retries}")
        if self.retries_per_model < 1:
            raise ConfigurationError(
                f"retries_per_model must be >= 1, got {self.retries_per_model}"
            )
        if self.batch_max_concurrent < 1:
            raise ConfigurationError(
                f"batch_max_concurrent must be >= 1, got {self.batch_max_concurrent}"
            )

    def tier_rank(self, task_hint: str, tier: str) -> int:
        """Index of ``tier`` in the tier order of ``task_hint``."""
        order = self.tier_order.get(task_hint) or self.tier_order.get(
            defaults.DEFAULT_TASK_HINT, ()
        )
        try:
            return order.index(tier)
        except ValueError:
            return defaults.UNKNOWN_TIER_RANK

    def merged(self, overrides: Optional[Mapping[str, Any]]) -> "RoutingSettings":
        """Return a copy with ``overrides`` applied; unknown keys are rejected."""
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigurationError(f"Unknown settings: {', '.join(sorted(unknown))}")
        values = dict(overrides)
        if "tier_order" in values:
            tier_order = dict(self.tier_order)
            for hint, order in values["tier_order"].items():
                tier_order[hint] = tuple(order)
            values["tier_order"] = tier_order
        return replace(self, **values)

    @classmethod
    def from_env(cls) -> "RoutingSettings":
        """Build settings from defaults overridden by ROUTING_* variables."""
        return cls(
            rate_limit_threshold=_env_float(
                "ROUTING_RATE_LIMIT_THRESHOLD", defaults.DEFAULT_RATE_LIMIT_THRESHOLD
            ),
            output_ratio=_env_float("ROUTING_OUTPUT_RATIO", defaults.DEFAULT_OUTPUT_RATIO),
            max_retries=_env_int("ROUTING_MAX_RETRIES", defaults.DEFAULT_MAX_RETRIES),
            retries_per_model=_env_int(
                "ROUTING_RETRIES_PER_MODEL", defaults.DEFAULT_RETRIES_PER_MODEL
            ),
            retry_delay=_env_float("ROUTING_RETRY_DELAY", defaults.DEFAULT_RETRY_DELAY),
            attempt_timeout=_env_float(
                "ROUTING_ATTEMPT_TIMEOUT", defaults.DEFAULT_ATTEMPT_TIMEOUT
            ),
            rate_limit_cooldown_minutes=_env_float(
                "ROUTING_RATE_LIMIT_COOLDOWN_MINUTES",
                defaults.DEFAULT_RATE_LIMIT_COOLDOWN_MINUTES,
            ),
            batch_max_concurrent=_env_int(
                "ROUTING_BATCH_MAX_CONCURRENT", defaults.DEFAULT_BATCH_MAX_CONCURRENT
            ),
            batch_timeout=_env_float("ROUTING_BATCH_TIMEOUT", defaults.DEFAULT_BATCH_TIMEOUT),
            save_debounce_seconds=_env_float(
                "ROUTING_SAVE_DEBOUNCE_SECONDS", defaults.DEFAULT_SAVE_DEBOUNCE_SECONDS
            ),
        )
