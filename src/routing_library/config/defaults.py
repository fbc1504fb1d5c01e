# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Centralized defaults for the routing library.

This file contains all tunable default values for:
- Admission control and cost estimation
- Fallback retries and backoff
- Credential cooldowns
- Batch dispatch
- Snapshot persistence

Environment variables override these at runtime (see RoutingSettings.from_env).
"""

from typing import Dict, Tuple

# =============================================================================
# ADMISSION & SELECTION DEFAULTS
# =============================================================================

# Fraction of a per-minute cap at which a (provider, model) pair stops
# accepting new requests.
# Override: ROUTING_RATE_LIMIT_THRESHOLD=<float>
DEFAULT_RATE_LIMIT_THRESHOLD: float = 0.85

# Expected output size as a fraction of input size, used for cost estimation.
# Override: ROUTING_OUTPUT_RATIO=<float>
DEFAULT_OUTPUT_RATIO: float = 0.5

# Length of the usage window in seconds
USAGE_WINDOW_SECONDS: float = 60.0

# Tier preference used for tiers missing from a task's tier order
UNKNOWN_TIER_RANK: int = 99

# Task hint used when a request carries no profile
DEFAULT_TASK_HINT: str = "simple"

# Tier order per task hint (most preferred first)
DEFAULT_TIER_ORDER: Dict[str, Tuple[str, ...]] = {
    "simple": ("lite", "standard", "pro"),
    "code": ("standard", "pro", "lite"),
    "analysis": ("pro", "standard", "lite"),
    "complex": ("pro", "standard", "lite"),
    "creative": ("standard", "pro", "lite"),
    "vision": ("standard", "pro", "lite"),
}

# Capabilities implied by a task hint
TASK_HINT_CAPABILITIES: Dict[str, Tuple[str, ...]] = {
    "vision": ("vision",),
}

# Rough characters-per-token ratio for request size estimates
CHARS_PER_TOKEN: int = 4

# =============================================================================
# FALLBACK DEFAULTS
# =============================================================================

# Maximum attempts for one orchestrated request, across every fallback step
# Override: ROUTING_MAX_RETRIES=<int>
DEFAULT_MAX_RETRIES: int = 6

# Attempts on the same (provider, model) pair for transient errors before
# escalating down the fallback chain
# Override: ROUTING_RETRIES_PER_MODEL=<int>
DEFAULT_RETRIES_PER_MODEL: int = 2

# Base backoff in seconds; the wait before a same-pair retry is
# retry_delay * attempt_number
# Override: ROUTING_RETRY_DELAY=<float>
DEFAULT_RETRY_DELAY: float = 1.0

# Timeout for a single backend call in seconds
# Override: ROUTING_ATTEMPT_TIMEOUT=<float>
DEFAULT_ATTEMPT_TIMEOUT: float = 60.0

# =============================================================================
# COOLDOWN DEFAULTS
# =============================================================================

# Cooldown applied to a credential after a rate limit, in minutes
# Override: ROUTING_RATE_LIMIT_COOLDOWN_MINUTES=<float>
DEFAULT_RATE_LIMIT_COOLDOWN_MINUTES: float = 1.0

# Upper bound for provider-supplied retry-after hints, in minutes
MAX_RATE_LIMIT_COOLDOWN_MINUTES: float = 60.0

# =============================================================================
# BATCH DEFAULTS
# =============================================================================

# Override: ROUTING_BATCH_MAX_CONCURRENT=<int>
DEFAULT_BATCH_MAX_CONCURRENT: int = 4

# Per-item timeout in seconds
# Override: ROUTING_BATCH_TIMEOUT=<float>
DEFAULT_BATCH_TIMEOUT: float = 120.0

# =============================================================================
# PERSISTENCE DEFAULTS
# =============================================================================

# Minimum seconds between two snapshot writes
DEFAULT_SAVE_DEBOUNCE_SECONDS: float = 5.0

# Snapshot schema version
SNAPSHOT_VERSION: int = 1

# =============================================================================
# DEFAULT CATALOG
# =============================================================================

# Used when no catalog file exists: a single local Ollama runtime
DEFAULT_LOCAL_PROVIDER: str = "ollama"
DEFAULT_LOCAL_BASE_URL: str = "http://127.0.0.1:11434"
DEFAULT_LOCAL_MODEL: str = "llama3.2:3b"
