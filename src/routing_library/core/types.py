# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Shared type definitions for the routing library.

This module contains dataclasses and enums used across the usage ledger,
credential rotator, candidate selector and fallback engine.
"""

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import (
    Any,
    Dict,
    FrozenSet,
    List,
    Optional,
    Tuple,
)


# =============================================================================
# ENUMS
# =============================================================================


class ModelTier(str, Enum):
    """Coarse quality/cost classification of a model."""

    LITE = "lite"
    STANDARD = "standard"
    PRO = "pro"


class TaskHint(str, Enum):
    """Task hint used to pick a tier order during selection."""

    SIMPLE = "simple"
    CODE = "code"
    ANALYSIS = "analysis"
    COMPLEX = "complex"
    CREATIVE = "creative"
    VISION = "vision"


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    RATE_LIMITED = "rate_limited"
    INVALID = "invalid"
    DISABLED = "disabled"


class ErrorKind(str, Enum):
    """
    Classified outcome of a failed backend attempt.

    Exactly one kind is assigned per failed attempt.
    """

    RATE_LIMITED = "rate_limited"
    OVERLOADED = "overloaded"
    AUTH_FAILED = "auth_failed"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class FallbackState(str, Enum):
    """States of a single orchestrated request."""

    SELECTING = "selecting"
    ATTEMPTING = "attempting"
    RETRYING = "retrying"
    ESCALATING = "escalating"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


class FallbackAction(str, Enum):
    """
    Actions to take after a failed attempt.

    Used by FallbackEngine to determine next steps. Declaration order is
    also the preference order when several escalations are possible.
    """

    RETRY_SAME = "retry_same"  # Same provider, model and credential
    ROTATE_CREDENTIAL = "rotate_credential"  # Same provider and model
    DOWNGRADE_MODEL = "downgrade_model"  # Next model in the provider chain
    SWITCH_PROVIDER = "switch_provider"  # First admissible model elsewhere
    FAIL = "fail"


# =============================================================================
# CATALOG TYPES
# =============================================================================


@dataclass(frozen=True)
class ModelSpec:
    """
    One invokable model: capabilities, limits and price.

    Prices are per million tokens. A rate cap of ``None`` or ``0`` means the
    model is not capped on that axis.
    """

    name: str
    tier: str = ModelTier.STANDARD.value
    context_window: int = 128000
    max_output_tokens: int = 4096
    input_price: float = 0.0
    output_price: float = 0.0
    tokens_per_minute: Optional[int] = None
    requests_per_minute: Optional[int] = None
    capabilities: FrozenSet[str] = frozenset()

    def supports(self, required: FrozenSet[str]) -> bool:
        return required <= self.capabilities


@dataclass(frozen=True)
class Provider:
    """
    A backend service exposing one or more models.

    ``models`` is ordered: it doubles as the in-provider fallback chain.
    ``credentials`` may hold empty strings for unset values; those slots are
    never selected.
    """

    name: str
    base_url: Optional[str] = None
    credentials: Tuple[str, ...] = ()
    enabled: bool = True
    priority: int = 999  # Lower = higher priority
    models: Tuple[ModelSpec, ...] = ()
    backend: str = "litellm"
    requires_credential: bool = True

    def get_model(self, name: str) -> Optional[ModelSpec]:
        for model in self.models:
            if model.name == name:
                return model
        return None


# =============================================================================
# MUTABLE STATE
# =============================================================================


@dataclass
class UsageWindow:
    """
    Per (provider, model) usage counters.

    Minute counters cover the window that started at ``window_start``;
    lifetime totals are never reset by the window rollover.
    """

    tokens_this_minute: int = 0
    requests_this_minute: int = 0
    window_start: float = 0.0
    total_tokens: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_requests: int = 0
    total_cost: float = 0.0
    error_count: int = 0
    last_used_at: Optional[float] = None

    def copy(self) -> "UsageWindow":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokens_this_minute": self.tokens_this_minute,
            "requests_this_minute": self.requests_this_minute,
            "window_start": self.window_start,
            "total_tokens": self.total_tokens,
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "total_requests": self.total_requests,
            "total_cost": self.total_cost,
            "error_count": self.error_count,
            "last_used_at": self.last_used_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageWindow":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class CredentialSlot:
    """State of one credential of a provider."""

    index: int
    status: CredentialStatus = CredentialStatus.ACTIVE
    failure_count: int = 0
    cooldown_until: Optional[float] = None
    last_error: Optional[str] = None

    def copy(self) -> "CredentialSlot":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "status": self.status.value,
            "failure_count": self.failure_count,
            "cooldown_until": self.cooldown_until,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CredentialSlot":
        return cls(
            index=int(data["index"]),
            status=CredentialStatus(data.get("status", CredentialStatus.ACTIVE.value)),
            failure_count=int(data.get("failure_count", 0)),
            cooldown_until=data.get("cooldown_until"),
            last_error=data.get("last_error"),
        )


# =============================================================================
# SELECTION TYPES
# =============================================================================


@dataclass(frozen=True)
class AdmissionResult:
    """Outcome of an admission check, with headroom for observability."""

    admissible: bool
    remaining_tokens: Optional[int] = None  # None = uncapped
    remaining_requests: Optional[int] = None
    token_ratio: float = 0.0
    request_ratio: float = 0.0
    reason: Optional[str] = None


@dataclass
class TaskProfile:
    """What a request needs from a model."""

    task_hint: str = TaskHint.SIMPLE.value
    estimated_input_tokens: int = 0
    required_capabilities: FrozenSet[str] = frozenset()
    optimize_for_cost: bool = True


@dataclass(frozen=True)
class Candidate:
    """A ranked (provider, model) pair. Computed per selection call."""

    provider: Provider
    model: ModelSpec
    estimated_cost: float
    tier_rank: int
    provider_rank: int
    admission: AdmissionResult

    @property
    def key(self) -> Tuple[str, str]:
        return (self.provider.name, self.model.name)


# =============================================================================
# REQUEST TYPES
# =============================================================================


@dataclass
class ChatRequest:
    """
    A chat-style generation request.

    ``profile`` is optional; when absent the client derives one from the
    message size with default task settings.
    """

    messages: List[Dict[str, Any]]
    max_tokens: int = 1024
    temperature: float = 0.7
    profile: Optional[TaskProfile] = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


@dataclass
class AttemptRecord:
    """One iteration of the fallback engine for one request."""

    provider: str
    model: str
    credential_index: Optional[int]
    attempt_number: int
    timestamp: float = field(default_factory=time.time)
    outcome: str = "pending"  # "success" or an ErrorKind value
    action: Optional[str] = None  # FallbackAction chosen after this attempt
    message: Optional[str] = None
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "credential_index": self.credential_index,
            "attempt_number": self.attempt_number,
            "timestamp": self.timestamp,
            "outcome": self.outcome,
            "action": self.action,
            "message": self.message,
            "duration": round(self.duration, 3),
        }


@dataclass
class OrchestrationResult:
    """Outcome of one orchestrated request, successful or not."""

    success: bool
    content: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    cost: float = 0.0
    attempts: List[AttemptRecord] = field(default_factory=list)
    error: Optional[Exception] = None
    request_id: Optional[str] = None

    @property
    def error_kind(self) -> Optional[str]:
        kind = getattr(self.error, "last_kind", None)
        return kind.value if kind is not None else None
