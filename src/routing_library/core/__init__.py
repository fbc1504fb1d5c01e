# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .errors import (
    BackendError,
    ClassifiedError,
    ConfigurationError,
    ExhaustedError,
    NoCandidateError,
    RoutingError,
    classify_error,
    mask_credential,
)
from .types import (
    AdmissionResult,
    AttemptRecord,
    Candidate,
    ChatRequest,
    CredentialSlot,
    CredentialStatus,
    ErrorKind,
    FallbackAction,
    FallbackState,
    ModelSpec,
    ModelTier,
    OrchestrationResult,
    Provider,
    TaskHint,
    TaskProfile,
    UsageWindow,
)

__all__ = [
    "AdmissionResult",
    "AttemptRecord",
    "BackendError",
    "Candidate",
    "ChatRequest",
    "ClassifiedError",
    "ConfigurationError",
    "CredentialSlot",
    "CredentialStatus",
    "ErrorKind",
    "ExhaustedError",
    "FallbackAction",
    "FallbackState",
    "ModelSpec",
    "ModelTier",
    "NoCandidateError",
    "OrchestrationResult",
    "Provider",
    "RoutingError",
    "TaskHint",
    "TaskProfile",
    "UsageWindow",
    "classify_error",
    "mask_credential",
]
