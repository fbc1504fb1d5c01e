# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import logging
from typing import TYPE_CHECKING

from .config import ProviderCatalog, RoutingSettings, default_catalog, load_catalog
from .core.errors import (
    BackendError,
    ConfigurationError,
    ExhaustedError,
    NoCandidateError,
    RoutingError,
)
from .core.types import (
    ChatRequest,
    ErrorKind,
    ModelSpec,
    OrchestrationResult,
    Provider,
    TaskProfile,
)

lib_logger = logging.getLogger("routing_library")
lib_logger.propagate = False
if not lib_logger.handlers:
    lib_logger.addHandler(logging.NullHandler())

# For type checkers, import the client and backend registry statically.
# At runtime they are lazy-loaded via __getattr__ (they pull in litellm).
if TYPE_CHECKING:
    from .client import RoutingClient
    from .providers import PROVIDER_BACKENDS

__all__ = [
    "BackendError",
    "ChatRequest",
    "ConfigurationError",
    "ErrorKind",
    "ExhaustedError",
    "ModelSpec",
    "NoCandidateError",
    "OrchestrationResult",
    "PROVIDER_BACKENDS",
    "Provider",
    "ProviderCatalog",
    "RoutingClient",
    "RoutingError",
    "RoutingSettings",
    "TaskProfile",
    "default_catalog",
    "load_catalog",
]


def __getattr__(name):
    """Lazy-load RoutingClient and PROVIDER_BACKENDS to speed up module import."""
    if name == "RoutingClient":
        from .client import RoutingClient

        return RoutingClient
    if name == "PROVIDER_BACKENDS":
        from .providers import PROVIDER_BACKENDS

        return PROVIDER_BACKENDS
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
