# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Backend registry.

Each Provider names its backend explicitly ("litellm", "ollama"); the
registry maps that name to the implementing class. Register additional
backends with register_backend().
"""

from typing import Dict, Optional, Type

import httpx

from ..core.errors import ConfigurationError
from ..core.types import Provider
from .backend_interface import BackendClient, BackendResult
from .litellm_backend import LiteLLMBackend
from .ollama_backend import OllamaBackend

PROVIDER_BACKENDS: Dict[str, Type[BackendClient]] = {
    "litellm": LiteLLMBackend,
    "ollama": OllamaBackend,
}


def register_backend(name: str, backend_class: Type[BackendClient]) -> None:
    if not (isinstance(backend_class, type) and issubclass(backend_class, BackendClient)):
        raise TypeError(f"{backend_class!r} is not a BackendClient subclass")
    PROVIDER_BACKENDS[name] = backend_class


def create_backend(
    provider: Provider, http_client: Optional[httpx.AsyncClient] = None
) -> BackendClient:
    """
    Instantiate the backend a provider is configured with.

    Raises:
        ConfigurationError: If the backend name is not registered
    """
    backend_class = PROVIDER_BACKENDS.get(provider.backend)
    if backend_class is None:
        raise ConfigurationError(
            f"Provider '{provider.name}' uses unknown backend '{provider.backend}' "
            f"(known: {', '.join(sorted(PROVIDER_BACKENDS))})"
        )
    return backend_class(provider, http_client)


__all__ = [
    "BackendClient",
    "BackendResult",
    "LiteLLMBackend",
    "OllamaBackend",
    "PROVIDER_BACKENDS",
    "create_backend",
    "register_backend",
]
