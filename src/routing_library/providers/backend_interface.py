# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Backend client contract.

A backend performs exactly one network call for one provider. It normalises
the response into a BackendResult or raises BackendError; it never retries
and never rotates credentials. Those decisions belong to the fallback engine.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from ..core.types import Provider


@dataclass
class BackendResult:
    """Normalised response of one backend call."""

    content: str
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: Optional[str] = None
    raw: Optional[Any] = None


class BackendClient(ABC):
    """
    Interface implemented by every backend.

    Backends are constructed once per provider by the routing client and
    share its httpx.AsyncClient.
    """

    def __init__(self, provider: Provider, http_client: Optional[httpx.AsyncClient] = None):
        self.provider = provider
        self._http_client = http_client
        self._owns_client = False

    @abstractmethod
    async def invoke(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        max_tokens: int,
        temperature: float,
        credential: Optional[str],
    ) -> BackendResult:
        """
        Run one chat completion.

        Args:
            model: Model name as configured in the catalog
            messages: OpenAI-style message list
            max_tokens: Completion token limit
            temperature: Sampling temperature
            credential: API key, or None for providers that need none

        Returns:
            BackendResult

        Raises:
            BackendError: On any failure reported by the service
        """

    async def aclose(self) -> None:
        """Release backend resources. Shared HTTP clients are closed by the owner."""
