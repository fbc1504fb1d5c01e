# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Local Ollama runtime backend.

Talks to the Ollama HTTP API directly:
- POST /api/chat for completions (non-streaming)
- GET /api/tags for health checks and model discovery

No credential is needed; the provider is usually declared with
"requires_credential": false.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from ..config.defaults import DEFAULT_LOCAL_BASE_URL
from ..core.errors import BackendError
from .backend_interface import BackendClient, BackendResult

lib_logger = logging.getLogger("routing_library")

HEALTH_TIMEOUT = 2.0
TAGS_TIMEOUT = 5.0


class OllamaBackend(BackendClient):
    """Backend for a local Ollama runtime."""

    @property
    def base_url(self) -> str:
        return (self.provider.base_url or DEFAULT_LOCAL_BASE_URL).rstrip("/")

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
            self._owns_client = True
        return self._http_client

    async def invoke(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        max_tokens: int,
        temperature: float,
        credential: Optional[str],
    ) -> BackendResult:
        payload = {
            "model": model,
            "messages": messages,
            "stream": False,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }
        headers = {"Authorization": f"Bearer {credential}"} if credential else None
        try:
            response = await self._client().post(
                f"{self.base_url}/api/chat", json=payload, headers=headers, timeout=None
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise BackendError(
                f"Ollama returned status {e.response.status_code}: {e.response.text[:200]}",
                http_status=e.response.status_code,
            ) from e
        except httpx.TimeoutException as e:
            raise BackendError(f"Request to Ollama timed out: {e}", http_status=408) from e
        except httpx.TransportError as e:
            raise BackendError(
                f"Failed to connect to Ollama: {e}", http_status=503
            ) from e
        except ValueError as e:
            raise BackendError(f"Failed to parse Ollama response: {e}") from e

        message = data.get("message") or {}
        return BackendResult(
            content=message.get("content", ""),
            input_tokens=data.get("prompt_eval_count", 0) or 0,
            output_tokens=data.get("eval_count", 0) or 0,
            stop_reason=data.get("done_reason"),
            raw=data,
        )

    async def is_running(self) -> bool:
        """Check whether the runtime answers on /api/tags."""
        try:
            response = await self._client().get(
                f"{self.base_url}/api/tags", timeout=HEALTH_TIMEOUT
            )
        except httpx.HTTPError as e:
            lib_logger.debug(f"Ollama health check failed: {e}")
            return False
        return response.is_success

    async def list_models(self) -> List[str]:
        """
        Names of the models installed in the runtime.

        Raises:
            BackendError: If the runtime is unreachable or answers with an error
        """
        try:
            response = await self._client().get(
                f"{self.base_url}/api/tags", timeout=TAGS_TIMEOUT
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise BackendError(
                f"Ollama returned status: {e.response.status_code}",
                http_status=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise BackendError(f"Failed to connect to Ollama: {e}", http_status=503) from e
        except ValueError as e:
            raise BackendError(f"Failed to parse response: {e}") from e
        return [m["name"] for m in data.get("models", []) if "name" in m]

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
