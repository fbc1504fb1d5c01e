# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Cloud provider backend built on LiteLLM.

LiteLLM handles the provider-specific wire formats; this backend only
prefixes the model with the provider name, disables LiteLLM's own retries
and normalises the response.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import litellm

from ..core.errors import BackendError
from .backend_interface import BackendClient, BackendResult

lib_logger = logging.getLogger("routing_library")


def _usage_tokens(response: Any) -> Tuple[int, int]:
    """Prompt and completion tokens from a LiteLLM response."""
    usage = getattr(response, "usage", None)
    if not usage:
        return 0, 0
    if isinstance(usage, dict):
        return usage.get("prompt_tokens", 0) or 0, usage.get("completion_tokens", 0) or 0
    return (
        getattr(usage, "prompt_tokens", 0) or 0,
        getattr(usage, "completion_tokens", 0) or 0,
    )


def _first_choice(response: Any) -> Tuple[str, Optional[str]]:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return "", None
    choice = choices[0]
    message = getattr(choice, "message", None)
    content = getattr(message, "content", None) if message is not None else None
    return content or "", getattr(choice, "finish_reason", None)


class LiteLLMBackend(BackendClient):
    """Backend for any provider LiteLLM knows by name (openai, anthropic, ...)."""

    def _litellm_model(self, model: str) -> str:
        if "/" in model:
            return model
        return f"{self.provider.name}/{model}"

    async def invoke(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        max_tokens: int,
        temperature: float,
        credential: Optional[str],
    ) -> BackendResult:
        kwargs: Dict[str, Any] = {
            "model": self._litellm_model(model),
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "num_retries": 0,
        }
        if credential:
            kwargs["api_key"] = credential
        if self.provider.base_url:
            kwargs["api_base"] = self.provider.base_url

        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            status = getattr(e, "status_code", None)
            raise BackendError(
                str(e),
                http_status=status if isinstance(status, int) else None,
                retry_after=getattr(e, "retry_after", None),
            ) from e

        prompt_tokens, completion_tokens = _usage_tokens(response)
        content, finish_reason = _first_choice(response)
        return BackendResult(
            content=content,
            input_tokens=prompt_tokens,
            output_tokens=completion_tokens,
            stop_reason=finish_reason,
            raw=response,
        )
