# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""Shared fixtures: a manual clock, a scripted backend and catalog builders."""

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from routing_library.config.catalog import ProviderCatalog
from routing_library.config.settings import RoutingSettings
from routing_library.core.errors import BackendError
from routing_library.core.types import ChatRequest, ModelSpec, Provider, TaskProfile
from routing_library.providers.backend_interface import BackendClient, BackendResult

HANG = "hang"


class ManualClock:
    """Deterministic time source; advance() moves it forward."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend(BackendClient):
    """
    Backend that replays scripted outcomes.

    The script maps a model name, or a (model, credential) pair, to a list of
    outcomes consumed in order. An outcome is a BackendResult, an exception to
    raise, or HANG to never return. When the list is empty the default
    successful result is returned.
    """

    def __init__(self, provider: Provider, script: Optional[Dict[Any, List[Any]]] = None):
        super().__init__(provider)
        self.script: Dict[Any, List[Any]] = {k: list(v) for k, v in (script or {}).items()}
        self.calls: List[Tuple[str, Optional[str]]] = []
        self.closed = False

    def _next_outcome(self, model: str, credential: Optional[str]) -> Any:
        for key in ((model, credential), model):
            queue = self.script.get(key)
            if queue:
                return queue.pop(0)
        return None

    async def invoke(self, model, messages, max_tokens, temperature, credential):
        self.calls.append((model, credential))
        outcome = self._next_outcome(model, credential)
        if outcome == HANG:
            await asyncio.Event().wait()
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            return BackendResult(
                content=f"{self.provider.name}/{model}",
                input_tokens=100,
                output_tokens=50,
                stop_reason="stop",
            )
        return outcome

    async def aclose(self) -> None:
        self.closed = True


def rate_limited(retry_after: Optional[float] = None) -> BackendError:
    return BackendError("Too many requests", http_status=429, retry_after=retry_after)


def overloaded() -> BackendError:
    return BackendError("Service overloaded", http_status=503)


def auth_failed() -> BackendError:
    return BackendError("Invalid API key", http_status=401)


def server_error() -> BackendError:
    return BackendError("Internal server error", http_status=500)


def model(
    name: str,
    tier: str = "standard",
    input_price: float = 1.0,
    output_price: float = 2.0,
    tokens_per_minute: Optional[int] = None,
    requests_per_minute: Optional[int] = None,
    capabilities: Sequence[str] = (),
) -> ModelSpec:
    return ModelSpec(
        name=name,
        tier=tier,
        input_price=input_price,
        output_price=output_price,
        tokens_per_minute=tokens_per_minute,
        requests_per_minute=requests_per_minute,
        capabilities=frozenset(capabilities),
    )


def provider(
    name: str,
    models: Sequence[ModelSpec],
    credentials: Sequence[str] = ("key-aaaaaaaa-0001",),
    priority: int = 1,
    enabled: bool = True,
    requires_credential: bool = True,
) -> Provider:
    return Provider(
        name=name,
        credentials=tuple(credentials),
        priority=priority,
        models=tuple(models),
        enabled=enabled,
        backend="litellm",
        requires_credential=requires_credential,
    )


def fast_settings(**overrides: Any) -> RoutingSettings:
    """Settings with no backoff so fallback tests run instantly."""
    values: Dict[str, Any] = {"retry_delay": 0.0}
    values.update(overrides)
    return RoutingSettings(**values)


def make_catalog(*providers: Provider, **settings: Any) -> ProviderCatalog:
    return ProviderCatalog(list(providers), fast_settings(**settings))


def chat(content: str = "hello", **profile: Any) -> ChatRequest:
    return ChatRequest(
        messages=[{"role": "user", "content": content}],
        profile=TaskProfile(**profile) if profile else None,
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()
