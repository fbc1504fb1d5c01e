# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
RoutingClient: the orchestrator context object.

Owns one instance of every stateful component (ledger, rotator, selector,
engine, storage) for a catalog, so several independent clients can live in
one process without sharing module-level state.
"""

import asyncio
import logging
import os
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import httpx
import litellm

from ..config.catalog import ProviderCatalog, load_catalog
from ..core.errors import RoutingError
from ..core.types import (
    AttemptRecord,
    Candidate,
    ChatRequest,
    OrchestrationResult,
    TaskProfile,
)
from ..credentials.rotator import CredentialRotator
from ..providers import create_backend
from ..providers.backend_interface import BackendClient
from ..selection.selector import CandidateSelector, estimate_tokens
from ..usage.admission import AdmissionController
from ..usage.ledger import UsageLedger
from ..usage.storage import UsageStorage, snapshot_section
from .batch import BatchDispatcher, failed_result
from .executor import FallbackEngine

lib_logger = logging.getLogger("routing_library")


class RoutingClient:
    """
    Routes chat requests across providers with admission control, credential
    rotation and a fallback chain.

    Example:
        async with RoutingClient(load_catalog()) as client:
            result = await client.complete(
                ChatRequest(messages=[{"role": "user", "content": "Hi"}])
            )
    """

    def __init__(
        self,
        catalog: Optional[ProviderCatalog] = None,
        backends: Optional[Dict[str, BackendClient]] = None,
        storage_path: Optional[Union[str, Path]] = None,
        configure_logging: bool = False,
        clock: Callable[[], float] = time.time,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize RoutingClient.

        Args:
            catalog: Provider catalog. Defaults to load_catalog()
            backends: Backend instance per provider name. Providers missing
                here get one from the backend registry
            storage_path: JSON snapshot file; None disables persistence
            configure_logging: Let library logs propagate to the host's
                logging configuration
            clock: Time source shared by ledger, rotator and admission
            http_client: Shared httpx client for HTTP-based backends
        """
        os.environ["LITELLM_LOG"] = "ERROR"
        litellm.drop_params = True

        if configure_logging:
            lib_logger.propagate = True
            if lib_logger.hasHandlers():
                lib_logger.handlers.clear()
                lib_logger.addHandler(logging.NullHandler())
        else:
            lib_logger.propagate = False

        self.catalog = catalog if catalog is not None else load_catalog()
        self._clock = clock
        self._http_client = http_client
        self._custom_backends = dict(backends or {})

        self.ledger = UsageLedger(self.catalog, clock=clock)
        self.rotator = CredentialRotator(self.catalog, clock=clock)
        self.admission = AdmissionController(
            self.ledger, self.catalog.settings.rate_limit_threshold, clock=clock
        )
        self.selector = CandidateSelector(self.catalog, self.admission, self.rotator)
        self.backends = self._build_backends(self.catalog)
        self.engine = FallbackEngine(
            self.catalog,
            self.selector,
            self.rotator,
            self.ledger,
            self.backends,
            clock=clock,
        )

        self.storage: Optional[UsageStorage] = None
        if storage_path is not None:
            self.storage = UsageStorage(
                storage_path, self.catalog.settings.save_debounce_seconds
            )
        self._save_task: Optional[asyncio.Task] = None
        self._save_lock = asyncio.Lock()
        self._initialized = False

    def _build_backends(
        self,
        catalog: ProviderCatalog,
        existing: Optional[Dict[str, BackendClient]] = None,
    ) -> Dict[str, BackendClient]:
        backends: Dict[str, BackendClient] = {}
        for provider in catalog.providers_in_order(enabled_only=False):
            previous = (existing or {}).get(provider.name)
            if provider.name in self._custom_backends:
                backends[provider.name] = self._custom_backends[provider.name]
            elif previous is not None and previous.provider == provider:
                backends[provider.name] = previous
            else:
                backends[provider.name] = create_backend(provider, self._http_client)
        return backends

    async def __aenter__(self) -> "RoutingClient":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def initialize(self) -> None:
        """Load persisted usage and credential state. Safe to call twice."""
        if self._initialized:
            return
        self._initialized = True
        if self.storage is None:
            return
        data = await self.storage.load()
        usage = snapshot_section(data, "usage")
        credentials = snapshot_section(data, "credentials")
        windows = self.ledger.load_dict(usage) if usage else 0
        providers = self.rotator.load_dict(credentials) if credentials else 0
        self.ledger.mark_clean()
        self.rotator.mark_clean()
        if windows or providers:
            lib_logger.info(
                f"Restored {windows} usage window(s) and credential state for "
                f"{providers} provider(s) from {self.storage.file_path}"
            )

    async def shutdown(self) -> None:
        """Flush pending state and release backend resources."""
        if self._save_task and not self._save_task.done():
            self._save_task.cancel()
            try:
                await self._save_task
            except asyncio.CancelledError:
                pass
        self._save_task = None
        await self.save_snapshot(force=True)
        for backend in self.backends.values():
            await backend.aclose()

    async def reconfigure(self, catalog: ProviderCatalog) -> None:
        """
        Swap in a new catalog.

        Ledger history is kept; credential slots keep their state unless the
        provider's credential values changed.
        """
        self.catalog = catalog
        self.ledger.set_catalog(catalog)
        self.rotator.configure(catalog)
        self.admission.threshold = catalog.settings.rate_limit_threshold
        self.selector.set_catalog(catalog)
        previous = self.backends
        self.backends = self._build_backends(catalog, previous)
        kept = {id(backend) for backend in self.backends.values()}
        stale = [b for b in previous.values() if id(b) not in kept]
        self.engine.set_catalog(catalog, self.backends)
        for backend in stale:
            await backend.aclose()
        if self.storage is not None:
            self.storage.save_debounce_seconds = catalog.settings.save_debounce_seconds
        lib_logger.info(f"Reconfigured with {len(catalog)} provider(s)")

    # =========================================================================
    # REQUESTS
    # =========================================================================

    def _prepare(self, request: ChatRequest) -> ChatRequest:
        """Copy of ``request`` with a profile; the caller's object is left as is."""
        if request.profile is not None:
            return request
        return replace(
            request,
            profile=TaskProfile(estimated_input_tokens=estimate_tokens(request.messages)),
        )

    async def complete(
        self, request: ChatRequest, raise_on_failure: bool = False
    ) -> OrchestrationResult:
        """
        Run one request through selection and the fallback chain.

        Args:
            request: The chat request
            raise_on_failure: Raise NoCandidateError / ExhaustedError instead
                of returning a failed result

        Returns:
            OrchestrationResult (``success`` is False on failure)
        """
        if not self._initialized:
            await self.initialize()
        request = self._prepare(request)
        attempts: List[AttemptRecord] = []
        try:
            result = await self.engine.execute(request, attempts)
        except RoutingError as e:
            if raise_on_failure:
                raise
            result = failed_result(request, e, attempts)
        finally:
            await self._schedule_save_flush()
        return result

    async def batch(
        self,
        requests: Sequence[ChatRequest],
        max_concurrent: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> List[OrchestrationResult]:
        """
        Run independent requests concurrently.

        Args:
            requests: Requests to run
            max_concurrent: Worker cap (default from settings)
            timeout: Per-item timeout in seconds (default from settings)

        Returns:
            Results in submission order
        """
        if not self._initialized:
            await self.initialize()
        settings = self.catalog.settings
        dispatcher = BatchDispatcher(
            self.engine,
            max_concurrent=max_concurrent or settings.batch_max_concurrent,
            timeout=timeout if timeout is not None else settings.batch_timeout,
        )
        try:
            return await dispatcher.dispatch([self._prepare(r) for r in requests])
        finally:
            await self._schedule_save_flush()

    def select(self, profile: TaskProfile) -> Optional[Candidate]:
        """Best candidate for a profile, without running anything."""
        return self.selector.select(profile)

    def rank(self, profile: TaskProfile) -> List[Candidate]:
        return self.selector.rank(profile)

    # =========================================================================
    # REPORTING & PERSISTENCE
    # =========================================================================

    def usage_report(self) -> Dict[str, Any]:
        """Ledger windows, admission headroom and credential slots per provider."""
        now = self._clock()
        providers: Dict[str, Any] = {}
        for provider in self.catalog.providers_in_order(enabled_only=False):
            models = {}
            for model in provider.models:
                window = self.ledger.snapshot(provider.name, model.name)
                admission = self.admission.check(provider.name, model)
                models[model.name] = {
                    "tier": model.tier,
                    "usage": window.to_dict(),
                    "admissible": admission.admissible,
                    "remaining_tokens": admission.remaining_tokens,
                    "remaining_requests": admission.remaining_requests,
                }
            providers[provider.name] = {
                "enabled": provider.enabled,
                "priority": provider.priority,
                "current_credential": self.rotator.current_index(provider.name),
                "credentials": [
                    slot.to_dict() for slot in self.rotator.slots(provider.name)
                ],
                "models": models,
            }
        return {"generated_at": now, "totals": self.ledger.totals(), "providers": providers}

    def _snapshot_data(self) -> Dict[str, Any]:
        return {"usage": self.ledger.to_dict(), "credentials": self.rotator.to_dict()}

    async def save_snapshot(self, force: bool = False) -> bool:
        """
        Persist ledger and credential state.

        Args:
            force: Write even if nothing changed since the last save

        Returns:
            True if a snapshot was written
        """
        if self.storage is None:
            return False
        async with self._save_lock:
            if force or self.ledger.dirty or self.rotator.dirty:
                self.storage.mark_dirty()
            if not await self.storage.save_if_dirty(self._snapshot_data()):
                return False
            self.ledger.mark_clean()
            self.rotator.mark_clean()
            return True

    async def _schedule_save_flush(self) -> None:
        if self.storage is None:
            return
        if self._save_task and not self._save_task.done():
            return
        self._save_task = asyncio.create_task(self._flush_save())

    async def _flush_save(self) -> None:
        await asyncio.sleep(self.storage.seconds_until_next_save)
        await self.save_snapshot()
