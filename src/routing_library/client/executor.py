# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Fallback engine: execution of one request with retry, rotation and escalation.

Every request walks the same state machine:

    SELECTING -> ATTEMPTING -> SUCCEEDED
                            -> RETRYING   -> ATTEMPTING   (same pair)
                            -> ESCALATING -> ATTEMPTING   (new credential,
                                                           model or provider)
                            -> EXHAUSTED

After a failed attempt the engine collects the options that are currently
possible (another credential, a cheaper model of the same provider, another
provider, the same pair again) and hands them with the classified error to
decide(), a pure function that returns the next FallbackAction.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Set, Tuple

from ..config.defaults import MAX_RATE_LIMIT_COOLDOWN_MINUTES
from ..config.settings import RoutingSettings
from ..core.errors import (
    ClassifiedError,
    ConfigurationError,
    ExhaustedError,
    NoCandidateError,
    classify_error,
    mask_credential,
)
from ..core.types import (
    AttemptRecord,
    Candidate,
    ChatRequest,
    ErrorKind,
    FallbackAction,
    FallbackState,
    ModelSpec,
    OrchestrationResult,
    Provider,
    TaskProfile,
)
from ..failure_logger import log_failure
from ..selection.selector import estimate_tokens
from ..usage.ledger import calculate_cost

if TYPE_CHECKING:
    from ..config.catalog import ProviderCatalog
    from ..credentials.rotator import CredentialRotator
    from ..providers.backend_interface import BackendClient, BackendResult
    from ..selection.selector import CandidateSelector
    from ..usage.ledger import UsageLedger

lib_logger = logging.getLogger("routing_library")


# =============================================================================
# TRANSITION FUNCTION
# =============================================================================


@dataclass(frozen=True)
class FallbackOptions:
    """Escalation options available after a failed attempt."""

    can_retry: bool = False
    can_rotate: bool = False
    can_downgrade: bool = False
    can_switch: bool = False


# Preference order of actions per error kind
_THROTTLED_ORDER = (
    FallbackAction.ROTATE_CREDENTIAL,
    FallbackAction.DOWNGRADE_MODEL,
    FallbackAction.SWITCH_PROVIDER,
    FallbackAction.RETRY_SAME,
)
_TRANSIENT_ORDER = (
    FallbackAction.RETRY_SAME,
    FallbackAction.DOWNGRADE_MODEL,
    FallbackAction.SWITCH_PROVIDER,
)
ESCALATION_ORDER: Dict[ErrorKind, Tuple[FallbackAction, ...]] = {
    ErrorKind.RATE_LIMITED: _THROTTLED_ORDER,
    ErrorKind.OVERLOADED: _THROTTLED_ORDER,
    ErrorKind.AUTH_FAILED: (
        FallbackAction.ROTATE_CREDENTIAL,
        FallbackAction.SWITCH_PROVIDER,
    ),
    ErrorKind.SERVER_ERROR: _TRANSIENT_ORDER,
    ErrorKind.TIMEOUT: _TRANSIENT_ORDER,
    ErrorKind.UNKNOWN: _TRANSIENT_ORDER,
}

# Actions that keep the request on its current provider
_SAME_PROVIDER_ACTIONS = frozenset(
    {
        FallbackAction.RETRY_SAME,
        FallbackAction.ROTATE_CREDENTIAL,
        FallbackAction.DOWNGRADE_MODEL,
    }
)


def decide(kind: ErrorKind, options: FallbackOptions) -> FallbackAction:
    """
    Pick the next action for a failed attempt.

    Args:
        kind: Classified error of the attempt
        options: What is currently possible

    Returns:
        The first available action in the preference order of ``kind``,
        or FallbackAction.FAIL
    """
    available = {
        FallbackAction.RETRY_SAME: options.can_retry,
        FallbackAction.ROTATE_CREDENTIAL: options.can_rotate,
        FallbackAction.DOWNGRADE_MODEL: options.can_downgrade,
        FallbackAction.SWITCH_PROVIDER: options.can_switch,
    }
    for action in ESCALATION_ORDER.get(kind, _TRANSIENT_ORDER):
        if available[action]:
            return action
    return FallbackAction.FAIL


# =============================================================================
# PER-REQUEST STATE
# =============================================================================


class _Route:
    """Where one request currently stands and where it has been."""

    def __init__(
        self,
        request: ChatRequest,
        profile: TaskProfile,
        attempts: Optional[List[AttemptRecord]] = None,
    ):
        self.request = request
        self.profile = profile
        self.state = FallbackState.SELECTING
        self.provider: Optional[Provider] = None
        self.model: Optional[ModelSpec] = None
        self.credential: Optional[str] = None
        self.credential_index: Optional[int] = None
        self.visited_providers: Set[str] = set()
        self.tried_pairs: Set[Tuple[str, str]] = set()
        self.tried_slots: Dict[Tuple[str, str], Set[int]] = {}
        self.pair_attempts: Dict[Tuple[str, str], int] = {}
        self.attempts: List[AttemptRecord] = attempts if attempts is not None else []

    @property
    def pair(self) -> Tuple[str, str]:
        return (self.provider.name, self.model.name)

    def move_to(self, provider: Provider, model: ModelSpec) -> None:
        self.provider = provider
        self.model = model
        self.credential = None
        self.credential_index = None
        self.visited_providers.add(provider.name)

    def set_state(self, state: FallbackState) -> None:
        if state != self.state:
            lib_logger.debug(
                f"[{self.request.request_id}] {self.state.value} -> {state.value}"
            )
            self.state = state


@dataclass
class _Plan:
    options: FallbackOptions
    downgrade_to: Optional[ModelSpec] = None
    switch_to: Optional[Candidate] = None


# =============================================================================
# ENGINE
# =============================================================================


class FallbackEngine:
    """
    Runs requests against backends, degrading through the fallback chain.

    The engine owns no state between requests: slot health lives in the
    CredentialRotator and usage in the UsageLedger, both shared with every
    other request in flight.
    """

    def __init__(
        self,
        catalog: "ProviderCatalog",
        selector: "CandidateSelector",
        rotator: "CredentialRotator",
        ledger: "UsageLedger",
        backends: Dict[str, "BackendClient"],
        settings: Optional[RoutingSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize FallbackEngine.

        Args:
            catalog: Provider catalog used for downgrade and switch targets
            selector: Candidate selector for the initial pick
            rotator: Shared credential rotator
            ledger: Shared usage ledger
            backends: Backend instance per provider name
            settings: Retry settings; defaults to the catalog's settings
            clock: Time source for attempt timestamps
        """
        self._catalog = catalog
        self._selector = selector
        self._rotator = rotator
        self._ledger = ledger
        self._backends = backends
        self._settings = settings or catalog.settings
        self._clock = clock

    @property
    def settings(self) -> RoutingSettings:
        return self._settings

    def set_catalog(
        self,
        catalog: "ProviderCatalog",
        backends: Optional[Dict[str, "BackendClient"]] = None,
    ) -> None:
        self._catalog = catalog
        self._settings = catalog.settings
        if backends is not None:
            self._backends = backends

    def _backend_for(self, provider: Provider) -> "BackendClient":
        backend = self._backends.get(provider.name)
        if backend is None:
            raise ConfigurationError(f"No backend configured for provider '{provider.name}'")
        return backend

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def execute(
        self,
        request: ChatRequest,
        attempts: Optional[List[AttemptRecord]] = None,
    ) -> OrchestrationResult:
        """
        Run one request to success or exhaustion.

        Args:
            request: The request to run
            attempts: Optional list that receives attempt records as they
                happen, so callers that cancel the request keep the trail

        Returns:
            OrchestrationResult of the successful attempt

        Raises:
            NoCandidateError: No pair could accept the request
            ExhaustedError: Every fallback option failed
        """
        profile = request.profile or TaskProfile(
            estimated_input_tokens=estimate_tokens(request.messages)
        )
        route = _Route(request, profile, attempts)

        candidate = self._selector.select(profile)
        if candidate is None:
            raise NoCandidateError(
                f"No admissible provider/model for task '{profile.task_hint}'",
                task_hint=profile.task_hint,
            )
        route.move_to(candidate.provider, candidate.model)

        if not await self._acquire(route):
            # Credential state changed between selection and acquisition
            action = await self._advance(
                route, ErrorKind.RATE_LIMITED, blocked=set(_SAME_PROVIDER_ACTIONS)
            )
            if action == FallbackAction.FAIL:
                raise NoCandidateError(
                    f"No usable credential left for task '{profile.task_hint}'",
                    task_hint=profile.task_hint,
                )

        while True:
            route.set_state(FallbackState.ATTEMPTING)
            record, result, classified = await self._attempt(route)

            if result is not None:
                route.set_state(FallbackState.SUCCEEDED)
                return self._build_result(route, result)

            failed_slot = (route.provider.name, route.credential_index)
            await self._apply_penalty(route, classified)
            action = await self._advance(route, classified.kind)
            record.action = action.value
            await self._apply_cooldown(route, action, failed_slot, classified)

            if action == FallbackAction.FAIL:
                route.set_state(FallbackState.EXHAUSTED)
                lib_logger.warning(
                    f"[{request.request_id}] Exhausted after {len(route.attempts)} "
                    f"attempt(s); last error: {classified.error_type}"
                )
                raise ExhaustedError(classified.kind, route.attempts, classified)

            if action == FallbackAction.RETRY_SAME:
                route.set_state(FallbackState.RETRYING)
                delay = self._settings.retry_delay * record.attempt_number
                if delay > 0:
                    lib_logger.info(
                        f"Retrying {route.provider.name}/{route.model.name} in {delay:.1f}s"
                    )
                    await asyncio.sleep(delay)
            else:
                route.set_state(FallbackState.ESCALATING)

    # -------------------------------------------------------------------------
    # Single attempt
    # -------------------------------------------------------------------------

    async def _attempt(
        self, route: _Route
    ) -> Tuple[AttemptRecord, Optional["BackendResult"], Optional[ClassifiedError]]:
        provider, model = route.provider, route.model
        pair = route.pair
        request = route.request
        attempt_number = len(route.attempts) + 1

        route.tried_pairs.add(pair)
        route.pair_attempts[pair] = route.pair_attempts.get(pair, 0) + 1
        if route.credential_index is not None:
            route.tried_slots.setdefault(pair, set()).add(route.credential_index)

        record = AttemptRecord(
            provider=provider.name,
            model=model.name,
            credential_index=route.credential_index,
            attempt_number=attempt_number,
            timestamp=self._clock(),
        )
        route.attempts.append(record)
        backend = self._backend_for(provider)

        lib_logger.info(
            f"Attempting call to {provider.name}/{model.name} with credential "
            f"{mask_credential(route.credential)} "
            f"(Attempt {attempt_number}/{self._settings.max_retries})"
        )
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(
                backend.invoke(
                    model.name,
                    request.messages,
                    request.max_tokens,
                    request.temperature,
                    route.credential,
                ),
                timeout=self._settings.attempt_timeout,
            )
        except asyncio.CancelledError:
            record.duration = time.monotonic() - started
            record.outcome = ErrorKind.TIMEOUT.value
            record.message = "Attempt cancelled"
            await self._ledger.record(provider.name, model.name, is_error=True)
            lib_logger.warning(
                f"Attempt {attempt_number} on {provider.name}/{model.name} cancelled"
            )
            raise
        except Exception as e:
            record.duration = time.monotonic() - started
            classified = classify_error(e)
            record.outcome = classified.kind.value
            record.message = classified.message
            await self._ledger.record(provider.name, model.name, is_error=True)
            log_failure(
                provider=provider.name,
                model=model.name,
                credential=route.credential,
                credential_index=route.credential_index,
                attempt=attempt_number,
                classified=classified,
                request_id=request.request_id,
            )
            lib_logger.warning(
                f"Attempt {attempt_number} on {provider.name}/{model.name} failed "
                f"with credential {mask_credential(route.credential)}: "
                f"{classified.error_type} ({classified.message[:150]})"
            )
            return record, None, classified

        record.duration = time.monotonic() - started
        record.outcome = "success"
        await self._ledger.record(
            provider.name, model.name, result.input_tokens, result.output_tokens
        )
        if route.credential_index is not None:
            await self._rotator.record_success(provider.name, route.credential_index)
        lib_logger.info(
            f"Call to {provider.name}/{model.name} succeeded "
            f"({result.input_tokens}+{result.output_tokens} tokens, "
            f"{record.duration:.2f}s)"
        )
        return record, result, None

    def _build_result(self, route: _Route, result: "BackendResult") -> OrchestrationResult:
        model = route.model
        return OrchestrationResult(
            success=True,
            content=result.content,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            stop_reason=result.stop_reason,
            provider=route.provider.name,
            model=model.name,
            cost=calculate_cost(
                result.input_tokens,
                result.output_tokens,
                model.input_price,
                model.output_price,
            ),
            attempts=list(route.attempts),
            request_id=route.request.request_id,
        )

    # -------------------------------------------------------------------------
    # Failure handling
    # -------------------------------------------------------------------------

    def _cooldown_minutes(self, classified: ClassifiedError) -> float:
        if classified.retry_after:
            return min(classified.retry_after / 60, MAX_RATE_LIMIT_COOLDOWN_MINUTES)
        return self._settings.rate_limit_cooldown_minutes

    async def _apply_penalty(self, route: _Route, classified: ClassifiedError) -> None:
        """Invalidate a credential that failed authentication."""
        index = route.credential_index
        if index is None or classified.kind != ErrorKind.AUTH_FAILED:
            return
        await self._rotator.mark_invalid(route.provider.name, index, classified.message)

    async def _apply_cooldown(
        self,
        route: _Route,
        action: FallbackAction,
        failed_slot: Tuple[str, Optional[int]],
        classified: ClassifiedError,
    ) -> None:
        """
        Cool down a rate-limited slot once the route no longer uses it.

        A downgrade or same-pair retry that kept the slot leaves it active:
        it is the credential that attempt runs on.
        """
        provider, index = failed_slot
        if index is None or classified.kind != ErrorKind.RATE_LIMITED:
            return
        if (
            action != FallbackAction.FAIL
            and route.provider.name == provider
            and route.credential_index == index
        ):
            return
        await self._rotator.mark_rate_limited(
            provider, index, self._cooldown_minutes(classified), classified.message
        )

    def _credential_available(
        self, provider: Provider, exclude: Optional[Set[int]] = None
    ) -> bool:
        if not provider.requires_credential:
            return True
        return self._rotator.has_usable(provider.name, exclude)

    def _plan(
        self, route: _Route, kind: ErrorKind, blocked: Set[FallbackAction]
    ) -> _Plan:
        """Collect what the engine could do next. Never suspends."""
        if len(route.attempts) >= self._settings.max_retries:
            return _Plan(FallbackOptions())

        provider, model = route.provider, route.model
        same_provider_ok = self._credential_available(provider)

        if kind == ErrorKind.AUTH_FAILED:
            can_retry = False
        elif kind in (ErrorKind.RATE_LIMITED, ErrorKind.OVERLOADED):
            can_retry = same_provider_ok
        else:
            can_retry = same_provider_ok and (
                route.pair_attempts.get(route.pair, 0) < self._settings.retries_per_model
            )

        can_rotate = False
        if kind in (ErrorKind.RATE_LIMITED, ErrorKind.OVERLOADED, ErrorKind.AUTH_FAILED):
            tried = set(route.tried_slots.get(route.pair, ()))
            if route.credential_index is not None:
                tried.add(route.credential_index)
            can_rotate = provider.requires_credential and self._credential_available(
                provider, tried
            )

        downgrade_to = None
        if same_provider_ok and FallbackAction.DOWNGRADE_MODEL not in blocked:
            for candidate_model in self._catalog.next_model(provider.name, model.name):
                if (provider.name, candidate_model.name) in route.tried_pairs:
                    continue
                if self._selector.make_candidate(provider, candidate_model, route.profile):
                    downgrade_to = candidate_model
                    break

        switch_to = None
        if FallbackAction.SWITCH_PROVIDER not in blocked:
            switch_to = self._next_provider(route)

        return _Plan(
            FallbackOptions(
                can_retry=can_retry and FallbackAction.RETRY_SAME not in blocked,
                can_rotate=can_rotate
                and FallbackAction.ROTATE_CREDENTIAL not in blocked,
                can_downgrade=downgrade_to is not None,
                can_switch=switch_to is not None,
            ),
            downgrade_to,
            switch_to,
        )

    def _next_provider(self, route: _Route) -> Optional[Candidate]:
        """First capable, admissible model of the next unvisited provider."""
        for provider in self._catalog.providers_in_order():
            if provider.name in route.visited_providers:
                continue
            if not self._selector.provider_available(provider):
                continue
            for model in provider.models:
                candidate = self._selector.make_candidate(provider, model, route.profile)
                if candidate is not None:
                    return candidate
        return None

    async def _advance(
        self,
        route: _Route,
        kind: ErrorKind,
        blocked: Optional[Set[FallbackAction]] = None,
    ) -> FallbackAction:
        """Decide the next action and move the route there."""
        blocked = set(blocked or ())
        while True:
            plan = self._plan(route, kind, blocked)
            action = decide(kind, plan.options)
            if action == FallbackAction.FAIL:
                return action

            previous = route.pair
            if action == FallbackAction.DOWNGRADE_MODEL:
                route.move_to(route.provider, plan.downgrade_to)
            elif action == FallbackAction.SWITCH_PROVIDER:
                route.move_to(plan.switch_to.provider, plan.switch_to.model)

            rotate = action == FallbackAction.ROTATE_CREDENTIAL
            if await self._acquire(route, rotate=rotate):
                lib_logger.info(
                    f"[{route.request.request_id}] {kind.value} on "
                    f"{previous[0]}/{previous[1]} -> {action.value} "
                    f"({route.provider.name}/{route.model.name})"
                )
                return action
            # Provider ran out of credentials under us; only other providers remain
            blocked.update(_SAME_PROVIDER_ACTIONS)

    async def _acquire(self, route: _Route, rotate: bool = False) -> bool:
        """Bind a credential of the current provider to the route."""
        provider = route.provider
        if not provider.requires_credential:
            route.credential, route.credential_index = None, None
            return True

        exclude = None
        if rotate:
            exclude = set(route.tried_slots.get(route.pair, ()))
            if route.credential_index is not None:
                exclude.add(route.credential_index)
        selected = await self._rotator.next(provider.name, exclude=exclude)
        if selected is None:
            lib_logger.warning(f"No usable credential for {provider.name}")
            return False
        route.credential_index, route.credential = selected
        return True
