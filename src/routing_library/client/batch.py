# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Bounded-concurrency batch dispatch.

Each item runs the full orchestration pipeline on its own. Items share only
the ledger and rotator; one item's failure or timeout never changes another
item's outcome. Results come back in submission order.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, List, Optional, Sequence

from ..config.defaults import DEFAULT_BATCH_MAX_CONCURRENT, DEFAULT_BATCH_TIMEOUT
from ..core.errors import ExhaustedError, RoutingError
from ..core.types import AttemptRecord, ChatRequest, ErrorKind, OrchestrationResult

if TYPE_CHECKING:
    from .executor import FallbackEngine

lib_logger = logging.getLogger("routing_library")


def failed_result(
    request: ChatRequest, error: Exception, attempts: List[AttemptRecord]
) -> OrchestrationResult:
    last = attempts[-1] if attempts else None
    return OrchestrationResult(
        success=False,
        provider=last.provider if last else None,
        model=last.model if last else None,
        attempts=list(attempts),
        error=error,
        request_id=request.request_id,
    )


class BatchDispatcher:
    """
    Runs many requests through one FallbackEngine with a concurrency cap.

    Example:
        dispatcher = BatchDispatcher(engine, max_concurrent=2, timeout=30)
        results = await dispatcher.dispatch(requests)
    """

    def __init__(
        self,
        engine: "FallbackEngine",
        max_concurrent: int = DEFAULT_BATCH_MAX_CONCURRENT,
        timeout: Optional[float] = DEFAULT_BATCH_TIMEOUT,
    ):
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self._engine = engine
        self.max_concurrent = max_concurrent
        self.timeout = timeout

    async def _run_one(
        self,
        position: int,
        request: ChatRequest,
        semaphore: asyncio.Semaphore,
        timeout: Optional[float],
    ) -> OrchestrationResult:
        attempts: List[AttemptRecord] = []
        async with semaphore:
            try:
                # The timeout covers the item's own run, not its wait for a worker slot
                return await asyncio.wait_for(
                    self._engine.execute(request, attempts), timeout=timeout
                )
            except asyncio.TimeoutError:
                lib_logger.warning(
                    f"Batch item {position} ({request.request_id}) timed out after {timeout}s"
                )
                return failed_result(
                    request, ExhaustedError(ErrorKind.TIMEOUT, attempts), attempts
                )
            except RoutingError as e:
                lib_logger.info(
                    f"Batch item {position} ({request.request_id}) failed: {e}"
                )
                return failed_result(request, e, attempts)

    async def dispatch(
        self,
        requests: Sequence[ChatRequest],
        max_concurrent: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> List[OrchestrationResult]:
        """
        Run every request and collect the results in submission order.

        Args:
            requests: Independent requests
            max_concurrent: Worker cap for this call (default: instance value)
            timeout: Per-item timeout in seconds (default: instance value)

        Returns:
            One OrchestrationResult per request, same order as ``requests``
        """
        if not requests:
            return []
        limit = max_concurrent or self.max_concurrent
        if limit < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {limit}")
        item_timeout = timeout if timeout is not None else self.timeout
        semaphore = asyncio.Semaphore(limit)

        lib_logger.info(
            f"Dispatching batch of {len(requests)} request(s) "
            f"(max_concurrent={limit}, timeout={item_timeout}s)"
        )
        outcomes = await asyncio.gather(
            *(
                self._run_one(i, request, semaphore, item_timeout)
                for i, request in enumerate(requests)
            ),
            return_exceptions=True,
        )

        results: List[OrchestrationResult] = []
        for i, (request, outcome) in enumerate(zip(requests, outcomes)):
            if isinstance(outcome, OrchestrationResult):
                results.append(outcome)
            elif isinstance(outcome, asyncio.CancelledError):
                raise outcome
            else:
                lib_logger.error(
                    f"Batch item {i} ({request.request_id}) raised "
                    f"{type(outcome).__name__}: {outcome}"
                )
                results.append(failed_result(request, outcome, []))

        succeeded = sum(1 for r in results if r.success)
        lib_logger.info(f"Batch finished: {succeeded}/{len(results)} succeeded")
        return results
