# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Candidate selection: rank admissible (provider, model) pairs for a task.
"""

import logging
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, List, Optional

from ..config.defaults import CHARS_PER_TOKEN, TASK_HINT_CAPABILITIES
from ..core.types import Candidate, ModelSpec, Provider, TaskProfile

if TYPE_CHECKING:
    from ..config.catalog import ProviderCatalog
    from ..credentials.rotator import CredentialRotator
    from ..usage.admission import AdmissionController

lib_logger = logging.getLogger("routing_library")


def estimate_cost(model: ModelSpec, input_tokens: int, output_ratio: float) -> float:
    """
    Expected cost of a request, assuming output = input * output_ratio.
    """
    millions_in = input_tokens / 1_000_000
    return millions_in * model.input_price + (millions_in * output_ratio) * model.output_price


def estimate_tokens(messages: List[Dict[str, Any]]) -> int:
    """
    Rough prompt size: about four characters per token.

    Non-text parts of multimodal content are ignored.
    """
    chars = 0
    for message in messages:
        content = message.get("content")
        if isinstance(content, str):
            chars += len(content)
        elif isinstance(content, list):
            for part in content:
                if isinstance(part, dict) and isinstance(part.get("text"), str):
                    chars += len(part["text"])
    return chars // CHARS_PER_TOKEN


def required_capabilities(profile: TaskProfile) -> FrozenSet[str]:
    """Explicit capabilities plus those implied by the task hint."""
    implied = TASK_HINT_CAPABILITIES.get(profile.task_hint, ())
    return frozenset(profile.required_capabilities) | frozenset(implied)


class CandidateSelector:
    """
    Ranks eligible pairs by cost and preference.

    A pair is eligible when its provider is enabled and holds a usable
    credential (or needs none), the model has every required capability,
    and the admission controller accepts it.
    """

    def __init__(
        self,
        catalog: "ProviderCatalog",
        admission: "AdmissionController",
        rotator: "CredentialRotator",
    ):
        self._catalog = catalog
        self._admission = admission
        self._rotator = rotator

    def set_catalog(self, catalog: "ProviderCatalog") -> None:
        self._catalog = catalog

    def provider_available(self, provider: Provider) -> bool:
        if not provider.enabled:
            return False
        if not provider.requires_credential:
            return True
        return self._rotator.has_usable(provider.name)

    def make_candidate(
        self, provider: Provider, model: ModelSpec, profile: TaskProfile
    ) -> Optional[Candidate]:
        """
        Evaluate one pair.

        Returns:
            Candidate if the pair is capable and admissible, else None
        """
        if not model.supports(required_capabilities(profile)):
            return None
        admission = self._admission.check(provider.name, model)
        if not admission.admissible:
            lib_logger.debug(
                f"Skipping {provider.name}/{model.name}: {admission.reason}"
            )
            return None
        settings = self._catalog.settings
        return Candidate(
            provider=provider,
            model=model,
            estimated_cost=estimate_cost(
                model, profile.estimated_input_tokens, settings.output_ratio
            ),
            tier_rank=settings.tier_rank(profile.task_hint, model.tier),
            provider_rank=provider.priority,
            admission=admission,
        )

    def rank(self, profile: TaskProfile) -> List[Candidate]:
        """All eligible candidates, best first."""
        candidates: List[Candidate] = []
        for provider in self._catalog.providers_in_order():
            if not self.provider_available(provider):
                lib_logger.debug(f"Skipping {provider.name}: no usable credential")
                continue
            for model in provider.models:
                candidate = self.make_candidate(provider, model, profile)
                if candidate is not None:
                    candidates.append(candidate)

        if profile.optimize_for_cost:
            candidates.sort(
                key=lambda c: (c.estimated_cost, c.tier_rank, c.provider_rank)
            )
        else:
            candidates.sort(
                key=lambda c: (c.tier_rank, c.provider_rank, c.estimated_cost)
            )
        return candidates

    def select(self, profile: TaskProfile) -> Optional[Candidate]:
        """
        Best candidate for the profile.

        Returns:
            The top-ranked Candidate, or None when no pair is eligible
        """
        candidates = self.rank(profile)
        if not candidates:
            lib_logger.warning(
                f"No candidate for task '{profile.task_hint}' "
                f"(capabilities: {sorted(required_capabilities(profile)) or 'none'})"
            )
            return None
        best = candidates[0]
        lib_logger.info(
            f"Selected {best.provider.name}/{best.model.name} "
            f"(tier: {best.model.tier}, est. cost: ${best.estimated_cost:.6f}, "
            f"{len(candidates)} candidate(s))"
        )
        return best
