# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""Tests for candidate selection."""

import itertools

import pytest

from routing_library.core.types import TaskProfile
from routing_library.credentials.rotator import CredentialRotator
from routing_library.selection.selector import (
    CandidateSelector,
    estimate_cost,
    estimate_tokens,
    required_capabilities,
)
from routing_library.usage.admission import AdmissionController
from routing_library.usage.ledger import UsageLedger

from conftest import make_catalog, model, provider


def build(catalog, clock):
    ledger = UsageLedger(catalog, clock=clock)
    rotator = CredentialRotator(catalog, clock=clock)
    admission = AdmissionController(
        ledger, catalog.settings.rate_limit_threshold, clock=clock
    )
    return CandidateSelector(catalog, admission, rotator), ledger, rotator


@pytest.fixture
def scenario_catalog():
    return make_catalog(
        provider(
            "A",
            [
                model("pro", tier="pro", input_price=15, output_price=75, tokens_per_minute=100),
                model("standard", tier="standard", input_price=3, output_price=15, tokens_per_minute=100),
            ],
            priority=1,
        ),
        provider(
            "B",
            [model("b-standard", tier="standard", input_price=5, output_price=20)],
            priority=2,
        ),
    )


# ── Helpers ───────────────────────────────────────────────────────────


class TestEstimates:
    def test_estimate_cost_uses_output_ratio(self):
        spec = model("m", input_price=3, output_price=15)
        # 1M input tokens, 0.5M output tokens expected
        assert estimate_cost(spec, 1_000_000, 0.5) == pytest.approx(3 + 7.5)

    def test_estimate_tokens(self):
        messages = [
            {"role": "system", "content": "x" * 40},
            {"role": "user", "content": [{"type": "text", "text": "y" * 20}, {"type": "image_url"}]},
        ]
        assert estimate_tokens(messages) == 15

    def test_vision_hint_implies_capability(self):
        profile = TaskProfile(task_hint="vision", required_capabilities=frozenset({"code"}))
        assert required_capabilities(profile) == frozenset({"vision", "code"})


# ── Ranking ───────────────────────────────────────────────────────────


class TestSelect:
    def test_cost_optimised_picks_cheapest(self, scenario_catalog, clock):
        selector, _, _ = build(scenario_catalog, clock)
        best = selector.select(TaskProfile(estimated_input_tokens=1000))
        assert best.key == ("A", "standard")

    def test_cost_minimal_over_all_eligible(self, clock):
        prices = [(7, 9), (1, 30), (2, 2), (0.5, 50), (4, 1)]
        models = [
            model(f"m{i}", input_price=inp, output_price=out)
            for i, (inp, out) in enumerate(prices)
        ]
        catalog = make_catalog(
            provider("p1", models[:3], priority=1), provider("p2", models[3:], priority=2)
        )
        selector, _, _ = build(catalog, clock)
        profile = TaskProfile(estimated_input_tokens=2000)
        ranked = selector.rank(profile)
        assert len(ranked) == 5
        costs = [c.estimated_cost for c in ranked]
        assert costs == sorted(costs)
        assert selector.select(profile).estimated_cost == min(costs)

    def test_quality_order_when_not_optimising_cost(self, scenario_catalog, clock):
        selector, _, _ = build(scenario_catalog, clock)
        profile = TaskProfile(task_hint="analysis", optimize_for_cost=False)
        assert selector.select(profile).key == ("A", "pro")

    def test_tie_broken_by_tier_then_provider(self, clock):
        catalog = make_catalog(
            provider("p2", [model("s", tier="standard", input_price=1, output_price=1)], priority=2),
            provider("p1", [model("s", tier="standard", input_price=1, output_price=1)], priority=1),
            provider("p0", [model("l", tier="lite", input_price=1, output_price=1)], priority=3),
        )
        selector, _, _ = build(catalog, clock)
        ranked = selector.rank(TaskProfile(task_hint="simple", estimated_input_tokens=100))
        assert [c.key for c in ranked] == [("p0", "l"), ("p1", "s"), ("p2", "s")]

    def test_capability_filter(self, clock):
        catalog = make_catalog(
            provider("p", [model("text", input_price=0.1), model("eyes", capabilities=["vision"])])
        )
        selector, _, _ = build(catalog, clock)
        assert selector.select(TaskProfile(task_hint="vision")).key == ("p", "eyes")

    def test_disabled_provider_skipped(self, clock):
        catalog = make_catalog(
            provider("off", [model("m", input_price=0)], enabled=False),
            provider("on", [model("m", input_price=5)]),
        )
        selector, _, _ = build(catalog, clock)
        assert selector.select(TaskProfile()).key == ("on", "m")

    async def test_provider_without_usable_credential_skipped(self, clock):
        catalog = make_catalog(
            provider("cheap", [model("m", input_price=0)], credentials=("key-cheap-0001",)),
            provider("dear", [model("m", input_price=5)]),
        )
        selector, _, rotator = build(catalog, clock)
        await rotator.mark_invalid("cheap", 0)
        assert selector.select(TaskProfile()).key == ("dear", "m")

    def test_credential_free_provider_is_eligible(self, clock):
        catalog = make_catalog(
            provider("local", [model("llama", input_price=0)], credentials=(), requires_credential=False)
        )
        selector, _, _ = build(catalog, clock)
        assert selector.select(TaskProfile()).key == ("local", "llama")

    def test_no_candidate_returns_none(self, clock):
        catalog = make_catalog(provider("p", [model("m")]))
        selector, _, _ = build(catalog, clock)
        assert selector.select(TaskProfile(task_hint="vision")) is None

    def test_permutation_invariant(self, clock):
        providers = [
            provider(f"p{i}", [model("m", input_price=price, output_price=price)], priority=i)
            for i, price in enumerate((3, 1, 2))
        ]
        picks = set()
        for order in itertools.permutations(providers):
            selector, _, _ = build(make_catalog(*order), clock)
            picks.add(selector.select(TaskProfile(estimated_input_tokens=500)).key)
        assert picks == {("p1", "m")}


# ── Admission interplay ───────────────────────────────────────────────


class TestProviderAScenario:
    async def test_pro_inadmissible_after_90_tokens(self, scenario_catalog, clock):
        selector, ledger, _ = build(scenario_catalog, clock)
        await ledger.record("A", "pro", 90, 0)
        admission = AdmissionController(ledger, 0.85, clock=clock)
        assert not admission.is_admissible("A", scenario_catalog.get_model("A", "pro"))

        best = selector.select(TaskProfile(estimated_input_tokens=1000))
        assert best.key == ("A", "standard")

    async def test_quality_pick_downgrades_when_pro_saturated(self, scenario_catalog, clock):
        selector, ledger, _ = build(scenario_catalog, clock)
        profile = TaskProfile(task_hint="analysis", optimize_for_cost=False)
        assert selector.select(profile).key == ("A", "pro")
        await ledger.record("A", "pro", 90, 0)
        assert selector.select(profile).key == ("A", "standard")

    async def test_falls_to_next_provider_when_standard_saturated(self, scenario_catalog, clock):
        selector, ledger, _ = build(scenario_catalog, clock)
        await ledger.record("A", "pro", 90, 0)
        await ledger.record("A", "standard", 90, 0)
        best = selector.select(TaskProfile(estimated_input_tokens=1000))
        assert best.key == ("B", "b-standard")

    async def test_recovers_after_window(self, scenario_catalog, clock):
        selector, ledger, _ = build(scenario_catalog, clock)
        await ledger.record("A", "standard", 90, 0)
        assert selector.select(TaskProfile(estimated_input_tokens=1000)).key == ("B", "b-standard")
        clock.advance(60)
        assert selector.select(TaskProfile(estimated_input_tokens=1000)).key == ("A", "standard")
