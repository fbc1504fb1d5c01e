# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""Tests for the fallback state machine."""

import asyncio

import pytest

from routing_library.client.executor import FallbackEngine, FallbackOptions, decide
from routing_library.core.errors import ExhaustedError, NoCandidateError
from routing_library.core.types import (
    CredentialStatus,
    ErrorKind,
    FallbackAction,
)
from routing_library.credentials.rotator import CredentialRotator
from routing_library.selection.selector import CandidateSelector
from routing_library.usage.admission import AdmissionController
from routing_library.usage.ledger import UsageLedger

from conftest import (
    HANG,
    FakeBackend,
    auth_failed,
    chat,
    make_catalog,
    model,
    overloaded,
    provider,
    rate_limited,
    server_error,
)

KEYS = ("key-0000000000", "key-1111111111", "key-2222222222")


def build_engine(catalog, clock, scripts=None):
    scripts = scripts or {}
    ledger = UsageLedger(catalog, clock=clock)
    rotator = CredentialRotator(catalog, clock=clock)
    admission = AdmissionController(
        ledger, catalog.settings.rate_limit_threshold, clock=clock
    )
    selector = CandidateSelector(catalog, admission, rotator)
    backends = {
        p.name: FakeBackend(p, scripts.get(p.name))
        for p in catalog.providers_in_order(enabled_only=False)
    }
    engine = FallbackEngine(catalog, selector, rotator, ledger, backends, clock=clock)
    return engine, backends, ledger, rotator


def trail(attempts):
    return [(a.provider, a.model, a.credential_index, a.outcome, a.action) for a in attempts]


# ── Transition function ───────────────────────────────────────────────


class TestDecide:
    ALL = FallbackOptions(can_retry=True, can_rotate=True, can_downgrade=True, can_switch=True)

    @pytest.mark.parametrize("kind", [ErrorKind.RATE_LIMITED, ErrorKind.OVERLOADED])
    def test_throttled_escalation_order(self, kind):
        assert decide(kind, self.ALL) == FallbackAction.ROTATE_CREDENTIAL
        assert decide(
            kind, FallbackOptions(can_retry=True, can_downgrade=True, can_switch=True)
        ) == FallbackAction.DOWNGRADE_MODEL
        assert decide(
            kind, FallbackOptions(can_retry=True, can_switch=True)
        ) == FallbackAction.SWITCH_PROVIDER
        assert decide(kind, FallbackOptions(can_retry=True)) == FallbackAction.RETRY_SAME
        assert decide(kind, FallbackOptions()) == FallbackAction.FAIL

    def test_auth_never_retries_or_downgrades(self):
        assert decide(ErrorKind.AUTH_FAILED, self.ALL) == FallbackAction.ROTATE_CREDENTIAL
        assert decide(
            ErrorKind.AUTH_FAILED, FallbackOptions(can_retry=True, can_downgrade=True)
        ) == FallbackAction.FAIL
        assert decide(
            ErrorKind.AUTH_FAILED, FallbackOptions(can_retry=True, can_switch=True)
        ) == FallbackAction.SWITCH_PROVIDER

    @pytest.mark.parametrize(
        "kind", [ErrorKind.SERVER_ERROR, ErrorKind.UNKNOWN, ErrorKind.TIMEOUT]
    )
    def test_transient_errors_retry_then_escalate(self, kind):
        assert decide(kind, self.ALL) == FallbackAction.RETRY_SAME
        assert decide(
            kind, FallbackOptions(can_rotate=True, can_downgrade=True, can_switch=True)
        ) == FallbackAction.DOWNGRADE_MODEL
        assert decide(kind, FallbackOptions(can_rotate=True)) == FallbackAction.FAIL


# ── Success path ──────────────────────────────────────────────────────


class TestSuccess:
    async def test_first_attempt_succeeds(self, clock):
        catalog = make_catalog(
            provider("a", [model("m", input_price=2, output_price=4)], credentials=KEYS)
        )
        engine, backends, ledger, _ = build_engine(catalog, clock)
        result = await engine.execute(chat("hi"))

        assert result.success
        assert result.content == "a/m"
        assert (result.provider, result.model) == ("a", "m")
        assert result.cost == pytest.approx(100 / 1e6 * 2 + 50 / 1e6 * 4)
        assert trail(result.attempts) == [("a", "m", 0, "success", None)]
        assert backends["a"].calls == [("m", KEYS[0])]

        window = ledger.snapshot("a", "m")
        assert window.total_input_tokens == 100
        assert window.total_output_tokens == 50
        assert window.error_count == 0

    async def test_no_candidate(self, clock):
        catalog = make_catalog(provider("a", [model("m")]))
        engine, backends, _, _ = build_engine(catalog, clock)
        with pytest.raises(NoCandidateError):
            await engine.execute(chat(task_hint="vision"))
        assert backends["a"].calls == []

    async def test_credential_free_provider(self, clock):
        catalog = make_catalog(
            provider("local", [model("llama")], credentials=(), requires_credential=False)
        )
        engine, backends, _, _ = build_engine(catalog, clock)
        result = await engine.execute(chat())
        assert result.success
        assert backends["local"].calls == [("llama", None)]
        assert result.attempts[0].credential_index is None


# ── Rate limits & overload ────────────────────────────────────────────


class TestThrottling:
    async def test_three_slots_rotate_zero_one_two(self, clock):
        catalog = make_catalog(provider("a", [model("m")], credentials=KEYS))
        engine, _, ledger, rotator = build_engine(
            catalog,
            clock,
            {"a": {("m", KEYS[0]): [rate_limited()], ("m", KEYS[1]): [rate_limited()]}},
        )
        result = await engine.execute(chat())

        assert result.success
        assert [a.credential_index for a in result.attempts] == [0, 1, 2]
        assert [a.action for a in result.attempts] == [
            "rotate_credential",
            "rotate_credential",
            None,
        ]
        slots = rotator.slots("a")
        assert slots[0].status == CredentialStatus.RATE_LIMITED
        assert slots[1].status == CredentialStatus.RATE_LIMITED
        assert slots[2].status == CredentialStatus.ACTIVE
        assert rotator.current_index("a") == 2

        window = ledger.snapshot("a", "m")
        assert window.total_requests == 3
        assert window.error_count == 2

    async def test_rotation_before_downgrade_before_switch(self, clock):
        catalog = make_catalog(
            provider(
                "a",
                [model("big", tier="pro"), model("small", tier="standard")],
                credentials=KEYS[:2],
                priority=1,
            ),
            provider("b", [model("other", tier="pro")], priority=2),
        )
        engine, _, _, _ = build_engine(
            catalog,
            clock,
            {"a": {"big": [overloaded(), overloaded()], "small": [overloaded(), overloaded()]}},
        )
        result = await engine.execute(chat(task_hint="complex", optimize_for_cost=False))

        assert result.success
        assert trail(result.attempts) == [
            ("a", "big", 0, "overloaded", "rotate_credential"),
            ("a", "big", 1, "overloaded", "downgrade_model"),
            ("a", "small", 1, "overloaded", "rotate_credential"),
            ("a", "small", 0, "overloaded", "switch_provider"),
            ("b", "other", 0, "success", None),
        ]

    async def test_rate_limit_with_retry_after_sets_cooldown(self, clock):
        catalog = make_catalog(provider("a", [model("m")], credentials=KEYS[:2]))
        engine, _, _, rotator = build_engine(
            catalog, clock, {"a": {("m", KEYS[0]): [rate_limited(retry_after=30)]}}
        )
        await engine.execute(chat())
        assert rotator.slots("a")[0].cooldown_until == pytest.approx(clock.now + 30)

    async def test_overloaded_single_slot_retries_same_pair(self, clock):
        catalog = make_catalog(provider("a", [model("m")]), max_retries=3)
        engine, backends, _, _ = build_engine(
            catalog, clock, {"a": {"m": [overloaded(), overloaded()]}}
        )
        result = await engine.execute(chat())
        assert result.success
        assert [a.action for a in result.attempts] == ["retry_same", "retry_same", None]
        assert len(backends["a"].calls) == 3

    async def test_rate_limited_single_slot_retries_same_pair(self, clock):
        catalog = make_catalog(provider("a", [model("m")]), max_retries=3)
        engine, _, _, rotator = build_engine(
            catalog, clock, {"a": {"m": [rate_limited()]}}
        )
        result = await engine.execute(chat())
        assert result.success
        assert trail(result.attempts) == [
            ("a", "m", 0, "rate_limited", "retry_same"),
            ("a", "m", 0, "success", None),
        ]
        assert rotator.slots("a")[0].status == CredentialStatus.ACTIVE

    async def test_rate_limited_retries_until_max_retries(self, clock):
        catalog = make_catalog(provider("a", [model("m")]), max_retries=3)
        engine, backends, _, rotator = build_engine(
            catalog, clock, {"a": {"m": [rate_limited()] * 3}}
        )
        with pytest.raises(ExhaustedError) as exc_info:
            await engine.execute(chat())
        assert exc_info.value.last_kind == ErrorKind.RATE_LIMITED
        assert [a.action for a in exc_info.value.attempts] == [
            "retry_same",
            "retry_same",
            "fail",
        ]
        assert len(backends["a"].calls) == 3
        assert rotator.slots("a")[0].status == CredentialStatus.RATE_LIMITED

    async def test_rate_limited_last_slot_downgrades_model(self, clock):
        catalog = make_catalog(
            provider("a", [model("big", input_price=1), model("small", input_price=2)])
        )
        engine, backends, _, rotator = build_engine(
            catalog, clock, {"a": {"big": [rate_limited()]}}
        )
        result = await engine.execute(chat())
        assert result.model == "small"
        assert trail(result.attempts) == [
            ("a", "big", 0, "rate_limited", "downgrade_model"),
            ("a", "small", 0, "success", None),
        ]
        assert rotator.slots("a")[0].status == CredentialStatus.ACTIVE

    async def test_three_slots_rotate_then_downgrade(self, clock):
        catalog = make_catalog(
            provider(
                "a",
                [model("big", input_price=1), model("small", input_price=2)],
                credentials=KEYS,
            )
        )
        engine, _, _, rotator = build_engine(
            catalog, clock, {"a": {"big": [rate_limited()] * 3}}
        )
        result = await engine.execute(chat())
        assert trail(result.attempts) == [
            ("a", "big", 0, "rate_limited", "rotate_credential"),
            ("a", "big", 1, "rate_limited", "rotate_credential"),
            ("a", "big", 2, "rate_limited", "downgrade_model"),
            ("a", "small", 2, "success", None),
        ]
        assert [s.status for s in rotator.slots("a")] == [
            CredentialStatus.RATE_LIMITED,
            CredentialStatus.RATE_LIMITED,
            CredentialStatus.ACTIVE,
        ]

    async def test_rate_limited_switch_cools_down_slot(self, clock):
        catalog = make_catalog(
            provider("a", [model("m", input_price=1)], priority=1),
            provider("b", [model("m", input_price=2)], priority=2),
        )
        engine, _, _, rotator = build_engine(
            catalog, clock, {"a": {"m": [rate_limited()]}}
        )
        result = await engine.execute(chat())
        assert result.provider == "b"
        assert result.attempts[0].action == "switch_provider"
        assert rotator.slots("a")[0].status == CredentialStatus.RATE_LIMITED

    async def test_total_attempts_capped_by_max_retries(self, clock):
        keys = tuple(f"key-{i}-xxxxxxxx" for i in range(5))
        catalog = make_catalog(provider("a", [model("m")], credentials=keys), max_retries=3)
        engine, backends, _, _ = build_engine(
            catalog, clock, {"a": {"m": [rate_limited()] * 5}}
        )
        with pytest.raises(ExhaustedError) as exc_info:
            await engine.execute(chat())
        assert len(exc_info.value.attempts) == 3
        assert len(backends["a"].calls) == 3


# ── Authentication ────────────────────────────────────────────────────


class TestAuthFailures:
    async def test_rotates_and_marks_invalid(self, clock):
        catalog = make_catalog(provider("a", [model("m")], credentials=KEYS[:2]))
        engine, _, _, rotator = build_engine(
            catalog, clock, {"a": {("m", KEYS[0]): [auth_failed()]}}
        )
        result = await engine.execute(chat())
        assert result.success
        assert [a.credential_index for a in result.attempts] == [0, 1]
        assert rotator.slots("a")[0].status == CredentialStatus.INVALID

    async def test_switches_provider_instead_of_downgrading(self, clock):
        catalog = make_catalog(
            provider("a", [model("big", input_price=1), model("small", input_price=2)], priority=1),
            provider("b", [model("other", input_price=3)], priority=2),
        )
        engine, _, _, _ = build_engine(catalog, clock, {"a": {"big": [auth_failed()]}})
        result = await engine.execute(chat())
        assert [(a.provider, a.model) for a in result.attempts] == [("a", "big"), ("b", "other")]
        assert result.attempts[0].action == "switch_provider"

    async def test_single_credential_exhausts_immediately(self, clock):
        catalog = make_catalog(provider("a", [model("m"), model("n")]))
        engine, backends, _, _ = build_engine(catalog, clock, {"a": {"m": [auth_failed()]}})
        with pytest.raises(ExhaustedError) as exc_info:
            await engine.execute(chat())
        assert exc_info.value.last_kind == ErrorKind.AUTH_FAILED
        assert len(backends["a"].calls) == 1

    async def test_switch_skips_providers_without_credentials(self, clock):
        catalog = make_catalog(
            provider("a", [model("m", input_price=1)], priority=1),
            provider("b", [model("m", input_price=2)], priority=2),
            provider("c", [model("m", input_price=3)], priority=3),
        )
        engine, backends, _, rotator = build_engine(catalog, clock, {"a": {"m": [auth_failed()]}})
        await rotator.mark_invalid("b", 0)
        result = await engine.execute(chat())
        assert result.provider == "c"
        assert backends["b"].calls == []


# ── Transient errors ──────────────────────────────────────────────────


class TestTransientErrors:
    async def test_server_error_retries_then_downgrades(self, clock):
        catalog = make_catalog(
            provider("a", [model("big", input_price=1), model("small", input_price=2)], credentials=KEYS)
        )
        engine, _, ledger, _ = build_engine(
            catalog, clock, {"a": {"big": [server_error(), server_error()]}}
        )
        result = await engine.execute(chat())
        assert trail(result.attempts) == [
            ("a", "big", 0, "server_error", "retry_same"),
            ("a", "big", 0, "server_error", "downgrade_model"),
            ("a", "small", 0, "success", None),
        ]
        assert ledger.snapshot("a", "big").error_count == 2

    async def test_timeout_never_rotates(self, clock):
        catalog = make_catalog(
            provider("a", [model("m")], credentials=KEYS), attempt_timeout=0.05
        )
        engine, _, _, rotator = build_engine(catalog, clock, {"a": {"m": [HANG]}})
        result = await engine.execute(chat())
        assert trail(result.attempts) == [
            ("a", "m", 0, "timeout", "retry_same"),
            ("a", "m", 0, "success", None),
        ]
        assert rotator.slots("a")[0].status == CredentialStatus.ACTIVE

    async def test_inadmissible_downgrade_target_skipped(self, clock):
        catalog = make_catalog(
            provider(
                "a",
                [model("big", input_price=1), model("small", input_price=2, tokens_per_minute=100)],
                priority=1,
            ),
            provider("b", [model("other", input_price=3)], priority=2),
        )
        engine, _, ledger, _ = build_engine(
            catalog, clock, {"a": {"big": [server_error(), server_error()]}}
        )
        await ledger.record("a", "small", 90, 0)
        result = await engine.execute(chat())
        assert result.attempts[1].action == "switch_provider"
        assert result.provider == "b"

    async def test_exhausted_carries_full_trail(self, clock):
        catalog = make_catalog(
            provider("a", [model("m", input_price=1)], priority=1),
            provider("b", [model("m", input_price=2)], priority=2),
        )
        engine, _, _, _ = build_engine(
            catalog,
            clock,
            {"a": {"m": [server_error()] * 2}, "b": {"m": [server_error()] * 2}},
        )
        with pytest.raises(ExhaustedError) as exc_info:
            await engine.execute(chat())
        error = exc_info.value
        assert error.last_kind == ErrorKind.SERVER_ERROR
        assert [(a.provider, a.action) for a in error.attempts] == [
            ("a", "retry_same"),
            ("a", "switch_provider"),
            ("b", "retry_same"),
            ("b", "fail"),
        ]


# ── Cancellation ──────────────────────────────────────────────────────


class TestCancellation:
    async def test_cancelled_attempt_recorded_as_timeout(self, clock):
        catalog = make_catalog(provider("a", [model("m")]))
        engine, backends, ledger, _ = build_engine(catalog, clock, {"a": {"m": [HANG]}})
        attempts = []
        task = asyncio.create_task(engine.execute(chat(), attempts))
        while not backends["a"].calls:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert [a.outcome for a in attempts] == ["timeout"]
        window = ledger.snapshot("a", "m")
        assert window.error_count == 1
        assert window.total_requests == 1
