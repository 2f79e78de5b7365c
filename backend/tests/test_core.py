"""Tests for retry policy, saga runner, matching strategy and keyed locks."""

import asyncio
import uuid

import pytest

from core.errors import InsufficientStock, MappingNotFound, RemoteIOError, VersionConflict, is_retryable
from core.locks import KeyedLocks
from core.matching import DeclaredOrderMatcher, normalize_name
from core.retry import RetryPolicy
from core.saga import Saga


class TestErrors:
    def test_retryable_taxonomy(self):
        assert is_retryable(VersionConflict(uuid.uuid4(), 3))
        assert is_retryable(RemoteIOError("timeout"))
        assert not is_retryable(InsufficientStock("Milk", 1, 2))
        assert not is_retryable(ValueError("boom"))

    def test_mapping_not_found_hint(self):
        err = MappingNotFound(uuid.uuid4(), "Milk", "ml")

        assert err.to_dict()["code"] == "mapping_not_found"
        assert err.hint == "missing inventory mapping, deploy product"
        assert "Milk" in err.message


class TestRetryPolicy:
    def test_backoff_is_capped(self):
        policy = RetryPolicy(max_attempts=5, base_delay=0.1, max_delay=0.3)

        assert [policy.delay_for(a) for a in (1, 2, 3, 4)] == [0.1, 0.2, 0.3, 0.3]

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise VersionConflict(uuid.uuid4(), len(calls))
            return "ok"

        retried = []
        result = await RetryPolicy(max_attempts=3, base_delay=0).run(
            flaky, on_retry=lambda attempt, exc: retried.append(attempt)
        )

        assert result == "ok"
        assert len(calls) == 3
        assert retried == [1, 2]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        calls = []

        async def always_conflicts():
            calls.append(1)
            raise VersionConflict(uuid.uuid4(), 1)

        with pytest.raises(VersionConflict):
            await RetryPolicy(max_attempts=3, base_delay=0).run(always_conflicts)
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_business_errors_are_not_retried(self):
        calls = []

        async def insufficient():
            calls.append(1)
            raise InsufficientStock("Milk", 0, 1)

        with pytest.raises(InsufficientStock):
            await RetryPolicy(max_attempts=3, base_delay=0).run(insufficient)
        assert len(calls) == 1


class TestSaga:
    @pytest.mark.asyncio
    async def test_runs_steps_in_order_and_shares_context(self):
        async def first(ctx):
            return 2

        async def second(ctx):
            return ctx["first"] * 10

        result = await Saga("demo").add_step("first", first).add_step("second", second).execute()

        assert result.success is True
        assert result.context["second"] == 20
        assert result.completed_steps == ["first", "second"]

    @pytest.mark.asyncio
    async def test_compensates_in_reverse(self):
        undone = []

        def undo(name):
            async def _undo(ctx):
                undone.append(name)

            return _undo

        async def ok(ctx):
            return True

        async def boom(ctx):
            raise RemoteIOError("lost connection")

        saga = (
            Saga("demo")
            .add_step("a", ok, undo("a"))
            .add_step("b", ok)
            .add_step("c", ok, undo("c"))
            .add_step("d", boom, undo("d"))
        )
        result = await saga.execute({"seed": 1})

        assert result.success is False
        assert result.failed_step == "d"
        assert isinstance(result.error, RemoteIOError)
        assert undone == ["c", "a"]
        assert result.compensated_steps == ["c", "a"]

    @pytest.mark.asyncio
    async def test_compensation_failure_does_not_stop_unwinding(self):
        undone = []

        async def ok(ctx):
            return True

        async def bad_undo(ctx):
            raise RuntimeError("cannot undo")

        async def good_undo(ctx):
            undone.append("a")

        async def boom(ctx):
            raise RuntimeError("step failed")

        result = await (
            Saga("demo").add_step("a", ok, good_undo).add_step("b", ok, bad_undo).add_step("c", boom).execute()
        )

        assert undone == ["a"]
        assert result.compensated_steps == ["a"]
        assert result.compensation_errors == ["b: cannot undo"]


class TestDeclaredOrderMatcher:
    matcher = DeclaredOrderMatcher(lambda name: name)

    def test_normalize_name(self):
        assert normalize_name("  Whole   MILK ") == "whole milk"

    def test_exact_before_substring(self):
        assert self.matcher.match("milk", ["Whole Milk", "MILK"]) == ("MILK", "exact")

    def test_first_substring_wins(self):
        assert self.matcher.match("Milk", ["Milk Powder", "Whole Milk"]) == ("Milk Powder", "substring")
        assert self.matcher.match("Milk", ["Whole Milk", "Milk Powder"]) == ("Whole Milk", "substring")

    def test_candidate_inside_ingredient(self):
        assert self.matcher.match("Vanilla Syrup", ["Caramel", "Vanilla"]) == ("Vanilla", "substring")

    def test_no_match(self):
        assert self.matcher.match("Saffron", ["Milk", "Sugar"]) is None
        assert self.matcher.match("", ["Milk"]) is None


class TestKeyedLocks:
    @pytest.mark.asyncio
    async def test_serializes_same_key_and_cleans_up(self):
        locks = KeyedLocks()
        order = []

        async def worker(name, key, delay):
            async with locks.hold(key):
                order.append(f"{name}-in")
                await asyncio.sleep(delay)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a", "txn-1", 0.01), worker("b", "txn-1", 0))

        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert len(locks) == 0
