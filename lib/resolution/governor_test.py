"""Tests for the rate governor. Time is faked; nothing actually sleeps."""

import asyncio

import pytest

from lib.resolution.errors import ConfigurationError
from lib.resolution.governor import RateGovernor, target_key


class FakeTime:
    """Clock + sleep pair where sleeping advances the clock."""

    def __init__(self):
        self.now = 1000.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_governor(t: FakeTime, **kwargs) -> RateGovernor:
    kwargs.setdefault("jitter_max", 0.0)
    return RateGovernor(clock=t.clock, sleep=t.sleep, **kwargs)


@pytest.mark.no_db
class TestRateGovernor:
    @pytest.mark.asyncio
    async def test_first_call_does_not_wait(self):
        t = FakeTime()
        gov = make_governor(t)
        assert await gov.wait_for_slot("rossi.it") == 0.0
        assert t.sleeps == []

    @pytest.mark.asyncio
    async def test_spacing_enforced_since_last_access(self):
        t = FakeTime()
        gov = make_governor(t, min_delay=1.5)
        await gov.wait_for_slot("rossi.it")
        t.now += 0.5
        waited = await gov.wait_for_slot("rossi.it")
        assert waited == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_failure_backoff_and_cap(self):
        t = FakeTime()
        gov = make_governor(t, failure_threshold=100)
        for _ in range(10):
            gov.report_failure("rossi.it")
        assert gov.snapshot("rossi.it").current_delay == 30.0

    def test_success_relaxes_to_floor(self):
        t = FakeTime()
        gov = make_governor(t)
        gov.report_failure("rossi.it")
        assert gov.snapshot("rossi.it").current_delay == 3.0
        gov.report_success("rossi.it")
        assert gov.snapshot("rossi.it").current_delay == pytest.approx(2.25)
        for _ in range(10):
            gov.report_success("rossi.it")
        assert gov.snapshot("rossi.it").current_delay == 1.5

    @pytest.mark.asyncio
    async def test_cooldown_blocks_then_recovers(self):
        t = FakeTime()
        gov = make_governor(t)
        await gov.wait_for_slot("rossi.it")

        for _ in range(3):
            gov.report_failure("rossi.it")
        # 1.5 -> 3 -> 6 -> 12; cooldown = min(12 * 4, 120)
        state = gov.snapshot("rossi.it")
        assert state.current_delay == 12.0
        assert state.cooldown_until == pytest.approx(t.now + 48.0)
        assert gov.is_open("rossi.it")

        start = t.now
        await gov.wait_for_slot("rossi.it")
        assert t.now - start >= 48.0
        assert not gov.is_open("rossi.it")

        gov.report_success("rossi.it")
        state = gov.snapshot("rossi.it")
        assert state.consecutive_failures == 0
        assert state.cooldown_until == 0.0

    def test_cooldown_is_capped(self):
        t = FakeTime()
        gov = make_governor(t, failure_threshold=1, min_delay=25.0, max_delay=60.0)
        gov.report_failure("rossi.it")
        assert gov.snapshot("rossi.it").cooldown_until == pytest.approx(t.now + 120.0)

    def test_failure_in_half_open_reopens(self):
        t = FakeTime()
        gov = make_governor(t)
        for _ in range(3):
            gov.report_failure("rossi.it")
        t.now += 200
        assert not gov.is_open("rossi.it")
        gov.report_failure("rossi.it")
        assert gov.is_open("rossi.it")

    def test_targets_are_isolated(self):
        t = FakeTime()
        gov = make_governor(t)
        for _ in range(3):
            gov.report_failure("https://www.blocked.it/page")
        assert gov.is_open("blocked.it")
        assert not gov.is_open("other.it")
        assert gov.snapshot("other.it").current_delay == 1.5

    @pytest.mark.asyncio
    async def test_other_target_not_delayed_by_cooldown(self):
        t = FakeTime()
        gov = make_governor(t)
        for _ in range(3):
            gov.report_failure("blocked.it")
        assert await gov.wait_for_slot("free.it") == 0.0

    @pytest.mark.asyncio
    async def test_concurrent_waiters_are_serialized(self):
        t = FakeTime()
        gov = make_governor(t, min_delay=2.0)
        await asyncio.gather(*(gov.wait_for_slot("rossi.it") for _ in range(3)))
        # First passes immediately, the next two each wait a full delay
        assert t.sleeps == [2.0, 2.0]

    def test_reset(self):
        t = FakeTime()
        gov = make_governor(t)
        for _ in range(3):
            gov.report_failure("rossi.it")
        gov.reset("rossi.it")
        assert not gov.is_open("rossi.it")
        assert gov.snapshot("rossi.it").consecutive_failures == 0

    def test_invalid_factors_rejected(self):
        with pytest.raises(ConfigurationError):
            RateGovernor(backoff_factor=1.2)
        with pytest.raises(ConfigurationError):
            RateGovernor(recovery_factor=1.0)
        with pytest.raises(ConfigurationError):
            RateGovernor(min_delay=10, max_delay=5)

    def test_target_key(self):
        assert target_key("https://www.Rossi.it/contatti") == "rossi.it"
        assert target_key("Serper") == "serper"
