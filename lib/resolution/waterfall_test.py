"""Tests for the strategy waterfall."""

import pytest

from lib.resolution.cache import BoundedCache
from lib.resolution.classifier import BlockKind, Signature
from lib.resolution.errors import BlockedError, BudgetExceeded, NetworkError, ValidationError
from lib.resolution.models import (
    Candidate,
    CompanyRecord,
    DefinitiveNegative,
    FieldStatus,
    ReasonCode,
    Source,
)
from lib.resolution.normalize import canonicalize_url
from lib.resolution.waterfall import FieldPlan, ResolutionContext, StrategySpec, Waterfall


RECORD = CompanyRecord(name="Rossi Snc", city="Milano", phone="0212345")


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class Recorder:
    """Strategy factory that records calls and returns a fixed verdict."""

    def __init__(self):
        self.calls: list[str] = []

    def strategy(self, name, verdict=None, raises=None, advance=0.0, clock=None):
        async def run(record, context):
            self.calls.append(name)
            if clock is not None:
                clock.now += advance
            if raises is not None:
                raise raises
            return verdict
        return StrategySpec(name=name, run=run, source=Source.SEARCH)


def cand(value, confidence, **kw) -> Candidate:
    return Candidate(value=value, confidence=confidence, source=Source.SEARCH, **kw)


@pytest.mark.no_db
class TestWaterfall:
    @pytest.mark.asyncio
    async def test_accepts_first_over_threshold_and_stops(self):
        rec = Recorder()
        plan = FieldPlan("website", 0.8, [
            rec.strategy("s1", cand("https://low.it", 0.5)),
            rec.strategy("s2", cand("https://rossi.it", 0.85)),
            rec.strategy("s3", cand("https://never.it", 0.99)),
        ])
        outcome = await Waterfall(plan).resolve(RECORD, ResolutionContext())

        assert outcome.status == FieldStatus.ACCEPTED
        assert outcome.value == "https://rossi.it"
        assert outcome.strategy == "s2"
        assert outcome.confidence == 0.85
        assert rec.calls == ["s1", "s2"]

    @pytest.mark.asyncio
    async def test_best_sub_threshold_is_low_confidence(self):
        rec = Recorder()
        plan = FieldPlan("website", 0.8, [
            rec.strategy("s1", cand("https://a.it", 0.4)),
            rec.strategy("s2", cand("https://b.it", 0.6)),
            rec.strategy("s3", None),
        ])
        outcome = await Waterfall(plan).resolve(RECORD, ResolutionContext())
        assert outcome.status == FieldStatus.LOW_CONFIDENCE
        assert outcome.value == "https://b.it"
        assert outcome.reason_code == ReasonCode.LOW_CONFIDENCE

    @pytest.mark.asyncio
    async def test_nothing_found(self):
        rec = Recorder()
        plan = FieldPlan("pec", 0.8, [rec.strategy("s1"), rec.strategy("s2")])
        outcome = await Waterfall(plan).resolve(RECORD, ResolutionContext())
        assert outcome.status == FieldStatus.NOT_FOUND
        assert outcome.value is None
        assert outcome.reason_code == ReasonCode.STRATEGIES_EXHAUSTED

    @pytest.mark.asyncio
    async def test_definitive_negative_stops(self):
        rec = Recorder()
        plan = FieldPlan("tax_id", 0.8, [
            rec.strategy("s1", DefinitiveNegative(reason="ceased trading")),
            rec.strategy("s2", cand("06363391001", 0.9)),
        ])
        outcome = await Waterfall(plan).resolve(RECORD, ResolutionContext())
        assert outcome.status == FieldStatus.NOT_FOUND
        assert outcome.reason_code == ReasonCode.DEFINITIVE_NEGATIVE
        assert outcome.detail == "ceased trading"
        assert rec.calls == ["s1"]

    @pytest.mark.asyncio
    async def test_time_budget_checked_before_each_strategy(self):
        clock = FakeClock()
        rec = Recorder()
        plan = FieldPlan("website", 0.8, budget_seconds=10, strategies=[
            rec.strategy("slow", cand("https://a.it", 0.5), advance=12, clock=clock),
            rec.strategy("s2", cand("https://b.it", 0.9)),
        ])
        outcome = await Waterfall(plan, clock=clock).resolve(RECORD, ResolutionContext())
        # The slow call finished; the next one was never launched
        assert rec.calls == ["slow"]
        assert outcome.status == FieldStatus.LOW_CONFIDENCE
        assert "time budget" in outcome.detail

    @pytest.mark.asyncio
    async def test_budget_exceeded_without_candidate(self):
        clock = FakeClock()
        rec = Recorder()
        plan = FieldPlan("website", 0.8, budget_seconds=10, strategies=[
            rec.strategy("slow", None, advance=12, clock=clock),
            rec.strategy("s2", cand("https://b.it", 0.9)),
        ])
        outcome = await Waterfall(plan, clock=clock).resolve(RECORD, ResolutionContext())
        assert outcome.status == FieldStatus.BUDGET_EXCEEDED
        assert outcome.reason_code == ReasonCode.BUDGET_EXCEEDED

    @pytest.mark.asyncio
    async def test_cost_budget(self):
        rec = Recorder()
        cheap = rec.strategy("cheap", None)
        oracle = rec.strategy("oracle", cand("https://b.it", 0.85))
        oracle.cost = 5.0
        plan = FieldPlan("website", 0.8, [cheap, oracle], max_cost=1.0)
        ctx = ResolutionContext()
        outcome = await Waterfall(plan).resolve(RECORD, ctx)
        assert rec.calls == ["cheap"]
        assert outcome.status == FieldStatus.BUDGET_EXCEEDED
        assert ctx.cost_spent == 0.0

    @pytest.mark.asyncio
    async def test_strategy_raising_budget_exceeded(self):
        rec = Recorder()
        plan = FieldPlan("website", 0.8, [
            rec.strategy("s1", raises=BudgetExceeded("llm spend cap")),
            rec.strategy("s2", cand("https://b.it", 0.9)),
        ])
        outcome = await Waterfall(plan).resolve(RECORD, ResolutionContext())
        assert outcome.status == FieldStatus.BUDGET_EXCEEDED
        assert rec.calls == ["s1"]

    @pytest.mark.asyncio
    async def test_transient_error_absorbed(self):
        rec = Recorder()
        sig = Signature(kind=BlockKind.CAPTCHA, target="google.com")
        plan = FieldPlan("website", 0.8, [
            rec.strategy("s1", raises=BlockedError(sig)),
            rec.strategy("s2", cand("https://b.it", 0.9)),
        ])
        outcome = await Waterfall(plan, propagate_transient=True).resolve(RECORD, ResolutionContext())
        assert outcome.value == "https://b.it"

    @pytest.mark.asyncio
    async def test_transient_error_on_last_strategy_propagates_when_enabled(self):
        rec = Recorder()
        plan = FieldPlan("website", 0.8, [
            rec.strategy("s1", None),
            rec.strategy("s2", raises=NetworkError("reset")),
        ])
        with pytest.raises(NetworkError):
            await Waterfall(plan, propagate_transient=True).resolve(RECORD, ResolutionContext())

        outcome = await Waterfall(plan).resolve(RECORD, ResolutionContext())
        assert outcome.status == FieldStatus.NOT_FOUND
        assert "s2:network_error" in outcome.detail

    @pytest.mark.asyncio
    async def test_non_transient_error_propagates(self):
        rec = Recorder()
        plan = FieldPlan("website", 0.8, [rec.strategy("s1", raises=ValidationError("bad"))])
        with pytest.raises(ValidationError):
            await Waterfall(plan).resolve(RECORD, ResolutionContext())

    @pytest.mark.asyncio
    async def test_disabled_strategies_skipped(self):
        rec = Recorder()
        by_id = rec.strategy("by_id", cand("x", 0.99))
        by_id.enabled_when = lambda record, ctx: ctx.known("tax_id") is not None
        plan = FieldPlan("revenue", 0.8, [by_id, rec.strategy("by_name", cand("y", 0.9))])

        outcome = await Waterfall(plan).resolve(RECORD, ResolutionContext())
        assert rec.calls == ["by_name"]
        assert outcome.value == "y"

    @pytest.mark.asyncio
    async def test_no_applicable_strategy_is_skipped(self):
        rec = Recorder()
        only = rec.strategy("by_id", cand("x", 0.99))
        only.enabled_when = lambda record, ctx: False
        outcome = await Waterfall(FieldPlan("revenue", 0.8, [only])).resolve(RECORD, ResolutionContext())
        assert outcome.status == FieldStatus.SKIPPED
        assert outcome.reason_code == ReasonCode.DEPENDENCY_MISSING

    @pytest.mark.asyncio
    async def test_estimated_never_accepted(self):
        rec = Recorder()
        plan = FieldPlan("employees", 0.5, [
            rec.strategy("ai", cand(12, 0.9, estimated=True)),
        ])
        outcome = await Waterfall(plan).resolve(RECORD, ResolutionContext())
        assert outcome.status == FieldStatus.ESTIMATED
        assert outcome.value == 12

    @pytest.mark.asyncio
    async def test_values_canonicalized(self):
        rec = Recorder()
        plan = FieldPlan("website", 0.8, canonicalize=canonicalize_url, strategies=[
            rec.strategy("bad", cand("not a url", 0.95)),
            rec.strategy("good", cand("http://www.Rossi.it/", 0.9)),
        ])
        outcome = await Waterfall(plan).resolve(RECORD, ResolutionContext())
        assert outcome.value == "https://rossi.it"
        assert outcome.strategy == "good"

    @pytest.mark.asyncio
    async def test_cache_hit_short_circuits(self):
        rec = Recorder()
        cache = BoundedCache(max_entries=10, ttl_seconds=60)
        plan = FieldPlan("website", 0.8, [rec.strategy("s1", cand("https://rossi.it", 0.9))])
        wf = Waterfall(plan, cache=cache)

        first = await wf.resolve(RECORD, ResolutionContext())
        second = await wf.resolve(RECORD, ResolutionContext())
        assert rec.calls == ["s1"]
        assert second.strategy == "cache"
        assert second.value == first.value
        assert second.status == FieldStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_negative_cached_with_short_ttl(self):
        clock = FakeClock()
        rec = Recorder()
        cache = BoundedCache(max_entries=10, ttl_seconds=3600, clock=clock)
        plan = FieldPlan("pec", 0.8, [rec.strategy("s1", None)])
        wf = Waterfall(plan, cache=cache, negative_ttl_seconds=60)

        await wf.resolve(RECORD, ResolutionContext())
        await wf.resolve(RECORD, ResolutionContext())
        assert rec.calls == ["s1"]
        clock.now = 61
        await wf.resolve(RECORD, ResolutionContext())
        assert rec.calls == ["s1", "s1"]

    @pytest.mark.asyncio
    async def test_errored_outcome_not_cached(self):
        rec = Recorder()
        cache = BoundedCache(max_entries=10, ttl_seconds=60)
        plan = FieldPlan("pec", 0.8, [rec.strategy("s1", raises=NetworkError("down"))])
        wf = Waterfall(plan, cache=cache)
        await wf.resolve(RECORD, ResolutionContext())
        await wf.resolve(RECORD, ResolutionContext())
        assert rec.calls == ["s1", "s1"]

    @pytest.mark.asyncio
    async def test_cache_key_includes_branch_facts(self):
        rec = Recorder()
        plan = FieldPlan("revenue", 0.8, [rec.strategy("s1")], key_facts=("tax_id",))
        wf = Waterfall(plan)
        without = wf.cache_key(RECORD, ResolutionContext())
        with_id = wf.cache_key(RECORD, ResolutionContext(hints={"tax_id": "06363391001"}))
        assert without != with_id
        assert with_id.endswith("tax_id=06363391001")
