"""Confidence-gated strategy waterfall for a single field.

A waterfall is data: a FieldPlan holding an ordered list of StrategySpecs.
resolve() runs them strictly in order and stops at the first candidate that
reaches the plan's threshold, at a definitive negative, or when the field's
time/cost budget is spent. The budget is a soft deadline: it is checked
before launching each strategy, a strategy already in flight finishes.

Outcomes are cached under a canonical key; negative outcomes use a shorter
TTL. Outcomes produced while a strategy was erroring are not cached.
"""

import time
from dataclasses import dataclass, field as dc_field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from loguru import logger

from lib.resolution.cache import BoundedCache
from lib.resolution.errors import BlockedError, BudgetExceeded, EnrichmentError, NetworkError
from lib.resolution.models import (
    Candidate,
    CompanyRecord,
    DefinitiveNegative,
    FieldOutcome,
    FieldStatus,
    ReasonCode,
    Source,
)


StrategyVerdict = Union[Candidate, DefinitiveNegative, None]


@dataclass
class ResolutionContext:
    """Per-job state shared by every waterfall of one record.

    ``outcomes`` holds fields resolved earlier in the job; ``hints`` holds side
    facts strategies discovered (e.g. a tax id printed on the verified site).
    """

    job_id: Optional[str] = None
    correlation_id: Optional[str] = None
    outcomes: Dict[str, FieldOutcome] = dc_field(default_factory=dict)
    hints: Dict[str, Any] = dc_field(default_factory=dict)
    cost_spent: float = 0.0
    strategies_run: List[str] = dc_field(default_factory=list)

    def known(self, name: str) -> Optional[Any]:
        """Value for ``name`` from a resolved field, else from hints."""
        outcome = self.outcomes.get(name)
        if outcome is not None and outcome.has_value:
            return outcome.value
        return self.hints.get(name)


StrategyFn = Callable[[CompanyRecord, ResolutionContext], Awaitable[StrategyVerdict]]
EnabledFn = Callable[[CompanyRecord, ResolutionContext], bool]


@dataclass
class StrategySpec:
    name: str
    run: StrategyFn
    cost: float = 0.0
    source: Source = Source.UNKNOWN
    enabled_when: Optional[EnabledFn] = None

    def enabled(self, record: CompanyRecord, context: ResolutionContext) -> bool:
        return self.enabled_when is None or bool(self.enabled_when(record, context))


@dataclass
class FieldPlan:
    field: str
    threshold: float
    strategies: List[StrategySpec]
    budget_seconds: float = 60.0
    max_cost: float = float("inf")
    # Values are passed through this before acceptance and caching; None drops the candidate
    canonicalize: Optional[Callable[[Any], Any]] = None
    # Context facts that change which branch runs, so they are part of the cache key
    key_facts: Sequence[str] = ()


class Waterfall:
    def __init__(
        self,
        plan: FieldPlan,
        cache: Optional[BoundedCache] = None,
        negative_ttl_seconds: Optional[float] = None,
        propagate_transient: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not 0.0 <= plan.threshold <= 1.0:
            raise ValueError(f"threshold for {plan.field} must be in [0, 1]")
        self.plan = plan
        self.cache = cache
        self.negative_ttl_seconds = negative_ttl_seconds
        self.propagate_transient = propagate_transient
        self._clock = clock

    @property
    def field(self) -> str:
        return self.plan.field

    def cache_key(self, record: CompanyRecord, context: ResolutionContext) -> str:
        parts = [self.plan.field, record.record_id]
        for fact in self.plan.key_facts:
            value = context.known(fact)
            parts.append(f"{fact}={value if value is not None else ''}")
        return "|".join(parts)

    def _cache_put(self, key: str, outcome: FieldOutcome) -> None:
        if self.cache is None:
            return
        if outcome.has_value:
            self.cache.set(key, outcome)
        else:
            self.cache.set(key, outcome, ttl_seconds=self.negative_ttl_seconds)

    def _normalize(self, candidate: Candidate) -> Optional[Candidate]:
        if self.plan.canonicalize is None:
            return candidate
        value = self.plan.canonicalize(candidate.value)
        if value is None:
            return None
        if value == candidate.value:
            return candidate
        return candidate.model_copy(update={"value": value})

    async def resolve(self, record: CompanyRecord, context: ResolutionContext) -> FieldOutcome:
        plan = self.plan
        tag = f"[waterfall:{plan.field}] {record.tag()}"
        log = logger.bind(job_id=context.job_id, record_id=record.record_id, field=plan.field)

        key = self.cache_key(record, context)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                log.info(f"{tag} cache hit ({cached.status.value})")
                return cached.model_copy(update={
                    "strategy": "cache",
                    "detail": f"cached from {cached.strategy or 'none'}",
                })

        total = len(plan.strategies)
        start = self._clock()
        spent = 0.0
        best: Optional[Candidate] = None
        ran = 0
        errors: List[str] = []
        budget_hit: Optional[str] = None

        for i, spec in enumerate(plan.strategies):
            step = f"[{i + 1}/{total} {spec.name}]"
            if not spec.enabled(record, context):
                log.debug(f"{tag} {step} skipped (not applicable)")
                continue

            elapsed = self._clock() - start
            if elapsed >= plan.budget_seconds:
                budget_hit = f"time budget {plan.budget_seconds:.0f}s spent before {spec.name}"
                break
            if spent + spec.cost > plan.max_cost:
                budget_hit = f"cost budget {plan.max_cost} would be exceeded by {spec.name}"
                break

            spent += spec.cost
            context.cost_spent += spec.cost
            context.strategies_run.append(f"{plan.field}:{spec.name}")
            ran += 1
            t0 = self._clock()

            try:
                verdict = await spec.run(record, context)
            except BudgetExceeded as e:
                budget_hit = f"{spec.name}: {e.message}"
                break
            except (NetworkError, BlockedError) as e:
                log.warning(f"{tag} {step} {e.reason_code}: {e.message} [{self._clock() - t0:.1f}s]")
                if self.propagate_transient and e.retryable and self._is_last(i, record, context):
                    raise
                errors.append(f"{spec.name}:{e.reason_code}")
                continue
            except EnrichmentError as e:
                log.error(f"{tag} {step} {e.reason_code}: {e.message}")
                raise

            step_elapsed = self._clock() - t0

            if isinstance(verdict, DefinitiveNegative):
                log.info(f"{tag} {step} definitive negative: {verdict.reason} [{step_elapsed:.1f}s]")
                outcome = FieldOutcome(
                    field=plan.field,
                    status=FieldStatus.NOT_FOUND,
                    reason_code=ReasonCode.DEFINITIVE_NEGATIVE,
                    strategy=verdict.strategy or spec.name,
                    detail=verdict.reason,
                )
                if not errors:
                    self._cache_put(key, outcome)
                return outcome

            candidate = self._normalize(verdict) if verdict is not None else None
            if candidate is None:
                log.info(f"{tag} {step} no candidate [{step_elapsed:.1f}s]")
                continue
            if not candidate.strategy:
                candidate = candidate.model_copy(update={"strategy": spec.name})

            if candidate.confidence >= plan.threshold and not candidate.estimated:
                log.info(
                    f"{tag} {step} HIT {candidate.value} conf={candidate.confidence:.2f} "
                    f"[{step_elapsed:.1f}s]"
                )
                outcome = FieldOutcome.from_candidate(plan.field, candidate, accepted=True)
                self._cache_put(key, outcome)
                return outcome

            log.info(
                f"{tag} {step} below threshold {candidate.value} "
                f"conf={candidate.confidence:.2f} < {plan.threshold:.2f} [{step_elapsed:.1f}s]"
            )
            if best is None or candidate.confidence > best.confidence:
                best = candidate

        total_elapsed = self._clock() - start

        if best is not None:
            outcome = FieldOutcome.from_candidate(plan.field, best, accepted=False)
            if budget_hit:
                outcome = outcome.model_copy(update={"detail": budget_hit})
            log.info(
                f"{tag} kept best {best.value} ({outcome.status.value}, conf={best.confidence:.2f}) "
                f"[{total_elapsed:.1f}s]"
            )
            if not errors and not budget_hit:
                self._cache_put(key, outcome)
            return outcome

        if budget_hit:
            log.warning(f"{tag} budget exceeded: {budget_hit} [{total_elapsed:.1f}s]")
            return FieldOutcome.absent(
                plan.field, FieldStatus.BUDGET_EXCEEDED, ReasonCode.BUDGET_EXCEEDED, budget_hit,
            )

        if ran == 0:
            log.info(f"{tag} no applicable strategy")
            return FieldOutcome.absent(
                plan.field, FieldStatus.SKIPPED, ReasonCode.DEPENDENCY_MISSING,
                "no strategy applicable to this record",
            )

        detail = f"errors: {', '.join(errors)}" if errors else None
        log.info(f"{tag} not found after {ran} strategies [{total_elapsed:.1f}s]")
        outcome = FieldOutcome.absent(
            plan.field, FieldStatus.NOT_FOUND, ReasonCode.STRATEGIES_EXHAUSTED, detail,
        )
        if not errors:
            self._cache_put(key, outcome)
        return outcome

    def _is_last(self, index: int, record: CompanyRecord, context: ResolutionContext) -> bool:
        return not any(s.enabled(record, context) for s in self.plan.strategies[index + 1:])
