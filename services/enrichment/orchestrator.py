"""Resolution orchestrator: one job in, one complete EnrichmentResult out.

    validate -> duplicate check -> website -> tax id -> revenue/employees/pec -> register

The website runs first because a verified site can carry the tax id, which
in turn decides which branch the financial waterfalls take.
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from loguru import logger

from lib.resolution.cache import BoundedCache
from lib.resolution.entity import EntityResolver
from lib.resolution.errors import ValidationError
from lib.resolution.models import (
    TARGET_FIELDS,
    EnrichmentResult,
    FieldOutcome,
    FieldStatus,
    ReasonCode,
    Source,
)
from lib.resolution.normalize import is_valid_partita_iva, normalize_tax_id
from lib.resolution.waterfall import FieldPlan, ResolutionContext, Waterfall
from services.enrichment.job_queue import ResolutionJob
from services.enrichment.repo import RecordStore


class ResolutionOrchestrator:
    def __init__(
        self,
        plans: Dict[str, FieldPlan],
        entity: EntityResolver,
        store: RecordStore,
        cache: Optional[BoundedCache] = None,
        negative_ttl_seconds: Optional[float] = None,
        propagate_transient: bool = True,
    ):
        self.entity = entity
        self.store = store
        self.waterfalls: Dict[str, Waterfall] = {
            field: Waterfall(
                plan,
                cache=cache,
                negative_ttl_seconds=negative_ttl_seconds,
                propagate_transient=propagate_transient,
            )
            for field, plan in plans.items()
        }

    @staticmethod
    def validate(job: ResolutionJob) -> None:
        record = job.record
        missing = record.missing_required()
        if missing:
            raise ValidationError(
                f"record is missing {', '.join(missing)}",
                context={"job_id": job.job_id, "record_id": record.record_id},
            )

    async def _reuse_duplicate(self, job: ResolutionJob) -> Optional[EnrichmentResult]:
        record = job.record
        duplicate = await self.entity.find_duplicate(record)
        if duplicate is None or duplicate.record_id == record.record_id:
            return None
        stored = await self.store.get_result(duplicate.record_id)
        if stored is None:
            logger.info(
                f"[orchestrator] {record.tag()} duplicates {duplicate.record_id[:8]} "
                f"but no stored result yet, resolving"
            )
            return None

        await self.entity.register(record)
        logger.info(f"[orchestrator] {record.tag()} reused result of duplicate {duplicate.record_id[:8]}")
        return stored.model_copy(update={
            "record_id": record.record_id,
            "job_id": job.job_id,
            "correlation_id": job.correlation_id,
            "duplicate_of": duplicate.record_id,
            "completed_at": datetime.now(timezone.utc),
        })

    @staticmethod
    def _promote_hints(outcome: FieldOutcome, context: ResolutionContext) -> None:
        """Tax id printed on an accepted website becomes a hint for the tax id waterfall."""
        if outcome.status != FieldStatus.ACCEPTED:
            return
        tax_id = outcome.extras.get("tax_id")
        if tax_id and is_valid_partita_iva(tax_id):
            context.hints["tax_id"] = normalize_tax_id(tax_id)

    @staticmethod
    def _entity_updates(result: EnrichmentResult) -> Dict[str, Tuple[Any, Source]]:
        updates = {}
        for field, outcome in result.fields.items():
            if outcome.status == FieldStatus.ACCEPTED and outcome.source is not None:
                updates[field] = (outcome.value, outcome.source)
        return updates

    async def resolve(self, job: ResolutionJob) -> EnrichmentResult:
        record = job.record
        start = time.monotonic()
        self.validate(job)

        reused = await self._reuse_duplicate(job)
        if reused is not None:
            return reused

        fuzzy = await self.entity.fuzzy_match(record)
        if fuzzy is not None:
            entry, score = fuzzy
            logger.info(
                f"[orchestrator] {record.tag()} looks like {entry.record_id[:8]} "
                f"({entry.values.get('name')}, similarity {score:.2f}), resolving anyway"
            )

        context = ResolutionContext(job_id=job.job_id, correlation_id=job.correlation_id)
        for field in TARGET_FIELDS:
            waterfall = self.waterfalls.get(field)
            if waterfall is None:
                outcome = FieldOutcome.absent(
                    field, FieldStatus.SKIPPED, ReasonCode.DEPENDENCY_MISSING, "no plan configured",
                )
            else:
                outcome = await waterfall.resolve(record, context)
            context.outcomes[field] = outcome

            if field == "website":
                self._promote_hints(outcome, context)
            elif field == "tax_id" and not outcome.has_value:
                # Unconfirmed hint must not steer the financial branches
                context.hints.pop("tax_id", None)

        result = EnrichmentResult.for_fields(
            record.record_id,
            context.outcomes,
            job_id=job.job_id,
            correlation_id=job.correlation_id,
        )
        await self.entity.register(record, updates=self._entity_updates(result))

        found = [f for f, o in result.fields.items() if o.has_value]
        logger.info(
            f"[orchestrator] {record.tag()} done: {len(found)}/{len(TARGET_FIELDS)} fields "
            f"({', '.join(found) or 'none'}), {len(context.strategies_run)} strategies, "
            f"cost {context.cost_spent:.1f} [{time.monotonic() - start:.1f}s]"
        )
        return result
