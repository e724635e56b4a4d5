"""
Enrichment Service - Resolve missing company fields for Italian SMEs.

The service ties the pieces together:
- JobQueue: one job per record, retry/backoff, dead letters
- WorkerPool: N workers pulling jobs
- ResolutionOrchestrator: per-field waterfalls for one record
- RecordStore: records, results, job log, dead letters

Workflows only talk to this module. build_service() wires every collaborator
from an EngineConfig.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from typing import Iterable, List, Optional

from loguru import logger
from pydantic import BaseModel, Field

from db.client import ensure_schema, init_db
from infra.slack import send_dead_letter_notification
from lib.browser import BrowserPool
from lib.discovery import (
    CompanyMatcher,
    CostLedger,
    DomainGuesser,
    DuckDuckGoSearchProvider,
    GuardedHttp,
    LLMOracle,
    PageFetcher,
    RegistryClient,
    SearchChain,
    SerperSearchProvider,
    ViesClient,
    WebsiteVerifier,
)
from lib.resolution.cache import BoundedCache
from lib.resolution.classifier import FailureClassifier
from lib.resolution.entity import EntityResolver
from lib.resolution.errors import (
    ConfigurationError,
    EnrichmentError,
    LogicError,
    NetworkError,
    reason_code_of,
)
from lib.resolution.governor import RateGovernor
from lib.resolution.models import CompanyRecord, EnrichmentResult
from services.enrichment.config import EngineConfig
from services.enrichment.job_queue import (
    DeadLetter,
    JobQueue,
    JobState,
    MemoryQueueBackend,
    QueueBackend,
    QueueStats,
    ResolutionJob,
    SQSQueueBackend,
)
from services.enrichment.orchestrator import ResolutionOrchestrator
from services.enrichment.repo import (
    DB_ERRORS,
    MemoryRecordStore,
    PostgresRecordStore,
    RecordStore,
    StoreStats,
)
from services.enrichment.strategies import StrategyCatalog
from services.enrichment.worker import PoolStats, WorkerPool

# Dead letters scanned when requeueing a job this process never saw
MAX_STORED_DEAD_LETTERS = 10_000


# =============================================================================
# Models
# =============================================================================

class EnqueueResult(BaseModel):
    """Result of enqueueing a batch of records."""
    total: int
    enqueued: int
    skipped_existing: int = 0
    job_ids: List[str] = Field(default_factory=list)


class EngineStatus(BaseModel):
    """Queue + store counts for status output."""
    queue: QueueStats
    store: StoreStats
    llm_usd: float = 0.0
    llm_calls: int = 0


# =============================================================================
# Service Interface
# =============================================================================

class IEnrichmentService(ABC):
    """Enrichment Service Interface."""

    @abstractmethod
    async def enqueue_records(
        self,
        records: Iterable[CompanyRecord],
        correlation_id: Optional[str] = None,
        skip_existing: bool = True,
    ) -> EnqueueResult:
        pass

    @abstractmethod
    async def process_job(self, job: ResolutionJob) -> EnrichmentResult:
        pass

    @abstractmethod
    async def run_workers(self, workers: Optional[int] = None, drain: bool = False) -> PoolStats:
        pass

    @abstractmethod
    async def status(self) -> EngineStatus:
        pass

    @abstractmethod
    async def dead_letters(self, limit: int = 100) -> List[DeadLetter]:
        pass

    @abstractmethod
    async def requeue_dead_letter(self, job_id: str) -> ResolutionJob:
        pass


# =============================================================================
# Service Implementation
# =============================================================================

class EnrichmentService(IEnrichmentService):
    def __init__(
        self,
        orchestrator: ResolutionOrchestrator,
        queue: JobQueue,
        store: RecordStore,
        workers: int = 4,
        poll_interval: float = 1.0,
        slack_webhook_url: Optional[str] = None,
        ledger: Optional[CostLedger] = None,
        resources: Optional[AsyncExitStack] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.queue = queue
        self.store = store
        self.workers = workers
        self.poll_interval = poll_interval
        self.slack_webhook_url = slack_webhook_url
        self.ledger = ledger
        self.queue.on_dead_letter = self._on_dead_letter
        self._pool: Optional[WorkerPool] = None
        self._shutdown_requested = False
        self._resources = resources or AsyncExitStack()

    def request_shutdown(self) -> None:
        """Request graceful shutdown: in-flight jobs finish, no new ones start."""
        self._shutdown_requested = True
        if self._pool is not None:
            self._pool.request_shutdown()

    async def close(self) -> None:
        """Release HTTP clients and the browser (if any)."""
        await self._resources.aclose()

    async def enqueue_records(
        self,
        records: Iterable[CompanyRecord],
        correlation_id: Optional[str] = None,
        skip_existing: bool = True,
    ) -> EnqueueResult:
        """Persist and enqueue records. Records with a stored result are skipped."""
        result = EnqueueResult(total=0, enqueued=0)
        for record in records:
            result.total += 1
            if skip_existing and await self.store.get_result(record.record_id) is not None:
                result.skipped_existing += 1
                logger.debug(f"[service] {record.tag()} already enriched, skipping")
                continue

            await self.store.upsert(record)
            job_id = await self.queue.enqueue(record, correlation_id=correlation_id)
            await self.store.append_job_log(job_id, "queued")
            result.enqueued += 1
            result.job_ids.append(job_id)

        logger.info(
            f"[service] enqueued {result.enqueued}/{result.total} records "
            f"({result.skipped_existing} already enriched)"
            + (f" correlation_id={correlation_id}" if correlation_id else "")
        )
        return result

    async def process_job(self, job: ResolutionJob) -> EnrichmentResult:
        """Resolve one job and persist the result. Errors propagate to the queue."""
        start = time.monotonic()
        await self.store.upsert(job.record)
        result = await self.orchestrator.resolve(job)
        await self.store.save_result(result)
        await self.store.append_job_log(
            job.job_id, "succeeded", duration_ms=int((time.monotonic() - start) * 1000),
        )
        return result

    async def handle_failure(self, job: ResolutionJob, error: EnrichmentError) -> None:
        """Record a failed attempt (retrying or dead-lettered) in the job log."""
        attempt = job.last_attempt
        try:
            await self.store.append_job_log(
                job.job_id,
                "dead_lettered" if job.state == JobState.DEAD_LETTERED else "retrying",
                duration_ms=attempt.duration_ms if attempt else None,
                reason_code=reason_code_of(error),
            )
        except EnrichmentError as e:
            logger.error(f"[service] could not log failure of {job.job_id}: {e}")

    async def _on_dead_letter(self, entry: DeadLetter) -> None:
        await self.store.save_result(entry.result)
        await self.store.save_dead_letter(entry)
        if not self.slack_webhook_url:
            return
        await asyncio.to_thread(
            send_dead_letter_notification,
            entry.job_id,
            entry.record.name,
            entry.reason_code,
            entry.attempts,
            entry.error,
            self.slack_webhook_url,
        )

    async def run_workers(self, workers: Optional[int] = None, drain: bool = False) -> PoolStats:
        """Run the worker pool until shutdown (or until the queue is empty with drain)."""
        self._pool = WorkerPool(
            self.queue,
            self.process_job,
            workers=workers or self.workers,
            poll_interval=self.poll_interval,
            drain=drain,
            on_failure=self.handle_failure,
        )
        if self._shutdown_requested:
            self._pool.request_shutdown()
        try:
            return await self._pool.run()
        finally:
            if self.ledger is not None and self.ledger.calls:
                logger.info(f"[service] LLM usage: {self.ledger.summary()}")

    async def status(self) -> EngineStatus:
        return EngineStatus(
            queue=await self.queue.stats(),
            store=await self.store.stats(),
            llm_usd=self.ledger.usd if self.ledger else 0.0,
            llm_calls=self.ledger.calls if self.ledger else 0,
        )

    async def dead_letters(self, limit: int = 100) -> List[DeadLetter]:
        return await self.store.list_dead_letters(limit=limit)

    async def requeue_dead_letter(self, job_id: str) -> ResolutionJob:
        """Put a dead-lettered job back on the queue with a fresh attempt budget."""
        entry = self.queue.dead_letter(job_id)
        if entry is None:
            stored = await self.store.list_dead_letters(limit=MAX_STORED_DEAD_LETTERS)
            entry = next((d for d in stored if d.job_id == job_id), None)
        if entry is None:
            raise LogicError(f"{job_id} is not dead-lettered", context={"job_id": job_id})

        job = await self.queue.requeue_dead_letter(job_id, entry)
        await self.store.delete_dead_letter(job_id)
        await self.store.append_job_log(job_id, "requeued")
        return job


# =============================================================================
# Builder
# =============================================================================

async def build_service(
    config: EngineConfig,
    store: Optional[RecordStore] = None,
    backend: Optional[QueueBackend] = None,
) -> EnrichmentService:
    """Wire every collaborator from config. Call service.close() when done.

    Missing optional collaborators (Serper key, Azure OpenAI) only disable
    their strategies. SQS and Postgres are used when configured, otherwise
    the in-memory backend and store.
    """
    resources = AsyncExitStack()

    governor = RateGovernor(
        min_delay=config.governor_min_delay,
        max_delay=config.governor_max_delay,
        failure_threshold=config.governor_failure_threshold,
        max_cooldown=config.governor_max_cooldown,
    )
    classifier = FailureClassifier(hot_threshold=config.classifier_hot_threshold)
    http = GuardedHttp(governor, classifier)
    resources.push_async_callback(http.close)

    browser: Optional[BrowserPool] = None
    if config.use_browser:
        browser = await resources.enter_async_context(BrowserPool(concurrency=min(config.workers, 3)))

    matcher = CompanyMatcher()
    fetcher = PageFetcher(http, browser=browser)

    providers = []
    if config.serper_api_key:
        providers.append(SerperSearchProvider(http, config.serper_api_key))
    providers.append(DuckDuckGoSearchProvider(http))
    search = SearchChain(providers, classifier)

    ledger: Optional[CostLedger] = None
    oracle: Optional[LLMOracle] = None
    if config.oracle_enabled:
        ledger = CostLedger(max_usd=config.llm_max_usd)
        oracle = LLMOracle(
            http,
            endpoint=config.azure_openai_endpoint,
            api_key=config.azure_openai_api_key,
            deployment=config.azure_openai_deployment,
            api_version=config.azure_openai_api_version,
            ledger=ledger,
        )

    catalog = StrategyCatalog(
        verifier=WebsiteVerifier(fetcher, matcher=matcher),
        guesser=DomainGuesser(),
        search=search,
        registry=RegistryClient(http, search, matcher=matcher),
        vies=ViesClient(http),
        oracle=oracle,
        fetcher=fetcher,
        matcher=matcher,
        website_threshold=config.website_threshold,
        financial_threshold=config.financial_threshold,
        budget_seconds=config.field_budget_seconds,
    )

    if store is None:
        store = PostgresRecordStore() if config.database_configured else MemoryRecordStore()
    if backend is None:
        backend = SQSQueueBackend(config.sqs_queue_url) if config.sqs_queue_url else MemoryQueueBackend()

    orchestrator = ResolutionOrchestrator(
        catalog.plans(),
        EntityResolver(),
        store,
        cache=BoundedCache(max_entries=config.cache_max_entries, ttl_seconds=config.cache_ttl_seconds),
        negative_ttl_seconds=config.cache_negative_ttl_seconds,
    )
    queue = JobQueue(
        backend=backend,
        max_attempts=config.max_attempts,
        retry_base_seconds=config.retry_base_seconds,
        max_concurrency=config.workers,
    )

    service = EnrichmentService(
        orchestrator,
        queue,
        store,
        workers=config.workers,
        slack_webhook_url=config.slack_webhook_url,
        ledger=ledger,
        resources=resources,
    )
    logger.info(f"[service] built: {config.describe()}")
    return service


async def start_service(config: EngineConfig, local: bool = False) -> EnrichmentService:
    """build_service() plus startup checks for the configured DB and queue.

    ``local`` forces the in-memory queue backend (single-process runs).
    Raises ConfigurationError when a configured dependency is unreachable.
    """
    if config.database_configured:
        try:
            await init_db()
            await ensure_schema()
        except DB_ERRORS as e:
            raise ConfigurationError(f"database unreachable: {e}", context={"target": "postgres"}) from e

    backend: Optional[QueueBackend] = MemoryQueueBackend() if local else None
    service = await build_service(config, backend=backend)
    if isinstance(service.queue.backend, SQSQueueBackend):
        try:
            await service.queue.backend.check()
        except NetworkError as e:
            await service.close()
            raise ConfigurationError(f"queue unreachable: {e}", context={"target": "sqs"}) from e
    return service
