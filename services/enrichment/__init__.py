"""Enrichment service.

Resolves website, tax id, revenue, employees and PEC for Italian companies.

Components:
- Config: EngineConfig from env (config.py)
- Queue: jobs, retry/backoff, dead letters, SQS transport (job_queue.py)
- Repo: records, results, job log, dead letters (repo.py)
- Strategies: per-field waterfall plans (strategies.py)
- Orchestrator: one job -> one EnrichmentResult (orchestrator.py)
- Worker: worker pool (worker.py)
- Service: ties everything together (service.py)
"""

from services.enrichment.config import EngineConfig, configure_logging
from services.enrichment.job_queue import (
    DeadLetter,
    JobQueue,
    JobState,
    MemoryQueueBackend,
    QueueStats,
    ResolutionJob,
    SQSQueueBackend,
)
from services.enrichment.repo import MemoryRecordStore, PostgresRecordStore, RecordStore
from services.enrichment.strategies import StrategyCatalog
from services.enrichment.orchestrator import ResolutionOrchestrator
from services.enrichment.worker import PoolStats, WorkerPool
from services.enrichment.service import (
    EngineStatus,
    EnqueueResult,
    EnrichmentService,
    IEnrichmentService,
    build_service,
    start_service,
)

__all__ = [
    # Config
    "EngineConfig",
    "configure_logging",
    # Queue
    "DeadLetter",
    "JobQueue",
    "JobState",
    "MemoryQueueBackend",
    "QueueStats",
    "ResolutionJob",
    "SQSQueueBackend",
    # Repo
    "RecordStore",
    "MemoryRecordStore",
    "PostgresRecordStore",
    # Resolution
    "StrategyCatalog",
    "ResolutionOrchestrator",
    "WorkerPool",
    "PoolStats",
    # Service
    "IEnrichmentService",
    "EnrichmentService",
    "EnqueueResult",
    "EngineStatus",
    "build_service",
    "start_service",
]
