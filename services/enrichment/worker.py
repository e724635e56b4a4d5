"""Worker pool: N sequential loops of dispatch -> process -> complete/fail."""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from loguru import logger

from lib.resolution.errors import EnrichmentError, LogicError, NetworkError
from lib.resolution.models import EnrichmentResult
from services.enrichment.job_queue import JobQueue, JobState, ResolutionJob

# Longest single sleep while draining waits for a scheduled retry
MAX_RETRY_WAIT_SECONDS = 5.0

ProcessFn = Callable[[ResolutionJob], Awaitable[EnrichmentResult]]
FailureFn = Callable[[ResolutionJob, EnrichmentError], Awaitable[None]]


@dataclass
class PoolStats:
    """Result of a pool run."""
    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    dead_lettered: int = 0
    elapsed_seconds: float = 0.0


class WorkerPool:
    def __init__(
        self,
        queue: JobQueue,
        process: ProcessFn,
        workers: int = 4,
        poll_interval: float = 1.0,
        max_idle_polls: int = 3,
        drain: bool = False,
        on_failure: Optional[FailureFn] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.queue = queue
        self.process = process
        self.workers = workers
        self.poll_interval = poll_interval
        self.max_idle_polls = max_idle_polls
        self.drain = drain
        self.on_failure = on_failure
        self.stats = PoolStats()
        self._sleep = sleep
        self._shutdown_requested = False

    def request_shutdown(self) -> None:
        """Workers finish their current job, then exit."""
        if not self._shutdown_requested:
            logger.info("[pool] shutdown requested, finishing in-flight jobs")
        self._shutdown_requested = True

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    async def run(self) -> PoolStats:
        start = time.monotonic()
        logger.info(f"[pool] starting {self.workers} worker(s){' (drain)' if self.drain else ''}")
        await asyncio.gather(*(self._worker(f"worker-{i + 1}") for i in range(self.workers)))
        self.stats.elapsed_seconds = time.monotonic() - start
        s = self.stats
        logger.info(
            f"[pool] stopped: {s.processed} processed, {s.succeeded} succeeded, "
            f"{s.retried} retried, {s.dead_lettered} dead-lettered [{s.elapsed_seconds:.1f}s]"
        )
        return self.stats

    async def _worker(self, worker_id: str) -> None:
        idle_polls = 0
        while not self._shutdown_requested:
            try:
                job = await self.queue.dispatch(worker_id)
            except NetworkError as e:
                logger.warning(f"[{worker_id}] dispatch failed: {e}")
                await self._sleep(self.poll_interval)
                continue

            if job is None:
                wait = self.poll_interval
                due = self.queue.next_due_in() if self.drain else None
                if due:
                    # A retry is scheduled; draining waits for it instead of exiting
                    idle_polls = 0
                    wait = max(self.poll_interval, min(due, MAX_RETRY_WAIT_SECONDS))
                else:
                    idle_polls += 1
                    if self.drain and idle_polls >= self.max_idle_polls:
                        break
                await self._sleep(wait)
                continue

            idle_polls = 0
            await self._run_job(worker_id, job)

        logger.debug(f"[{worker_id}] exiting")

    async def _run_job(self, worker_id: str, job: ResolutionJob) -> None:
        with logger.contextualize(
            job_id=job.job_id,
            record_id=job.record.record_id,
            correlation_id=job.correlation_id,
        ):
            start = time.monotonic()
            self.stats.processed += 1
            logger.info(f"[{worker_id}] {job.record.tag()} attempt {job.attempt}/{job.max_attempts}")

            try:
                result = await self.process(job)
                await self.queue.complete(job.job_id, result)
            except EnrichmentError as e:
                error = e
            except Exception as e:
                logger.exception(f"[{worker_id}] unexpected {type(e).__name__} in {job.job_id}")
                error = LogicError(f"{type(e).__name__}: {e}", reason_code="unexpected_error")
            else:
                self.stats.succeeded += 1
                logger.info(f"[{worker_id}] {job.job_id} done [{time.monotonic() - start:.1f}s]")
                return

            logger.warning(f"[{worker_id}] {job.job_id} failed: {error} [{time.monotonic() - start:.1f}s]")
            try:
                job = await self.queue.fail(job.job_id, error)
            except EnrichmentError as e:
                # Job already left the active state (LogicError), or the retry could not be
                # scheduled and the delivery was left for redelivery
                logger.error(f"[{worker_id}] could not record failure of {job.job_id}: {e}")
                return

            if job.state == JobState.DEAD_LETTERED:
                self.stats.dead_lettered += 1
            else:
                self.stats.retried += 1
            if self.on_failure is not None:
                await self.on_failure(job, error)
