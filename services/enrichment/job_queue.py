"""Enrichment job queue.

One job per record (job_id derived from record_id, so enqueueing is
idempotent). Every state change goes through ResolutionJob.transition():

    queued -> active -> succeeded
                     -> retrying -> queued
                     -> dead_lettered (-> queued only via requeue_dead_letter)

JobQueue owns the in-process view of job state and retry policy. Delivery is
delegated to a QueueBackend: MemoryQueueBackend for a single process,
SQSQueueBackend when enqueue and workers run in different processes.
"""

import asyncio
import heapq
import itertools
import math
import random
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from infra.sqs import (
    change_message_visibility,
    delete_message,
    get_queue_attributes,
    get_queue_url,
    receive_messages,
    send_message,
)
from lib.resolution.errors import (
    ConfigurationError,
    EnrichmentError,
    LogicError,
    NetworkError,
    ValidationError,
    is_retryable,
    reason_code_of,
)
from lib.resolution.models import CompanyRecord, EnrichmentResult, ReasonCode


class JobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    SUCCEEDED = "succeeded"
    RETRYING = "retrying"
    DEAD_LETTERED = "dead_lettered"


TRANSITIONS = {
    JobState.QUEUED: {JobState.ACTIVE},
    JobState.ACTIVE: {JobState.SUCCEEDED, JobState.RETRYING, JobState.DEAD_LETTERED},
    JobState.RETRYING: {JobState.QUEUED},
    JobState.SUCCEEDED: set(),
    JobState.DEAD_LETTERED: {JobState.QUEUED},
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def job_id_for(record: CompanyRecord) -> str:
    return f"enrich-{record.record_id}"


class JobAttempt(BaseModel):
    """One dispatch of a job to a worker."""

    attempt: int
    worker_id: Optional[str] = None
    started_at: datetime = Field(default_factory=_now)
    finished_at: Optional[datetime] = None
    reason_code: Optional[str] = None
    error: Optional[str] = None

    @property
    def duration_ms(self) -> Optional[int]:
        if self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)


class ResolutionJob(BaseModel):
    job_id: str
    record: CompanyRecord
    correlation_id: Optional[str] = None
    attempt: int = 0
    max_attempts: int = 3
    state: JobState = JobState.QUEUED
    history: List[JobAttempt] = Field(default_factory=list)
    owner: Optional[str] = None
    # Wall-clock epoch seconds; the job is not handed out before this
    available_at: float = 0.0
    enqueued_at: datetime = Field(default_factory=_now)

    def transition(self, new_state: JobState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise LogicError(
                f"illegal transition {self.state.value} -> {new_state.value}",
                context={"job_id": self.job_id},
            )
        self.state = new_state

    @property
    def last_attempt(self) -> Optional[JobAttempt]:
        return self.history[-1] if self.history else None


class DeadLetter(BaseModel):
    """A job that exhausted its attempts or failed permanently."""

    job_id: str
    record: CompanyRecord
    correlation_id: Optional[str] = None
    reason_code: str
    error: Optional[str] = None
    attempts: int
    history: List[JobAttempt] = Field(default_factory=list)
    result: EnrichmentResult
    dead_lettered_at: datetime = Field(default_factory=_now)


class QueueStats(BaseModel):
    queued: int = 0
    active: int = 0
    retrying: int = 0
    succeeded: int = 0
    dead_lettered: int = 0
    backend_depth: int = 0


@runtime_checkable
class QueueBackend(Protocol):
    """Delivery transport. Carries job snapshots so another process can rebuild them."""

    async def push(self, job: ResolutionJob, delay_seconds: float) -> None:
        ...

    async def pop(self) -> Optional[ResolutionJob]:
        """Next job whose delay has elapsed, or None."""
        ...

    async def ack(self, job_id: str) -> None:
        """Forget the delivery of ``job_id`` (it will not be redelivered)."""
        ...

    async def depth(self) -> int:
        ...


class MemoryQueueBackend(QueueBackend):
    """In-process delay heap."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._heap: List[Tuple[float, int, ResolutionJob]] = []
        self._seq = itertools.count()

    async def push(self, job: ResolutionJob, delay_seconds: float) -> None:
        due = self._clock() + max(0.0, delay_seconds)
        heapq.heappush(self._heap, (due, next(self._seq), job))

    async def pop(self) -> Optional[ResolutionJob]:
        if self._heap and self._heap[0][0] <= self._clock():
            return heapq.heappop(self._heap)[2]
        return None

    async def ack(self, job_id: str) -> None:
        return None

    async def depth(self) -> int:
        return len(self._heap)


class SQSQueueBackend(QueueBackend):
    """SQS transport (FIFO or standard).

    FIFO queues dedupe on job_id and cannot delay single messages, so a job
    popped before its ``available_at`` is hidden again for the remaining time.
    Standard queues use DelaySeconds (capped by SQS at 15 minutes).
    """

    def __init__(
        self,
        queue_url: Optional[str] = None,
        visibility_timeout: int = 1800,
        wait_time_seconds: int = 5,
        clock: Callable[[], float] = time.time,
    ):
        try:
            self.queue_url = queue_url or get_queue_url()
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        self.visibility_timeout = visibility_timeout
        self.wait_time_seconds = wait_time_seconds
        self._clock = clock
        self._receipts: Dict[str, str] = {}

    @staticmethod
    def dedup_id(job: ResolutionJob) -> str:
        # Each attempt (and each requeue) is a distinct delivery
        if not job.history:
            return job.job_id
        return f"{job.job_id}-a{len(job.history)}"

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except (BotoCoreError, ClientError) as e:
            raise NetworkError(f"sqs {fn.__name__} failed: {e}", context={"target": "sqs"}) from e

    async def check(self) -> Dict[str, str]:
        """Fail fast when the queue is unreachable."""
        return await self._call(get_queue_attributes, self.queue_url)

    async def push(self, job: ResolutionJob, delay_seconds: float) -> None:
        await self._call(
            send_message,
            self.queue_url,
            job.model_dump(mode="json"),
            delay_seconds=int(math.ceil(delay_seconds)),
            group_id=job.job_id,
            dedup_id=self.dedup_id(job),
        )

    async def pop(self) -> Optional[ResolutionJob]:
        messages = await self._call(
            receive_messages,
            self.queue_url,
            max_messages=1,
            wait_time_seconds=self.wait_time_seconds,
            visibility_timeout=self.visibility_timeout,
        )
        if not messages:
            return None
        msg = messages[0]

        try:
            job = ResolutionJob.model_validate(msg["body"])
        except PydanticValidationError as e:
            logger.error(f"[queue] dropping malformed job message {msg['message_id']}: {e}")
            await self._call(delete_message, self.queue_url, msg["receipt_handle"])
            return None

        remaining = job.available_at - self._clock()
        if remaining > 0:
            await self._call(
                change_message_visibility, self.queue_url, msg["receipt_handle"], math.ceil(remaining),
            )
            return None

        self._receipts[job.job_id] = msg["receipt_handle"]
        return job

    async def ack(self, job_id: str) -> None:
        receipt = self._receipts.pop(job_id, None)
        if receipt:
            await self._call(delete_message, self.queue_url, receipt)

    async def depth(self) -> int:
        attrs = await self.check()
        return int(attrs.get("ApproximateNumberOfMessages", 0)) + int(
            attrs.get("ApproximateNumberOfMessagesNotVisible", 0)
        )


DeadLetterHook = Callable[[DeadLetter], Awaitable[None]]


class JobQueue:
    def __init__(
        self,
        backend: Optional[QueueBackend] = None,
        max_attempts: int = 3,
        retry_base_seconds: float = 30.0,
        max_concurrency: int = 4,
        jitter_ratio: float = 0.25,
        clock: Callable[[], float] = time.time,
        uniform: Callable[[float, float], float] = random.uniform,
        on_dead_letter: Optional[DeadLetterHook] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.backend = backend or MemoryQueueBackend(clock=clock)
        self.max_attempts = max_attempts
        self.retry_base_seconds = retry_base_seconds
        self.max_concurrency = max_concurrency
        self.jitter_ratio = jitter_ratio
        self.on_dead_letter = on_dead_letter
        self._clock = clock
        self._uniform = uniform
        self._jobs: Dict[str, ResolutionJob] = {}
        self._dead: Dict[str, DeadLetter] = {}
        self._lock = asyncio.Lock()

    def get(self, job_id: str) -> Optional[ResolutionJob]:
        return self._jobs.get(job_id)

    def active_count(self) -> int:
        return sum(1 for j in self._jobs.values() if j.state == JobState.ACTIVE)

    def retry_delay(self, attempts_done: int) -> float:
        """base * 2**attempts_done plus up to jitter_ratio of that."""
        delay = self.retry_base_seconds * (2 ** attempts_done)
        return delay + self._uniform(0.0, self.jitter_ratio * delay)

    async def enqueue(self, record: CompanyRecord, correlation_id: Optional[str] = None) -> str:
        job_id = job_id_for(record)
        async with self._lock:
            existing = self._jobs.get(job_id)
            if existing is not None:
                logger.debug(f"[queue] {job_id} already {existing.state.value}, not re-enqueued")
                return job_id

            job = ResolutionJob(
                job_id=job_id,
                record=record,
                correlation_id=correlation_id,
                max_attempts=self.max_attempts,
                available_at=self._clock(),
            )
            self._jobs[job_id] = job
            try:
                await self.backend.push(job, 0.0)
            except EnrichmentError:
                del self._jobs[job_id]
                raise

        logger.info(f"[queue] enqueued {job_id} {record.tag()}")
        return job_id

    async def dispatch(self, worker_id: str) -> Optional[ResolutionJob]:
        """Claim the next due job for ``worker_id``, or None."""
        async with self._lock:
            if self.active_count() >= self.max_concurrency:
                return None

            while True:
                delivered = await self.backend.pop()
                if delivered is None:
                    return None

                job = self._jobs.get(delivered.job_id)
                requeued_elsewhere = (
                    job is not None
                    and job.state == JobState.DEAD_LETTERED
                    and delivered.state == JobState.QUEUED
                    and delivered.attempt == 0
                )
                if job is None or requeued_elsewhere:
                    # Enqueued (or requeued) by another process
                    job = delivered
                    job.owner = None
                    self._jobs[job.job_id] = job
                    self._dead.pop(job.job_id, None)

                if job.state != JobState.QUEUED or delivered.attempt != job.attempt:
                    logger.warning(
                        f"[queue] {job.job_id} delivered while {job.state.value} "
                        f"(attempt {delivered.attempt}/{job.attempt}), dropping duplicate"
                    )
                    await self.backend.ack(job.job_id)
                    continue

                job.transition(JobState.ACTIVE)
                job.owner = worker_id
                job.attempt += 1
                job.history.append(JobAttempt(attempt=job.attempt, worker_id=worker_id))
                logger.debug(
                    f"[queue] {worker_id} claimed {job.job_id} (attempt {job.attempt}/{job.max_attempts})"
                )
                return job

    def _require_active(self, job_id: str) -> ResolutionJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise LogicError(f"unknown job {job_id}", context={"job_id": job_id})
        if job.state != JobState.ACTIVE:
            raise LogicError(
                f"{job_id} is {job.state.value}, not active",
                context={"job_id": job_id},
            )
        return job

    @staticmethod
    def _close_attempt(job: ResolutionJob, reason_code: str, error: Optional[str] = None) -> None:
        last = job.last_attempt
        if last is not None and last.finished_at is None:
            last.finished_at = _now()
            last.reason_code = reason_code
            last.error = error

    async def complete(self, job_id: str, result: EnrichmentResult) -> ResolutionJob:
        missing = result.missing_fields()
        if missing:
            raise LogicError(
                f"refusing to complete {job_id}: result missing {', '.join(missing)}",
                context={"job_id": job_id},
            )
        async with self._lock:
            job = self._require_active(job_id)
            job.transition(JobState.SUCCEEDED)
            job.owner = None
            self._close_attempt(job, "succeeded")
            await self.backend.ack(job_id)

        logger.info(f"[queue] {job_id} succeeded after {job.attempt} attempt(s)")
        return job

    async def _ack_after_handoff(self, job_id: str) -> None:
        # The job's next step is already recorded, so a stale redelivery is dropped in dispatch()
        try:
            await self.backend.ack(job_id)
        except EnrichmentError as e:
            logger.warning(f"[queue] ack of {job_id} failed, duplicate delivery will be dropped: {e}")

    async def fail(self, job_id: str, error: BaseException) -> ResolutionJob:
        """Retry with backoff if the error allows it, otherwise dead-letter."""
        reason = reason_code_of(error)
        message = str(error)
        entry: Optional[DeadLetter] = None

        async with self._lock:
            job = self._require_active(job_id)
            self._close_attempt(job, reason, message)
            job.owner = None

            if isinstance(error, ValidationError):
                job.attempt = job.max_attempts

            if is_retryable(error) and job.attempt < job.max_attempts:
                delay = self.retry_delay(job.attempt)
                job.transition(JobState.RETRYING)
                job.available_at = self._clock() + delay
                job.transition(JobState.QUEUED)
                try:
                    await self.backend.push(job, delay)
                except EnrichmentError:
                    # The unacked delivery is redelivered and rebuilt from its snapshot;
                    # forgetting the job lets a later enqueue push it again.
                    del self._jobs[job_id]
                    logger.error(f"[queue] could not schedule retry of {job_id}, leaving delivery unacked")
                    raise
                await self._ack_after_handoff(job_id)
                logger.warning(
                    f"[queue] {job_id} attempt {job.attempt}/{job.max_attempts} failed "
                    f"({reason}), retry in {delay:.1f}s"
                )
                return job

            job.transition(JobState.DEAD_LETTERED)
            await self._ack_after_handoff(job_id)
            entry = DeadLetter(
                job_id=job_id,
                record=job.record,
                correlation_id=job.correlation_id,
                reason_code=reason,
                error=message,
                attempts=len(job.history),
                history=[a.model_copy() for a in job.history],
                result=EnrichmentResult.failed(
                    job.record.record_id,
                    ReasonCode.for_error(reason),
                    detail=f"{reason}: {message}"[:500],
                    job_id=job_id,
                    correlation_id=job.correlation_id,
                ),
            )
            self._dead[job_id] = entry

        logger.error(f"[queue] {job_id} dead-lettered ({reason}) after {entry.attempts} attempt(s)")
        if self.on_dead_letter is not None:
            try:
                await self.on_dead_letter(entry)
            except Exception as e:
                logger.error(f"[queue] dead-letter hook failed for {job_id}: {e}")
        return job

    def dead_letters(self) -> List[DeadLetter]:
        return sorted(self._dead.values(), key=lambda d: d.dead_lettered_at)

    def dead_letter(self, job_id: str) -> Optional[DeadLetter]:
        return self._dead.get(job_id)

    async def requeue_dead_letter(self, job_id: str, entry: Optional[DeadLetter] = None) -> ResolutionJob:
        """Operator action: put a dead letter back with a fresh attempt budget.

        ``entry`` lets a process that never saw the job (e.g. the CLI reading
        dead letters from the record store) requeue it.
        """
        async with self._lock:
            dead = self._dead.pop(job_id, None) or entry
            if dead is None:
                raise LogicError(f"{job_id} is not dead-lettered", context={"job_id": job_id})

            job = self._jobs.get(job_id)
            if job is None:
                job = ResolutionJob(
                    job_id=job_id,
                    record=dead.record,
                    correlation_id=dead.correlation_id,
                    max_attempts=self.max_attempts,
                    state=JobState.DEAD_LETTERED,
                    history=list(dead.history),
                )
                self._jobs[job_id] = job

            job.transition(JobState.QUEUED)
            job.attempt = 0
            job.max_attempts = self.max_attempts
            job.available_at = self._clock()
            await self.backend.push(job, 0.0)

        logger.info(f"[queue] {job_id} requeued from dead letters")
        return job

    def next_due_in(self) -> Optional[float]:
        """Seconds until the earliest queued job is due (0 if overdue), None if none is queued."""
        due = [j.available_at for j in self._jobs.values() if j.state == JobState.QUEUED]
        if not due:
            return None
        return max(0.0, min(due) - self._clock())

    async def stats(self) -> QueueStats:
        counts = {state: 0 for state in JobState}
        for job in self._jobs.values():
            counts[job.state] += 1
        return QueueStats(
            queued=counts[JobState.QUEUED],
            active=counts[JobState.ACTIVE],
            retrying=counts[JobState.RETRYING],
            succeeded=counts[JobState.SUCCEEDED],
            dead_lettered=counts[JobState.DEAD_LETTERED],
            backend_depth=await self.backend.depth(),
        )
