"""Record store for company records, results, job log and dead letters.

MemoryRecordStore serves tests and single-process runs; PostgresRecordStore
persists through the aiosql queries in db/queries/enrichment.sql.
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, runtime_checkable

import asyncpg
from pydantic import BaseModel, Field

from db.client import get_conn, get_transaction, queries
from lib.resolution.errors import NetworkError
from lib.resolution.models import CompanyRecord, EnrichmentResult
from services.enrichment.job_queue import DeadLetter

# Driver and transport failures; all treated as transient
DB_ERRORS = (asyncpg.PostgresError, asyncpg.exceptions.InterfaceError, OSError)


class JobLogEntry(BaseModel):
    job_id: str
    status: str
    duration_ms: Optional[int] = None
    reason_code: Optional[str] = None
    logged_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class StoreStats(BaseModel):
    companies: int = 0
    results: int = 0
    found_any: int = 0
    duplicates: int = 0
    dead_letters: int = 0


@runtime_checkable
class RecordStore(Protocol):
    """Single writer path for everything the engine persists."""

    async def upsert(self, record: CompanyRecord) -> None:
        ...

    async def get(self, record_id: str) -> Optional[CompanyRecord]:
        ...

    async def save_result(self, result: EnrichmentResult) -> None:
        ...

    async def get_result(self, record_id: str) -> Optional[EnrichmentResult]:
        ...

    async def append_job_log(
        self,
        job_id: str,
        status: str,
        duration_ms: Optional[int] = None,
        reason_code: Optional[str] = None,
    ) -> None:
        ...

    async def save_dead_letter(self, entry: DeadLetter) -> None:
        ...

    async def list_dead_letters(self, limit: int = 100) -> List[DeadLetter]:
        ...

    async def delete_dead_letter(self, job_id: str) -> None:
        ...

    async def stats(self) -> StoreStats:
        ...


class MemoryRecordStore(RecordStore):
    """In-process store. Copies on the way in and out."""

    def __init__(self):
        self._records: Dict[str, CompanyRecord] = {}
        self._results: Dict[str, EnrichmentResult] = {}
        self._dead: Dict[str, DeadLetter] = {}
        self.job_log: List[JobLogEntry] = []
        self._lock = asyncio.Lock()

    async def upsert(self, record: CompanyRecord) -> None:
        async with self._lock:
            self._records[record.record_id] = record

    async def get(self, record_id: str) -> Optional[CompanyRecord]:
        return self._records.get(record_id)

    async def save_result(self, result: EnrichmentResult) -> None:
        async with self._lock:
            self._results[result.record_id] = result.model_copy(deep=True)

    async def get_result(self, record_id: str) -> Optional[EnrichmentResult]:
        result = self._results.get(record_id)
        return result.model_copy(deep=True) if result else None

    async def append_job_log(
        self,
        job_id: str,
        status: str,
        duration_ms: Optional[int] = None,
        reason_code: Optional[str] = None,
    ) -> None:
        async with self._lock:
            self.job_log.append(JobLogEntry(
                job_id=job_id, status=status, duration_ms=duration_ms, reason_code=reason_code,
            ))

    async def save_dead_letter(self, entry: DeadLetter) -> None:
        async with self._lock:
            self._dead[entry.job_id] = entry.model_copy(deep=True)

    async def list_dead_letters(self, limit: int = 100) -> List[DeadLetter]:
        entries = sorted(self._dead.values(), key=lambda d: d.dead_lettered_at)
        return [e.model_copy(deep=True) for e in entries[:limit]]

    async def delete_dead_letter(self, job_id: str) -> None:
        async with self._lock:
            self._dead.pop(job_id, None)

    async def stats(self) -> StoreStats:
        results = list(self._results.values())
        return StoreStats(
            companies=len(self._records),
            results=len(results),
            found_any=sum(1 for r in results if r.found_any),
            duplicates=sum(1 for r in results if r.duplicate_of),
            dead_letters=len(self._dead),
        )


class PostgresRecordStore(RecordStore):
    """asyncpg + aiosql store. Driver errors surface as NetworkError (retryable)."""

    async def upsert(self, record: CompanyRecord) -> None:
        try:
            async with get_conn() as conn:
                await queries.upsert_company(
                    conn,
                    record_id=record.record_id,
                    name=record.name,
                    address=record.address,
                    city=record.city,
                    province=record.province,
                    phone=record.phone,
                    tax_id=record.tax_id,
                    website=record.website,
                    category=record.category,
                )
        except DB_ERRORS as e:
            raise NetworkError(f"upsert_company failed: {e}", context={"target": "postgres"}) from e

    async def get(self, record_id: str) -> Optional[CompanyRecord]:
        try:
            async with get_conn() as conn:
                row = await queries.get_company(conn, record_id=record_id)
        except DB_ERRORS as e:
            raise NetworkError(f"get_company failed: {e}", context={"target": "postgres"}) from e
        if not row:
            return None
        data = dict(row)
        data.pop("record_id", None)
        return CompanyRecord(**data)

    async def save_result(self, result: EnrichmentResult) -> None:
        try:
            async with get_transaction() as conn:
                await queries.upsert_enrichment_result(
                    conn,
                    record_id=result.record_id,
                    job_id=result.job_id,
                    correlation_id=result.correlation_id,
                    duplicate_of=result.duplicate_of,
                    found_any=result.found_any,
                    payload=result.model_dump_json(),
                    completed_at=result.completed_at,
                )
        except DB_ERRORS as e:
            raise NetworkError(f"save_result failed: {e}", context={"target": "postgres"}) from e

    async def get_result(self, record_id: str) -> Optional[EnrichmentResult]:
        try:
            async with get_conn() as conn:
                row = await queries.get_enrichment_result(conn, record_id=record_id)
        except DB_ERRORS as e:
            raise NetworkError(f"get_result failed: {e}", context={"target": "postgres"}) from e
        if not row:
            return None
        return EnrichmentResult.model_validate_json(row["payload"])

    async def append_job_log(
        self,
        job_id: str,
        status: str,
        duration_ms: Optional[int] = None,
        reason_code: Optional[str] = None,
    ) -> None:
        try:
            async with get_conn() as conn:
                await queries.insert_job_log(
                    conn, job_id=job_id, status=status, duration_ms=duration_ms, reason_code=reason_code,
                )
        except DB_ERRORS as e:
            raise NetworkError(f"insert_job_log failed: {e}", context={"target": "postgres"}) from e

    async def save_dead_letter(self, entry: DeadLetter) -> None:
        try:
            async with get_transaction() as conn:
                await queries.upsert_dead_letter(
                    conn,
                    job_id=entry.job_id,
                    reason_code=entry.reason_code,
                    payload=entry.model_dump_json(),
                    dead_lettered_at=entry.dead_lettered_at,
                )
        except DB_ERRORS as e:
            raise NetworkError(f"save_dead_letter failed: {e}", context={"target": "postgres"}) from e

    async def list_dead_letters(self, limit: int = 100) -> List[DeadLetter]:
        try:
            async with get_conn() as conn:
                rows = await queries.get_dead_letters(conn, limit=limit)
        except DB_ERRORS as e:
            raise NetworkError(f"get_dead_letters failed: {e}", context={"target": "postgres"}) from e
        return [DeadLetter.model_validate_json(r["payload"]) for r in rows]

    async def delete_dead_letter(self, job_id: str) -> None:
        try:
            async with get_conn() as conn:
                await queries.delete_dead_letter(conn, job_id=job_id)
        except DB_ERRORS as e:
            raise NetworkError(f"delete_dead_letter failed: {e}", context={"target": "postgres"}) from e

    async def stats(self) -> StoreStats:
        try:
            async with get_conn() as conn:
                row = await queries.get_enrichment_stats(conn)
        except DB_ERRORS as e:
            raise NetworkError(f"get_enrichment_stats failed: {e}", context={"target": "postgres"}) from e
        return StoreStats(**dict(row)) if row else StoreStats()
