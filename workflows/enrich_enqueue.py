#!/usr/bin/env python3
"""
Enrichment Enqueuer

Loads companies from a CSV export and enqueues one resolution job per record.
Job ids derive from the record, so re-running on the same file never creates
duplicate jobs, and records that already have a stored result are skipped.

Usage:
    python workflows/enrich_enqueue.py --input aziende.csv --correlation-id batch-2024-06
    python workflows/enrich_enqueue.py --input aziende.csv --limit 100
    python workflows/enrich_enqueue.py --status

    # No SQS: enqueue and resolve in this process
    python workflows/enrich_enqueue.py --input aziende.csv --local --workers 2
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import argparse
import asyncio
import signal
import uuid
from typing import Optional

from loguru import logger

from db.client import close_db
from lib.resolution.errors import ConfigurationError, EnrichmentError
from services.enrichment.config import EngineConfig, configure_logging
from services.enrichment.csv_input import read_records
from services.enrichment.service import EnrichmentService, start_service

service: Optional[EnrichmentService] = None


def handle_shutdown(signum, frame):
    logger.info("Shutdown requested, finishing in-flight jobs...")
    if service is not None:
        service.request_shutdown()


async def show_status(svc: EnrichmentService) -> None:
    status = await svc.status()
    q, s = status.queue, status.store
    logger.info("=" * 50)
    logger.info("ENRICHMENT STATUS")
    logger.info("=" * 50)
    logger.info(f"  Queue depth:     {q.backend_depth}")
    logger.info(f"  Queued:          {q.queued}")
    logger.info(f"  Active:          {q.active}")
    logger.info(f"  Succeeded:       {q.succeeded}")
    logger.info(f"  Dead-lettered:   {q.dead_lettered}")
    logger.info(f"  Companies:       {s.companies}")
    logger.info(f"  Results:         {s.results} ({s.found_any} with any field)")
    logger.info(f"  Duplicates:      {s.duplicates}")
    logger.info(f"  Stored dead:     {s.dead_letters}")
    if status.llm_calls:
        logger.info(f"  LLM:             {status.llm_calls} calls, ${status.llm_usd:.4f}")
    logger.info("=" * 50)


async def run(args) -> int:
    global service

    try:
        config = EngineConfig.from_env()
        if not args.local and not config.sqs_queue_url and not args.status:
            raise ConfigurationError("SQS_ENRICHMENT_QUEUE_URL is not set (use --local to run in-process)")
        service = await start_service(config, local=args.local)
    except EnrichmentError as e:
        logger.error(f"Startup failed: {e}")
        await close_db()
        return 1

    try:
        if args.status:
            await show_status(service)
            return 0

        records, skipped = read_records(Path(args.input), limit=args.limit)
        if not records:
            logger.warning(f"No usable rows in {args.input} ({skipped} skipped)")
            return 0

        correlation_id = args.correlation_id or f"batch-{uuid.uuid4().hex[:8]}"
        result = await service.enqueue_records(
            records, correlation_id=correlation_id, skip_existing=not args.force,
        )
        logger.success(
            f"Enqueued {result.enqueued}/{result.total} records "
            f"({result.skipped_existing} already enriched, {skipped} rows skipped) "
            f"correlation_id={correlation_id}"
        )

        if args.local:
            stats = await service.run_workers(workers=args.workers, drain=True)
            logger.success(
                f"Local run: {stats.succeeded} succeeded, {stats.dead_lettered} dead-lettered "
                f"[{stats.elapsed_seconds:.1f}s]"
            )
            await show_status(service)
        return 0
    except (EnrichmentError, OSError) as e:
        logger.error(f"Enqueue failed: {e}")
        return 1
    finally:
        await service.close()
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Enqueue companies for enrichment")
    parser.add_argument("--input", "-i", type=str, help="CSV file with companies")
    parser.add_argument("--correlation-id", type=str, help="Batch id attached to every job and log line")
    parser.add_argument("--limit", type=int, default=None, help="Max records to enqueue")
    parser.add_argument("--force", action="store_true", help="Enqueue records that already have a result")
    parser.add_argument("--status", action="store_true", help="Show queue/store status and exit")
    parser.add_argument("--local", action="store_true", help="Use the in-memory queue and resolve in this process")
    parser.add_argument("--workers", type=int, default=None, help="Workers for --local (default ENRICH_WORKERS)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args()

    if not args.status and not args.input:
        parser.error("--input is required unless --status is given")

    configure_logging(verbose=args.verbose)
    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
