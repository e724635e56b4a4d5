#!/usr/bin/env python3
"""
Enrichment Consumer

Pulls resolution jobs from SQS and runs them through the worker pool.
Each job resolves website, tax id, revenue, employees and PEC for one company;
results, the job log and dead letters go to the record store.

Usage:
    python workflows/enrich_consumer.py --workers 4
    python workflows/enrich_consumer.py --drain          # exit once the queue is empty
    python workflows/enrich_consumer.py --status
    python workflows/enrich_consumer.py --dead-letters
    python workflows/enrich_consumer.py --requeue enrich-3f2a...
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import argparse
import asyncio
import signal
from typing import Optional

from loguru import logger

from db.client import close_db
from lib.resolution.errors import ConfigurationError, EnrichmentError
from services.enrichment.config import EngineConfig, configure_logging
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
    logger.info("ENRICHMENT CONSUMER STATUS")
    logger.info("=" * 50)
    logger.info(f"  Queue depth:     {q.backend_depth}")
    logger.info(f"  Companies:       {s.companies}")
    logger.info(f"  Results:         {s.results} ({s.found_any} with any field)")
    logger.info(f"  Duplicates:      {s.duplicates}")
    logger.info(f"  Dead letters:    {s.dead_letters}")
    logger.info("=" * 50)


async def show_dead_letters(svc: EnrichmentService, limit: int) -> None:
    entries = await svc.dead_letters(limit=limit)
    if not entries:
        logger.info("No dead letters")
        return
    logger.info(f"{len(entries)} dead letter(s):")
    for d in entries:
        logger.info(
            f"  {d.job_id}  {d.record.name[:40]:<40}  {d.reason_code:<20} "
            f"attempts={d.attempts}  {d.dead_lettered_at:%Y-%m-%d %H:%M}"
        )
        if d.error:
            logger.info(f"      {d.error[:160]}")


async def run(args) -> int:
    global service

    try:
        config = EngineConfig.from_env()
        if not config.sqs_queue_url:
            raise ConfigurationError("SQS_ENRICHMENT_QUEUE_URL is not set")
        service = await start_service(config)
    except EnrichmentError as e:
        logger.error(f"Startup failed: {e}")
        await close_db()
        return 1

    try:
        if args.status:
            await show_status(service)
            return 0
        if args.dead_letters:
            await show_dead_letters(service, args.limit)
            return 0
        if args.requeue:
            job = await service.requeue_dead_letter(args.requeue)
            logger.success(f"Requeued {job.job_id} ({job.record.name})")
            return 0

        logger.info(f"Starting enrichment consumer: {config.describe()}")
        stats = await service.run_workers(workers=args.workers, drain=args.drain)
        logger.success(
            f"Consumer stopped. {stats.processed} processed, {stats.succeeded} succeeded, "
            f"{stats.retried} retried, {stats.dead_lettered} dead-lettered [{stats.elapsed_seconds:.1f}s]"
        )
        return 0
    except EnrichmentError as e:
        logger.error(f"Consumer failed: {e}")
        return 1
    finally:
        await service.close()
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Enrichment Consumer")
    parser.add_argument("--workers", type=int, default=None, help="Concurrent workers (default ENRICH_WORKERS)")
    parser.add_argument("--drain", action="store_true", help="Exit once the queue stays empty")
    parser.add_argument("--status", action="store_true", help="Show queue/store status and exit")
    parser.add_argument("--dead-letters", action="store_true", help="List dead-lettered jobs and exit")
    parser.add_argument("--limit", type=int, default=100, help="Max dead letters to list")
    parser.add_argument("--requeue", type=str, metavar="JOB_ID", help="Requeue a dead-lettered job and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args()

    configure_logging(verbose=args.verbose)
    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
