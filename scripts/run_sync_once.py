"""
Single-pass sync run for cron jobs.
Enqueues the webhook and every catalog product, drains the queue, then exits.

Reuses SyncWorker.process_sync_queue() so the sync logic lives in one place.
"""

import asyncio
import sys

import structlog

from app.utils.logger import configure_logging
from app.workers.sync_worker import SyncWorker

configure_logging()
logger = structlog.get_logger()

MAX_BATCHES = 20


async def main() -> None:
    worker = SyncWorker()
    total_processed = 0
    batch_count = 0

    try:
        logger.info("Sync run: starting queue drain")

        await worker.catch_up()

        while batch_count < MAX_BATCHES:
            processed = await worker.process_sync_queue()

            if not processed:
                logger.info(
                    "No more due jobs in queue",
                    total_processed=total_processed,
                    batches_run=batch_count,
                    retries_pending=len(worker.queue),
                )
                break

            logger.info("Processed batch", batch_number=batch_count + 1, jobs_in_batch=processed)
            total_processed += processed
            batch_count += 1

        if batch_count >= MAX_BATCHES:
            logger.warning(
                "Hit max batch limit, queue may still have jobs",
                max_batches=MAX_BATCHES,
                total_processed=total_processed,
            )

        logger.info("Sync run: done", total_processed=total_processed, batches_run=batch_count)

    except Exception as e:
        logger.error("Sync run failed", error=str(e), total_processed=total_processed)
        sys.exit(1)

    finally:
        await worker.stop()


if __name__ == "__main__":
    asyncio.run(main())
