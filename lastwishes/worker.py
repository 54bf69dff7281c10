"""
Worker loop that retries migrations whose patron record write failed.

Run with ``python -m lastwishes.worker``.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from lastwishes.config import get_settings
from lastwishes.db import DbClient
from lastwishes.dependencies import get_db_client, get_queue_client, get_storage_client
from lastwishes.migration import MigrationOutcome, migrate_patron_data
from lastwishes.queue import JobQueue
from lastwishes.storage import StorageClient

logger = logging.getLogger(__name__)


def process_next(
    *,
    db: Optional[DbClient] = None,
    storage: Optional[StorageClient] = None,
    queue: Optional[JobQueue] = None,
    block: bool = True,
    timeout: Optional[int] = None,
) -> bool:
    """
    Fetch and run one retry job. Returns True if a job was processed.

    A failing attempt re-enqueues itself (via the migration routine) until the
    configured attempt limit is reached.
    """
    settings = get_settings()
    db = db or get_db_client()
    storage = storage or get_storage_client()
    queue = queue or get_queue_client()

    job = queue.dequeue(block=block, timeout=timeout)
    if job is None:
        return False

    logger.info("Retrying migration for user_id=%s (attempt %d)", job.user_id, job.attempt)
    result = migrate_patron_data(
        job.user_id,
        job.email,
        db=db,
        storage=storage,
        queue=queue,
        attempt=job.attempt,
        max_attempts=settings.migration_max_attempts,
        max_workers=settings.migration_max_workers,
    )
    if result.outcome == MigrationOutcome.NOTHING_TO_MIGRATE:
        logger.info("No pending pledge for user_id=%s; retry dropped", job.user_id)
    return True


def run_loop(poll_interval_seconds: float = 2.0) -> None:
    """
    Simple loop that blocks on the queue. Intended to be run under systemd/supervisor.
    """
    db = get_db_client()
    storage = get_storage_client()
    queue = get_queue_client()
    while True:
        processed = process_next(
            db=db,
            storage=storage,
            queue=queue,
            block=True,
            timeout=int(poll_interval_seconds),
        )
        if not processed:
            time.sleep(poll_interval_seconds)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_loop()
