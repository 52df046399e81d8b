#!/usr/bin/env python3
"""
Job queue worker.

Polls the shared job queue, runs each claimed job through its handler and
records the outcome. Several workers may poll the same database.
"""

import os
import sys
import time
import argparse
import logging
from typing import Optional

from dotenv import load_dotenv

from storyfactory.config import FactorySettings
from storyfactory.jobs import JobContext, run_job
from storyfactory.services.job_queue import JobQueue
from storyfactory.utils.repository import create_content_store

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Sweep for jobs orphaned by crashed workers every N polls
REAP_EVERY_POLLS = 30


def work(ctx: JobContext, poll_interval: float, burst: bool = False, max_jobs: Optional[int] = None) -> int:
    """
    Process jobs until interrupted.

    Args:
        ctx: Handler dependencies (store, queue, settings)
        poll_interval: Seconds to sleep when the queue is empty
        burst: Exit once no job is due
        max_jobs: Exit after this many jobs

    Returns:
        Number of jobs processed
    """
    processed = 0
    polls = 0
    ctx.queue.reap_expired_jobs()
    while max_jobs is None or processed < max_jobs:
        job = ctx.queue.get_next_job()
        if job is None:
            if burst:
                break
            polls += 1
            if polls % REAP_EVERY_POLLS == 0:
                ctx.queue.reap_expired_jobs()
            time.sleep(poll_interval)
            continue
        run_job(job, ctx)
        processed += 1
    return processed


def main() -> int:
    """
    Main entry point for the worker script.

    Returns:
        int: The exit code for the script (0 for success, 1 for error).
    """
    load_dotenv()
    parser = argparse.ArgumentParser(description='Job queue worker for the serial fiction factory')
    parser.add_argument(
        '--burst',
        action='store_true',
        help='Run in burst mode (exit after processing all due jobs)'
    )
    parser.add_argument(
        '--max-jobs',
        type=int,
        default=None,
        help='Exit after processing this many jobs'
    )
    parser.add_argument(
        '--db',
        type=str,
        default=None,
        help='SQLite database path (default: STORYFACTORY_DB_PATH)'
    )
    args = parser.parse_args()

    try:
        settings = FactorySettings.from_env()
    except ValueError as e:
        logger.critical(f"Invalid configuration: {e}")
        return 1
    if args.db:
        settings.db_path = args.db

    store = create_content_store(settings.db_path)
    queue = JobQueue(store)
    ctx = JobContext(store=store, queue=queue, settings=settings)

    logger.info(f"Starting worker on {settings.db_path} (burst={args.burst})")
    try:
        processed = work(ctx, settings.worker_poll_interval, burst=args.burst, max_jobs=args.max_jobs)
        logger.info(f"Worker exiting after {processed} job(s)")
        return 0
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")
        return 0
    except Exception as e:
        logger.error(f"An unexpected worker error occurred: {e}", exc_info=True)
        return 1
    finally:
        queue.shutdown()


if __name__ == '__main__':
    sys.exit(main())
