"""
dbsage worker
=============

Runs the workflow host in the foreground: resumes runs a previous process
left unfinished, then starts a sync for every connection whose polling
interval has elapsed, once a minute, until interrupted.

Usage:
    python -m dbsage [--interval SECONDS]
"""

import argparse
import asyncio
import logging

from dbsage import __version__
from dbsage.config import settings
from dbsage.core.database import init_db
from dbsage.core.structured_logging import setup_logging
from dbsage.services.workflow_host import get_workflow_host

logger = logging.getLogger(__name__)


async def run_worker(interval_s: float) -> None:
    logger.info("Starting dbsage worker v%s", __version__)
    init_db()

    host = get_workflow_host()
    await host.resume_incomplete()
    scheduler = host.start_scheduler(interval_s)
    try:
        await scheduler
    finally:
        logger.info("Shutting down dbsage worker")
        await host.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(description="dbsage sync and suggestion worker")
    parser.add_argument("--interval", type=float, default=60.0, help="Seconds between scheduling passes")
    args = parser.parse_args()

    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level.upper())
    try:
        asyncio.run(run_worker(args.interval))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
