"""
Entry point for running the payment sync worker as a module.
Usage: python -m app.workers
"""
import asyncio

import structlog

from app.utils.logger import configure_logging
from app.workers.sync_worker import run_worker

if __name__ == "__main__":
    configure_logging()
    structlog.get_logger().info("Starting payment sync worker")
    asyncio.run(run_worker())
