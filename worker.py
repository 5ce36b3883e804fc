#!/usr/bin/env python
"""
Ingest Worker

Standalone process that, every poll:
1. Ingests the newest page of booking emails
2. Retries failed and ignored messages

Run with:
    python worker.py

Or with environment:
    WORKER_POLL_INTERVAL=60 python worker.py
"""

import logging
import signal
import sys
import time

from booking_ingest.config import settings
from booking_ingest.services.ingestion_service import run_ingest_cycle
from booking_ingest.utils.logging_config import setup_logging

logger = logging.getLogger("worker")

RUNNING = True


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    global RUNNING
    logger.info("Received shutdown signal, finishing current cycle...")
    RUNNING = False


def main():
    setup_logging(settings.log_level, json_format=settings.log_json, include_uvicorn=False)
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    if not settings.has_gmail_config:
        logger.warning("Gmail is not configured; only the reprocess sweep can make progress")

    poll_interval = settings.worker_poll_interval
    logger.info(f"Ingest worker started (interval: {poll_interval}s)")

    while RUNNING:
        try:
            statuses = run_ingest_cycle()
            if statuses:
                logger.info(f"Cycle: {statuses}")
        except Exception as e:
            logger.error(f"Worker cycle error: {e}")

        # Sleep in one second steps so signals are handled promptly
        for _ in range(poll_interval):
            if not RUNNING:
                break
            time.sleep(1)

    logger.info("Ingest worker stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
