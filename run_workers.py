"""
Worker process entrypoint.

    python run_workers.py

Connects to the database and object store, requeues jobs left in the failed
set by a previous run, then drains the media, notification and order queues
and dispatches the outbox until SIGINT/SIGTERM.
"""
from __future__ import annotations

import asyncio
import logging
import signal
import sys

from logging_config import configure_logging
from services import build_services
from settings import Settings

logger = logging.getLogger("run_workers")


async def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level, settings.log_file)
    if not settings.use_mongo:
        logger.warning("DATABASE_URL/DATABASE_NAME not set: workers use a private in-process store "
                       "and will not see jobs queued by the API")

    services = build_services(settings)
    logger.info("Connecting to database and object store for workers...")
    services.prepare()
    services.recover_failed_jobs()

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    logger.info("All workers initialized and listening for new jobs")
    await services.run_workers(shutdown)
    logger.info("Workers shut down")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except Exception:
        logging.getLogger("run_workers").exception("Worker startup failed")
        sys.exit(1)
