from __future__ import annotations

import asyncio
import logging
import signal

from parcel.config import load_settings
from parcel.models import create_db_engine, create_session_factory
from parcel.workers import start_worker

logger = logging.getLogger("parcel.worker")


async def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    settings = load_settings()
    settings.ensure_directories()
    engine = create_db_engine(settings.database_url)
    SessionLocal = create_session_factory(engine)

    worker, task = start_worker(settings, SessionLocal)
    await worker.wait_ready()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except NotImplementedError:
            logger.debug("Signal handlers unavailable on this platform")
    try:
        await task
        await worker.wait_idle()
    finally:
        engine.dispose()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
