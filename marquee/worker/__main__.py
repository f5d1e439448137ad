"""Entry point for running the engine headless: scheduler and purger, no HTTP port."""
from __future__ import annotations

import asyncio
import logging
import signal

from marquee.engine.settings import load_settings
from marquee.engine.state import EngineRuntime

logger = logging.getLogger(__name__)


async def run_worker() -> None:
    """Run the engine until SIGINT or SIGTERM."""

    runtime = EngineRuntime(load_settings())
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # pragma: no cover - Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))

    await runtime.start()
    logger.info("Worker running with jobs: %s", ", ".join(runtime.scheduler.job_names))
    try:
        await stop.wait()
    finally:
        logger.info("Worker stopping")
        await runtime.stop()


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_worker())


if __name__ == "__main__":  # pragma: no cover - manual entrypoint
    main()
