"""taskmesh node entry point."""

import asyncio
import importlib
import logging
import signal

from taskmesh.config import settings
from taskmesh.scheduler import Scheduler

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=settings.log_level,
)
logger = logging.getLogger(__name__)


def load_handlers(module_name: str) -> tuple[dict, dict]:
    """Import *module_name* and return its ``HANDLERS`` and ``RECURRING`` mappings."""
    if not module_name:
        return {}, {}
    module = importlib.import_module(module_name)
    handlers = dict(getattr(module, "HANDLERS", {}))
    recurring = dict(getattr(module, "RECURRING", {}))
    logger.info(
        "Loaded %d handler(s) and %d recurring event(s) from %s",
        len(handlers),
        len(recurring),
        module_name,
    )
    return handlers, recurring


async def run_node() -> None:
    """Run a scheduler node until SIGINT or SIGTERM."""
    handlers, recurring = load_handlers(settings.handlers_module)
    if not handlers:
        logger.warning("HANDLERS_MODULE provides no handlers; only the reaper will run")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    scheduler = Scheduler()
    await scheduler.init(handlers, recurring)
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down...")
        await scheduler.shutdown()


def main() -> None:
    """Start a node in the configured role."""
    logger.info("Starting taskmesh node (role=%s)...", settings.role or "all")
    asyncio.run(run_node())


if __name__ == "__main__":
    main()
