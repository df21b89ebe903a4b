import asyncio
import logging
import platform
import signal
import sys

from apex_sniper.config import load_config
from apex_sniper.core.app_context import AppContext
from apex_sniper.core.scheduler import PeriodicTask
from apex_sniper.exceptions import ConfigurationException
from apex_sniper.logger import setup_logging

logger = logging.getLogger(__name__)


async def main():
    try:
        config = load_config()
    except ConfigurationException as e:
        setup_logging(log_dir=None)
        logger.critical(f"Configuration error: {e}")
        return 1

    setup_logging(config.log_level, config.log_dir)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def handle_shutdown(sig):
        logger.info(f"[SHUTDOWN] Received signal {sig.name}, finishing current work...")
        shutdown_event.set()

    # add_signal_handler is not supported on Windows
    if platform.system() != "Windows":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: handle_shutdown(s))

    ctx = await AppContext.create(config)

    monitor_task = PeriodicTask("Position monitor", config.monitor_interval_seconds, ctx.monitor.tick)
    stats_task = PeriodicTask("Stats aggregator", config.stats_interval_seconds, ctx.stats.run_once)

    tasks = [
        monitor_task.start(shutdown_event),
        stats_task.start(shutdown_event),
        asyncio.create_task(ctx.trading.run_signal_dispatcher(shutdown_event), name="Signal dispatcher"),
    ]
    logger.info("Sniper engine running")

    try:
        await shutdown_event.wait()
        logger.info("Initiating graceful shutdown...")
        # In-flight trades are never cancelled; wait for the current ticks
        await asyncio.gather(*tasks, return_exceptions=True)
    finally:
        await ctx.close()
        logger.info("Shutdown complete")
    return 0


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("Engine stopped by user.")
