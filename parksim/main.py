"""
parksim - Main Entry Point

Runs the parking services on an asyncio loop until interrupted.

Usage:
    python -m parksim.main --config config/local.yaml
    python -m parksim.main --clean --verbose
"""

import argparse
import asyncio
import signal

from parksim.app import ParkingApp
from parksim.core.scheduler import AsyncioScheduler
from parksim.infrastructure.config import init_config
from parksim.infrastructure.logging import bind_context, configure_logging, get_logger


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="parksim parking services")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to configuration file (default: PARKSIM_CONFIG or built-in defaults)",
    )
    parser.add_argument(
        "--clean",
        action="store_true",
        help="Use clean, minimal log format for easier terminal reading",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose/debug logging",
    )
    return parser.parse_args()


async def async_main() -> None:
    """Async entry point."""
    args = parse_args()
    config = init_config(args.config)

    log_format = "clean" if args.clean else config.observability.log_format
    log_level = "DEBUG" if args.verbose else config.observability.log_level
    configure_logging(log_level=log_level, log_format=log_format)

    logger = get_logger(__name__)
    bind_context(environment=config.environment)
    logger.info("parksim starting", config_file=args.config, customized=config.diff_from_defaults())

    app = ParkingApp.build(config, scheduler=AsyncioScheduler(asyncio.get_running_loop()))
    app.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C raises instead
            pass

    try:
        await stop.wait()
    finally:
        app.stop()
        logger.info("parksim stopped", event_counts=app.event_logger.get_counts())


def main() -> None:
    try:
        asyncio.run(async_main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
