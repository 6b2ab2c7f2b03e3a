"""
AlpacaDeck Command Line Entry Point

Usage:
    alpacadeck --dry-run                       # Validate config and exit
    alpacadeck --discover                      # List devices on the network
    alpacadeck 192.168.1.20:11111:camera:0     # Connect and log changes
    alpacadeck --config ./alpacadeck.yaml --log-level DEBUG ...

Entry Points:
    - CLI: `alpacadeck` command (via pyproject.toml)
    - Direct: `python -m alpacadeck.main`
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from typing import TYPE_CHECKING

from alpacadeck import __version__
from alpacadeck.config import AlpacaDeckConfig, load_config
from alpacadeck.events import DeviceEvent, EventType
from alpacadeck.exceptions import AlpacaDeckError, ConfigurationError
from alpacadeck.logging_config import get_logger, setup_logging
from alpacadeck.observatory import Observatory

if TYPE_CHECKING:
    from types import FrameType

__all__ = ["main", "async_main", "create_parser"]

logger = get_logger(__name__)


# =============================================================================
# Argument Parser
# =============================================================================


def create_parser() -> argparse.ArgumentParser:
    """Create command-line argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="alpacadeck",
        description="ASCOM Alpaca device monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=str,
        metavar="PATH",
        help="Path to configuration file (default: auto-discover)",
    )
    parser.add_argument(
        "-l",
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Set logging level (overrides config file)",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        metavar="PATH",
        help="Path to log file (default: stdout only)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration and exit",
    )
    parser.add_argument(
        "--discover",
        action="store_true",
        help="Run Alpaca discovery, print the devices found and exit",
    )
    parser.add_argument(
        "devices",
        nargs="*",
        metavar="HOST:PORT:TYPE:NUMBER",
        help="Devices to connect to and monitor",
    )
    return parser


# =============================================================================
# Signal Handling
# =============================================================================


class GracefulShutdown:
    """Sets an asyncio event on SIGINT/SIGTERM; a second signal exits.

    Handlers are registered on the event loop with ``add_signal_handler``.
    """

    def __init__(self) -> None:
        self._shutdown_requested = False
        self._shutdown_event: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_signals: list[int] = []
        self._original_handlers: dict[int, signal.Handlers] = {}

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    def install_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig, None)
                self._loop_signals.append(sig)
            except NotImplementedError:
                # Windows event loops
                self._original_handlers[sig] = signal.signal(sig, self._handle_signal)
        logger.debug("Signal handlers installed for graceful shutdown")

    def restore_handlers(self) -> None:
        if self._loop is not None:
            for sig in self._loop_signals:
                self._loop.remove_signal_handler(sig)
        self._loop_signals.clear()
        for sig, handler in self._original_handlers.items():
            signal.signal(sig, handler)
        self._original_handlers.clear()
        self._loop = None

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        signal_name = signal.Signals(signum).name
        if self._shutdown_requested:
            logger.warning(f"Received {signal_name} again - forcing immediate exit")
            sys.exit(1)

        logger.info(f"Received {signal_name} - shutting down...")
        self._shutdown_requested = True
        if self._shutdown_event is not None:
            if self._loop is not None:
                self._loop.call_soon_threadsafe(self._shutdown_event.set)
            else:
                self._shutdown_event.set()

    def get_shutdown_event(self) -> asyncio.Event:
        if self._shutdown_event is None:
            self._shutdown_event = asyncio.Event()
        return self._shutdown_event


# =============================================================================
# Main Entry Points
# =============================================================================


def log_event(event: DeviceEvent) -> None:
    if event.type == EventType.DEVICE_PROPERTY_CHANGED:
        logger.info(f"{event.device_id}: {event.data['property']} = {event.data['value']!r}")
    else:
        logger.info(f"{event.device_id or '-'}: {event.type.value} {event.data}")


async def async_main(
    args: argparse.Namespace,
    config: AlpacaDeckConfig,
    shutdown: GracefulShutdown | None = None,
    observatory: Observatory | None = None,
) -> int:
    """Discover or monitor devices until a shutdown signal.

    Returns:
        Exit code (0 for success)
    """
    observatory = observatory or Observatory(config)

    try:
        if args.discover:
            devices = await observatory.discovery.discover()
            for device in devices:
                print(f"{device.device_id}  {device.name}")
            print(f"{len(devices)} device(s) found")
            return 0

        if not args.devices:
            logger.error("No devices given; pass HOST:PORT:TYPE:NUMBER or --discover")
            return 2

        observatory.event_bus.add_listener(log_event)
        for device_id in args.devices:
            try:
                observatory.registry.add_device({"id": device_id, "type": device_id.split(":")[-2]})
                await observatory.registry.connect(device_id)
            except (AlpacaDeckError, ValueError, IndexError) as e:
                logger.error(f"Could not start {device_id}: {e}")
                return 1

        shutdown = shutdown or GracefulShutdown()
        stop_event = shutdown.get_shutdown_event()
        shutdown.install_handlers(asyncio.get_running_loop())
        try:
            logger.info("Monitoring devices. Press Ctrl+C to stop.")
            if shutdown.shutdown_requested:
                stop_event.set()
            await stop_event.wait()
        finally:
            shutdown.restore_handlers()
        for device_id in args.devices:
            try:
                await observatory.registry.disconnect(device_id)
            except AlpacaDeckError as e:
                logger.warning(f"Disconnect failed for {device_id}: {e}")
        return 0
    finally:
        await observatory.shutdown()


def main() -> int:
    """Main entry point.

    Returns:
        Exit code (0 for success, non-zero for errors)
    """
    parser = create_parser()
    args = parser.parse_args()

    setup_logging(log_level=args.log_level or "INFO", log_file=args.log_file)
    logger.debug(f"AlpacaDeck v{__version__} starting")

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    if args.log_level is None:
        setup_logging(log_level=config.log_level, log_file=args.log_file or config.log_file)

    if args.dry_run:
        logger.info("Configuration valid (dry run)")
        return 0

    return asyncio.run(async_main(args, config))


if __name__ == "__main__":
    sys.exit(main())
