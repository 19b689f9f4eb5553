"""
FlexiCart Driver - Production Entry Point.

Runs the FlexicartDriver until interrupted, logging status, inventory and
operation events.

Usage:
    flexicart [--port /dev/ttyUSB0] [--baudrate 38400] [--capacity 360] [--debug]

Features:
    - Periodic status and inventory refresh
    - Optional inventory persistence in Redis
    - Optional full barcode scan at start-up
    - Graceful shutdown on Ctrl+C
    - Debug mode with HEX frame logging
"""

import argparse
import asyncio
import signal
import sys
from dataclasses import replace
from typing import Any, Optional

from redis.asyncio import Redis

from .constants import ChecksumScheme
from .driver import FlexicartDriver
from .events import EventType
from .exceptions import CartConnectionError
from .loggers import get_logger
from .repository import InventoryRepository
from .settings import Settings, get_settings


def build_settings(args: argparse.Namespace, base: Optional[Settings] = None) -> Settings:
    """Apply command line overrides to the settings."""
    settings = base or get_settings()
    channel = replace(
        settings.channel,
        port=args.port or settings.channel.port,
        baudrate=args.baudrate or settings.channel.baudrate,
        parity=args.parity or settings.channel.parity,
    )
    protocol = replace(
        settings.protocol,
        unit=args.unit if args.unit is not None else settings.protocol.unit,
        checksum=ChecksumScheme(args.checksum) if args.checksum else settings.protocol.checksum,
    )
    inventory = replace(
        settings.inventory,
        cart_id=args.cart_id or settings.inventory.cart_id,
        capacity=args.capacity or settings.inventory.capacity,
    )
    redis = replace(
        settings.redis,
        enabled=args.redis or settings.redis.enabled,
        host=args.redis_host or settings.redis.host,
        port=args.redis_port or settings.redis.port,
    )
    logging_settings = replace(
        settings.logging,
        log_file=args.log_file or settings.logging.log_file,
        level="DEBUG" if args.debug else settings.logging.level,
        loki_url=args.loki_url or settings.logging.loki_url,
    )
    scan = replace(
        settings.scan,
        auto_scan=args.auto_scan or settings.scan.auto_scan,
    )
    return replace(
        settings,
        channel=channel,
        protocol=protocol,
        scan=scan,
        inventory=inventory,
        redis=redis,
        logging=logging_settings,
    )


async def main(settings: Settings, scan_on_start: bool = False) -> int:
    """
    Main entry point.

    Returns:
        Exit code (0 for success, 1 for error).
    """
    log = get_logger(
        "flexicart",
        app="flexicart",
        log_file=settings.logging.log_file,
        level=settings.logging.level,
        loki_url=settings.logging.loki_url,
    )

    redis: Optional[Redis] = None
    repository: Optional[InventoryRepository] = None
    if settings.redis.enabled:
        redis = Redis(
            host=settings.redis.host,
            port=settings.redis.port,
            decode_responses=settings.redis.decode_responses,
        )
        repository = InventoryRepository(redis, settings.inventory.cart_id)

    driver = FlexicartDriver(settings, repository=repository)

    def on_operation(event: dict[str, Any]) -> None:
        operation = event["operation"]
        log.info(
            f"Operation {event['operation_id']} ({operation['type']}): "
            f"{operation['status']}"
        )

    def on_inventory(event: dict[str, Any]) -> None:
        stats = event["stats"]
        log.info(
            f"Inventory v{event['version']}: {stats['occupied']}/{stats['total']} "
            f"bins occupied ({stats['occupancy_rate']:.1f}%)"
        )

    def on_status(event: dict[str, Any]) -> None:
        log.debug(f"State: {event['status']['state']}")

    driver.add_handler(EventType.OPERATION_COMPLETE, on_operation)
    driver.add_handler(EventType.INVENTORY_UPDATE, on_inventory)
    driver.add_handler(EventType.STATUS_UPDATE, on_status)

    try:
        await driver.connect()
    except CartConnectionError as e:
        log.error(f"Could not connect: {e.message}")
        if redis is not None:
            await redis.aclose()
        return 1

    log.info(f"Connected, state: {driver.system_status.operational_state().value}")

    if scan_on_start:
        results = await driver.scan_all()
        found = sum(1 for r in results if r.occupied)
        log.info(f"Start-up scan: {found} cassettes in {len(results)} bins")

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await shutdown_event.wait()
    except asyncio.CancelledError:
        pass
    finally:
        log.info("Stopping...")
        await driver.disconnect()
        if redis is not None:
            await redis.aclose()
        log.info("Disconnected")

    return 0


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="FlexiCart cassette cart driver",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--port", "-p", type=str, default=None, help="Serial port path")
    parser.add_argument("--baudrate", "-b", type=int, default=None, help="Serial baudrate")
    parser.add_argument("--parity", choices=["N", "E", "O"], default=None, help="Serial parity")
    parser.add_argument("--unit", type=lambda v: int(v, 0), default=None, help="Unit address (UA2)")
    parser.add_argument(
        "--checksum",
        choices=[scheme.value for scheme in ChecksumScheme],
        default=None,
        help="Checksum scheme",
    )
    parser.add_argument("--cart-id", type=str, default=None, help="Cart identifier")
    parser.add_argument("--capacity", type=int, default=None, help="Number of bins")
    parser.add_argument("--redis", action="store_true", help="Persist inventory in Redis")
    parser.add_argument("--redis-host", type=str, default=None, help="Redis host")
    parser.add_argument("--redis-port", type=int, default=None, help="Redis port")
    parser.add_argument("--log-file", type=str, default=None, help="Log file path")
    parser.add_argument("--loki-url", type=str, default=None, help="Loki push endpoint")
    parser.add_argument("--scan", action="store_true", help="Scan all bins after connecting")
    parser.add_argument(
        "--auto-scan",
        action="store_true",
        help="Scan newly detected cassettes on every inventory change",
    )
    parser.add_argument(
        "--debug", "-d",
        action="store_true",
        help="Enable debug logging (shows HEX dump of all TX/RX frames)",
    )
    return parser.parse_args(argv)


def run() -> None:
    """Console script entry point."""
    args = parse_args()
    settings = build_settings(args)
    try:
        sys.exit(asyncio.run(main(settings, scan_on_start=args.scan)))
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
