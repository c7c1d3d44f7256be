#!/usr/bin/env python3
"""
Guest access expiry daemon.

Runs the expired-guest cleanup on a fixed interval until stopped.
"""

import argparse
import asyncio
import logging
import logging.handlers
import signal
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from . import __version__
from .config import Config, load_config
from .db import Database
from .service import GuestProvisioningService

logger = logging.getLogger(__name__)
console = Console()


class ExpiryDaemon:
    """Periodically expires guests whose checkout date has passed."""

    def __init__(self, config: Config):
        self.config = config
        self.store: Optional[Database] = None
        self.service: Optional[GuestProvisioningService] = None
        self._stop_event = asyncio.Event()

    async def setup(self) -> None:
        """Initialize all components."""
        logger.info("Initializing expiry daemon...")

        self.store = Database(self.config.logging.db)
        await self.store.connect(one_active_per_room=self.config.guests.one_active_per_room)

        self.service = GuestProvisioningService(self.config, self.store)
        if self.service.notifier.enabled:
            logger.info("Webhook notifications enabled")

    async def run(self) -> None:
        """Run cleanup sweeps until stopped."""
        interval = self.config.cleanup.interval
        if not self.config.cleanup.enabled:
            logger.warning("Cleanup disabled in configuration; nothing to do")
            return

        logger.info(f"Expiry daemon running - router {self.config.device.host}, every {interval}s")
        console.print(f"[green]Expiry daemon active for {self.config.device.host}[/green]")

        while not self._stop_event.is_set():
            await self.sweep()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def sweep(self) -> None:
        """One cleanup pass; a failed pass is logged and retried next interval."""
        try:
            report = await self.service.cleanup_expired()
        except Exception as e:
            logger.exception(f"Cleanup sweep failed: {e}")
            return
        if report.attempted:
            logger.info(f"Sweep finished: {report.removed} removed, {report.failed} failed")
        else:
            logger.debug("Sweep finished: nothing expired")

    def request_stop(self) -> None:
        self._stop_event.set()

    async def stop(self) -> None:
        """Stop the daemon."""
        self._stop_event.set()
        if self.store:
            await self.store.close()
            self.store = None
        logger.info("Expiry daemon stopped")


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure logging."""
    handlers = [
        RichHandler(
            console=console,
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
        )
    ]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=50 * 1024 * 1024,  # 50 MB per file
            backupCount=3,
        ))

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(message)s",
        handlers=handlers,
    )


async def async_main(config_path: str, env_file: str = ".env", once: bool = False) -> None:
    """Async main entry point."""
    # Load configuration
    try:
        config = load_config(config_path, env_file)
    except Exception as e:
        console.print(f"[red]Failed to load configuration: {e}[/red]")
        sys.exit(1)

    # Setup logging
    setup_logging(config.logging.level, config.logging.file)

    daemon = ExpiryDaemon(config)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    def shutdown_handler():
        logger.info("Shutdown signal received")
        daemon.request_stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_handler)

    try:
        await daemon.setup()
        if once:
            await daemon.sweep()
        else:
            await daemon.run()
    finally:
        await daemon.stop()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Guest access expiry daemon",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Path to environment file (default: .env)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cleanup sweep and exit",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    args = parser.parse_args()

    console.print("[bold blue]Guest Access Expiry Daemon[/bold blue]")
    console.print()

    asyncio.run(async_main(args.config, args.env_file, args.once))


if __name__ == "__main__":
    main()
