#!/usr/bin/env python3
"""
Front-desk CLI for guest Wi-Fi access.

Usage:
    python -m guestnet.cli generate 101 "Jane Doe" --checkout 2026-10-21
    python -m guestnet.cli generate 305 "A. Smith" --checkin 2026-10-19 --checkout 2026-10-25 --profile hotel-vip
    python -m guestnet.cli show 101
    python -m guestnet.cli remove 101
    python -m guestnet.cli guests
    python -m guestnet.cli cleanup
    python -m guestnet.cli sync
    python -m guestnet.cli stats
    python -m guestnet.cli test
"""

import argparse
import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import date
from typing import AsyncIterator

from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from . import __version__
from .config import load_config
from .db import Database
from .errors import GuestNetError
from .service import GuestProvisioningService

console = Console()


def setup_logging(verbose: bool = False):
    """Setup logging with rich handler."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


@asynccontextmanager
async def open_service(args) -> AsyncIterator[GuestProvisioningService]:
    """Load configuration, open the store and build the service."""
    config = load_config(args.config, args.env_file)
    store = Database(args.db or config.logging.db)
    await store.connect(one_active_per_room=config.guests.one_active_per_room)
    try:
        yield GuestProvisioningService(config, store)
    finally:
        await store.close()


def _format_bytes(value: int) -> str:
    size = float(value)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.1f} {unit}" if unit != "B" else f"{int(size)} B"
        size /= 1024
    return f"{size:.1f} TB"


async def cmd_generate(args):
    """Issue credentials for a room."""
    checkin = args.checkin or date.today().isoformat()

    async with open_service(args) as service:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            progress.add_task(f"Provisioning room {args.room} on {service.config.device.host}...", total=None)
            creds = await service.generate(args.room, args.guest, checkin, args.checkout, args.profile)

    table = Table(title=f"Wi-Fi Access: Room {creds.room_number}")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Username", creds.username)
    table.add_row("Password", creds.password)
    table.add_row("Profile", creds.profile)
    table.add_row("Bandwidth", creds.bandwidth)
    table.add_row("Valid Until", creds.valid_until.isoformat())
    table.add_row("Time Limit", creds.time_limit)

    console.print(table)


async def cmd_show(args):
    """Reprint a room's active credentials."""
    async with open_service(args) as service:
        record = await service.active_guest(args.room)
        profile = service.config.profiles.get(record.profile_name)

    table = Table(title=f"Wi-Fi Access: Room {record.room_number}")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Guest", record.guest_name)
    table.add_row("Username", record.username)
    table.add_row("Password", record.password)
    table.add_row("Profile", record.profile_name)
    table.add_row("Bandwidth", profile.rate_limit if profile else "Unknown")
    table.add_row("Valid Until", record.checkout_date.isoformat())
    table.add_row("Sync", record.sync_status.value)

    console.print(table)


async def cmd_remove(args):
    """Revoke a room's access."""
    async with open_service(args) as service:
        result = await service.remove(args.room)

    if result.noop:
        console.print(f"[yellow]{result.message}[/yellow]")
        return

    for username in result.usernames:
        outcome = result.outcomes[username].value.replace("_", " ")
        console.print(f"[green]Removed {username}[/green] [dim](router: {outcome})[/dim]")
    if result.sessions_disconnected:
        console.print(f"[dim]{result.sessions_disconnected} live session(s) disconnected[/dim]")


async def cmd_cleanup(args):
    """Expire guests past checkout."""
    async with open_service(args) as service:
        report = await service.cleanup_expired()

    if not report.attempted:
        console.print("[dim]No expired guests[/dim]")
        return

    console.print(f"[green]{report.removed} expired guest(s) removed[/green]")
    if report.failed:
        table = Table(title=f"{report.failed} removal(s) failed")
        table.add_column("Room", style="cyan")
        table.add_column("Username")
        table.add_column("Error", style="red")
        for failure in report.failures:
            table.add_row(failure.room_number, failure.username, f"[{failure.kind}] {failure.message}")
        console.print(table)
        sys.exit(1)


async def cmd_guests(args):
    """List active guests with their live session."""
    async with open_service(args) as service:
        if args.offline:
            guests = [(record, None) for record in await service.store.list_active()]
        else:
            guests = [(p.record, p) for p in await service.reconciled_active_guests()]

    if not guests:
        console.print("[yellow]No active guests[/yellow]")
        return

    table = Table(title="Active Guests")
    table.add_column("Room", style="cyan")
    table.add_column("Guest")
    table.add_column("Username", style="green")
    table.add_column("Profile")
    table.add_column("Checkout")
    table.add_column("Sync")
    table.add_column("Online")
    table.add_column("Address")
    table.add_column("Uptime")
    table.add_column("Traffic (in/out)")

    for record, presence in guests:
        sync_style = {"synced": "green", "pending": "yellow", "failed": "red"}[record.sync_status.value]
        row = [
            record.room_number,
            record.guest_name,
            record.username,
            record.profile_name,
            record.checkout_date.isoformat(),
            f"[{sync_style}]{record.sync_status.value}[/{sync_style}]",
        ]
        if presence is None:
            row += ["?", "", "", ""]
        elif presence.online:
            row += [
                "[green]yes[/green]",
                presence.address or "",
                presence.uptime or "",
                f"{_format_bytes(presence.bytes_in)} / {_format_bytes(presence.bytes_out)}",
            ]
        else:
            row += ["[dim]no[/dim]", "", "", ""]
        table.add_row(*row)

    console.print(table)
    console.print(f"\n[bold]{len(guests)} active guest(s)[/bold]")


async def cmd_sync(args):
    """Reconcile the store with the router."""
    async with open_service(args) as service:
        report = await service.sync_with_device()

    table = Table(title="Router Sync")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Active records", str(report.store_users))
    table.add_row("Router users", str(report.device_users))
    table.add_row("Created on router", str(report.created_on_device))
    table.add_row("Confirmed", str(report.confirmed))
    table.add_row("Orphans removed", str(report.removed_from_device))
    console.print(table)

    for error in report.errors:
        console.print(f"[red]{error}[/red]")
    if report.errors:
        sys.exit(1)


async def cmd_stats(args):
    """Show guest and router statistics."""
    async with open_service(args) as service:
        stats = await service.stats()

    table = Table(title="Guest Statistics")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Total guests", str(stats["total_guests"]))
    table.add_row("Active guests", str(stats["active_guests"]))
    table.add_row("Issued today", str(stats["today_guests"]))
    table.add_row("Sync rate", f"{stats['sync_rate']}%")
    table.add_row("Sync failures", str(stats["sync_failed"]))

    if stats["device_status"] == "connected":
        table.add_row("Router users", str(stats["device_users"]))
        table.add_row("Online now", str(stats["online_users"]))
        for profile, count in sorted(stats["users_by_profile"].items()):
            table.add_row(f"  {profile}", str(count))
    else:
        table.add_row("Router", f"[red]{stats['device_error']}[/red]")

    console.print(table)


async def cmd_test(args):
    """Test the router API connection."""
    async with open_service(args) as service:
        console.print(f"[bold]Connecting to {service.config.device.host}:{service.config.device.port}...[/bold]")
        report = await service.test_connection()

    if not report.success:
        console.print(f"[red]Connection failed: {report.error}[/red]")
        sys.exit(1)

    table = Table(title=f"Router: {report.host}")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Identity", report.identity or "Unknown")
    table.add_row("RouterOS", report.version or "Unknown")
    table.add_row("Board", report.board_name or "Unknown")
    for key, value in report.extra.items():
        if value is not None:
            table.add_row(key.replace("_", " ").title(), str(value))

    console.print("[green]Connected[/green]")
    console.print(table)


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Hotel guest Wi-Fi provisioning CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("-c", "--config", default="config.yaml", help="Configuration file (default: config.yaml)")
    parser.add_argument("--env-file", default=".env", help="Environment file (default: .env)")
    parser.add_argument("--db", help="Override the guest database path")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Generate command
    generate_parser = subparsers.add_parser("generate", help="Issue credentials for a room")
    generate_parser.add_argument("room", help="Room number")
    generate_parser.add_argument("guest", help="Guest name")
    generate_parser.add_argument("--checkout", "-o", required=True, help="Checkout date (YYYY-MM-DD)")
    generate_parser.add_argument("--checkin", "-i", help="Checkin date (YYYY-MM-DD, default: today)")
    generate_parser.add_argument("--profile", "-p", help="Access profile (default: from config)")

    # Show command
    show_parser = subparsers.add_parser("show", help="Reprint a room's credentials")
    show_parser.add_argument("room", help="Room number")

    # Remove command
    remove_parser = subparsers.add_parser("remove", help="Revoke a room's access")
    remove_parser.add_argument("room", help="Room number")

    # Guests command
    guests_parser = subparsers.add_parser("guests", help="List active guests")
    guests_parser.add_argument("--offline", action="store_true", help="Skip the router session lookup")

    subparsers.add_parser("cleanup", help="Expire guests past checkout")
    subparsers.add_parser("sync", help="Reconcile records with the router")
    subparsers.add_parser("stats", help="Show statistics")
    subparsers.add_parser("test", help="Test the router connection")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_logging(args.verbose)

    # Map commands to functions
    commands = {
        "generate": cmd_generate,
        "show": cmd_show,
        "remove": cmd_remove,
        "cleanup": cmd_cleanup,
        "guests": cmd_guests,
        "sync": cmd_sync,
        "stats": cmd_stats,
        "test": cmd_test,
    }

    try:
        asyncio.run(commands[args.command](args))
    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted[/dim]")
        sys.exit(130)
    except GuestNetError as e:
        console.print(f"[red]Error ({e.kind}): {e.message}[/red]")
        if args.verbose:
            console.print_exception()
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        if args.verbose:
            console.print_exception()
        sys.exit(1)


if __name__ == "__main__":
    main()
