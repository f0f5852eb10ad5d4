"""Command-line entry point.

    stationsearch status
    stationsearch test dispatcharr
    stationsearch apply-dispatcharr [--yes]
    stationsearch apply-emby [--yes]
    stationsearch search "WABC"
    stationsearch reset-auth emby
    stationsearch groups
    stationsearch emby-clear-numbers [--yes]
    stationsearch set DISPATCHARR_URL http://localhost:9191
"""

import argparse
import logging
import signal
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm
from rich.table import Table

from stationsearch.batch import (
    BatchUpdateExecutor,
    ConsoleSink,
    LoggingSink,
    PendingUpdateQueue,
)
from stationsearch.exceptions import (
    ConfigurationError,
    CredentialStoreCorruptError,
    QueueFormatError,
)
from stationsearch.integrations.factory import IntegrationFactory
from stationsearch.logging_setup import setup_logging
from stationsearch.settings import (
    CHANNELS_DVR,
    DISPATCHARR,
    EMBY,
    SERVICES,
    SettingsProvider,
)

logger = logging.getLogger(__name__)

STATUS_STYLES = {
    "authenticated": "green",
    "expired": "yellow",
    "failed": "red",
    "disabled": "dim",
    "unknown": "cyan",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stationsearch",
        description="Push guide station IDs to Dispatcharr and Emby, search Channels DVR",
    )
    parser.add_argument("--config", help="Settings file (default: data/globalstationsearch.env)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging to stderr")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show authentication status for each integration")

    test = sub.add_parser("test", help="Test connection to an integration")
    test.add_argument("service", choices=SERVICES)

    for name, target in (("apply-dispatcharr", "Dispatcharr"), ("apply-emby", "Emby")):
        apply = sub.add_parser(name, help=f"Apply queued updates to {target}")
        apply.add_argument("--yes", "-y", action="store_true", help="Skip the confirmation prompt")
        apply.add_argument(
            "--requeue-failed",
            action="store_true",
            help="Keep failed updates queued for another run",
        )

    sub.add_parser("groups", help="List Dispatcharr channel groups")

    for name, help_text in (
        ("emby-delete-logos", "Delete logos from every Emby Live TV channel"),
        ("emby-clear-numbers", "Clear channel numbers on every Emby Live TV channel"),
    ):
        sweep = sub.add_parser(name, help=help_text)
        sweep.add_argument("--yes", "-y", action="store_true", help="Skip the confirmation prompt")

    search = sub.add_parser("search", help="Search Channels DVR guide stations")
    search.add_argument("term")

    reset = sub.add_parser("reset-auth", help="Forget stored credentials for an integration")
    reset.add_argument("service", choices=SERVICES)

    setter = sub.add_parser("set", help="Save a setting")
    setter.add_argument("key")
    setter.add_argument("value")

    return parser


@contextmanager
def cancel_on_interrupt() -> Iterator[threading.Event]:
    """Turn Ctrl-C into a cancel event for the duration of a drain."""
    cancel = threading.Event()

    def _handler(signum, frame):
        cancel.set()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


def cmd_status(factory: IntegrationFactory, console: Console) -> int:
    table = Table(title="Integration Status")
    table.add_column("Service")
    table.add_column("Status")
    table.add_column("Token Expires")
    table.add_column("Last Validated")
    table.add_column("Details")

    for service in SERVICES:
        status = factory.status(service)
        style = STATUS_STYLES.get(status.status, "")
        table.add_row(
            service,
            f"[{style}]{status.status}[/]" if style else status.status,
            status.expires_at.strftime("%Y-%m-%d %H:%M:%S %Z") if status.expires_at else "-",
            status.last_validated_at.strftime("%H:%M:%S") if status.last_validated_at else "-",
            escape(status.message or ""),
        )

    console.print(table)
    return 0


def cmd_test(factory: IntegrationFactory, console: Console, service: str) -> int:
    console.print(f"[cyan]Testing {service} connection...[/]")
    result = factory.test_connection(service)

    if not result.success:
        console.print(f"[red]Connection failed: {escape(result.error or 'unknown error')}[/]")
        return 1

    console.print(f"[green]Connected to {escape(result.url or service)}[/]")
    if result.server_name:
        console.print(f"  Server: {escape(result.server_name)}")
    if result.version:
        console.print(f"  Version: {escape(result.version)}")
    return 0


def cmd_apply(
    factory: IntegrationFactory,
    settings: SettingsProvider,
    console: Console,
    service: str,
    assume_yes: bool,
    requeue_failed: bool,
) -> int:
    session = factory.session(service)
    problem = session.descriptor.configuration_problem()
    if problem:
        console.print(f"[red]{escape(problem)}[/]")
        console.print("[cyan]Configure the integration first (stationsearch set ...)[/]")
        return 1

    paths = settings.settings.paths
    if service == DISPATCHARR:
        queue = PendingUpdateQueue(paths.dispatcharr_matches)
        apply_update = factory.dispatcharr().apply_pending_update
    else:
        queue = PendingUpdateQueue(paths.emby_pending)
        apply_update = factory.emby().apply_pending_update

    def confirm(prompt: str) -> bool:
        if assume_yes:
            return True
        return Confirm.ask(prompt, console=console, default=True)

    executor = BatchUpdateExecutor(
        queue=queue,
        apply_update=apply_update,
        sink=LoggingSink(ConsoleSink(console)),
        confirm=confirm,
        target_description=f"{service} at {session.descriptor.url}",
        requeue_failed=requeue_failed,
    )

    result = executor.run(drain_scope=cancel_on_interrupt)

    if result.cancelled:
        return 130
    return 1 if result.failed else 0


def cmd_search(factory: IntegrationFactory, console: Console, term: str) -> int:
    problem = factory.session(CHANNELS_DVR).descriptor.configuration_problem()
    if problem:
        console.print(f"[red]{escape(problem)}[/]")
        return 1

    stations = factory.channels_dvr().search_stations(term)
    if stations is None:
        console.print("[red]Station search failed - see log for details[/]")
        return 1
    if not stations:
        console.print(f"[yellow]No stations found matching '{escape(term)}'[/]")
        console.print("[cyan]Try different spelling, call signs, or partial names[/]")
        return 0

    table = Table(title=f"Stations matching '{escape(term)}'")
    table.add_column("Name")
    table.add_column("Call Sign")
    table.add_column("Quality")
    table.add_column("Station ID")
    for station in stations:
        quality = (station.get("videoQuality") or {}).get("videoType")
        table.add_row(
            escape(str(station.get("name") or "Unknown")),
            escape(str(station.get("callSign") or "N/A")),
            escape(str(quality or "Unknown")),
            escape(str(station.get("stationId") or "Unknown")),
        )
    console.print(table)
    return 0


def cmd_groups(factory: IntegrationFactory, console: Console) -> int:
    problem = factory.session(DISPATCHARR).descriptor.configuration_problem()
    if problem:
        console.print(f"[red]{escape(problem)}[/]")
        return 1

    groups = factory.dispatcharr().get_groups()
    if groups is None:
        console.print("[red]Failed to fetch channel groups - see log for details[/]")
        return 1
    if not groups:
        console.print("[yellow]No channel groups found[/]")
        return 0

    table = Table(title="Dispatcharr Channel Groups")
    table.add_column("ID")
    table.add_column("Name")
    for group in groups:
        table.add_row(str(group.get("id", "")), escape(str(group.get("name") or "")))
    console.print(table)
    return 0


def cmd_emby_sweep(
    factory: IntegrationFactory,
    console: Console,
    command: str,
    assume_yes: bool,
) -> int:
    problem = factory.session(EMBY).descriptor.configuration_problem()
    if problem:
        console.print(f"[red]{escape(problem)}[/]")
        return 1

    live_tv = factory.emby()
    if command == "emby-delete-logos":
        prompt = "Delete Primary, LogoLight and LogoLightColor images from every channel?"
        sweep = live_tv.delete_all_logos
    else:
        prompt = "Clear the channel number on every Live TV channel?"
        sweep = live_tv.clear_all_channel_numbers

    if not assume_yes and not Confirm.ask(prompt, console=console, default=False):
        console.print("[yellow]Cancelled[/]")
        return 0

    result = sweep()
    if result is None:
        console.print("[red]Operation failed - see log for details[/]")
        if command == "emby-clear-numbers" and live_tv.user_id is None:
            console.print("[cyan]Re-authenticate with: stationsearch reset-auth emby[/]")
        return 1

    style = "yellow" if result.failed else "green"
    console.print(f"[{style}]{result.summary()}[/]")
    return 1 if result.failed else 0


def cmd_reset_auth(factory: IntegrationFactory, console: Console, service: str) -> int:
    factory.session(service).reset()
    console.print(f"[green]{service} authentication state reset[/]")
    return 0


def cmd_set(settings: SettingsProvider, console: Console, key: str, value: str) -> int:
    try:
        settings.save(key, value)
    except ConfigurationError as e:
        console.print(f"[red]{escape(str(e))}[/]")
        return 1
    console.print(f"[green]Saved {escape(key)}[/]")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    console = Console(highlight=False)

    settings = SettingsProvider(args.config)
    setup_logging(
        settings.settings.paths.log_file,
        level=logging.DEBUG if args.verbose else logging.INFO,
        console=args.verbose,
    )
    logger.debug("Using settings file %s", settings.path)

    if args.command == "set":
        return cmd_set(settings, console, args.key, args.value)

    try:
        with IntegrationFactory(settings) as factory:
            if args.command == "status":
                return cmd_status(factory, console)
            if args.command == "test":
                return cmd_test(factory, console, args.service)
            if args.command == "apply-dispatcharr":
                return cmd_apply(
                    factory, settings, console, DISPATCHARR, args.yes, args.requeue_failed
                )
            if args.command == "apply-emby":
                return cmd_apply(factory, settings, console, EMBY, args.yes, args.requeue_failed)
            if args.command == "search":
                return cmd_search(factory, console, args.term)
            if args.command == "reset-auth":
                return cmd_reset_auth(factory, console, args.service)
            if args.command == "groups":
                return cmd_groups(factory, console)
            if args.command in ("emby-delete-logos", "emby-clear-numbers"):
                return cmd_emby_sweep(factory, console, args.command, args.yes)
    except (CredentialStoreCorruptError, QueueFormatError) as e:
        logger.error("%s", e)
        console.print(f"[red]{escape(str(e))}[/]")
        return 1

    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
