#!/usr/bin/env python3
"""
main.py – Dropper CLI
=====================
Entry point: argparse subcommands over PluginManager, logging setup and
rich rendering of plans, run summaries and listings.

Exit codes: 0 success, 1 operational error, 2 bad manifest / config or an
unresolvable manifest, 4 one or more plan actions failed or were skipped.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from dropper_config import DropperConfig
from exceptions import ConfigError, ManifestError, ResolutionError, StateError
from install_plan import ActionKind, PlanAction
from install_state import InstallRecord
from plugin_apis import SearchHit, Transport
from plugin_installer import ActionState, RunSummary
from plugin_manager import PluginManager, Result, SyncReport
from plugin_validator import ValidationResult

logger = logging.getLogger("dropper")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_FAILED = 4

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


# ──────────────────────────────────────────────
#  Logging
# ──────────────────────────────────────────────

def setup_logging(verbose: bool = False, quiet: bool = False, log_file: Optional[str] = None) -> None:
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


# ──────────────────────────────────────────────
#  CLI
# ──────────────────────────────────────────────

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="dropper",
        description="Dropper – package manager for Minecraft server plugins",
    )
    p.add_argument("--config", default=None, help="Path to dropper.json (default: <server-dir>/dropper.json)")
    p.add_argument("--manifest", default=None, help="Path to the manifest (default: pkg.yml)")
    p.add_argument("--server-dir", dest="server_dir", default=None, help="Server directory")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    p.add_argument("-q", "--quiet", action="store_true", help="Warnings and errors only")
    p.add_argument("--log-file", dest="log_file", default=None, help="Also log to this file")

    sub = p.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    add = sub.add_parser("add", help="Add plugins to the manifest and install them")
    add.add_argument("specs", nargs="+", metavar="SPEC", help="Name[@Constraint], e.g. WorldEdit@6.1.9")
    add.add_argument("--dry-run", action="store_true", help="Only print the plan")

    remove = sub.add_parser("remove", help="Remove plugins from the manifest and the server")
    remove.add_argument("names", nargs="+", metavar="NAME")
    remove.add_argument("--dry-run", action="store_true", help="Only print the plan")

    update = sub.add_parser("update", help="Move plugins to the newest allowed versions")
    update.add_argument("names", nargs="*", metavar="NAME", help="Plugins to update (default: all)")
    update.add_argument("--dry-run", action="store_true", help="Only print the plan")

    sub.add_parser("sync", aliases=["install"], help="Bring the server in line with the manifest")
    sub.add_parser("plan", help="Print what sync would do")
    sub.add_parser("list", help="List installed plugins")

    search = sub.add_parser("search", help="Search every source")
    search.add_argument("query")
    search.add_argument("--limit", type=int, default=20)

    clean = sub.add_parser("clean", help="Delete partial downloads and backups")
    clean.add_argument("--keep-backups", action="store_true")

    purge = sub.add_parser("purge", help="Remove every managed plugin and the install state")
    purge.add_argument("--yes", action="store_true", help="Confirm")

    sub.add_parser("check", help="Validate the installed plugin JARs")
    return p.parse_args(argv)


# ──────────────────────────────────────────────
#  Rendering
# ──────────────────────────────────────────────

_ACTION_STYLES = {
    ActionKind.INSTALL: "green",
    ActionKind.UPGRADE: "cyan",
    ActionKind.DOWNGRADE: "yellow",
    ActionKind.REMOVE: "red",
    ActionKind.NOOP: "dim",
}

_STATE_STYLES = {
    ActionState.COMMITTED: "green",
    ActionState.FAILED: "bold red",
    ActionState.SKIPPED: "yellow",
}


def _version_cell(action: PlanAction) -> str:
    if action.kind in (ActionKind.UPGRADE, ActionKind.DOWNGRADE):
        return f"{action.old_version} → {action.new_version}"
    return str(action.new_version or action.old_version or "")


def render_plan(console: Console, plan: List[PlanAction]) -> None:
    changes = [a for a in plan if a.changes_disk]
    if not changes:
        console.print("[green]Nothing to do.[/]")
        return
    t = Table(title="Plan")
    t.add_column("Action")
    t.add_column("Plugin", style="cyan")
    t.add_column("Version")
    t.add_column("Source", style="dim")
    for action in changes:
        style = _ACTION_STYLES[action.kind]
        source = action.package.source_id if action.package else ""
        t.add_row(f"[{style}]{action.kind.value}[/]", action.name, _version_cell(action), source)
    console.print(t)


def render_summary(console: Console, summary: RunSummary) -> None:
    rows = [o for o in summary.outcomes if o.action.changes_disk or o.state is not ActionState.COMMITTED]
    if rows:
        t = Table(title="Run Summary")
        t.add_column("Action")
        t.add_column("Plugin", style="cyan")
        t.add_column("Version")
        t.add_column("Result")
        t.add_column("Detail", overflow="fold")
        for outcome in rows:
            action = outcome.action
            style = _STATE_STYLES.get(outcome.state, "white")
            detail = outcome.reason or outcome.source_id
            t.add_row(
                f"[{_ACTION_STYLES[action.kind]}]{action.kind.value}[/]",
                action.name,
                _version_cell(action),
                f"[{style}]{outcome.state.value}[/]",
                escape(detail),
            )
        console.print(t)
    counts = ", ".join(f"{count} {key}" for key, count in summary.counts.items() if count)
    colour = "green" if summary.success else "red"
    console.print(f"[bold {colour}]{counts or 'nothing to do'}[/]")
    if summary.cancelled:
        console.print("[yellow]Cancelled: remaining actions were skipped.[/]")


def render_report(console: Console, report: SyncReport) -> None:
    for package in report.selection.unreliable():
        console.print(
            f"[yellow]warning:[/] {package.name} {package.version} from {package.source_id} "
            f"has {package.confidence.value} version metadata"
        )
    if report.dry_run:
        render_plan(console, report.plan)
    else:
        render_summary(console, report.summary)


def render_installed(console: Console, records: List[InstallRecord]) -> None:
    if not records:
        console.print("No plugins installed.")
        return
    t = Table(title="Installed Plugins")
    t.add_column("Plugin", style="cyan")
    t.add_column("Version")
    t.add_column("Source", style="dim")
    t.add_column("File")
    t.add_column("Installed")
    for record in records:
        t.add_row(record.name, record.version, record.source_id, record.filename, record.installed_at)
    console.print(t)


def render_hits(console: Console, hits: List[SearchHit]) -> None:
    if not hits:
        console.print("No results.")
        return
    t = Table(title="Search Results")
    t.add_column("Name", style="cyan")
    t.add_column("Source", style="dim")
    t.add_column("Downloads", justify="right")
    t.add_column("Description", overflow="fold")
    for hit in hits:
        t.add_row(hit.name, hit.source_id, f"{hit.downloads:,}", escape(hit.description))
    console.print(t)


def render_checks(console: Console, results: List[ValidationResult]) -> None:
    if not results:
        console.print("No plugin JARs found.")
        return
    t = Table(title="Plugin Check")
    t.add_column("Plugin", style="cyan")
    t.add_column("Status")
    t.add_column("Issues", overflow="fold")
    for result in results:
        status = "[green]ok[/]" if result.is_valid else "[red]invalid[/]"
        issues = "; ".join(f"{i.severity}: {i.message}" for i in result.issues if i.severity != "info")
        t.add_row(result.plugin_name, status, escape(issues))
    console.print(t)


def render_result(console: Console, result: Result) -> int:
    report = result.details.get("report")
    if report is not None:
        render_report(console, report)
        return report.exit_code
    if result.success:
        console.print(escape(result.message))
        return EXIT_OK
    console.print(f"[red]{escape(result.message)}[/]" + (f" ({escape(result.error)})" if result.error else ""))
    return EXIT_ERROR


# ──────────────────────────────────────────────
#  Commands
# ──────────────────────────────────────────────

async def run_command(
    args: argparse.Namespace,
    manager: PluginManager,
    console: Console,
    cancel_event: asyncio.Event,
) -> int:
    command = args.command
    dry_run = getattr(args, "dry_run", False)

    if command == "add":
        result = await manager.add(args.specs, dry_run=dry_run, cancel_event=cancel_event)
    elif command == "remove":
        result = await manager.remove(args.names, dry_run=dry_run, cancel_event=cancel_event)
    elif command == "update":
        result = await manager.update(args.names or None, dry_run=dry_run, cancel_event=cancel_event)
    elif command in ("sync", "install"):
        result = await manager.sync(cancel_event=cancel_event)
    elif command == "plan":
        result = await manager.sync(dry_run=True)
    elif command == "list":
        render_installed(console, manager.list_installed())
        return EXIT_OK
    elif command == "search":
        render_hits(console, await manager.search(args.query, args.limit))
        return EXIT_OK
    elif command == "clean":
        result = manager.clean(backups=not args.keep_backups)
    elif command == "purge":
        if not args.yes:
            console.print("[yellow]purge removes every managed plugin; re-run with --yes to confirm.[/]")
            return EXIT_USAGE
        result = await manager.purge(cancel_event)
    elif command == "check":
        results = manager.check()
        render_checks(console, results)
        return EXIT_OK if all(r.is_valid for r in results) else EXIT_FAILED
    else:
        raise ValueError(f"Unknown command: {command}")
    return render_result(console, result)


def _install_signal_handler(cancel_event: asyncio.Event) -> None:
    def on_interrupt() -> None:
        if not cancel_event.is_set():
            logger.warning("Interrupted: finishing the current action, then stopping")
        cancel_event.set()

    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, on_interrupt)
    except (NotImplementedError, RuntimeError) as exc:
        logger.debug("SIGINT handler not available: %s", exc)


async def run(
    args: argparse.Namespace,
    console: Console,
    transport: Optional[Transport] = None,
) -> int:
    config = DropperConfig.from_args(args)
    cancel_event = asyncio.Event()
    _install_signal_handler(cancel_event)
    async with PluginManager(config, transport=transport) as manager:
        return await run_command(args, manager, console, cancel_event)


# ──────────────────────────────────────────────
#  Entry Point
# ──────────────────────────────────────────────

def main(
    argv: Optional[List[str]] = None,
    transport: Optional[Transport] = None,
    console: Optional[Console] = None,
) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose, args.quiet, args.log_file)
    console = console or Console()

    try:
        return asyncio.run(run(args, console, transport))
    except ResolutionError as exc:
        console.print(f"[bold red]Resolution failed ({exc.kind.value}):[/] {escape(str(exc))}")
        for conflict in exc.conflicts:
            console.print(f"  conflict: {escape(conflict.describe())}")
        return EXIT_USAGE
    except (ManifestError, ConfigError) as exc:
        console.print(f"[bold red]Error:[/] {escape(str(exc))}")
        return EXIT_USAGE
    except StateError as exc:
        console.print(f"[bold red]Install state error:[/] {escape(str(exc))}")
        return EXIT_ERROR
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted.[/]")
        return 130


if __name__ == "__main__":
    sys.exit(main())
