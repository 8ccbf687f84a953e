#!/usr/bin/env python3
"""
Ventricle CLI: author, try out and inspect pulses.

Usage:
    ventricle                     List stored pulses
    ventricle check FILE          Validate a definition and show its normalized form
    ventricle run FILE            Read the anchor and run the flow once (no storage)
    ventricle pulses              List stored pulse records
    ventricle items [-n N]        Recent pulse items
    ventricle seen ITEM_ID        Mark an item as seen
    ventricle start               Run the daemon in the foreground
"""

import argparse
import asyncio
import json
from dataclasses import asdict
from typing import Optional

from rich import box
from rich.console import Console
from rich.table import Table

from ventricle.core.config import VentricleConfig
from ventricle.definition import load_definition
from ventricle.errors import VentricleError
from ventricle.fetcher import HttpFetcher
from ventricle.flow import resolve_anchor, run_flow
from ventricle.storage import PulseStore, parse_timestamp

console = Console()


def _store(config: VentricleConfig) -> PulseStore:
    return PulseStore(
        config.state_dir,
        records_file=config.state.records_file,
        items_file=config.state.items_file,
    )


def _format_when(value: Optional[str]) -> str:
    moment = parse_timestamp(value)
    if moment is None:
        return "[dim]never[/]"
    return moment.astimezone().strftime("%b %d %H:%M")


def _truncate(text: str, width: int = 60) -> str:
    text = " ".join(text.split())
    return text if len(text) <= width else text[: width - 3] + "..."


# ─── Commands ────────────────────────────────────────────────────

def cmd_check(args, config: VentricleConfig) -> int:
    """Validate a definition file."""
    try:
        definition = load_definition(args.file)
    except (VentricleError, OSError) as e:
        console.print(f"[red bold]✗ invalid[/] {args.file}: {e}")
        return 1

    console.print(f"[green bold]✓ valid[/] {definition.name} [dim]({definition.id}, every {definition.heartbeat})[/]")
    console.print_json(json.dumps(asdict(definition)))
    return 0


async def _run_once(args, config: VentricleConfig) -> int:
    definition = load_definition(args.file)
    fetcher = HttpFetcher(
        timeout_seconds=config.http.timeout_seconds,
        user_agent=config.http.user_agent,
    )
    try:
        anchor = await resolve_anchor(definition, fetcher)
        console.print(f"Anchor: [bold]{anchor!r}[/]")
        if anchor is None and not args.force:
            console.print("[yellow]Anchor matched nothing; flow not run (use --force)[/]")
            return 1
        seed = {"anchor": anchor, "anchorValue": anchor} if anchor else {}
        result = await run_flow(definition, fetcher, seed)
    finally:
        await fetcher.close()

    table = Table(box=box.SIMPLE, padding=(0, 1))
    table.add_column("Variable", style="bold")
    table.add_column("Value")
    for name, value in result.variables.items():
        table.add_row(name, _truncate(value, 80))
    console.print(table)
    for url in result.visited_urls:
        console.print(f"  [dim]visited[/] {url}")
    return 0


def cmd_run(args, config: VentricleConfig) -> int:
    """Run one definition end to end without touching stored state."""
    try:
        return asyncio.run(_run_once(args, config))
    except (VentricleError, OSError) as e:
        console.print(f"[red bold]✗ failed[/] {e}")
        return 1


def cmd_pulses(args, config: VentricleConfig) -> int:
    """Show stored pulse records."""
    records = _store(config).load_records()
    if not records:
        console.print("[dim]No pulses registered yet[/]")
        return 0

    table = Table(box=box.ROUNDED, padding=(0, 1))
    table.add_column("Id", style="bold")
    table.add_column("Name")
    table.add_column("Every", justify="right")
    table.add_column("Last checked")
    table.add_column("Anchor", max_width=30)
    table.add_column("")

    for r in records:
        table.add_row(
            r.id,
            r.name,
            r.heartbeat,
            _format_when(r.last_checked),
            _truncate(r.last_anchor_value or "", 30),
            "[green]●[/]" if r.enabled else "[red]○ disabled[/]",
        )
    console.print(table)
    return 0


def cmd_items(args, config: VentricleConfig) -> int:
    """Show the most recent pulse items."""
    items = _store(config).load_items()
    if args.unseen:
        items = [i for i in items if not i.seen]
    items = items[: args.count]
    if not items:
        console.print("[dim]No pulse items[/]")
        return 0

    table = Table(box=box.SIMPLE, padding=(0, 1))
    table.add_column("Created", min_width=12)
    table.add_column("Pulse")
    table.add_column("Title", max_width=50)
    table.add_column("Url", max_width=50)
    table.add_column("Id", style="dim")
    for item in items:
        title = item.title if item.seen else f"[bold]{item.title}[/]"
        table.add_row(_format_when(item.created_at), item.pulse_id, title, item.url or "", item.id)
    console.print(table)
    return 0


def cmd_seen(args, config: VentricleConfig) -> int:
    """Mark an item as seen."""
    if _store(config).mark_seen(args.item_id):
        console.print(f"[green]✓[/] {args.item_id} marked as seen")
        return 0
    console.print(f"[red]No item with id {args.item_id}[/]")
    return 1


def cmd_start(args, config: VentricleConfig) -> int:
    """Run the daemon in the foreground."""
    from ventricle.__main__ import setup_logging
    from ventricle.core.daemon import VentricleDaemon

    setup_logging(config, console=True)
    VentricleDaemon(config=config).run()
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="ventricle",
        description="🫀 Ventricle: watch web pages, emit a feed entry when they change",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-c", "--config", help="Path to ventricle.yaml")
    parser.add_argument("--no-color", action="store_true", help="Disable colors")

    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("check", help="Validate a definition file")
    p.add_argument("file")

    p = sub.add_parser("run", help="Run a definition once without storing anything")
    p.add_argument("file")
    p.add_argument("--force", action="store_true", help="Run the flow even if the anchor matched nothing")

    sub.add_parser("pulses", help="List stored pulse records")

    p = sub.add_parser("items", help="Recent pulse items")
    p.add_argument("-n", "--count", type=int, default=20, help="Number of entries")
    p.add_argument("--unseen", action="store_true", help="Only items not yet seen")

    p = sub.add_parser("seen", help="Mark an item as seen")
    p.add_argument("item_id")

    sub.add_parser("start", help="Run the daemon in the foreground")

    args = parser.parse_args(argv)

    if args.no_color:
        console.no_color = True

    config = VentricleConfig.load(args.config)
    cmd = args.command or "pulses"

    commands = {
        "check": cmd_check,
        "run": cmd_run,
        "pulses": cmd_pulses,
        "items": cmd_items,
        "seen": cmd_seen,
        "start": cmd_start,
    }
    return commands[cmd](args, config)


if __name__ == "__main__":
    raise SystemExit(main())
