"""Item commands: item, items, set, incr, rename, flush, reconcile."""

from __future__ import annotations

import json
import sys
from typing import Any, Optional

import click
from rich.table import Table

from ..errors import MirrorError
from ..remote import GROUP_ID_COLUMN
from ._common import config_option, console, engine_session, load_or_exit, parse_value, run


def _fail(exc: Exception) -> None:
    console.print(f"[bold red]Error:[/] {exc}")
    sys.exit(1)


def _print_item(item: dict[str, Any]) -> None:
    table = Table(title=f"{item.get('name')} [dim]({item.get('id')})[/]", show_header=False)
    table.add_column("Column", style="cyan")
    table.add_column("Value")
    for title in sorted(item):
        table.add_row(title, json.dumps(item[title], default=str))
    console.print(table)


def register_item_commands(main: click.Group) -> None:
    """Register the item read/write commands."""

    @main.command("item")
    @config_option
    @click.argument("item_id", required=False)
    @click.option("--name", "-n", default=None, help="Look the item up by name.")
    @click.option("--json", "as_json", is_flag=True, help="Print raw JSON.")
    def item_show(config_path, item_id, name, as_json):
        """Show one mirrored item, by id or by name."""
        if bool(item_id) == bool(name):
            console.print("[bold red]Give exactly one of ITEM_ID or --name.[/]")
            sys.exit(2)
        config = load_or_exit(config_path)

        async def _get() -> Optional[dict[str, Any]]:
            async with engine_session(config) as engine:
                if name:
                    return await engine.get_board_item_by_name(name)
                return await engine.get_board_item_by_id(item_id)

        try:
            item = run(_get())
        except MirrorError as exc:
            _fail(exc)

        if item is None:
            console.print("[yellow]Item not found in mirror.[/]")
            sys.exit(1)
        if as_json:
            click.echo(json.dumps(item, default=str))
        else:
            _print_item(item)

    @main.command("items")
    @config_option
    def items_list(config_path):
        """List every mirrored item."""
        config = load_or_exit(config_path)

        async def _list() -> list[dict[str, Any]]:
            async with engine_session(config) as engine:
                return await engine.get_board_items()

        try:
            items = run(_list())
        except MirrorError as exc:
            _fail(exc)

        table = Table(title=f"{config.mirror.board_name} [dim]({len(items)} items)[/]")
        table.add_column("Id", style="cyan")
        table.add_column("Name")
        table.add_column("Group", style="dim")
        for item in items:
            table.add_row(str(item.get("id")), str(item.get("name")), str(item.get(GROUP_ID_COLUMN)))
        console.print(table)

    @main.command("set")
    @config_option
    @click.argument("item_id")
    @click.argument("title")
    @click.argument("value")
    def item_set(config_path, item_id, title, value):
        """Set a column value. VALUE is parsed as JSON when possible.

        The mirror updates now; Monday follows on the next flush.
        """
        config = load_or_exit(config_path)

        async def _set() -> None:
            async with engine_session(config) as engine:
                await engine.set_column_value(item_id, title, parse_value(value))

        try:
            run(_set())
        except MirrorError as exc:
            _fail(exc)
        console.print(f"  [green]Queued[/] {item_id} [cyan]{title}[/] = {value}")

    @main.command("incr")
    @config_option
    @click.argument("item_id")
    @click.argument("title")
    @click.argument("delta", type=int, default=1)
    def item_incr(config_path, item_id, title, delta):
        """Add DELTA (default 1) to a numeric column."""
        config = load_or_exit(config_path)

        async def _incr() -> None:
            async with engine_session(config) as engine:
                await engine.incr_column_value(item_id, title, delta)

        try:
            run(_incr())
        except MirrorError as exc:
            _fail(exc)
        console.print(f"  [green]Queued[/] {item_id} [cyan]{title}[/] += {delta}")

    @main.command("rename")
    @config_option
    @click.argument("item_id")
    @click.argument("name")
    def item_rename(config_path, item_id, name):
        """Rename an item."""
        config = load_or_exit(config_path)

        async def _rename() -> None:
            async with engine_session(config) as engine:
                await engine.set_item_name(item_id, name)

        try:
            run(_rename())
        except MirrorError as exc:
            _fail(exc)
        console.print(f"  [green]Queued[/] rename of {item_id} to [cyan]{name}[/]")

    @main.command("flush")
    @config_option
    def flush(config_path):
        """Push pending changes to Monday now."""
        config = load_or_exit(config_path)

        async def _flush() -> list[str]:
            async with engine_session(config) as engine:
                await engine.get_board_id()
                return await engine.destage_changes()

        try:
            tokens = run(_flush())
        except MirrorError as exc:
            _fail(exc)
        console.print(f"  [green]Flushed[/] {len(tokens)} change(s)")

    @main.command("reconcile")
    @config_option
    def reconcile(config_path):
        """Compare item ids with Monday and fix the mirror."""
        config = load_or_exit(config_path)

        async def _reconcile() -> tuple[list[str], list[str]]:
            async with engine_session(config) as engine:
                await engine.get_board_id()
                return await engine.sync_board_item_addition_deletion()

        try:
            added, removed = run(_reconcile())
        except MirrorError as exc:
            _fail(exc)
        console.print(f"  [green]Added[/] {len(added)}  [red]Removed[/] {len(removed)}")
        for item_id in added:
            console.print(f"    + {item_id}")
        for item_id in removed:
            console.print(f"    - {item_id}")
