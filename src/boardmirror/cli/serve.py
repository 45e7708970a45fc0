"""Service commands: init, keygen, serve, status."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from rich.panel import Panel

from ..cipher import generate_key
from ..config import save_config
from ..errors import MirrorError
from ..models import MirrorConfig, ServiceConfig
from ..service import MirrorService, get_service_status
from ._common import config_option, console, load_or_exit


def register_serve_commands(main: click.Group) -> None:
    """Register the service lifecycle commands."""

    @main.command("init")
    @config_option
    @click.option("--board", required=True, help="Name of the Monday board to mirror.")
    @click.option("--redis-url", default="redis://localhost:6379/0", show_default=True)
    @click.option("--encrypt-column", "-e", multiple=True, help="Column to encrypt at rest.")
    @click.option("--ignore-user", multiple=True, help="Monday user id whose events are ignored.")
    @click.option("--force", is_flag=True, help="Overwrite an existing config.")
    def init(config_path, board, redis_url, encrypt_column, ignore_user, force):
        """Write a starter config.yaml.

        A fresh encryption key is generated when columns are encrypted.
        """
        path = Path(config_path).expanduser()
        if path.exists() and not force:
            console.print(f"[bold red]{path} exists.[/] Use --force to overwrite.")
            sys.exit(1)

        try:
            mirror = MirrorConfig(
                board_name=board,
                encryption_key=generate_key() if encrypt_column else None,
                encrypted_columns=list(encrypt_column),
                ignored_user_ids=list(ignore_user),
            )
        except ValueError as exc:
            console.print(f"[bold red]Invalid options:[/] {exc}")
            sys.exit(1)

        written = save_config(ServiceConfig(mirror=mirror, redis_url=redis_url), path)
        console.print(f"\n  [green]Config written:[/] {written}")
        if encrypt_column:
            console.print(f"  [yellow]Encrypting:[/] {', '.join(encrypt_column)}")
            console.print("  [dim]Keep the key in config.yaml safe. Lost key, lost data.[/]")
        console.print("  [dim]Set MONDAY_API_TOKEN before running serve.[/]\n")

    @main.command("keygen")
    def keygen():
        """Print a new random encryption key."""
        click.echo(generate_key())

    @main.command("serve")
    @config_option
    @click.option("--port", type=int, default=None, help="Webhook port override.")
    @click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
    def serve(config_path, port, verbose):
        """Run the mirror and its webhook endpoint until interrupted."""
        logging.basicConfig(
            level=logging.DEBUG if verbose else logging.INFO,
            format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        )
        config = load_or_exit(config_path)
        if port is not None:
            config.webhook_port = port

        service = MirrorService(config)
        try:
            service.start()
        except MirrorError as exc:
            console.print(f"[bold red]Cannot start mirror:[/] {exc}")
            sys.exit(1)

        console.print(
            Panel(
                f"Board [cyan]{config.mirror.board_name}[/]\n"
                f"Webhook http://{config.webhook_host}:{service.port}/webhook\n"
                f"Flush every {config.mirror.flush_interval_ms} ms, "
                f"reconcile every {config.mirror.reconcile_interval_ms} ms",
                title="boardmirror",
                border_style="green",
            )
        )
        service.run_forever()

    @main.command("status")
    @config_option
    def status(config_path):
        """Show the state of a running mirror service."""
        config = load_or_exit(config_path)
        snap = get_service_status(config.webhook_host, config.webhook_port)
        if snap is None:
            console.print("[yellow]Mirror service not reachable.[/]")
            sys.exit(1)

        engine = snap.get("engine") or {}
        lines = [f"Board [cyan]{snap.get('board')}[/]  pid {snap.get('pid')}"]
        lines.append(f"Started {snap.get('started_at')}")
        lines.append(f"Webhooks {snap.get('webhooks_received', 0)}")
        for key, value in engine.items():
            lines.append(f"{key.replace('_', ' ')}: {value}")
        for err in snap.get("recent_errors") or []:
            lines.append(f"[red]{err}[/]")
        console.print(Panel("\n".join(lines), title="mirror status"))
