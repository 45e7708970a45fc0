"""Shared utilities for all CLI command modules.

Provides the Rich console, config loading and a short-lived engine
session for one-shot commands.
"""

from __future__ import annotations

import asyncio
import json
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Coroutine, Optional

import click
from rich.console import Console

from .. import CONFIG_PATH
from ..config import load_config
from ..engine import MirrorEngine
from ..errors import ConfigurationError
from ..models import ServiceConfig
from ..monday import MondayClient
from ..store import create_store

console = Console()

config_option = click.option(
    "--config",
    "config_path",
    default=CONFIG_PATH,
    type=click.Path(),
    help="Path to config.yaml.",
)


def load_or_exit(config_path: Optional[str]) -> ServiceConfig:
    """Load configuration, exiting with a message if it is unusable."""
    try:
        return load_config(Path(config_path) if config_path else None)
    except ConfigurationError as exc:
        console.print(f"[bold red]Configuration error:[/] {exc}")
        sys.exit(1)


@asynccontextmanager
async def engine_session(config: ServiceConfig) -> AsyncIterator[MirrorEngine]:
    """An engine without timers or subscriptions, for one-shot commands."""
    store = create_store(config.redis_url)
    remote = MondayClient(config.monday)
    try:
        yield MirrorEngine(config.mirror, remote, store)
    finally:
        await remote.aclose()
        await store.close()


def run(coro: Coroutine[Any, Any, Any]) -> Any:
    return asyncio.run(coro)


def parse_value(text: str) -> Any:
    """Read a CLI value as JSON, falling back to the raw string."""
    try:
        return json.loads(text)
    except ValueError:
        return text
