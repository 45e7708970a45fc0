"""
boardmirror CLI -- inspect and drive a board mirror.

Command groups live in their own modules and are attached to the
main Click group through register functions.

Entry point: boardmirror.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="boardmirror")
def main():
    """boardmirror: a write-behind Redis mirror for Monday boards."""


from .items import register_item_commands
from .serve import register_serve_commands

register_item_commands(main)
register_serve_commands(main)
