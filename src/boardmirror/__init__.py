"""
boardmirror: a write-behind Redis mirror for Monday boards.

Reads are served from the cache. Writes land in the cache first and
flow back to Monday on a timer. Webhooks and a periodic reconciliation
keep the mirror honest.
"""

import os

__version__ = "0.1.0"

CONFIG_PATH = os.environ.get("BOARDMIRROR_CONFIG", "~/.boardmirror/config.yaml")
