"""
Service configuration -- YAML on disk, environment on top.

    ~/.boardmirror/config.yaml

    mirror:
      board_name: Orders
      flush_interval_ms: 5000
      encryption_key: <64 hex chars>
      encrypted_columns: [Email, Phone]
      ignored_user_ids: ["12345678"]
    monday:
      api_token: ...
    redis_url: redis://localhost:6379/0

Environment overrides: MONDAY_API_TOKEN, REDIS_URL, MONDAY_SYNC_TIMER_MS,
BOARDMIRROR_BOARD.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from . import CONFIG_PATH
from .errors import ConfigurationError
from .models import ServiceConfig

logger = logging.getLogger("boardmirror.config")


def _apply_env(data: dict[str, Any]) -> dict[str, Any]:
    mirror = data.setdefault("mirror", {})
    monday = data.setdefault("monday", {})

    if os.environ.get("BOARDMIRROR_BOARD"):
        mirror["board_name"] = os.environ["BOARDMIRROR_BOARD"]
    if os.environ.get("MONDAY_SYNC_TIMER_MS"):
        try:
            mirror["flush_interval_ms"] = int(os.environ["MONDAY_SYNC_TIMER_MS"], 10)
        except ValueError as exc:
            raise ConfigurationError(
                f"MONDAY_SYNC_TIMER_MS is not an integer: {os.environ['MONDAY_SYNC_TIMER_MS']}"
            ) from exc
    if os.environ.get("MONDAY_API_TOKEN"):
        monday["api_token"] = os.environ["MONDAY_API_TOKEN"]
    if os.environ.get("REDIS_URL"):
        data["redis_url"] = os.environ["REDIS_URL"]
    return data


def load_config(path: Optional[Path] = None) -> ServiceConfig:
    """Load service configuration from YAML plus environment overrides.

    Args:
        path: Config file. Defaults to ~/.boardmirror/config.yaml.

    Returns:
        Validated ServiceConfig.

    Raises:
        ConfigurationError: If the file is unreadable or the result is invalid.
    """
    config_file = (path or Path(CONFIG_PATH)).expanduser()
    data: dict[str, Any] = {}
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Cannot parse {config_file}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"{config_file} must hold a mapping")
    else:
        logger.debug("No config file at %s, using environment only", config_file)

    try:
        return ServiceConfig(**_apply_env(data))
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc


def save_config(config: ServiceConfig, path: Optional[Path] = None) -> Path:
    """Persist service configuration as YAML.

    The file may hold the encryption key and API token, so it is
    written owner-readable only.

    Returns:
        The path written.
    """
    config_file = (path or Path(CONFIG_PATH)).expanduser()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="json", exclude_none=True)
    config_file.write_text(yaml.dump(data, default_flow_style=False), encoding="utf-8")
    config_file.chmod(0o600)
    logger.info("Wrote configuration to %s", config_file)
    return config_file
