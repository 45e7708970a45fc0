"""
Board mirror data models -- configuration, events and counters.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_FLUSH_INTERVAL_MS = 5000
RECONCILE_MULTIPLIER = 5


class MirrorConfig(BaseModel):
    """Settings for one mirrored board."""

    board_name: str
    key_prefix: str = "MondayBoard"
    flush_interval_ms: int = Field(default=DEFAULT_FLUSH_INTERVAL_MS, gt=0)
    encryption_key: Optional[str] = None
    encrypted_columns: list[str] = Field(default_factory=list)
    ignored_user_ids: list[str] = Field(default_factory=list)

    @field_validator("board_name")
    @classmethod
    def _board_name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError(f"Invalid board name: {value!r}")
        return value

    @field_validator("encrypted_columns")
    @classmethod
    def _titles_not_blank(cls, value: list[str]) -> list[str]:
        for title in value:
            if not title.strip():
                raise ValueError(f"Invalid column list: {value!r}")
        return value

    @field_validator("ignored_user_ids", mode="before")
    @classmethod
    def _user_ids_as_strings(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple, set)):
            return [str(v) for v in value]
        return value

    @model_validator(mode="after")
    def _key_and_columns_together(self) -> "MirrorConfig":
        if (self.encryption_key is None) != (not self.encrypted_columns):
            raise ValueError(
                "encryption_key and encrypted_columns must be set together"
            )
        return self

    @property
    def reconcile_interval_ms(self) -> int:
        """Reconciliation runs at a fixed multiple of the flush interval."""
        return self.flush_interval_ms * RECONCILE_MULTIPLIER


class MondaySettings(BaseModel):
    """Connection settings for the Monday GraphQL API."""

    api_token: Optional[str] = None
    api_url: str = "https://api.monday.com/v2"
    api_version: str = "2024-01"
    timeout: float = 30.0


class ServiceConfig(BaseModel):
    """Complete configuration for the long-running mirror service."""

    mirror: MirrorConfig
    monday: MondaySettings = Field(default_factory=MondaySettings)
    redis_url: str = "redis://localhost:6379/0"
    webhook_host: str = "127.0.0.1"
    webhook_port: int = 8787
    log_file: Optional[Path] = None


class EventType(str, Enum):
    """Remote event kinds the engine subscribes to."""

    COLUMN_VALUE_CHANGED = "ColumnValueChanged"
    ITEM_CREATED = "ItemCreated"


class EventFilter(BaseModel):
    """Subscription filter: one event kind on one board."""

    type: EventType
    board_id: int

    def matches(self, event: "BoardEvent") -> bool:
        return event.event_type == self.type and event.board_id == self.board_id


class _BoardEventBase(BaseModel):
    board_id: int
    item_id: str
    user_id: Optional[str] = None

    @field_validator("item_id", "user_id", mode="before")
    @classmethod
    def _ids_as_strings(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value


class ColumnValueChanged(_BoardEventBase):
    """A column of an item changed on the board."""

    event_type: ClassVar[EventType] = EventType.COLUMN_VALUE_CHANGED

    column_title: str
    column_type: str = ""
    value: Any = None


class ItemCreated(_BoardEventBase):
    """An item was added to the board."""

    event_type: ClassVar[EventType] = EventType.ITEM_CREATED

    item_name: Optional[str] = None


BoardEvent = Union[ColumnValueChanged, ItemCreated]


class BoardSnapshot(BaseModel):
    """Full contents of a board as returned by the remote side."""

    name: str
    items: list[dict[str, Any]] = Field(default_factory=list)


class EngineStats(BaseModel):
    """Running counters for one engine instance."""

    flush_passes: int = 0
    changes_destaged: int = 0
    changes_failed: int = 0
    reconcile_passes: int = 0
    items_added: int = 0
    items_removed: int = 0
    events_applied: int = 0
    events_ignored: int = 0
