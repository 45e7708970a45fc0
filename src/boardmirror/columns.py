"""
Column type normalization for incoming board events.

Monday webhooks carry column values in a type-specific envelope.
Each column type gets its own normalizer that reduces the envelope to
the value we keep in the mirror. Unknown types fall through unchanged.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Awaitable, Callable, Optional

ItemFetcher = Callable[[], Awaitable[Optional[dict[str, Any]]]]


class ColumnType(str, Enum):
    """Column types with dedicated normalization."""

    LOCATION = "location"
    COLOR = "color"
    BOARD_RELATION = "board-relation"
    TEXT = "text"
    NUMERIC = "numeric"
    DROPDOWN = "dropdown"
    DEFAULT = "default"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "ColumnType":
        """Map a Monday column type string, falling back to DEFAULT."""
        try:
            return cls(raw)
        except ValueError:
            return cls.DEFAULT


def _sub(value: Any, key: str) -> Any:
    return value.get(key) if isinstance(value, dict) else None


def _color(value: Any) -> Any:
    return _sub(value, "label")


def _board_relation(value: Any) -> Any:
    return {"linkedPulseIds": _sub(value, "linkedPulseIds")}


def _text_or_numeric(value: Any) -> Any:
    # cleared columns arrive as null
    if isinstance(value, dict):
        return value.get("value")
    return value


def _dropdown(value: Any) -> Any:
    return _sub(value, "chosenValues")


def _default(value: Any) -> Any:
    return value


_NORMALIZERS: dict[ColumnType, Callable[[Any], Any]] = {
    ColumnType.COLOR: _color,
    ColumnType.BOARD_RELATION: _board_relation,
    ColumnType.TEXT: _text_or_numeric,
    ColumnType.NUMERIC: _text_or_numeric,
    ColumnType.DROPDOWN: _dropdown,
    ColumnType.DEFAULT: _default,
}


async def normalize_value(
    column_type: Optional[str],
    column_title: str,
    value: Any,
    fetch_item: ItemFetcher,
) -> Any:
    """Reduce a raw event value to the value stored in the mirror.

    Location events do not carry a usable value, so the item is
    fetched again and the column read from the fresh copy.

    Args:
        column_type: Monday column type string from the event.
        column_title: Title of the changed column.
        value: Raw event value.
        fetch_item: Coroutine factory returning the current item.

    Returns:
        The normalized value.
    """
    kind = ColumnType.parse(column_type)
    if kind is ColumnType.LOCATION:
        item = await fetch_item()
        return item.get(column_title) if item else None
    return _NORMALIZERS[kind](value)
