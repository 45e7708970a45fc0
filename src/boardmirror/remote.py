"""
Remote board contract -- what the engine needs from Monday.

Queries and mutations are abstract. Event delivery is concrete: a
callback registry keyed by EventFilter. Whatever receives webhooks
hands parsed events to dispatch(), and every matching handler runs.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Mapping, Optional

from .models import BoardEvent, BoardSnapshot, EventFilter

logger = logging.getLogger("boardmirror.remote")

GROUP_ID_COLUMN = "_groupId"

EventHandler = Callable[[BoardEvent], Awaitable[None]]


class RemoteBoard(ABC):
    """Abstract remote board service."""

    def __init__(self) -> None:
        self._handlers: list[tuple[EventFilter, EventHandler]] = []

    # -- queries ---------------------------------------------------------

    @abstractmethod
    async def get_board_id_by_name(self, name: str) -> Optional[int]:
        """Resolve a board name to its id, or None if no board matches."""

    @abstractmethod
    async def get_board_items(self, board_id: int) -> Optional[BoardSnapshot]:
        """Fetch the name and every item of a board."""

    @abstractmethod
    async def get_item(self, item_id: str) -> Optional[dict[str, Any]]:
        """Fetch one item, or None if it does not exist."""

    @abstractmethod
    async def get_board_item_ids(self, board_id: int) -> list[str]:
        """List the ids of every item on a board."""

    @abstractmethod
    async def get_board_groups(self, board_id: int) -> list[tuple[str, str]]:
        """List (group id, group title) pairs for a board."""

    # -- mutations -------------------------------------------------------

    @abstractmethod
    async def create_item(
        self,
        board_id: int,
        name: str,
        column_values: Optional[Mapping[str, Any]] = None,
        group_id: Optional[str] = None,
    ) -> str:
        """Create an item and return its new id.

        Column values may be plain values or zero-argument callables
        producing the value.
        """

    @abstractmethod
    async def update_item_name(self, board_id: int, item_id: str, name: str) -> None:
        """Rename an item."""

    @abstractmethod
    async def update_column_values(
        self, board_id: int, item_id: str, column_values: Mapping[str, Any]
    ) -> None:
        """Overwrite column values by title.

        Values may be plain values or zero-argument callables producing
        the value.
        """

    @abstractmethod
    async def move_item_to_group(self, item_id: str, group_id: str) -> None:
        """Move an item into another group of its board."""

    # -- events ----------------------------------------------------------

    def on(self, event_filter: EventFilter, handler: EventHandler) -> Callable[[], None]:
        """Register a handler for one event kind on one board.

        Args:
            event_filter: Which events to deliver.
            handler: Coroutine function called with each matching event.

        Returns:
            A callable that removes the registration.
        """
        entry = (event_filter, handler)
        self._handlers.append(entry)

        def unsubscribe() -> None:
            if entry in self._handlers:
                self._handlers.remove(entry)

        return unsubscribe

    async def dispatch(self, event: BoardEvent) -> int:
        """Deliver an event to every matching handler.

        Handlers run concurrently. A failing handler is logged and does
        not affect the others.

        Returns:
            Number of handlers the event was delivered to.
        """
        targets = [h for f, h in list(self._handlers) if f.matches(event)]
        if not targets:
            logger.debug(
                "No handler for %s on board %s", event.event_type.value, event.board_id
            )
            return 0

        results = await asyncio.gather(
            *(h(event) for h in targets), return_exceptions=True
        )
        for result in results:
            if isinstance(result, BaseException):
                logger.error(
                    "Handler for %s failed: %s", event.event_type.value, result
                )
        return len(targets)


def resolve_value(value: Any) -> Any:
    """Call zero-argument updaters, pass plain values through."""
    return value() if callable(value) else value
