"""Shared test fixtures for boardmirror."""

from __future__ import annotations

from typing import Any, Mapping, Optional

import pytest

from boardmirror.engine import MirrorEngine
from boardmirror.models import BoardSnapshot, MirrorConfig
from boardmirror.remote import GROUP_ID_COLUMN, RemoteBoard, resolve_value
from boardmirror.store import MemoryStore

BOARD_ID = 4242
BOARD_NAME = "Orders"
HEX_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"

ITEM_A = {
    "id": "123456789",
    "name": "Alpha",
    "Status": "Working",
    "Qty": 3,
    "Email": "alpha@example.com",
    GROUP_ID_COLUMN: "topics",
}
ITEM_B = {
    "id": "987654321",
    "name": "Beta",
    "Status": "Done",
    "Qty": None,
    "Email": None,
    GROUP_ID_COLUMN: "topics",
}


class FakeBoard(RemoteBoard):
    """In-memory RemoteBoard that records every call."""

    def __init__(self, items: Optional[list[dict[str, Any]]] = None):
        super().__init__()
        self.board_id = BOARD_ID
        self.name = BOARD_NAME
        self.items: dict[str, dict[str, Any]] = {
            str(i["id"]): dict(i) for i in (items or [])
        }
        self.groups = [("topics", "Topics"), ("done", "Done")]
        self.calls: list[tuple] = []
        # raised by every update method when set
        self.fail_updates: Optional[Exception] = None
        self.snapshot_name: Optional[str] = None
        self._next_id = 555000001

    def count(self, method: str) -> int:
        return sum(1 for c in self.calls if c[0] == method)

    def updates(self) -> list[tuple]:
        names = {"update_column_values", "update_item_name", "move_item_to_group"}
        return [c for c in self.calls if c[0] in names]

    async def get_board_id_by_name(self, name: str) -> Optional[int]:
        self.calls.append(("get_board_id_by_name", name))
        return self.board_id if name == self.name else None

    async def get_board_items(self, board_id: int) -> Optional[BoardSnapshot]:
        self.calls.append(("get_board_items", board_id))
        if board_id != self.board_id:
            return None
        return BoardSnapshot(
            name=self.snapshot_name or self.name,
            items=[dict(i) for i in self.items.values()],
        )

    async def get_item(self, item_id: str) -> Optional[dict[str, Any]]:
        self.calls.append(("get_item", item_id))
        item = self.items.get(str(item_id))
        return dict(item) if item else None

    async def get_board_item_ids(self, board_id: int) -> list[str]:
        self.calls.append(("get_board_item_ids", board_id))
        return list(self.items)

    async def get_board_groups(self, board_id: int) -> list[tuple[str, str]]:
        self.calls.append(("get_board_groups", board_id))
        return list(self.groups)

    async def create_item(
        self,
        board_id: int,
        name: str,
        column_values: Optional[Mapping[str, Any]] = None,
        group_id: Optional[str] = None,
    ) -> str:
        item_id = str(self._next_id)
        self._next_id += 1
        values = {k: resolve_value(v) for k, v in (column_values or {}).items()}
        self.items[item_id] = {
            "id": item_id,
            "name": name,
            GROUP_ID_COLUMN: group_id or "topics",
            **values,
        }
        self.calls.append(("create_item", board_id, name, values))
        return item_id

    async def update_item_name(self, board_id: int, item_id: str, name: str) -> None:
        if self.fail_updates is not None:
            raise self.fail_updates
        self.calls.append(("update_item_name", item_id, name))

    async def update_column_values(
        self, board_id: int, item_id: str, column_values: Mapping[str, Any]
    ) -> None:
        if self.fail_updates is not None:
            raise self.fail_updates
        values = {k: resolve_value(v) for k, v in column_values.items()}
        self.calls.append(("update_column_values", item_id, values))

    async def move_item_to_group(self, item_id: str, group_id: str) -> None:
        if self.fail_updates is not None:
            raise self.fail_updates
        self.calls.append(("move_item_to_group", item_id, group_id))


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def board() -> FakeBoard:
    return FakeBoard(items=[ITEM_A, ITEM_B])


@pytest.fixture
def config() -> MirrorConfig:
    """Intervals long enough that timers never fire during a test."""
    return MirrorConfig(board_name=BOARD_NAME, flush_interval_ms=60_000)


@pytest.fixture
def encrypted_config() -> MirrorConfig:
    return MirrorConfig(
        board_name=BOARD_NAME,
        flush_interval_ms=60_000,
        encryption_key=HEX_KEY,
        encrypted_columns=["Email"],
    )


@pytest.fixture
def engine(config: MirrorConfig, board: FakeBoard, store: MemoryStore) -> MirrorEngine:
    return MirrorEngine(config, board, store)
