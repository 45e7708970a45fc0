"""
Monday GraphQL client -- the remote side of the mirror.

Talks to the Monday v2 API over httpx. Items come back as flat dicts
keyed by column title, plus ``id``, ``name`` and the synthetic group
column. Webhook payloads are parsed here too and dispatched through
the RemoteBoard event registry.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Optional

import httpx
from pydantic import ValidationError

from .errors import RemoteError
from .models import BoardEvent, BoardSnapshot, ColumnValueChanged, ItemCreated, MondaySettings
from .remote import GROUP_ID_COLUMN, RemoteBoard, resolve_value

logger = logging.getLogger("boardmirror.monday")

PAGE_LIMIT = 100
ITEMS_PAGE_LIMIT = 500
NUMERIC_TYPES = {"numeric", "numbers"}
# error codes Monday uses for an exhausted complexity or rate budget
TRANSIENT_ERROR_CODES = {"ComplexityException", "RateLimitExceeded", "RATE_LIMIT_EXCEEDED"}

ITEM_FIELDS = """
fragment ItemFields on Item {
  id
  name
  column_values {
    id
    type
    value
    column {
      title
    }
  }
  group {
    id
  }
}"""

GET_ITEM_QUERY = """
query ($itemId: [ID!]) {
  items (ids: $itemId) {
    ...ItemFields
  }
}""" + ITEM_FIELDS

GET_BOARD_ITEMS_QUERY = """
query ($boardId: [ID!], $limit: Int!) {
  boards (ids: $boardId) {
    id
    name
    items_page (limit: $limit) {
      cursor
      items {
        ...ItemFields
      }
    }
  }
}""" + ITEM_FIELDS

NEXT_ITEMS_PAGE_QUERY = """
query ($cursor: String!, $limit: Int!) {
  next_items_page (cursor: $cursor, limit: $limit) {
    cursor
    items {
      ...ItemFields
    }
  }
}""" + ITEM_FIELDS

GET_BOARD_ITEM_IDS_QUERY = """
query ($boardId: [ID!], $limit: Int!) {
  boards (ids: $boardId) {
    items_page (limit: $limit) {
      cursor
      items {
        id
      }
    }
  }
}"""

NEXT_ITEM_IDS_PAGE_QUERY = """
query ($cursor: String!, $limit: Int!) {
  next_items_page (cursor: $cursor, limit: $limit) {
    cursor
    items {
      id
    }
  }
}"""

LIST_BOARDS_QUERY = """
query ($page: Int!, $limit: Int!) {
  boards (page: $page, limit: $limit) {
    id
    name
  }
}"""

GET_BOARD_COLUMNS_QUERY = """
query ($boardId: [ID!]) {
  boards (ids: $boardId) {
    columns {
      id
      title
      type
    }
  }
}"""

GET_BOARD_GROUPS_QUERY = """
query ($boardId: [ID!]) {
  boards (ids: $boardId) {
    groups {
      id
      title
    }
  }
}"""

CREATE_ITEM_MUTATION = """
mutation ($boardId: ID!, $groupId: String, $itemName: String!, $columnValues: JSON) {
  create_item (board_id: $boardId, group_id: $groupId, item_name: $itemName, column_values: $columnValues) {
    id
    group {
      id
    }
  }
}"""

CHANGE_COLUMN_VALUES_MUTATION = """
mutation ($boardId: ID!, $itemId: ID!, $columnValues: JSON!) {
  change_multiple_column_values (board_id: $boardId, item_id: $itemId, column_values: $columnValues) {
    id
  }
}"""

MOVE_ITEM_MUTATION = """
mutation ($itemId: ID!, $groupId: String!) {
  move_item_to_group (item_id: $itemId, group_id: $groupId) {
    id
  }
}"""


def _to_number(value: Any) -> Any:
    if isinstance(value, (int, float)) or value in (None, ""):
        return value
    try:
        return int(value)
    except (TypeError, ValueError):
        pass
    try:
        return float(value)
    except (TypeError, ValueError):
        return value


def item_to_dict(item: Mapping[str, Any]) -> dict[str, Any]:
    """Flatten a GraphQL item into a dict keyed by column title.

    Args:
        item: Item node as returned by the API.

    Returns:
        Dict of column values plus ``id``, ``name`` and the group column.
    """
    obj: dict[str, Any] = {}
    for cv in item.get("column_values") or []:
        title = (cv.get("column") or {}).get("title") or cv.get("id")
        raw = cv.get("value")
        value = json.loads(raw) if raw is not None else None
        if cv.get("type") in NUMERIC_TYPES:
            value = _to_number(value)
        obj[title] = value

    obj["name"] = item.get("name")
    obj["id"] = str(item["id"])
    group = item.get("group")
    obj[GROUP_ID_COLUMN] = group["id"] if group else None
    return obj


def to_wire_value(value: Any) -> Any:
    """Encode a column value the way change_multiple_column_values wants it."""
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return value
    return str(value)


def parse_webhook_event(payload: Mapping[str, Any]) -> Optional[BoardEvent]:
    """Turn a Monday webhook body into a typed event.

    Args:
        payload: Decoded JSON webhook body.

    Returns:
        ColumnValueChanged or ItemCreated, or None for anything else.
    """
    event = payload.get("event") or {}
    kind = event.get("type")
    try:
        if kind == "update_column_value":
            return ColumnValueChanged(
                board_id=event.get("boardId"),
                item_id=event.get("pulseId"),
                column_title=event.get("columnTitle"),
                column_type=event.get("columnType") or "",
                value=event.get("value"),
                user_id=event.get("userId"),
            )
        if kind in ("create_pulse", "create_item"):
            return ItemCreated(
                board_id=event.get("boardId"),
                item_id=event.get("pulseId"),
                item_name=event.get("pulseName"),
                user_id=event.get("userId"),
            )
    except ValidationError as exc:
        logger.warning("Malformed %s webhook: %s", kind, exc)
        return None

    logger.debug("Ignoring webhook of type %s", kind)
    return None


class MondayClient(RemoteBoard):
    """Monday v2 GraphQL implementation of RemoteBoard.

    Args:
        settings: API token, URL, version and timeout.
        http: Pre-built httpx client. One is created when omitted.
    """

    def __init__(
        self,
        settings: Optional[MondaySettings] = None,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__()
        self.settings = settings or MondaySettings()
        self._http = http or httpx.AsyncClient(timeout=self.settings.timeout)
        self._columns: dict[int, dict[str, str]] = {}

    async def aclose(self) -> None:
        await self._http.aclose()

    async def query(self, query: str, variables: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Run one GraphQL request.

        Args:
            query: GraphQL query or mutation text.
            variables: Query variables.

        Returns:
            The ``data`` member of the response.

        Raises:
            RemoteError: On transport failure or API error.
        """
        headers = {
            "Content-Type": "application/json",
            "API-Version": self.settings.api_version,
        }
        if self.settings.api_token:
            headers["Authorization"] = self.settings.api_token

        try:
            resp = await self._http.post(
                self.settings.api_url,
                json={"query": query, "variables": variables or {}},
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise RemoteError(f"Monday request failed: {exc}", transient=True) from exc

        if resp.status_code >= 400:
            raise RemoteError(
                f"Monday API {resp.status_code}: {resp.text}",
                transient=resp.status_code == 429 or resp.status_code >= 500,
            )

        try:
            body = resp.json()
        except ValueError as exc:
            raise RemoteError(f"Monday returned non-JSON body: {exc}", transient=True) from exc

        if body.get("errors"):
            messages = "; ".join(e.get("message", str(e)) for e in body["errors"])
            raise RemoteError(f"Monday API error: {messages}")
        if body.get("error_code") or body.get("error_message"):
            raise RemoteError(
                f"Monday API error: {body.get('error_code')} {body.get('error_message')}",
                transient=body.get("error_code") in TRANSIENT_ERROR_CODES,
            )
        return body.get("data") or {}

    # -- queries ---------------------------------------------------------

    async def get_board_id_by_name(self, name: str) -> Optional[int]:
        page = 1
        while True:
            data = await self.query(LIST_BOARDS_QUERY, {"page": page, "limit": PAGE_LIMIT})
            boards = data.get("boards") or []
            for board in boards:
                if board.get("name") == name:
                    return int(board["id"])
            if len(boards) < PAGE_LIMIT:
                return None
            page += 1

    async def get_board_items(self, board_id: int) -> Optional[BoardSnapshot]:
        data = await self.query(
            GET_BOARD_ITEMS_QUERY, {"boardId": [board_id], "limit": ITEMS_PAGE_LIMIT}
        )
        boards = data.get("boards") or []
        if not boards:
            return None
        board = boards[0]
        page = board.get("items_page") or {}
        nodes = list(page.get("items") or [])
        nodes.extend(await self._remaining_pages(page.get("cursor"), NEXT_ITEMS_PAGE_QUERY))
        return BoardSnapshot(name=board["name"], items=[item_to_dict(n) for n in nodes])

    async def get_item(self, item_id: str) -> Optional[dict[str, Any]]:
        data = await self.query(GET_ITEM_QUERY, {"itemId": [str(item_id)]})
        items = data.get("items") or []
        if not items:
            return None
        return item_to_dict(items[0])

    async def get_board_item_ids(self, board_id: int) -> list[str]:
        data = await self.query(
            GET_BOARD_ITEM_IDS_QUERY, {"boardId": [board_id], "limit": ITEMS_PAGE_LIMIT}
        )
        boards = data.get("boards") or []
        if not boards:
            return []
        page = boards[0].get("items_page") or {}
        nodes = list(page.get("items") or [])
        nodes.extend(await self._remaining_pages(page.get("cursor"), NEXT_ITEM_IDS_PAGE_QUERY))
        return [str(n["id"]) for n in nodes]

    async def get_board_groups(self, board_id: int) -> list[tuple[str, str]]:
        data = await self.query(GET_BOARD_GROUPS_QUERY, {"boardId": [board_id]})
        boards = data.get("boards") or []
        if not boards:
            return []
        return [(g["id"], g["title"]) for g in boards[0].get("groups") or []]

    async def _remaining_pages(self, cursor: Optional[str], query: str) -> list[dict[str, Any]]:
        nodes: list[dict[str, Any]] = []
        while cursor:
            data = await self.query(query, {"cursor": cursor, "limit": ITEMS_PAGE_LIMIT})
            page = data.get("next_items_page") or {}
            nodes.extend(page.get("items") or [])
            cursor = page.get("cursor")
        return nodes

    async def _column_ids(self, board_id: int) -> dict[str, str]:
        """Map column titles to column ids, cached per board."""
        if board_id not in self._columns:
            data = await self.query(GET_BOARD_COLUMNS_QUERY, {"boardId": [board_id]})
            boards = data.get("boards") or []
            columns = (boards[0].get("columns") or []) if boards else []
            self._columns[board_id] = {c["title"]: c["id"] for c in columns}
        return self._columns[board_id]

    async def _encode_columns(
        self, board_id: int, column_values: Mapping[str, Any]
    ) -> dict[str, Any]:
        ids = await self._column_ids(board_id)
        encoded: dict[str, Any] = {}
        for title, value in column_values.items():
            column_id = ids.get(title)
            if column_id is None:
                raise RemoteError(f"Column title not found: {title}")
            encoded[column_id] = to_wire_value(resolve_value(value))
        return encoded

    # -- mutations -------------------------------------------------------

    async def create_item(
        self,
        board_id: int,
        name: str,
        column_values: Optional[Mapping[str, Any]] = None,
        group_id: Optional[str] = None,
    ) -> str:
        encoded = (
            json.dumps(await self._encode_columns(board_id, column_values))
            if column_values
            else None
        )
        data = await self.query(
            CREATE_ITEM_MUTATION,
            {
                "boardId": board_id,
                "groupId": group_id,
                "itemName": name,
                "columnValues": encoded,
            },
        )
        created = data.get("create_item")
        if not created:
            raise RemoteError(f"Monday did not create item {name!r}")
        logger.info("Created item %s (%s) on board %s", created["id"], name, board_id)
        return str(created["id"])

    async def update_item_name(self, board_id: int, item_id: str, name: str) -> None:
        await self.query(
            CHANGE_COLUMN_VALUES_MUTATION,
            {
                "boardId": board_id,
                "itemId": str(item_id),
                "columnValues": json.dumps({"name": name}),
            },
        )

    async def update_column_values(
        self, board_id: int, item_id: str, column_values: Mapping[str, Any]
    ) -> None:
        encoded = await self._encode_columns(board_id, column_values)
        await self.query(
            CHANGE_COLUMN_VALUES_MUTATION,
            {
                "boardId": board_id,
                "itemId": str(item_id),
                "columnValues": json.dumps(encoded),
            },
        )

    async def move_item_to_group(self, item_id: str, group_id: str) -> None:
        await self.query(MOVE_ITEM_MUTATION, {"itemId": str(item_id), "groupId": group_id})

    # -- webhooks --------------------------------------------------------

    async def handle_webhook(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Process one webhook body.

        Monday verifies a new webhook URL by posting a challenge that
        must be echoed back. Everything else is parsed and dispatched.

        Args:
            payload: Decoded JSON webhook body.

        Returns:
            The JSON response body to send back.
        """
        if "challenge" in payload:
            return {"challenge": payload["challenge"]}

        event = parse_webhook_event(payload)
        if event is not None:
            await self.dispatch(event)
        return {}
