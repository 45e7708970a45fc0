"""Tests for the Monday GraphQL client, driven through httpx.MockTransport."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from boardmirror.errors import RemoteError
from boardmirror.models import ColumnValueChanged, EventFilter, EventType, ItemCreated, MondaySettings
from boardmirror.monday import (
    PAGE_LIMIT,
    MondayClient,
    item_to_dict,
    parse_webhook_event,
    to_wire_value,
)
from boardmirror.remote import GROUP_ID_COLUMN


def _node(item_id: str, name: str, status: str = "Done") -> dict[str, Any]:
    return {
        "id": item_id,
        "name": name,
        "group": {"id": "topics"},
        "column_values": [
            {"id": "status", "type": "color", "value": json.dumps({"index": 1}), "column": {"title": "Status"}},
            {"id": "text0", "type": "text", "value": json.dumps(status), "column": {"title": "Notes"}},
            {"id": "numbers", "type": "numbers", "value": json.dumps("42"), "column": {"title": "Qty"}},
            {"id": "email", "type": "email", "value": None, "column": {"title": "Email"}},
        ],
    }


class FakeMondayAPI:
    """Routes GraphQL requests by query text and records them."""

    def __init__(self):
        self.requests: list[dict[str, Any]] = []
        self.headers: list[httpx.Headers] = []
        self.boards_pages: list[list[dict[str, Any]]] = [[{"id": "4242", "name": "Orders"}]]
        self.item_pages: list[list[dict[str, Any]]] = [[_node("123456789", "Alpha")]]
        self.columns = [
            {"id": "status", "title": "Status", "type": "color"},
            {"id": "text0", "title": "Notes", "type": "text"},
        ]
        self.reply: Any = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        self.headers.append(request.headers)
        if self.reply is not None:
            return self.reply
        return httpx.Response(200, json={"data": self._data(body["query"], body["variables"])})

    def _page(self, index: int) -> dict[str, Any]:
        cursor = f"c{index + 1}" if index + 1 < len(self.item_pages) else None
        return {"cursor": cursor, "items": self.item_pages[index]}

    def _data(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        if "next_items_page" in query:
            return {"next_items_page": self._page(int(variables["cursor"][1:]))}
        if "items_page" in query:
            return {"boards": [{"id": "4242", "name": "Orders", "items_page": self._page(0)}]}
        if "boards (page" in query:
            page = variables["page"] - 1
            return {"boards": self.boards_pages[page] if page < len(self.boards_pages) else []}
        if "columns {" in query:
            return {"boards": [{"columns": self.columns}]}
        if "groups {" in query:
            return {"boards": [{"groups": [{"id": "topics", "title": "Topics"}]}]}
        if "create_item" in query:
            return {"create_item": {"id": "555000001", "group": {"id": "topics"}}}
        if "change_multiple_column_values" in query:
            return {"change_multiple_column_values": {"id": variables["itemId"]}}
        if "move_item_to_group" in query:
            return {"move_item_to_group": {"id": variables["itemId"]}}
        if "items (ids" in query:
            return {"items": [_node(i, "Alpha") for i in variables["itemId"] if i == "123456789"]}
        raise AssertionError(f"unexpected query: {query}")


@pytest.fixture
def api() -> FakeMondayAPI:
    return FakeMondayAPI()


@pytest.fixture
def client(api: FakeMondayAPI) -> MondayClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(api))
    return MondayClient(MondaySettings(api_token="tok-123"), http=http)


class TestItemToDict:
    def test_flattens_by_title(self):
        item = item_to_dict(_node("123456789", "Alpha", status="hello"))
        assert item == {
            "Status": {"index": 1},
            "Notes": "hello",
            "Qty": 42,
            "Email": None,
            "name": "Alpha",
            "id": "123456789",
            GROUP_ID_COLUMN: "topics",
        }

    def test_numeric_float(self):
        node = {"id": 1, "name": "x", "column_values": [
            {"id": "n", "type": "numeric", "value": json.dumps("2.5"), "column": {"title": "N"}},
        ]}
        assert item_to_dict(node)["N"] == 2.5

    def test_untitled_column_uses_id(self):
        node = {"id": 1, "name": "x", "column_values": [{"id": "c1", "type": "text", "value": '"v"'}]}
        item = item_to_dict(node)
        assert item["c1"] == "v"
        assert item["id"] == "1"
        assert item[GROUP_ID_COLUMN] is None


class TestWireValue:
    @pytest.mark.parametrize(
        "value,expected",
        [(None, ""), (5, "5"), ("a", "a"), ({"label": "Done"}, {"label": "Done"}), ([1], [1])],
    )
    def test_encoding(self, value, expected):
        assert to_wire_value(value) == expected


class TestParseWebhook:
    def test_column_change(self):
        event = parse_webhook_event({"event": {
            "type": "update_column_value",
            "boardId": 4242,
            "pulseId": 123456789,
            "columnTitle": "Status",
            "columnType": "color",
            "value": {"label": {"text": "Done"}},
            "userId": 99,
        }})
        assert isinstance(event, ColumnValueChanged)
        assert event.item_id == "123456789"
        assert event.user_id == "99"
        assert event.column_type == "color"

    def test_item_created(self):
        event = parse_webhook_event({"event": {
            "type": "create_pulse", "boardId": 4242, "pulseId": 555000001, "pulseName": "New",
        }})
        assert isinstance(event, ItemCreated)
        assert event.item_name == "New"

    def test_unknown_type(self):
        assert parse_webhook_event({"event": {"type": "delete_pulse", "boardId": 1}}) is None
        assert parse_webhook_event({}) is None

    def test_malformed_event(self):
        assert parse_webhook_event({"event": {"type": "update_column_value"}}) is None


class TestQuery:
    @pytest.mark.asyncio
    async def test_headers(self, client, api):
        await client.get_board_id_by_name("Orders")
        headers = api.headers[0]
        assert headers["Authorization"] == "tok-123"
        assert headers["API-Version"] == "2024-01"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_graphql_errors(self, client, api):
        api.reply = httpx.Response(200, json={"errors": [{"message": "bad column"}]})
        with pytest.raises(RemoteError, match="bad column"):
            await client.query("query { x }")

    @pytest.mark.asyncio
    async def test_error_code(self, client, api):
        api.reply = httpx.Response(200, json={"error_code": "ComplexityException", "error_message": "slow down"})
        with pytest.raises(RemoteError, match="ComplexityException"):
            await client.query("query { x }")

    @pytest.mark.asyncio
    async def test_http_status(self, client, api):
        api.reply = httpx.Response(500, text="boom")
        with pytest.raises(RemoteError, match="500"):
            await client.query("query { x }")

    @pytest.mark.asyncio
    async def test_non_json(self, client, api):
        api.reply = httpx.Response(200, text="<html>")
        with pytest.raises(RemoteError):
            await client.query("query { x }")

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        client = MondayClient(http=httpx.AsyncClient(transport=httpx.MockTransport(refuse)))
        with pytest.raises(RemoteError, match="request failed"):
            await client.query("query { x }")


class TestBoards:
    @pytest.mark.asyncio
    async def test_board_id_by_name(self, client):
        assert await client.get_board_id_by_name("Orders") == 4242
        assert await client.get_board_id_by_name("Missing") is None

    @pytest.mark.asyncio
    async def test_board_lookup_pages(self, client, api):
        api.boards_pages = [
            [{"id": str(i), "name": f"b{i}"} for i in range(PAGE_LIMIT)],
            [{"id": "4242", "name": "Orders"}],
        ]
        assert await client.get_board_id_by_name("Orders") == 4242
        assert [r["variables"]["page"] for r in api.requests] == [1, 2]

    @pytest.mark.asyncio
    async def test_board_items_follow_cursor(self, client, api):
        api.item_pages = [[_node("123456789", "Alpha")], [_node("987654321", "Beta")]]
        board = await client.get_board_items(4242)
        assert board.name == "Orders"
        assert [i["id"] for i in board.items] == ["123456789", "987654321"]
        assert "next_items_page" in api.requests[-1]["query"]

    @pytest.mark.asyncio
    async def test_board_item_ids(self, client, api):
        api.item_pages = [[{"id": 1}], [{"id": 2}], [{"id": 3}]]
        assert await client.get_board_item_ids(4242) == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_get_item(self, client):
        assert (await client.get_item("123456789"))["name"] == "Alpha"
        assert await client.get_item("111111111") is None

    @pytest.mark.asyncio
    async def test_groups(self, client):
        assert await client.get_board_groups(4242) == [("topics", "Topics")]


class TestMutations:
    @pytest.mark.asyncio
    async def test_update_maps_titles_to_ids(self, client, api):
        await client.update_column_values(4242, "123456789", {"Notes": "hi", "Status": lambda: {"label": "Done"}})
        sent = json.loads(api.requests[-1]["variables"]["columnValues"])
        assert sent == {"text0": "hi", "status": {"label": "Done"}}

    @pytest.mark.asyncio
    async def test_column_ids_cached(self, client, api):
        await client.update_column_values(4242, "123456789", {"Notes": "a"})
        await client.update_column_values(4242, "123456789", {"Notes": "b"})
        assert sum("columns {" in r["query"] for r in api.requests) == 1

    @pytest.mark.asyncio
    async def test_unknown_title(self, client):
        with pytest.raises(RemoteError, match="Column title not found"):
            await client.update_column_values(4242, "123456789", {"Nope": 1})

    @pytest.mark.asyncio
    async def test_rename(self, client, api):
        await client.update_item_name(4242, "123456789", "Alpha 2")
        assert json.loads(api.requests[-1]["variables"]["columnValues"]) == {"name": "Alpha 2"}

    @pytest.mark.asyncio
    async def test_create_item(self, client, api):
        item_id = await client.create_item(4242, "New", {"Notes": None}, group_id="topics")
        assert item_id == "555000001"
        variables = api.requests[-1]["variables"]
        assert variables["groupId"] == "topics"
        assert json.loads(variables["columnValues"]) == {"text0": ""}

    @pytest.mark.asyncio
    async def test_move_item(self, client, api):
        await client.move_item_to_group("123456789", "done")
        assert api.requests[-1]["variables"] == {"itemId": "123456789", "groupId": "done"}


class TestWebhooks:
    @pytest.mark.asyncio
    async def test_challenge_echo(self, client):
        assert await client.handle_webhook({"challenge": "xyz"}) == {"challenge": "xyz"}

    @pytest.mark.asyncio
    async def test_event_dispatched(self, client):
        seen = []

        async def handler(event):
            seen.append(event)

        unsubscribe = client.on(EventFilter(type=EventType.ITEM_CREATED, board_id=4242), handler)
        payload = {"event": {"type": "create_pulse", "boardId": 4242, "pulseId": 1}}
        assert await client.handle_webhook(payload) == {}
        assert len(seen) == 1

        unsubscribe()
        await client.handle_webhook(payload)
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_failing_handler_isolated(self, client):
        seen = []

        async def broken(event):
            raise RuntimeError("boom")

        async def fine(event):
            seen.append(event)

        event_filter = EventFilter(type=EventType.ITEM_CREATED, board_id=4242)
        client.on(event_filter, broken)
        client.on(event_filter, fine)
        event = ItemCreated(board_id=4242, item_id="1")
        assert await client.dispatch(event) == 2
        assert seen == [event]


class TestTransientErrors:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reply,transient",
        [
            (httpx.Response(503, text="unavailable"), True),
            (httpx.Response(429, text="slow down"), True),
            (httpx.Response(200, text="<html>"), True),
            (httpx.Response(200, json={"error_code": "ComplexityException", "error_message": "budget"}), True),
            (httpx.Response(401, text="unauthorized"), False),
            (httpx.Response(200, json={"errors": [{"message": "bad column"}]}), False),
        ],
    )
    async def test_classification(self, client, api, reply, transient):
        api.reply = reply
        with pytest.raises(RemoteError) as info:
            await client.query("query { x }")
        assert info.value.transient is transient

    @pytest.mark.asyncio
    async def test_unknown_title_is_permanent(self, client):
        with pytest.raises(RemoteError) as info:
            await client.update_column_values(4242, "123456789", {"Nope": 1})
        assert info.value.transient is False
