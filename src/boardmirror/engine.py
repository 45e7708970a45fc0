"""
Mirror Engine -- keeps a cache copy of one Monday board in step.

This is the command center. It seeds the cache once, applies webhook
events as they arrive, queues local writes in a changes ledger and
flushes them back to Monday on a timer, and every few flushes compares
item ids on both sides to heal missed creations and deletions.

    set_column_value()  ->  cache hset + ledger append
    flush timer         ->  ledger getset -> dedupe -> push to Monday
    webhook event       ->  normalize -> cache hset -> flush (skip own token)
    reconcile timer     ->  diff item ids -> delete / fetch

Cache layout, per board:

    <prefix>/<board>/item/<id>     hash of column title -> serialized value
    <prefix>/<board>/names         hash of item name -> item id
    <prefix>/<board>/changes       space-separated change tokens
    <prefix>/<board>/initialized   sentinel, set once by whoever seeds
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional
from urllib.parse import quote, unquote

from .cipher import Cipher
from .columns import normalize_value
from .errors import DecryptionError, ItemValidationError, NotFoundError, RemoteError
from .models import (
    BoardEvent,
    ColumnValueChanged,
    EngineStats,
    EventFilter,
    EventType,
    ItemCreated,
    MirrorConfig,
)
from .remote import GROUP_ID_COLUMN, RemoteBoard
from .store import CacheStore

logger = logging.getLogger("boardmirror.engine")

UNDEFINED_NULL_PLACEHOLDER = "UNDEFINED_OR_NULL"
NAME_COLUMN = "name"

_ITEM_ID = re.compile(r"^\d{9,10}$")
# encodeURIComponent leaves these unescaped
_TITLE_SAFE = "!~*'()"
_BOARD_SAFE = "!~'()"


def change_token(item_id: str, title: str) -> str:
    """Encode an (item, column) pair as a ledger token."""
    return f"{item_id}:{quote(title, safe=_TITLE_SAFE)}"


def parse_change_token(token: str) -> tuple[str, str]:
    """Decode a ledger token back into (item id, column title)."""
    item_id, _, title = token.partition(":")
    return item_id, unquote(title)


def validate_id(item_id: Any) -> str:
    """Validate an item id.

    Raises:
        ItemValidationError: Unless the id is a string of 9 or 10 digits.
    """
    if not isinstance(item_id, str) or not _ITEM_ID.match(item_id):
        raise ItemValidationError(f"Invalid item id: {item_id!r}")
    return item_id


def validate_name(name: Any) -> str:
    """Validate an item or board name.

    Raises:
        ItemValidationError: If the name is not a non-blank string.
    """
    if not isinstance(name, str) or not name.strip():
        raise ItemValidationError(f"Invalid name: {name!r}")
    return name


class MirrorEngine:
    """Bidirectional, eventually consistent mirror of one board.

    Args:
        config: Board name, key prefix, intervals and encryption policy.
        remote: Remote board adapter (queries, mutations, events).
        store: Cache store holding the mirror.

    Raises:
        InvalidKeyError: If an encryption key is configured but malformed.
    """

    def __init__(self, config: MirrorConfig, remote: RemoteBoard, store: CacheStore):
        self.config = config
        self.remote = remote
        self.store = store
        self.board_name = config.board_name

        self.key_base = f"{config.key_prefix}/{quote(self.board_name, safe=_BOARD_SAFE)}"
        self.names_key = f"{self.key_base}/names"
        self.changes_key = f"{self.key_base}/changes"
        self.initialized_key = f"{self.key_base}/initialized"

        self._cipher: Optional[Cipher] = (
            Cipher(config.encryption_key) if config.encryption_key is not None else None
        )
        self._encrypted = frozenset(config.encrypted_columns)
        self._ignored_users = frozenset(config.ignored_user_ids)

        self._board_id: Optional[int] = None
        self._flush_timer: Optional[asyncio.Task] = None
        self._reconcile_timer: Optional[asyncio.Task] = None
        self._reconcile_running = False
        self._background: set[asyncio.Task] = set()
        self._unsubscribe: list[Callable[[], None]] = []
        self.stats = EngineStats()

    async def __aenter__(self) -> "MirrorEngine":
        return await self.initialize()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    @property
    def running(self) -> bool:
        return self._flush_timer is not None

    # ------------------------------------------------------------------
    # Keys and serialization
    # ------------------------------------------------------------------

    def key_for_item(self, item_id: Optional[str] = None) -> str:
        """Cache key of one item, or the glob matching every item."""
        # _cached_item_ids relies on the id being the last path segment
        return f"{self.key_base}/item/{item_id or '*'}"

    def is_encrypted(self, title: str) -> bool:
        return self._cipher is not None and title in self._encrypted

    def serialize(self, value: Any, title: str) -> str:
        """JSON-encode a column value, encrypting it if the column requires."""
        if value is None:
            return UNDEFINED_NULL_PLACEHOLDER
        text = json.dumps(value)
        return self._cipher.encrypt(text) if self.is_encrypted(title) else text

    def deserialize(self, raw: Optional[str], title: str) -> Any:
        """Inverse of serialize(). Missing and placeholder values read as None.

        Raises:
            DecryptionError: If an encrypted value cannot be decrypted.
            ValueError: If the stored text is not valid JSON.
        """
        if not raw or raw == UNDEFINED_NULL_PLACEHOLDER:
            return None
        text = self._cipher.decrypt(raw) if self.is_encrypted(title) else raw
        return json.loads(text)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> "MirrorEngine":
        """Seed the mirror if nobody has yet, subscribe to events, start timers.

        Only the caller that wins the ``initialized`` sentinel race
        imports the board, so concurrent starts never import twice.

        Returns:
            self, for chaining.

        Raises:
            NotFoundError: If the board cannot be resolved.
        """
        logger.info("Initializing %s board", self.board_name)
        stamp = datetime.now(timezone.utc).isoformat()
        if await self.store.setnx(self.initialized_key, stamp):
            logger.info("Populating mirror for %s", self.board_name)
            try:
                items = await self._fetch_board_items()
                await asyncio.gather(*(self._write_item(item) for item in items))
            except Exception:
                # let the next start try again
                await self.store.delete(self.initialized_key)
                raise
            logger.info("Mirrored %d items from %s", len(items), self.board_name)
        else:
            logger.info("Mirror for %s already populated", self.board_name)

        self._board_id = await self.get_board_id()
        self._subscribe()
        self._reset_flush_timer()
        self._reset_reconcile_timer()
        return self

    async def stop(self, final_flush: bool = True) -> None:
        """Stop timers, drop event subscriptions and wait for in-flight work.

        Args:
            final_flush: Push pending changes one last time before returning.
        """
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()

        timers = [t for t in (self._flush_timer, self._reconcile_timer) if t]
        for timer in timers:
            timer.cancel()
        self._flush_timer = None
        self._reconcile_timer = None
        await asyncio.gather(*timers, return_exceptions=True)

        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

        if final_flush and self._board_id is not None:
            try:
                await self.destage_changes()
            except Exception as exc:
                logger.error("Final flush for %s failed: %s", self.board_name, exc)
        logger.info("Mirror for %s stopped", self.board_name)

    def _subscribe(self) -> None:
        if self._unsubscribe:
            return
        board_id = self._board_id
        self._unsubscribe = [
            self.remote.on(
                EventFilter(type=EventType.COLUMN_VALUE_CHANGED, board_id=board_id),
                self._on_column_value_changed,
            ),
            self.remote.on(
                EventFilter(type=EventType.ITEM_CREATED, board_id=board_id),
                self._on_item_created,
            ),
        ]

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _reset_flush_timer(self) -> None:
        if self._flush_timer:
            self._flush_timer.cancel()
        self._flush_timer = asyncio.create_task(
            self._every(self.config.flush_interval_ms, self._flush_tick),
            name=f"flush:{self.board_name}",
        )

    def _reset_reconcile_timer(self) -> None:
        # events can still land after stop()
        if not self.running:
            return
        if self._reconcile_timer:
            self._reconcile_timer.cancel()
        self._reconcile_timer = asyncio.create_task(
            self._every(self.config.reconcile_interval_ms, self._reconcile_tick),
            name=f"reconcile:{self.board_name}",
        )

    async def _every(self, interval_ms: int, tick: Callable[[], None]) -> None:
        while True:
            await asyncio.sleep(interval_ms / 1000)
            tick()

    def _flush_tick(self) -> None:
        self._spawn(self.destage_changes(), "flush")

    def _reconcile_tick(self) -> None:
        if self._reconcile_running:
            logger.debug("Reconciliation still running, skipping tick")
            return
        self._spawn(self._reconcile_once(), "reconcile")

    async def _reconcile_once(self) -> None:
        self._reconcile_running = True
        try:
            await self.sync_board_item_addition_deletion()
        finally:
            self._reconcile_running = False

    def _spawn(self, coro: Awaitable[Any], label: str) -> None:
        task = asyncio.ensure_future(coro)
        task.set_name(f"{label}:{self.board_name}")
        self._background.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed: %s", task.get_name(), exc)

    # ------------------------------------------------------------------
    # Write-behind flush
    # ------------------------------------------------------------------

    async def destage_changes(self, skip_token: Optional[str] = None) -> list[str]:
        """Push every pending change back to Monday.

        The ledger is read and cleared in one atomic step, so a change
        appended meanwhile lands in the next pass rather than getting
        lost or pushed twice.

        Args:
            skip_token: Change token to drop without pushing, because
                Monday already holds that value.

        Returns:
            The tokens processed in this pass, sorted.
        """
        changes = await self.store.getset(self.changes_key, "")
        self.stats.flush_passes += 1
        if not changes:
            return []

        tokens = sorted({t for t in changes.split(" ") if t} - {skip_token})
        if not tokens:
            return []

        logger.debug("Destaging %d change(s) for %s", len(tokens), self.board_name)
        results = await asyncio.gather(
            *(self._destage_one(token) for token in tokens), return_exceptions=True
        )
        for token, result in zip(tokens, results):
            if isinstance(result, BaseException):
                self.stats.changes_failed += 1
                logger.error("Change %s failed: %s", token, result)
        return tokens

    async def _destage_one(self, token: str) -> None:
        item_id, title = parse_change_token(token)
        raw = await self.store.hget(self.key_for_item(item_id), title)
        try:
            value = self.deserialize(raw, title)
        except (DecryptionError, ValueError) as exc:
            self.stats.changes_failed += 1
            logger.error("Dropping change %s, unreadable value: %s", token, exc)
            return

        try:
            board_id = await self.get_board_id()
            if title == NAME_COLUMN:
                await self.remote.update_item_name(board_id, item_id, value)
            elif title == GROUP_ID_COLUMN:
                await self.remote.move_item_to_group(item_id, value)
            else:
                await self.remote.update_column_values(board_id, item_id, {title: value})
        except RemoteError as exc:
            self.stats.changes_failed += 1
            if exc.transient:
                logger.warning("Change %s not pushed, requeued: %s", token, exc)
                await self.store.append(self.changes_key, " " + token)
            else:
                logger.error("Dropping change %s, rejected by Monday: %s", token, exc)
            return
        except NotFoundError as exc:
            self.stats.changes_failed += 1
            logger.error("Dropping change %s: %s", token, exc)
            return

        self.stats.changes_destaged += 1

    async def _record_change(self, item_id: str, title: str, update: Awaitable[Any]) -> None:
        # the value must be in the cache before its token is visible to a flush
        await update
        await self.store.append(self.changes_key, " " + change_token(item_id, title))

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def sync_board_item_addition_deletion(self) -> tuple[list[str], list[str]]:
        """Heal missed creations and deletions by diffing item ids.

        Returns:
            (ids added to the cache, ids removed from the cache).
        """
        if self._board_id is None:
            return [], []

        remote_ids, cached_ids = await asyncio.gather(
            self.remote.get_board_item_ids(self._board_id),
            self._cached_item_ids(),
        )
        remote_set, cached_set = set(remote_ids), set(cached_ids)
        self.stats.reconcile_passes += 1

        removed = sorted(cached_set - remote_set)
        for item_id in removed:
            logger.info(
                "Item %s removed from board %s, syncing cache", item_id, self.board_name
            )
            await self._delete_item(item_id)

        added: list[str] = []
        for item_id in sorted(remote_set - cached_set):
            if await self.store.hexists(self.key_for_item(item_id), "id"):
                continue
            logger.info(
                "New item %s detected in board %s, syncing cache", item_id, self.board_name
            )
            item = await self.remote.get_item(item_id)
            if item:
                await self._write_item(item)
                added.append(item_id)

        self.stats.items_added += len(added)
        self.stats.items_removed += len(removed)
        return added, removed

    # ------------------------------------------------------------------
    # Event ingestion
    # ------------------------------------------------------------------

    def _accepts(self, event: BoardEvent) -> bool:
        if event.board_id != self._board_id:
            return False
        if event.user_id is not None and event.user_id in self._ignored_users:
            self.stats.events_ignored += 1
            logger.info("Monday event skipped, change made by ignored user %s", event.user_id)
            return False
        return True

    async def _on_column_value_changed(self, event: ColumnValueChanged) -> None:
        if not self._accepts(event):
            return
        try:
            value = await normalize_value(
                event.column_type,
                event.column_title,
                event.value,
                lambda: self.remote.get_item(event.item_id),
            )
            logger.info(
                "Monday event - update cache for item %s (title: %s)",
                event.item_id,
                event.column_title,
            )
            await self.store.hset(
                self.key_for_item(event.item_id),
                event.column_title,
                self.serialize(value, event.column_title),
            )
            self.stats.events_applied += 1
            self._reset_reconcile_timer()
            await self.destage_changes(change_token(event.item_id, event.column_title))
        except Exception as exc:
            logger.error("Column change event for item %s failed: %s", event.item_id, exc)

    async def _on_item_created(self, event: ItemCreated) -> None:
        if not self._accepts(event):
            return
        try:
            logger.info(
                "Monday event - create item %s (%s) in cache", event.item_id, event.item_name
            )
            item = await self.remote.get_item(event.item_id)
            if item is None:
                logger.warning("Created item %s not found on Monday", event.item_id)
                return
            self._reset_reconcile_timer()
            await self._write_item(item)
            self.stats.events_applied += 1
        except Exception as exc:
            logger.error("Item created event for item %s failed: %s", event.item_id, exc)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _fetch_board_items(self) -> list[dict[str, Any]]:
        board = await self.remote.get_board_items(await self.get_board_id())
        if board is None or board.name != self.board_name:
            logger.warning("Cached id for board %s is stale, resolving again", self.board_name)
            self._board_id = None
            board = await self.remote.get_board_items(await self.get_board_id())

        if board is None or board.name != self.board_name:
            raise NotFoundError(f"Unable to read Monday board: {self.board_name}")
        return board.items

    async def _cached_item_ids(self) -> list[str]:
        keys = await self.store.keys(self.key_for_item())
        return [key.rsplit("/", 1)[-1] for key in keys]

    async def _read_item(self, item_id: str) -> Optional[dict[str, Any]]:
        raw = await self.store.hgetall(self.key_for_item(item_id))
        if not raw:
            return None
        return {title: self.deserialize(value, title) for title, value in raw.items()}

    async def _write_item(self, item: Mapping[str, Any]) -> None:
        item_id = str(item["id"])
        key = self.key_for_item(item_id)
        writes = [
            self.store.hset(key, title, self.serialize(value, title))
            for title, value in item.items()
        ]
        if item.get(NAME_COLUMN):
            writes.append(self.store.hset(self.names_key, item[NAME_COLUMN], item_id))
        await asyncio.gather(*writes)

    async def _delete_item(self, item_id: str) -> None:
        key = self.key_for_item(item_id)
        try:
            names = [self.deserialize(await self.store.hget(key, NAME_COLUMN), NAME_COLUMN)]
        except (DecryptionError, ValueError) as exc:
            logger.warning("Unreadable name on item %s, scanning name index: %s", item_id, exc)
            index = await self.store.hgetall(self.names_key)
            names = [name for name, indexed_id in index.items() if indexed_id == item_id]
        deletes = [self.store.delete(key)]
        deletes.extend(self.store.hdel(self.names_key, name) for name in names if name)
        await asyncio.gather(*deletes)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_board_id(self) -> int:
        """Resolve this board's id once and cache it.

        Raises:
            NotFoundError: If no board has this name.
        """
        if self._board_id is None:
            board_id = await self.remote.get_board_id_by_name(self.board_name)
            if board_id is None:
                raise NotFoundError(f"Monday board not found: {self.board_name}")
            self._board_id = board_id
        return self._board_id

    async def get_board_groups(self) -> list[tuple[str, str]]:
        """List (group id, group title) pairs of this board."""
        return await self.remote.get_board_groups(await self.get_board_id())

    async def get_board_items(self) -> list[dict[str, Any]]:
        """Return every cached item. Items vanishing mid-scan are skipped."""
        items = []
        for item_id in sorted(await self._cached_item_ids()):
            item = await self._read_item(item_id)
            if item:
                items.append(item)
        return items

    async def get_board_item_by_id(self, item_id: str) -> Optional[dict[str, Any]]:
        """Return one cached item, or None if it is not in the mirror.

        Raises:
            ItemValidationError: If the id is not 9 or 10 digits.
        """
        validate_id(item_id)
        return await self._read_item(item_id)

    async def get_board_item_by_name(self, name: str) -> Optional[dict[str, Any]]:
        """Return the cached item with this name, or None."""
        validate_name(name)
        item_id = await self.store.hget(self.names_key, name)
        if item_id is None:
            return None
        return await self.get_board_item_by_id(item_id)

    async def create_item(
        self,
        name: str,
        column_values: Optional[Mapping[str, Any]] = None,
        group_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """Create an item on Monday, then mirror it.

        Monday assigns the id, so this goes to Monday first and does not
        pass through the changes ledger.

        Args:
            name: Item name.
            column_values: Initial values by column title.
            group_id: Group to create the item in. Board default if omitted.

        Returns:
            The mirrored item.
        """
        validate_name(name)
        column_values = dict(column_values or {})
        board_id = await self.get_board_id()
        item_id = await self.remote.create_item(board_id, name, column_values, group_id)

        item = await self.remote.get_item(item_id)
        if item is None:
            item = {"id": item_id, NAME_COLUMN: name, **column_values}
        await self._write_item(item)
        return item

    async def set_column_value(self, item_id: str, title: str, value: Any) -> None:
        """Write a column value to the mirror now and to Monday on the next flush.

        Repeated writes to the same column between flushes collapse into
        one Monday update carrying the latest value.
        """
        validate_id(item_id)
        await self._record_change(
            item_id,
            title,
            self.store.hset(self.key_for_item(item_id), title, self.serialize(value, title)),
        )

    async def incr_column_value(self, item_id: str, title: str, delta: int = 1) -> None:
        """Atomically add to a numeric column; Monday catches up on the next flush.

        Raises:
            ItemValidationError: If the column is encrypted.
        """
        validate_id(item_id)
        if self.is_encrypted(title):
            raise ItemValidationError(f"Cannot increment encrypted column: {title}")
        await self._record_change(
            item_id,
            title,
            self.store.hincrby(self.key_for_item(item_id), title, delta),
        )

    async def set_item_name(self, item_id: str, name: str) -> None:
        """Rename an item in the mirror and queue the rename for Monday."""
        validate_id(item_id)
        validate_name(name)
        key = self.key_for_item(item_id)
        old = self.deserialize(await self.store.hget(key, NAME_COLUMN), NAME_COLUMN)
        await self.set_column_value(item_id, NAME_COLUMN, name)
        if old and old != name:
            await self.store.hdel(self.names_key, old)
        await self.store.hset(self.names_key, name, item_id)


async def create_and_initialize(
    config: MirrorConfig, remote: RemoteBoard, store: CacheStore
) -> MirrorEngine:
    """Build an engine and initialize it.

    Args:
        config: Mirror configuration.
        remote: Remote board adapter.
        store: Cache store.

    Returns:
        A running MirrorEngine.
    """
    engine = MirrorEngine(config, remote, store)
    return await engine.initialize()
