"""Key-scoped durable queues for payloads awaiting later delivery."""

from __future__ import annotations

import asyncio
import itertools
import json
import os
import sqlite3
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..logging import get_logger
from ..paths import var_dir

LOG = get_logger("resilience-queue")

DEFAULT_MAX_ITEMS = 50
DB_FOLDERNAME = "queue_db"
DB_FILENAME = "queue.sqlite3"
TABLE_NAME = "queued_payloads"

SyncFunction = Callable[[Dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class QueueItem:
    item_id: int
    key: str
    payload: Dict[str, Any]
    created_at: str


@dataclass(frozen=True)
class SyncReport:
    synced: int
    errors: int

    def to_dict(self) -> Dict[str, int]:
        return {"synced": self.synced, "errors": self.errors}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class DurableQueue:
    """Append/read/drain/clear over per-key FIFO lists capped at ``max_items``.

    Subclasses provide storage; draining is shared. Drains on the same key are
    serialised, and an item is removed only once its sync call has returned,
    so no item is delivered twice.
    """

    def __init__(self, *, max_items: int = DEFAULT_MAX_ITEMS) -> None:
        self.max_items = max_items
        self._locks: Dict[str, asyncio.Lock] = {}

    # ---------- storage hooks ----------
    def _insert(self, key: str, payload: Dict[str, Any], created_at: str) -> int:
        raise NotImplementedError

    def _evict(self, key: str) -> int:
        raise NotImplementedError

    def read(self, key: str) -> List[QueueItem]:
        raise NotImplementedError

    def remove(self, key: str, item_id: int) -> bool:
        raise NotImplementedError

    def clear(self, key: str) -> None:
        raise NotImplementedError

    # ---------- shared behaviour ----------
    def append(self, key: str, payload: Dict[str, Any]) -> QueueItem:
        created_at = _now_iso()
        item_id = self._insert(key, payload, created_at)
        evicted = self._evict(key)
        if evicted:
            LOG.warning(f"Queue '{key}' over capacity; evicted {evicted} oldest item(s)")
        LOG.info(f"Stored payload locally with key: {key} (id={item_id})")
        return QueueItem(item_id=item_id, key=key, payload=payload, created_at=created_at)

    def size(self, key: str) -> int:
        return len(self.read(key))

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def drain(self, key: str, sync: SyncFunction) -> SyncReport:
        """Submit each queued payload once; keep failures queued. Never raises."""
        async with self._lock_for(key):
            items = self.read(key)
            if not items:
                return SyncReport(synced=0, errors=0)
            LOG.info(f"Draining {len(items)} item(s) from queue '{key}'")
            synced = 0
            errors = 0
            for item in items:
                try:
                    await sync(item.payload)
                except Exception as exc:
                    errors += 1
                    LOG.warning(f"Failed to sync queued item {item.item_id} from '{key}': {exc}")
                    continue
                self.remove(key, item.item_id)
                synced += 1
            LOG.info(f"Queue '{key}' drained: synced={synced} errors={errors}")
            return SyncReport(synced=synced, errors=errors)


class MemoryQueue(DurableQueue):
    """Process-local queue; contents vanish with the process."""

    def __init__(self, *, max_items: int = DEFAULT_MAX_ITEMS) -> None:
        super().__init__(max_items=max_items)
        self._items: Dict[str, "OrderedDict[int, QueueItem]"] = {}
        self._ids = itertools.count(1)

    def _insert(self, key: str, payload: Dict[str, Any], created_at: str) -> int:
        item_id = next(self._ids)
        bucket = self._items.setdefault(key, OrderedDict())
        bucket[item_id] = QueueItem(item_id=item_id, key=key, payload=payload, created_at=created_at)
        return item_id

    def _evict(self, key: str) -> int:
        bucket = self._items.get(key)
        evicted = 0
        while bucket and len(bucket) > self.max_items:
            bucket.popitem(last=False)
            evicted += 1
        return evicted

    def read(self, key: str) -> List[QueueItem]:
        return list(self._items.get(key, {}).values())

    def remove(self, key: str, item_id: int) -> bool:
        bucket = self._items.get(key)
        if not bucket or item_id not in bucket:
            return False
        del bucket[item_id]
        return True

    def clear(self, key: str) -> None:
        self._items.pop(key, None)
        LOG.info(f"Local data cleared for key: {key}")


class SqliteQueue(DurableQueue):
    """Queue persisted in SQLite under ``var/queue_db`` at the project root."""

    def __init__(self, root_dir: str, *, db_path: Optional[str] = None, max_items: int = DEFAULT_MAX_ITEMS) -> None:
        super().__init__(max_items=max_items)
        if db_path is None:
            folder = os.path.join(var_dir(root_dir), DB_FOLDERNAME)
            os.makedirs(folder, exist_ok=True)
            db_path = os.path.join(folder, DB_FILENAME)
        self.db_path = db_path
        self._ensure_schema()
        LOG.info(f"Durable queue ready at {self.db_path}")

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _ensure_schema(self) -> None:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    queue_key TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                """
            )
            cur.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{TABLE_NAME}_key ON {TABLE_NAME}(queue_key, id);"
            )
            conn.commit()
        finally:
            conn.close()

    def _insert(self, key: str, payload: Dict[str, Any], created_at: str) -> int:
        conn = self._connect()
        try:
            cur = conn.execute(
                f"INSERT INTO {TABLE_NAME}(queue_key, payload_json, created_at) VALUES (?,?,?)",
                (key, json.dumps(payload, ensure_ascii=False), created_at),
            )
            conn.commit()
            return int(cur.lastrowid)
        finally:
            conn.close()

    def _evict(self, key: str) -> int:
        conn = self._connect()
        try:
            cur = conn.execute(
                f"""
                DELETE FROM {TABLE_NAME}
                WHERE queue_key=? AND id NOT IN (
                    SELECT id FROM {TABLE_NAME} WHERE queue_key=? ORDER BY id DESC LIMIT ?
                )
                """,
                (key, key, self.max_items),
            )
            conn.commit()
            return int(cur.rowcount or 0)
        finally:
            conn.close()

    def read(self, key: str) -> List[QueueItem]:
        conn = self._connect()
        try:
            rows = conn.execute(
                f"SELECT id, payload_json, created_at FROM {TABLE_NAME} WHERE queue_key=? ORDER BY id",
                (key,),
            ).fetchall()
        finally:
            conn.close()
        items: List[QueueItem] = []
        for item_id, payload_json, created_at in rows:
            try:
                payload = json.loads(payload_json)
            except json.JSONDecodeError:
                LOG.warning(f"Skipping unreadable queued item {item_id} in '{key}'")
                continue
            items.append(QueueItem(item_id=int(item_id), key=key, payload=payload, created_at=created_at))
        return items

    def remove(self, key: str, item_id: int) -> bool:
        conn = self._connect()
        try:
            cur = conn.execute(f"DELETE FROM {TABLE_NAME} WHERE queue_key=? AND id=?", (key, int(item_id)))
            conn.commit()
            return bool(cur.rowcount)
        finally:
            conn.close()

    def clear(self, key: str) -> None:
        conn = self._connect()
        try:
            conn.execute(f"DELETE FROM {TABLE_NAME} WHERE queue_key=?", (key,))
            conn.commit()
        finally:
            conn.close()
        LOG.info(f"Local data cleared for key: {key}")
