import asyncio
from pathlib import Path

import pytest

from receipt_capture.resilience.queue import MemoryQueue, SqliteQueue


@pytest.fixture(params=["memory", "sqlite"])
def queue(request, tmp_path: Path):
    if request.param == "memory":
        return MemoryQueue()
    (tmp_path / "README.md").write_text("test marker", encoding="utf-8")
    return SqliteQueue(str(tmp_path))


def test_drain_keeps_failures_and_reports_counts(queue):
    for i in range(5):
        queue.append("offline_data", {"n": i})
    delivered = []

    async def sync(payload):
        if payload["n"] in (1, 3):
            raise RuntimeError("still offline")
        delivered.append(payload["n"])

    report = asyncio.run(queue.drain("offline_data", sync))

    assert report.to_dict() == {"synced": 3, "errors": 2}
    assert delivered == [0, 2, 4]
    assert [item.payload["n"] for item in queue.read("offline_data")] == [1, 3]


def test_append_evicts_oldest_beyond_capacity(queue):
    for i in range(55):
        queue.append("cloud_fallback", {"n": i})
    items = queue.read("cloud_fallback")
    assert len(items) == 50
    assert items[0].payload["n"] == 5
    assert items[-1].payload["n"] == 54


def test_keys_are_isolated_and_clear_only_touches_one_key(queue):
    queue.append("offline_data", {"a": 1})
    queue.append("cloud_fallback", {"b": 2})
    queue.clear("offline_data")
    assert queue.size("offline_data") == 0
    assert queue.size("cloud_fallback") == 1


def test_concurrent_drains_deliver_each_item_once(queue):
    for i in range(4):
        queue.append("offline_data", {"n": i})
    delivered = []

    async def sync(payload):
        await asyncio.sleep(0)
        delivered.append(payload["n"])

    async def scenario():
        return await asyncio.gather(
            queue.drain("offline_data", sync),
            queue.drain("offline_data", sync),
        )

    first, second = asyncio.run(scenario())
    assert sorted(delivered) == [0, 1, 2, 3]
    assert first.synced + second.synced == 4
    assert queue.size("offline_data") == 0


def test_sqlite_queue_survives_reopen(tmp_path: Path):
    (tmp_path / "README.md").write_text("test marker", encoding="utf-8")
    SqliteQueue(str(tmp_path)).append("offline_data", {"operation": "create_transaction"})
    reopened = SqliteQueue(str(tmp_path))
    assert reopened.db_path.endswith("queue.sqlite3")
    assert [i.payload for i in reopened.read("offline_data")] == [{"operation": "create_transaction"}]
