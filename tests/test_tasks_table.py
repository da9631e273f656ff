"""Tests for the task store on SQLite."""

import pytest

from push_scheduler.errors import DuplicateKeyError
from push_scheduler.sql import SqliteAdapter
from push_scheduler.tables import TasksTable, create_task_store

from conftest import OTHER_USER_ID, USER_ID, store_task

NOW = 1_750_000_000
TASK_UUID = "7a1b2c3d-4e5f-4a6b-8c7d-9e0f1a2b3c4d"


@pytest.mark.asyncio
async def test_init_schema_is_idempotent(store):
    report = await store.init_schema()
    assert report["indexesFailed"] == 0
    assert report["indexesCreated"] == len(report["indexes"])
    assert any(idx["critical"] for idx in report["indexes"])


@pytest.mark.asyncio
async def test_create_task_returns_row(store):
    created = await store_task(store, NOW + 60, uuid=TASK_UUID)
    assert created["id"] > 0
    assert created["uuid"] == TASK_UUID
    assert created["next_send_at"] == NOW + 60
    assert created["status"] == "pending"


@pytest.mark.asyncio
async def test_duplicate_uuid_raises(store):
    await store_task(store, NOW, uuid=TASK_UUID)
    with pytest.raises(DuplicateKeyError):
        await store_task(store, NOW, uuid=TASK_UUID)


@pytest.mark.asyncio
async def test_get_task_by_uuid_is_scoped_to_user_and_pending(store):
    created = await store_task(store, NOW, uuid=TASK_UUID)
    assert (await store.get_task_by_uuid(TASK_UUID, USER_ID))["id"] == created["id"]
    assert await store.get_task_by_uuid(TASK_UUID, OTHER_USER_ID) is None
    assert (await store.get_task_by_uuid_only(TASK_UUID))["id"] == created["id"]

    await store.update_task_by_id(created["id"], {"status": "sent"})
    assert await store.get_task_by_uuid(TASK_UUID, USER_ID) is None
    assert await store.get_task_status(TASK_UUID, USER_ID) == "sent"
    assert await store.get_task_status("missing", USER_ID) is None


@pytest.mark.asyncio
async def test_get_pending_tasks_only_due_in_order(store):
    late = await store_task(store, NOW - 10)
    early = await store_task(store, NOW - 100)
    await store_task(store, NOW + 100)
    failed = await store_task(store, NOW - 50)
    await store.update_task_by_id(failed["id"], {"status": "failed"})

    due = await store.get_pending_tasks(limit=50, now=NOW)
    assert [t["id"] for t in due] == [early["id"], late["id"]]
    assert len(await store.get_pending_tasks(limit=1, now=NOW)) == 1


@pytest.mark.asyncio
async def test_list_tasks_filters_and_counts(store):
    for offset in range(5):
        await store_task(store, NOW + offset)
    await store_task(store, NOW, user_id=OTHER_USER_ID)
    first = (await store.list_tasks(USER_ID, limit=2))["tasks"][0]
    await store.update_task_by_id(first["id"], {"status": "failed"})

    page = await store.list_tasks(USER_ID, status="all", limit=2, offset=0)
    assert page["total"] == 5
    assert len(page["tasks"]) == 2

    pending = await store.list_tasks(USER_ID, status="pending", limit=10, offset=0)
    assert pending["total"] == 4
    assert all(t["status"] == "pending" for t in pending["tasks"])


@pytest.mark.asyncio
async def test_update_task_by_id_rejects_unknown_columns(store):
    created = await store_task(store, NOW)
    with pytest.raises(ValueError):
        await store.update_task_by_id(created["id"], {"user_id": OTHER_USER_ID})
    assert await store.update_task_by_id(9999, {"status": "sent"}) is None

    updated = await store.update_task_by_id(created["id"], {"retry_count": 2, "next_send_at": NOW + 240})
    assert updated["retry_count"] == 2
    assert updated["next_send_at"] == NOW + 240


@pytest.mark.asyncio
async def test_update_task_by_uuid_only_pending(store):
    created = await store_task(store, NOW, uuid=TASK_UUID)
    result = await store.update_task_by_uuid(
        TASK_UUID, USER_ID, "aa:bb:cc", {"next_send_at": NOW + 3600}
    )
    assert result["uuid"] == TASK_UUID
    row = await store.get_task_by_id(created["id"])
    assert row["encrypted_payload"] == "aa:bb:cc"
    assert row["next_send_at"] == NOW + 3600

    with pytest.raises(ValueError):
        await store.update_task_by_uuid(TASK_UUID, USER_ID, "x", {"status": "sent"})

    await store.update_task_by_id(created["id"], {"status": "sent"})
    assert await store.update_task_by_uuid(TASK_UUID, USER_ID, "dd:ee:ff") is None


@pytest.mark.asyncio
async def test_delete_by_id_and_uuid(store):
    first = await store_task(store, NOW)
    await store_task(store, NOW, uuid=TASK_UUID)
    assert await store.delete_task_by_id(first["id"]) is True
    assert await store.delete_task_by_id(first["id"]) is False
    assert await store.delete_task_by_uuid(TASK_UUID, OTHER_USER_ID) is False
    assert await store.delete_task_by_uuid(TASK_UUID, USER_ID) is True


@pytest.mark.asyncio
async def test_cleanup_old_tasks_removes_only_old_terminal_rows(tmp_path):
    clock = {"now": NOW}
    store = TasksTable(SqliteAdapter(str(tmp_path / "cleanup.db")), clock=lambda: clock["now"])
    await store.init_schema()

    old_sent = await store_task(store, NOW)
    old_failed = await store_task(store, NOW)
    old_pending = await store_task(store, NOW)
    await store.update_task_by_id(old_sent["id"], {"status": "sent"})
    await store.update_task_by_id(old_failed["id"], {"status": "failed"})

    clock["now"] = NOW + 8 * 86400
    recent = await store_task(store, NOW)
    await store.update_task_by_id(recent["id"], {"status": "sent"})

    removed = await store.cleanup_old_tasks(7)
    assert removed == 2
    assert await store.get_task_by_id(old_pending["id"]) is not None
    assert await store.get_task_by_id(recent["id"]) is not None
    assert await store.get_task_by_id(old_sent["id"]) is None


def test_create_task_store_rejects_unknown_driver():
    with pytest.raises(ValueError):
        create_task_store("neon", "postgres://x")
    assert isinstance(create_task_store("sqlite", "/tmp/x.db"), TasksTable)


@pytest.mark.asyncio
async def test_sqlite_adapter_context_and_upsert(tmp_path):
    async with SqliteAdapter(str(tmp_path / "kv.db")) as db:
        await db.execute_script("CREATE TABLE kv (k TEXT PRIMARY KEY, v TEXT)")
        await db.upsert("kv", {"k": "a", "v": "1"}, ["k"])
        await db.upsert("kv", {"k": "a", "v": "2"}, ["k"])
        assert await db.fetch_all("SELECT k, v FROM kv") == [{"k": "a", "v": "2"}]
