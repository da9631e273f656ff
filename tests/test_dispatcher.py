"""Tests for the dispatcher: delivery, retry policy, recurrence and pool bound."""

import pytest

from push_scheduler.dispatcher import Dispatcher
from push_scheduler.prometheus import SchedulerMetrics

from conftest import MASTER_KEY, SUBSCRIPTION, USER_ID, DummyResolver, DummyTransport, store_task

NOW = 1_750_000_000
TASK_UUID = "7a1b2c3d-4e5f-4a6b-8c7d-9e0f1a2b3c4d"


class Clock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_dispatcher(store, transport=None, resolver=None, clock=None, **kwargs):
    return Dispatcher(
        store=store,
        master_key=MASTER_KEY,
        transport=transport or DummyTransport(),
        resolver=resolver or DummyResolver(),
        tenant_id="tenant-a",
        pacing_seconds=0,
        retry_backoff_seconds=0,
        clock=clock or Clock(),
        **kwargs,
    )


class FlakyStore:
    """Wraps a task store and fails chosen operations."""

    def __init__(self, inner, fail_delete=False, fail_update=False, fail_fetch=0, fail_cleanup=False):
        self.inner = inner
        self.fail_cleanup = fail_cleanup
        self.fail_delete = fail_delete
        self.fail_update = fail_update
        self.fail_fetch = fail_fetch

    def __getattr__(self, name):
        return getattr(self.inner, name)

    async def delete_task_by_id(self, task_id):
        if self.fail_delete:
            raise RuntimeError("connection reset during delete")
        return await self.inner.delete_task_by_id(task_id)

    async def update_task_by_id(self, task_id, fields):
        if self.fail_update and fields.get("status") != "sent":
            raise RuntimeError("connection reset during update")
        return await self.inner.update_task_by_id(task_id, fields)

    async def get_task_by_uuid(self, uuid, user_id):
        if self.fail_fetch:
            self.fail_fetch -= 1
            raise RuntimeError("database unavailable")
        return await self.inner.get_task_by_uuid(uuid, user_id)

    async def cleanup_old_tasks(self, retention_days, now=None):
        if self.fail_cleanup:
            raise RuntimeError("database locked during cleanup")
        return await self.inner.cleanup_old_tasks(retention_days, now=now)


# --- deliver ---

@pytest.mark.asyncio
async def test_deliver_sends_one_notification_per_sentence(store):
    task = await store_task(store, NOW, userMessage="Hi! How are you? Fine.")
    row = await store.get_task_by_id(task["id"])
    transport = DummyTransport()
    result = await make_dispatcher(store, transport, DummyResolver("Hi! How are you? Fine.")).deliver(row)

    assert result.success is True
    assert result.messages_sent == 3
    messages = [s["message"] for s in transport.sent]
    assert [m["message"] for m in messages] == ["Hi!", "How are you?", "Fine."]
    assert [m["messageIndex"] for m in messages] == [1, 2, 3]
    first = messages[0]
    assert first["title"] == "From Rei"
    assert first["totalMessages"] == 3
    assert first["taskId"] == task["id"]
    assert first["source"] == "scheduled"
    assert first["messageSubtype"] == "chat"
    assert first["messageId"].startswith("msg_")
    assert first["messageId"].endswith(f"_{task['id']}_0")
    assert transport.sent[0]["subscription"] == SUBSCRIPTION


@pytest.mark.asyncio
async def test_deliver_reports_failure_without_raising(store):
    task = await store_task(store, NOW)
    row = await store.get_task_by_id(task["id"])
    result = await make_dispatcher(store, resolver=DummyResolver(error="AI API error: 500")).deliver(row)
    assert result.success is False
    assert "AI API error" in result.error


@pytest.mark.asyncio
async def test_deliver_fails_when_transport_not_configured(store):
    task = await store_task(store, NOW)
    row = await store.get_task_by_id(task["id"])
    transport = DummyTransport(missing=["VAPID_PRIVATE_KEY"])
    result = await make_dispatcher(store, transport).deliver(row)
    assert result.success is False
    assert transport.sent == []


# --- run_due_tasks ---

@pytest.mark.asyncio
async def test_one_shot_task_is_deleted_after_delivery(store):
    task = await store_task(store, NOW - 5)
    await store_task(store, NOW + 3600)
    metrics = SchedulerMetrics()
    report = await make_dispatcher(store, metrics=metrics).run_due_tasks()

    assert report.total_tasks == 1
    assert report.success_count == 1
    assert report.deleted_once_off_tasks == 1
    assert await store.get_task_by_id(task["id"]) is None
    assert b'psh_sent_total{tenant_id="tenant-a"} 1.0' in metrics.generate_latest()

    body = report.to_dict()
    assert body["details"]["deletedOnceOffTasks"] == 1
    assert body["processedAt"].endswith("Z")


@pytest.mark.asyncio
@pytest.mark.parametrize("recurrence,interval", [("daily", 86400), ("weekly", 7 * 86400)])
async def test_recurring_task_advances_from_previous_slot(store, recurrence, interval):
    scheduled_at = NOW - 3 * 3600
    task = await store_task(store, scheduled_at, recurrenceType=recurrence)
    await store.update_task_by_id(task["id"], {"retry_count": 2})

    report = await make_dispatcher(store).run_due_tasks()

    row = await store.get_task_by_id(task["id"])
    assert report.updated_recurring_tasks == 1
    assert row["status"] == "pending"
    assert row["next_send_at"] == scheduled_at + interval
    assert row["retry_count"] == 0


@pytest.mark.asyncio
async def test_failure_requeues_with_linear_backoff(store):
    task = await store_task(store, NOW - 1)
    transport = DummyTransport()
    transport.fail_always = True
    report = await make_dispatcher(store, transport).run_due_tasks()

    row = await store.get_task_by_id(task["id"])
    assert row["retry_count"] == 1
    assert row["next_send_at"] == NOW + 120
    assert report.failed_count == 1
    assert report.failed_tasks[0]["retryCount"] == 1
    assert report.failed_tasks[0]["nextRetryAt"].startswith("2025-06-15T")


@pytest.mark.asyncio
async def test_retry_bound_marks_failed_after_three_retries(store):
    task = await store_task(store, NOW - 1)
    transport = DummyTransport()
    transport.fail_always = True
    clock = Clock()
    dispatcher = make_dispatcher(store, transport, clock=clock)

    for expected_retry in (1, 2, 3):
        await dispatcher.run_due_tasks()
        row = await store.get_task_by_id(task["id"])
        assert row["status"] == "pending"
        assert row["retry_count"] == expected_retry
        assert row["next_send_at"] == int(clock.now) + expected_retry * 120
        clock.now = row["next_send_at"]

    report = await dispatcher.run_due_tasks()
    row = await store.get_task_by_id(task["id"])
    assert row["status"] == "failed"
    assert row["retry_count"] == 3
    assert report.failed_tasks[0]["status"] == "permanently_failed"

    clock.now += 3600
    assert (await dispatcher.run_due_tasks()).total_tasks == 0


@pytest.mark.asyncio
async def test_success_after_retries_removes_one_shot(store):
    task = await store_task(store, NOW - 1)
    transport = DummyTransport(failures=2)
    clock = Clock()
    dispatcher = make_dispatcher(store, transport, clock=clock)

    for _ in range(2):
        await dispatcher.run_due_tasks()
        clock.now = (await store.get_task_by_id(task["id"]))["next_send_at"]

    report = await dispatcher.run_due_tasks()
    assert report.success_count == 1
    assert await store.get_task_by_id(task["id"]) is None
    assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_post_send_failure_marks_sent_and_never_redelivers(store):
    task = await store_task(store, NOW - 1)
    transport = DummyTransport()
    flaky = FlakyStore(store, fail_delete=True)
    metrics = SchedulerMetrics()
    clock = Clock()
    dispatcher = make_dispatcher(flaky, transport, clock=clock, metrics=metrics)

    report = await dispatcher.run_due_tasks()

    row = await store.get_task_by_id(task["id"])
    assert row["status"] == "sent"
    assert report.failed_count == 1
    assert report.failed_tasks[0]["status"] == "post_send_cleanup_failed_marked_sent"
    assert report.failed_tasks[0]["messageDelivered"] is True
    assert b"psh_post_send_failures_total" in metrics.generate_latest()

    clock.now += 10 * 3600
    await dispatcher.run_due_tasks()
    assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_retry_update_failure_is_reported(store):
    task = await store_task(store, NOW - 1)
    transport = DummyTransport()
    transport.fail_always = True
    report = await make_dispatcher(FlakyStore(store, fail_update=True), transport).run_due_tasks()
    assert report.failed_tasks[0]["taskId"] == task["id"]
    assert report.failed_tasks[0]["status"] == "retry_update_failed"
    assert "connection reset" in report.failed_tasks[0]["updateError"]


@pytest.mark.asyncio
async def test_pool_never_exceeds_max_concurrency(store):
    for _ in range(20):
        await store_task(store, NOW - 1)
    transport = DummyTransport(delay=0.01)
    report = await make_dispatcher(store, transport, max_concurrency=8).run_due_tasks()
    assert report.success_count == 20
    assert 1 < transport.max_active <= 8


@pytest.mark.asyncio
async def test_batch_size_limits_run(store):
    for _ in range(5):
        await store_task(store, NOW - 1)
    report = await make_dispatcher(store, batch_size=3).run_due_tasks()
    assert report.total_tasks == 3


@pytest.mark.asyncio
async def test_cleanup_failure_still_returns_report(store, caplog):
    task = await store_task(store, NOW - 5)
    transport = DummyTransport()
    report = await make_dispatcher(FlakyStore(store, fail_cleanup=True), transport).run_due_tasks()

    assert report.success_count == 1
    assert report.deleted_once_off_tasks == 1
    assert report.processed_at.endswith("Z")
    assert transport.sent
    assert await store.get_task_by_id(task["id"]) is None
    assert "Retention cleanup for tenant tenant-a failed" in caplog.text


# --- process_by_uuid ---

@pytest.mark.asyncio
async def test_process_by_uuid_delivers_and_deletes(store):
    task = await store_task(store, NOW, uuid=TASK_UUID, messageType="instant")
    transport = DummyTransport()
    result = await make_dispatcher(store, transport).process_by_uuid(TASK_UUID, USER_ID)
    assert result == {"success": True, "messagesSent": 1, "retriesUsed": 0}
    assert await store.get_task_by_id(task["id"]) is None
    assert transport.sent[0]["message"]["source"] == "instant"


@pytest.mark.asyncio
async def test_process_by_uuid_retries_then_fails(store):
    task = await store_task(store, NOW, uuid=TASK_UUID, messageType="instant")
    transport = DummyTransport()
    transport.fail_always = True
    result = await make_dispatcher(store, transport).process_by_uuid(TASK_UUID, USER_ID, max_retries=2)
    assert result["success"] is False
    assert result["error"]["code"] == "PROCESSING_ERROR"
    assert result["error"]["retriesAttempted"] == 2
    row = await store.get_task_by_id(task["id"])
    assert row["status"] == "failed"
    assert row["retry_count"] == 2


@pytest.mark.asyncio
async def test_process_by_uuid_recovers_after_one_failure(store):
    await store_task(store, NOW, uuid=TASK_UUID, messageType="instant")
    result = await make_dispatcher(store, DummyTransport(failures=1)).process_by_uuid(TASK_UUID, USER_ID)
    assert result["success"] is True
    assert result["retriesUsed"] == 1


@pytest.mark.asyncio
async def test_process_by_uuid_missing_task(store):
    result = await make_dispatcher(store).process_by_uuid(TASK_UUID, USER_ID)
    assert result["error"]["code"] == "TASK_NOT_FOUND"


@pytest.mark.asyncio
async def test_process_by_uuid_fetch_errors(store):
    await store_task(store, NOW, uuid=TASK_UUID, messageType="instant")
    recovered = await make_dispatcher(FlakyStore(store, fail_fetch=1)).process_by_uuid(TASK_UUID, USER_ID)
    assert recovered["success"] is True

    await store_task(store, NOW, uuid="8b2c3d4e-5f6a-4b7c-9d8e-0f1a2b3c4d5e", messageType="instant")
    failed = await make_dispatcher(FlakyStore(store, fail_fetch=5)).process_by_uuid(
        "8b2c3d4e-5f6a-4b7c-9d8e-0f1a2b3c4d5e", USER_ID, max_retries=2
    )
    assert failed["error"]["code"] == "INTERNAL_ERROR"


@pytest.mark.asyncio
async def test_process_by_uuid_cleanup_failure_marks_sent(store):
    task = await store_task(store, NOW, uuid=TASK_UUID, messageType="instant")
    transport = DummyTransport()
    result = await make_dispatcher(FlakyStore(store, fail_delete=True), transport).process_by_uuid(
        TASK_UUID, USER_ID
    )
    assert result["error"]["code"] == "POST_SEND_CLEANUP_FAILED"
    assert (await store.get_task_by_id(task["id"]))["status"] == "sent"
    assert len(transport.sent) == 1


def test_max_concurrency_must_be_positive():
    with pytest.raises(ValueError):
        Dispatcher(store=None, master_key=MASTER_KEY, transport=DummyTransport(), resolver=DummyResolver(), max_concurrency=0)
