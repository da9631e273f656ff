"""Tests for scheduling, updating, cancelling and listing tasks."""

import json

import pytest

from push_scheduler.crypto import decrypt_for_storage, derive_user_key
from push_scheduler.dispatcher import Dispatcher
from push_scheduler.errors import (
    ErrorCode,
    MessageSendFailed,
    TaskAlreadyCompleted,
    TaskNotFound,
    TaskUuidConflict,
    TransportConfigError,
    ValidationFailed,
)
from push_scheduler.lifecycle import MessageLifecycle
from push_scheduler.tenants import TenantContext
from push_scheduler.validation import format_iso8601

from conftest import MASTER_KEY, OTHER_USER_ID, USER_ID, DummyResolver, DummyTransport, iso, task_payload

NOW = 1_750_000_000
TASK_UUID = "7a1b2c3d-4e5f-4a6b-8c7d-9e0f1a2b3c4d"


def make_lifecycle(transport=None, resolver=None):
    transport = transport or DummyTransport()
    resolver = resolver or DummyResolver()

    def dispatcher_factory(ctx):
        return Dispatcher(
            store=ctx.store,
            master_key=ctx.master_key,
            transport=transport,
            resolver=resolver,
            tenant_id=ctx.tenant_id,
            pacing_seconds=0,
            retry_backoff_seconds=0,
            clock=lambda: NOW,
        )

    return MessageLifecycle(transport, dispatcher_factory, clock=lambda: NOW)


@pytest.fixture
def ctx(store):
    return TenantContext(tenant_id="tenant-a", token_type="tenant", store=store, master_key=MASTER_KEY)


def schedule_payload(**overrides):
    return task_payload(firstSendTime=iso(NOW + 60), **overrides)


def stored_payload(row, user_id=USER_ID):
    return json.loads(decrypt_for_storage(row["encrypted_payload"], derive_user_key(user_id, MASTER_KEY)))


# --- schedule ---

@pytest.mark.asyncio
async def test_schedule_fixed_message_is_stored_encrypted(ctx, store):
    outcome = await make_lifecycle().schedule(ctx, USER_ID, schedule_payload(uuid=TASK_UUID))

    assert outcome.status_code == 201
    assert outcome.data["uuid"] == TASK_UUID
    assert outcome.data["status"] == "pending"
    assert outcome.data["contactName"] == "Rei"
    assert outcome.data["nextSendAt"] == format_iso8601(NOW + 60)

    row = await store.get_task_by_uuid(TASK_UUID, USER_ID)
    assert row["next_send_at"] == NOW + 60
    assert row["message_type"] == "fixed"
    assert "Good morning" not in row["encrypted_payload"]
    payload = stored_payload(row)
    assert payload["userMessage"] == "Good morning!"
    assert payload["messageSubtype"] == "chat"


@pytest.mark.asyncio
async def test_schedule_generates_uuid(ctx):
    outcome = await make_lifecycle().schedule(ctx, USER_ID, schedule_payload())
    assert len(outcome.data["uuid"]) == 36


@pytest.mark.asyncio
async def test_schedule_rejects_past_send_time(ctx, store):
    with pytest.raises(ValidationFailed) as excinfo:
        await make_lifecycle().schedule(ctx, USER_ID, task_payload(firstSendTime=iso(NOW - 60)))
    assert excinfo.value.code == ErrorCode.INVALID_TIMESTAMP
    assert (await store.list_tasks(USER_ID))["total"] == 0


@pytest.mark.asyncio
async def test_schedule_duplicate_uuid_conflicts(ctx):
    lifecycle = make_lifecycle()
    await lifecycle.schedule(ctx, USER_ID, schedule_payload(uuid=TASK_UUID))
    with pytest.raises(TaskUuidConflict) as excinfo:
        await lifecycle.schedule(ctx, USER_ID, schedule_payload(uuid=TASK_UUID))
    assert excinfo.value.details == {"uuid": TASK_UUID}


@pytest.mark.asyncio
async def test_instant_message_is_delivered_and_removed(ctx, store):
    transport = DummyTransport()
    outcome = await make_lifecycle(transport, DummyResolver("One. Two.")).schedule(
        ctx, USER_ID, schedule_payload(uuid=TASK_UUID, messageType="instant")
    )
    assert outcome.status_code == 200
    assert outcome.data["status"] == "sent"
    assert outcome.data["messagesSent"] == 2
    assert outcome.data["retriesUsed"] == 0
    assert len(transport.sent) == 2
    assert await store.get_task_by_uuid_only(TASK_UUID) is None


@pytest.mark.asyncio
async def test_instant_message_needs_configured_transport(ctx, store):
    transport = DummyTransport(missing=["VAPID_PUBLIC_KEY"])
    with pytest.raises(TransportConfigError):
        await make_lifecycle(transport).schedule(ctx, USER_ID, schedule_payload(messageType="instant"))
    assert (await store.list_tasks(USER_ID))["total"] == 0


@pytest.mark.asyncio
async def test_instant_failure_marks_task_failed(ctx, store):
    transport = DummyTransport()
    transport.fail_always = True
    with pytest.raises(MessageSendFailed) as excinfo:
        await make_lifecycle(transport).schedule(
            ctx, USER_ID, schedule_payload(uuid=TASK_UUID, messageType="instant")
        )
    assert excinfo.value.details["code"] == "PROCESSING_ERROR"
    assert excinfo.value.status_code == 500
    assert await store.get_task_status(TASK_UUID, USER_ID) == "failed"


# --- update ---

@pytest.mark.asyncio
async def test_update_merges_fields_and_moves_send_time(ctx, store):
    lifecycle = make_lifecycle()
    await lifecycle.schedule(ctx, USER_ID, schedule_payload(uuid=TASK_UUID))

    result = await lifecycle.update(
        ctx,
        USER_ID,
        TASK_UUID,
        {"userMessage": "Good evening!", "recurrenceType": "daily", "nextSendAt": iso(NOW + 7200)},
    )
    assert result["uuid"] == TASK_UUID
    assert set(result["updatedFields"]) == {"userMessage", "recurrenceType", "nextSendAt"}
    assert result["updatedAt"].endswith("Z")

    row = await store.get_task_by_uuid(TASK_UUID, USER_ID)
    assert row["next_send_at"] == NOW + 7200
    payload = stored_payload(row)
    assert payload["userMessage"] == "Good evening!"
    assert payload["recurrenceType"] == "daily"
    assert payload["contactName"] == "Rei"


@pytest.mark.asyncio
async def test_update_rejects_bad_data(ctx):
    lifecycle = make_lifecycle()
    await lifecycle.schedule(ctx, USER_ID, schedule_payload(uuid=TASK_UUID))
    with pytest.raises(ValidationFailed) as excinfo:
        await lifecycle.update(ctx, USER_ID, TASK_UUID, {"recurrenceType": "hourly"})
    assert excinfo.value.code == ErrorCode.INVALID_UPDATE_DATA


@pytest.mark.asyncio
async def test_update_rejects_non_text_message_fields(ctx, store):
    lifecycle = make_lifecycle()
    await lifecycle.schedule(ctx, USER_ID, schedule_payload(uuid=TASK_UUID))
    before = (await store.get_task_by_uuid(TASK_UUID, USER_ID))["encrypted_payload"]

    for updates, fields in (
        ({"userMessage": 123}, ["userMessage"]),
        ({"completePrompt": ["a"], "userMessage": {"text": "x"}}, ["userMessage", "completePrompt"]),
    ):
        with pytest.raises(ValidationFailed) as excinfo:
            await lifecycle.update(ctx, USER_ID, TASK_UUID, updates)
        assert excinfo.value.code == ErrorCode.INVALID_UPDATE_DATA
        assert excinfo.value.details == {"invalidFields": fields}

    assert (await store.get_task_by_uuid(TASK_UUID, USER_ID))["encrypted_payload"] == before


@pytest.mark.asyncio
async def test_update_missing_or_completed_task(ctx, store):
    lifecycle = make_lifecycle()
    with pytest.raises(TaskNotFound):
        await lifecycle.update(ctx, USER_ID, TASK_UUID, {"userMessage": "x"})

    await lifecycle.schedule(ctx, USER_ID, schedule_payload(uuid=TASK_UUID))
    row = await store.get_task_by_uuid(TASK_UUID, USER_ID)
    await store.update_task_by_id(row["id"], {"status": "sent"})

    with pytest.raises(TaskAlreadyCompleted) as excinfo:
        await lifecycle.update(ctx, USER_ID, TASK_UUID, {"userMessage": "x"})
    assert excinfo.value.details == {"status": "sent"}

    with pytest.raises(TaskNotFound):
        await lifecycle.update(ctx, OTHER_USER_ID, TASK_UUID, {"userMessage": "x"})


# --- cancel ---

@pytest.mark.asyncio
async def test_cancel_deletes_task_once(ctx, store):
    lifecycle = make_lifecycle()
    await lifecycle.schedule(ctx, USER_ID, schedule_payload(uuid=TASK_UUID))

    with pytest.raises(TaskNotFound):
        await lifecycle.cancel(ctx, OTHER_USER_ID, TASK_UUID)

    result = await lifecycle.cancel(ctx, USER_ID, TASK_UUID)
    assert result == {"uuid": TASK_UUID, "message": "Task cancelled", "deletedAt": format_iso8601(NOW)}
    assert await store.get_task_by_uuid_only(TASK_UUID) is None

    with pytest.raises(TaskNotFound):
        await lifecycle.cancel(ctx, USER_ID, TASK_UUID)


# --- list ---

@pytest.mark.asyncio
async def test_list_messages_pages_and_decrypts(ctx):
    lifecycle = make_lifecycle()
    for name in ("Ann", "Bo", "Cy"):
        await lifecycle.schedule(ctx, USER_ID, schedule_payload(contactName=name))
    await lifecycle.schedule(ctx, OTHER_USER_ID, schedule_payload(contactName="Zed"))

    page = await lifecycle.list_messages(ctx, USER_ID, limit=2, offset=0)
    assert page["pagination"] == {"total": 3, "limit": 2, "offset": 0, "hasMore": True}
    assert len(page["tasks"]) == 2
    summary = page["tasks"][0]
    assert summary["contactName"] in {"Ann", "Bo", "Cy"}
    assert summary["status"] == "pending"
    assert summary["nextSendAt"] == format_iso8601(NOW + 60)
    assert "userMessage" not in summary

    last = await lifecycle.list_messages(ctx, USER_ID, limit=2, offset=2)
    assert last["pagination"]["hasMore"] is False
    assert len(last["tasks"]) == 1


@pytest.mark.asyncio
async def test_list_messages_limits(ctx):
    lifecycle = make_lifecycle()
    page = await lifecycle.list_messages(ctx, USER_ID, status="failed", limit=500)
    assert page["pagination"]["limit"] == 100
    assert page["tasks"] == []

    for kwargs in ({"status": "done"}, {"limit": 0}, {"offset": -1}):
        with pytest.raises(ValidationFailed) as excinfo:
            await lifecycle.list_messages(ctx, USER_ID, **kwargs)
        assert excinfo.value.code == ErrorCode.INVALID_PARAMETERS
