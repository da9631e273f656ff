"""Shared fakes and fixtures."""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Dict, List

import pytest_asyncio

from push_scheduler.crypto import derive_user_key, encrypt_for_storage
from push_scheduler.errors import ContentGenerationError, TransportError
from push_scheduler.models import TaskData
from push_scheduler.sql import SqliteAdapter
from push_scheduler.tables import TasksTable
from push_scheduler.transport import PushTransport

MASTER_KEY = "ab" * 32
USER_ID = "6f1c3e4a-2b7d-4c8e-9a1f-0d2e3f4a5b6c"
OTHER_USER_ID = "0b8e6a52-7c1d-4f3a-8e2b-5d6c7a8b9c0d"
KEK = "test-key-encryption-key-with-enough-length"
SIGNING_KEY = "test-token-signing-key-with-enough-length"
SUBSCRIPTION = {
    "endpoint": "https://push.example.com/sub/1",
    "keys": {"p256dh": "BPk", "auth": "a1b2"},
}


class DummyTransport(PushTransport):
    """Records deliveries; can be told to fail or to report missing keys."""

    def __init__(self, missing: List[str] | None = None, failures: int = 0, delay: float = 0.0):
        self.sent: List[Dict[str, Any]] = []
        self.missing = list(missing or [])
        self.failures = failures
        self.fail_always = False
        self.delay = delay
        self.active = 0
        self.max_active = 0

    def missing_keys(self) -> List[str]:
        return list(self.missing)

    async def send(self, subscription, message):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_always or self.failures > 0:
                self.failures -= 1
                raise TransportError("push service answered 503", status_code=503)
            self.sent.append({"subscription": subscription, "message": json.loads(message)})
        finally:
            self.active -= 1


class DummyResolver:
    """Returns a fixed text, or raises when ``error`` is set."""

    def __init__(self, text: str = "Hello there.", error: str | None = None):
        self.text = text
        self.error = error
        self.calls = 0

    async def resolve(self, data):
        self.calls += 1
        if self.error:
            raise ContentGenerationError(self.error)
        return self.text


def task_payload(**overrides) -> Dict[str, Any]:
    payload = {
        "contactName": "Rei",
        "messageType": "fixed",
        "userMessage": "Good morning!",
        "recurrenceType": "none",
        "pushSubscription": SUBSCRIPTION,
    }
    payload.update(overrides)
    return payload


def iso(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat().replace("+00:00", "Z")


async def store_task(
    store: TasksTable,
    next_send_at: int,
    user_id: str = USER_ID,
    uuid: str | None = None,
    master_key: str = MASTER_KEY,
    **overrides,
) -> Dict[str, Any]:
    """Insert an encrypted pending task and return the created row."""
    data = TaskData.model_validate(task_payload(**overrides))
    encrypted = encrypt_for_storage(
        data.model_dump_json(by_alias=True), derive_user_key(user_id, master_key)
    )
    return await store.create_task(user_id, uuid, encrypted, next_send_at, data.message_type)


@pytest_asyncio.fixture
async def store(tmp_path):
    """Task store on a fresh SQLite file."""
    table = TasksTable(SqliteAdapter(str(tmp_path / "tenant.db")))
    await table.init_schema()
    yield table
    await table.close()
