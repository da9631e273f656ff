# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Scheduled tasks table: the storage contract used by the scheduling core."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from ..errors import SchemaInitError
from ..logger import get_logger
from ..sql import DbAdapter, Table, create_adapter

logger = get_logger("TasksTable")

MESSAGE_TYPES = ("fixed", "prompted", "auto", "instant")
TASK_STATUSES = ("pending", "sent", "failed")

TASK_COLUMNS = (
    "id, user_id, uuid, encrypted_payload, message_type, "
    "next_send_at, status, retry_count, created_at, updated_at"
)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS scheduled_messages (
    id {pk},
    user_id VARCHAR(255) NOT NULL,
    uuid VARCHAR(36),
    encrypted_payload TEXT NOT NULL,
    message_type VARCHAR(50) NOT NULL
        CHECK (message_type IN ('fixed', 'prompted', 'auto', 'instant')),
    next_send_at BIGINT NOT NULL,
    status VARCHAR(50) NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'sent', 'failed')),
    retry_count INTEGER NOT NULL DEFAULT 0,
    created_at BIGINT NOT NULL,
    updated_at BIGINT NOT NULL
)
"""

_PRIMARY_KEYS = {
    "sqlite": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "postgresql": "SERIAL PRIMARY KEY",
}

# (name, sql, critical)
INDEXES: tuple[tuple[str, str, bool], ...] = (
    (
        "idx_pending_tasks_optimized",
        "CREATE INDEX IF NOT EXISTS idx_pending_tasks_optimized "
        "ON scheduled_messages (status, next_send_at, id, retry_count) "
        "WHERE status = 'pending'",
        False,
    ),
    (
        "idx_cleanup_completed",
        "CREATE INDEX IF NOT EXISTS idx_cleanup_completed "
        "ON scheduled_messages (status, updated_at) "
        "WHERE status IN ('sent', 'failed')",
        False,
    ),
    (
        "idx_failed_retry",
        "CREATE INDEX IF NOT EXISTS idx_failed_retry "
        "ON scheduled_messages (status, retry_count, next_send_at) "
        "WHERE status = 'failed' AND retry_count < 3",
        False,
    ),
    (
        "idx_user_id",
        "CREATE INDEX IF NOT EXISTS idx_user_id ON scheduled_messages (user_id)",
        False,
    ),
    (
        "uidx_uuid",
        "CREATE UNIQUE INDEX IF NOT EXISTS uidx_uuid "
        "ON scheduled_messages (uuid) WHERE uuid IS NOT NULL",
        True,
    ),
)

# Columns the dispatcher may change through update_task_by_id.
UPDATABLE_BY_ID = frozenset({"status", "retry_count", "next_send_at"})
UPDATABLE_BY_UUID_EXTRA = frozenset({"next_send_at"})


class TasksTable(Table):
    """Scheduled messages of one tenant database.

    Fields:
    - id: storage-assigned primary key
    - user_id: end-user identifier (UUID v4)
    - uuid: client-visible identifier, unique when not NULL
    - encrypted_payload: storage envelope with every sensitive field
    - message_type: fixed / prompted / auto / instant
    - next_send_at: epoch seconds of the next delivery
    - status: pending / sent / failed
    - retry_count: failed attempts since the last success (0-3)
    - created_at, updated_at: epoch seconds

    Unique violations surface as :class:`~push_scheduler.errors.DuplicateKeyError`
    from the adapter.
    """

    name = "scheduled_messages"

    def __init__(self, db: DbAdapter, clock: Callable[[], float] = time.time) -> None:
        super().__init__(db)
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    async def close(self) -> None:
        await self.db.close()

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    async def init_schema(self) -> dict[str, Any]:
        """Create table and indexes. Safe to run repeatedly.

        Returns:
            Report with ``indexesCreated``, ``indexesFailed`` and per-index
            ``indexes`` entries.

        Raises:
            SchemaInitError: A critical index (uuid uniqueness) could not be
                created, typically because duplicate uuids already exist.
        """
        pk = _PRIMARY_KEYS.get(self.db.dialect, _PRIMARY_KEYS["sqlite"])
        await self.execute(_CREATE_TABLE.format(pk=pk))

        results: list[dict[str, Any]] = []
        for name, sql, critical in INDEXES:
            try:
                await self.execute(sql)
            except Exception as exc:
                logger.warning("Index %s creation failed: %s", name, exc)
                results.append(
                    {"name": name, "status": "failed", "critical": critical, "error": str(exc)}
                )
            else:
                results.append({"name": name, "status": "success", "critical": critical})

        critical_failures = [r["name"] for r in results if r["critical"] and r["status"] == "failed"]
        if critical_failures:
            raise SchemaInitError(
                f"Critical index creation failed ({', '.join(critical_failures)}). "
                "Remove duplicate uuid rows and run init_schema again."
            )
        return {
            "indexesCreated": sum(1 for r in results if r["status"] == "success"),
            "indexesFailed": sum(1 for r in results if r["status"] == "failed"),
            "indexes": results,
        }

    # -------------------------------------------------------------------------
    # Create / read
    # -------------------------------------------------------------------------

    async def create_task(
        self,
        user_id: str,
        uuid: str | None,
        encrypted_payload: str,
        next_send_at: int,
        message_type: str,
    ) -> dict[str, Any] | None:
        """Insert a pending task and return ``{id, uuid, next_send_at, status, created_at}``."""
        now = self._now()
        task_id = await self.insert(
            {
                "user_id": user_id,
                "uuid": uuid,
                "encrypted_payload": encrypted_payload,
                "next_send_at": int(next_send_at),
                "message_type": message_type,
                "status": "pending",
                "retry_count": 0,
                "created_at": now,
                "updated_at": now,
            }
        )
        if task_id is None:
            return None
        return await self.fetch_one(
            "SELECT id, uuid, next_send_at, status, created_at "
            "FROM scheduled_messages WHERE id = :id",
            {"id": task_id},
        )

    async def get_task_by_uuid(self, uuid: str, user_id: str) -> dict[str, Any] | None:
        """Pending task with ``uuid`` owned by ``user_id``."""
        return await self.fetch_one(
            f"""
            SELECT {TASK_COLUMNS} FROM scheduled_messages
            WHERE uuid = :uuid AND user_id = :user_id AND status = 'pending'
            LIMIT 1
            """,
            {"uuid": uuid, "user_id": user_id},
        )

    async def get_task_by_uuid_only(self, uuid: str) -> dict[str, Any] | None:
        """Pending task with ``uuid`` regardless of owner."""
        return await self.fetch_one(
            f"""
            SELECT {TASK_COLUMNS} FROM scheduled_messages
            WHERE uuid = :uuid AND status = 'pending'
            LIMIT 1
            """,
            {"uuid": uuid},
        )

    async def get_task_by_id(self, task_id: int) -> dict[str, Any] | None:
        return await self.fetch_one(
            f"SELECT {TASK_COLUMNS} FROM scheduled_messages WHERE id = :id",
            {"id": task_id},
        )

    async def get_task_status(self, uuid: str, user_id: str) -> str | None:
        """Status of the task in any state, or None when it does not exist."""
        row = await self.fetch_one(
            "SELECT status FROM scheduled_messages WHERE uuid = :uuid AND user_id = :user_id LIMIT 1",
            {"uuid": uuid, "user_id": user_id},
        )
        return row["status"] if row else None

    async def get_pending_tasks(self, limit: int = 50, now: int | None = None) -> list[dict[str, Any]]:
        """Due tasks (pending and ``next_send_at <= now``), oldest first."""
        return await self.fetch_all(
            f"""
            SELECT {TASK_COLUMNS} FROM scheduled_messages
            WHERE status = 'pending' AND next_send_at <= :now
            ORDER BY next_send_at ASC, id ASC
            LIMIT :limit
            """,
            {"now": self._now() if now is None else int(now), "limit": int(limit)},
        )

    async def list_tasks(
        self,
        user_id: str,
        status: str = "all",
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        """Page of a user's tasks ordered by ``next_send_at``.

        Returns:
            ``{"tasks": [...], "total": <count of matching rows>}``.
        """
        where = "user_id = :user_id"
        params: dict[str, Any] = {"user_id": user_id}
        if status != "all":
            where += " AND status = :status"
            params["status"] = status

        count_row = await self.fetch_one(
            f"SELECT COUNT(*) AS count FROM scheduled_messages WHERE {where}", params
        )
        total = int(count_row["count"]) if count_row else 0
        tasks = await self.fetch_all(
            f"""
            SELECT {TASK_COLUMNS} FROM scheduled_messages
            WHERE {where}
            ORDER BY next_send_at ASC, id ASC
            LIMIT :limit OFFSET :offset
            """,
            {**params, "limit": int(limit), "offset": int(offset)},
        )
        return {"tasks": tasks, "total": total}

    # -------------------------------------------------------------------------
    # Update / delete
    # -------------------------------------------------------------------------

    async def update_task_by_id(self, task_id: int, fields: dict[str, Any]) -> dict[str, Any] | None:
        """Apply ``fields`` (status, retry_count, next_send_at) to a task.

        Returns:
            The updated row, or None when no row has that id.

        Raises:
            ValueError: A field outside the updatable set was given.
        """
        unknown = set(fields) - UPDATABLE_BY_ID
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")
        values = dict(fields)
        values["updated_at"] = self._now()
        changed = await self.update(values, {"id": task_id})
        if not changed:
            return None
        return await self.get_task_by_id(task_id)

    async def update_task_by_uuid(
        self,
        uuid: str,
        user_id: str,
        encrypted_payload: str,
        extra_fields: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Replace the payload of a pending task, optionally moving ``next_send_at``.

        Returns:
            ``{"uuid", "updated_at"}``, or None when no pending task matched.
        """
        extra = dict(extra_fields or {})
        unknown = set(extra) - UPDATABLE_BY_UUID_EXTRA
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")
        now = self._now()
        values = {"encrypted_payload": encrypted_payload, "updated_at": now, **extra}
        changed = await self.update(
            values, {"uuid": uuid, "user_id": user_id, "status": "pending"}
        )
        if not changed:
            return None
        return {"uuid": uuid, "updated_at": now}

    async def delete_task_by_id(self, task_id: int) -> bool:
        return await self.delete({"id": task_id}) > 0

    async def delete_task_by_uuid(self, uuid: str, user_id: str) -> bool:
        return await self.delete({"uuid": uuid, "user_id": user_id}) > 0

    async def cleanup_old_tasks(self, days: int = 7, now: int | None = None) -> int:
        """Delete sent/failed tasks not updated in the last ``days`` (min 1)."""
        safe_days = max(1, int(days))
        current = self._now() if now is None else int(now)
        removed = await self.execute(
            """
            DELETE FROM scheduled_messages
            WHERE status IN ('sent', 'failed') AND updated_at < :cutoff
            """,
            {"cutoff": current - safe_days * 86400},
        )
        if removed:
            logger.info("Removed %d completed tasks older than %d days", removed, safe_days)
        return removed


def create_task_store(driver: str, connection_string: str) -> TasksTable:
    """Build the task store for a tenant database descriptor."""
    return TasksTable(create_adapter(driver, connection_string))
