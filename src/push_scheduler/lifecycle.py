# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Create, update, cancel and list scheduled messages of a tenant.

Every operation receives the resolved :class:`~push_scheduler.tenants.TenantContext`
and an already decrypted request payload. Header checks and envelope
decryption belong to the service facade; this module owns the task state
transitions that a client can trigger.
"""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from .crypto import decrypt_for_storage, derive_user_key, encrypt_for_storage
from .dispatcher import Dispatcher
from .errors import (
    DuplicateKeyError,
    ErrorCode,
    MessageSendFailed,
    TaskAlreadyCompleted,
    TaskCreateFailed,
    TaskNotFound,
    TaskUuidConflict,
    UpdateConflict,
    ValidationFailed,
)
from .logger import get_logger
from .models import TaskData
from .tables import TASK_STATUSES
from .tenants import TenantContext
from .transport import PushTransport
from .validation import format_iso8601, parse_iso8601, validate_schedule_payload, validate_update_payload

logger = get_logger("MessageLifecycle")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
INSTANT_MAX_RETRIES = 2

# Update keys merged into the stored payload when truthy.
MERGEABLE_FIELDS = ("completePrompt", "userMessage", "recurrenceType", "avatarUrl", "metadata")


@dataclass
class ScheduleOutcome:
    """Result of :meth:`MessageLifecycle.schedule`.

    ``status_code`` is 200 for an instant message already delivered and 201
    for a task stored for later delivery.
    """

    status_code: int
    data: dict[str, Any]


class MessageLifecycle:
    """Client-driven task transitions.

    Args:
        transport: Push transport, checked before an instant message is stored.
        dispatcher_factory: Builds the tenant :class:`Dispatcher` used for
            instant delivery.
        clock: Returns the current epoch time.
    """

    def __init__(
        self,
        transport: PushTransport,
        dispatcher_factory: Callable[[TenantContext], Dispatcher],
        clock: Callable[[], float] = time.time,
    ):
        self.transport = transport
        self.dispatcher_factory = dispatcher_factory
        self.clock = clock

    def _now_iso(self) -> str:
        return format_iso8601(self.clock())

    async def schedule(
        self, ctx: TenantContext, user_id: str, payload: dict[str, Any]
    ) -> ScheduleOutcome:
        """Validate and store a task; instant messages are delivered right away.

        Raises:
            ValidationFailed: The payload failed a validation check.
            TransportConfigError: Instant message and push not configured.
            TaskUuidConflict: The uuid is already taken.
            TaskCreateFailed: The store did not return the new row.
            MessageSendFailed: Instant delivery failed after its retries.
        """
        now = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        validate_schedule_payload(payload, now=now).raise_for_error()

        task_uuid = payload.get("uuid") or str(uuid.uuid4())
        data = TaskData.from_request(payload)
        user_key = derive_user_key(user_id, ctx.master_key)
        encrypted = encrypt_for_storage(data.model_dump_json(by_alias=True), user_key)

        instant = data.message_type == "instant"
        if instant:
            self.transport.ensure_configured()

        next_send_at = int(parse_iso8601(payload["firstSendTime"]).timestamp())
        try:
            created = await ctx.store.create_task(
                user_id, task_uuid, encrypted, next_send_at, data.message_type
            )
        except DuplicateKeyError as exc:
            raise TaskUuidConflict(details={"uuid": task_uuid}) from exc
        if not created:
            raise TaskCreateFailed()

        if instant:
            dispatcher = self.dispatcher_factory(ctx)
            result = await dispatcher.process_by_uuid(
                task_uuid, user_id, max_retries=INSTANT_MAX_RETRIES
            )
            if not result["success"]:
                raise MessageSendFailed(details=result["error"])
            return ScheduleOutcome(
                status_code=200,
                data={
                    "uuid": task_uuid,
                    "contactName": data.contact_name,
                    "messagesSent": result["messagesSent"],
                    "sentAt": self._now_iso(),
                    "status": "sent",
                    "retriesUsed": result.get("retriesUsed", 0),
                },
            )

        logger.debug("Task %s scheduled for %s", task_uuid, format_iso8601(created["next_send_at"]))
        return ScheduleOutcome(
            status_code=201,
            data={
                "id": created["id"],
                "uuid": task_uuid,
                "contactName": data.contact_name,
                "nextSendAt": format_iso8601(created["next_send_at"]),
                "status": created["status"],
                "createdAt": format_iso8601(created["created_at"]),
            },
        )

    async def update(
        self, ctx: TenantContext, user_id: str, task_uuid: str, updates: Any
    ) -> dict[str, Any]:
        """Merge changes into a pending task.

        Raises:
            ValidationFailed: ``INVALID_UPDATE_DATA``.
            TaskNotFound: No task with that uuid for the user.
            TaskAlreadyCompleted: The task exists but is no longer pending.
            UpdateConflict: The task stopped being pending meanwhile.
        """
        updates = validate_update_payload(updates)

        task = await ctx.store.get_task_by_uuid(task_uuid, user_id)
        if task is None:
            status = await ctx.store.get_task_status(task_uuid, user_id)
            if status is None:
                raise TaskNotFound()
            raise TaskAlreadyCompleted(details={"status": status})

        user_key = derive_user_key(user_id, ctx.master_key)
        current = json.loads(decrypt_for_storage(task["encrypted_payload"], user_key))
        merged = {**current, **{k: updates[k] for k in MERGEABLE_FIELDS if updates.get(k)}}
        try:
            data = TaskData.model_validate(merged)
        except PydanticValidationError as exc:
            raise ValidationFailed(
                ErrorCode.INVALID_UPDATE_DATA,
                "Invalid update data",
                {"invalidFields": [".".join(str(p) for p in err["loc"]) for err in exc.errors()]},
            ) from exc
        encrypted = encrypt_for_storage(data.model_dump_json(by_alias=True), user_key)

        extra: dict[str, Any] | None = None
        if updates.get("nextSendAt"):
            extra = {"next_send_at": int(parse_iso8601(updates["nextSendAt"]).timestamp())}

        result = await ctx.store.update_task_by_uuid(task_uuid, user_id, encrypted, extra)
        if result is None:
            raise UpdateConflict()
        return {
            "uuid": task_uuid,
            "updatedFields": list(updates.keys()),
            "updatedAt": format_iso8601(result["updated_at"]),
        }

    async def cancel(self, ctx: TenantContext, user_id: str, task_uuid: str) -> dict[str, Any]:
        """Delete a task in any state.

        Raises:
            TaskNotFound: No task with that uuid for the user.
        """
        if not await ctx.store.delete_task_by_uuid(task_uuid, user_id):
            raise TaskNotFound()
        return {
            "uuid": task_uuid,
            "message": "Task cancelled",
            "deletedAt": self._now_iso(),
        }

    async def list_messages(
        self,
        ctx: TenantContext,
        user_id: str,
        status: str = "all",
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> dict[str, Any]:
        """Page of the user's tasks as plaintext summaries.

        Returns:
            ``{"tasks": [...], "pagination": {"total", "limit", "offset",
            "hasMore"}}``.

        Raises:
            ValidationFailed: ``INVALID_PARAMETERS`` for a bad status, limit
                or offset.
        """
        if status not in ("all", *TASK_STATUSES):
            raise ValidationFailed(
                ErrorCode.INVALID_PARAMETERS,
                "Invalid status filter",
                {"invalidFields": ["status"], "allowedValues": ["all", *TASK_STATUSES]},
            )
        if limit < 1:
            raise ValidationFailed(ErrorCode.INVALID_PARAMETERS, "limit must be a positive integer")
        if offset < 0:
            raise ValidationFailed(ErrorCode.INVALID_PARAMETERS, "offset must be a non-negative integer")
        limit = min(limit, MAX_PAGE_SIZE)

        page = await ctx.store.list_tasks(user_id, status=status, limit=limit, offset=offset)
        user_key = derive_user_key(user_id, ctx.master_key)
        tasks = []
        for task in page["tasks"]:
            data = json.loads(decrypt_for_storage(task["encrypted_payload"], user_key))
            tasks.append(
                {
                    "id": task["id"],
                    "uuid": task["uuid"],
                    "contactName": data.get("contactName"),
                    "messageType": task["message_type"],
                    "messageSubtype": data.get("messageSubtype"),
                    "nextSendAt": format_iso8601(task["next_send_at"]),
                    "recurrenceType": data.get("recurrenceType"),
                    "status": task["status"],
                    "retryCount": task["retry_count"],
                    "createdAt": format_iso8601(task["created_at"]),
                    "updatedAt": format_iso8601(task["updated_at"]),
                }
            )
        total = page["total"]
        return {
            "tasks": tasks,
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "hasMore": offset + limit < total,
            },
        }
