# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Bounded-concurrency dispatcher for due tasks.

A dispatch run fetches due tasks of one tenant, delivers them through a pool
of at most ``max_concurrency`` in-flight coroutines and moves each task along
its state machine:

- delivery failure: requeue with linear backoff (2, 4, 6 minutes) until
  ``retry_count`` reaches 3, then mark ``failed``;
- delivery success: delete one-shot tasks, advance recurring tasks from their
  previous ``next_send_at`` and reset ``retry_count``;
- success but the state update fails: mark ``sent`` as a fallback and never
  deliver again.

Finally a janitor pass removes terminal tasks older than the retention
window.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .content import ContentResolver, split_sentences
from .crypto import decrypt_for_storage, derive_user_key
from .logger import get_logger
from .models import TaskData
from .prometheus import SchedulerMetrics
from .tables import TasksTable
from .transport import PushTransport
from .validation import format_iso8601

logger = get_logger("Dispatcher")

MAX_RETRY_COUNT = 3
RETRY_STEP_SECONDS = 120
DEFAULT_MAX_CONCURRENCY = 8
DEFAULT_BATCH_SIZE = 50
DEFAULT_RETENTION_DAYS = 7
DEFAULT_PACING_SECONDS = 1.5
DEFAULT_INSTANT_RETRIES = 2

RECURRENCE_INTERVALS = {
    "daily": 24 * 3600,
    "weekly": 7 * 24 * 3600,
}


@dataclass
class DeliveryResult:
    """Outcome of delivering every unit of one task."""

    success: bool
    messages_sent: int = 0
    error: str | None = None


@dataclass
class DispatchReport:
    """Aggregate counters of a dispatch run."""

    total_tasks: int = 0
    success_count: int = 0
    failed_count: int = 0
    deleted_once_off_tasks: int = 0
    updated_recurring_tasks: int = 0
    failed_tasks: list[dict[str, Any]] = field(default_factory=list)
    processed_at: str | None = None
    execution_time_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalTasks": self.total_tasks,
            "successCount": self.success_count,
            "failedCount": self.failed_count,
            "processedAt": self.processed_at,
            "executionTime": self.execution_time_ms,
            "details": {
                "deletedOnceOffTasks": self.deleted_once_off_tasks,
                "updatedRecurringTasks": self.updated_recurring_tasks,
                "failedTasks": self.failed_tasks,
            },
        }


def build_notification(
    data: TaskData,
    text: str,
    index: int,
    total: int,
    task_id: int | None,
    timestamp: str | None,
) -> dict[str, Any]:
    """Notification body for the ``index``-th (0-based) unit of a task."""
    return {
        "title": f"From {data.contact_name}",
        "message": text,
        "contactName": data.contact_name,
        "messageId": f"msg_{uuid.uuid4()}_{task_id or 'instant'}_{index}",
        "messageIndex": index + 1,
        "totalMessages": total,
        "messageType": data.message_type,
        "messageSubtype": data.message_subtype or "chat",
        "taskId": task_id,
        "timestamp": timestamp,
        "source": "instant" if data.message_type == "instant" else "scheduled",
        "avatarUrl": data.avatar_url,
        "metadata": data.metadata or {},
    }


class Dispatcher:
    """Delivers due tasks of one tenant store.

    Args:
        store: The tenant's task store.
        master_key: The tenant master key, used to derive user keys.
        transport: Push transport.
        resolver: Content resolver for the message text.
        tenant_id: Label used in logs and metrics.
        metrics: Optional Prometheus metrics.
        max_concurrency: Maximum tasks processed at once.
        batch_size: Maximum due tasks fetched per run.
        retention_days: Age after which terminal tasks are removed.
        pacing_seconds: Pause between units of the same task.
        retry_backoff_seconds: Base backoff of the synchronous instant path.
        clock: Returns the current epoch time.
    """

    def __init__(
        self,
        store: TasksTable,
        master_key: str,
        transport: PushTransport,
        resolver: ContentResolver,
        tenant_id: str = "",
        metrics: SchedulerMetrics | None = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        batch_size: int = DEFAULT_BATCH_SIZE,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        pacing_seconds: float = DEFAULT_PACING_SECONDS,
        retry_backoff_seconds: float = 1.0,
        clock: Callable[[], float] = time.time,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.store = store
        self.master_key = master_key
        self.transport = transport
        self.resolver = resolver
        self.tenant_id = tenant_id
        self.metrics = metrics
        self.max_concurrency = max_concurrency
        self.batch_size = batch_size
        self.retention_days = retention_days
        self.pacing_seconds = pacing_seconds
        self.retry_backoff_seconds = retry_backoff_seconds
        self.clock = clock

    def _now(self) -> int:
        return int(self.clock())

    def decrypt_task(self, task: dict[str, Any]) -> TaskData:
        """Decrypt and parse the sensitive fields of a task row."""
        user_key = derive_user_key(task["user_id"], self.master_key)
        raw = decrypt_for_storage(task["encrypted_payload"], user_key)
        return TaskData.model_validate(json.loads(raw))

    # -------------------------------------------------------------------------
    # Single task delivery
    # -------------------------------------------------------------------------

    async def deliver(self, task: dict[str, Any]) -> DeliveryResult:
        """Resolve, split and deliver one task, units strictly in order.

        Never raises: any failure is returned as ``success=False`` with its
        message so the caller can apply the retry policy.
        """
        task_id = task.get("id")
        try:
            data = self.decrypt_task(task)
            text = await self.resolver.resolve(data)
            units = split_sentences(text)
            self.transport.ensure_configured()
            for index, unit in enumerate(units):
                notification = build_notification(
                    data, unit, index, len(units), task_id, format_iso8601(self.clock())
                )
                await self.transport.send(
                    data.push_subscription, json.dumps(notification, ensure_ascii=False)
                )
                if index < len(units) - 1:
                    await asyncio.sleep(self.pacing_seconds)
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
            logger.warning("Delivery of task %s failed: %s", task_id, reason)
            return DeliveryResult(success=False, error=reason)
        logger.debug("Task %s delivered in %d unit(s)", task_id, len(units))
        return DeliveryResult(success=True, messages_sent=len(units))

    # -------------------------------------------------------------------------
    # Dispatch run
    # -------------------------------------------------------------------------

    async def run_due_tasks(self) -> DispatchReport:
        """Process every due task with bounded concurrency, then clean up.

        Returns:
            The run's :class:`DispatchReport`.
        """
        started = time.monotonic()
        tasks = await self.store.get_pending_tasks(self.batch_size, now=self._now())
        report = DispatchReport(total_tasks=len(tasks))
        if self.metrics:
            self.metrics.observe_run(len(tasks))

        queue = deque(tasks)
        in_flight: set[asyncio.Task[None]] = set()
        unexpected: list[BaseException] = []
        while queue or in_flight:
            while queue and len(in_flight) < self.max_concurrency:
                in_flight.add(asyncio.create_task(self._process_task(queue.popleft(), report)))
            done, in_flight = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
            for finished in done:
                exc = finished.exception()
                if exc is not None:
                    unexpected.append(exc)
        if unexpected:
            raise unexpected[0]

        try:
            await self.store.cleanup_old_tasks(self.retention_days, now=self._now())
        except Exception as exc:
            # deliveries already happened; the report must still reach the caller
            logger.error("Retention cleanup for tenant %s failed: %s", self.tenant_id or "-", exc)

        report.processed_at = format_iso8601(self.clock())
        report.execution_time_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Dispatch run for tenant %s: %d due, %d sent, %d failed",
            self.tenant_id or "-",
            report.total_tasks,
            report.success_count,
            report.failed_count,
        )
        return report

    async def _process_task(self, task: dict[str, Any], report: DispatchReport) -> None:
        result = await self.deliver(task)
        if not result.success:
            await self._handle_delivery_failure(task, result.error or "Message delivery failed", report)
            return

        try:
            data = self.decrypt_task(task)
            if data.recurrence_type == "none":
                await self.store.delete_task_by_id(task["id"])
                report.deleted_once_off_tasks += 1
            else:
                interval = RECURRENCE_INTERVALS[data.recurrence_type]
                await self.store.update_task_by_id(
                    task["id"],
                    {"next_send_at": int(task["next_send_at"]) + interval, "retry_count": 0},
                )
                report.updated_recurring_tasks += 1
            report.success_count += 1
            if self.metrics:
                self.metrics.inc_sent(self.tenant_id)
        except Exception as exc:
            await self._handle_post_send_failure(task, str(exc) or type(exc).__name__, report)

    async def _handle_delivery_failure(
        self, task: dict[str, Any], reason: str, report: DispatchReport
    ) -> None:
        report.failed_count += 1
        task_id = task["id"]
        retry_count = int(task.get("retry_count") or 0)
        try:
            if retry_count >= MAX_RETRY_COUNT:
                await self.store.update_task_by_id(task_id, {"status": "failed"})
                report.failed_tasks.append(
                    {
                        "taskId": task_id,
                        "reason": reason,
                        "retryCount": retry_count,
                        "status": "permanently_failed",
                    }
                )
                logger.error(
                    "Task %s permanently failed after %d retries: %s", task_id, retry_count, reason
                )
                if self.metrics:
                    self.metrics.inc_error(self.tenant_id)
            else:
                next_retry = self._now() + (retry_count + 1) * RETRY_STEP_SECONDS
                await self.store.update_task_by_id(
                    task_id, {"next_send_at": next_retry, "retry_count": retry_count + 1}
                )
                report.failed_tasks.append(
                    {
                        "taskId": task_id,
                        "reason": reason,
                        "retryCount": retry_count + 1,
                        "nextRetryAt": format_iso8601(next_retry),
                    }
                )
                logger.warning(
                    "Task %s will be retried (attempt %d) at %s: %s",
                    task_id,
                    retry_count + 1,
                    format_iso8601(next_retry),
                    reason,
                )
                if self.metrics:
                    self.metrics.inc_retried(self.tenant_id)
        except Exception as exc:
            logger.error("Could not record failure of task %s: %s", task_id, exc)
            report.failed_tasks.append(
                {
                    "taskId": task_id,
                    "reason": reason,
                    "status": "retry_update_failed",
                    "updateError": str(exc),
                }
            )

    async def _handle_post_send_failure(
        self, task: dict[str, Any], reason: str, report: DispatchReport
    ) -> None:
        """The message went out but its state update failed: never resend."""
        report.failed_count += 1
        task_id = task["id"]
        marked_sent = False
        try:
            await self.store.update_task_by_id(task_id, {"status": "sent", "retry_count": 0})
            marked_sent = True
        except Exception as exc:
            logger.error("Task %s delivered but could not be marked sent: %s", task_id, exc)
        logger.error("Task %s delivered but post-send update failed: %s", task_id, reason)
        if self.metrics:
            self.metrics.inc_post_send_failure(self.tenant_id)
        report.failed_tasks.append(
            {
                "taskId": task_id,
                "reason": reason,
                "status": (
                    "post_send_cleanup_failed_marked_sent" if marked_sent else "post_send_cleanup_failed"
                ),
                "messageDelivered": True,
            }
        )

    # -------------------------------------------------------------------------
    # Synchronous single-task path
    # -------------------------------------------------------------------------

    async def process_by_uuid(
        self,
        task_uuid: str,
        user_id: str | None = None,
        max_retries: int = DEFAULT_INSTANT_RETRIES,
    ) -> dict[str, Any]:
        """Deliver one pending task now, retrying up to ``max_retries`` times.

        Returns:
            ``{"success": True, "messagesSent", "retriesUsed"}`` or
            ``{"success": False, "error": {"code", "message", ...}}``.
        """
        retries = 0
        while True:
            try:
                if user_id:
                    task = await self.store.get_task_by_uuid(task_uuid, user_id)
                else:
                    task = await self.store.get_task_by_uuid_only(task_uuid)
            except Exception as exc:
                if retries < max_retries:
                    retries += 1
                    await asyncio.sleep(self.retry_backoff_seconds * retries)
                    continue
                logger.error("Loading task %s failed: %s", task_uuid, exc)
                return {
                    "success": False,
                    "error": {"code": "INTERNAL_ERROR", "message": str(exc), "retriesAttempted": retries},
                }

            if task is None:
                return {
                    "success": False,
                    "error": {"code": "TASK_NOT_FOUND", "message": "Task does not exist or was already processed"},
                }

            result = await self.deliver(task)
            if not result.success:
                if retries < max_retries:
                    retries += 1
                    await asyncio.sleep(self.retry_backoff_seconds * retries)
                    continue
                try:
                    await self.store.update_task_by_id(task["id"], {"status": "failed", "retry_count": retries})
                except Exception as exc:
                    logger.error("Could not mark task %s failed: %s", task["id"], exc)
                if self.metrics:
                    self.metrics.inc_error(self.tenant_id)
                return {
                    "success": False,
                    "error": {"code": "PROCESSING_ERROR", "message": result.error, "retriesAttempted": retries},
                }

            try:
                await self.store.delete_task_by_id(task["id"])
            except Exception as exc:
                logger.error("Task %s delivered but cleanup failed: %s", task["id"], exc)
                try:
                    await self.store.update_task_by_id(task["id"], {"status": "sent", "retry_count": 0})
                except Exception as mark_exc:
                    logger.error("Task %s could not be marked sent: %s", task["id"], mark_exc)
                if self.metrics:
                    self.metrics.inc_post_send_failure(self.tenant_id)
                return {
                    "success": False,
                    "error": {
                        "code": "POST_SEND_CLEANUP_FAILED",
                        "message": "Message delivered but task cleanup failed",
                        "details": {"error": str(exc)},
                    },
                }

            if self.metrics:
                self.metrics.inc_sent(self.tenant_id)
            return {"success": True, "messagesSent": result.messages_sent, "retriesUsed": retries}
