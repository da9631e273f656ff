# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Table managers for tenant databases."""

from .tasks import MESSAGE_TYPES, TASK_STATUSES, TasksTable, create_task_store

__all__ = [
    "MESSAGE_TYPES",
    "TASK_STATUSES",
    "TasksTable",
    "create_task_store",
]
