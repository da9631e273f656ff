# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Base adapter class for async database backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from ..errors import DuplicateKeyError

if TYPE_CHECKING:
    from collections.abc import Sequence

UNIQUE_VIOLATION_SQLSTATE = "23505"


def is_unique_violation(exc: BaseException) -> bool:
    """Return True when ``exc`` signals a unique-constraint violation.

    Recognizes PostgreSQL SQLSTATE 23505 and the driver messages used by
    SQLite ("UNIQUE constraint failed") and PostgreSQL ("duplicate key").
    """
    if isinstance(exc, DuplicateKeyError):
        return True
    for attr in ("sqlstate", "pgcode", "code"):
        if getattr(exc, attr, None) == UNIQUE_VIOLATION_SQLSTATE:
            return True
    message = str(exc).lower()
    return "duplicate key" in message or "unique constraint" in message


class DbAdapter(ABC):
    """Abstract base class for async database adapters.

    All queries use :name placeholders (supported by both SQLite and PostgreSQL).
    Implementations raise :class:`~push_scheduler.errors.DuplicateKeyError`
    for unique-constraint violations instead of their native exception.
    """

    dialect: str = ""

    @abstractmethod
    async def connect(self) -> None:
        """Establish database connection."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close database connection."""
        ...

    @abstractmethod
    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        ...

    @abstractmethod
    async def insert(self, table: str, data: dict[str, Any], pk: str = "id") -> Any:
        """Insert one row and return its generated primary key."""
        ...

    @abstractmethod
    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return single row as dict or None."""
        ...

    @abstractmethod
    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query, return all rows as list of dicts."""
        ...

    @abstractmethod
    async def execute_script(self, script: str) -> None:
        """Execute multiple statements (for schema creation)."""
        ...

    @abstractmethod
    async def upsert(
        self,
        table: str,
        data: dict[str, Any],
        conflict_columns: Sequence[str],
    ) -> int:
        """Insert or update row on conflict.

        Args:
            table: Table name.
            data: Column-value pairs to insert/update.
            conflict_columns: Columns that define uniqueness.

        Returns:
            Affected row count.
        """
        ...

    async def __aenter__(self) -> DbAdapter:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
