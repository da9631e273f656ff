# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite async adapter using aiosqlite."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING, Any

import aiosqlite

from ..errors import DuplicateKeyError
from .base import DbAdapter, is_unique_violation

if TYPE_CHECKING:
    from collections.abc import Sequence


class SqliteAdapter(DbAdapter):
    """SQLite async adapter. Opens connection per-operation for thread safety.

    Per-operation connections mean ``":memory:"`` does not persist between
    calls; use a file path for anything but throwaway checks.
    """

    dialect = "sqlite"

    def __init__(self, db_path: str):
        """Initialize SQLite adapter.

        Args:
            db_path: Path to SQLite file. A ``sqlite:`` prefix is stripped.
        """
        if db_path.startswith("sqlite:"):
            db_path = db_path[len("sqlite:"):]
            if db_path.startswith("//"):
                db_path = db_path[2:]
        self.db_path = db_path or ":memory:"

    async def connect(self) -> None:
        """SQLite connections are opened per-operation, this is a no-op."""
        pass

    async def close(self) -> None:
        """SQLite connections are closed per-operation, this is a no-op."""
        pass

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        async with aiosqlite.connect(self.db_path) as db:
            try:
                cursor = await db.execute(query, params or {})
            except sqlite3.IntegrityError as exc:
                if is_unique_violation(exc):
                    raise DuplicateKeyError(str(exc)) from exc
                raise
            await db.commit()
            return cursor.rowcount

    async def insert(self, table: str, data: dict[str, Any], pk: str = "id") -> Any:
        """Insert one row and return ``lastrowid``."""
        columns = list(data.keys())
        query = (
            f"INSERT INTO {table} ({', '.join(columns)}) "
            f"VALUES ({', '.join(f':{c}' for c in columns)})"
        )
        async with aiosqlite.connect(self.db_path) as db:
            try:
                cursor = await db.execute(query, data)
            except sqlite3.IntegrityError as exc:
                if is_unique_violation(exc):
                    raise DuplicateKeyError(str(exc)) from exc
                raise
            await db.commit()
            return cursor.lastrowid

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return single row as dict or None."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params or {}) as cursor:
                row = await cursor.fetchone()
                if row is None:
                    return None
                cols = [c[0] for c in cursor.description]
                return dict(zip(cols, row, strict=True))

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query, return all rows as list of dicts."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params or {}) as cursor:
                rows = await cursor.fetchall()
                cols = [c[0] for c in cursor.description]
                return [dict(zip(cols, row, strict=True)) for row in rows]

    async def execute_script(self, script: str) -> None:
        """Execute multiple statements (for schema creation)."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(script)
            await db.commit()

    async def upsert(
        self,
        table: str,
        data: dict[str, Any],
        conflict_columns: Sequence[str],
    ) -> int:
        """Insert or update using SQLite ON CONFLICT DO UPDATE."""
        columns = list(data.keys())
        placeholders = ", ".join(f":{c}" for c in columns)
        col_list = ", ".join(columns)
        conflict_cols = ", ".join(conflict_columns)
        update_cols = ", ".join(
            f"{c} = excluded.{c}" for c in columns if c not in conflict_columns
        )

        query = f"""
            INSERT INTO {table} ({col_list}) VALUES ({placeholders})
            ON CONFLICT ({conflict_cols}) DO UPDATE SET {update_cols}
        """
        return await self.execute(query, data)
