# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Table base class for async table managers."""

from __future__ import annotations

from typing import Any

from .base import DbAdapter


class Table:
    """Base class for async table managers.

    Subclasses set ``name`` and implement domain-specific operations on top
    of the generic helpers below.

    Attributes:
        name: Table name in database.
        db: DbAdapter instance reference.
    """

    name: str

    def __init__(self, db: DbAdapter) -> None:
        self.db = db
        if not hasattr(self, "name") or not self.name:
            raise ValueError(f"{type(self).__name__} must define 'name'")

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        return await self.db.execute(query, params)

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        return await self.db.fetch_one(query, params)

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        return await self.db.fetch_all(query, params)

    async def insert(self, record: dict[str, Any]) -> Any:
        """Insert a record, returning the generated primary key."""
        return await self.db.insert(self.name, record)

    async def update(self, values: dict[str, Any], where: dict[str, Any]) -> int:
        """UPDATE ``values`` on rows matching every ``where`` equality.

        Parameter names are prefixed so a column may appear on both sides.
        """
        if not values:
            return 0
        params: dict[str, Any] = {}
        sets = []
        for col, value in values.items():
            params[f"v_{col}"] = value
            sets.append(f"{col} = :v_{col}")
        conds = []
        for col, value in where.items():
            params[f"w_{col}"] = value
            conds.append(f"{col} = :w_{col}")
        query = f"UPDATE {self.name} SET {', '.join(sets)}"
        if conds:
            query += f" WHERE {' AND '.join(conds)}"
        return await self.execute(query, params)

    async def delete(self, where: dict[str, Any]) -> int:
        """DELETE rows matching every ``where`` equality."""
        conds = [f"{col} = :{col}" for col in where]
        query = f"DELETE FROM {self.name}"
        if conds:
            query += f" WHERE {' AND '.join(conds)}"
        return await self.execute(query, dict(where))
