# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Key-value blob stores holding encrypted tenant configuration.

The tenant manager needs ``get``/``set``/``delete`` on string values and an
atomic ``set_if_absent`` used to claim keys at onboarding.
:class:`MemoryBlobStore` keeps values in an injected dict (tests, single
process); :class:`SqliteBlobStore` persists them through the SQLite adapter.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod

from .errors import DuplicateKeyError
from .sql import SqliteAdapter

DEFAULT_NAMESPACE = "push-scheduler-tenants"


class BlobStore(ABC):
    """Minimal async key-value contract."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the stored value or None."""
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""
        ...

    @abstractmethod
    async def set_if_absent(self, key: str, value: str) -> None:
        """Store ``value`` under a new ``key``.

        Raises:
            DuplicateKeyError: ``key`` already holds a value.
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``; missing keys are ignored."""
        ...


class MemoryBlobStore(BlobStore):
    """Dict-backed store. Pass ``data`` to share or inspect the contents."""

    def __init__(self, data: dict[str, str] | None = None):
        self.data: dict[str, str] = {} if data is None else data

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def set_if_absent(self, key: str, value: str) -> None:
        if key in self.data:
            raise DuplicateKeyError(key)
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)


class SqliteBlobStore(BlobStore):
    """Blob store persisted in a SQLite ``blobs`` table, scoped by namespace."""

    def __init__(self, db_path: str, namespace: str = DEFAULT_NAMESPACE):
        self.adapter = SqliteAdapter(db_path)
        self.namespace = namespace
        self._ready = False

    async def _ensure_schema(self) -> None:
        if self._ready:
            return
        await self.adapter.execute_script(
            """
            CREATE TABLE IF NOT EXISTS blobs (
                namespace TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (namespace, key)
            );
            """
        )
        self._ready = True

    async def get(self, key: str) -> str | None:
        await self._ensure_schema()
        row = await self.adapter.fetch_one(
            "SELECT value FROM blobs WHERE namespace = :namespace AND key = :key",
            {"namespace": self.namespace, "key": key},
        )
        return row["value"] if row else None

    async def set(self, key: str, value: str) -> None:
        await self._ensure_schema()
        await self.adapter.upsert(
            "blobs",
            {
                "namespace": self.namespace,
                "key": key,
                "value": value,
                "updated_at": int(time.time()),
            },
            conflict_columns=["namespace", "key"],
        )

    async def set_if_absent(self, key: str, value: str) -> None:
        await self._ensure_schema()
        await self.adapter.insert(
            "blobs",
            {
                "namespace": self.namespace,
                "key": key,
                "value": value,
                "updated_at": int(time.time()),
            },
        )

    async def delete(self, key: str) -> None:
        await self._ensure_schema()
        await self.adapter.execute(
            "DELETE FROM blobs WHERE namespace = :namespace AND key = :key",
            {"namespace": self.namespace, "key": key},
        )
