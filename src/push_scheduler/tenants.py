# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tenant onboarding and request-to-tenant resolution.

A tenant is an isolated unit with its own database descriptor, master key and
tokens. Its configuration lives only as a KEK-encrypted blob under
``tenant/{tenantId}``; the master key never leaves the server.

Example:
    ::

        manager = TenantContextManager(
            blob_store=MemoryBlobStore(),
            kek="deployment-kek",
            token_signing_key="deployment-signing-key",
        )
        result = await manager.onboard("sqlite", "tenant-a.db")
        ctx = await manager.resolve(f"Bearer {result.tenant_token}")
        await ctx.store.get_pending_tasks()
"""

from __future__ import annotations

import hashlib
import os
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .blob_store import BlobStore
from .crypto import decrypt_config, encrypt_config, generate_master_key, master_key_fingerprint
from .errors import (
    DatabaseAlreadyBound,
    DecryptionFailed,
    DuplicateKeyError,
    InvalidDatabaseUrl,
    InvalidDriver,
    InvalidTenantAuth,
    InvalidTenantId,
    TenantAlreadyInitialized,
    TenantConfigError,
)
from .logger import get_logger
from .sql import DRIVERS
from .tables import TasksTable, create_task_store
from .tokens import (
    DEFAULT_TOKEN_TTL_SECONDS,
    TOKEN_TYPE_CRON,
    TOKEN_TYPE_TENANT,
    extract_bearer_token,
    issue_token,
    verify_token,
)
from .validation import is_valid_uuid4

logger = get_logger("TenantContextManager")

DISPATCH_PATH = "/api/v1/send-notifications"
DEFAULT_SQLITE_DIR = "./push_scheduler_data"


@dataclass(frozen=True)
class TenantContext:
    """Resolved tenant of an authenticated request."""

    tenant_id: str
    token_type: str
    store: TasksTable
    master_key: str


@dataclass(frozen=True)
class OnboardResult:
    """Credentials returned once at onboarding."""

    tenant_id: str
    tenant_token: str
    cron_token: str
    master_key_fingerprint: str
    cron_webhook_url: str

    def to_dict(self) -> dict[str, str]:
        return {
            "tenantId": self.tenant_id,
            "tenantToken": self.tenant_token,
            "cronToken": self.cron_token,
            "masterKeyFingerprint": self.master_key_fingerprint,
            "cronWebhookUrl": self.cron_webhook_url,
        }


def tenant_blob_key(tenant_id: str) -> str:
    return f"tenant/{tenant_id}"


def descriptor_blob_key(driver: str, connection_string: str) -> str:
    """Key binding a database descriptor to the tenant that owns it."""
    digest = hashlib.sha256(f"{driver}:{connection_string}".encode("utf-8")).hexdigest()
    return f"descriptor/{digest}"


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class TenantContextManager:
    """Onboards tenants and resolves bearer tokens to tenant contexts.

    Args:
        blob_store: Store holding encrypted tenant configs.
        kek: Deployment-wide key-encryption key for the config blobs.
        token_signing_key: HMAC secret for tenant and cron tokens.
        public_base_url: Base URL used to build the cron webhook URL.
        store_factory: Builds a task store from ``(driver, connection_string)``.
        token_ttl: Token lifetime in seconds.
        stores: Task-store cache keyed by ``"{driver}:{connection_string}"``.
            Pass a dict to share or inspect it; a fresh one is used otherwise.
        sqlite_dir: Directory SQLite tenant databases are confined to.
            Tenant-supplied SQLite paths are relative to it.
    """

    def __init__(
        self,
        blob_store: BlobStore,
        kek: str | None,
        token_signing_key: str | None,
        public_base_url: str | None = None,
        store_factory: Callable[[str, str], TasksTable] = create_task_store,
        token_ttl: int = DEFAULT_TOKEN_TTL_SECONDS,
        stores: dict[str, TasksTable] | None = None,
        sqlite_dir: str = DEFAULT_SQLITE_DIR,
    ):
        self.blob_store = blob_store
        self.kek = kek or ""
        self.token_signing_key = token_signing_key or ""
        self.public_base_url = (public_base_url or "").strip().rstrip("/")
        self.store_factory = store_factory
        self.token_ttl = token_ttl
        self.stores: dict[str, TasksTable] = {} if stores is None else stores
        self.sqlite_dir = os.path.abspath(sqlite_dir)

    def _require_keys(self) -> None:
        missing = [
            name
            for name, value in (("kek", self.kek), ("token_signing_key", self.token_signing_key))
            if not value
        ]
        if missing:
            raise TenantConfigError(details={"missingKeys": missing})

    def get_store(self, driver: str, connection_string: str) -> TasksTable:
        """Return the cached task store for a descriptor, creating it once."""
        cache_key = f"{driver}:{connection_string}"
        store = self.stores.get(cache_key)
        if store is None:
            store = self.store_factory(driver, connection_string)
            self.stores[cache_key] = store
        return store

    async def close(self) -> None:
        """Close every cached task store."""
        for store in list(self.stores.values()):
            await store.close()
        self.stores.clear()

    # -------------------------------------------------------------------------
    # Onboarding
    # -------------------------------------------------------------------------

    def sanitize_descriptor(self, driver: Any, connection_string: Any) -> tuple[str, str]:
        """Normalize and check a database descriptor.

        Raises:
            InvalidDriver: Driver is not one of the supported drivers.
            InvalidDatabaseUrl: Connection string is empty, or a SQLite
                path escapes the data directory.
        """
        normalized = str(driver or "").strip().lower()
        if normalized not in DRIVERS:
            raise InvalidDriver(
                f"Unsupported database driver, expected one of: {', '.join(DRIVERS)}",
                details={"providedDriver": driver, "allowedDrivers": list(DRIVERS)},
            )
        url = str(connection_string or "").strip()
        if not url:
            raise InvalidDatabaseUrl()
        if normalized == "sqlite":
            url = self._confine_sqlite_path(url)
        return normalized, url

    def _confine_sqlite_path(self, path: str) -> str:
        """Resolve a tenant SQLite path inside ``sqlite_dir``."""
        parts = path.replace("\\", "/").split("/")
        full = os.path.normpath(os.path.join(self.sqlite_dir, path))
        # ":" covers URIs, ":memory:" and drive letters
        if (
            os.path.isabs(path)
            or path.startswith("~")
            or ":" in path
            or ".." in parts
            or full == self.sqlite_dir
            or os.path.commonpath([self.sqlite_dir, full]) != self.sqlite_dir
        ):
            raise InvalidDatabaseUrl(
                "SQLite database must be a relative path inside the data directory",
                details={"databaseUrl": path},
            )
        return full

    async def load_config(self, tenant_id: str) -> dict[str, Any] | None:
        """Load and decrypt a tenant config, or None when absent.

        Raises:
            DecryptionFailed: The blob exists but cannot be decrypted.
        """
        raw = await self.blob_store.get(tenant_blob_key(tenant_id))
        if not raw:
            return None
        return decrypt_config(raw, self.kek)

    async def _claim_descriptor(self, tenant_id: str, driver: str, connection_string: str) -> str:
        """Bind a database descriptor to ``tenant_id``; returns the claim key."""
        key = descriptor_blob_key(driver, connection_string)
        try:
            await self.blob_store.set_if_absent(key, tenant_id)
        except DuplicateKeyError as exc:
            if await self.blob_store.get(key) == tenant_id:
                raise TenantAlreadyInitialized() from exc
            raise DatabaseAlreadyBound() from exc
        return key

    async def onboard(
        self,
        driver: Any,
        connection_string: Any,
        tenant_id: str | None = None,
    ) -> OnboardResult:
        """Create a tenant: schema, master key, encrypted config and tokens.

        Args:
            driver: Database driver name.
            connection_string: Database connection string.
            tenant_id: Optional UUID v4; generated when omitted.

        Returns:
            The tenant id, both tokens, the master key fingerprint and the
            cron webhook URL.

        Raises:
            InvalidTenantId: ``tenant_id`` is given but not a UUID v4.
            InvalidDriver: Unsupported driver.
            InvalidDatabaseUrl: Empty connection string, or a SQLite path
                outside ``sqlite_dir``.
            TenantAlreadyInitialized: A config already exists for the id.
            DatabaseAlreadyBound: Another tenant already owns the database.
            TenantConfigError: KEK or signing key not configured.
        """
        self._require_keys()
        if tenant_id is None or tenant_id == "":
            tenant_id = str(uuid.uuid4())
        elif not is_valid_uuid4(tenant_id):
            raise InvalidTenantId()

        driver, connection_string = self.sanitize_descriptor(driver, connection_string)

        if await self.blob_store.get(tenant_blob_key(tenant_id)):
            raise TenantAlreadyInitialized()

        claim_key = await self._claim_descriptor(tenant_id, driver, connection_string)
        try:
            if driver == "sqlite":
                os.makedirs(os.path.dirname(connection_string), exist_ok=True)
            store = self.get_store(driver, connection_string)
            await store.init_schema()

            master_key = generate_master_key()
            now = _iso_now()
            config = {
                "tenantId": tenant_id,
                "db": {"driver": driver, "connectionString": connection_string},
                "masterKey": master_key,
                "createdAt": now,
                "updatedAt": now,
            }
            try:
                await self.blob_store.set_if_absent(
                    tenant_blob_key(tenant_id), encrypt_config(config, self.kek)
                )
            except DuplicateKeyError as exc:
                raise TenantAlreadyInitialized() from exc
        except Exception:
            await self.blob_store.delete(claim_key)
            raise

        tenant_token = issue_token(
            tenant_id, TOKEN_TYPE_TENANT, self.token_signing_key, ttl_seconds=self.token_ttl
        )
        cron_token = issue_token(
            tenant_id, TOKEN_TYPE_CRON, self.token_signing_key, ttl_seconds=self.token_ttl
        )
        webhook = (
            f"{self.public_base_url}{DISPATCH_PATH}?token={cron_token}"
            if self.public_base_url
            else ""
        )
        logger.info("Tenant %s onboarded (driver=%s)", tenant_id, driver)
        return OnboardResult(
            tenant_id=tenant_id,
            tenant_token=tenant_token,
            cron_token=cron_token,
            master_key_fingerprint=master_key_fingerprint(master_key),
            cron_webhook_url=webhook,
        )

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    async def resolve(
        self,
        authorization: str | None,
        query_token: str | None = None,
        allow_cron_token: bool = False,
    ) -> TenantContext:
        """Resolve a request's bearer token to its tenant.

        Args:
            authorization: Value of the ``Authorization`` header.
            query_token: ``token`` query parameter (cron webhooks only).
            allow_cron_token: Accept cron tokens (and only cron tokens), also
                from the query string.

        Raises:
            InvalidTenantAuth: Missing/invalid token, or the tenant config is
                missing or unreadable.
            TenantConfigError: KEK or signing key not configured.
        """
        self._require_keys()
        token = extract_bearer_token(authorization, query_token, allow_query=allow_cron_token)
        if not token:
            raise InvalidTenantAuth()

        expected = (TOKEN_TYPE_CRON,) if allow_cron_token else (TOKEN_TYPE_TENANT,)
        claims = verify_token(token, self.token_signing_key, expected_types=expected)

        try:
            config = await self.load_config(claims.tenant_id)
        except DecryptionFailed as exc:
            logger.warning("Tenant %s config could not be decrypted", claims.tenant_id)
            raise InvalidTenantAuth() from exc
        db = (config or {}).get("db") or {}
        master_key = (config or {}).get("masterKey")
        if not config or not master_key or not db.get("driver") or not db.get("connectionString"):
            raise InvalidTenantAuth()

        return TenantContext(
            tenant_id=claims.tenant_id,
            token_type=claims.token_type,
            store=self.get_store(db["driver"], db["connectionString"]),
            master_key=master_key,
        )
