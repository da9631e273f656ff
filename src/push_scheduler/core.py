# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Service facade of the push scheduler.

This module provides the PushScheduler class, the single entry point used by
the HTTP API and the CLI. It wires together:

- Tenant onboarding and bearer-token resolution
- Encrypted request handling (headers, envelope, per-user keys)
- The message lifecycle (schedule, update, cancel, list)
- The dispatcher run triggered by a tenant's cron webhook
- Prometheus metrics

Every operation raises a :class:`~push_scheduler.errors.PushSchedulerError`
subclass on a client-facing failure and returns plain JSON-ready dicts
otherwise.

Example:
    Building the service from settings::

        from push_scheduler.config_loader import load_settings
        from push_scheduler.core import PushScheduler

        svc = PushScheduler.from_settings(load_settings())
        await svc.start()
        result = await svc.init_tenant(None, {"driver": "sqlite", "databaseUrl": "t.db"})
        await svc.stop()
"""

from __future__ import annotations

import hmac
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from .blob_store import BlobStore, SqliteBlobStore
from .config_loader import Settings
from .content import ContentResolver
from .crypto import decrypt_payload, derive_user_key, encrypt_payload, is_encrypted_envelope
from .dispatcher import Dispatcher
from .errors import (
    EncryptionRequired,
    ErrorCode,
    InvalidEncryptedPayload,
    InvalidInitAuth,
    InvalidPayloadFormat,
    InvalidUserIdFormat,
    TaskIdRequired,
    UnsupportedEncryptionVersion,
    UserIdRequired,
    ValidationFailed,
)
from .lifecycle import DEFAULT_PAGE_SIZE, MessageLifecycle, ScheduleOutcome
from .logger import get_logger
from .models import InitTenantPayload
from .prometheus import SchedulerMetrics
from .tenants import TenantContext, TenantContextManager
from .transport import PushTransport, VapidConfig, WebPushTransport
from .validation import is_valid_uuid4

ENCRYPTION_VERSION = 1


class PushScheduler:
    """Facade over tenants, lifecycle and dispatcher.

    Args:
        tenants: Tenant onboarding and resolution.
        transport: Push transport shared by every tenant.
        resolver: Content resolver shared by every tenant.
        metrics: Prometheus metrics; a private registry is created if omitted.
        init_secret: Shared secret required by ``init_tenant`` when set.
        batch_size: Due tasks fetched per dispatch run.
        max_concurrency: Tasks processed at once per dispatch run.
        retention_days: Age after which sent/failed tasks are removed.
        pacing_seconds: Pause between units of the same task.
    """

    def __init__(
        self,
        tenants: TenantContextManager,
        transport: PushTransport,
        resolver: ContentResolver | None = None,
        metrics: SchedulerMetrics | None = None,
        init_secret: str | None = None,
        batch_size: int = 50,
        max_concurrency: int = 8,
        retention_days: int = 7,
        pacing_seconds: float = 1.5,
    ):
        self.logger = get_logger("PushScheduler")
        self.tenants = tenants
        self.transport = transport
        self.resolver = resolver or ContentResolver()
        self.metrics = metrics or SchedulerMetrics()
        self.init_secret = init_secret or None
        self.batch_size = batch_size
        self.max_concurrency = max_concurrency
        self.retention_days = retention_days
        self.pacing_seconds = pacing_seconds
        self.lifecycle = MessageLifecycle(transport, self.dispatcher_for)

    @classmethod
    def from_settings(cls, settings: Settings, blob_store: BlobStore | None = None) -> PushScheduler:
        """Build the service and its collaborators from :class:`Settings`."""
        blob_store = blob_store or SqliteBlobStore(settings.blob_db_path, settings.blob_namespace)
        tenants = TenantContextManager(
            blob_store=blob_store,
            kek=settings.kek,
            token_signing_key=settings.token_signing_key,
            public_base_url=settings.public_base_url,
            token_ttl=settings.token_ttl_seconds,
            sqlite_dir=settings.sqlite_dir,
        )
        transport = WebPushTransport(
            VapidConfig(
                email=settings.vapid_email or "",
                public_key=settings.vapid_public_key or "",
                private_key=settings.vapid_private_key or "",
            )
        )
        return cls(
            tenants=tenants,
            transport=transport,
            resolver=ContentResolver(timeout=settings.completion_timeout_seconds),
            init_secret=settings.init_secret,
            batch_size=settings.batch_size,
            max_concurrency=settings.max_concurrency,
            retention_days=settings.retention_days,
            pacing_seconds=settings.pacing_seconds,
        )

    def dispatcher_for(self, ctx: TenantContext) -> Dispatcher:
        """Build the dispatcher of a resolved tenant."""
        return Dispatcher(
            store=ctx.store,
            master_key=ctx.master_key,
            transport=self.transport,
            resolver=self.resolver,
            tenant_id=ctx.tenant_id,
            metrics=self.metrics,
            max_concurrency=self.max_concurrency,
            batch_size=self.batch_size,
            retention_days=self.retention_days,
            pacing_seconds=self.pacing_seconds,
        )

    async def start(self) -> None:
        self.logger.info("PushScheduler started")

    async def stop(self) -> None:
        """Close every cached tenant store."""
        await self.tenants.close()
        self.logger.info("PushScheduler stopped")

    # --------------------------------------------------------------- request checks
    @staticmethod
    def _require_user_id(user_id: str | None) -> str:
        if not user_id:
            raise UserIdRequired()
        if not is_valid_uuid4(user_id):
            raise InvalidUserIdFormat()
        return user_id

    @staticmethod
    def _require_encrypted_flag(payload_encrypted: str | None) -> None:
        if (payload_encrypted or "").strip().lower() != "true":
            raise EncryptionRequired()

    @staticmethod
    def _require_encryption_version(encryption_version: str | None) -> None:
        if (encryption_version or "").strip() != str(ENCRYPTION_VERSION):
            raise UnsupportedEncryptionVersion()

    @staticmethod
    def _decrypt_request(body: Any, user_key: str) -> dict[str, Any]:
        """Decrypt an envelope body into a JSON object."""
        if not is_encrypted_envelope(body):
            raise InvalidEncryptedPayload()
        payload = decrypt_payload(body, user_key)
        if not isinstance(payload, dict):
            raise InvalidPayloadFormat()
        return payload

    # --------------------------------------------------------------- tenants
    async def init_tenant(self, init_secret: str | None, body: Any) -> dict[str, str]:
        """Onboard a tenant and return its credentials.

        Raises:
            InvalidInitAuth: An init secret is configured and does not match.
            ValidationFailed: ``INVALID_REQUEST_BODY`` or ``INVALID_PARAMETERS``.
        """
        if self.init_secret and not hmac.compare_digest(
            (init_secret or "").encode("utf-8"), self.init_secret.encode("utf-8")
        ):
            raise InvalidInitAuth()
        if not isinstance(body, dict):
            raise ValidationFailed(ErrorCode.INVALID_REQUEST_BODY, "Request body must be a JSON object")
        try:
            payload = InitTenantPayload.model_validate(body)
        except PydanticValidationError as exc:
            raise ValidationFailed(
                ErrorCode.INVALID_PARAMETERS,
                "Invalid init-tenant parameters",
                {"invalidFields": [".".join(str(p) for p in err["loc"]) for err in exc.errors()]},
            ) from exc
        missing = [name for name, value in (("driver", payload.driver), ("databaseUrl", payload.url)) if not value]
        if missing:
            raise ValidationFailed(
                ErrorCode.INVALID_PARAMETERS,
                "Missing required parameter or invalid parameter format",
                {"missingFields": missing},
            )
        result = await self.tenants.onboard(payload.driver, payload.url, payload.tenant_id)
        return result.to_dict()

    async def get_user_key(self, authorization: str | None, user_id: str | None) -> dict[str, Any]:
        """Return the derived key a client uses for its envelopes."""
        ctx = await self.tenants.resolve(authorization)
        user_id = self._require_user_id(user_id)
        return {"userKey": derive_user_key(user_id, ctx.master_key), "version": ENCRYPTION_VERSION}

    # --------------------------------------------------------------- messages
    async def schedule_message(
        self,
        authorization: str | None,
        user_id: str | None,
        payload_encrypted: str | None,
        encryption_version: str | None,
        body: Any,
    ) -> ScheduleOutcome:
        """Decrypt and schedule a message.

        Headers are checked in order: encryption flag, user id, version.
        """
        ctx = await self.tenants.resolve(authorization)
        self._require_encrypted_flag(payload_encrypted)
        user_id = self._require_user_id(user_id)
        self._require_encryption_version(encryption_version)
        payload = self._decrypt_request(body, derive_user_key(user_id, ctx.master_key))
        return await self.lifecycle.schedule(ctx, user_id, payload)

    async def update_message(
        self,
        authorization: str | None,
        task_uuid: str | None,
        user_id: str | None,
        payload_encrypted: str | None,
        encryption_version: str | None,
        body: Any,
    ) -> dict[str, Any]:
        ctx = await self.tenants.resolve(authorization)
        if not task_uuid:
            raise TaskIdRequired()
        user_id = self._require_user_id(user_id)
        self._require_encrypted_flag(payload_encrypted)
        self._require_encryption_version(encryption_version)
        if not is_encrypted_envelope(body):
            raise InvalidEncryptedPayload()
        updates = decrypt_payload(body, derive_user_key(user_id, ctx.master_key))
        return await self.lifecycle.update(ctx, user_id, task_uuid, updates)

    async def cancel_message(
        self, authorization: str | None, task_uuid: str | None, user_id: str | None
    ) -> dict[str, Any]:
        ctx = await self.tenants.resolve(authorization)
        if not task_uuid:
            raise TaskIdRequired()
        user_id = self._require_user_id(user_id)
        return await self.lifecycle.cancel(ctx, user_id, task_uuid)

    async def list_messages(
        self,
        authorization: str | None,
        user_id: str | None,
        status: str | None = None,
        limit: str | int | None = None,
        offset: str | int | None = None,
    ) -> dict[str, Any]:
        """List the user's tasks, encrypted with the user key.

        Returns:
            ``{"encrypted": True, "version": 1, "data": <envelope>}``.
        """
        ctx = await self.tenants.resolve(authorization)
        user_id = self._require_user_id(user_id)
        page = await self.lifecycle.list_messages(
            ctx,
            user_id,
            status=status or "all",
            limit=_parse_int("limit", limit, DEFAULT_PAGE_SIZE),
            offset=_parse_int("offset", offset, 0),
        )
        return {
            "encrypted": True,
            "version": ENCRYPTION_VERSION,
            "data": encrypt_payload(page, derive_user_key(user_id, ctx.master_key)),
        }

    # --------------------------------------------------------------- dispatch
    async def send_notifications(
        self, authorization: str | None, query_token: str | None = None
    ) -> dict[str, Any]:
        """Run one dispatch pass for the tenant owning the cron token."""
        ctx = await self.tenants.resolve(authorization, query_token, allow_cron_token=True)
        self.transport.ensure_configured()
        report = await self.dispatcher_for(ctx).run_due_tasks()
        return report.to_dict()


def _parse_int(name: str, value: str | int | None, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationFailed(
            ErrorCode.INVALID_PARAMETERS,
            f"{name} must be an integer",
            {"invalidFields": [name]},
        ) from exc
