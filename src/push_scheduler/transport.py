# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Outbound push transports.

A transport takes a push subscription descriptor and a serialized message and
either returns or raises :class:`~push_scheduler.errors.TransportError`.
:class:`WebPushTransport` delivers through the Web Push protocol with VAPID
authentication using ``pywebpush``.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from .errors import TransportConfigError, TransportError
from .logger import get_logger

logger = get_logger("PushTransport")

DEFAULT_PUSH_TIMEOUT = 30.0


def normalize_vapid_subject(email: str | None) -> str:
    """Return the VAPID ``sub`` claim, adding ``mailto:`` when missing."""
    value = (email or "").strip()
    if not value:
        return ""
    if value.lower().startswith("mailto:") or value.lower().startswith("https:"):
        return value
    return f"mailto:{value}"


@dataclass(frozen=True)
class VapidConfig:
    """VAPID credentials for Web Push."""

    email: str = ""
    public_key: str = ""
    private_key: str = ""

    def missing_keys(self) -> list[str]:
        return [
            name
            for name, value in (
                ("VAPID_EMAIL", self.email),
                ("VAPID_PUBLIC_KEY", self.public_key),
                ("VAPID_PRIVATE_KEY", self.private_key),
            )
            if not (value or "").strip()
        ]


class PushTransport(ABC):
    """Delivery capability used by the dispatcher."""

    @abstractmethod
    async def send(self, subscription: dict[str, Any], message: str) -> None:
        """Deliver ``message`` to ``subscription``.

        Raises:
            TransportError: Delivery failed.
        """
        ...

    def missing_keys(self) -> list[str]:
        """Names of missing credentials; empty when fully configured."""
        return []

    def is_configured(self) -> bool:
        return not self.missing_keys()

    def ensure_configured(self) -> None:
        """Raise :class:`TransportConfigError` when credentials are missing."""
        missing = self.missing_keys()
        if missing:
            raise TransportConfigError(
                "Push transport is not configured, notifications cannot be sent",
                details={"missingKeys": missing},
            )


class WebPushTransport(PushTransport):
    """Web Push delivery through ``pywebpush``.

    ``pywebpush`` is blocking, so each send runs in a worker thread.
    """

    def __init__(self, vapid: VapidConfig, timeout: float = DEFAULT_PUSH_TIMEOUT, ttl: int = 86400):
        self.vapid = vapid
        self.timeout = timeout
        self.ttl = ttl

    def missing_keys(self) -> list[str]:
        return self.vapid.missing_keys()

    async def send(self, subscription: dict[str, Any], message: str) -> None:
        self.ensure_configured()
        try:
            from pywebpush import WebPushException, webpush
        except ImportError as e:
            raise ImportError(
                "Web Push delivery requires pywebpush. "
                "Install with: pip install push-scheduler[webpush]"
            ) from e

        def _send() -> None:
            webpush(
                subscription_info=subscription,
                data=message,
                vapid_private_key=self.vapid.private_key,
                vapid_claims={"sub": normalize_vapid_subject(self.vapid.email)},
                timeout=self.timeout,
                ttl=self.ttl,
            )

        try:
            await asyncio.to_thread(_send)
        except WebPushException as exc:
            status = getattr(getattr(exc, "response", None), "status_code", None)
            logger.warning("Web Push delivery failed (status=%s): %s", status, exc)
            raise TransportError(f"Push delivery failed: {exc}", status_code=status) from exc
