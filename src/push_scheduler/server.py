# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module provides a pre-configured FastAPI application that reads
settings from ``config.ini`` and ``PSH_*`` environment variables and
initializes the PushScheduler service automatically.

Usage:
    uvicorn push_scheduler.server:app --host 0.0.0.0 --port 8000

Environment variables:
    PSH_CONFIG: Path to the INI config file (default: config.ini).
    PSH_KEK: Key-encryption key for tenant config blobs.
    PSH_TOKEN_SIGNING_KEY: HMAC secret for tenant and cron tokens.
    PSH_INIT_SECRET: Shared secret protecting tenant onboarding.
    PSH_VAPID_EMAIL, PSH_VAPID_PUBLIC_KEY, PSH_VAPID_PRIVATE_KEY: Web Push
        credentials.
    PSH_LOG_LEVEL: Root log level (default: INFO).
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config_loader import load_settings
from .core import PushScheduler
from .logger import configure_logging, get_logger

_settings = load_settings()
configure_logging(_settings.log_level)
_logger = get_logger("PushSchedulerServer")

_core = PushScheduler.from_settings(_settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler - starts and stops the core service."""
    _logger.info("Starting push-scheduler service...")
    await _core.start()
    try:
        yield
    finally:
        _logger.info("Stopping push-scheduler service...")
        await _core.stop()


app = create_app(_core, lifespan=lifespan)
