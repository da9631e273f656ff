# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Multi-tenant scheduler and dispatcher for encrypted push notifications.

Features:
    - Tenant onboarding with KEK-encrypted configuration blobs
    - Scoped tenant and cron bearer tokens
    - End-to-end encrypted request and response bodies (AES-256-GCM)
    - One-shot, daily and weekly messages; fixed or AI-generated text
    - Bounded-concurrency dispatch with linear retry backoff
    - Web Push delivery with VAPID
    - Prometheus metrics for monitoring
    - FastAPI REST API
    - SQLite/PostgreSQL tenant databases

Example::

    from push_scheduler import PushScheduler
    from push_scheduler.api import create_app
    from push_scheduler.config_loader import load_settings

    svc = PushScheduler.from_settings(load_settings())
    app = create_app(svc)
"""

from .core import PushScheduler

__all__ = ["PushScheduler"]
