# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory for the push scheduler.

This module exposes the REST interface of :class:`~push_scheduler.core.PushScheduler`:

- Tenant onboarding (``POST /api/v1/init-tenant``)
- User key retrieval and encrypted message management
- The per-tenant cron webhook (``/api/v1/send-notifications``)
- Health check and Prometheus metrics

Every response is either ``{"success": true, "data": ...}`` or
``{"success": false, "error": {"code", "message", "details"?}}``. Tenant
endpoints authenticate with ``Authorization: Bearer <tenant token>``; the cron
webhook accepts the cron token in the header or as ``?token=``.

Example:
    Creating and running the API application::

        from push_scheduler.core import PushScheduler
        from push_scheduler.api import create_app

        app = create_app(PushScheduler.from_settings(load_settings()))
        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from __future__ import annotations

import json
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Any

from fastapi import APIRouter, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from .core import PushScheduler
from .errors import ErrorCode, PushSchedulerError, ValidationFailed
from .logger import get_logger

logger = get_logger("PushSchedulerAPI")


def _ok(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": True, "data": data})


def _error(code: ErrorCode, message: str, status_code: int, details: Any = None) -> JSONResponse:
    error: dict[str, Any] = {"code": code.value, "message": message}
    if details is not None:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


async def _read_json(request: Request) -> Any:
    """Parse the request body as JSON; an empty body is None."""
    raw = await request.body()
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationFailed(ErrorCode.INVALID_JSON, "Request body is not valid JSON") from exc


def create_app(
    svc: PushScheduler,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager[None]] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        svc: The service facade implementing every operation.
        lifespan: Optional lifespan context manager for startup/shutdown.

    Returns:
        A configured application ready to be served by uvicorn.
    """
    api = FastAPI(title="Push Scheduler", lifespan=lifespan)
    router = APIRouter(prefix="/api/v1", tags=["v1"])

    @api.exception_handler(PushSchedulerError)
    async def scheduler_error_handler(request: Request, exc: PushSchedulerError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code.value} {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log validation errors with full details."""
        logger.error(f"Validation error on {request.method} {request.url.path}")
        logger.error(f"Validation errors: {exc.errors()}")
        return _error(
            ErrorCode.INVALID_PARAMETERS,
            "Missing required parameter or invalid parameter format",
            400,
            {"errors": [{"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()]},
        )

    @api.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return _error(ErrorCode.INTERNAL_SERVER_ERROR, "Internal server error, please retry later", 500)

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/metrics")
    async def metrics():
        """Expose Prometheus metrics."""
        return Response(content=svc.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    @router.post("/init-tenant")
    async def init_tenant(
        request: Request,
        x_init_secret: str | None = Header(default=None),
    ):
        body = await _read_json(request)
        return _ok(await svc.init_tenant(x_init_secret, body), status_code=201)

    @router.get("/get-user-key")
    async def get_user_key(
        authorization: str | None = Header(default=None),
        x_user_id: str | None = Header(default=None),
    ):
        return _ok(await svc.get_user_key(authorization, x_user_id))

    @router.post("/schedule-message")
    async def schedule_message(
        request: Request,
        authorization: str | None = Header(default=None),
        x_user_id: str | None = Header(default=None),
        x_payload_encrypted: str | None = Header(default=None),
        x_encryption_version: str | None = Header(default=None),
    ):
        body = await _read_json(request)
        outcome = await svc.schedule_message(
            authorization, x_user_id, x_payload_encrypted, x_encryption_version, body
        )
        return _ok(outcome.data, status_code=outcome.status_code)

    @router.put("/update-message")
    async def update_message(
        request: Request,
        id: str | None = Query(default=None),
        authorization: str | None = Header(default=None),
        x_user_id: str | None = Header(default=None),
        x_payload_encrypted: str | None = Header(default=None),
        x_encryption_version: str | None = Header(default=None),
    ):
        body = await _read_json(request)
        result = await svc.update_message(
            authorization, id, x_user_id, x_payload_encrypted, x_encryption_version, body
        )
        return _ok(result)

    @router.delete("/cancel-message")
    async def cancel_message(
        id: str | None = Query(default=None),
        authorization: str | None = Header(default=None),
        x_user_id: str | None = Header(default=None),
    ):
        return _ok(await svc.cancel_message(authorization, id, x_user_id))

    @router.get("/messages")
    async def messages(
        status: str | None = Query(default=None),
        limit: str | None = Query(default=None),
        offset: str | None = Query(default=None),
        authorization: str | None = Header(default=None),
        x_user_id: str | None = Header(default=None),
    ):
        result = await svc.list_messages(authorization, x_user_id, status, limit, offset)
        return JSONResponse(content={"success": True, **result})

    @router.api_route("/send-notifications", methods=["GET", "POST"])
    async def send_notifications(
        token: str | None = Query(default=None),
        authorization: str | None = Header(default=None),
    ):
        return _ok(await svc.send_notifications(authorization, token))

    api.include_router(router)
    return api
