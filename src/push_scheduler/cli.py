# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for push-scheduler.

Usage:
    push-scheduler serve --port 8000
    push-scheduler init-tenant --driver sqlite --database-url tenant-a.db
    push-scheduler dispatch --token <cron token>
    push-scheduler gen-key

Settings come from ``--config`` (or ``PSH_CONFIG``) and ``PSH_*`` environment
variables, as for the server.
"""

from __future__ import annotations

import asyncio
import json
import os
import secrets
from typing import Any

import click
from rich.console import Console

from .config_loader import load_settings
from .core import PushScheduler
from .errors import PushSchedulerError
from .logger import configure_logging

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Execute an async coroutine synchronously from CLI context."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as syntax-highlighted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


async def _with_service(config_path: str | None, operation):
    settings = load_settings(config_path)
    configure_logging(settings.log_level)
    svc = PushScheduler.from_settings(settings)
    await svc.start()
    try:
        return await operation(svc)
    finally:
        await svc.stop()


@click.group()
@click.version_option(package_name="push-scheduler")
@click.option("--config", "config_path", default=None, help="Path to config.ini (default: PSH_CONFIG or ./config.ini).")
@click.pass_context
def main(ctx: click.Context, config_path: str | None) -> None:
    """push-scheduler: multi-tenant scheduled push notifications."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default from settings).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default from settings).")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development.")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, reload: bool) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    config_path = ctx.obj.get("config_path")
    if config_path:
        os.environ["PSH_CONFIG"] = config_path
    settings = load_settings(config_path)
    uvicorn.run(
        "push_scheduler.server:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@main.command("init-tenant")
@click.option("--driver", required=True, type=click.Choice(["sqlite", "postgresql"]), help="Database driver.")
@click.option("--database-url", required=True, help="SQLite path or PostgreSQL DSN.")
@click.option("--tenant-id", default=None, help="Tenant id (UUID v4); generated when omitted.")
@click.pass_context
def init_tenant(ctx: click.Context, driver: str, database_url: str, tenant_id: str | None) -> None:
    """Onboard a tenant and print its credentials."""

    async def _run(svc: PushScheduler) -> dict[str, str]:
        result = await svc.tenants.onboard(driver, database_url, tenant_id)
        return result.to_dict()

    try:
        result = run_async(_with_service(ctx.obj.get("config_path"), _run))
    except PushSchedulerError as e:
        print_error(f"{e.code.value}: {e.message}")
        raise SystemExit(1) from e
    print_success(f"Tenant '{result['tenantId']}' initialized")
    console.print("[yellow]Store the tokens now, they are not shown again.[/yellow]")
    print_json(result)


@main.command("dispatch")
@click.option("--token", required=True, help="Cron token of the tenant.")
@click.pass_context
def dispatch(ctx: click.Context, token: str) -> None:
    """Run one dispatch pass for a tenant and print the report."""

    async def _run(svc: PushScheduler) -> dict[str, Any]:
        return await svc.send_notifications(f"Bearer {token}")

    try:
        report = run_async(_with_service(ctx.obj.get("config_path"), _run))
    except PushSchedulerError as e:
        print_error(f"{e.code.value}: {e.message}")
        raise SystemExit(1) from e
    print_success(f"Processed {report['totalTasks']} task(s): {report['successCount']} sent, {report['failedCount']} failed")
    print_json(report)


@main.command("gen-key")
@click.option("--bytes", "nbytes", type=int, default=32, show_default=True, help="Key length in bytes.")
def gen_key(nbytes: int) -> None:
    """Print a random secret suitable for the KEK or the token signing key."""
    click.echo(secrets.token_urlsafe(nbytes))


if __name__ == "__main__":
    main()
