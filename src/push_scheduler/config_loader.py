# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the push scheduler service.

Settings are read from an INI file and ``PSH_*`` environment variables.
Priority: config file > environment variables > defaults.

Example:
    Configuration file format (config.ini)::

        [server]
        host = 0.0.0.0
        port = 8000
        init_secret = change-me
        public_base_url = https://push.example.com

        [tenants]
        kek = deployment-key-encryption-key
        token_signing_key = deployment-token-signing-key
        blob_db_path = /data/tenants.db

        [vapid]
        email = ops@example.com
        public_key = BEl...
        private_key = 3K1...

        [dispatch]
        batch_size = 50
        max_concurrency = 8

        [logging]
        level = INFO

    Loading::

        settings = load_settings("/etc/push-scheduler/config.ini")
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .logger import get_logger

logger = get_logger("config_loader")

DEFAULT_CONFIG_PATH = "config.ini"


@dataclass
class Settings:
    """Service settings.

    Attributes:
        host: Bind address of the HTTP server.
        port: Bind port of the HTTP server.
        init_secret: Shared secret for tenant onboarding; open when empty.
        public_base_url: Base URL used to build cron webhook URLs.
        kek: Key-encryption key for tenant config blobs.
        token_signing_key: HMAC secret for tenant and cron tokens.
        blob_db_path: SQLite file holding tenant config blobs.
        blob_namespace: Namespace of the tenant blobs.
        sqlite_dir: Directory SQLite tenant databases are confined to.
        token_ttl_seconds: Lifetime of issued tokens.
        vapid_email: VAPID subject contact.
        vapid_public_key: VAPID public key.
        vapid_private_key: VAPID private key.
        batch_size: Due tasks fetched per dispatch run.
        max_concurrency: Tasks processed at once per dispatch run.
        retention_days: Age after which sent/failed tasks are removed.
        pacing_seconds: Pause between notifications of the same task.
        completion_timeout_seconds: Timeout of a completion endpoint call.
        log_level: Root log level.
    """

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    init_secret: str | None = None
    public_base_url: str | None = None

    # Tenants
    kek: str | None = None
    token_signing_key: str | None = None
    blob_db_path: str = "./push_scheduler_tenants.db"
    blob_namespace: str = "push-scheduler-tenants"
    sqlite_dir: str = "./push_scheduler_data"
    token_ttl_seconds: int = 30 * 24 * 3600

    # VAPID
    vapid_email: str | None = None
    vapid_public_key: str | None = None
    vapid_private_key: str | None = None

    # Dispatch
    batch_size: int = 50
    max_concurrency: int = 8
    retention_days: int = 7
    pacing_seconds: float = 1.5
    completion_timeout_seconds: float = 300.0

    # Logging
    log_level: str = "INFO"


# field -> (section, option, env var, type)
_FIELDS: dict[str, tuple[str, str, str, type]] = {
    "host": ("server", "host", "PSH_HOST", str),
    "port": ("server", "port", "PSH_PORT", int),
    "init_secret": ("server", "init_secret", "PSH_INIT_SECRET", str),
    "public_base_url": ("server", "public_base_url", "PSH_PUBLIC_BASE_URL", str),
    "kek": ("tenants", "kek", "PSH_KEK", str),
    "token_signing_key": ("tenants", "token_signing_key", "PSH_TOKEN_SIGNING_KEY", str),
    "blob_db_path": ("tenants", "blob_db_path", "PSH_BLOB_DB_PATH", str),
    "blob_namespace": ("tenants", "blob_namespace", "PSH_BLOB_NAMESPACE", str),
    "sqlite_dir": ("tenants", "sqlite_dir", "PSH_SQLITE_DIR", str),
    "token_ttl_seconds": ("tenants", "token_ttl_seconds", "PSH_TOKEN_TTL_SECONDS", int),
    "vapid_email": ("vapid", "email", "PSH_VAPID_EMAIL", str),
    "vapid_public_key": ("vapid", "public_key", "PSH_VAPID_PUBLIC_KEY", str),
    "vapid_private_key": ("vapid", "private_key", "PSH_VAPID_PRIVATE_KEY", str),
    "batch_size": ("dispatch", "batch_size", "PSH_BATCH_SIZE", int),
    "max_concurrency": ("dispatch", "max_concurrency", "PSH_MAX_CONCURRENCY", int),
    "retention_days": ("dispatch", "retention_days", "PSH_RETENTION_DAYS", int),
    "pacing_seconds": ("dispatch", "pacing_seconds", "PSH_PACING_SECONDS", float),
    "completion_timeout_seconds": (
        "dispatch",
        "completion_timeout_seconds",
        "PSH_COMPLETION_TIMEOUT_SECONDS",
        float,
    ),
    "log_level": ("logging", "level", "PSH_LOG_LEVEL", str),
}


def _convert(name: str, raw: str, type_fn: type, default: Any) -> Any:
    if type_fn is str:
        value = raw.strip()
        return value if value else default
    try:
        return type_fn(raw.strip())
    except (ValueError, TypeError):
        logger.warning(f"Invalid value for {name}, using default {default}")
        return default


def load_settings(config_path: str | None = None) -> Settings:
    """Load settings from config file and environment.

    Args:
        config_path: Path to the INI file. Defaults to ``PSH_CONFIG`` or
            ``config.ini``; a missing file is not an error.

    Returns:
        Settings with parsed values, using defaults for missing ones.
    """
    defaults = Settings()
    values: dict[str, Any] = {}

    for name, (_, _, env_var, type_fn) in _FIELDS.items():
        env_value = os.environ.get(env_var)
        default = getattr(defaults, name)
        values[name] = default if env_value is None else _convert(env_var, env_value, type_fn, default)

    path = config_path or os.environ.get("PSH_CONFIG") or DEFAULT_CONFIG_PATH
    if Path(path).exists():
        config = configparser.ConfigParser()
        config.read(path)
        for name, (section, option, _, type_fn) in _FIELDS.items():
            raw = config.get(section, option, fallback=None)
            if raw is not None:
                values[name] = _convert(f"{section}.{option}", raw, type_fn, values[name])
    elif config_path:
        logger.warning(f"Config file not found: {config_path}, using environment and defaults")

    return Settings(**values)
