# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the push scheduler.

Handlers, level and format are configured once by the entry points
(``server.py`` and ``cli.py``) through :func:`configure_logging`; modules only
ask for a named logger.

Example:
    Typical usage in a module::

        from push_scheduler.logger import get_logger

        logger = get_logger("Dispatcher")
        logger.info("Dispatch run completed")
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "PushScheduler") -> logging.Logger:
    """Retrieve a logger instance.

    Args:
        name: The logger name. Defaults to "PushScheduler".

    Returns:
        A ``logging.Logger`` bound to the given name. No handlers are
        attached here.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger for an entry point.

    Unknown level names fall back to INFO.
    """
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,
    )
