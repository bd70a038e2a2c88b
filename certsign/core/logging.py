"""Structured logging for the API process.

Every record carries the id of the HTTP request it was emitted under and,
once known, the certificate signing request it concerns.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from typing import Any

from loguru import logger

request_id_ctx_var: ContextVar[str] = ContextVar("request_id", default="-")
resource_id_ctx_var: ContextVar[str] = ContextVar("resource_id", default="-")

# Chatty third-party loggers that go through the stdlib logging module.
_QUIET_LOGGERS = ("aiosqlite", "aiomysql", "httpx", "httpcore")


def _with_request_context(record: dict[str, Any]) -> None:
    extra = record["extra"]
    extra.setdefault("request_id", request_id_ctx_var.get())
    extra.setdefault("resource_id", resource_id_ctx_var.get())


def setup_logging(level: str = "INFO", *, serialize: bool = True) -> None:
    """Send JSON lines to stdout at ``level``.

    ``serialize=False`` gives loguru's human format, which is easier to read
    when running the server by hand.
    """

    logging.basicConfig(level=logging.INFO)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.remove()
    logger.configure(patcher=_with_request_context)
    logger.add(
        sys.stdout,
        level=level.upper(),
        serialize=serialize,
        enqueue=True,
        backtrace=False,
        diagnose=False,
    )
