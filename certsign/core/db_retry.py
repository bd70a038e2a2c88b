"""Retry database work that failed on a transient lock conflict."""

from __future__ import annotations

import random
from typing import Awaitable, Callable, TypeVar

import anyio
from loguru import logger
from sqlalchemy.exc import DBAPIError

T = TypeVar("T")

# ER_LOCK_WAIT_TIMEOUT, ER_LOCK_DEADLOCK
MYSQL_LOCK_ERRORS = frozenset({1205, 1213})
SERIALIZATION_FAILURE = "40001"
_LOCK_MESSAGES = ("deadlock", "lock wait timeout", "database is locked")


def _driver_error(exc: DBAPIError) -> tuple[int | None, str | None, str]:
    orig = getattr(exc, "orig", None)
    if orig is None:
        return None, None, str(exc).lower()
    args = getattr(orig, "args", ())
    code = args[0] if args and isinstance(args[0], int) else None
    return code, getattr(orig, "sqlstate", None), str(orig).lower()


def is_retriable(exc: DBAPIError) -> bool:
    """True for deadlocks, lock wait timeouts and SQLite busy errors."""

    code, sqlstate, message = _driver_error(exc)
    if code in MYSQL_LOCK_ERRORS or sqlstate == SERIALIZATION_FAILURE:
        return True
    return any(fragment in message for fragment in _LOCK_MESSAGES)


def _backoff(attempt: int, base_delay: float, jitter: float) -> float:
    return base_delay * (2 ** (attempt - 1)) + random.uniform(0, jitter)


async def with_db_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 4,
    base_delay: float = 0.05,
    jitter: float = 0.025,
) -> T:
    """Await ``operation()`` up to ``attempts`` times.

    ``operation`` has to open and commit its own transaction: a failed
    attempt leaves nothing behind for the next one to roll back. Errors that
    are not lock conflicts, and the last lock conflict, propagate unchanged.
    """

    attempt = 1
    while True:
        try:
            return await operation()
        except DBAPIError as exc:
            if attempt >= attempts or not is_retriable(exc):
                raise
            delay = _backoff(attempt, base_delay, jitter)
            logger.bind(
                attempt=attempt,
                max_attempts=attempts,
                sleep=round(delay, 4),
                error=str(exc.orig if exc.orig is not None else exc),
            ).warning("db_retry_lock_conflict")
            await anyio.sleep(delay)
            attempt += 1
