"""Concurrency helpers for controlling background thread usage."""

from __future__ import annotations

from typing import Any, Callable

import anyio


class ThreadLimiter:
    """Run sync callables in worker threads with bounded concurrency.

    SMTP delivery and the ``openssl`` child process are blocking calls; each
    gets its own limiter so a slow mail server cannot starve signing.
    """

    def __init__(self, max_concurrency: int):
        self._sem = anyio.Semaphore(max_concurrency)

    async def run(self, func: Callable[..., Any], *args: Any) -> Any:
        async with self._sem:
            return await anyio.to_thread.run_sync(func, *args)
