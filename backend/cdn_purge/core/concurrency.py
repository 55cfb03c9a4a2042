"""Concurrency helpers for controlling background thread usage."""

from __future__ import annotations

from typing import Any, Callable

import anyio

from cdn_purge.core.config import settings

_provider_sem = anyio.Semaphore(settings.CDN_MAX_PROVIDER_THREADS)


async def run_provider_call(
    func: Callable[..., Any],
    *args: Any,
    semaphore: anyio.Semaphore | None = None,
):
    """Run a blocking provider call in a worker thread with bounded concurrency."""

    async with semaphore or _provider_sem:
        return await anyio.to_thread.run_sync(func, *args)
