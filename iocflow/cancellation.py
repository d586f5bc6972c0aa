"""Cooperative cancellation for long-running pipeline operations."""

import asyncio
from typing import Awaitable, Optional, TypeVar

from iocflow.errors import Cancelled

T = TypeVar("T")


def check_cancelled(cancel: Optional[asyncio.Event], stage: str) -> None:
    """Raise Cancelled if the caller's signal is set."""
    if cancel is not None and cancel.is_set():
        raise Cancelled(f"Cancelled before {stage}")


async def run_cancellable(aw: Awaitable[T], cancel: Optional[asyncio.Event], stage: str) -> T:
    """
    Await ``aw`` unless ``cancel`` fires first.

    On cancel the in-flight work is cancelled and awaited, then Cancelled
    is raised. Without a signal this is a plain await.
    """
    if cancel is None:
        return await aw

    task = asyncio.ensure_future(aw)
    if cancel.is_set():
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise Cancelled(f"Cancelled before {stage}")

    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    raise Cancelled(f"Cancelled during {stage}")
