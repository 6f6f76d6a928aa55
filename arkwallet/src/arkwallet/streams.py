"""
Helpers for consuming async streams under a cancel event.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import TypeVar

T = TypeVar("T")


async def next_or_cancel(iterator: AsyncIterator[T], cancel: asyncio.Event | None) -> T | None:
    """
    Await the next item of ``iterator`` unless ``cancel`` gets set first.

    Returns:
        The item, or None if the iterator is exhausted or cancel was set.
        A pending read is cancelled when cancel wins.
    """
    if cancel is None:
        try:
            return await anext(iterator)
        except StopAsyncIteration:
            return None
    if cancel.is_set():
        return None

    next_task = asyncio.ensure_future(anext(iterator))
    cancel_task = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait(
            {next_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        cancel_task.cancel()
        if not next_task.done():
            next_task.cancel()

    if next_task not in done:
        return None
    try:
        return next_task.result()
    except StopAsyncIteration:
        return None


async def iter_until_cancelled(
    iterator: AsyncIterator[T], cancel: asyncio.Event | None
) -> AsyncIterator[T]:
    """Yield from ``iterator`` until it ends or ``cancel`` is set."""
    while True:
        item = await next_or_cancel(iterator, cancel)
        if item is None:
            return
        yield item
