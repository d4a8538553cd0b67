"""Bounded-concurrency batch execution with per-item failure isolation."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable

from hostrelay.schemas import BatchOutcome

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 20
DEFAULT_CONCURRENCY = 5


async def run_batch(
    items: Iterable[Any],
    operation: Callable[[Any], Awaitable[Any]],
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    concurrency: int = DEFAULT_CONCURRENCY,
    on_progress: Callable[[int, int], Any] | None = None,
) -> list[BatchOutcome]:
    """Apply an async operation to every item without letting failures spread.

    Items are processed in sequential chunks of ``chunk_size``; within a
    chunk at most ``concurrency`` operations run at once. A raised
    exception becomes that item's ``error`` and never affects its siblings.

    Args:
        items: Inputs to process
        operation: Coroutine function called once per item
        chunk_size: Items per sequential chunk
        concurrency: Maximum operations in flight within a chunk
        on_progress: Called as ``on_progress(processed, total)`` after each
            chunk; may be a coroutine function

    Returns:
        One BatchOutcome per input item, in input order
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")

    items = list(items)
    total = len(items)
    semaphore = asyncio.Semaphore(concurrency)
    outcomes: list[BatchOutcome] = []

    async def _run_one(item: Any) -> BatchOutcome:
        async with semaphore:
            try:
                result = await operation(item)
            except Exception as e:
                logger.warning(f"Batch item {item!r} failed: {e}")
                return BatchOutcome(item=item, error=str(e) or type(e).__name__)
            return BatchOutcome(item=item, result=result)

    for start in range(0, total, chunk_size):
        chunk = items[start:start + chunk_size]
        outcomes.extend(await asyncio.gather(*(_run_one(item) for item in chunk)))

        processed = min(start + len(chunk), total)
        logger.debug(f"Batch progress: {processed}/{total}")
        if on_progress is not None:
            reported = on_progress(processed, total)
            if inspect.isawaitable(reported):
                await reported

    failed = sum(1 for outcome in outcomes if not outcome.ok)
    if failed:
        logger.info(f"Batch finished: {total - failed} succeeded, {failed} failed")
    return outcomes
