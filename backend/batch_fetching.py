"""Batched, paced fan-out of image matching over a route's sampling points."""

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Sequence

from models import MatchedImage, SamplingPoint

logger = logging.getLogger(__name__)

# Concurrent matcher calls per group; also the cap on in-flight requests.
DEFAULT_BATCH_SIZE: int = 10
# Flat pause between groups, regardless of how quickly a group finished.
BATCH_PACING_S: float = 0.5

MatchFunc = Callable[[SamplingPoint], Awaitable[MatchedImage | None]]


async def fetch_batched(
    points: Sequence[SamplingPoint],
    match: MatchFunc,
    batch_size: int = DEFAULT_BATCH_SIZE,
    *,
    pacing_s: float = BATCH_PACING_S,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    should_continue: Callable[[], bool] | None = None,
) -> AsyncIterator[list[MatchedImage | None]]:
    """Yields match results one contiguous group of ``batch_size`` at a time.

    All matches in a group run concurrently and the group is yielded only once
    every call in it has finished, so at most ``batch_size`` requests are in
    flight. Each yielded list is index-aligned with its slice of ``points``.

    The generator is lazy: the next group (and the pause before it) starts
    only when the consumer asks for it. A consumer that stops iterating stops
    all further provider traffic.

    ``should_continue`` is checked after each pause, right before a group
    starts; once it returns False the generator ends without starting it.

    Raises:
        ValueError: If ``batch_size`` is less than 1.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1.")

    total = len(points)
    for start in range(0, total, batch_size):
        if start > 0:
            await sleep(pacing_s)
        if should_continue is not None and not should_continue():
            logger.debug("Stopping before batch starting at point %d", start + 1)
            return
        group = points[start:start + batch_size]
        results = await asyncio.gather(*(match(point) for point in group))
        logger.debug(
            "Batch %d-%d of %d: %d matched",
            start + 1,
            start + len(group),
            total,
            sum(1 for r in results if r is not None),
        )
        yield list(results)
