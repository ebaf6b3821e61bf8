"""
Bounded task groups.

Items are processed in fixed-size batches. Tasks inside a batch run
concurrently and fail independently; batches run strictly one after another
with a pause in between so external hosts and APIs are not flooded.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class BatchOutcome(Generic[T, R]):
    """Result of one item: either a value or the exception it raised."""
    item: T
    value: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def run_in_batches(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    batch_size: int,
    delay: float = 0.0,
    item_timeout: Optional[float] = None,
    label: str = "batch",
) -> List[BatchOutcome[T, R]]:
    """
    Run `worker` over `items` in batches of `batch_size`.

    Args:
        items: Inputs, processed in order
        worker: Coroutine function applied to each item
        batch_size: Maximum number of concurrent tasks
        delay: Seconds to wait between batches (not after the last one)
        item_timeout: Per-item timeout; a timed-out item becomes an error outcome
        label: Name used in log lines

    Returns:
        One BatchOutcome per item, in input order
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    outcomes: List[BatchOutcome[T, R]] = []
    total_batches = (len(items) + batch_size - 1) // batch_size

    for index in range(0, len(items), batch_size):
        batch = list(items[index:index + batch_size])
        batch_no = index // batch_size + 1

        async def guarded(item: T) -> R:
            if item_timeout is not None:
                return await asyncio.wait_for(worker(item), timeout=item_timeout)
            return await worker(item)

        results = await asyncio.gather(
            *(guarded(item) for item in batch),
            return_exceptions=True,
        )

        failed = 0
        for item, result in zip(batch, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    # KeyboardInterrupt / SystemExit / CancelledError
                    raise result
                failed += 1
                outcomes.append(BatchOutcome(item=item, error=result))
            else:
                outcomes.append(BatchOutcome(item=item, value=result))

        logger.debug(
            f"{label} {batch_no}/{total_batches}: "
            f"{len(batch) - failed} ok, {failed} failed"
        )

        if delay and index + batch_size < len(items):
            await asyncio.sleep(delay)

    return outcomes
