"""
Bounded fan-out of async tasks.

Items are processed in fixed-size batches: every task in a batch runs
concurrently, and the next batch starts only after the whole batch has
finished. A failing task yields a failed TaskOutcome instead of cancelling
its siblings.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class TaskOutcome(Generic[T]):
    item: T
    result: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BatchRunner:
    """Run an async function over items, at most batch_size at a time."""

    def __init__(self, batch_size: int = 10):
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        self.batch_size = batch_size
        self.batches_dispatched = 0

    async def run(self, items: Sequence[T], func: Callable[[T], Awaitable[Any]]) -> List[TaskOutcome[T]]:
        """
        Apply func to every item.

        Args:
            items: Items to process, in order
            func: Coroutine function called once per item

        Returns:
            One TaskOutcome per item, in the order of items
        """
        outcomes = []
        total_batches = (len(items) + self.batch_size - 1) // self.batch_size

        for start in range(0, len(items), self.batch_size):
            batch = items[start:start + self.batch_size]
            self.batches_dispatched += 1
            logger.debug(f"Dispatching batch {self.batches_dispatched}/{total_batches} ({len(batch)} tasks)")

            outcomes.extend(await asyncio.gather(*(self._run_one(item, func) for item in batch)))

        return outcomes

    @staticmethod
    async def _run_one(item: T, func: Callable[[T], Awaitable[Any]]) -> TaskOutcome[T]:
        try:
            return TaskOutcome(item=item, result=await func(item))
        except Exception as e:
            return TaskOutcome(item=item, error=e)
