"""
Work Queue - deduplicating, rate-limited queue of reconcile requests.

A key is never handed to two workers at once. Adding a key that is being
processed marks it dirty, and it is queued again when the worker calls
done(). Failed keys are retried with exponential backoff and jitter.
"""

import asyncio
import logging
import random
from typing import Dict, Hashable, Optional, Set

logger = logging.getLogger(__name__)

# Cap on the backoff exponent, the delay is clamped to max_delay long before
MAX_BACKOFF_EXPONENT = 30


class WorkQueue:
    """
    Args:
        base_delay: First retry delay in seconds
        max_delay: Upper bound on the retry delay in seconds
        jitter_factor: Relative jitter applied to every retry delay (0.1 = ±10%)
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 1000.0,
        jitter_factor: float = 0.1,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_factor = jitter_factor

        self._queue: asyncio.Queue = asyncio.Queue()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._failures: Dict[Hashable, int] = {}
        self._timers: Dict[Hashable, asyncio.TimerHandle] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._dirty)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, item: Hashable) -> None:
        """Queue an item unless it is already waiting."""
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.put_nowait(item)

    def add_after(self, item: Hashable, delay: float) -> None:
        """Queue an item after a delay. An earlier pending timer wins."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(item)
            return

        loop = asyncio.get_running_loop()
        when = loop.time() + delay
        existing = self._timers.get(item)
        if existing is not None:
            if existing.when() <= when:
                return
            existing.cancel()
        self._timers[item] = loop.call_at(when, self._fire, item)

    def _fire(self, item: Hashable) -> None:
        self._timers.pop(item, None)
        self.add(item)

    def backoff_delay(self, failures: int) -> float:
        """Delay before retry number ``failures`` (1-based)."""
        exponent = min(max(failures - 1, 0), MAX_BACKOFF_EXPONENT)
        delay = min(self.base_delay * (2 ** exponent), self.max_delay)
        jitter = random.uniform(-self.jitter_factor, self.jitter_factor)
        return delay * (1 + jitter)

    def add_rate_limited(self, item: Hashable) -> float:
        """
        Queue an item after its backoff delay.

        Returns:
            The delay applied, in seconds
        """
        failures = self._failures.get(item, 0) + 1
        self._failures[item] = failures
        delay = self.backoff_delay(failures)
        logger.debug(f"Retrying {item} in {delay:.2f}s (attempt {failures})")
        self.add_after(item, delay)
        return delay

    def forget(self, item: Hashable) -> None:
        """Reset the failure count of an item."""
        self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        return self._failures.get(item, 0)

    async def get(self) -> Optional[Hashable]:
        """
        Wait for the next item and mark it as processing.

        Returns:
            The item, or None once the queue is shut down
        """
        item = await self._queue.get()
        if item is None:
            return None
        self._dirty.discard(item)
        self._processing.add(item)
        return item

    def done(self, item: Hashable) -> None:
        """Finish processing an item, requeueing it if it was re-added meanwhile."""
        self._processing.discard(item)
        if item in self._dirty and not self._shutting_down:
            self._queue.put_nowait(item)

    def shutdown(self, workers: int = 1) -> None:
        """Stop accepting items and wake ``workers`` waiting consumers."""
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for _ in range(workers):
            self._queue.put_nowait(None)
