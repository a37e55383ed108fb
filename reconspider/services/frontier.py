"""
Crawl Frontier
Bounded priority queue of pending work items (BFS or DFS discipline)
"""

import heapq
import itertools
import threading
import time
from typing import Dict, List, Optional, Tuple

from reconspider.models.crawl_result import ItemState, Strategy, WorkItem


class FrontierClosed(Exception):
    """Raised when pushing into a closed frontier"""


class Frontier:
    """
    Priority queue of work items

    BFS orders by depth, then origin rank, then insertion order (FIFO).
    DFS orders by deepest first, then origin rank, then newest first (LIFO).
    Pushing into a full frontier blocks the producer until a slot frees, the
    timeout expires, or the frontier is closed.
    """

    def __init__(self, strategy: Strategy = Strategy.BFS, capacity: int = 10000):
        self.strategy = Strategy(strategy)
        self.capacity = capacity

        self._heap: List[Tuple[tuple, WorkItem]] = []
        self._leased: Dict[int, WorkItem] = {}
        self._counter = itertools.count()
        self._closed = False
        self._cond = threading.Condition(threading.Lock())

        self.stats = {
            'queued': 0,
            'leased': 0,
            'completed': 0,
            'failed': 0,
            'dropped': 0,
            'requeued': 0
        }

    def _sort_key(self, item: WorkItem) -> tuple:
        seq = next(self._counter)
        if self.strategy == Strategy.DFS:
            return (-item.depth, item.origin.rank, -seq)
        return (item.depth, item.origin.rank, seq)

    # ============ Producer side ============

    def push(self, item: WorkItem, block: bool = True, timeout: Optional[float] = None) -> bool:
        """
        Enqueue a work item

        Returns:
            True when queued, False when the frontier stayed full until timeout
            (or block=False and it is full)

        Raises:
            FrontierClosed: when the frontier has been closed
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while len(self._heap) >= self.capacity and not self._closed:
                if not block:
                    return False
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)
            if self._closed:
                raise FrontierClosed()
            item.state = ItemState.QUEUED
            heapq.heappush(self._heap, (self._sort_key(item), item))
            self.stats['queued'] += 1
            self._cond.notify_all()
            return True

    def requeue(self, item: WorkItem) -> None:
        """Put a leased item back with its retry count bumped, ignoring capacity"""
        with self._cond:
            self._leased.pop(item.item_id, None)
            if self._closed:
                item.state = ItemState.DROPPED
                self.stats['dropped'] += 1
                return
            item.retries += 1
            item.state = ItemState.QUEUED
            heapq.heappush(self._heap, (self._sort_key(item), item))
            self.stats['requeued'] += 1
            self._cond.notify_all()

    # ============ Consumer side ============

    def lease(self, timeout: Optional[float] = None) -> Optional[WorkItem]:
        """
        Take the highest-priority item, waiting up to timeout

        Returns:
            The leased item, or None on timeout or when closed
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._heap and not self._closed:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._cond.wait(remaining)
            if self._closed or not self._heap:
                return None
            _, item = heapq.heappop(self._heap)
            item.state = ItemState.LEASED
            self._leased[item.item_id] = item
            self.stats['leased'] += 1
            self._cond.notify_all()
            return item

    def _finish(self, item: WorkItem, state: ItemState) -> None:
        with self._cond:
            self._leased.pop(item.item_id, None)
            item.state = state
            self.stats[state.value] += 1
            self._cond.notify_all()

    def complete(self, item: WorkItem) -> None:
        self._finish(item, ItemState.COMPLETED)

    def fail(self, item: WorkItem) -> None:
        self._finish(item, ItemState.FAILED)

    def drop(self, item: WorkItem) -> None:
        self._finish(item, ItemState.DROPPED)

    # ============ Lifecycle ============

    def close(self) -> List[WorkItem]:
        """Close the frontier, dropping and returning everything still queued"""
        with self._cond:
            self._closed = True
            dropped = [item for _, item in self._heap]
            self._heap.clear()
            for item in dropped:
                item.state = ItemState.DROPPED
            self.stats['dropped'] += len(dropped)
            self._cond.notify_all()
            return dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        with self._cond:
            return len(self._heap)

    def in_flight(self) -> int:
        with self._cond:
            return len(self._leased)

    def is_idle(self) -> bool:
        """Nothing queued and nothing leased"""
        with self._cond:
            return not self._heap and not self._leased

    def __len__(self) -> int:
        return self.pending()

    def get_stats(self) -> Dict[str, int]:
        with self._cond:
            stats = dict(self.stats)
            stats['pending'] = len(self._heap)
            stats['in_flight'] = len(self._leased)
            return stats
