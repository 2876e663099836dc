"""
Channel-style access to snapshot subscriptions.
"""

from __future__ import annotations

import queue
from typing import Callable, Generic, Optional, TypeVar

from autoreviews.documents import Subscription

T = TypeVar("T")

_CLOSED = object()


class SnapshotStream(Generic[T]):
    """
    Iterator over the emissions of a subscription.

    Every item is a complete replacement of the previous one (the full result
    set at that moment), never a diff. Closing the stream cancels the
    subscription and ends iteration.
    """

    def __init__(self, subscribe: Callable[[Callable[[T], None]], Subscription]):
        self._queue: queue.Queue = queue.Queue()
        self._closed = False
        self._subscription = subscribe(self._queue.put)

    @property
    def closed(self) -> bool:
        return self._closed

    def next_snapshot(self, timeout: Optional[float] = None) -> Optional[T]:
        """Blocks for the next snapshot; returns None on timeout or once closed."""
        if self._closed and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            return None
        return item

    def __iter__(self):
        return self

    def __next__(self) -> T:
        if self._closed and self._queue.empty():
            raise StopIteration
        item = self._queue.get()
        if item is _CLOSED:
            raise StopIteration
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._subscription.cancel()
        self._queue.put(_CLOSED)

    def __enter__(self) -> "SnapshotStream[T]":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
