"""
Store-neutral document types shared by every DocumentStore implementation.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional


class _ServerTimestamp:
    """Sentinel replaced with the commit time by the store that writes it."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"

    # Stores compare by identity, so copies must keep returning the singleton.
    def __copy__(self) -> "_ServerTimestamp":
        return self

    def __deepcopy__(self, memo) -> "_ServerTimestamp":
        return self


SERVER_TIMESTAMP = _ServerTimestamp()


def split_path(path: str) -> tuple[str, str]:
    """Splits a document path into (parent collection path, document id)."""
    parent, _, doc_id = path.rpartition("/")
    if not parent or not doc_id:
        raise ValueError(f"Not a document path: {path!r}")
    return parent, doc_id


@dataclass(frozen=True)
class DocumentSnapshot:
    """A point-in-time read of one document. `data` is None if it is missing."""

    path: str
    data: Optional[dict] = None

    @property
    def id(self) -> str:
        return split_path(self.path)[1]

    @property
    def parent(self) -> str:
        return split_path(self.path)[0]

    @property
    def exists(self) -> bool:
        return self.data is not None

    def get(self, field: str, default: Any = None) -> Any:
        if self.data is None:
            return default
        return self.data.get(field, default)

    def to_dict(self) -> Optional[dict]:
        return dict(self.data) if self.data is not None else None


class Subscription:
    """
    Cancellation handle returned by `subscribe` calls.

    Cancelling stops future deliveries and releases the underlying watch.
    It is safe to cancel more than once; the handle is also callable and
    usable as a context manager.
    """

    def __init__(self, unsubscribe: Callable[[], None]):
        self._unsubscribe = unsubscribe
        self._lock = threading.Lock()
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
        self._unsubscribe()

    __call__ = cancel

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.cancel()
