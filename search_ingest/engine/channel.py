"""Bounded, closable hand-off queue used between pipeline stages.

Each stage owns the channel it reads from. Producers call :meth:`Channel.put`
and the owner of the producing side calls :meth:`Channel.close` once no more
items will be sent. Readers keep receiving buffered items after close; once
the channel is closed *and* empty, receives raise :class:`ChannelClosed`.
"""

from __future__ import annotations

import time
from collections import deque
from queue import Empty
from threading import Condition, Event
from typing import Deque, Generic, TypeVar

from ..errors import Cancelled, ChannelClosed

T = TypeVar("T")

# Upper bound on how long a blocked put/get sleeps before re-checking the
# cancellation event.
POLL_INTERVAL = 0.05


class Channel(Generic[T]):
    """FIFO queue with a fixed capacity and Go-style close semantics."""

    def __init__(self, capacity: int, name: str = "channel") -> None:
        if capacity < 1:
            raise ValueError("Channel capacity must be >= 1")
        self.capacity = capacity
        self.name = name
        self._items: Deque[T] = deque()
        self._closed = False
        self._cond = Condition()

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def put(self, item: T, cancel: Event | None = None) -> None:
        """Append ``item``, blocking while the channel is full."""

        with self._cond:
            while True:
                if self._closed:
                    raise ChannelClosed(f"send on closed channel {self.name!r}")
                if len(self._items) < self.capacity:
                    self._items.append(item)
                    self._cond.notify_all()
                    return
                if cancel is not None and cancel.is_set():
                    raise Cancelled(f"send on {self.name!r} cancelled")
                self._cond.wait(POLL_INTERVAL)

    def get(self, timeout: float | None = None, cancel: Event | None = None) -> T:
        """Remove and return the oldest item.

        Raises :class:`queue.Empty` when ``timeout`` elapses, ``Cancelled``
        when ``cancel`` is set while waiting and ``ChannelClosed`` once the
        channel is closed and drained.
        """

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._items:
                    item = self._items.popleft()
                    self._cond.notify_all()
                    return item
                if self._closed:
                    raise ChannelClosed(f"channel {self.name!r} closed")
                if cancel is not None and cancel.is_set():
                    raise Cancelled(f"receive on {self.name!r} cancelled")
                wait = POLL_INTERVAL
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise Empty
                    wait = min(wait, remaining)
                self._cond.wait(wait)

    def get_nowait(self) -> T:
        with self._cond:
            if self._items:
                item = self._items.popleft()
                self._cond.notify_all()
                return item
            if self._closed:
                raise ChannelClosed(f"channel {self.name!r} closed")
            raise Empty

    def close(self) -> None:
        """Mark the channel closed; idempotent."""

        with self._cond:
            self._closed = True
            self._cond.notify_all()


__all__ = ["Channel", "POLL_INTERVAL"]
