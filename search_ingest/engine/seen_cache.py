"""Process-wide membership set of record identifiers already ingested."""

from __future__ import annotations

from contextlib import contextmanager
from threading import Condition
from typing import Iterable, Iterator, Sequence

from .search import Record


class _ReadWriteLock:
    """Many readers or one writer; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class SeenCache:
    """Append-only set of seen record ids guarded by one read-write lock.

    Mutations are always batch shaped, so a single lock around the whole set
    is enough; readers never observe a half-applied :meth:`mark_seen`.
    """

    def __init__(self) -> None:
        self._ids: set[int] = set()
        self._lock = _ReadWriteLock()

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, record_id: object) -> bool:
        with self._lock.read():
            return record_id in self._ids

    def size(self) -> int:
        with self._lock.read():
            return len(self._ids)

    def filter(self, ids: Iterable[int]) -> list[int]:
        """Return the ids not yet marked, in input order."""

        with self._lock.read():
            return [record_id for record_id in ids if record_id not in self._ids]

    def filter_records(self, records: Sequence[Record]) -> tuple[list[Record], list[Record]]:
        """Split ``records`` into ``(new, seen)`` without marking anything."""

        new: list[Record] = []
        seen: list[Record] = []
        with self._lock.read():
            for record in records:
                (seen if record.record_id in self._ids else new).append(record)
        return new, seen

    def claim(self, records: Sequence[Record]) -> tuple[list[Record], list[Record]]:
        """Split like :meth:`filter_records` and mark the new ids atomically.

        A record id repeated inside ``records`` is new on its first occurrence
        and seen afterwards.
        """

        new: list[Record] = []
        seen: list[Record] = []
        with self._lock.write():
            for record in records:
                if record.record_id in self._ids:
                    seen.append(record)
                else:
                    self._ids.add(record.record_id)
                    new.append(record)
        return new, seen

    def mark_seen(self, ids: Iterable[int]) -> None:
        ids = list(ids)
        if not ids:
            return
        with self._lock.write():
            self._ids.update(ids)

    def load(self, ids: Iterable[int]) -> int:
        """Hydrate from durable storage; returns the resulting size."""

        with self._lock.write():
            self._ids.update(ids)
            return len(self._ids)


__all__ = ["SeenCache"]
