"""Accumulate-and-flush writers for new records and duplicate audit rows."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from queue import Empty
from threading import Event, Thread
from typing import TYPE_CHECKING, Generic, Iterable, TypeVar

import structlog

from ..errors import Cancelled, ChannelClosed, IngestError
from ..logging_conf import get_logger
from .channel import Channel
from .types import BatchResult, DuplicateEntry, RecordBatch, RecordRow

if TYPE_CHECKING:
    from ..infra import SeenStore, SQLiteManager

T = TypeVar("T")
R = TypeVar("R")


@dataclass(slots=True)
class WriterStats:
    items_received: int = 0
    rows_flushed: int = 0
    rows_dropped: int = 0
    flushes: int = 0
    failed_flushes: int = 0


class BatchingWriter(ABC, Generic[T, R]):
    """Buffer rows derived from inbound items; flush on size or on timer.

    The inbound channel is owned here; upstream stages only ``put`` into it.
    :meth:`stop` closes it, after which the loop drains what is queued,
    flushes once more and sets :attr:`done`. A failed flush is logged and
    its rows discarded.
    """

    def __init__(
        self,
        name: str,
        batch_size: int,
        flush_timeout: float,
        channel_size: int,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.name = name
        self.batch_size = batch_size
        self.flush_timeout = flush_timeout
        self.channel: Channel[T] = Channel(channel_size, name=f"{name}-writer")
        self.done = Event()
        self.stats = WriterStats()
        self.logger = logger or get_logger(f"{name}_writer")
        self._cancel = Event()
        self._thread: Thread | None = None

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------
    def prepare(self, item: T) -> Iterable[R]:
        """Turn one inbound item into buffered rows (identity by default)."""

        return [item]  # type: ignore[list-item]

    @abstractmethod
    def write(self, rows: list[R]) -> None:
        """Persist one batch of rows."""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, cancel: Event | None = None) -> None:
        if self._thread is not None:
            raise RuntimeError(f"{self.name} writer already started")
        if cancel is not None:
            self._cancel = cancel
        self._thread = Thread(target=self._run, name=f"writer-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> bool:
        """Close the inbound channel and wait for the final flush."""

        self.channel.close()
        return self.done.wait(timeout)

    def _run(self) -> None:
        buffer: list[R] = []
        deadline = time.monotonic() + self.flush_timeout
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._flush(buffer)
                    deadline = time.monotonic() + self.flush_timeout
                    continue
                try:
                    item = self.channel.get(timeout=remaining, cancel=self._cancel)
                except Empty:
                    self._flush(buffer)
                    deadline = time.monotonic() + self.flush_timeout
                    continue
                except Cancelled:
                    self.logger.info("writer_cancelled", buffered=len(buffer))
                    self._flush(buffer)
                    return
                except ChannelClosed:
                    # closed channels only raise once drained
                    self._flush(buffer)
                    return

                self.stats.items_received += 1
                self._accept(item, buffer)
                if len(buffer) >= self.batch_size:
                    self._flush(buffer)
                    deadline = time.monotonic() + self.flush_timeout
        finally:
            self.logger.info("writer_stopped", **_stats_dict(self.stats))
            self.done.set()

    def _accept(self, item: T, buffer: list[R]) -> None:
        try:
            buffer.extend(self.prepare(item))
        except (IngestError, ValueError, TypeError) as exc:
            self.logger.error("prepare_failed", error=str(exc))

    def _flush(self, buffer: list[R]) -> None:
        if not buffer:
            return
        rows = list(buffer)
        buffer.clear()
        self.logger.info("flushing_batch", size=len(rows))
        try:
            self.write(rows)
        except Exception as exc:  # noqa: BLE001
            self.stats.failed_flushes += 1
            self.stats.rows_dropped += len(rows)
            self.logger.error("flush_failed", size=len(rows), error=str(exc))
            return
        self.stats.flushes += 1
        self.stats.rows_flushed += len(rows)


class RecordWriter(BatchingWriter[RecordBatch, RecordRow]):
    """Persist new records; marks each batch's ids seen as it arrives."""

    def __init__(
        self,
        storage: "SQLiteManager",
        seen_store: "SeenStore",
        batch_size: int,
        flush_timeout: float,
        channel_size: int,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        super().__init__("record", batch_size, flush_timeout, channel_size, logger)
        self.storage = storage
        self.seen_store = seen_store

    def prepare(self, item: RecordBatch) -> list[RecordRow]:
        error: Exception | None = None
        try:
            self.update_seen_records(item.record_ids)
        except IngestError as exc:
            error = exc
            self.logger.error("mark_seen_failed", page_id=item.page.page_id, error=str(exc))
        if item.result_channel is not None:
            try:
                item.result_channel.put(BatchResult(batch=item, error=error), self._cancel)
            except (Cancelled, ChannelClosed) as exc:
                self.logger.debug("batch_result_undelivered", page_id=item.page.page_id, error=str(exc))
        return RecordRow.from_batch(item)

    def update_seen_records(self, ids: list[int]) -> None:
        if not ids:
            return
        with self.storage.begin() as tx:
            self.seen_store.record_seen(ids, tx)
            tx.commit()

    def write(self, rows: list[RecordRow]) -> None:
        with self.storage.begin() as tx:
            self.seen_store.insert_records(rows, tx)
            tx.commit()


class DuplicateWriter(BatchingWriter[DuplicateEntry, DuplicateEntry]):
    """Persist audit rows for records encountered again."""

    def __init__(
        self,
        seen_store: "SeenStore",
        batch_size: int,
        flush_timeout: float,
        channel_size: int,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        super().__init__("duplicate", batch_size, flush_timeout, channel_size, logger)
        self.seen_store = seen_store

    def write(self, rows: list[DuplicateEntry]) -> None:
        self.seen_store.bulk_insert_duplicates(rows)


def _stats_dict(stats: WriterStats) -> dict[str, int]:
    return {
        "items_received": stats.items_received,
        "rows_flushed": stats.rows_flushed,
        "rows_dropped": stats.rows_dropped,
        "flushes": stats.flushes,
        "failed_flushes": stats.failed_flushes,
    }


__all__ = ["BatchingWriter", "DuplicateWriter", "RecordWriter", "WriterStats"]
