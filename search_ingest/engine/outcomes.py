"""Apply page outcomes (complete / failed) to the page store."""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from threading import Condition, Event, Thread
from typing import TYPE_CHECKING

import structlog

from ..errors import Cancelled, ChannelClosed, IngestError
from ..logging_conf import get_logger
from .channel import POLL_INTERVAL, Channel
from .types import PageStatus, PageUpdate

if TYPE_CHECKING:
    from ..infra import PageStore, SQLiteManager


@dataclass(slots=True)
class OutcomeStats:
    completed: int = 0
    failed: int = 0
    errors: int = 0


class PageOutcomeHandler:
    """Receive ``PageUpdate`` messages and persist them on a bounded pool.

    Workers send on :attr:`channel`; the worker pool closes it once every
    consumer has returned. The receive loop runs until then, cancelled or
    not, so no sent update is left unapplied. :meth:`join` waits for the
    receive loop, :meth:`wait_for_completion` for the dispatched updates.
    """

    def __init__(
        self,
        page_store: "PageStore",
        storage: "SQLiteManager",
        workers: int = 4,
        channel_size: int = 1000,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.page_store = page_store
        self.storage = storage
        self.workers = workers
        self.channel: Channel[PageUpdate] = Channel(channel_size, name="page-outcomes")
        self.stats = OutcomeStats()
        self.logger = logger or get_logger("outcomes")
        self._executor: ThreadPoolExecutor | None = None
        self._thread: Thread | None = None
        self._pending = 0
        self._idle = Condition()

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("outcome handler already started")
        self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="outcome")
        self._thread = Thread(target=self._receive, name="outcome-receiver", daemon=True)
        self._thread.start()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _receive(self) -> None:
        assert self._executor is not None
        while True:
            try:
                update = self.channel.get()
            except ChannelClosed:
                break
            self._dispatch(update)
        self.logger.debug("outcome_receiver_stopped")

    def _dispatch(self, update: PageUpdate) -> None:
        assert self._executor is not None
        with self._idle:
            self._pending += 1
        self._executor.submit(self._run_one, update)

    def _run_one(self, update: PageUpdate) -> None:
        try:
            self.handle(update)
        finally:
            with self._idle:
                self._pending -= 1
                self._idle.notify_all()

    def handle(self, update: PageUpdate) -> None:
        """Persist one outcome; storage errors are logged, never raised."""

        try:
            if update.status is PageStatus.COMPLETED:
                with self.storage.begin() as tx:
                    self.page_store.mark_complete(update.page_id, tx)
                    tx.commit()
                with self._idle:
                    self.stats.completed += 1
                self.logger.debug("page_completed", page_id=update.page_id)
            else:
                self.page_store.mark_failed(update.page_id)
                with self._idle:
                    self.stats.failed += 1
                self.logger.warning("page_failed", page_id=update.page_id, error=str(update.error))
        except IngestError as exc:
            with self._idle:
                self.stats.errors += 1
            self.logger.error(
                "page_outcome_failed",
                page_id=update.page_id,
                status=update.status.value,
                error=str(exc),
            )

    @property
    def pending(self) -> int:
        with self._idle:
            return self._pending

    def wait_for_completion(self, cancel: Event | None = None, timeout: float | None = None) -> bool:
        """Block until every dispatched update has been applied.

        Returns ``False`` when ``timeout`` elapses first; raises
        :class:`Cancelled` when ``cancel`` is set while work is outstanding.
        """

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while self._pending:
                if cancel is not None and cancel.is_set():
                    raise Cancelled("cancelled while waiting for page outcomes")
                wait_for = POLL_INTERVAL
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                    wait_for = min(wait_for, remaining)
                self._idle.wait(wait_for)
        return True

    def close(self) -> None:
        """Close the channel and release the pool once the receive loop is done."""

        self.channel.close()
        self.join()
        if self._executor is not None:
            self._executor.shutdown(wait=True)


__all__ = ["OutcomeStats", "PageOutcomeHandler"]
