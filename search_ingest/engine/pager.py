"""Worker pool: one producer reserving pages, N consumers processing them."""

from __future__ import annotations

import random
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from threading import Event, Lock, Thread
from typing import TYPE_CHECKING

import structlog

from ..config import ProcessorConfig
from ..errors import Cancelled, ChannelClosed
from ..logging_conf import get_logger
from .channel import Channel
from .outcomes import PageOutcomeHandler
from .page_processor import PageProcessor, PageResult
from .router import RecordRouter
from .seen_cache import SeenCache
from .types import BatchResult, Page, PageUpdate

if TYPE_CHECKING:
    from ..infra import PageStore

# Time allowed for queued outcomes to land once a run has been cancelled.
OUTCOME_GRACE_SECONDS = 5.0


class PoolState(str, Enum):
    IDLE = "idle"
    PRODUCING = "producing"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass(slots=True)
class PoolStats:
    pages_reserved: int = 0
    pages_queued: int = 0
    pages_completed: int = 0
    pages_failed: int = 0
    pages_cancelled: int = 0
    in_flight: int = 0
    peak_in_flight: int = 0


class WorkerPool:
    """Bounded-concurrency pager over the ``pages`` work queue.

    With a ``router`` the pool runs in batched mode: after each page the
    durably seen ids are marked in the cache, the batch is routed to the
    writers and the page waits for the record writer to report its ids
    durably seen. Without one, the processor has already persisted the page and
    the cache is only warmed.
    """

    def __init__(
        self,
        page_store: "PageStore",
        processor: PageProcessor,
        outcomes: PageOutcomeHandler,
        config: ProcessorConfig,
        cache: SeenCache | None = None,
        router: RecordRouter | None = None,
        rng: random.Random | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.page_store = page_store
        self.processor = processor
        self.outcomes = outcomes
        self.config = config
        self.cache = cache
        self.router = router
        self.state = PoolState.IDLE
        self.stats = PoolStats()
        self.logger = logger or get_logger("pager")
        self._rng = rng or random.Random()
        self._lock = Lock()
        self._queue: Channel[Page] | None = None
        self._producer_error: Exception | None = None

    # ------------------------------------------------------------------
    def run(self, cancel: Event) -> PoolStats:
        """Process pages until the queue is exhausted.

        Raises the producer's error or :class:`Cancelled`; page failures are
        reported through the outcome handler and never end the run.
        """

        if self.state is not PoolState.IDLE:
            raise RuntimeError(f"worker pool already {self.state.value}")
        workers = self.config.max_concurrency
        self._queue = Channel(self.config.resolved_page_queue_size, name="pages")
        self.state = PoolState.PRODUCING
        self.logger.info("pool_started", workers=workers, queue_size=self._queue.capacity)

        producer = Thread(target=self._produce, args=(cancel,), name="pager-producer", daemon=True)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pager") as executor:
            futures = [executor.submit(self._consume, cancel) for _ in range(workers)]
            producer.start()
            producer.join()
            self.state = PoolState.DRAINING
            self.logger.info("pool_draining", queued=self.stats.pages_queued)
            for future in futures:
                future.result()

        self.outcomes.channel.close()
        self.outcomes.join()
        if cancel.is_set():
            if not self.outcomes.wait_for_completion(timeout=OUTCOME_GRACE_SECONDS):
                self.logger.warning("page_outcomes_pending", pending=self.outcomes.pending)
        else:
            self.outcomes.wait_for_completion(cancel)
        self.state = PoolState.STOPPED
        self.logger.info(
            "pool_stopped",
            reserved=self.stats.pages_reserved,
            completed=self.stats.pages_completed,
            failed=self.stats.pages_failed,
            cancelled=self.stats.pages_cancelled,
            peak_in_flight=self.stats.peak_in_flight,
        )

        if self._producer_error is not None:
            raise self._producer_error
        if cancel.is_set():
            raise Cancelled("worker pool cancelled")
        return self.stats

    # ------------------------------------------------------------------
    # Producer
    # ------------------------------------------------------------------
    def _produce(self, cancel: Event) -> None:
        assert self._queue is not None
        max_pages = self.config.max_pages
        try:
            while not cancel.is_set():
                size = self.config.reserve_batch_size
                if max_pages:
                    size = min(size, max_pages - self.stats.pages_queued)
                    if size <= 0:
                        self.logger.info("page_cap_reached", max_pages=max_pages)
                        break
                pages = self.page_store.reserve_batch(size)
                if not pages:
                    self.logger.info("no_pages_left")
                    break
                with self._lock:
                    self.stats.pages_reserved += len(pages)
                for page in pages:
                    self._queue.put(page, cancel)
                    with self._lock:
                        self.stats.pages_queued += 1
        except Cancelled:
            self.logger.info("producer_cancelled")
        except Exception as exc:  # noqa: BLE001
            self._producer_error = exc
            self.logger.error("producer_failed", error=f"{type(exc).__name__}: {exc}")
        finally:
            self._queue.close()

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------
    def _consume(self, cancel: Event) -> None:
        assert self._queue is not None
        while True:
            try:
                page = self._queue.get(cancel=cancel)
            except (ChannelClosed, Cancelled):
                return
            self._handle_page(page, cancel)

    def _pause(self, cancel: Event) -> bool:
        """Jittered wait before a fetch; ``True`` when cancelled meanwhile."""

        jitter = self.config.page_jitter
        delay = self.config.page_delay * (1 + self._rng.uniform(-jitter, jitter))
        delay = max(0.0, delay)
        if delay <= 0:
            return cancel.is_set()
        return cancel.wait(delay)

    def _handle_page(self, page: Page, cancel: Event) -> None:
        if self._pause(cancel):
            self._count("pages_cancelled")
            return

        error: Exception | None = None
        self._enter()
        try:
            result = self.processor.process(page, cancel)
            self._after_page(result, cancel)
        except Cancelled:
            # left reserved; picked up again once the reservation goes stale
            self._count("pages_cancelled")
            self.logger.info("page_cancelled", page_id=page.page_id, page_number=page.page_number)
            return
        except Exception as exc:  # noqa: BLE001
            error = exc
        finally:
            self._leave()

        if error is None:
            self._count("pages_completed")
        else:
            self._count("pages_failed")
            self.logger.warning(
                "page_error",
                page_id=page.page_id,
                page_number=page.page_number,
                error=f"{type(error).__name__}: {error}",
            )
        # not cancellable: the outcome receiver drains until the pool closes the channel
        try:
            self.outcomes.channel.put(PageUpdate.for_page(page, error))
        except ChannelClosed as exc:
            self.logger.error("page_update_dropped", page_id=page.page_id, error=str(exc))

    def _after_page(self, result: PageResult, cancel: Event) -> None:
        if self.router is not None:
            if self.cache is not None:
                self.cache.mark_seen(result.durable_seen_ids)
            results: Channel[BatchResult] = Channel(1, name="batch-result")
            result.batch.result_channel = results
            routed = self.router.route(result.batch, cancel)
            if routed.queued:
                # the page only completes once its ids are durably marked seen
                outcome = results.get(cancel=cancel)
                if outcome.error is not None:
                    raise outcome.error
        elif self.cache is not None:
            self.cache.mark_seen(result.batch.record_ids)

    # ------------------------------------------------------------------
    def _enter(self) -> None:
        with self._lock:
            self.stats.in_flight += 1
            self.stats.peak_in_flight = max(self.stats.peak_in_flight, self.stats.in_flight)

    def _leave(self) -> None:
        with self._lock:
            self.stats.in_flight -= 1

    def _count(self, field: str) -> None:
        with self._lock:
            setattr(self.stats, field, getattr(self.stats, field) + 1)


__all__ = ["OUTCOME_GRACE_SECONDS", "PoolState", "PoolStats", "WorkerPool"]
