"""Run orchestrator wiring storage, cache, writers, outcome handler and pager."""

from __future__ import annotations

import time
from threading import Event
from typing import Any

import httpx
import structlog

from .config import AppConfig
from .engine import (
    CollectionPlanner,
    DuplicateWriter,
    PageClient,
    PageOutcomeHandler,
    PageProcessor,
    PlanResult,
    RecordRouter,
    RecordWriter,
    RetryingFetcher,
    SearchParams,
    SeenCache,
    WorkerPool,
    sweep_params,
)
from .engine.batch_writer import BatchingWriter
from .errors import Cancelled, IngestError, StorageError
from .infra import PageStore, SeenStore, SQLiteManager
from .logging_conf import get_logger

# Upper bound for a writer's final drain and flush at shutdown.
WRITER_STOP_TIMEOUT = 60.0


class Orchestrator:
    """Owns one run's components; configuration is injected, never global."""

    def __init__(
        self,
        config: AppConfig,
        storage: SQLiteManager,
        transport: httpx.BaseTransport | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.config = config
        self.storage = storage
        self.logger = logger or get_logger("orchestrator")
        processor = config.processor
        self.page_store = PageStore(
            storage,
            max_page_retries=processor.max_page_retries,
            reservation_timeout=processor.reservation_timeout,
        )
        self.seen_store = SeenStore(storage)
        self.cache = SeenCache()
        self.client = PageClient(config.http, transport=transport)
        self.fetcher = RetryingFetcher(self.client, processor.retry_attempts, processor.retry_delay)

    def __enter__(self) -> "Orchestrator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.client.close()

    # ------------------------------------------------------------------
    def hydrate_cache(self) -> int:
        """Load every durably seen id; on failure the cache starts empty."""

        try:
            ids = self.seen_store.get_all_seen()
        except StorageError as exc:
            self.logger.warning("cache_hydration_failed", error=str(exc))
            return 0
        size = self.cache.load(ids)
        self.logger.info("cache_hydrated", size=size)
        return size

    def run(self, cancel: Event) -> dict[str, Any]:
        """Collect every reservable page; returns a run summary.

        Cancellation ends the run with ``status="cancelled"``. Producer
        errors propagate once the writers have been stopped.
        """

        started = time.monotonic()
        settings = self.config.processor
        before = self.seen_store.counts()
        self.hydrate_cache()

        writers: list[BatchingWriter] = []
        router: RecordRouter | None = None
        duplicate_writer: DuplicateWriter | None = None
        if settings.persist_mode == "batched":
            duplicate_writer = DuplicateWriter(
                self.seen_store, settings.batch_size, settings.flush_timeout, settings.channel_size
            )
            record_writer = RecordWriter(
                self.storage, self.seen_store, settings.batch_size, settings.flush_timeout, settings.channel_size
            )
            writers = [duplicate_writer, record_writer]
            for writer in writers:
                writer.start(cancel)
            router = RecordRouter(self.cache, record_writer.channel, duplicate_writer.channel)

        outcomes = PageOutcomeHandler(
            self.page_store, self.storage, settings.outcome_workers, settings.channel_size
        )
        outcomes.start()
        processor = PageProcessor(self.fetcher, self.storage, self.seen_store, settings.persist_mode)
        pool = WorkerPool(self.page_store, processor, outcomes, settings, cache=self.cache, router=router)

        status = "completed"
        self.logger.info("run_started", mode=settings.persist_mode, workers=settings.max_concurrency)
        try:
            pool.run(cancel)
        except Cancelled:
            status = "cancelled"
            self.logger.warning("run_cancelled")
        finally:
            for writer in writers:
                if not writer.stop(WRITER_STOP_TIMEOUT):
                    self.logger.error("writer_stop_timeout", writer=writer.name)
            outcomes.close()

        after = self.seen_store.counts()
        summary: dict[str, Any] = {
            "status": status,
            "mode": settings.persist_mode,
            "pages_reserved": pool.stats.pages_reserved,
            "pages_completed": outcomes.stats.completed,
            "pages_failed": outcomes.stats.failed,
            "pages_cancelled": pool.stats.pages_cancelled,
            "peak_in_flight": pool.stats.peak_in_flight,
            "records_written": after["records"] - before["records"],
            "duplicates_written": duplicate_writer.stats.rows_flushed if duplicate_writer else 0,
            "cache_size": self.cache.size(),
            "elapsed": round(time.monotonic() - started, 3),
        }
        self.logger.info("run_finished", **summary)
        return summary

    # ------------------------------------------------------------------
    def plan(self, params: SearchParams, cancel: Event, sweep: bool = False) -> list[PlanResult]:
        """Plan one collection, or the A*..Z* grid when ``sweep`` is set.

        In a sweep, a failing cell is logged and the sweep moves on.
        """

        planner = CollectionPlanner(self.fetcher, self.page_store, self.config.search)
        if not sweep:
            return [planner.plan(params, cancel)]

        results: list[PlanResult] = []
        for cell in sweep_params(params):
            if cancel.is_set():
                raise Cancelled("sweep cancelled")
            try:
                results.append(planner.plan(cell, cancel))
            except Cancelled:
                raise
            except IngestError as exc:
                self.logger.error(
                    "collection_plan_failed",
                    last_name=cell.last_name,
                    first_name=cell.first_name,
                    error=str(exc),
                )
        return results

    def status(self, limit: int = 20) -> dict[str, Any]:
        return {
            "pages": self.page_store.progress_counts(),
            "storage": self.seen_store.counts(),
            "collections": self.page_store.collections(limit),
        }


__all__ = ["Orchestrator", "WRITER_STOP_TIMEOUT"]
