"""Fetch one page, parse it and check its records against durable seen ids."""

from __future__ import annotations

from dataclasses import dataclass
from threading import Event
from typing import TYPE_CHECKING, Literal

import structlog

from ..errors import Cancelled
from ..logging_conf import get_logger
from .fetcher import RetryingFetcher
from .search import Record, parse_search_response
from .types import Page, RecordBatch, RecordRow

if TYPE_CHECKING:
    from ..infra import SeenStore, SQLiteManager


@dataclass(slots=True)
class PageResult:
    batch: RecordBatch
    unseen: list[Record]

    @property
    def durable_seen_ids(self) -> list[int]:
        """Ids of the batch that were already recorded as seen."""

        unseen = {record.record_id for record in self.unseen}
        return [record_id for record_id in self.batch.record_ids if record_id not in unseen]


class PageProcessor:
    """Per-page fetch/parse plus the transactional seen-id check.

    In ``direct`` mode the unseen records are inserted and marked seen in the
    same transaction as the lookup. In ``batched`` mode the transaction is a
    consistent read only; persistence is left to the record writer.
    """

    def __init__(
        self,
        fetcher: RetryingFetcher,
        storage: "SQLiteManager",
        seen_store: "SeenStore",
        persist_mode: Literal["batched", "direct"] = "batched",
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.storage = storage
        self.seen_store = seen_store
        self.persist_mode = persist_mode
        self.logger = logger or get_logger("page_processor")

    def process(self, page: Page, cancel: Event) -> PageResult:
        if cancel.is_set():
            raise Cancelled(f"page {page.page_number} cancelled")

        response = self.fetcher.fetch(page.search_url, cancel)
        search = parse_search_response(response.body)
        batch = RecordBatch(
            records=list(search.records),
            search_url=page.search_url,
            collection_id=page.collection_id,
            page=page,
        )

        with self.storage.begin(immediate=self.persist_mode == "direct") as tx:
            seen_ids = set(self.seen_store.get_seen(batch.record_ids, tx))
            unseen = _first_occurrences(r for r in batch.records if r.record_id not in seen_ids)
            if self.persist_mode == "direct" and unseen:
                direct = RecordBatch(unseen, batch.search_url, batch.collection_id, page)
                self.seen_store.insert_records(RecordRow.from_batch(direct), tx)
                self.seen_store.record_seen([record.record_id for record in unseen], tx)
            if cancel.is_set():
                raise Cancelled(f"page {page.page_number} cancelled before commit")
            tx.commit()

        self.logger.info(
            "page_processed",
            page_id=page.page_id,
            page_number=page.page_number,
            collection_id=page.collection_id,
            records=len(batch.records),
            unseen=len(unseen),
            total=search.total,
            mode=self.persist_mode,
        )
        return PageResult(batch=batch, unseen=unseen)


def _first_occurrences(records) -> list[Record]:
    """Drop repeated ids inside one page, keeping the first."""

    kept: dict[int, Record] = {}
    for record in records:
        kept.setdefault(record.record_id, record)
    return list(kept.values())


__all__ = ["PageProcessor", "PageResult"]
