"""Create collections and their page rows from a search query."""

from __future__ import annotations

import string
from dataclasses import dataclass, replace
from threading import Event
from typing import TYPE_CHECKING, Iterator

import structlog

from ..config import SearchConfig
from ..errors import Cancelled, PlanningError
from ..logging_conf import get_logger
from .fetcher import RetryingFetcher
from .search import SearchParams, build_search_url, parse_search_response
from .types import PageDraft

if TYPE_CHECKING:
    from ..infra import PageStore


@dataclass(slots=True)
class PlanResult:
    collection_id: int
    search_url: str
    total_records: int
    pages_inserted: int


class CollectionPlanner:
    """Turn one search into a collection with one pending page per result slice."""

    def __init__(
        self,
        fetcher: RetryingFetcher,
        page_store: "PageStore",
        config: SearchConfig,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.page_store = page_store
        self.config = config
        self.logger = logger or get_logger("planner")

    def plan(self, params: SearchParams, cancel: Event) -> PlanResult:
        if params.limit < 1:
            raise PlanningError(f"Search limit must be positive, got {params.limit}")
        url = build_search_url(self.config.base_url, params)
        collection_id = self.page_store.start_collection(params.limit, url)
        log = self.logger.bind(collection_id=collection_id)

        response = self.fetcher.fetch(url, cancel)
        total = parse_search_response(response.body).total
        self.page_store.set_collection_total(collection_id, total)
        log.info("collection_started", search_url=url, total_records=total)

        if total > self.config.max_total_records:
            self.page_store.finish_collection(collection_id)
            raise PlanningError(
                f"Search matches {total} records, above the limit of {self.config.max_total_records}: {url}"
            )

        inserted = 0
        chunk: list[PageDraft] = []
        for skip in range(0, total, params.limit):
            if cancel.is_set():
                raise Cancelled(f"planning of collection {collection_id} cancelled")
            page_params = params.for_offset(skip)
            chunk.append(
                PageDraft(
                    collection_id=collection_id,
                    page_number=page_params.page,
                    search_url=build_search_url(self.config.base_url, page_params),
                )
            )
            if len(chunk) >= self.config.page_insert_batch:
                inserted += self.page_store.insert_pages(chunk)
                chunk = []
        if chunk:
            inserted += self.page_store.insert_pages(chunk)

        if not inserted:
            self.page_store.finish_collection(collection_id)
        log.info("pages_planned", pages=inserted)
        return PlanResult(
            collection_id=collection_id,
            search_url=url,
            total_records=total,
            pages_inserted=inserted,
        )


def sweep_params(base: SearchParams) -> Iterator[SearchParams]:
    """A*..Z* last-name by first-name grid used to split broad searches."""

    for last in string.ascii_uppercase:
        for first in string.ascii_uppercase:
            yield replace(base, last_name=f"{last}*", first_name=f"{first}*", page=1, skip=0)


__all__ = ["CollectionPlanner", "PlanResult", "sweep_params"]
