"""Split a page's records into new and already-seen streams."""

from __future__ import annotations

from dataclasses import dataclass
from threading import Event

import structlog

from ..logging_conf import get_logger
from .channel import Channel
from .seen_cache import SeenCache
from .types import DuplicateEntry, RecordBatch


@dataclass(slots=True)
class RouteResult:
    new: int
    duplicates: int
    queued: bool = False


class RecordRouter:
    """Route records to the record writer (new) or duplicate writer (seen).

    New ids are claimed in the cache in the same lock acquisition that
    classifies them, so two pages racing on one id cannot both see it as new.
    """

    def __init__(
        self,
        cache: SeenCache,
        record_channel: Channel[RecordBatch],
        duplicate_channel: Channel[DuplicateEntry],
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.cache = cache
        self.record_channel = record_channel
        self.duplicate_channel = duplicate_channel
        self.logger = logger or get_logger("router")

    def route(self, batch: RecordBatch, cancel: Event) -> RouteResult:
        """Dispatch every record of ``batch``; blocks while a writer's channel is full."""

        if not batch.records:
            return RouteResult(new=0, duplicates=0)

        new, seen = self.cache.claim(batch.records)
        duplicates = 0
        for record in seen:
            try:
                payload = record.to_json()
            except (TypeError, ValueError) as exc:
                self.logger.error("duplicate_serialise_failed", record_id=record.record_id, error=str(exc))
                continue
            self.duplicate_channel.put(
                DuplicateEntry(
                    record_id=record.record_id,
                    collection_id=batch.collection_id,
                    page_number=batch.page.page_number,
                    payload=payload,
                ),
                cancel,
            )
            duplicates += 1

        if not new:
            self.logger.debug("no_new_records", page_id=batch.page.page_id)
        batch.records = new
        self.record_channel.put(batch, cancel)
        self.logger.info(
            "records_routed",
            page_id=batch.page.page_id,
            new=len(new),
            duplicates=duplicates,
        )
        return RouteResult(new=len(new), duplicates=duplicates, queued=True)


__all__ = ["RecordRouter", "RouteResult"]
