"""Messages exchanged between pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

from .search import Record

if TYPE_CHECKING:
    from .channel import Channel


class PageProgress(str, Enum):
    """Values of ``pages.progress``."""

    PENDING = "pending"
    RESERVED = "reserved"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(slots=True)
class Page:
    """One unit of remote work, as stored in the ``pages`` table."""

    page_id: int
    collection_id: int
    page_number: int
    search_url: str
    progress: PageProgress = PageProgress.PENDING
    is_complete: bool = False
    retry_count: int = 0
    last_attempt_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Page":
        last_attempt = row["last_attempt_at"]
        return cls(
            page_id=row["page_id"],
            collection_id=row["collection_id"],
            page_number=row["page_number"],
            search_url=row["search_url"],
            progress=PageProgress(row["progress"]),
            is_complete=bool(row["is_complete"]),
            retry_count=row["retry_count"],
            last_attempt_at=datetime.fromisoformat(last_attempt) if last_attempt else None,
        )


@dataclass(slots=True)
class PageDraft:
    """Page row to be inserted while planning a collection."""

    collection_id: int
    page_number: int
    search_url: str


@dataclass(slots=True)
class BatchResult:
    batch: "RecordBatch"
    error: Exception | None = None


@dataclass(slots=True)
class RecordBatch:
    """Records parsed from one page, plus where they came from."""

    records: list[Record]
    search_url: str
    collection_id: int
    page: Page
    result_channel: "Channel[BatchResult] | None" = field(default=None, repr=False)

    @property
    def record_ids(self) -> list[int]:
        return [record.record_id for record in self.records]


@dataclass(slots=True)
class RecordRow:
    """Row written to the ``records`` table by the record writer."""

    record_id: int
    collection_id: int
    page_number: int
    search_url: str
    payload: str
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_batch(cls, batch: RecordBatch) -> list["RecordRow"]:
        return [
            cls(
                record_id=record.record_id,
                collection_id=batch.collection_id,
                page_number=batch.page.page_number,
                search_url=batch.search_url,
                payload=record.to_json(),
            )
            for record in batch.records
        ]


@dataclass(slots=True)
class DuplicateEntry:
    """Audit row for a record encountered again."""

    record_id: int
    collection_id: int
    page_number: int
    payload: str


class PageStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class PageUpdate:
    page_id: int
    status: PageStatus
    error: Exception | None = None

    @classmethod
    def for_page(cls, page: Page, error: Exception | None = None) -> "PageUpdate":
        status = PageStatus.COMPLETED if error is None else PageStatus.FAILED
        return cls(page_id=page.page_id, status=status, error=error)


__all__ = [
    "BatchResult",
    "DuplicateEntry",
    "Page",
    "PageDraft",
    "PageProgress",
    "PageStatus",
    "PageUpdate",
    "RecordBatch",
    "RecordRow",
]
