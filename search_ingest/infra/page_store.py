"""Collections and pages: planning inserts, reservation and terminal status."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Sequence

from ..engine.types import Page, PageDraft, PageProgress
from ..errors import ReservationError, StorageError
from .storage import SQLiteManager, Transaction, utcnow_iso

_RESERVABLE = """
SELECT p.*
FROM pages AS p
JOIN collections AS c ON c.collection_id = p.collection_id
WHERE c.is_complete = 0
  AND p.is_complete = 0
  AND (
        p.progress = 'pending'
     OR (p.progress = 'failed' AND p.retry_count < ?)
     OR (p.progress = 'reserved' AND (p.last_attempt_at IS NULL OR p.last_attempt_at < ?))
  )
ORDER BY p.collection_id, p.page_number
LIMIT ?
"""


class PageStore:
    """Page rows backing the work queue of the pager."""

    def __init__(
        self,
        manager: SQLiteManager,
        max_page_retries: int = 3,
        reservation_timeout: float = 600.0,
    ) -> None:
        self.manager = manager
        self.max_page_retries = max_page_retries
        self.reservation_timeout = reservation_timeout

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------
    def start_collection(self, batch_size: int, source_url: str, total_records: int | None = None) -> int:
        with self.manager.begin() as tx:
            cursor = tx.execute(
                "INSERT INTO collections(batch_size, source_url, total_records, started_at) VALUES (?, ?, ?, ?)",
                (batch_size, source_url, total_records, utcnow_iso()),
            )
            collection_id = int(cursor.lastrowid)
            tx.commit()
        return collection_id

    def set_collection_total(self, collection_id: int, total_records: int) -> None:
        with self.manager.begin() as tx:
            tx.execute(
                "UPDATE collections SET total_records = ? WHERE collection_id = ?",
                (total_records, collection_id),
            )
            tx.commit()

    def finish_collection(self, collection_id: int) -> None:
        """Close a collection that has no pages left to collect."""

        with self.manager.begin() as tx:
            tx.execute(
                "UPDATE collections SET is_complete = 1, completed_at = ? WHERE collection_id = ?",
                (utcnow_iso(), collection_id),
            )
            tx.commit()

    def insert_pages(self, pages: Sequence[PageDraft]) -> int:
        if not pages:
            return 0
        now = utcnow_iso()
        with self.manager.begin() as tx:
            cursor = tx.executemany(
                """
                INSERT OR IGNORE INTO pages(collection_id, page_number, search_url, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [(p.collection_id, p.page_number, p.search_url, now, now) for p in pages],
            )
            inserted = cursor.rowcount
            tx.commit()
        return inserted

    # ------------------------------------------------------------------
    # Work queue
    # ------------------------------------------------------------------
    def reserve_batch(self, size: int) -> list[Page]:
        """Atomically claim up to ``size`` pages for this process."""

        now = datetime.now(timezone.utc)
        stale_before = (now - timedelta(seconds=self.reservation_timeout)).isoformat(timespec="seconds")
        stamp = now.isoformat(timespec="seconds")
        try:
            with self.manager.begin() as tx:
                rows = tx.execute(_RESERVABLE, (self.max_page_retries, stale_before, size)).fetchall()
                pages = [Page.from_row(row) for row in rows]
                if pages:
                    tx.executemany(
                        "UPDATE pages SET progress = 'reserved', last_attempt_at = ?, updated_at = ? WHERE page_id = ?",
                        [(stamp, stamp, page.page_id) for page in pages],
                    )
                tx.commit()
        except StorageError as exc:
            raise ReservationError(f"Failed to reserve page batch: {exc}") from exc
        for page in pages:
            page.progress = PageProgress.RESERVED
            page.last_attempt_at = now.replace(microsecond=0)
        return pages

    def mark_complete(self, page_id: int, tx: Transaction) -> None:
        """Mark the page collected; closes its collection once nothing is left."""

        now = utcnow_iso()
        tx.execute(
            "UPDATE pages SET progress = 'complete', is_complete = 1, updated_at = ? WHERE page_id = ?",
            (now, page_id),
        )
        tx.execute(
            """
            UPDATE collections SET is_complete = 1, completed_at = ?
            WHERE collection_id = (SELECT collection_id FROM pages WHERE page_id = ?)
              AND NOT EXISTS (
                  SELECT 1 FROM pages
                  WHERE collection_id = collections.collection_id AND is_complete = 0
              )
            """,
            (now, page_id),
        )

    def mark_failed(self, page_id: int, tx: Transaction | None = None) -> None:
        sql = (
            "UPDATE pages SET progress = 'failed', retry_count = retry_count + 1, updated_at = ? "
            "WHERE page_id = ? AND is_complete = 0"
        )
        if tx is not None:
            tx.execute(sql, (utcnow_iso(), page_id))
            return
        with self.manager.begin() as own:
            own.execute(sql, (utcnow_iso(), page_id))
            own.commit()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def get_page(self, page_id: int) -> Page | None:
        rows = self.manager.query("SELECT * FROM pages WHERE page_id = ?", (page_id,))
        return Page.from_row(rows[0]) if rows else None

    def progress_counts(self) -> dict[str, int]:
        counts = {progress.value: 0 for progress in PageProgress}
        for row in self.manager.query("SELECT progress, COUNT(*) AS n FROM pages GROUP BY progress"):
            counts[row["progress"]] = row["n"]
        return counts

    def collections(self, limit: int = 20) -> list[dict[str, object]]:
        rows = self.manager.query(
            """
            SELECT c.collection_id, c.source_url, c.total_records, c.is_complete,
                   COUNT(p.page_id) AS pages,
                   SUM(CASE WHEN p.is_complete = 1 THEN 1 ELSE 0 END) AS pages_complete
            FROM collections AS c
            LEFT JOIN pages AS p ON p.collection_id = c.collection_id
            GROUP BY c.collection_id
            ORDER BY c.collection_id DESC
            LIMIT ?
            """,
            (limit,),
        )
        return [dict(row) for row in rows]


__all__ = ["PageStore"]
