"""Durable seen-id set, ingested records and duplicate audit rows."""

from __future__ import annotations

from typing import Iterable, Sequence

from ..engine.types import DuplicateEntry, RecordRow
from .storage import SQLiteManager, Transaction, utcnow_iso

# Stay well below SQLITE_MAX_VARIABLE_NUMBER on old builds.
_IN_CHUNK = 500


def _chunks(values: Sequence[int], size: int = _IN_CHUNK) -> Iterable[Sequence[int]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


class SeenStore:
    def __init__(self, manager: SQLiteManager) -> None:
        self.manager = manager

    def get_seen(self, ids: Sequence[int], tx: Transaction) -> list[int]:
        """Return the subset of ``ids`` already recorded as seen."""

        ids = list(dict.fromkeys(ids))
        seen: list[int] = []
        for chunk in _chunks(ids):
            placeholders = ",".join("?" for _ in chunk)
            rows = tx.execute(
                f"SELECT record_id FROM seen_records WHERE record_id IN ({placeholders})",
                tuple(chunk),
            ).fetchall()
            seen.extend(row["record_id"] for row in rows)
        return seen

    def record_seen(self, ids: Sequence[int], tx: Transaction) -> None:
        if not ids:
            return
        now = utcnow_iso()
        tx.executemany(
            "INSERT OR IGNORE INTO seen_records(record_id, seen_at) VALUES (?, ?)",
            [(record_id, now) for record_id in ids],
        )

    def get_all_seen(self) -> list[int]:
        return [row["record_id"] for row in self.manager.query("SELECT record_id FROM seen_records")]

    def insert_records(self, rows: Sequence[RecordRow], tx: Transaction) -> None:
        if not rows:
            return
        tx.executemany(
            """
            INSERT INTO records(record_id, collection_id, page_number, search_url, payload, fetched_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    row.record_id,
                    row.collection_id,
                    row.page_number,
                    row.search_url,
                    row.payload,
                    row.fetched_at.isoformat(timespec="seconds"),
                )
                for row in rows
            ],
        )

    def bulk_insert_duplicates(self, entries: Sequence[DuplicateEntry]) -> None:
        """Upsert audit rows; re-processing the same page bumps ``occurrences``."""

        if not entries:
            return
        now = utcnow_iso()
        with self.manager.begin() as tx:
            tx.executemany(
                """
                INSERT INTO duplicates(record_id, collection_id, page_number, payload, first_seen_at, last_seen_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(record_id, collection_id, page_number) DO UPDATE SET
                    payload = excluded.payload,
                    occurrences = duplicates.occurrences + 1,
                    last_seen_at = excluded.last_seen_at
                """,
                [
                    (entry.record_id, entry.collection_id, entry.page_number, entry.payload, now, now)
                    for entry in entries
                ],
            )
            tx.commit()

    def counts(self) -> dict[str, int]:
        row = self.manager.query(
            """
            SELECT
                (SELECT COUNT(*) FROM records) AS records,
                (SELECT COUNT(*) FROM seen_records) AS seen,
                (SELECT COUNT(*) FROM duplicates) AS duplicates
            """
        )[0]
        return {"records": row["records"], "seen": row["seen"], "duplicates": row["duplicates"]}


__all__ = ["SeenStore"]
