from __future__ import annotations

import threading
import time

from search_ingest.engine import Channel, DuplicateWriter, Record, RecordWriter
from search_ingest.engine.batch_writer import BatchingWriter
from search_ingest.engine.types import BatchResult, DuplicateEntry, RecordBatch


class CollectingWriter(BatchingWriter[int, int]):
    def __init__(self, batch_size: int, flush_timeout: float, fail_first: bool = False) -> None:
        super().__init__("collect", batch_size, flush_timeout, channel_size=100)
        self.flushed: list[list[int]] = []
        self.fail_first = fail_first

    def write(self, rows: list[int]) -> None:
        if self.fail_first:
            self.fail_first = False
            raise RuntimeError("disk on fire")
        self.flushed.append(list(rows))


def _wait_for(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_timer_flushes_partial_batch() -> None:
    writer = CollectingWriter(batch_size=3, flush_timeout=0.2)
    writer.start(threading.Event())
    writer.channel.put(1)
    writer.channel.put(2)

    assert _wait_for(lambda: writer.flushed == [[1, 2]])
    assert writer.stop(2.0)
    assert writer.flushed == [[1, 2]]
    assert writer.stats.flushes == 1


def test_size_flushes_full_batch() -> None:
    writer = CollectingWriter(batch_size=3, flush_timeout=30.0)
    writer.start(threading.Event())
    for value in (1, 2, 3):
        writer.channel.put(value)

    assert _wait_for(lambda: writer.flushed == [[1, 2, 3]])
    assert writer.stop(2.0)
    assert writer.flushed == [[1, 2, 3]]
    assert writer.stats.items_received == 3
    assert writer.stats.rows_flushed == 3


def test_stop_drains_queue_and_flushes_once_more() -> None:
    writer = CollectingWriter(batch_size=10, flush_timeout=30.0)
    for value in range(4):
        writer.channel.put(value)
    writer.start(threading.Event())

    assert writer.stop(2.0)
    assert writer.done.is_set()
    assert writer.flushed == [[0, 1, 2, 3]]


def test_cancellation_flushes_buffer_and_exits() -> None:
    cancel = threading.Event()
    writer = CollectingWriter(batch_size=10, flush_timeout=30.0)
    writer.start(cancel)
    writer.channel.put(7)
    assert _wait_for(lambda: writer.stats.items_received == 1)

    cancel.set()

    assert writer.done.wait(2.0)
    assert writer.flushed == [[7]]


def test_failed_flush_is_dropped_not_retried() -> None:
    writer = CollectingWriter(batch_size=2, flush_timeout=30.0, fail_first=True)
    writer.start(threading.Event())
    for value in (1, 2, 3, 4):
        writer.channel.put(value)

    assert writer.stop(2.0)
    assert writer.flushed == [[3, 4]]
    assert writer.stats.failed_flushes == 1
    assert writer.stats.rows_dropped == 2


def _batch(page_store, *ids: int, result_channel=None) -> RecordBatch:
    (page,) = page_store.reserve_batch(1)
    return RecordBatch(
        records=[Record(memorialId=record_id) for record_id in ids],
        search_url=page.search_url,
        collection_id=page.collection_id,
        page=page,
        result_channel=result_channel,
    )


def test_record_writer_marks_seen_reports_and_inserts(storage, page_store, seen_store, seed_pages) -> None:
    seed_pages(1)
    results: Channel[BatchResult] = Channel(1)
    writer = RecordWriter(storage, seen_store, batch_size=50, flush_timeout=30.0, channel_size=10)
    writer.start(threading.Event())

    writer.channel.put(_batch(page_store, 11, 12, result_channel=results))
    result = results.get(timeout=2.0)
    assert result.error is None
    assert result.batch.record_ids == [11, 12]
    assert seen_store.counts()["seen"] == 2

    assert writer.stop(2.0)
    counts = seen_store.counts()
    assert counts["records"] == 2
    rows = storage.query("SELECT record_id, page_number, payload FROM records ORDER BY record_id")
    assert [row["record_id"] for row in rows] == [11, 12]
    assert all(row["page_number"] == 1 for row in rows)
    assert '"memorialId":11' in rows[0]["payload"]


def test_duplicate_writer_upserts_audit_rows(storage, seen_store) -> None:
    writer = DuplicateWriter(seen_store, batch_size=2, flush_timeout=30.0, channel_size=10)
    writer.start(threading.Event())
    entry = DuplicateEntry(record_id=5, collection_id=1, page_number=1, payload='{"memorialId":5}')
    writer.channel.put(entry)
    writer.channel.put(DuplicateEntry(record_id=6, collection_id=1, page_number=1, payload='{"memorialId":6}'))
    writer.channel.put(entry)

    assert writer.stop(2.0)
    rows = storage.query("SELECT record_id, occurrences FROM duplicates ORDER BY record_id")
    assert [(row["record_id"], row["occurrences"]) for row in rows] == [(5, 2), (6, 1)]



def test_timer_flush_then_full_batch_on_one_writer() -> None:
    writer = CollectingWriter(batch_size=3, flush_timeout=0.3)
    writer.start(threading.Event())
    writer.channel.put(1)
    writer.channel.put(2)
    assert _wait_for(lambda: writer.flushed == [[1, 2]])

    for value in (3, 4, 5):
        writer.channel.put(value)

    assert _wait_for(lambda: len(writer.flushed) == 2)
    assert writer.stop(2.0)
    assert writer.flushed == [[1, 2], [3, 4, 5]]
    assert writer.stats.flushes == 2
    assert writer.stats.rows_flushed == 5
