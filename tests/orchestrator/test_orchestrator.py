from __future__ import annotations

import threading

import httpx
import pytest

from search_ingest.config import AppConfig, SearchConfig
from search_ingest.engine import SearchParams
from search_ingest.errors import StorageError
from search_ingest.orchestrator import Orchestrator

BASE_URL = "https://search.test/memorial/search"


def _config(processor_config, **processor_overrides) -> AppConfig:
    return AppConfig(
        processor=processor_config(**processor_overrides),
        search=SearchConfig(base_url=BASE_URL, page_limit=5),
    )


def test_plan_then_run_collects_every_record(storage, seen_store, fake_api, processor_config) -> None:
    api = fake_api(pages={1: [1, 2, 3, 4, 5], 2: [6, 7, 8, 9, 10], 3: [11, 12]}, total=12)
    with Orchestrator(_config(processor_config, batch_size=4), storage, transport=api.transport) as orchestrator:
        (plan,) = orchestrator.plan(SearchParams(limit=5), threading.Event())
        assert plan.pages_inserted == 3

        summary = orchestrator.run(threading.Event())

    assert summary["status"] == "completed"
    assert summary["pages_completed"] == 3
    assert summary["pages_failed"] == 0
    assert summary["records_written"] == 12
    assert summary["duplicates_written"] == 0
    assert summary["cache_size"] == 12
    assert seen_store.counts() == {"records": 12, "seen": 12, "duplicates": 0}


def test_second_run_hydrates_cache_and_audits_duplicates(storage, seen_store, page_store, fake_api, processor_config) -> None:
    api = fake_api(pages={1: [1, 2, 3]}, total=3)
    config = _config(processor_config)
    with Orchestrator(config, storage, transport=api.transport) as orchestrator:
        orchestrator.plan(SearchParams(limit=5), threading.Event())
        orchestrator.run(threading.Event())

    with Orchestrator(config, storage, transport=api.transport) as again:
        again.plan(SearchParams(limit=5), threading.Event())
        assert again.hydrate_cache() == 3
        summary = again.run(threading.Event())

    assert summary["records_written"] == 0
    assert summary["duplicates_written"] == 3
    assert seen_store.counts()["duplicates"] == 3
    assert page_store.progress_counts()["complete"] == 2


def test_direct_mode_persists_without_writers(storage, seen_store, fake_api, processor_config) -> None:
    api = fake_api(pages={1: [1, 2], 2: [2, 3]}, total=4)
    config = _config(processor_config, persist_mode="direct", max_concurrency=1)
    with Orchestrator(config, storage, transport=api.transport) as orchestrator:
        orchestrator.plan(SearchParams(limit=2), threading.Event())
        summary = orchestrator.run(threading.Event())

    assert summary["mode"] == "direct"
    assert summary["records_written"] == 3
    assert seen_store.counts()["seen"] == 3


def test_cancelled_run_reports_status(storage, fake_api, processor_config) -> None:
    cancel = threading.Event()
    api = fake_api(pages={n: [n] for n in range(1, 7)}, total=6)
    with Orchestrator(_config(processor_config, page_delay=5.0), storage, transport=api.transport) as orchestrator:
        orchestrator.plan(SearchParams(limit=1), threading.Event())
        threading.Timer(0.1, cancel.set).start()
        summary = orchestrator.run(cancel)

    assert summary["status"] == "cancelled"
    assert summary["pages_completed"] == 0
    assert storage.stats["opened"] == storage.stats["committed"] + storage.stats["rolled_back"]


def test_hydration_failure_starts_with_empty_cache(storage, processor_config, monkeypatch) -> None:
    orchestrator = Orchestrator(_config(processor_config), storage)

    def locked():
        raise StorageError("database is locked")

    monkeypatch.setattr(orchestrator.seen_store, "get_all_seen", locked)

    assert orchestrator.hydrate_cache() == 0
    assert orchestrator.cache.size() == 0
    orchestrator.close()


def test_sweep_logs_failures_and_continues(storage, fake_api, make_body, processor_config) -> None:
    class SweepApi(fake_api):
        def handler(self, request):
            total = 50 if request.url.params["lastName"] == "Q*" else 1
            return httpx.Response(200, content=make_body([], total=total))

    api = SweepApi()
    config = AppConfig(
        processor=processor_config(),
        search=SearchConfig(base_url=BASE_URL, max_total_records=10),
    )
    with Orchestrator(config, storage, transport=api.transport) as orchestrator:
        results = orchestrator.plan(SearchParams(limit=20), threading.Event(), sweep=True)

    assert len(results) == 25 * 26
    assert all("lastName=Q*" not in result.search_url for result in results)
    assert all(result.pages_inserted == 1 for result in results)


def test_status_reports_progress_and_counts(storage, seed_pages, processor_config) -> None:
    seed_pages(2)
    with Orchestrator(_config(processor_config), storage) as orchestrator:
        status = orchestrator.status()

    assert status["pages"]["pending"] == 2
    assert status["storage"] == {"records": 0, "seen": 0, "duplicates": 0}
    assert len(status["collections"]) == 1


@pytest.mark.parametrize("mode", ["batched", "direct"])
def test_run_with_no_pages_is_a_noop(storage, processor_config, mode) -> None:
    with Orchestrator(_config(processor_config, persist_mode=mode), storage) as orchestrator:
        summary = orchestrator.run(threading.Event())

    assert summary["status"] == "completed"
    assert summary["pages_reserved"] == 0
