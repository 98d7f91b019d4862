"""Shared fixtures: temporary SQLite storage, config builders and a fake search API."""

from __future__ import annotations

import json
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Iterable

import httpx
import pytest

from search_ingest.config import ConfigLocator, ConfigRepository, HTTPConfig, ProcessorConfig
from search_ingest.engine import PageClient, RetryingFetcher, SearchParams, build_search_url
from search_ingest.engine.types import PageDraft
from search_ingest.infra import PageStore, SeenStore, SQLiteManager

BASE_URL = "https://search.test/memorial/search"


def record_payload(record_id: int, **extra: Any) -> dict[str, Any]:
    payload = {"memorialId": record_id, "firstName": "Ada", "lastName": "Lovelace", "deathYear": 2025}
    payload.update(extra)
    return payload


def search_body(record_ids: Iterable[int], total: int | None = None, page: int = 1, limit: int = 5) -> bytes:
    ids = list(record_ids)
    return json.dumps(
        {
            "total": len(ids) if total is None else total,
            "records": [record_payload(record_id) for record_id in ids],
            "nextURL": False,
            "tooMany": False,
            "skip": (page - 1) * limit,
            "limit": limit,
            "page": page,
            "pages": 1,
        }
    ).encode("utf-8")


class FakeSearchApi:
    """In-process search endpoint keyed by the ``page`` query parameter."""

    def __init__(
        self,
        pages: dict[int, list[int]] | None = None,
        total: int | None = None,
        failing_pages: Iterable[int] = (),
        on_request: Callable[[httpx.Request], None] | None = None,
    ) -> None:
        self.pages = pages or {}
        self.total = total
        self.failing_pages = set(failing_pages)
        self.on_request = on_request
        self.requests: list[httpx.Request] = []
        self._lock = Lock()

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
        if self.on_request is not None:
            self.on_request(request)
        page = int(request.url.params.get("page", "1"))
        limit = int(request.url.params.get("limit", "5"))
        if page in self.failing_pages:
            return httpx.Response(503, text="unavailable")
        ids = self.pages.get(page, [])
        total = self.total if self.total is not None else sum(len(v) for v in self.pages.values())
        return httpx.Response(200, content=search_body(ids, total=total, page=page, limit=limit))


@pytest.fixture
def storage(tmp_path: Path) -> SQLiteManager:
    return SQLiteManager(tmp_path / "ingest.db", busy_timeout=10.0)


@pytest.fixture
def page_store(storage: SQLiteManager) -> PageStore:
    return PageStore(storage, max_page_retries=3, reservation_timeout=600.0)


@pytest.fixture
def seen_store(storage: SQLiteManager) -> SeenStore:
    return SeenStore(storage)


@pytest.fixture
def processor_config() -> Callable[..., ProcessorConfig]:
    def _builder(**overrides: Any) -> ProcessorConfig:
        base: dict[str, Any] = {
            "max_concurrency": 2,
            "retry_attempts": 0,
            "retry_delay": 0.0,
            "page_delay": 0.0,
            "page_jitter": 0.0,
            "batch_size": 20,
            "flush_timeout": 0.2,
            "channel_size": 100,
            "outcome_workers": 2,
        }
        base.update(overrides)
        return ProcessorConfig(**base)

    return _builder


@pytest.fixture
def seed_pages(page_store: PageStore) -> Callable[..., int]:
    """Create one collection with ``count`` pending pages; returns its id."""

    def _seed(count: int, limit: int = 5) -> int:
        params = SearchParams(limit=limit)
        collection_id = page_store.start_collection(limit, build_search_url(BASE_URL, params), count * limit)
        drafts = [
            PageDraft(
                collection_id=collection_id,
                page_number=number,
                search_url=build_search_url(BASE_URL, params.for_offset((number - 1) * limit)),
            )
            for number in range(1, count + 1)
        ]
        page_store.insert_pages(drafts)
        return collection_id

    return _seed


@pytest.fixture
def make_fetcher() -> Iterable[Callable[..., RetryingFetcher]]:
    clients: list[PageClient] = []

    def _builder(api: FakeSearchApi, retry_attempts: int = 0, retry_delay: float = 0.0) -> RetryingFetcher:
        client = PageClient(HTTPConfig(timeout=5.0), transport=api.transport)
        clients.append(client)
        return RetryingFetcher(client, retry_attempts=retry_attempts, retry_delay=retry_delay)

    yield _builder
    for client in clients:
        client.close()


@pytest.fixture
def temp_config_repository(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> ConfigRepository:
    monkeypatch.setenv("SEARCH_INGEST_HOME", str(tmp_path))
    locator = ConfigLocator(project_root=tmp_path)
    return ConfigRepository(locator, env={})


@pytest.fixture
def fake_api() -> type[FakeSearchApi]:
    return FakeSearchApi


@pytest.fixture
def make_body() -> Callable[..., bytes]:
    return search_body
