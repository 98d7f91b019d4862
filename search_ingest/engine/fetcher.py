"""HTTP fetching of search pages with fixed-delay retries."""

from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Event
from typing import Dict

import httpx
import structlog

from ..config import HTTPConfig
from ..errors import Cancelled, FetchError
from ..logging_conf import get_logger


@dataclass(slots=True)
class ClientResponse:
    """Standardised response wrapper."""

    url: str
    status_code: int
    body: bytes
    headers: Dict[str, str]
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class PageClient:
    """Thin wrapper over one shared ``httpx.Client``; safe to use from many threads."""

    def __init__(self, config: HTTPConfig, transport: httpx.BaseTransport | None = None) -> None:
        self.config = config
        limits = httpx.Limits(
            max_connections=config.max_connections,
            max_keepalive_connections=config.max_keepalive_connections,
            keepalive_expiry=config.keepalive_expiry,
        )
        client_kwargs: dict = {
            "follow_redirects": True,
            "timeout": httpx.Timeout(config.timeout, read=config.read_timeout),
            "limits": limits,
            "headers": {"User-Agent": config.user_agent, "Accept": "application/json"},
        }
        proxy = config.resolved_proxy()
        if proxy:
            client_kwargs["proxy"] = proxy
        if transport is not None:
            client_kwargs["transport"] = transport
        self._client = httpx.Client(**client_kwargs)

    def get(self, url: str, cancel: Event | None = None) -> ClientResponse:
        """Issue one GET, reading the body in chunks.

        ``cancel`` is checked before sending and between body chunks; a
        stalled socket is bounded by ``read_timeout``.
        """

        if cancel is not None and cancel.is_set():
            raise Cancelled(f"fetch cancelled: {url}")
        start = time.monotonic()
        with self._client.stream("GET", url) as response:
            chunks: list[bytes] = []
            for chunk in response.iter_bytes():
                if cancel is not None and cancel.is_set():
                    raise Cancelled(f"fetch cancelled mid-body: {url}")
                chunks.append(chunk)
        return ClientResponse(
            url=str(response.url),
            status_code=response.status_code,
            body=b"".join(chunks),
            headers=dict(response.headers),
            duration=time.monotonic() - start,
        )

    def close(self) -> None:
        self._client.close()


class RetryingFetcher:
    """Retry ``PageClient.get`` until a 2xx arrives or attempts run out."""

    def __init__(
        self,
        client: PageClient,
        retry_attempts: int,
        retry_delay: float,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.client = client
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.logger = logger or get_logger("fetcher")

    @property
    def max_attempts(self) -> int:
        return self.retry_attempts + 1

    def fetch(self, url: str, cancel: Event) -> ClientResponse:
        last_error = "no attempt made"
        for attempt in range(self.max_attempts):
            if attempt:
                self.logger.info("fetch_retry", url=url, attempt=attempt, error=last_error)
                if cancel.wait(self.retry_delay):
                    raise Cancelled(f"fetch cancelled: {url}")
            elif cancel.is_set():
                raise Cancelled(f"fetch cancelled: {url}")
            try:
                response = self.client.get(url, cancel)
            except httpx.HTTPError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                self.logger.warning("fetch_error", url=url, attempt=attempt + 1, error=last_error)
                continue
            if response.ok:
                self.logger.debug(
                    "fetch_ok",
                    url=url,
                    status=response.status_code,
                    duration=round(response.duration, 3),
                )
                return response
            snippet = response.body[:200].decode("utf-8", errors="replace")
            last_error = f"HTTP {response.status_code}: {snippet}"
        raise FetchError(url, self.max_attempts, last_error)


__all__ = ["ClientResponse", "PageClient", "RetryingFetcher"]
