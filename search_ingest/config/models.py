"""Pydantic models describing the ingestion run configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:138.0) Gecko/20100101 Firefox/138.0"
)


class HTTPConfig(BaseModel):
    """Settings for the shared httpx client."""

    model_config = ConfigDict(frozen=True)

    timeout: float = Field(default=30.0, gt=0)
    read_timeout: float = Field(default=10.0, gt=0)
    max_connections: int = Field(default=100, ge=1)
    max_keepalive_connections: int = Field(default=10, ge=0)
    keepalive_expiry: float = Field(default=30.0, ge=0)
    user_agent: str = DEFAULT_USER_AGENT
    proxy_url: str | None = None
    proxy_key: str | None = None

    def resolved_proxy(self) -> str | None:
        """Proxy URL with ``proxy_key`` injected as the userinfo part."""

        if not self.proxy_url:
            return None
        if not self.proxy_key or "@" in self.proxy_url:
            return self.proxy_url
        scheme, sep, rest = self.proxy_url.partition("://")
        if not sep:
            return f"{self.proxy_key}@{self.proxy_url}"
        return f"{scheme}://{self.proxy_key}@{rest}"


class ProcessorConfig(BaseModel):
    """Worker pool, batching and retry knobs."""

    model_config = ConfigDict(frozen=True)

    max_concurrency: int = Field(default=8, ge=1)
    retry_attempts: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=5.0, ge=0, description="Seconds between fetch attempts.")
    page_delay: float = Field(default=1.5, ge=0, description="Base pause before each page fetch.")
    page_jitter: float = Field(default=0.25, ge=0, le=1, description="Fraction of page_delay to randomise.")
    max_pages: int = Field(default=0, ge=0, description="Pages to queue per run; 0 means unlimited.")
    batch_size: int = Field(default=20, ge=1)
    flush_timeout: float = Field(default=5.0, gt=0)
    channel_size: int = Field(default=1000, ge=1)
    page_queue_size: int = Field(default=0, ge=0, description="0 sizes the queue at 2 x concurrency.")
    reserve_batch_size: int = Field(default=100, ge=1)
    outcome_workers: int = Field(default=4, ge=1)
    persist_mode: Literal["batched", "direct"] = "batched"
    max_page_retries: int = Field(default=3, ge=1)
    reservation_timeout: float = Field(default=600.0, gt=0)

    @property
    def resolved_page_queue_size(self) -> int:
        return self.page_queue_size or self.max_concurrency * 2


class SearchConfig(BaseModel):
    """Remote search endpoint and collection planning limits."""

    model_config = ConfigDict(frozen=True)

    base_url: str = "https://www.findagrave.com/memorial/search"
    page_limit: int = Field(default=20, ge=1)
    max_total_records: int = Field(default=49000, ge=1)
    page_insert_batch: int = Field(default=100, ge=1)

    @field_validator("base_url")
    @classmethod
    def _require_http(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("base_url must be an http(s) URL")
        return value


class DatabaseConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: Path = Field(default=Path("data/ingest.db"))
    busy_timeout: float = Field(default=30.0, gt=0)

    @field_validator("path", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        return Path(value)

    def resolved_path(self, base_dir: Path) -> Path:
        if not self.path.is_absolute():
            return (base_dir / self.path).resolve()
        return self.path


class AppConfig(BaseModel):
    """Root configuration, loaded once and passed explicitly."""

    model_config = ConfigDict(frozen=True)

    http: HTTPConfig = Field(default_factory=HTTPConfig)
    processor: ProcessorConfig = Field(default_factory=ProcessorConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)


__all__ = [
    "AppConfig",
    "DEFAULT_USER_AGENT",
    "DatabaseConfig",
    "HTTPConfig",
    "ProcessorConfig",
    "SearchConfig",
]
