"""Configuration loading helpers for search-ingest."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml

from .models import AppConfig

CONFIG_EXTENSIONS = (".yaml", ".yml", ".json")
CONFIG_FILENAME = "ingest_config.yaml"
HOME_ENV = "SEARCH_INGEST_HOME"


def _read_file(path: Path) -> dict:
    text = path.read_text(encoding="utf-8")
    if path.suffix in (".yaml", ".yml"):
        data = yaml.safe_load(text) or {}
    else:
        data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file must contain a mapping: {path}")
    return data


def _write_file(path: Path, payload: dict) -> None:
    with path.open("w", encoding="utf-8") as stream:
        if path.suffix in (".yaml", ".yml"):
            yaml.safe_dump(payload, stream, allow_unicode=True, sort_keys=False)
        else:
            json.dump(payload, stream, indent=2, ensure_ascii=False)


def _ms(value: str) -> float:
    return int(value) / 1000.0


# env var -> (section, key, converter); names follow the deployment env files
ENV_OVERRIDES: dict[str, tuple[str, str, Callable[[str], Any]]] = {
    "HTTP_TIMEOUT_SECS": ("http", "timeout", int),
    "HTTP_READ_TIMEOUT_SECS": ("http", "read_timeout", int),
    "HTTP_MAX_IDLE_CONNS": ("http", "max_connections", int),
    "HTTP_MAX_CONNS_PER_HOST": ("http", "max_keepalive_connections", int),
    "HTTP_IDLE_CONN_TIMEOUT_SECS": ("http", "keepalive_expiry", int),
    "HTTP_USER_AGENT": ("http", "user_agent", str),
    "PROXY_URL": ("http", "proxy_url", str),
    "PROXY_KEY": ("http", "proxy_key", str),
    "PROCESSOR_MAX_CONCURRENCY": ("processor", "max_concurrency", int),
    "PROCESSOR_RETRY_ATTEMPTS": ("processor", "retry_attempts", int),
    "PROCESSOR_RETRY_DELAY_MS": ("processor", "retry_delay", _ms),
    "PROCESSOR_PAGE_DELAY_MS": ("processor", "page_delay", _ms),
    "PROCESSOR_PAGE_JITTER": ("processor", "page_jitter", float),
    "PROCESSOR_MAX_PAGES": ("processor", "max_pages", int),
    "PROCESSOR_BATCH_SIZE": ("processor", "batch_size", int),
    "PROCESSOR_FLUSH_TIMEOUT_SECS": ("processor", "flush_timeout", int),
    "PROCESSOR_CHANNEL_SIZE": ("processor", "channel_size", int),
    "PROCESSOR_PERSIST_MODE": ("processor", "persist_mode", str),
    "SEARCH_BASE_URL": ("search", "base_url", str),
    "DB_PATH": ("database", "path", str),
}


def apply_env_overrides(payload: dict, env: Mapping[str, str]) -> dict:
    """Return ``payload`` with recognised environment variables merged in.

    Unparseable numeric values are ignored so the file/default value wins.
    """

    merged = {section: dict(values) for section, values in payload.items() if isinstance(values, dict)}
    for name, (section, key, convert) in ENV_OVERRIDES.items():
        raw = env.get(name)
        if raw is None or raw == "":
            continue
        try:
            value = convert(raw)
        except ValueError:
            continue
        merged.setdefault(section, {})[key] = value
    return merged


@dataclass(slots=True)
class ConfigLocator:
    """Resolve important paths from project root."""

    project_root: Path | None = None
    data_dir: Path | None = None
    logs_dir: Path | None = None

    def __post_init__(self) -> None:
        env_root = os.environ.get(HOME_ENV)
        if env_root:
            root = Path(env_root).expanduser().resolve()
        else:
            root = (self.project_root or Path.cwd()).resolve()
        self.project_root = root
        self.data_dir = (root / "data").resolve()
        self.logs_dir = (root / "logs").resolve()
        self.ensure_directories()

    def ensure_directories(self) -> None:
        for directory in (self.data_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def config_path(self) -> Path:
        return self.data_dir / CONFIG_FILENAME


class ConfigRepository:
    """Load the run configuration once: file, then environment, then validation."""

    def __init__(
        self,
        locator: ConfigLocator | None = None,
        config_path: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.locator = locator or ConfigLocator()
        self.config_path = config_path or self.locator.config_path()
        self.env = os.environ if env is None else env
        self._cache: AppConfig | None = None

    def load(self) -> AppConfig:
        if self._cache is not None:
            return self._cache
        if self.config_path.exists():
            if self.config_path.suffix not in CONFIG_EXTENSIONS:
                raise ValueError(f"Unsupported configuration file type: {self.config_path}")
            payload = _read_file(self.config_path)
        elif self.config_path != self.locator.config_path():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")
        else:
            payload = {}
        config = AppConfig.model_validate(apply_env_overrides(payload, self.env))
        self._cache = config
        return config

    def save(self, config: AppConfig) -> Path:
        payload = config.model_dump(mode="json")
        _write_file(self.config_path, payload)
        self._cache = None
        return self.config_path

    def database_path(self) -> Path:
        return self.load().database.resolved_path(self.locator.project_root)


__all__ = [
    "CONFIG_EXTENSIONS",
    "ConfigLocator",
    "ConfigRepository",
    "ENV_OVERRIDES",
    "apply_env_overrides",
]
