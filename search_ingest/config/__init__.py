"""Configuration package exports."""

from .loader import ConfigLocator, ConfigRepository
from .models import (
    AppConfig,
    DatabaseConfig,
    HTTPConfig,
    ProcessorConfig,
    SearchConfig,
)

__all__ = [
    "AppConfig",
    "ConfigLocator",
    "ConfigRepository",
    "DatabaseConfig",
    "HTTPConfig",
    "ProcessorConfig",
    "SearchConfig",
]
