"""Exception hierarchy shared by the ingestion pipeline."""

from __future__ import annotations


class IngestError(Exception):
    """Base class for pipeline errors."""


class FetchError(IngestError):
    """Remote fetch failed after exhausting retries."""

    def __init__(self, url: str, attempts: int, message: str) -> None:
        super().__init__(f"Fetch failed after {attempts} attempts: {url}: {message}")
        self.url = url
        self.attempts = attempts


class ParseError(IngestError):
    """Response body could not be decoded into a search response."""


class StorageError(IngestError):
    """A database statement or transaction failed."""


class ReservationError(StorageError):
    """Claiming a page batch failed; terminates the run."""


class PlanningError(IngestError):
    """A collection could not be planned (for instance too many results)."""


class Cancelled(IngestError):
    """The shared cancellation event was set."""

    def __init__(self, message: str = "operation cancelled") -> None:
        super().__init__(message)


class ChannelClosed(IngestError):
    """Send on a closed channel, or receive from a closed and drained one."""


__all__ = [
    "Cancelled",
    "ChannelClosed",
    "FetchError",
    "IngestError",
    "ParseError",
    "PlanningError",
    "ReservationError",
    "StorageError",
]
