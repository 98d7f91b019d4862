"""Engine components: reserve → fetch → dedup → route → write."""

from .batch_writer import BatchingWriter, DuplicateWriter, RecordWriter
from .channel import Channel
from .fetcher import ClientResponse, PageClient, RetryingFetcher
from .outcomes import PageOutcomeHandler
from .page_processor import PageProcessor, PageResult
from .pager import PoolState, PoolStats, WorkerPool
from .planner import CollectionPlanner, PlanResult, sweep_params
from .router import RecordRouter
from .search import Record, SearchParams, SearchResponse, build_search_url, parse_search_response
from .seen_cache import SeenCache

__all__ = [
    "BatchingWriter",
    "Channel",
    "ClientResponse",
    "CollectionPlanner",
    "DuplicateWriter",
    "PageClient",
    "PageOutcomeHandler",
    "PageProcessor",
    "PageResult",
    "PlanResult",
    "PoolState",
    "PoolStats",
    "Record",
    "RecordRouter",
    "RecordWriter",
    "RetryingFetcher",
    "SearchParams",
    "SearchResponse",
    "SeenCache",
    "WorkerPool",
    "build_search_url",
    "parse_search_response",
    "sweep_params",
]
