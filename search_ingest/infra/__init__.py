"""Infra layer: SQLite storage, page store and seen store."""

from .page_store import PageStore
from .seen_store import SeenStore
from .storage import SQLiteManager, Transaction

__all__ = ["PageStore", "SQLiteManager", "SeenStore", "Transaction"]
