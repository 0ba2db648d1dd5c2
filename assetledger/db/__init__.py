"""
Database Layer for the Asset Lifecycle Ledger

Provides:
- EventStore abstraction (InMemory for dev, Postgres for prod)
- Environment-based connection configuration
"""

from .store import (
    EventStore,
    InMemoryEventStore,
    PostgresEventStore,
    EventStoreError,
    ConcurrencyError,
    ChainIntegrityError,
    LockTimeoutError,
    ChainHead,
)
from .config import DatabaseConfig, create_event_store, get_database_url

__all__ = [
    "EventStore",
    "InMemoryEventStore",
    "PostgresEventStore",
    "EventStoreError",
    "ConcurrencyError",
    "ChainIntegrityError",
    "LockTimeoutError",
    "ChainHead",
    "DatabaseConfig",
    "create_event_store",
    "get_database_url",
]
