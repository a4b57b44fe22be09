"""
Database Layer for claimflow

Provides:
- PostgreSQL schema
- ClaimStore abstraction (InMemory for dev, Postgres for prod)
- Environment-based configuration
"""

from .store import (
    ClaimStore,
    InMemoryClaimStore,
    PostgresClaimStore,
    StoreError,
    LockTimeoutError,
    DuplicateClaimError,
    create_store,
)
from .config import DatabaseConfig, StoreDriver, get_database_url

__all__ = [
    "ClaimStore",
    "InMemoryClaimStore",
    "PostgresClaimStore",
    "StoreError",
    "LockTimeoutError",
    "DuplicateClaimError",
    "create_store",
    "DatabaseConfig",
    "StoreDriver",
    "get_database_url",
]
