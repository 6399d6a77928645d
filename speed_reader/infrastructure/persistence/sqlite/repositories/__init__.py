"""SQLite repository adapters.

Repository adapters implementing the sync engine's storage ports with
SQLite/Peewee as the persistence layer.
"""

from speed_reader.infrastructure.persistence.sqlite.repositories.document_cache_repository import (
    SqliteDocumentCacheRepositoryAdapter,
)
from speed_reader.infrastructure.persistence.sqlite.repositories.sync_state_repository import (
    SqliteSyncStateRepositoryAdapter,
)

__all__ = [
    "SqliteDocumentCacheRepositoryAdapter",
    "SqliteSyncStateRepositoryAdapter",
]
