"""Persistence repositories for restclaim.

Provides identity attribute storage with SQLite persistence
and in-memory fallback for development/testing.
"""

from restclaim.persistence.repositories.attribute_store import (
    AttributeStore,
    AttributeStoreError,
    InMemoryAttributeStore,
    SqliteAttributeStore,
    create_attribute_store,
)

__all__ = [
    "AttributeStore",
    "AttributeStoreError",
    "InMemoryAttributeStore",
    "SqliteAttributeStore",
    "create_attribute_store",
]
