"""Document store ports and adapters."""

from ordering.store.memory import InMemoryDocumentStore
from ordering.store.port import (
    BoundViolation,
    Document,
    DocumentNotFound,
    DocumentStore,
    DuplicateDocument,
    RevisionMismatch,
    StoreError,
)

__all__ = [
    "BoundViolation",
    "Document",
    "DocumentNotFound",
    "DocumentStore",
    "DuplicateDocument",
    "InMemoryDocumentStore",
    "RevisionMismatch",
    "StoreError",
]
