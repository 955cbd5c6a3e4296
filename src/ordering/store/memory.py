"""In-process document store for development and testing.

Each primitive runs under a single lock, which gives it the same atomicity a
hosted store gives a single-document write. Documents are deep-copied on the
way in and out so callers never share mutable state with the store.
"""

import copy
import threading
from typing import Any

from ordering.store.port import (
    BoundViolation,
    Document,
    DocumentNotFound,
    DocumentStore,
    DuplicateDocument,
    RevisionMismatch,
    StoreError,
)


class InMemoryDocumentStore(DocumentStore):
    """Thread-safe dict-backed document store."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, Document]] = {}
        self._lock = threading.Lock()
        self.available: bool = True

    def _check_available(self) -> None:
        if not self.available:
            raise StoreError("Document store is unavailable")

    def _snapshot(self, document: Document) -> Document:
        return Document(
            collection=document.collection,
            key=document.key,
            data=copy.deepcopy(document.data),
            revision=document.revision,
        )

    def get(self, collection: str, key: str) -> Document | None:
        with self._lock:
            self._check_available()
            document = self._collections.get(collection, {}).get(key)
            return self._snapshot(document) if document else None

    def create(self, collection: str, key: str, data: dict[str, Any]) -> Document:
        with self._lock:
            self._check_available()
            documents = self._collections.setdefault(collection, {})
            if key in documents:
                raise DuplicateDocument(collection, key)
            document = Document(collection=collection, key=key, data=copy.deepcopy(data), revision=1)
            documents[key] = document
            return self._snapshot(document)

    def replace(self, collection: str, key: str, data: dict[str, Any], expected_revision: int) -> Document:
        with self._lock:
            self._check_available()
            current = self._collections.get(collection, {}).get(key)
            if current is None:
                raise DocumentNotFound(collection, key)
            if current.revision != expected_revision:
                raise RevisionMismatch(collection, key, expected_revision, current.revision)
            document = Document(
                collection=collection,
                key=key,
                data=copy.deepcopy(data),
                revision=current.revision + 1,
            )
            self._collections[collection][key] = document
            return self._snapshot(document)

    def increment(
        self,
        collection: str,
        key: str,
        field: str,
        delta: int,
        minimum: int | None = None,
        maximum: int | None = None,
    ) -> Document:
        with self._lock:
            self._check_available()
            current = self._collections.get(collection, {}).get(key)
            if current is None:
                raise DocumentNotFound(collection, key)
            value = current.data.get(field) or 0
            new_value = value + delta
            if (minimum is not None and new_value < minimum) or (maximum is not None and new_value > maximum):
                raise BoundViolation(collection, key, field, value)
            data = copy.deepcopy(current.data)
            data[field] = new_value
            document = Document(collection=collection, key=key, data=data, revision=current.revision + 1)
            self._collections[collection][key] = document
            return self._snapshot(document)

    def query(self, collection: str, **equals: Any) -> list[Document]:
        with self._lock:
            self._check_available()
            return [
                self._snapshot(document)
                for document in self._collections.get(collection, {}).values()
                if all(document.data.get(name) == value for name, value in equals.items())
            ]

    def reset(self) -> None:
        """Drop every collection (test isolation)."""
        with self._lock:
            self._collections.clear()
            self.available = True
