"""Document store port (abstract interface).

The engine owns no database. It talks to a hosted document store through this
contract: keyed documents grouped in collections, each carrying a revision
number bumped on every write. The only write primitives are the ones that can
be made atomic by any real store:

- ``create``: insert-if-absent
- ``replace``: compare-and-set on the revision
- ``increment``: guarded atomic add on one integer field

Anything more elaborate (claims, history appends, counters with limits) is
built by the repositories out of these three.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Document:
    """A snapshot of one stored document."""

    collection: str
    key: str
    data: dict[str, Any]
    revision: int


class StoreError(Exception):
    """The store could not complete the call (unavailable, timeout, corruption)."""


class DocumentNotFound(StoreError):
    def __init__(self, collection: str, key: str) -> None:
        super().__init__(f"{collection}/{key} does not exist")
        self.collection = collection
        self.key = key


class DuplicateDocument(StoreError):
    def __init__(self, collection: str, key: str) -> None:
        super().__init__(f"{collection}/{key} already exists")
        self.collection = collection
        self.key = key


class RevisionMismatch(StoreError):
    """A compare-and-set write found a newer revision than the caller read."""

    def __init__(self, collection: str, key: str, expected: int, actual: int) -> None:
        super().__init__(f"{collection}/{key} is at revision {actual}, expected {expected}")
        self.expected = expected
        self.actual = actual


class BoundViolation(StoreError):
    """A guarded increment would have crossed its floor or ceiling."""

    def __init__(self, collection: str, key: str, field: str, current: int) -> None:
        super().__init__(f"{collection}/{key}.{field} cannot move past its bound (current {current})")
        self.field = field
        self.current = current


class DocumentStore(ABC):
    """Abstract document store interface."""

    @abstractmethod
    def get(self, collection: str, key: str) -> Document | None:
        """Return the current document, or None when it does not exist."""
        ...

    @abstractmethod
    def create(self, collection: str, key: str, data: dict[str, Any]) -> Document:
        """Insert a new document at revision 1. Raises DuplicateDocument."""
        ...

    @abstractmethod
    def replace(self, collection: str, key: str, data: dict[str, Any], expected_revision: int) -> Document:
        """Overwrite a document only if it is still at ``expected_revision``.

        Raises RevisionMismatch or DocumentNotFound.
        """
        ...

    @abstractmethod
    def increment(
        self,
        collection: str,
        key: str,
        field: str,
        delta: int,
        minimum: int | None = None,
        maximum: int | None = None,
    ) -> Document:
        """Atomically add ``delta`` to an integer field.

        The write is refused with BoundViolation when the result would fall
        below ``minimum`` or rise above ``maximum``.
        """
        ...

    @abstractmethod
    def query(self, collection: str, **equals: Any) -> list[Document]:
        """Return documents whose fields equal every given value."""
        ...
