"""
assetgate Document Store

Key/value persistence behind the audit trail, token records and id mappings.

    collection ──▶ document id ──▶ JSON-compatible dict

Operations:
    set / get / update (merge) / create (insert-if-absent) / delete
    compare_and_set   atomic check-and-set of selected fields
    where(...)        equality query with limit and ordering

Documents are deep-copied on the way in and out, so callers never share
mutable state with the store. Every mutating operation holds one store-wide
lock, which makes ``create`` and ``compare_and_set`` the linearization points
for mint claims and revoke flips. A write whose commit fails leaves the
store exactly as it was before the write.
"""

from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from assetgate.errors import StoreUnavailable

Document = Dict[str, Any]

_MISSING = object()


def _field_value(doc: Document, path: str) -> Any:
    """Resolve a dotted field path; returns the sentinel when absent."""
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


class Query:
    """Equality query over one collection: ``where(...).limit(n).get()``."""

    def __init__(self, store: "DocumentStore", collection: str, field: str, value: Any):
        self._store = store
        self._collection = collection
        self._filters: List[Tuple[str, Any]] = [(field, value)]
        self._limit: Optional[int] = None
        self._order_by: Optional[str] = None
        self._descending = False

    def where(self, field: str, value: Any) -> "Query":
        self._filters.append((field, value))
        return self

    def limit(self, n: int) -> "Query":
        if n < 0:
            raise ValueError("limit must be non-negative")
        self._limit = n
        return self

    def order_by(self, field: str, descending: bool = False) -> "Query":
        self._order_by = field
        self._descending = descending
        return self

    def _matches(self, doc: Document) -> bool:
        return all(_field_value(doc, f) == v for f, v in self._filters)

    def get(self) -> List[Tuple[str, Document]]:
        rows = [(doc_id, doc) for doc_id, doc in self._store.scan(self._collection) if self._matches(doc)]
        if self._order_by is not None:
            # Documents lacking the field sort last in either direction.
            present = [r for r in rows if _field_value(r[1], self._order_by) is not _MISSING]
            absent = [r for r in rows if _field_value(r[1], self._order_by) is _MISSING]
            present.sort(key=lambda r: _field_value(r[1], self._order_by), reverse=self._descending)
            rows = present + absent
        if self._limit is not None:
            rows = rows[:self._limit]
        return rows


class DocumentStore(ABC):
    """Abstract document store contract."""

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Return a copy of the document or None."""

    @abstractmethod
    def set(self, collection: str, doc_id: str, data: Document) -> None:
        """Create or replace a document."""

    @abstractmethod
    def update(self, collection: str, doc_id: str, changes: Document) -> Document:
        """Shallow-merge ``changes`` into an existing document.

        Raises:
            KeyError: the document does not exist.
        """

    @abstractmethod
    def create(self, collection: str, doc_id: str, data: Document) -> bool:
        """Insert only if absent. Returns False when the id is taken."""

    @abstractmethod
    def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        expected: Document,
        changes: Document,
    ) -> Tuple[bool, Optional[Document]]:
        """
        Atomically merge ``changes`` if every field in ``expected`` matches.

        Returns (applied, current document after the call).
        """

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> bool:
        """Delete a document. Returns True if it existed."""

    @abstractmethod
    def scan(self, collection: str) -> Iterator[Tuple[str, Document]]:
        """Iterate over copies of every document in a collection."""

    def where(self, collection: str, field: str, value: Any) -> Query:
        return Query(self, collection, field, value)

    def count(self, collection: str) -> int:
        return sum(1 for _ in self.scan(collection))


class InMemoryDocumentStore(DocumentStore):
    """Thread-safe in-memory store."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Document]] = {}
        self._lock = threading.RLock()

    def _commit(self) -> None:
        """Hook for persistent subclasses; called under the lock after each write."""

    def _install(self, collection: str, doc_id: str, doc: Optional[Document]) -> None:
        """
        Put ``doc`` (or remove the document when None) and commit.

        If the commit raises, the previous document is put back.
        """
        created = collection not in self._data
        docs = self._data.setdefault(collection, {})
        previous = docs.get(doc_id, _MISSING)
        if doc is None:
            docs.pop(doc_id, None)
        else:
            docs[doc_id] = doc
        try:
            self._commit()
        except BaseException:
            if previous is _MISSING:
                docs.pop(doc_id, None)
            else:
                docs[doc_id] = previous
            if created and not docs:
                del self._data[collection]
            raise

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with self._lock:
            doc = self._data.get(collection, {}).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def set(self, collection: str, doc_id: str, data: Document) -> None:
        with self._lock:
            self._install(collection, doc_id, copy.deepcopy(data))

    def update(self, collection: str, doc_id: str, changes: Document) -> Document:
        with self._lock:
            doc = self._data.get(collection, {}).get(doc_id)
            if doc is None:
                raise KeyError(f"{collection}/{doc_id}")
            merged = dict(doc)
            merged.update(copy.deepcopy(changes))
            self._install(collection, doc_id, merged)
            return copy.deepcopy(merged)

    def create(self, collection: str, doc_id: str, data: Document) -> bool:
        with self._lock:
            if doc_id in self._data.get(collection, {}):
                return False
            self._install(collection, doc_id, copy.deepcopy(data))
            return True

    def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        expected: Document,
        changes: Document,
    ) -> Tuple[bool, Optional[Document]]:
        with self._lock:
            doc = self._data.get(collection, {}).get(doc_id)
            if doc is None:
                return (False, None)
            if any(_field_value(doc, k) != v for k, v in expected.items()):
                return (False, copy.deepcopy(doc))
            merged = dict(doc)
            merged.update(copy.deepcopy(changes))
            self._install(collection, doc_id, merged)
            return (True, copy.deepcopy(merged))

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            if doc_id not in self._data.get(collection, {}):
                return False
            self._install(collection, doc_id, None)
            return True

    def scan(self, collection: str) -> Iterator[Tuple[str, Document]]:
        with self._lock:
            snapshot = copy.deepcopy(self._data.get(collection, {}))
        return iter(snapshot.items())


class JsonFileDocumentStore(InMemoryDocumentStore):
    """
    In-memory store mirrored to a single JSON file.

    Every write rewrites the file through a temporary file and
    ``os.replace`` so a crash never leaves a torn document on disk.
    """

    def __init__(self, path: Union[str, Path]):
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            try:
                loaded = json.loads(self.path.read_text(encoding="utf-8") or "{}")
            except (OSError, ValueError) as e:
                raise StoreUnavailable(f"Cannot read document store {self.path}: {e}") from e
            if not isinstance(loaded, dict):
                raise StoreUnavailable(f"Document store {self.path} is not a JSON object")
            self._data = loaded

    def _commit(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".assetgate-", dir=str(self.path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(self._data, f, sort_keys=True, indent=2)
                os.replace(tmp, self.path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            raise StoreUnavailable(f"Cannot write document store {self.path}: {e}") from e
