"""
Document store port and the in-memory implementation.

Why:
    The content and identity contexts persist schemaless documents reachable by
    id. Keeping the port small (find, find_by_id, create, update_by_id,
    delete_by_id, delete_many, count_documents, ensure_unique) lets tests use
    the in-memory store while production uses the Postgres JSONB store in
    `documents_db`.

Concurrency:
    Every operation is atomic per document. `update_by_id` applies field-level
    changes (never a whole-document overwrite from a stale read) and numeric
    increments under the same lock, so concurrent updates to different fields
    of one document do not clobber each other. A dotted key (`profile.phone`)
    sets one field inside a top-level sub-document, creating it when absent. Uniqueness constraints are
    checked inside the write, not by callers.
"""
from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple
from uuid import uuid4

ASCENDING = 1
DESCENDING = -1

SortSpec = Sequence[Tuple[str, int]]


class DuplicateKeyError(Exception):
    """Raised when a write would violate a declared uniqueness constraint."""

    def __init__(self, collection: str, fields: Sequence[str]):
        super().__init__(f"duplicate_key:{collection}:{','.join(fields)}")
        self.collection = collection
        self.fields = tuple(fields)


def _get_path(doc: Mapping[str, Any], path: str) -> Any:
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def _drop_path(doc: Dict[str, Any], path: str) -> None:
    parts = path.split(".")
    current: Any = doc
    for part in parts[:-1]:
        current = current.get(part) if isinstance(current, dict) else None
        if current is None:
            return
    if isinstance(current, dict):
        current.pop(parts[-1], None)


def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def project(doc: Mapping[str, Any], exclude: Iterable[str] = ()) -> Dict[str, Any]:
    """Return a deep copy of `doc` without the excluded dotted paths."""
    out = copy.deepcopy(dict(doc))
    for path in exclude:
        _drop_path(out, path)
    return out


@dataclass(frozen=True)
class DocumentQuery:
    """Typed filter: equality, any-of membership and a substring search.

    - `equals`: field must equal the value (dotted paths allowed).
    - `any_of`: field value (or, for list fields, one of its elements) must be
      in the given values.
    - `search`: case-insensitive substring over `search_fields`; list fields
      match when any element contains the term.
    """

    equals: Mapping[str, Any] = field(default_factory=dict)
    any_of: Mapping[str, Sequence[Any]] = field(default_factory=dict)
    search: Optional[str] = None
    search_fields: Sequence[str] = ()

    def matches(self, doc: Mapping[str, Any]) -> bool:
        for key, expected in self.equals.items():
            if _get_path(doc, key) != expected:
                return False
        for key, candidates in self.any_of.items():
            value = _get_path(doc, key)
            values = value if isinstance(value, list) else [value]
            if not any(v in candidates for v in values):
                return False
        if self.search:
            term = self.search.lower()
            hit = False
            for key in self.search_fields:
                value = _get_path(doc, key)
                values = value if isinstance(value, list) else [value]
                if any(isinstance(v, str) and term in v.lower() for v in values):
                    hit = True
                    break
            if not hit:
                return False
        return True


class DocumentStoreProtocol(Protocol):
    """Persistence contract consumed by the identity and content services."""

    def ensure_unique(self, collection: str, fields: Sequence[str]) -> None: ...

    def find(
        self,
        collection: str,
        query: Optional[DocumentQuery] = None,
        *,
        sort: SortSpec = (),
        skip: int = 0,
        limit: Optional[int] = None,
        exclude: Iterable[str] = (),
    ) -> List[Dict[str, Any]]: ...

    def find_by_id(
        self, collection: str, doc_id: str, *, exclude: Iterable[str] = ()
    ) -> Optional[Dict[str, Any]]: ...

    def create(self, collection: str, doc: Mapping[str, Any]) -> Dict[str, Any]: ...

    def update_by_id(
        self,
        collection: str,
        doc_id: str,
        changes: Mapping[str, Any],
        *,
        increments: Optional[Mapping[str, int]] = None,
        exclude: Iterable[str] = (),
    ) -> Optional[Dict[str, Any]]: ...

    def delete_by_id(self, collection: str, doc_id: str) -> bool: ...

    def delete_many(self, collection: str, query: DocumentQuery) -> int: ...

    def count_documents(self, collection: str, query: Optional[DocumentQuery] = None) -> int: ...


def _sort_key(value: Any) -> Tuple[int, Any]:
    # None sorts first ascending; mixed types fall back to their string form.
    if value is None:
        return (0, "")
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (1, value)
    return (2, str(value))


class InMemoryDocumentStore:
    """Thread-safe dict-backed store for tests and local development."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._unique: Dict[str, List[Tuple[str, ...]]] = {}

    def _bucket(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    def ensure_unique(self, collection: str, fields: Sequence[str]) -> None:
        with self._lock:
            constraints = self._unique.setdefault(collection, [])
            key = tuple(fields)
            if key not in constraints:
                constraints.append(key)

    def _check_unique(self, collection: str, candidate: Mapping[str, Any], *, skip_id: Optional[str] = None) -> None:
        for fields in self._unique.get(collection, []):
            values = tuple(_get_path(candidate, f) for f in fields)
            if any(v is None for v in values):
                continue
            for other_id, other in self._bucket(collection).items():
                if other_id == skip_id:
                    continue
                if tuple(_get_path(other, f) for f in fields) == values:
                    raise DuplicateKeyError(collection, fields)

    def find(
        self,
        collection: str,
        query: Optional[DocumentQuery] = None,
        *,
        sort: SortSpec = (),
        skip: int = 0,
        limit: Optional[int] = None,
        exclude: Iterable[str] = (),
    ) -> List[Dict[str, Any]]:
        exclude = list(exclude)
        with self._lock:
            items = [d for d in self._bucket(collection).values() if query is None or query.matches(d)]
            for key, direction in reversed(list(sort)):
                items.sort(key=lambda d, k=key: _sort_key(_get_path(d, k)), reverse=direction == DESCENDING)
            start = max(0, skip)
            end = None if limit is None else start + max(0, limit)
            return [project(d, exclude) for d in items[start:end]]

    def find_by_id(
        self, collection: str, doc_id: str, *, exclude: Iterable[str] = ()
    ) -> Optional[Dict[str, Any]]:
        with self._lock:
            doc = self._bucket(collection).get(str(doc_id))
            return project(doc, exclude) if doc is not None else None

    def create(self, collection: str, doc: Mapping[str, Any]) -> Dict[str, Any]:
        with self._lock:
            record = copy.deepcopy(dict(doc))
            record["id"] = str(record.get("id") or uuid4())
            if record["id"] in self._bucket(collection):
                raise DuplicateKeyError(collection, ("id",))
            self._check_unique(collection, record)
            self._bucket(collection)[record["id"]] = record
            return project(record)

    def update_by_id(
        self,
        collection: str,
        doc_id: str,
        changes: Mapping[str, Any],
        *,
        increments: Optional[Mapping[str, int]] = None,
        exclude: Iterable[str] = (),
    ) -> Optional[Dict[str, Any]]:
        with self._lock:
            current = self._bucket(collection).get(str(doc_id))
            if current is None:
                return None
            updated = copy.deepcopy(current)
            for key, value in changes.items():
                if key == "id":
                    continue
                _set_path(updated, key, copy.deepcopy(value))
            for key, delta in (increments or {}).items():
                base = updated.get(key)
                updated[key] = (base if isinstance(base, (int, float)) else 0) + delta
            self._check_unique(collection, updated, skip_id=str(doc_id))
            self._bucket(collection)[str(doc_id)] = updated
            return project(updated, exclude)

    def delete_by_id(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            return self._bucket(collection).pop(str(doc_id), None) is not None

    def delete_many(self, collection: str, query: DocumentQuery) -> int:
        with self._lock:
            bucket = self._bucket(collection)
            doomed = [doc_id for doc_id, doc in bucket.items() if query.matches(doc)]
            for doc_id in doomed:
                bucket.pop(doc_id, None)
            return len(doomed)

    def count_documents(self, collection: str, query: Optional[DocumentQuery] = None) -> int:
        with self._lock:
            return sum(1 for d in self._bucket(collection).values() if query is None or query.matches(d))


__all__ = [
    "ASCENDING",
    "DESCENDING",
    "DocumentQuery",
    "DocumentStoreProtocol",
    "DuplicateKeyError",
    "InMemoryDocumentStore",
    "project",
]
