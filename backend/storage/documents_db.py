"""
Postgres-backed document store (JSONB) for production use.

Why: The in-memory store is neither durable nor shared across instances. This
store keeps one table per collection with an opaque text id and a JSONB
document, so the content services keep their document-shaped contract.

Concurrency:
- Field-level updates merge top-level keys with `doc || patch`; concurrent
  writers to different fields of the same row do not overwrite each other.
  Dotted keys (`profile.phone`) merge into the stored sub-document.
- Counters use `jsonb_set` with an in-statement increment (no read-modify-write
  race in application code).
- Uniqueness constraints are unique expression indexes; violations surface as
  `DuplicateKeyError`.

Binary payloads are stored base64-encoded inside the document under a
`{"$binary": ...}` wrapper and decoded transparently on read.

Note: This module uses psycopg3. It is imported only when enabled via
`CONTENT_STORE=db`. Tests use the in-memory store.
"""
from __future__ import annotations

import base64
import os
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence
from uuid import uuid4

from backend.storage.documents import DESCENDING, DocumentQuery, DuplicateKeyError, SortSpec

try:  # pragma: no cover -- optional dependency in some environments
    import psycopg
    from psycopg import sql
    from psycopg.types.json import Json

    try:
        from psycopg.errors import UniqueViolation  # type: ignore
    except Exception:  # pragma: no cover
        UniqueViolation = None  # type: ignore
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover
    psycopg = None  # type: ignore
    sql = None  # type: ignore
    Json = None  # type: ignore
    UniqueViolation = None  # type: ignore
    HAVE_PSYCOPG = False

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")
_BINARY_KEY = "$binary"


def _encode(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return {_BINARY_KEY: base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, Mapping):
        return {str(k): _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value.keys()) == {_BINARY_KEY} and isinstance(value[_BINARY_KEY], str):
            return base64.b64decode(value[_BINARY_KEY])
        return {k: _decode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode(v) for v in value]
    return value


def _nest(path: str, value: Any) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    current = out
    parts = path.split(".")
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = value
    return out


def _merge(into: Dict[str, Any], other: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in other.items():
        if isinstance(value, Mapping) and isinstance(into.get(key), dict):
            _merge(into[key], value)
        else:
            into[key] = value
    return into


def _like_pattern(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _dsn() -> str:
    """Resolve the Postgres DSN (CONTENT_DATABASE_URL, then DATABASE_URL)."""
    for candidate in (os.getenv("CONTENT_DATABASE_URL"), os.getenv("DATABASE_URL")):
        if candidate:
            return candidate
    raise RuntimeError("Database DSN unavailable for DBDocumentStore")


class DBDocumentStore:
    """Postgres JSONB document store.

    Parameters
    ----------
    dsn:
        Psycopg3 connection string; defaults to CONTENT_DATABASE_URL/DATABASE_URL.
    schema:
        Schema holding the collection tables. Defaults to `public`.
    table_prefix:
        Prefix for per-collection table names.
    """

    def __init__(self, dsn: str | None = None, *, schema: str = "public", table_prefix: str = "excellence_") -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBDocumentStore")
        self._dsn = dsn or _dsn()
        if not _IDENT_RE.match(schema or ""):
            raise ValueError("Invalid schema name")
        if table_prefix and not re.match(r"^[A-Za-z0-9_]{0,30}$", table_prefix):
            raise ValueError("Invalid table prefix")
        self._schema = schema
        self._prefix = table_prefix
        self._ready: set[str] = set()

    # --- helpers ---------------------------------------------------------------

    def _table(self, collection: str):
        name = f"{self._prefix}{collection}"
        if not _IDENT_RE.match(name):
            raise ValueError("Invalid collection name")
        return sql.Identifier(self._schema, name)

    def _ensure_table(self, conn, collection: str) -> None:
        if collection in self._ready:
            return
        with conn.cursor() as cur:
            cur.execute(
                sql.SQL("create table if not exists {} (id text primary key, doc jsonb not null)").format(
                    self._table(collection)
                )
            )
        self._ready.add(collection)

    def _connect(self):
        return psycopg.connect(self._dsn, autocommit=True)

    @staticmethod
    def _projection(exclude: Iterable[str]):
        expr = sql.SQL("doc")
        params: List[Any] = []
        for path in exclude:
            expr = sql.SQL("({} #- %s::text[])").format(expr)
            params.append(path.split("."))
        return expr, params

    @staticmethod
    def _where(query: Optional[DocumentQuery]):
        clauses: List[Any] = []
        params: List[Any] = []
        if query is None:
            return sql.SQL("true"), params
        if query.equals:
            nested: Dict[str, Any] = {}
            for key, value in query.equals.items():
                _merge(nested, _nest(key, _encode(value)))
            clauses.append(sql.SQL("doc @> %s::jsonb"))
            params.append(Json(nested))
        for key, candidates in query.any_of.items():
            path = key.split(".")
            values = [str(v) for v in candidates]
            clauses.append(
                sql.SQL(
                    "((jsonb_typeof(doc #> %s::text[]) = 'array' and (doc #> %s::text[]) ?| %s::text[])"
                    " or (doc #>> %s::text[]) = any(%s::text[]))"
                )
            )
            params.extend([path, path, values, path, values])
        if query.search and query.search_fields:
            pattern = _like_pattern(query.search)
            alternatives = []
            for key in query.search_fields:
                path = key.split(".")
                alternatives.append(
                    sql.SQL(
                        "((doc #>> %s::text[]) ilike %s or exists (select 1 from jsonb_array_elements_text("
                        "case when jsonb_typeof(doc #> %s::text[]) = 'array' then doc #> %s::text[] "
                        "else '[]'::jsonb end) t where t ilike %s))"
                    )
                )
                params.extend([path, pattern, path, path, pattern])
            clauses.append(sql.SQL("({})").format(sql.SQL(" or ").join(alternatives)))
        if not clauses:
            return sql.SQL("true"), params
        return sql.SQL(" and ").join(clauses), params

    @staticmethod
    def _order(sort: SortSpec):
        if not sort:
            return sql.SQL(""), []
        parts = []
        params: List[Any] = []
        for key, direction in sort:
            suffix = "desc nulls last" if direction == DESCENDING else "asc nulls first"
            parts.append(sql.SQL("(doc #> %s::text[]) " + suffix))
            params.append(key.split("."))
        return sql.SQL(" order by ") + sql.SQL(", ").join(parts), params

    @staticmethod
    def _is_unique_violation(exc: Exception) -> bool:
        sqlstate = getattr(exc, "sqlstate", None)
        return bool((UniqueViolation and isinstance(exc, UniqueViolation)) or sqlstate == "23505")

    # --- port ------------------------------------------------------------------

    def ensure_unique(self, collection: str, fields: Sequence[str]) -> None:
        index_name = f"{self._prefix}{collection}_{'_'.join(f.replace('.', '_') for f in fields)}_uniq"[:63]
        if not _IDENT_RE.match(index_name):
            raise ValueError("Invalid index name")
        exprs = sql.SQL(", ").join(
            sql.SQL("(doc #>> {})").format(sql.Literal("{" + ",".join(f.split(".")) + "}")) for f in fields
        )
        with self._connect() as conn:
            self._ensure_table(conn, collection)
            with conn.cursor() as cur:
                cur.execute(
                    sql.SQL("create unique index if not exists {} on {} ({})").format(
                        sql.Identifier(index_name), self._table(collection), exprs
                    )
                )

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
        projection, p_params = self._projection(exclude)
        where, w_params = self._where(query)
        order, o_params = self._order(sort)
        stmt = sql.SQL("select {} from {} where {}{} offset %s").format(
            projection, self._table(collection), where, order
        )
        params: List[Any] = [*p_params, *w_params, *o_params, max(0, skip)]
        if limit is not None:
            stmt = stmt + sql.SQL(" limit %s")
            params.append(max(0, limit))
        with self._connect() as conn:
            self._ensure_table(conn, collection)
            with conn.cursor() as cur:
                cur.execute(stmt, params)
                return [_decode(row[0]) for row in cur.fetchall()]

    def find_by_id(
        self, collection: str, doc_id: str, *, exclude: Iterable[str] = ()
    ) -> Optional[Dict[str, Any]]:
        projection, p_params = self._projection(exclude)
        stmt = sql.SQL("select {} from {} where id = %s").format(projection, self._table(collection))
        with self._connect() as conn:
            self._ensure_table(conn, collection)
            with conn.cursor() as cur:
                cur.execute(stmt, [*p_params, str(doc_id)])
                row = cur.fetchone()
        return _decode(row[0]) if row else None

    def create(self, collection: str, doc: Mapping[str, Any]) -> Dict[str, Any]:
        record = dict(doc)
        record["id"] = str(record.get("id") or uuid4())
        stmt = sql.SQL("insert into {} (id, doc) values (%s, %s::jsonb) returning doc").format(
            self._table(collection)
        )
        with self._connect() as conn:
            self._ensure_table(conn, collection)
            with conn.cursor() as cur:
                try:
                    cur.execute(stmt, (record["id"], Json(_encode(record))))
                except Exception as exc:
                    if self._is_unique_violation(exc):
                        raise DuplicateKeyError(collection, ()) from exc
                    raise
                row = cur.fetchone()
        return _decode(row[0])

    def update_by_id(
        self,
        collection: str,
        doc_id: str,
        changes: Mapping[str, Any],
        *,
        increments: Optional[Mapping[str, int]] = None,
        exclude: Iterable[str] = (),
    ) -> Optional[Dict[str, Any]]:
        patch: Dict[str, Any] = {}
        nested: Dict[str, Dict[str, Any]] = {}
        for key, value in changes.items():
            if key == "id":
                continue
            head, _, rest = key.partition(".")
            if rest:
                _merge(nested.setdefault(head, {}), _nest(rest, _encode(value)))
            else:
                patch[key] = _encode(value)
        expr = sql.SQL("(doc || %s::jsonb)")
        set_params: List[Any] = [Json(patch)]
        # Dotted keys merge into the stored sub-document, not a stale copy of it.
        for head, sub in nested.items():
            expr = sql.SQL(
                "jsonb_set({}, %s::text[], (case when jsonb_typeof(doc -> %s) = 'object' "
                "then doc -> %s else '{{}}'::jsonb end) || %s::jsonb)"
            ).format(expr)
            set_params.extend([[head], head, head, Json(sub)])
        for key, delta in (increments or {}).items():
            expr = sql.SQL("jsonb_set({}, %s::text[], to_jsonb(coalesce((doc ->> %s)::bigint, 0) + %s))").format(expr)
            set_params.extend([[key], key, int(delta)])
        projection, p_params = self._projection(exclude)
        stmt = sql.SQL("update {} set doc = {} where id = %s returning {}").format(
            self._table(collection), expr, projection
        )
        with self._connect() as conn:
            self._ensure_table(conn, collection)
            with conn.cursor() as cur:
                try:
                    cur.execute(stmt, [*set_params, str(doc_id), *p_params])
                except Exception as exc:
                    if self._is_unique_violation(exc):
                        raise DuplicateKeyError(collection, tuple(changes.keys())) from exc
                    raise
                row = cur.fetchone()
        return _decode(row[0]) if row else None

    def delete_by_id(self, collection: str, doc_id: str) -> bool:
        stmt = sql.SQL("delete from {} where id = %s").format(self._table(collection))
        with self._connect() as conn:
            self._ensure_table(conn, collection)
            with conn.cursor() as cur:
                cur.execute(stmt, (str(doc_id),))
                return (cur.rowcount or 0) > 0

    def delete_many(self, collection: str, query: DocumentQuery) -> int:
        where, params = self._where(query)
        stmt = sql.SQL("delete from {} where {}").format(self._table(collection), where)
        with self._connect() as conn:
            self._ensure_table(conn, collection)
            with conn.cursor() as cur:
                cur.execute(stmt, params)
                return int(cur.rowcount or 0)

    def count_documents(self, collection: str, query: Optional[DocumentQuery] = None) -> int:
        where, params = self._where(query)
        stmt = sql.SQL("select count(*) from {} where {}").format(self._table(collection), where)
        with self._connect() as conn:
            self._ensure_table(conn, collection)
            with conn.cursor() as cur:
                cur.execute(stmt, params)
                row = cur.fetchone()
        return int(row[0]) if row else 0


__all__ = ["DBDocumentStore", "HAVE_PSYCOPG"]
