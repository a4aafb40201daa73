"""
Document store over SQLite.

Collections hold JSON documents keyed by a generated id. Filters follow the
familiar Mongo shape ({"status": "pending", "expiresAt": {"$gt": now}}) and are
compiled to ``json_extract`` expressions, so every conditional update is a
single SQL statement. ``transaction()`` opens a ``BEGIN IMMEDIATE`` section on
the calling thread; store calls made inside it share that connection.
"""

import json
import re
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, date
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from util.logging import logger
from .config import DB_PATH
from .db import connect, init_db, health_check
from .errors import ConflictError, InfrastructureError, ValidationError

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")

_COMPARATORS = {"$gt": ">", "$gte": ">=", "$lt": "<", "$lte": "<="}


def to_iso(value: datetime) -> str:
    """Fixed-width ISO timestamp so lexical order matches time order."""
    return value.isoformat(timespec="microseconds")


def _json_default(value):
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, date):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _dumps(value: Any) -> str:
    return json.dumps(value, default=_json_default)


def _param(value: Any) -> Any:
    """Convert a filter operand to what json_extract() yields for it."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return _dumps(value)
    return value


def _check_collection(collection: str):
    if not isinstance(collection, str) or not _NAME_RE.match(collection):
        raise ValidationError(f"Invalid collection name: {collection!r}")


def _path(field: str) -> str:
    if not _FIELD_RE.match(field):
        raise ValidationError(f"Invalid field name: {field!r}")
    return f"$.{field}"


def _column(field: str) -> str:
    if field == "id":
        return "id"
    return f"json_extract(body, '{_path(field)}')"


def _literal(value: Any) -> str:
    """Inline a literal into DDL, where bound parameters are not allowed."""
    value = _param(value)
    if value is None:
        return "NULL"
    if isinstance(value, (int, float)):
        return repr(value)
    return "'" + str(value).replace("'", "''") + "'"


def compile_filter(flt: Optional[Dict[str, Any]]) -> Tuple[str, List[Any]]:
    """Compile a filter dict into a SQL fragment and its parameters."""
    clauses: List[str] = []
    params: List[Any] = []

    for field, condition in (flt or {}).items():
        column = _column(field)

        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            for op, operand in condition.items():
                if op in _COMPARATORS:
                    clauses.append(f"{column} {_COMPARATORS[op]} ?")
                    params.append(_param(operand))
                elif op == "$ne":
                    if operand is None:
                        clauses.append(f"{column} IS NOT NULL")
                    else:
                        clauses.append(f"({column} IS NULL OR {column} != ?)")
                        params.append(_param(operand))
                elif op == "$in":
                    values = list(operand)
                    if not values:
                        clauses.append("0")
                        continue
                    clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
                    params.extend(_param(v) for v in values)
                elif op == "$exists":
                    clauses.append(f"{column} IS {'NOT ' if operand else ''}NULL")
                elif op == "$contains":
                    # Case-insensitive substring match (ASCII)
                    clauses.append(f"{column} LIKE ? ESCAPE '\\'")
                    escaped = str(operand).replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
                    params.append(f"%{escaped}%")
                else:
                    raise ValidationError(f"Unsupported filter operator: {op}")
        elif condition is None:
            clauses.append(f"{column} IS NULL")
        else:
            clauses.append(f"{column} = ?")
            params.append(_param(condition))

    if not clauses:
        return "1", params
    return " AND ".join(clauses), params


def _compile_update(set_fields: Optional[Dict[str, Any]],
                    unset_fields: Optional[Iterable[str]],
                    inc_fields: Optional[Dict[str, float]]) -> Tuple[str, List[Any]]:
    """Build a json_set/json_remove expression over ``body``."""
    expr = "body"
    params: List[Any] = []

    unset_paths = [_path(f) for f in (unset_fields or [])]
    if unset_paths:
        expr = f"json_remove({expr}, {', '.join(repr(p) for p in unset_paths)})"

    pairs: List[str] = []
    for field, value in (set_fields or {}).items():
        if field == "id":
            raise ValidationError("Document id is immutable")
        pairs.append(f"'{_path(field)}', json(?)")
        params.append(_dumps(value))
    for field, amount in (inc_fields or {}).items():
        path = _path(field)
        pairs.append(f"'{path}', COALESCE(json_extract(body, '{path}'), 0) + ?")
        params.append(amount)

    if pairs:
        expr = f"json_set({expr}, {', '.join(pairs)})"

    return expr, params


class DocumentStore:
    """Collection-oriented store with optional uniqueness constraints."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path or DB_PATH
        self._local = threading.local()
        try:
            init_db(self.db_path)
        except sqlite3.Error as e:
            raise InfrastructureError(f"Document store unavailable: {e}")

    # Connection handling

    @property
    def in_transaction(self) -> bool:
        return getattr(self._local, "conn", None) is not None

    @contextmanager
    def _connection(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            yield conn
            return
        try:
            conn = connect(self.db_path)
        except sqlite3.Error as e:
            raise InfrastructureError(f"Document store unavailable: {e}")
        try:
            yield conn
        finally:
            conn.close()

    def _execute(self, conn: sqlite3.Connection, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        try:
            return conn.execute(sql, tuple(params))
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Uniqueness constraint violated: {e}")
        except sqlite3.Error as e:
            logger.error(f"Document store error: {e}")
            raise InfrastructureError(f"Document store unavailable: {e}")

    @contextmanager
    def transaction(self):
        """Run the enclosed store calls as one write transaction.

        Nested calls join the outer transaction. Any exception rolls the whole
        unit back and propagates.
        """
        if self.in_transaction:
            yield self
            return

        with self._connection() as conn:
            self._execute(conn, "BEGIN IMMEDIATE")
            self._local.conn = conn
            try:
                yield self
            except BaseException:
                self._local.conn = None
                try:
                    conn.execute("ROLLBACK")
                except sqlite3.Error as e:
                    logger.error(f"Rollback failed: {e}")
                raise
            else:
                self._local.conn = None
                self._execute(conn, "COMMIT")

    # Schema

    def create_unique_index(self, collection: str, fields: Sequence[str],
                            partial_filter: Optional[Dict[str, Any]] = None) -> str:
        """Declare a uniqueness constraint on ``fields`` within a collection.

        ``partial_filter`` restricts the constraint to matching documents and
        supports plain equality only.
        """
        _check_collection(collection)
        if not fields:
            raise ValidationError("A unique index needs at least one field")

        name = "uq_" + "_".join([collection] + [f.replace(".", "_") for f in fields])
        where = [f"collection = {_literal(collection)}"]
        for field, value in (partial_filter or {}).items():
            if isinstance(value, dict):
                raise ValidationError("Partial index filters support equality only")
            where.append(f"{_column(field)} = {_literal(value)}")

        columns = ", ".join(_column(f) for f in fields)
        sql = f"CREATE UNIQUE INDEX IF NOT EXISTS {name} ON documents({columns}) WHERE {' AND '.join(where)}"
        with self._connection() as conn:
            self._execute(conn, sql)
        return name

    def health_check(self) -> bool:
        return health_check(self.db_path)

    # Reads

    def find(self, collection: str, flt: Optional[Dict[str, Any]] = None,
             sort: Optional[Sequence[Tuple[str, int]]] = None,
             limit: Optional[int] = None, skip: int = 0) -> List[Dict[str, Any]]:
        """Return matching documents. ``sort`` is a list of (field, 1|-1)."""
        _check_collection(collection)
        where, params = compile_filter(flt)

        order = []
        for field, direction in (sort or []):
            order.append(f"{_column(field)} {'DESC' if direction < 0 else 'ASC'}")
        order.append("rowid DESC" if sort and sort[0][1] < 0 else "rowid ASC")

        sql = f"SELECT body FROM documents WHERE collection = ? AND {where} ORDER BY {', '.join(order)}"
        if limit is not None or skip:
            sql += " LIMIT ? OFFSET ?"
            params = params + [limit if limit is not None else -1, skip]

        with self._connection() as conn:
            rows = self._execute(conn, sql, [collection] + params).fetchall()
        return [json.loads(row["body"]) for row in rows]

    def find_one(self, collection: str, flt: Optional[Dict[str, Any]] = None,
                 sort: Optional[Sequence[Tuple[str, int]]] = None) -> Optional[Dict[str, Any]]:
        docs = self.find(collection, flt, sort=sort, limit=1)
        return docs[0] if docs else None

    def count(self, collection: str, flt: Optional[Dict[str, Any]] = None) -> int:
        _check_collection(collection)
        where, params = compile_filter(flt)
        with self._connection() as conn:
            row = self._execute(
                conn, f"SELECT COUNT(*) FROM documents WHERE collection = ? AND {where}",
                [collection] + params
            ).fetchone()
        return row[0]

    # Writes

    def insert_one(self, collection: str, document: Dict[str, Any]) -> str:
        """Insert a document and return its id (generated when absent)."""
        _check_collection(collection)
        doc = dict(document)
        doc_id = str(doc.get("id") or uuid.uuid4().hex)
        doc["id"] = doc_id
        with self._connection() as conn:
            self._execute(
                conn, "INSERT INTO documents (collection, id, body) VALUES (?, ?, ?)",
                (collection, doc_id, _dumps(doc))
            )
        return doc_id

    def update_one(self, collection: str, flt: Dict[str, Any],
                   set: Optional[Dict[str, Any]] = None,
                   unset: Optional[Iterable[str]] = None,
                   inc: Optional[Dict[str, float]] = None) -> int:
        """Atomically update the first matching document. Returns 0 or 1."""
        _check_collection(collection)
        where, where_params = compile_filter(flt)
        expr, expr_params = _compile_update(set, unset, inc)
        sql = (
            f"UPDATE documents SET body = {expr} WHERE collection = ? AND id = ("
            f"SELECT id FROM documents WHERE collection = ? AND {where} ORDER BY rowid LIMIT 1)"
        )
        with self._connection() as conn:
            cursor = self._execute(conn, sql, expr_params + [collection, collection] + where_params)
        return cursor.rowcount

    def update_many(self, collection: str, flt: Dict[str, Any],
                    set: Optional[Dict[str, Any]] = None,
                    unset: Optional[Iterable[str]] = None,
                    inc: Optional[Dict[str, float]] = None) -> int:
        """Update every matching document. Returns the match count."""
        _check_collection(collection)
        where, where_params = compile_filter(flt)
        expr, expr_params = _compile_update(set, unset, inc)
        sql = f"UPDATE documents SET body = {expr} WHERE collection = ? AND {where}"
        with self._connection() as conn:
            cursor = self._execute(conn, sql, expr_params + [collection] + where_params)
        return cursor.rowcount

    def delete_one(self, collection: str, flt: Dict[str, Any]) -> int:
        _check_collection(collection)
        where, params = compile_filter(flt)
        sql = (
            "DELETE FROM documents WHERE collection = ? AND id = ("
            f"SELECT id FROM documents WHERE collection = ? AND {where} ORDER BY rowid LIMIT 1)"
        )
        with self._connection() as conn:
            cursor = self._execute(conn, sql, [collection, collection] + params)
        return cursor.rowcount
