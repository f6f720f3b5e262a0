"""
Document store backends for the session core.

A document store keeps JSON-compatible dictionaries in named collections and
offers an atomic array-append primitive so concurrent message appends never
overwrite each other.
"""
from __future__ import annotations

import copy
import json
import logging
import operator
import re
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from src.colloquy.models.exceptions import StoreUnavailable

logger = logging.getLogger(__name__)

Filter = Tuple[str, str, Any]

_FIELD_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def _check_field(field: str) -> str:
    if not _FIELD_PATTERN.match(field or ""):
        raise ValueError(f"Invalid document field name: {field!r}")
    return field


def _check_operator(op: str) -> str:
    if op not in _OPERATORS:
        raise ValueError(f"Unsupported filter operator: {op!r}")
    return op


def _encode(value: Any) -> str:
    try:
        return json.dumps(value, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Document value is not JSON-serializable: {exc}") from exc


def _normalize(value: Any) -> Any:
    """Return the value as it would read back from a JSON-backed store."""
    return json.loads(_encode(value))


class DocumentStore(ABC):
    """
    Contract for durable, queryable document collections.
    """

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Return a copy of the document, or None if it does not exist."""

    @abstractmethod
    def put(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Insert or fully replace a document."""

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> bool:
        """Remove a document. Returns False when nothing was removed."""

    @abstractmethod
    def find(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return documents matching every (field, operator, value) filter."""

    @abstractmethod
    def update(
        self,
        collection: str,
        doc_id: str,
        updates: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """
        Atomically set top-level fields without touching the rest of the document.

        Returns:
            The updated document, or None if the document does not exist.
        """

    @abstractmethod
    def array_append(
        self,
        collection: str,
        doc_id: str,
        field: str,
        value: Any,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Atomically append ``value`` to the array ``field`` and apply ``updates``.

        Returns:
            The updated document, or None if the document does not exist.
        """

    def close(self) -> None:
        """Release underlying resources."""


class InMemoryDocumentStore(DocumentStore):
    """Process-local document store used for tests and ephemeral sessions."""

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._collections.get(collection, {}).get(doc_id)
            return copy.deepcopy(document) if document is not None else None

    def put(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._collections.setdefault(collection, {})[doc_id] = _normalize(data)

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            return self._collections.get(collection, {}).pop(doc_id, None) is not None

    def find(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        checks = [(_check_field(field), _OPERATORS[_check_operator(op)], value) for field, op, value in filters]
        with self._lock:
            documents = [
                copy.deepcopy(document)
                for document in self._collections.get(collection, {}).values()
                if all(field in document and compare(document[field], value) for field, compare, value in checks)
            ]
        if order_by:
            _check_field(order_by)
            documents.sort(key=lambda document: document.get(order_by) or "", reverse=descending)
        if limit is not None:
            documents = documents[:limit]
        return documents

    def update(
        self,
        collection: str,
        doc_id: str,
        updates: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        changes = {_check_field(key): _normalize(value) for key, value in updates.items()}
        with self._lock:
            document = self._collections.get(collection, {}).get(doc_id)
            if document is None:
                return None
            document.update(changes)
            return copy.deepcopy(document)

    def array_append(
        self,
        collection: str,
        doc_id: str,
        field: str,
        value: Any,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        _check_field(field)
        item = _normalize(value)
        changes = {_check_field(key): _normalize(update) for key, update in (updates or {}).items()}
        with self._lock:
            document = self._collections.get(collection, {}).get(doc_id)
            if document is None:
                return None
            document.setdefault(field, []).append(item)
            document.update(changes)
            return copy.deepcopy(document)


class SQLiteDocumentStore(DocumentStore):
    """
    Persists documents as JSON text in a single SQLite table.

    Array appends are performed with SQLite's JSON functions inside one UPDATE
    statement, so they are atomic even across processes sharing the file.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None
        self._initialize_database()

    # --------------------------------------------------------------------- #
    # Initialization & teardown
    # --------------------------------------------------------------------- #
    def _initialize_database(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
            self._connection.execute("PRAGMA journal_mode=WAL;")
            self._create_schema()
            logger.info("Document store initialized at %s", self.db_path)
        except (sqlite3.Error, OSError) as exc:
            logger.error("Failed to initialize document store at %s: %s", self.db_path, exc)
            self.close()
            raise StoreUnavailable(f"Cannot open document store at {self.db_path}: {exc}", cause=exc) from exc

    def _create_schema(self) -> None:
        with self._connection:  # type: ignore[union-attr]
            self._connection.execute(  # type: ignore[union-attr]
                """
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (collection, id)
                );
                """
            )

    def close(self) -> None:
        """Close the SQLite connection if it is open."""
        with self._lock:
            if self._connection:
                try:
                    self._connection.close()
                except sqlite3.Error:
                    logger.debug("Failed to close document store connection cleanly.", exc_info=True)
            self._connection = None

    def _require_connection(self) -> sqlite3.Connection:
        if not self._connection:
            raise StoreUnavailable("Document store connection is not available.")
        return self._connection

    # --------------------------------------------------------------------- #
    # Document primitives
    # --------------------------------------------------------------------- #
    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        try:
            with self._lock:
                cursor = self._require_connection().execute(
                    "SELECT data FROM documents WHERE collection = ? AND id = ?;",
                    (collection, doc_id),
                )
                row = cursor.fetchone()
        except sqlite3.Error as exc:
            raise self._store_error("read", collection, doc_id, exc) from exc
        return self._decode(row[0]) if row else None

    def put(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        payload = _encode(data)
        try:
            with self._lock:
                connection = self._require_connection()
                with connection:
                    connection.execute(
                        """
                        INSERT INTO documents (collection, id, data) VALUES (?, ?, ?)
                        ON CONFLICT(collection, id) DO UPDATE SET data = excluded.data;
                        """,
                        (collection, doc_id, payload),
                    )
        except sqlite3.Error as exc:
            raise self._store_error("write", collection, doc_id, exc) from exc

    def delete(self, collection: str, doc_id: str) -> bool:
        try:
            with self._lock:
                connection = self._require_connection()
                with connection:
                    cursor = connection.execute(
                        "DELETE FROM documents WHERE collection = ? AND id = ?;",
                        (collection, doc_id),
                    )
                    return cursor.rowcount > 0
        except sqlite3.Error as exc:
            raise self._store_error("delete", collection, doc_id, exc) from exc

    def find(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        clauses = ["collection = ?"]
        params: List[Any] = [collection]
        for field, op, value in filters:
            clauses.append(f"json_extract(data, ?) {_check_operator(op)} ?")
            params.extend([f"$.{_check_field(field)}", value])

        query = f"SELECT data FROM documents WHERE {' AND '.join(clauses)}"
        if order_by:
            query += f" ORDER BY json_extract(data, ?) {'DESC' if descending else 'ASC'}"
            params.append(f"$.{_check_field(order_by)}")
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))

        try:
            with self._lock:
                rows = self._require_connection().execute(query + ";", params).fetchall()
        except sqlite3.Error as exc:
            raise self._store_error("query", collection, None, exc) from exc
        return [self._decode(row[0]) for row in rows]

    def update(
        self,
        collection: str,
        doc_id: str,
        updates: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        expression, params = self._json_set_expression("data", updates)
        return self._apply_expression("update", collection, doc_id, expression, params)

    def array_append(
        self,
        collection: str,
        doc_id: str,
        field: str,
        value: Any,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        expression, params = self._json_set_expression("json_insert(data, ?, json(?))", updates or {})
        params = [f"$.{_check_field(field)}[#]", _encode(value), *params]
        return self._apply_expression("append", collection, doc_id, expression, params)

    # --------------------------------------------------------------------- #
    # Internal helpers
    # --------------------------------------------------------------------- #
    @staticmethod
    def _json_set_expression(base: str, updates: Dict[str, Any]) -> Tuple[str, List[Any]]:
        expression = base
        params: List[Any] = []
        for key, value in updates.items():
            expression = f"json_set({expression}, ?, json(?))"
            params.extend([f"$.{_check_field(key)}", _encode(value)])
        return expression, params

    def _apply_expression(
        self,
        action: str,
        collection: str,
        doc_id: str,
        expression: str,
        params: List[Any],
    ) -> Optional[Dict[str, Any]]:
        # One UPDATE statement: the read-modify-write happens inside SQLite.
        try:
            with self._lock:
                connection = self._require_connection()
                with connection:
                    cursor = connection.execute(
                        f"UPDATE documents SET data = {expression} WHERE collection = ? AND id = ?;",
                        (*params, collection, doc_id),
                    )
                    if cursor.rowcount == 0:
                        return None
                    row = connection.execute(
                        "SELECT data FROM documents WHERE collection = ? AND id = ?;",
                        (collection, doc_id),
                    ).fetchone()
        except sqlite3.Error as exc:
            raise self._store_error(action, collection, doc_id, exc) from exc
        return self._decode(row[0]) if row else None

    @staticmethod
    def _decode(raw: str) -> Dict[str, Any]:
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.error("Corrupted document payload in store: %s", exc)
            raise StoreUnavailable(f"Corrupted document payload: {exc}", cause=exc) from exc

    @staticmethod
    def _store_error(
        action: str,
        collection: str,
        doc_id: Optional[str],
        exc: Exception,
    ) -> StoreUnavailable:
        target = f"{collection}/{doc_id}" if doc_id else collection
        logger.error("Document store %s failed for %s: %s", action, target, exc, exc_info=True)
        return StoreUnavailable(
            f"Document store {action} failed for {target}: {exc}",
            session_id=doc_id,
            cause=exc,
        )

