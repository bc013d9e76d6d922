"""
store.py

Keyed document store boundary used by the session manager.

The engine only needs a handful of operations on JSON documents grouped in
collections (merchant_transactions, claims, reconciliation_records,
sessions), an atomic multi-key batch, and a named lock for single-writer
session claims. Two implementations ship here:

- InMemoryStore: dicts guarded by a threading lock; batches are applied to
  a staged copy and swapped in, so a failing batch changes nothing.
- SQLiteStore: one `documents` table of JSON bodies plus a `locks` table;
  WAL journal, one transaction per batch.

Public API
----------
- BatchOp
- DocumentStore (Protocol)
- InMemoryStore
- SQLiteStore
- to_document(value) -> JSON-serialisable copy of `value`
"""

from __future__ import annotations

import copy
import json
import logging
import math
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterator, Mapping, Protocol, Sequence

import pandas as pd
from pandas.api.types import is_bool, is_float, is_integer

from ..core.errors import PersistenceError

logger = logging.getLogger(__name__)

OP_WRITE = "write"
OP_UPDATE = "update"
OP_DELETE = "delete"


@dataclass(frozen=True)
class BatchOp:
    """One operation of an atomic batch."""

    kind: str
    collection: str
    key: str
    data: Mapping[str, Any] = field(default_factory=dict)


def to_document(value: Any) -> Any:
    """
    Convert pandas/numpy values into plain JSON types.

    Timestamps become ISO-8601 strings, NaN/NA become None, numpy scalars
    become Python numbers. Containers are converted recursively.
    """
    if isinstance(value, Mapping):
        return {str(k): to_document(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_document(v) for v in value]
    if value is None or value is pd.NA or value is pd.NaT:
        return None
    if isinstance(value, (pd.Timestamp, datetime, date)):
        return value.isoformat()
    if is_bool(value):
        return bool(value)
    if is_integer(value):
        return int(value)
    if is_float(value):
        number = float(value)
        return None if math.isnan(number) or math.isinf(number) else number
    return value


def _matches(doc: Mapping[str, Any], where: Mapping[str, Any] | None) -> bool:
    if not where:
        return True
    return all(doc.get(k) == v for k, v in where.items())


class DocumentStore(Protocol):
    def read_all(self, collection: str, where: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        ...

    def read(self, collection: str, key: str) -> dict[str, Any] | None:
        ...

    def write(self, collection: str, key: str, document: Mapping[str, Any]) -> None:
        ...

    def update_fields(self, collection: str, key: str, fields: Mapping[str, Any]) -> None:
        ...

    def delete(self, collection: str, key: str) -> None:
        ...

    def write_batch(self, ops: Sequence[BatchOp]) -> None:
        ...

    def acquire_lock(self, name: str, owner: str, ttl_seconds: float | None = None) -> bool:
        ...

    def release_lock(self, name: str, owner: str) -> bool:
        ...

    def lock_owner(self, name: str) -> str | None:
        ...


# --- In-memory -----------------------------------------------------------------------


class InMemoryStore:
    """Process-local store for tests, notebooks and single-process runs."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, dict[str, Any]]] = {}
        self._locks: dict[str, tuple[str, float | None]] = {}
        self._mutex = threading.RLock()

    def read_all(self, collection, where=None):
        with self._mutex:
            docs = self._data.get(collection, {}).values()
            return [copy.deepcopy(d) for d in docs if _matches(d, where)]

    def read(self, collection, key):
        with self._mutex:
            doc = self._data.get(collection, {}).get(key)
            return copy.deepcopy(doc) if doc is not None else None

    def write(self, collection, key, document):
        self.write_batch([BatchOp(OP_WRITE, collection, key, document)])

    def update_fields(self, collection, key, fields):
        self.write_batch([BatchOp(OP_UPDATE, collection, key, fields)])

    def delete(self, collection, key):
        self.write_batch([BatchOp(OP_DELETE, collection, key)])

    def write_batch(self, ops):
        with self._mutex:
            staged = {name: dict(docs) for name, docs in self._data.items()}
            for op in ops:
                docs = staged.setdefault(op.collection, {})
                if op.kind == OP_WRITE:
                    docs[op.key] = to_document(dict(op.data, id=op.key))
                elif op.kind == OP_UPDATE:
                    if op.key not in docs:
                        raise PersistenceError(f"{op.collection}/{op.key} does not exist")
                    merged = dict(docs[op.key])
                    merged.update(to_document(dict(op.data)))
                    docs[op.key] = merged
                elif op.kind == OP_DELETE:
                    docs.pop(op.key, None)
                else:
                    raise PersistenceError(f"Unknown batch operation: {op.kind}")
            self._data = staged

    def acquire_lock(self, name, owner, ttl_seconds=None):
        now = pd.Timestamp.now(tz="UTC").timestamp()
        with self._mutex:
            held = self._locks.get(name)
            if held is not None and (held[1] is None or held[1] > now):
                return False
            expires = now + ttl_seconds if ttl_seconds else None
            self._locks[name] = (owner, expires)
            return True

    def release_lock(self, name, owner):
        with self._mutex:
            held = self._locks.get(name)
            if held is None or held[0] != owner:
                return False
            del self._locks[name]
            return True

    def lock_owner(self, name):
        with self._mutex:
            held = self._locks.get(name)
            return held[0] if held else None


# --- SQLite --------------------------------------------------------------------------


class SQLiteStore:
    """
    JSON documents in SQLite.

    Every public call opens its own connection, so one store object can be
    shared between threads. `write_batch` runs in a single transaction.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        self.init_db()

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        try:
            con = sqlite3.connect(self.path, timeout=30)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open store {self.path}: {exc}") from exc
        con.execute("PRAGMA journal_mode=WAL;")
        try:
            yield con
            con.commit()
        except sqlite3.Error as exc:
            con.rollback()
            raise PersistenceError(f"Store operation failed: {exc}") from exc
        finally:
            con.close()

    def init_db(self) -> None:
        with self._conn() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                  collection TEXT NOT NULL,
                  key TEXT NOT NULL,
                  body TEXT NOT NULL,
                  PRIMARY KEY (collection, key)
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS locks (
                  name TEXT PRIMARY KEY,
                  owner TEXT NOT NULL,
                  acquired_at REAL NOT NULL,
                  expires_at REAL
                );
                """
            )

    def read_all(self, collection, where=None):
        with self._conn() as con:
            cur = con.execute(
                "SELECT body FROM documents WHERE collection=? ORDER BY rowid", (collection,)
            )
            docs = [json.loads(row[0]) for row in cur.fetchall()]
        return [d for d in docs if _matches(d, where)]

    def read(self, collection, key):
        with self._conn() as con:
            cur = con.execute(
                "SELECT body FROM documents WHERE collection=? AND key=?", (collection, key)
            )
            row = cur.fetchone()
        return json.loads(row[0]) if row else None

    def write(self, collection, key, document):
        self.write_batch([BatchOp(OP_WRITE, collection, key, document)])

    def update_fields(self, collection, key, fields):
        self.write_batch([BatchOp(OP_UPDATE, collection, key, fields)])

    def delete(self, collection, key):
        self.write_batch([BatchOp(OP_DELETE, collection, key)])

    @staticmethod
    def _upsert(con: sqlite3.Connection, collection: str, key: str, doc: Mapping[str, Any]) -> None:
        # ON CONFLICT keeps the rowid, so read_all order stays insertion order
        con.execute(
            "INSERT INTO documents(collection, key, body) VALUES (?,?,?) "
            "ON CONFLICT(collection, key) DO UPDATE SET body=excluded.body",
            (collection, key, json.dumps(doc, ensure_ascii=False)),
        )

    def write_batch(self, ops):
        with self._conn() as con:
            for op in ops:
                if op.kind == OP_WRITE:
                    self._upsert(con, op.collection, op.key, to_document(dict(op.data, id=op.key)))
                elif op.kind == OP_UPDATE:
                    cur = con.execute(
                        "SELECT body FROM documents WHERE collection=? AND key=?",
                        (op.collection, op.key),
                    )
                    row = cur.fetchone()
                    if row is None:
                        # leaving the block without commit discards earlier ops
                        con.rollback()
                        raise PersistenceError(f"{op.collection}/{op.key} does not exist")
                    merged = json.loads(row[0])
                    merged.update(to_document(dict(op.data)))
                    self._upsert(con, op.collection, op.key, merged)
                elif op.kind == OP_DELETE:
                    con.execute(
                        "DELETE FROM documents WHERE collection=? AND key=?",
                        (op.collection, op.key),
                    )
                else:
                    con.rollback()
                    raise PersistenceError(f"Unknown batch operation: {op.kind}")
        logger.debug("Committed batch of %s operations to %s", len(ops), self.path)

    def acquire_lock(self, name, owner, ttl_seconds=None):
        now = pd.Timestamp.now(tz="UTC").timestamp()
        expires = now + ttl_seconds if ttl_seconds else None
        with self._conn() as con:
            con.execute(
                "DELETE FROM locks WHERE name=? AND expires_at IS NOT NULL AND expires_at <= ?",
                (name, now),
            )
            try:
                con.execute(
                    "INSERT INTO locks(name, owner, acquired_at, expires_at) VALUES (?,?,?,?)",
                    (name, owner, now, expires),
                )
            except sqlite3.IntegrityError:
                return False
        return True

    def release_lock(self, name, owner):
        with self._conn() as con:
            cur = con.execute("DELETE FROM locks WHERE name=? AND owner=?", (name, owner))
            released = cur.rowcount > 0
        return released

    def lock_owner(self, name):
        with self._conn() as con:
            cur = con.execute("SELECT owner FROM locks WHERE name=?", (name,))
            row = cur.fetchone()
        return row[0] if row else None
