from __future__ import annotations

from pathlib import Path

import pandas as pd
import pytest

from payrecon.core.errors import PersistenceError
from payrecon.state.store import (
    OP_DELETE,
    OP_UPDATE,
    OP_WRITE,
    BatchOp,
    InMemoryStore,
    SQLiteStore,
    to_document,
)


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path):
    if request.param == "memory":
        return InMemoryStore()
    return SQLiteStore(tmp_path / "payrecon.db")


def test_write_read_and_update(store) -> None:
    store.write("claims", "c1", {"amount": 500000.0, "status": "PENDING"})
    store.update_fields("claims", "c1", {"status": "MATCHED"})

    assert store.read("claims", "c1") == {"amount": 500000.0, "status": "MATCHED", "id": "c1"}
    assert store.read("claims", "missing") is None


def test_read_all_filters_and_keeps_insertion_order(store) -> None:
    store.write("records", "r2", {"session_id": "s1"})
    store.write("records", "r1", {"session_id": "s2"})
    store.write("records", "r3", {"session_id": "s1"})
    # overwriting keeps the original position
    store.write("records", "r2", {"session_id": "s1", "status": "MATCHED"})

    assert [d["id"] for d in store.read_all("records")] == ["r2", "r1", "r3"]
    assert [d["id"] for d in store.read_all("records", where={"session_id": "s1"})] == ["r2", "r3"]


def test_write_batch_is_atomic(store) -> None:
    store.write("claims", "c1", {"status": "PENDING"})

    with pytest.raises(PersistenceError):
        store.write_batch(
            [
                BatchOp(OP_WRITE, "claims", "c2", {"status": "PENDING"}),
                BatchOp(OP_DELETE, "claims", "c1"),
                BatchOp(OP_UPDATE, "claims", "does-not-exist", {"status": "MATCHED"}),
            ]
        )

    assert store.read("claims", "c1") == {"status": "PENDING", "id": "c1"}
    assert store.read("claims", "c2") is None


def test_locks_are_exclusive(store) -> None:
    assert store.acquire_lock("session:s1", "worker-a") is True
    assert store.acquire_lock("session:s1", "worker-b") is False
    assert store.lock_owner("session:s1") == "worker-a"
    assert store.release_lock("session:s1", "worker-b") is False
    assert store.release_lock("session:s1", "worker-a") is True
    assert store.lock_owner("session:s1") is None
    assert store.acquire_lock("session:s1", "worker-b") is True


def test_expired_lock_can_be_taken_over(store) -> None:
    assert store.acquire_lock("session:s1", "worker-a", ttl_seconds=-1) is True
    assert store.acquire_lock("session:s1", "worker-b") is True
    assert store.lock_owner("session:s1") == "worker-b"


def test_sqlite_store_persists_between_instances(tmp_path: Path) -> None:
    path = tmp_path / "payrecon.db"
    SQLiteStore(path).write("sessions", "s1", {"status": "COMPLETED", "rollups": {"by_agent": {}}})

    reopened = SQLiteStore(path)

    assert reopened.read("sessions", "s1")["rollups"] == {"by_agent": {}}


def test_to_document_converts_pandas_values() -> None:
    doc = to_document(
        {
            "ts": pd.Timestamp("2024-01-05T03:30:00", tz="UTC"),
            "missing": float("nan"),
            "na": pd.NA,
            "count": pd.Series([3]).iloc[0],
            "flag": pd.Series([True]).iloc[0],
            "items": ("a", 1.5),
        }
    )

    assert doc == {
        "ts": "2024-01-05T03:30:00+00:00",
        "missing": None,
        "na": None,
        "count": 3,
        "flag": True,
        "items": ["a", 1.5],
    }
    assert type(doc["count"]) is int
    assert type(doc["flag"]) is bool
