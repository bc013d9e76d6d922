# Docstring for payrecon/state/session_manager module
"""
session_manager.py

Session/state manager: runs reconciliation sessions against the document
store and keeps claim status, records and rollups consistent.

Design goals
------------
- Single writer: every run holds two store locks from the fresh read to the
  last commit, `session:<id>` and the store-wide `reconcile` lock. All runs
  draw from one pool of PENDING claims and merchant rows, so two runs never
  overlap even under different session ids. Each run locks with its own
  owner label and releases in `finally`.
- One session per run: a session id that already has results is refused
  with SessionExistsError. FAILED and CANCELLED sessions may be re-run under
  the same id; their records are purged and their claims reset first.
- Fresh reads: claims and merchant transactions are read from the store at
  the start of every run; nothing is cached between runs.
- Bounded, atomic persistence: records and claim updates are committed in
  chunks of `SessionConfig.batch_size` claims, one `write_batch` per chunk,
  so a crash or cancellation leaves every committed chunk consistent.
- No double pay: merchant transactions bound by an earlier run are never
  bound again, and new claims for a settled code are duplicates.

Run lifecycle
-------------
PROCESSING -> COMPLETED, or FAILED (store error), or CANCELLED (cancel event
set between chunks). Claims are only ever written back as MATCHED (with the
bound merchant transaction) or PENDING (with the reason in error_message);
a store outage never marks a claim as failed.

Public API
----------
- SessionManager(store, config=SESSION_CONFIG, matching_config=MATCHING_CONFIG, clock=None)
  - save_merchant_transactions(transactions) -> int
  - save_claims(claims) -> int
  - run_reconciliation(session_id=None, input_files=(), upload_batch_ids=None,
    agent_id=None, cancel_event=None) -> dict
  - get_session(session_id, agent_id=None) -> dict
  - recalculate_rollups(session_id) -> dict
  - correct_record(record_id, changes, edited_by) -> dict
  - delete_session(session_id, agent_id=None) -> int
  - status_breakdown(claims) -> dict[str, int]
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import Counter
from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence

import pandas as pd

from ..cleaning.clean_claims import clean_claims
from ..core.config import (
    CLAIM_COLLECTION,
    CLAIM_STATUS,
    MATCHING_CONFIG,
    MERCHANT_COLLECTION,
    MERCHANT_CORE_COLUMNS,
    RECON_STATUS,
    RECORD_COLLECTION,
    SESSION_COLLECTION,
    SESSION_CONFIG,
    SESSION_STATUS,
    MatchingConfig,
    SessionConfig,
)
from ..core.errors import (
    NoPendingClaimsError,
    PersistenceError,
    RecordNotFoundError,
    RunCancelledError,
    SessionExistsError,
    SessionLockedError,
    SessionNotFoundError,
    UnauthorizedSessionError,
)
from ..core.normalizers import cell_text
from ..engines.match_claims import reconcile_claims
from ..engines.rollups import compute_rollups, summarize_records
from .store import OP_DELETE, OP_UPDATE, OP_WRITE, BatchOp, DocumentStore, to_document

logger = logging.getLogger(__name__)

# Held by every run and session deletion; runs share the PENDING claim pool.
RECONCILE_LOCK = "reconcile"

# Sessions whose id may be reused by a new run.
RERUNNABLE_STATUSES = frozenset({SESSION_STATUS.failed, SESSION_STATUS.cancelled})

# Record fields an operator may correct by hand.
EDITABLE_RECORD_FIELDS = frozenset(
    {
        "status",
        "error_type",
        "error_detail",
        "difference",
        "merchant_transaction_id",
        "point_of_sale_name",
        "claim_amount",
        "merchant_amount",
        "transaction_code",
    }
)


def _chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class SessionManager:
    """Runs and maintains reconciliation sessions on a DocumentStore."""

    def __init__(
        self,
        store: DocumentStore,
        config: SessionConfig = SESSION_CONFIG,
        matching_config: MatchingConfig = MATCHING_CONFIG,
        clock: Callable[[], pd.Timestamp] | None = None,
    ) -> None:
        if config.batch_size < 1:
            raise ValueError("SessionConfig.batch_size must be at least 1.")
        self.store = store
        self.config = config
        self.matching_config = matching_config
        self._clock = clock or (lambda: pd.Timestamp.now(tz="UTC"))

    # --- Loading ---------------------------------------------------------------------

    def save_merchant_transactions(self, transactions: pd.DataFrame) -> int:
        """Persist mapped merchant transactions (keyed by their id) in chunks."""
        docs = transactions.to_dict("records")
        for chunk in _chunks(docs, self.config.batch_size):
            self.store.write_batch(
                [BatchOp(OP_WRITE, MERCHANT_COLLECTION, cell_text(d["id"]), d) for d in chunk]
            )
        logger.info("Stored %s merchant transactions", len(docs))
        return len(docs)

    def save_claims(self, claims: Iterable[Mapping[str, Any]]) -> int:
        """Persist claim documents; claims without a status start PENDING."""
        docs = []
        for claim in claims:
            doc = dict(claim)
            if not cell_text(doc.get("status")):
                doc["status"] = CLAIM_STATUS.pending
            docs.append(doc)
        for chunk in _chunks(docs, self.config.batch_size):
            self.store.write_batch(
                [BatchOp(OP_WRITE, CLAIM_COLLECTION, cell_text(d["id"]), d) for d in chunk]
            )
        return len(docs)

    # --- Helpers ---------------------------------------------------------------------

    @staticmethod
    def status_breakdown(claims: Iterable[Mapping[str, Any]]) -> dict[str, int]:
        """Count claims by status (blank status counts as PENDING)."""
        counts = Counter(
            cell_text(c.get("status")).upper() or CLAIM_STATUS.pending for c in claims
        )
        return dict(counts)

    def _lock_name(self, session_id: str) -> str:
        return f"session:{session_id}"

    @contextmanager
    def _locked(self, session_id: str) -> Iterator[str]:
        """Hold the session lock and the reconcile lock under a fresh owner label."""
        owner = f"{self.config.lock_owner}-{uuid.uuid4().hex[:8]}"
        held: list[str] = []
        try:
            for name in (self._lock_name(session_id), RECONCILE_LOCK):
                if not self.store.acquire_lock(name, owner):
                    raise SessionLockedError(session_id, self.store.lock_owner(name), lock_name=name)
                held.append(name)
            yield owner
        finally:
            for name in reversed(held):
                if not self.store.release_lock(name, owner):
                    logger.warning("Lock %s was not held by %s at release", name, owner)

    def _mark_session(self, session_id: str, status: str, **fields: Any) -> None:
        try:
            self.store.update_fields(
                SESSION_COLLECTION,
                session_id,
                {"status": status, "processed_at": self._clock(), **fields},
            )
        except PersistenceError:
            logger.exception("Could not mark session %s as %s", session_id, status)

    def _read_session(self, session_id: str, agent_id: str | None = None) -> dict[str, Any]:
        doc = self.store.read(SESSION_COLLECTION, session_id)
        if doc is None:
            raise SessionNotFoundError(session_id)
        owner = doc.get("agent_id")
        if agent_id is not None and owner and owner != agent_id:
            raise UnauthorizedSessionError(
                f"Session {session_id} does not belong to agent {agent_id}"
            )
        return doc

    # --- Run -------------------------------------------------------------------------

    def run_reconciliation(
        self,
        session_id: str | None = None,
        input_files: Sequence[str] = (),
        upload_batch_ids: Sequence[str] | None = None,
        agent_id: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> dict[str, Any]:
        """
        Reconcile every PENDING claim against the stored merchant transactions.

        Args:
            session_id:
                Id of the session to create (generated when None).
            input_files:
                Merchant files the run is based on (informational).
            upload_batch_ids:
                Only merchant transactions of these batches are ground truth.
            agent_id:
                Only this agent's claims are reconciled.
            cancel_event:
                Checked between persistence chunks.

        Returns:
            The finalised session document.

        Raises:
            SessionLockedError: another run holds the session or the store.
            SessionExistsError: the session id already has results.
            NoPendingClaimsError: nothing to reconcile (with a breakdown).
            RunCancelledError: the cancel event was set.
            PersistenceError: the store failed; the session is marked FAILED.
        """
        session_id = session_id or f"session_{uuid.uuid4().hex[:12]}"
        with self._locked(session_id):
            return self._run(session_id, input_files, upload_batch_ids, agent_id, cancel_event)

    def _run(
        self,
        session_id: str,
        input_files: Sequence[str],
        upload_batch_ids: Sequence[str] | None,
        agent_id: str | None,
        cancel_event: threading.Event | None,
    ) -> dict[str, Any]:
        existing = self.store.read(SESSION_COLLECTION, session_id)
        if existing is not None:
            if existing.get("status") not in RERUNNABLE_STATUSES:
                raise SessionExistsError(session_id, existing.get("status"))
            records, claims = self._purge_session(session_id)
            logger.warning(
                "Session %s was %s; purged %s records and reset %s claims before the re-run",
                session_id,
                existing.get("status"),
                len(records),
                len(claims),
            )

        # 1) Fresh reads
        all_claims = self.store.read_all(CLAIM_COLLECTION)
        scoped = [c for c in all_claims if agent_id is None or c.get("agent_id") == agent_id]
        pending = [
            c
            for c in scoped
            if (cell_text(c.get("status")).upper() or CLAIM_STATUS.pending) == CLAIM_STATUS.pending
        ]
        if not pending:
            breakdown = self.status_breakdown(scoped)
            logger.info("Session %s: nothing to reconcile %s", session_id, breakdown)
            raise NoPendingClaimsError(breakdown)

        merchant_docs = self.store.read_all(MERCHANT_COLLECTION)
        if upload_batch_ids is not None:
            batches = set(upload_batch_ids)
            merchant_docs = [m for m in merchant_docs if m.get("upload_batch_id") in batches]

        settled = [
            c for c in all_claims if cell_text(c.get("status")).upper() == CLAIM_STATUS.matched
        ]
        bound_ids = {cell_text(c.get("merchant_transaction_id")) for c in settled} - {""}
        settled_codes = {cell_text(c.get("transaction_code")) for c in settled} - {""}

        now = self._clock()
        self.store.write(
            SESSION_COLLECTION,
            session_id,
            {
                "created_at": now,
                "input_files": list(input_files),
                "upload_batch_ids": list(upload_batch_ids) if upload_batch_ids is not None else None,
                "agent_id": agent_id,
                "status": SESSION_STATUS.processing,
                "total_records": 0,
                "matched_count": 0,
                "error_count": 0,
                "total_amount": 0.0,
                "rollups": None,
            },
        )

        # 2) Match
        claims_df = clean_claims(pending, now=now)
        claims_df = claims_df.sort_values("timestamp", kind="stable").reset_index(drop=True)
        merchant_df = pd.DataFrame(merchant_docs)
        for col in MERCHANT_CORE_COLUMNS:
            if col not in merchant_df.columns:
                merchant_df[col] = None
        records = reconcile_claims(
            claims_df,
            merchant_df,
            self.matching_config,
            session_id=session_id,
            processed_at=now,
            bound_merchant_ids=bound_ids,
            settled_codes=settled_codes,
        )

        # 3) Persist in chunks
        try:
            self._persist(session_id, records, cancel_event, now)
        except RunCancelledError:
            self._mark_session(session_id, SESSION_STATUS.cancelled)
            raise
        except PersistenceError:
            self._mark_session(session_id, SESSION_STATUS.failed)
            raise

        # 4) Rollups and finalisation
        summary = summarize_records(records)
        try:
            self.store.update_fields(
                SESSION_COLLECTION,
                session_id,
                {
                    **summary,
                    "status": SESSION_STATUS.completed,
                    "processed_at": self._clock(),
                    "rollups": compute_rollups(records, session_id),
                },
            )
        except PersistenceError:
            self._mark_session(session_id, SESSION_STATUS.failed)
            raise
        logger.info(
            "Session %s completed: %s records, %s matched, %s errors",
            session_id,
            summary["total_records"],
            summary["matched_count"],
            summary["error_count"],
        )
        return self.store.read(SESSION_COLLECTION, session_id)

    def _claim_update(self, record: Mapping[str, Any], session_id: str, now: pd.Timestamp) -> dict[str, Any]:
        if record["status"] == RECON_STATUS.matched:
            return {
                "status": CLAIM_STATUS.matched,
                "merchant_transaction_id": record["merchant_transaction_id"],
                "error_message": None,
                "last_session_id": session_id,
                "updated_at": now,
            }
        return {
            "status": CLAIM_STATUS.pending,
            "merchant_transaction_id": None,
            "error_message": record["error_detail"],
            "last_session_id": session_id,
            "updated_at": now,
        }

    def _persist(
        self,
        session_id: str,
        records: pd.DataFrame,
        cancel_event: threading.Event | None,
        now: pd.Timestamp,
    ) -> None:
        docs = to_document(records.to_dict("records"))
        claim_docs = [d for d in docs if d.get("claim_id")]
        other_docs = [d for d in docs if not d.get("claim_id")]

        processed = 0
        for chunk in list(_chunks(claim_docs, self.config.batch_size)) + list(
            _chunks(other_docs, self.config.batch_size)
        ):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("Session %s cancelled after %s claims", session_id, processed)
                raise RunCancelledError(session_id, processed)
            ops = [BatchOp(OP_WRITE, RECORD_COLLECTION, d["id"], d) for d in chunk]
            ops += [
                BatchOp(OP_UPDATE, CLAIM_COLLECTION, d["claim_id"], self._claim_update(d, session_id, now))
                for d in chunk
                if d.get("claim_id")
            ]
            self.store.write_batch(ops)
            processed += sum(1 for d in chunk if d.get("claim_id"))
            logger.debug("Session %s: committed %s records", session_id, len(chunk))

    # --- Queries and maintenance -------------------------------------------------------

    def get_session(self, session_id: str, agent_id: str | None = None) -> dict[str, Any]:
        """Session document; rollups are recomputed and stored when missing."""
        doc = self._read_session(session_id, agent_id)
        if doc.get("rollups") is None and doc.get("status") != SESSION_STATUS.processing:
            self.recalculate_rollups(session_id)
            doc = self._read_session(session_id)
        return doc

    def recalculate_rollups(self, session_id: str) -> dict[str, Any]:
        """Rebuild rollups and counters of a session from its records."""
        self._read_session(session_id)
        records = self.store.read_all(RECORD_COLLECTION, where={"session_id": session_id})
        rollups = compute_rollups(records, session_id)
        self.store.update_fields(
            SESSION_COLLECTION,
            session_id,
            {**summarize_records(records), "rollups": rollups},
        )
        logger.info("Session %s: rollups recalculated from %s records", session_id, len(records))
        return rollups

    def correct_record(
        self,
        record_id: str,
        changes: Mapping[str, Any],
        edited_by: str,
    ) -> dict[str, Any]:
        """
        Apply a manual correction to a reconciliation record.

        Every changed field is appended to `edit_history`; the owning session's
        cached rollups are dropped so the next `get_session` rebuilds them.
        """
        unknown = set(changes) - EDITABLE_RECORD_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be edited: {sorted(unknown)}")

        record = self.store.read(RECORD_COLLECTION, record_id)
        if record is None:
            raise RecordNotFoundError(record_id)

        now = to_document(self._clock())
        new_values = to_document(dict(changes))
        history = list(record.get("edit_history") or [])
        edited = set(record.get("edited_fields") or [])
        for field_name, new_value in new_values.items():
            old_value = record.get(field_name)
            if old_value == new_value:
                continue
            history.append(
                {
                    "field": field_name,
                    "old_value": old_value,
                    "new_value": new_value,
                    "edited_at": now,
                    "edited_by": edited_by,
                }
            )
            edited.add(field_name)

        update = {
            **new_values,
            "is_manually_edited": True,
            "edited_fields": sorted(edited),
            "edit_history": history,
            "updated_at": now,
        }
        ops = [BatchOp(OP_UPDATE, RECORD_COLLECTION, record_id, update)]
        session_id = record.get("session_id")
        if session_id and self.store.read(SESSION_COLLECTION, session_id) is not None:
            ops.append(BatchOp(OP_UPDATE, SESSION_COLLECTION, session_id, {"rollups": None}))
        self.store.write_batch(ops)
        logger.info("Record %s corrected by %s: %s", record_id, edited_by, sorted(new_values))
        return self.store.read(RECORD_COLLECTION, record_id)

    def _purge_session(self, session_id: str) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        """Delete a session's records and reset its claims; the caller holds the locks."""
        records = self.store.read_all(RECORD_COLLECTION, where={"session_id": session_id})
        claims = self.store.read_all(CLAIM_COLLECTION, where={"last_session_id": session_id})
        now = self._clock()

        ops = [BatchOp(OP_DELETE, RECORD_COLLECTION, r["id"]) for r in records]
        ops += [
            BatchOp(
                OP_UPDATE,
                CLAIM_COLLECTION,
                c["id"],
                {
                    "status": CLAIM_STATUS.pending,
                    "merchant_transaction_id": None,
                    "error_message": None,
                    "last_session_id": None,
                    "updated_at": now,
                },
            )
            for c in claims
        ]
        for chunk in _chunks(ops, self.config.batch_size):
            self.store.write_batch(chunk)
        return records, claims

    def delete_session(self, session_id: str, agent_id: str | None = None) -> int:
        """
        Delete a session and its records, and reset its claims to PENDING.

        Only claims whose last run was this session are reset, so results of
        later sessions are kept. Returns the number of claims reset.
        """
        self._read_session(session_id, agent_id)
        with self._locked(session_id):
            records, claims = self._purge_session(session_id)
            # session document last, so a failed delete can be retried
            self.store.delete(SESSION_COLLECTION, session_id)

        logger.info(
            "Session %s deleted: %s records removed, %s claims reset",
            session_id,
            len(records),
            len(claims),
        )
        return len(claims)
