"""
errors.py

Typed exceptions raised by the reconciliation engine.

Row-level problems (bad amount, unresolved code) never raise: the row is
dropped and logged. These exceptions cover file-level, run-level and
collaborator failures that the caller has to decide about.
"""

from __future__ import annotations


class PayreconError(Exception):
    """Base class for all engine errors."""


class WorkbookReadError(PayreconError):
    """A workbook could not be read or contains no usable sheet."""

    def __init__(self, path, reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Cannot read workbook {self.path}: {reason}")


class PersistenceError(PayreconError):
    """The document store failed; the run is retryable in full."""


class SessionLockedError(PayreconError):
    """Another run holds this session id, or the store-wide reconciliation lock."""

    def __init__(self, session_id: str, owner: str | None = None, lock_name: str | None = None):
        self.session_id = session_id
        self.owner = owner
        self.lock_name = lock_name
        held_by = f" (held by {owner})" if owner else ""
        if lock_name and lock_name != f"session:{session_id}":
            message = f"Session {session_id} cannot start: lock {lock_name} is taken{held_by}"
        else:
            message = f"Session {session_id} is already being processed{held_by}"
        super().__init__(message)


class SessionExistsError(PayreconError):
    """
    A run was started with the id of a session that already has results.

    Only FAILED or CANCELLED sessions may be re-run under the same id.
    """

    def __init__(self, session_id: str, status: str | None):
        self.session_id = session_id
        self.status = status
        super().__init__(
            f"Session {session_id} already exists with status {status}; "
            "delete it or use a new session id"
        )


class SessionNotFoundError(PayreconError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class RecordNotFoundError(PayreconError):
    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"Reconciliation record not found: {record_id}")


class UnauthorizedSessionError(PayreconError):
    """The session does not belong to the requesting agent."""


class NoPendingClaimsError(PayreconError):
    """
    A run found nothing to reconcile.

    `breakdown` maps claim status -> count so the caller can tell "nothing
    uploaded" apart from "everything already settled".
    """

    def __init__(self, breakdown: dict[str, int]):
        self.breakdown = dict(breakdown)
        pending = self.breakdown.get("PENDING", 0)
        matched = self.breakdown.get("MATCHED", 0)
        other = sum(self.breakdown.values()) - pending - matched
        super().__init__(
            f"No pending claims to reconcile: {pending} pending, "
            f"{matched} done, {other} other"
        )


class RunCancelledError(PayreconError):
    """A run was cancelled between persistence batches."""

    def __init__(self, session_id: str, processed_claims: int):
        self.session_id = session_id
        self.processed_claims = processed_claims
        super().__init__(
            f"Session {session_id} cancelled after {processed_claims} claims were committed"
        )


class OcrError(PayreconError):
    """The OCR collaborator failed or returned an unusable candidate."""

    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = False):
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)
