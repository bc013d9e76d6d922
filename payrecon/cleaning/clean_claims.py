# Docstring for payrecon/cleaning/clean_claims module
"""
clean_claims.py

Cleaning and normalization for claims (bills submitted by agents or users).

Claims reach the engine as store documents written by other tools (upload
forms, OCR, manual entry), so their fields are typed loosely: amounts as
text, codes as numbers, statuses in mixed case. This module turns them into
a canonical DataFrame the Matching Engine can rely on.

Core transformations
--------------------
1) Column standardization: missing canonical columns are added as <NA>.
2) Field normalization
   - transaction_code: trimmed text, integer-valued floats lose ".0".
   - amount: `parse_amount` (0.0 when unparseable).
   - point_of_sale_name: trimmed text or <NA>.
   - status: upper-cased; empty -> PENDING.
   - timestamp: UTC instant (day-first parsing).
3) Data-quality warnings (`warnings.warn` counts) for missing
   codes, unparseable amounts and unknown statuses. Rows are never dropped
   here: a claim with a bad code still gets a record from the engine.

Public API
----------
- clean_claims(raw, now=None) -> pd.DataFrame
- claim_from_candidate(candidate, claim_id, agent_id=None, user_id=None, now=None) -> dict
"""

from __future__ import annotations

import warnings
from typing import Any, Iterable, Mapping

import pandas as pd

from ..core.config import CLAIM_CORE_COLUMNS, CLAIM_STATUS
from ..core.normalizers import cell_text, parse_amount, parse_timestamp
from ..core.validators import validate_claim_status


def _clean_text(value: Any) -> Any:
    text = cell_text(value)
    return text if text else pd.NA


def clean_claims(
    raw: pd.DataFrame | Iterable[Mapping[str, Any]],
    now: pd.Timestamp | None = None,
) -> pd.DataFrame:
    """
    Normalize claim documents.

    Args:
        raw:
            DataFrame or iterable of claim dicts (store documents).
        now:
            Default timestamp for claims without a parsable one.

    Returns:
        DataFrame with at least CLAIM_CORE_COLUMNS, input order preserved.
    """
    df = raw.copy() if isinstance(raw, pd.DataFrame) else pd.DataFrame(list(raw))
    df = df.reset_index(drop=True)
    if now is None:
        now = pd.Timestamp.now(tz="UTC")

    for col in CLAIM_CORE_COLUMNS:
        if col not in df.columns:
            df[col] = pd.NA

    df["id"] = df["id"].map(_clean_text).astype("string")
    df["transaction_code"] = df["transaction_code"].map(_clean_text).astype("string")
    df["amount"] = df["amount"].map(parse_amount).astype("float64")
    df["point_of_sale_name"] = df["point_of_sale_name"].map(_clean_text).astype("string")
    df["agent_id"] = df["agent_id"].map(_clean_text).astype("string")
    df["timestamp"] = df["timestamp"].map(lambda v: parse_timestamp(v, default=now))

    status = df["status"].map(cell_text).str.upper()
    df["status"] = status.where(status != "", CLAIM_STATUS.pending)

    missing_code = int(df["transaction_code"].isna().sum())
    if missing_code > 0:
        warnings.warn(
            f"Claims: {missing_code} claims have no transaction code.",
            stacklevel=2,
        )
    zero_amount = int(df["amount"].le(0).sum())
    if zero_amount > 0:
        warnings.warn(
            f"Claims: {zero_amount} claims have an unparseable or zero amount.",
            stacklevel=2,
        )
    unknown_status = int((~df["status"].map(validate_claim_status)).sum())
    if unknown_status > 0:
        warnings.warn(
            f"Claims: {unknown_status} claims have an unknown status.",
            stacklevel=2,
        )
    return df


def claim_from_candidate(
    candidate: Any,
    claim_id: str,
    agent_id: str | None = None,
    user_id: str | None = None,
    now: pd.Timestamp | None = None,
) -> dict[str, Any]:
    """
    Build a PENDING claim document from an `OcrCandidate`.

    The timestamp is stored as ISO-8601 text so the document stays JSON
    serialisable.
    """
    if now is None:
        now = pd.Timestamp.now(tz="UTC")
    timestamp = parse_timestamp(candidate.timestamp, default=now)
    return {
        "id": claim_id,
        "transaction_code": candidate.transaction_code,
        "amount": candidate.amount,
        "point_of_sale_name": candidate.point_of_sale_name,
        "invoice_number": candidate.invoice_number,
        "timestamp": timestamp.isoformat(),
        "status": CLAIM_STATUS.pending,
        "error_message": None,
        "agent_id": agent_id,
        "user_id": user_id,
    }
