"""
rollups.py

Derived aggregates of a session's reconciliation records.

Rollups are always recomputable from the records alone, so the session
manager may cache them on the session document and drop the cache whenever
a record changes.

Public API
----------
- compute_rollups(records, session_id=None) -> dict
- summarize_records(records) -> dict

Shapes
------
by_transaction_code[code]:
    transaction_code, point_of_sale_name, agent_id, claim_amount,
    merchant_amount, status, error_type, last_processed_at, session_ids
    (the record with the latest processed_at wins; ties keep the later one)
by_point_of_sale[name] / by_agent[agent_id]:
    total_transactions, total_amount, matched_count, error_count
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

import pandas as pd

from ..core.config import RECON_STATUS
from ..core.normalizers import cell_text, is_blank

logger = logging.getLogger(__name__)

_EPOCH = pd.Timestamp(0, tz="UTC")


def _as_records(records: pd.DataFrame | Iterable[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
    if isinstance(records, pd.DataFrame):
        return records.to_dict("records")
    return list(records)


def _timestamp(value: Any) -> pd.Timestamp:
    if is_blank(value):
        return _EPOCH
    try:
        ts = pd.Timestamp(value)
    except (ValueError, TypeError):
        return _EPOCH
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return ts


def _amount(record: Mapping[str, Any]) -> float:
    """Claimed amount when there is a claim, otherwise the merchant amount."""
    for field in ("claim_amount", "merchant_amount"):
        value = record.get(field)
        if not is_blank(value):
            return float(value)
    return 0.0


def _empty_bucket() -> dict[str, Any]:
    return {"total_transactions": 0, "total_amount": 0.0, "matched_count": 0, "error_count": 0}


def _add(bucket: dict[str, Any], record: Mapping[str, Any]) -> None:
    bucket["total_transactions"] += 1
    bucket["total_amount"] = round(bucket["total_amount"] + _amount(record), 2)
    if record.get("status") == RECON_STATUS.matched:
        bucket["matched_count"] += 1
    else:
        bucket["error_count"] += 1


def compute_rollups(
    records: pd.DataFrame | Iterable[Mapping[str, Any]],
    session_id: str | None = None,
) -> dict[str, dict[str, Any]]:
    """
    Aggregate records by transaction code, point of sale and agent.

    Args:
        records:
            Reconciliation records (DataFrame or documents).
        session_id:
            Fallback session id for records that do not carry one.

    Returns:
        {"by_transaction_code": ..., "by_point_of_sale": ..., "by_agent": ...}
        with JSON-serialisable values.
    """
    by_code: dict[str, dict[str, Any]] = {}
    latest: dict[str, pd.Timestamp] = {}
    by_pos: dict[str, dict[str, Any]] = {}
    by_agent: dict[str, dict[str, Any]] = {}

    for record in _as_records(records):
        code = cell_text(record.get("transaction_code"))
        rec_session = cell_text(record.get("session_id")) or session_id
        processed = _timestamp(record.get("processed_at"))

        if code:
            sessions = by_code.get(code, {}).get("session_ids", [])
            if rec_session and rec_session not in sessions:
                sessions = sessions + [rec_session]
            if code not in latest or processed >= latest[code]:
                latest[code] = processed
                by_code[code] = {
                    "transaction_code": code,
                    "point_of_sale_name": cell_text(record.get("point_of_sale_name")) or None,
                    "agent_id": cell_text(record.get("agent_id")) or None,
                    "claim_amount": None if is_blank(record.get("claim_amount")) else float(record["claim_amount"]),
                    "merchant_amount": None if is_blank(record.get("merchant_amount")) else float(record["merchant_amount"]),
                    "status": record.get("status"),
                    "error_type": None if is_blank(record.get("error_type")) else record.get("error_type"),
                    "last_processed_at": processed.isoformat(),
                }
            by_code[code]["session_ids"] = sessions

        pos = cell_text(record.get("point_of_sale_name"))
        if pos:
            _add(by_pos.setdefault(pos, _empty_bucket()), record)

        agent = cell_text(record.get("agent_id"))
        if agent:
            _add(by_agent.setdefault(agent, _empty_bucket()), record)

    logger.debug(
        "Rollups: %s codes, %s points of sale, %s agents",
        len(by_code),
        len(by_pos),
        len(by_agent),
    )
    return {
        "by_transaction_code": by_code,
        "by_point_of_sale": by_pos,
        "by_agent": by_agent,
    }


def summarize_records(records: pd.DataFrame | Iterable[Mapping[str, Any]]) -> dict[str, Any]:
    """Session counters: total_records, matched_count, error_count, total_amount."""
    rows = _as_records(records)
    matched = [r for r in rows if r.get("status") == RECON_STATUS.matched]
    return {
        "total_records": len(rows),
        "matched_count": len(matched),
        "error_count": len(rows) - len(matched),
        "total_amount": round(sum(_amount(r) for r in matched), 2),
    }
