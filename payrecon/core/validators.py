# Docstring for payrecon/core/validators module
"""
validators.py

Shared validation helpers for merchant transactions and claims.

Mapping, Merge & Dedup and claim cleaning all need the same answer to "is
this a usable settlement code / amount?". Keeping those checks here means a
row rejected by one stage is rejected for the same reason by every other.

Public API
----------
- code_issues(code, point_of_sale=None, min_length=6, placeholder_prefix="UNK_") -> list[str]
- validate_transaction_code(code, point_of_sale=None, min_length=6) -> bool
- validate_transaction_code_series(codes, points_of_sale=None, min_length=6) -> pd.Series
- is_placeholder_code(code, prefix="UNK_") -> bool
- is_placeholder_code_series(codes, prefix="UNK_") -> pd.Series
- validate_amount(amount, floor=1000) -> bool
- validate_amount_series(amounts, floor=1000) -> pd.Series
- validate_claim_status(status) -> bool

Issue labels
------------
- missing_code
- code_equals_point_of_sale
- code_too_short
- placeholder_code (informational; the row is kept)
"""

from __future__ import annotations

from typing import Any

import pandas as pd

from .config import CLAIM_STATUS, MAPPING_CONFIG
from .normalizers import cell_text, normalize


ISSUE_MISSING_CODE = "missing_code"
ISSUE_CODE_EQUALS_POS = "code_equals_point_of_sale"
ISSUE_CODE_TOO_SHORT = "code_too_short"
ISSUE_PLACEHOLDER = "placeholder_code"

# Issues that make a row unusable as ground truth.
BLOCKING_ISSUES = frozenset({ISSUE_MISSING_CODE, ISSUE_CODE_EQUALS_POS, ISSUE_CODE_TOO_SHORT})

VALID_CLAIM_STATUSES = frozenset(
    {CLAIM_STATUS.pending, CLAIM_STATUS.matched, CLAIM_STATUS.error, CLAIM_STATUS.unmatched}
)


def is_placeholder_code(code: Any, prefix: str = MAPPING_CONFIG.placeholder_prefix) -> bool:
    return cell_text(code).startswith(prefix)


def is_placeholder_code_series(
    codes: pd.Series, prefix: str = MAPPING_CONFIG.placeholder_prefix
) -> pd.Series:
    return codes.fillna("").astype(str).str.startswith(prefix)


def code_issues(
    code: Any,
    point_of_sale: Any = None,
    min_length: int = MAPPING_CONFIG.min_code_length,
    placeholder_prefix: str = MAPPING_CONFIG.placeholder_prefix,
) -> list[str]:
    """
    List every problem with a settlement code.

    The code is compared with the point of sale both verbatim and normalized,
    since a POS name typed into the code column often differs only by case or
    accents. Placeholder codes skip the length check.
    """
    text = cell_text(code)
    if not text:
        return [ISSUE_MISSING_CODE]

    issues: list[str] = []
    pos_text = cell_text(point_of_sale)
    if pos_text and (text == pos_text or normalize(text) == normalize(pos_text)):
        issues.append(ISSUE_CODE_EQUALS_POS)

    if is_placeholder_code(text, placeholder_prefix):
        issues.append(ISSUE_PLACEHOLDER)
    elif len(text) < min_length:
        issues.append(ISSUE_CODE_TOO_SHORT)
    return issues


def validate_transaction_code(
    code: Any,
    point_of_sale: Any = None,
    min_length: int = MAPPING_CONFIG.min_code_length,
) -> bool:
    return not BLOCKING_ISSUES.intersection(code_issues(code, point_of_sale, min_length))


def validate_transaction_code_series(
    codes: pd.Series,
    points_of_sale: pd.Series | None = None,
    min_length: int = MAPPING_CONFIG.min_code_length,
) -> pd.Series:
    if points_of_sale is None:
        points_of_sale = pd.Series(None, index=codes.index, dtype="object")
    result = [
        validate_transaction_code(code, pos, min_length)
        for code, pos in zip(codes, points_of_sale)
    ]
    return pd.Series(result, index=codes.index, dtype="bool")


def validate_amount(amount: Any, floor: float = MAPPING_CONFIG.min_stake) -> bool:
    """True when `amount` is a finite number at or above `floor`."""
    try:
        value = float(amount)
    except (TypeError, ValueError):
        return False
    if pd.isna(value):
        return False
    return value >= floor


def validate_amount_series(
    amounts: pd.Series, floor: float = MAPPING_CONFIG.min_stake
) -> pd.Series:
    numeric = pd.to_numeric(amounts, errors="coerce")
    return numeric.ge(floor).fillna(False).astype("bool")


def validate_claim_status(status: Any) -> bool:
    return cell_text(status).upper() in VALID_CLAIM_STATUSES
