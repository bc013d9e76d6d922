# Docstring for payrecon/cleaning/map_transactions module
"""
map_transactions.py

Transaction mapper: raw merchant rows -> canonical MerchantTransaction rows.

The ingestor (`load_data.py`) hands over rows keyed by whatever headers the
merchant export happened to use. This module resolves the canonical fields
from those rows with a chain of header-synonym and value heuristics, and
rejects rows that cannot be trusted as ground truth.

Design goals
------------
- Point of sale first: it is resolved before anything else, because the
  settlement code must never be the point-of-sale value.
- Ordered fallbacks: every field has an explicit chain of strategies tried
  in a fixed order, and the row records how confident the code is.
- Row-level failures never raise: a bad row is dropped with a reason, logged,
  and counted.

Code resolution chain
---------------------
1) Header synonym (exact, then fuzzy, including header fragments)
2) Numeric pattern: the longest run of >= 10 digits that is not the POS
3) Best guess from `guess_transaction_code` (never the POS)
4) Placeholder `UNK_<file>_<row>` with code_confidence="placeholder"

If the code still equals the point of sale, one re-resolution runs with the
POS value and all POS/branch/amount/invoice/promotion/phone columns
excluded. If that also fails the row is dropped (`code_equals_point_of_sale`).

Amount resolution
-----------------
Header synonym first. When absent or below `min_plausible_amount` the numeric
cells of the row are scanned (see `_scan_amount`). Rows whose final amount is
below `min_stake` are dropped (`amount_below_floor`).

Public API
----------
- MappingResult
- map_row(row, source_file, row_index, upload_batch_id, ingested_at, config) -> (dict | None, str | None)
- map_transactions(rows, source_file, upload_batch_id, config=MAPPING_CONFIG, ingested_at=None) -> MappingResult
"""

from __future__ import annotations

import logging
import re
import warnings
from dataclasses import dataclass
from numbers import Real
from pathlib import Path
from typing import Any, Iterable, Mapping

import pandas as pd

from ..core.config import (
    AMOUNT_BEFORE_DISCOUNT_SYNONYMS,
    AMOUNT_HEADER_PATTERN,
    AMOUNT_SYNONYMS,
    BRANCH_SYNONYMS,
    CODE_EXCLUDED_HEADERS,
    CODE_HEADER_PATTERN,
    DATE_HEADER_PATTERN,
    GUESS_EXCLUDED_HEADER_PATTERN,
    INVOICE_SYNONYMS,
    MAPPING_CONFIG,
    MERCHANT_CORE_COLUMNS,
    PAYMENT_METHOD_SYNONYMS,
    PHONE_SYNONYMS,
    POINT_OF_SALE_CODE_SYNONYMS,
    POINT_OF_SALE_SYNONYMS,
    PROMOTION_SYNONYMS,
    TIMESTAMP_SYNONYMS,
    TRANSACTION_CODE_FRAGMENTS,
    TRANSACTION_CODE_SYNONYMS,
    MappingConfig,
)
from ..core.normalizers import (
    cell_text,
    find_key,
    guess_transaction_code,
    normalize,
    parse_amount,
    parse_timestamp,
    sanitize_transaction_code,
)

logger = logging.getLogger(__name__)

DROP_CODE_EQUALS_POS = "code_equals_point_of_sale"
DROP_AMOUNT_BELOW_FLOOR = "amount_below_floor"

CONFIDENCE_HIGH = "high"
CONFIDENCE_GUESSED = "guessed"
CONFIDENCE_PLACEHOLDER = "placeholder"

DROPPED_COLUMNS = [
    "source_file",
    "raw_row_index",
    "reason",
    "transaction_code",
    "point_of_sale_name",
    "amount",
]

_NUMERIC_TEXT_RE = re.compile(r"^[\d\s.,₫]+(vn[dđ])?$", re.IGNORECASE)
_CODE_EXCLUDED_NORMS = tuple(normalize(h) for h in CODE_EXCLUDED_HEADERS)
_PHONE_NORMS = tuple(normalize(h) for h in PHONE_SYNONYMS)


@dataclass
class MappingResult:
    """Output of mapping one file: accepted transactions and dropped rows."""

    transactions: pd.DataFrame
    dropped: pd.DataFrame


# --- Helpers -------------------------------------------------------------------------


def _without(row: Mapping[str, Any], keys: Iterable[str | None]) -> dict[str, Any]:
    excluded = {k for k in keys if k is not None}
    return {k: v for k, v in row.items() if k not in excluded}


def _text_or_none(row: Mapping[str, Any], key: str | None) -> str | None:
    if key is None:
        return None
    return cell_text(row[key]) or None


def _value_of(row: Mapping[str, Any], synonyms: Iterable[str]) -> Any:
    key = find_key(row, synonyms)
    return None if key is None else row[key]


def _same_as_pos(code: str, pos: str | None) -> bool:
    if not pos:
        return False
    return code == pos or normalize(code) == normalize(pos)


def _is_phone_header(key: str) -> bool:
    norm = normalize(key)
    return any(p in norm for p in _PHONE_NORMS)


def _is_code_excluded_header(key: str) -> bool:
    norm = normalize(key)
    return any(h in norm for h in _CODE_EXCLUDED_NORMS)


# --- Code resolution -----------------------------------------------------------------


def _code_by_synonym(pool: Mapping[str, Any]) -> tuple[str | None, str | None]:
    # date/amount headers can contain words like "transaction"
    candidates = {
        k: v
        for k, v in pool.items()
        if not re.search(DATE_HEADER_PATTERN, normalize(k))
        and not re.search(AMOUNT_HEADER_PATTERN, normalize(k))
    }
    key = find_key(candidates, TRANSACTION_CODE_SYNONYMS + TRANSACTION_CODE_FRAGMENTS)
    if key is None:
        return None, None
    return key, cell_text(candidates[key]) or None


def _code_by_numeric_pattern(
    pool: Mapping[str, Any], pos: str | None, min_digits: int
) -> str | None:
    pattern = re.compile(rf"^\d{{{min_digits},}}$")
    best: str | None = None
    for key, value in pool.items():
        if re.search(GUESS_EXCLUDED_HEADER_PATTERN, normalize(key)) or _is_phone_header(key):
            continue
        text = cell_text(value)
        if not pattern.match(text) or _same_as_pos(text, pos):
            continue
        if best is None or len(text) > len(best):
            best = text
    return best


def _code_by_guess(pool: Mapping[str, Any], pos: str | None, min_length: int) -> str | None:
    candidates = {k: v for k, v in pool.items() if not _is_phone_header(k)}
    guess = guess_transaction_code(
        candidates, exclude_values=[pos] if pos else [], min_length=min_length
    )
    # free text (names, addresses) is never a settlement code
    if guess is None or re.search(r"\s", guess) or _same_as_pos(guess, pos):
        return None
    return guess


def _resolve_code(
    pool: Mapping[str, Any], pos: str | None, config: MappingConfig
) -> tuple[str | None, str | None, str | None]:
    """Return (code, confidence, source header) or (None, None, None)."""
    key, code = _code_by_synonym(pool)
    if code:
        return code, CONFIDENCE_HIGH, key

    code = _code_by_numeric_pattern(pool, pos, config.long_numeric_code_length)
    if code:
        return code, CONFIDENCE_GUESSED, None

    code = _code_by_guess(pool, pos, config.min_code_length)
    if code:
        return code, CONFIDENCE_GUESSED, None
    return None, None, None


# --- Amount resolution ---------------------------------------------------------------


def _numeric_cell(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, Real):
        return parse_amount(value)
    text = cell_text(value)
    if text and _NUMERIC_TEXT_RE.match(text):
        return parse_amount(text)
    return None


def _scan_amount(
    pool: Mapping[str, Any], config: MappingConfig
) -> float | None:
    """
    Find the amount among the numeric cells of a row.

    1) values in `preferred_range`: highest score wins, where
       score = value in millions + 10 for an amount-like header + 1 when the
       value is not a round thousand;
    2) else the largest value in `wide_range`;
    3) else the first candidate in `scan_range`.
    """
    low, high = config.scan_range
    candidates: list[tuple[str, float]] = []
    for key, value in pool.items():
        number = _numeric_cell(value)
        if number is not None and low <= number < high:
            candidates.append((key, number))
    if not candidates:
        return None

    p_low, p_high = config.preferred_range
    best: float | None = None
    best_score = float("-inf")
    for key, number in candidates:
        if not p_low <= number <= p_high:
            continue
        score = number / 1_000_000
        if re.search(AMOUNT_HEADER_PATTERN, normalize(key)):
            score += 10
        if number % 1000 != 0:
            score += 1
        if score > best_score:
            best, best_score = number, score
    if best is not None:
        return best

    w_low, w_high = config.wide_range
    wide = [number for _, number in candidates if w_low <= number <= w_high]
    if wide:
        return max(wide)
    return candidates[0][1]


# --- Row mapping ---------------------------------------------------------------------


def map_row(
    row: Mapping[str, Any],
    source_file: str,
    row_index: int,
    upload_batch_id: str,
    ingested_at: pd.Timestamp,
    config: MappingConfig = MAPPING_CONFIG,
) -> tuple[dict[str, Any] | None, str | None]:
    """
    Map one raw row.

    Returns:
        (transaction, None) when accepted, (None, drop_reason) otherwise.
    """
    # 1) Point of sale (code column excluded from the name lookup)
    pos_code_key = find_key(row, POINT_OF_SALE_CODE_SYNONYMS, reverse=False)
    pos_key = find_key(_without(row, [pos_code_key]), POINT_OF_SALE_SYNONYMS)
    pos = _text_or_none(row, pos_key)

    # 2) Settlement code
    pool = _without(row, [pos_key, pos_code_key])
    code, confidence, code_key = _resolve_code(pool, pos, config)
    if code is None:
        code = f"{config.placeholder_prefix}{source_file}_{row_index}"
        confidence = CONFIDENCE_PLACEHOLDER
        logger.warning("%s row %s: no settlement code found, using %s", source_file, row_index, code)

    # 3) Code collided with POS: one re-resolution on the non-POS columns
    if _same_as_pos(code, pos):
        restricted = {
            k: v
            for k, v in pool.items()
            if not _is_code_excluded_header(k) and not _same_as_pos(cell_text(v), pos)
        }
        code, confidence, code_key = _resolve_code(restricted, pos, config)
        if code is None or _same_as_pos(code, pos):
            return None, DROP_CODE_EQUALS_POS

    # 4) Amount
    before_key = find_key(row, AMOUNT_BEFORE_DISCOUNT_SYNONYMS, reverse=False)
    amount_pool = _without(row, [before_key, code_key, pos_key, pos_code_key])
    amount_key = find_key(amount_pool, AMOUNT_SYNONYMS)
    amount = parse_amount(row[amount_key]) if amount_key is not None else 0.0
    if amount < config.min_plausible_amount:
        invoice_key = find_key(row, INVOICE_SYNONYMS)
        promo_key = find_key(row, PROMOTION_SYNONYMS)
        scan_pool = {
            k: v
            for k, v in _without(
                row, [code_key, pos_key, pos_code_key, invoice_key, promo_key, before_key]
            ).items()
            if not _is_phone_header(k)
            and not re.search(DATE_HEADER_PATTERN, normalize(k))
            and not re.search(CODE_HEADER_PATTERN, normalize(k))
            and cell_text(v) != code
        }
        scanned = _scan_amount(scan_pool, config)
        if scanned is not None:
            amount = scanned
        elif before_key is not None:
            amount = parse_amount(row[before_key])

    # 5) Stake floor
    if amount < config.min_stake:
        return None, DROP_AMOUNT_BELOW_FLOOR

    # 6) Secondary fields
    amount_before_discount = parse_amount(row[before_key]) if before_key is not None else 0.0
    file_stem = Path(source_file).stem
    transaction = {
        "id": sanitize_transaction_code(f"{upload_batch_id}-{file_stem}-{row_index}"),
        "transaction_code": code,
        "amount": amount,
        "amount_before_discount": amount_before_discount or None,
        "point_of_sale_name": pos,
        "point_of_sale_code": _text_or_none(row, pos_code_key),
        "branch_name": _text_or_none(row, find_key(row, BRANCH_SYNONYMS)),
        "invoice_number": _text_or_none(row, find_key(row, INVOICE_SYNONYMS)),
        "phone_number": _text_or_none(row, find_key(row, PHONE_SYNONYMS)),
        "promotion_code": _text_or_none(row, find_key(row, PROMOTION_SYNONYMS)),
        "payment_method": _text_or_none(row, find_key(row, PAYMENT_METHOD_SYNONYMS)),
        # 7) Timestamp
        "transaction_date": parse_timestamp(
            _value_of(row, TIMESTAMP_SYNONYMS),
            default=ingested_at,
            source_timezone=config.source_timezone,
        ),
        "upload_batch_id": upload_batch_id,
        "source_file": source_file,
        "raw_row_index": row_index,
        "code_confidence": confidence,
        "created_at": ingested_at,
    }
    return transaction, None


def map_transactions(
    rows: Iterable[Mapping[str, Any]],
    source_file: str,
    upload_batch_id: str,
    config: MappingConfig = MAPPING_CONFIG,
    ingested_at: pd.Timestamp | None = None,
) -> MappingResult:
    """
    Map every row of one file.

    Args:
        rows:
            Row dicts from `load_data.read_workbook_rows`, in file order.
        source_file:
            File name, used for placeholders, ids and drop reports.
        upload_batch_id:
            Upload batch that owns the resulting transactions.
        config:
            Mapping thresholds.
        ingested_at:
            Default timestamp for rows without a parsable date (now, UTC).

    Returns:
        MappingResult with canonical transactions (MERCHANT_CORE_COLUMNS) and
        one row per dropped input row (DROPPED_COLUMNS).
    """
    if ingested_at is None:
        ingested_at = pd.Timestamp.now(tz="UTC")

    accepted: list[dict[str, Any]] = []
    dropped: list[dict[str, Any]] = []
    for row_index, row in enumerate(rows):
        transaction, reason = map_row(
            row, source_file, row_index, upload_batch_id, ingested_at, config
        )
        if transaction is not None:
            accepted.append(transaction)
            continue
        logger.info("%s row %s dropped: %s", source_file, row_index, reason)
        dropped.append(
            {
                "source_file": source_file,
                "raw_row_index": row_index,
                "reason": reason,
                "transaction_code": _text_or_none(row, find_key(row, TRANSACTION_CODE_SYNONYMS)),
                "point_of_sale_name": _text_or_none(row, find_key(row, POINT_OF_SALE_SYNONYMS)),
                "amount": parse_amount(_value_of(row, AMOUNT_SYNONYMS)),
            }
        )

    transactions = pd.DataFrame(accepted, columns=MERCHANT_CORE_COLUMNS)
    dropped_df = pd.DataFrame(dropped, columns=DROPPED_COLUMNS)

    if len(dropped_df) > 0:
        counts = dropped_df["reason"].value_counts().to_dict()
        warnings.warn(
            f"{source_file}: dropped {len(dropped_df)} rows during mapping {counts}.",
            stacklevel=2,
        )
    placeholder_count = int(transactions["code_confidence"].eq(CONFIDENCE_PLACEHOLDER).sum())
    if placeholder_count > 0:
        warnings.warn(
            f"{source_file}: {placeholder_count} rows have placeholder settlement codes.",
            stacklevel=2,
        )
    return MappingResult(transactions=transactions, dropped=dropped_df)
