# Docstring for payrecon/core/normalizers module
"""
normalizers.py

Field normalizer: pure helpers shared by ingestion, mapping and matching.

Merchant exports arrive with Vietnamese or English headers, mixed
decimal/thousands conventions and codes stored as text, integers or floats.
Everything that compares header names, cell values or amounts goes through
this module so the heuristics stay consistent across the pipeline.

Design goals
------------
- Pure: no I/O, no module-level mutable state.
- Forgiving: parsing helpers return a neutral value (0.0, "", None, default
  timestamp) instead of raising, so one bad cell never aborts a file.
- Deterministic: candidate scoring breaks ties by first-seen order.

Public API
----------
- normalize(value) -> str
- normalize_series(series) -> pd.Series
- cell_text(value) -> str
- is_blank(value) -> bool
- parse_amount(value) -> float
- parse_amount_series(series) -> pd.Series
- amounts_equal(a, b, tolerance=0.01) -> bool
- find_key(row, synonyms, reverse=True) -> str | None
- find_value(row, synonyms, reverse=True) -> Any
- guess_transaction_code(row, exclude_values=()) -> str | None
- looks_like_datetime(text) -> bool
- parse_timestamp(value, default, source_timezone=...) -> pd.Timestamp
- sanitize_transaction_code(code) -> str
"""

from __future__ import annotations

import math
import re
import unicodedata
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from numbers import Integral, Real
from typing import Any, Iterable, Mapping

import pandas as pd

from .config import GUESS_EXCLUDED_HEADER_PATTERN, MAPPING_CONFIG


_CURRENCY_RE = re.compile(r"(vn[dđ]|[₫$€£¥\s])", re.IGNORECASE)
_DATE_DMY_RE = re.compile(r"^\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}")
_DATE_YMD_RE = re.compile(r"^\d{4}[/\-.]\d{1,2}[/\-.]\d{1,2}")
_TIME_RE = re.compile(r"\d{1,2}:\d{2}(:\d{2})?")
_FIREBASE_KEY_RE = re.compile(r"[.#$\[\]]")
_CENT = Decimal("0.01")

# Excel serial day numbers in this window are read as dates (1954..2119).
_EXCEL_SERIAL_RANGE = (20_000, 80_000)
_EXCEL_EPOCH = pd.Timestamp("1899-12-30")


def normalize(value: Any) -> str:
    """Lower-case, strip diacritics and trim. Missing values become ""."""
    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return ""
    text = str(value)
    # 'đ' is a distinct letter, not a combining mark, so NFD leaves it alone.
    text = text.replace("đ", "d").replace("Đ", "D")
    decomposed = unicodedata.normalize("NFD", text)
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    return stripped.lower().strip()


def normalize_series(series: pd.Series) -> pd.Series:
    """Vectorized `normalize` with pandas string dtype."""
    return series.map(normalize).astype("string")


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    try:
        if pd.isna(value):
            return True
    except (TypeError, ValueError):
        return False
    return isinstance(value, str) and value.strip() == ""


def cell_text(value: Any) -> str:
    """
    Render a cell as trimmed text.

    Integer-valued floats lose their ".0" so a settlement code read as a float
    ("1234567890.0") compares equal to the same code read as text.
    """
    if is_blank(value):
        return ""
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, Integral):
        return str(int(value))
    if isinstance(value, Real):
        number = float(value)
        if number.is_integer():
            return str(int(number))
        return repr(number)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value).strip()


# --- Amounts ------------------------------------------------------------------------


def _trailing_digits(text: str, position: int) -> str:
    return re.sub(r"[^0-9]", "", text[position + 1:])


def parse_amount(value: Any) -> float:
    """
    Parse an amount written in any common numeric locale.

    Returns a non-negative float, or 0.0 when the value cannot be parsed.
    Callers must read 0.0 as "unparseable", not as a free transaction.

    Rules for text input:
    - A separator that occurs more than once is a thousands separator.
    - With both "," and "." present, the rightmost one is the decimal point
      when exactly 2-3 digits follow it; otherwise it is a thousands separator.
    - A single separator is decimal with 2-3 trailing digits, else thousands.

    Examples:
        "10.010.000"    -> 10010000.0
        "10,010,000"    -> 10010000.0
        "1.234.567,89"  -> 1234567.89
        "1,234,567.89"  -> 1234567.89
        "1234,56"       -> 1234.56
        "20,027,000 ₫"  -> 20027000.0
        "abc"           -> 0.0
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, Real):
        number = float(value)
        if math.isnan(number) or math.isinf(number) or number < 0:
            return 0.0
        return number

    clean = _CURRENCY_RE.sub("", str(value).strip())
    if not clean:
        return 0.0

    comma_count = clean.count(",")
    dot_count = clean.count(".")

    if comma_count and dot_count:
        last_comma = clean.rfind(",")
        last_dot = clean.rfind(".")
        rightmost, other = (",", ".") if last_comma > last_dot else (".", ",")
        trailing = _trailing_digits(clean, max(last_comma, last_dot))
        if 2 <= len(trailing) <= 3:
            # "1.234.567,89": rightmost is the decimal point
            clean = clean.replace(other, "").replace(rightmost, ".")
        else:
            # rightmost is a thousands separator; the other one may be decimal
            clean = clean.replace(rightmost, "")
            if clean.count(other) == 1:
                clean = clean.replace(other, ".")
            else:
                clean = clean.replace(other, "")
    elif comma_count or dot_count:
        sep = "," if comma_count else "."
        if max(comma_count, dot_count) > 1:
            clean = clean.replace(sep, "")
        else:
            trailing = _trailing_digits(clean, clean.rfind(sep))
            if 2 <= len(trailing) <= 3:
                clean = clean.replace(sep, ".")
            else:
                clean = clean.replace(sep, "")

    clean = re.sub(r"[^0-9.\-]", "", clean)
    try:
        number = float(clean)
    except ValueError:
        return 0.0
    if math.isnan(number) or math.isinf(number) or number < 0:
        return 0.0
    return number


def parse_amount_series(series: pd.Series) -> pd.Series:
    """Vectorized `parse_amount` returning float64."""
    return series.map(parse_amount).astype("float64")


def _to_cents(value: float) -> Decimal:
    try:
        return Decimal(repr(float(value))).quantize(_CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError, TypeError):
        return Decimal("NaN")


def amounts_equal(a: float, b: float, tolerance: float = 0.01) -> bool:
    """Compare two amounts at cent resolution: |a - b| <= tolerance."""
    diff = abs(_to_cents(a) - _to_cents(b))
    if diff.is_nan():
        return False
    return diff <= _to_cents(tolerance)


# --- Header synonym lookup ----------------------------------------------------------


def find_key(
    row: Mapping[str, Any],
    synonyms: Iterable[str],
    *,
    reverse: bool = True,
) -> str | None:
    """
    Return the row header matching one of `synonyms`, or None.

    Pass 1 looks for an exact normalized match, walking synonyms in priority
    order. Pass 2 accepts a header containing the synonym, or (when `reverse`
    is set) a synonym containing the header. Headers shorter than 3
    characters are ignored in that direction to avoid matching everything.
    """
    headers = [(key, normalize(key)) for key in row.keys()]
    headers = [(key, norm) for key, norm in headers if norm]
    synonyms = [normalize(s) for s in synonyms]

    for synonym in synonyms:
        for key, norm in headers:
            if norm == synonym:
                return key

    for synonym in synonyms:
        for key, norm in headers:
            if synonym in norm or (reverse and len(norm) >= 3 and norm in synonym):
                return key
    return None


def find_value(row: Mapping[str, Any], synonyms: Iterable[str], *, reverse: bool = True) -> Any:
    """Value of the column found by `find_key`, or None."""
    key = find_key(row, synonyms, reverse=reverse)
    if key is None:
        return None
    return row[key]


# --- Transaction code guessing --------------------------------------------------------


def looks_like_datetime(text: str) -> bool:
    norm = normalize(text)
    return bool(
        _DATE_DMY_RE.search(norm) or _DATE_YMD_RE.search(norm) or _TIME_RE.search(norm)
    )


def _code_score(text: str) -> float:
    score = 0.0
    if re.search(r"[a-z]", text, re.IGNORECASE):
        score += 2
    if re.search(r"[-_]", text):
        score += 1
    score += min(len(text), 20) / 20
    return score


def guess_transaction_code(
    row: Mapping[str, Any],
    exclude_values: Iterable[str] = (),
    min_length: int = MAPPING_CONFIG.min_code_length,
) -> str | None:
    """
    Pick the most code-like cell of a row whose headers matched no synonym.

    Skips columns whose header looks like a date, amount or known metadata,
    values shaped like dates/times, values shorter than `min_length` (short
    pure numbers are usually serials), and any value in `exclude_values`.
    Remaining candidates score +2 for letters, +1 for "-"/"_" and up to +1
    for length; the highest score wins and ties keep the first-seen value.
    """
    excluded = {cell_text(v) for v in exclude_values if not is_blank(v)}
    best: str | None = None
    best_score = -1.0
    for key, value in row.items():
        if re.search(GUESS_EXCLUDED_HEADER_PATTERN, normalize(key)):
            continue
        text = cell_text(value)
        if not text or text in excluded:
            continue
        if len(text) < min_length:
            continue
        if looks_like_datetime(text):
            continue
        score = _code_score(text)
        if score > best_score:
            best, best_score = text, score
    return best


# --- Timestamps ---------------------------------------------------------------------


def _localize(ts: pd.Timestamp, source_timezone: str) -> pd.Timestamp:
    if ts.tzinfo is None:
        ts = ts.tz_localize(source_timezone)
    return ts.tz_convert("UTC")


def parse_timestamp(
    value: Any,
    default: pd.Timestamp,
    source_timezone: str = MAPPING_CONFIG.source_timezone,
) -> pd.Timestamp:
    """
    Convert an export timestamp to a UTC `pd.Timestamp`.

    Text is parsed day-first ("05/01/2024 10:30" is 5 January). Naive values
    are read in `source_timezone`. Excel serial day numbers are supported.
    Anything unparsable yields `default`.
    """
    if is_blank(value):
        return default
    try:
        if isinstance(value, Real) and not isinstance(value, bool):
            low, high = _EXCEL_SERIAL_RANGE
            if not low <= float(value) <= high:
                return default
            ts = _EXCEL_EPOCH + pd.to_timedelta(float(value), unit="D")
        elif isinstance(value, (datetime, date, pd.Timestamp)):
            ts = pd.Timestamp(value)
        else:
            ts = pd.to_datetime(str(value).strip(), dayfirst=True)
    except (ValueError, TypeError, OverflowError):
        return default
    if pd.isna(ts):
        return default
    return _localize(ts, source_timezone)


def sanitize_transaction_code(code: str) -> str:
    """Replace characters that are not allowed in a document key (. # $ [ ])."""
    return _FIREBASE_KEY_RE.sub("_", str(code))
