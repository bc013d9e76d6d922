# Docstring for payrecon/core/config module
"""
config.py

Central configuration for the payment claim reconciliation engine.

This module defines the canonical column sets, header synonym lists, status
vocabularies and the tunable thresholds used across ingestion, matching and
session bookkeeping.

It is intentionally the single source of truth for:
- Column standardization (messy merchant export headers -> canonical names)
- Heuristic thresholds for amount/code detection in loosely structured sheets
- Matching strategy controls (amount tolerance, amount-before-discount rule)
- Session persistence controls (chunk size, lock owner)
- OCR collaborator settings (endpoint, retry policy)

Design goals
------------
- Explicit: configuration objects are passed into the components that need
  them. Nothing in this package reads a mutable module-level cache.
- Immutable: every config is a frozen dataclass; build a new instance (or use
  `dataclasses.replace`) to change a value.
- Conservative: defaults prefer dropping a suspicious row over ingesting a
  wrong settlement code.

Contents
--------
1) Status vocabularies
   - RECON_STATUS: ReconciliationRecord statuses
   - CLAIM_STATUS: Claim lifecycle statuses
   - ERROR_TYPE: fine-grained reason attached to non-matched records
   - SESSION_STATUS: ReconciliationSession lifecycle

2) Header synonym lists
   Vietnamese and English labels seen in merchant exports. Matching is done
   on normalized (lower-case, diacritic-free) text, so accents and case in
   these lists do not matter.

3) Canonical columns
   - MERCHANT_CORE_COLUMNS, CLAIM_CORE_COLUMNS, RECORD_COLUMNS

4) Dataclass configs
   - IngestConfig, MappingConfig, MatchingConfig, SessionConfig, OcrConfig

Usage
-----
    from payrecon.core.config import MATCHING_CONFIG, MatchingConfig

    cfg = MatchingConfig(prefer_amount_before_discount=False)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


# --- Base paths --------------------------------------------------------------------

# payrecon/core/config.py -> project root
BASE_DIR = Path(__file__).resolve().parents[2]

DATA_DIR = BASE_DIR / "data"
SAMPLE_DIR = DATA_DIR / "sample"


# --- Status vocabularies -----------------------------------------------------------


@dataclass(frozen=True)
class ReconStatusConfig:
    """Status labels written on ReconciliationRecord rows."""

    matched: str = "MATCHED"
    error_amount: str = "ERROR_AMOUNT"
    error_duplicate: str = "ERROR_DUPLICATE"
    missing_in_merchant: str = "MISSING_IN_MERCHANT"
    missing_in_agent: str = "MISSING_IN_AGENT"


RECON_STATUS = ReconStatusConfig()


@dataclass(frozen=True)
class ClaimStatusConfig:
    """Claim lifecycle labels.

    A reconciliation run only ever writes `matched` (terminal, settled) or
    `pending` (retryable, with an error message). `error` and `unmatched` are
    accepted on read for claims written by other tools.
    """

    pending: str = "PENDING"
    matched: str = "MATCHED"
    error: str = "ERROR"
    unmatched: str = "UNMATCHED"


CLAIM_STATUS = ClaimStatusConfig()


@dataclass(frozen=True)
class ErrorTypeConfig:
    wrong_amount: str = "WRONG_AMOUNT"
    wrong_point_of_sale: str = "WRONG_POINT_OF_SALE"
    mismatch: str = "MISMATCH"
    duplicate: str = "DUPLICATE"
    missing_merchant: str = "MISSING_MERCHANT"
    missing_agent: str = "MISSING_AGENT"


ERROR_TYPE = ErrorTypeConfig()


@dataclass(frozen=True)
class SessionStatusConfig:
    processing: str = "PROCESSING"
    completed: str = "COMPLETED"
    failed: str = "FAILED"
    cancelled: str = "CANCELLED"


SESSION_STATUS = SessionStatusConfig()


# --- Header synonym lists ----------------------------------------------------------

# Order matters: the first synonym that matches a header wins, so the most
# specific labels come first.

TRANSACTION_CODE_SYNONYMS = (
    "mã trừ tiền/mã chuẩn chi",
    "mã trừ tiền mã chuẩn chi",
    "mã trừ tiền",
    "mã chuẩn chi",
    "mã truy tiền",
    "mã giao dịch",
    "mã gd",
    "transaction code",
    "transaction id",
    "transaction_id",
    "transaction",
    "reference",
    "ref",
    "txn",
    "trace",
    "stan",
    "rrn",
)

# Header fragments that still identify a code column when no synonym matched.
TRANSACTION_CODE_FRAGMENTS = (
    "ma tru tien",
    "ma chuan chi",
    "ma truy tien",
)

AMOUNT_SYNONYMS = (
    "số tiền sau km",
    "số tiền",
    "số tiền giao dịch",
    "thành tiền",
    "tổng tiền",
    "amount",
    "amount vnd",
    "giá trị",
    "vnd",
    "money",
    "value",
    "total",
    "sum",
    "tổng",
)

AMOUNT_BEFORE_DISCOUNT_SYNONYMS = (
    "số tiền trước km",
    "số tiền trước khuyến mại",
    "amount before discount",
    "gross amount",
)

POINT_OF_SALE_SYNONYMS = (
    "điểm thu",
    "tên điểm thu",
    "điểm bán",
    "point of sale",
    "pos name",
    "collection point",
)

POINT_OF_SALE_CODE_SYNONYMS = (
    "mã điểm thu",
    "mã điểm bán",
    "point of sale code",
    "pos code",
    "collection point code",
)

BRANCH_SYNONYMS = ("chi nhánh", "tên chi nhánh", "branch", "branch name")

INVOICE_SYNONYMS = ("số hóa đơn", "hóa đơn", "invoice", "invoice number")

PHONE_SYNONYMS = ("số điện thoại", "điện thoại", "phone", "phone number")

PROMOTION_SYNONYMS = ("mã khuyến mại", "khuyến mại", "promotion", "promotion code")

PAYMENT_METHOD_SYNONYMS = (
    "phương thức thanh toán",
    "phương thức",
    "method",
    "payment",
)

TIMESTAMP_SYNONYMS = (
    "thời gian giao dịch",
    "thời gian",
    "ngày giao dịch",
    "ngày",
    "time",
    "date",
    "datetime",
    "created",
)

# Columns never considered when re-resolving a code that collided with the
# point of sale value.
CODE_EXCLUDED_HEADERS = (
    "điểm thu",
    "tên điểm thu",
    "point of sale",
    "pos name",
    "chi nhánh",
    "branch",
    "số tiền",
    "amount",
    "mã điểm thu",
    "số hóa đơn",
    "invoice",
    "mã khuyến mại",
    "promotion",
    "phone",
)

# Regex fragments (applied to normalized text) used by header scoring and
# code guessing.
CODE_HEADER_PATTERN = (
    r"ma\s*(gd|giao\s*dich|chuan\s*chi|tru\s*tien|truy\s*tien|bill|reference|txn|trace|stan|rrn|transaction)"
    r"|transaction|reference|\btxn\b|\brrn\b"
)
AMOUNT_HEADER_PATTERN = (
    r"so\s*tien|amount|gia\s*tri|vnd|money|value|total|tong|thanh\s*tien|truoc\s*km|sau\s*km"
)
DATE_HEADER_PATTERN = r"ngay|date|time|thoi\s*gian|datetime|created"
CONFIG_HEADER_PATTERN = r"trang\s*thai|kenh\s*thanh\s*toan|loai\s*the|config|cau\s*hinh"
SKIP_SHEET_PATTERN = r"^(config|cau\s*hinh|readme|thong\s*tin)"
GUESS_EXCLUDED_HEADER_PATTERN = (
    r"thoi\s*gian|ngay|date|time|kenh|trang\s*thai|phuong\s*thuc|loai|nguon|so\s*tien"
    r"|amount|gia\s*tri|value|tong|vnd|chi\s*nhanh|diem\s*thu|stt|hoa\s*don|ngan\s*hang"
    r"|ma\s*diem|ten\s*khach|yc\s*tra\s*gop|ky\s*han"
)


# --- Canonical columns -------------------------------------------------------------

MERCHANT_CORE_COLUMNS = [
    "id",
    "transaction_code",
    "amount",
    "amount_before_discount",
    "point_of_sale_name",
    "point_of_sale_code",
    "branch_name",
    "invoice_number",
    "phone_number",
    "promotion_code",
    "payment_method",
    "transaction_date",
    "upload_batch_id",
    "source_file",
    "raw_row_index",
    "code_confidence",
    "created_at",
]

CLAIM_CORE_COLUMNS = [
    "id",
    "transaction_code",
    "amount",
    "point_of_sale_name",
    "timestamp",
    "status",
    "error_message",
    "agent_id",
    "user_id",
    "invoice_number",
    "payment_method",
]

RECORD_COLUMNS = [
    "id",
    "session_id",
    "transaction_code",
    "claim_id",
    "merchant_transaction_id",
    "status",
    "error_type",
    "difference",
    "error_detail",
    "agent_id",
    "point_of_sale_name",
    "claim_amount",
    "merchant_amount",
    "source_file",
    "processed_at",
]

# Store collection names.
MERCHANT_COLLECTION = "merchant_transactions"
CLAIM_COLLECTION = "claims"
RECORD_COLLECTION = "reconciliation_records"
SESSION_COLLECTION = "sessions"
COLLECTIONS = (
    MERCHANT_COLLECTION,
    CLAIM_COLLECTION,
    RECORD_COLLECTION,
    SESSION_COLLECTION,
)


# --- Ingestion configuration -------------------------------------------------------


@dataclass(frozen=True)
class IngestConfig:
    """
    Controls for picking the data sheet/header row of a merchant workbook.

    header_row_candidates:
        Zero-based row offsets tried as the header row on every sheet.
    score_floor:
        A (sheet, header row) pair must score strictly above this value to be
        selected; otherwise the first sheet is used unscored.
    """

    header_row_candidates: tuple[int, ...] = (0, 1, 2)
    score_floor: int = 0
    skip_sheet_pattern: str = SKIP_SHEET_PATTERN


INGEST_CONFIG = IngestConfig()


@dataclass(frozen=True)
class MappingConfig:
    """
    Thresholds for extracting canonical fields from a raw merchant row.

    min_plausible_amount:
        A synonym-matched amount below this is treated as "not found" and the
        numeric column scan runs instead.
    min_stake:
        Rows whose final amount is below this floor are dropped.
    scan_range / preferred_range / wide_range:
        Value windows for the numeric column scan (inclusive lower bound).
    min_code_length:
        Minimum length of a settlement code accepted by Merge & Dedup.
    long_numeric_code_length:
        Minimum digit count for the numeric-pattern code scan.
    """

    min_plausible_amount: float = 1_000
    min_stake: float = 1_000
    scan_range: tuple[float, float] = (1_000, 10_000_000_000)
    preferred_range: tuple[float, float] = (100_000, 100_000_000)
    wide_range: tuple[float, float] = (10_000, 100_000_000)
    min_code_length: int = 6
    long_numeric_code_length: int = 10
    placeholder_prefix: str = "UNK_"
    source_timezone: str = "Asia/Ho_Chi_Minh"   # applied to naive export timestamps


MAPPING_CONFIG = MappingConfig()


# --- Matching configuration --------------------------------------------------------


@dataclass(frozen=True)
class MatchingConfig:
    """
    Configuration for claim vs merchant matching.

    amount_tolerance:
        Maximum absolute difference (currency units) for two amounts to be
        equal. Compared at cent resolution, not float adjacency.
    prefer_amount_before_discount:
        When True and a merchant row carries `amount_before_discount`, that
        value is compared with the claim amount instead of `amount`.
    """

    amount_tolerance: float = 0.01
    prefer_amount_before_discount: bool = True


MATCHING_CONFIG = MatchingConfig()


# --- Session configuration ---------------------------------------------------------


@dataclass(frozen=True)
class SessionConfig:
    """
    batch_size:
        Number of claims whose records and status updates are committed in one
        atomic store batch.
    lock_owner:
        Prefix of the owner label stored with run locks. Each run appends a
        unique suffix, so only the run that took a lock can release it.
    """

    batch_size: int = 500
    lock_owner: str = "payrecon"


SESSION_CONFIG = SessionConfig()


# --- OCR collaborator configuration ------------------------------------------------


@dataclass(frozen=True)
class OcrConfig:
    """
    Settings for the OCR collaborator client.

    Retries apply only to rate limiting, overload and network-class errors:
    `max_attempts` calls in total, sleeping base_delay * 2**attempt after
    failed attempt number `attempt` (1s, 2s, 4s, ...; with three attempts
    the 1s and 2s waits are used).
    """

    url: str | None = None
    api_key: str | None = None
    timeout_seconds: float = 30.0
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    retry_status_codes: tuple[int, ...] = (429, 503)

    @classmethod
    def from_env(cls, dotenv_path: str | None = None) -> "OcrConfig":
        """Build a config from PAYRECON_OCR_* environment variables (.env aware)."""
        load_dotenv(dotenv_path)
        timeout = os.getenv("PAYRECON_OCR_TIMEOUT")
        return cls(
            url=os.getenv("PAYRECON_OCR_URL"),
            api_key=os.getenv("PAYRECON_OCR_API_KEY"),
            timeout_seconds=float(timeout) if timeout else cls.timeout_seconds,
        )


# --- Logging -----------------------------------------------------------------------

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: int | str = logging.INFO) -> None:
    """Basic logging setup for scripts and notebooks."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
