# Docstring for payrecon/cleaning/merge_dedup module
"""
merge_dedup.py

Merge & Dedup: combine the mapped rows of every file in an upload batch into
one set of unique ground-truth transactions.

Core behavior
-------------
1) Concatenate mapper output in file order (file order is input order, so
   "first occurrence" is well defined even when files are parsed in
   parallel).
2) Re-validate every row (`core.validators.code_issues`):
   - non-empty code, code != point of sale, code length >= min_code_length
     -> rows failing any of these are dropped;
   - placeholder codes are kept with a warning.
3) Deduplicate by `transaction_code`, keeping the first occurrence. Every
   duplicated code is reported as DuplicateInfo(code, count, files).

`ingest_merchant_files` runs the whole files -> unique transactions pipeline
(read, map, merge, dedup). A file that cannot be read is logged and listed in
`failed_files`; its siblings are still processed.

Public API
----------
- DuplicateInfo
- MergeResult
- merge_batch(frames, config=MAPPING_CONFIG) -> MergeResult
- ingest_merchant_files(paths, upload_batch_id, config=MAPPING_CONFIG,
  ingest_config=INGEST_CONFIG, max_workers=1, ingested_at=None) -> MergeResult
"""

from __future__ import annotations

import logging
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence

import pandas as pd

from ..core.config import (
    INGEST_CONFIG,
    MAPPING_CONFIG,
    MERCHANT_CORE_COLUMNS,
    IngestConfig,
    MappingConfig,
)
from ..core.errors import WorkbookReadError
from ..core.validators import BLOCKING_ISSUES, ISSUE_PLACEHOLDER, code_issues
from ..load_data import read_workbook_rows
from .map_transactions import DROPPED_COLUMNS, MappingResult, map_transactions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DuplicateInfo:
    """A settlement code seen more than once in a batch."""

    code: str
    count: int
    files: tuple[str, ...]


@dataclass
class MergeResult:
    """Unique transactions of a batch plus everything that was set aside."""

    transactions: pd.DataFrame
    duplicates: list[DuplicateInfo] = field(default_factory=list)
    dropped: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=DROPPED_COLUMNS))
    failed_files: list[str] = field(default_factory=list)


def _validation_reasons(df: pd.DataFrame, config: MappingConfig) -> pd.Series:
    """First blocking issue per row, or "" when the row is usable."""

    def _reason(code, pos) -> str:
        issues = code_issues(code, pos, config.min_code_length, config.placeholder_prefix)
        blocking = [i for i in issues if i in BLOCKING_ISSUES]
        return blocking[0] if blocking else ""

    reasons = [
        _reason(code, pos)
        for code, pos in zip(df["transaction_code"], df["point_of_sale_name"])
    ]
    return pd.Series(reasons, index=df.index, dtype="object")


def _duplicate_report(df: pd.DataFrame) -> list[DuplicateInfo]:
    counts = df["transaction_code"].value_counts(sort=False)
    repeated = counts[counts > 1]
    report: list[DuplicateInfo] = []
    # first-seen order of the duplicated codes
    for code in df.loc[df["transaction_code"].isin(repeated.index), "transaction_code"].unique():
        files = df.loc[df["transaction_code"] == code, "source_file"]
        report.append(
            DuplicateInfo(
                code=str(code),
                count=int(repeated[code]),
                files=tuple(dict.fromkeys(files.astype(str))),
            )
        )
    return report


def merge_batch(
    frames: Iterable[pd.DataFrame],
    config: MappingConfig = MAPPING_CONFIG,
) -> MergeResult:
    """
    Merge mapped frames (in file order), re-validate and dedup by code.

    Args:
        frames:
            `MappingResult.transactions` of each file, in input order.
        config:
            Code length and placeholder rules.

    Returns:
        MergeResult with unique transactions (first occurrence kept),
        the duplicate report and re-validation drops.
    """
    frames = [f for f in frames if f is not None and len(f) > 0]
    if not frames:
        return MergeResult(transactions=pd.DataFrame(columns=MERCHANT_CORE_COLUMNS))

    df = pd.concat(frames, ignore_index=True)

    # 1) Re-validate
    reasons = _validation_reasons(df, config)
    invalid_mask = reasons.ne("")
    dropped = pd.DataFrame(
        {
            "source_file": df.loc[invalid_mask, "source_file"],
            "raw_row_index": df.loc[invalid_mask, "raw_row_index"],
            "reason": reasons[invalid_mask],
            "transaction_code": df.loc[invalid_mask, "transaction_code"],
            "point_of_sale_name": df.loc[invalid_mask, "point_of_sale_name"],
            "amount": df.loc[invalid_mask, "amount"],
        },
        columns=DROPPED_COLUMNS,
    ).reset_index(drop=True)
    for row in dropped.itertuples(index=False):
        logger.info(
            "%s row %s rejected at merge: %s (code=%r)",
            row.source_file,
            row.raw_row_index,
            row.reason,
            row.transaction_code,
        )
    if len(dropped) > 0:
        warnings.warn(
            f"Merge: {len(dropped)} transactions failed re-validation.",
            stacklevel=2,
        )
    df = df.loc[~invalid_mask].reset_index(drop=True)

    placeholder_count = sum(
        ISSUE_PLACEHOLDER in code_issues(code, None, config.min_code_length, config.placeholder_prefix)
        for code in df["transaction_code"]
    )
    if placeholder_count > 0:
        warnings.warn(
            f"Merge: kept {placeholder_count} transactions with placeholder codes.",
            stacklevel=2,
        )

    # 2) Dedup, first occurrence wins
    duplicates = _duplicate_report(df)
    for dup in duplicates:
        logger.info(
            "Duplicate settlement code %s seen %s times in %s",
            dup.code,
            dup.count,
            ", ".join(dup.files),
        )
    unique = df.drop_duplicates(subset=["transaction_code"], keep="first").reset_index(drop=True)

    return MergeResult(transactions=unique, duplicates=duplicates, dropped=dropped)


def _map_file(
    path: Path,
    upload_batch_id: str,
    config: MappingConfig,
    ingest_config: IngestConfig,
    ingested_at: pd.Timestamp,
) -> MappingResult:
    rows = read_workbook_rows(path, ingest_config)
    return map_transactions(
        rows,
        source_file=path.name,
        upload_batch_id=upload_batch_id,
        config=config,
        ingested_at=ingested_at,
    )


def ingest_merchant_files(
    paths: Sequence[str | Path],
    upload_batch_id: str,
    config: MappingConfig = MAPPING_CONFIG,
    ingest_config: IngestConfig = INGEST_CONFIG,
    max_workers: int = 1,
    ingested_at: pd.Timestamp | None = None,
) -> MergeResult:
    """
    Read, map, merge and dedup a batch of merchant workbooks.

    Files are parsed sequentially unless `max_workers` > 1, in which case a
    thread pool parses them and results are collected in input order before
    merging, so the outcome never depends on completion order.
    """
    if ingested_at is None:
        ingested_at = pd.Timestamp.now(tz="UTC")
    paths = [Path(p) for p in paths]

    def _safe_map(path: Path) -> MappingResult | None:
        try:
            return _map_file(path, upload_batch_id, config, ingest_config, ingested_at)
        except WorkbookReadError as exc:
            logger.warning("Skipping %s: %s", path.name, exc.reason)
            return None

    if max_workers > 1 and len(paths) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            results = list(pool.map(_safe_map, paths))
    else:
        results = [_safe_map(p) for p in paths]

    failed = [p.name for p, r in zip(paths, results) if r is None]
    mapped = [r for r in results if r is not None]

    merged = merge_batch([r.transactions for r in mapped], config)
    mapping_drops = [r.dropped for r in mapped if len(r.dropped) > 0]
    all_drops = [d for d in mapping_drops + [merged.dropped] if len(d) > 0]
    if all_drops:
        merged.dropped = pd.concat(all_drops, ignore_index=True)
    merged.failed_files = failed

    logger.info(
        "Batch %s: %s files, %s unique transactions, %s duplicates, %s dropped rows, %s failed files",
        upload_batch_id,
        len(paths),
        len(merged.transactions),
        len(merged.duplicates),
        len(merged.dropped),
        len(failed),
    )
    return merged
