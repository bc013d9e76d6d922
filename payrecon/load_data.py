# Docstring for payrecon/load_data module
"""
load_data.py

Spreadsheet ingestor for merchant transaction exports.

Merchant exports are loosely structured: the data sheet is not always the
first one, a title or summary block often sits above the real header, and
some workbooks carry "Config"/"README" sheets. This module finds the data
sheet and header row heuristically and hands back plain row dicts. It does
no field interpretation; that is the Transaction Mapper's job
(`cleaning/map_transactions.py`).

Design goals
------------
- Separation of concerns: file I/O and sheet detection only.
- Repeatability: the same file always yields the same selection and rows.
- Stateless and restartable per file: no caching between calls.

Inputs
------
- .xlsx / .xls workbooks read with pandas `read_excel()` (openpyxl engine),
  all sheets, no header, dtype=object so codes keep their leading zeros.

Core behavior
-------------
1) Header scoring (`score_headers`)
   +5 when a header looks like a settlement code, +5 for an amount, +2 for a
   date, -2 when configuration-style headers are present.

2) Sheet selection (`select_data_sheet`)
   Every sheet whose name does not look like config/readme/info is scored
   with header rows 0, 1 and 2. The highest (sheet, header row) pair wins;
   ties keep the first pair seen. If nothing scores above the floor, the
   first sheet with header row 0 is used and a warning is logged.

3) Row extraction (`read_workbook_rows`)
   Rows below the header become dicts keyed by header text. Empty headers
   are named `_EMPTY_<i>`, repeated headers get a `_<n>` suffix, and rows
   with no value at all are dropped.

Public API
----------
- SheetSelection
- score_headers(headers) -> int
- select_data_sheet(sheets, config=INGEST_CONFIG) -> SheetSelection
- load_workbook_sheets(path) -> dict[str, pd.DataFrame]
- read_workbook_rows(path, config=INGEST_CONFIG) -> list[dict]
- load_merchant_excel(path, config=INGEST_CONFIG) -> pd.DataFrame

Errors
------
`WorkbookReadError` when the file is missing, unreadable or has no sheets.

Privacy / compliance note
-------------------------
Never commit real merchant exports to source control. Sample files must be
synthetic (see `core/generate_sample_data.py`).
"""

from __future__ import annotations

import logging
import re
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

import pandas as pd
from openpyxl.utils.exceptions import InvalidFileException

from .core.config import (
    AMOUNT_HEADER_PATTERN,
    CODE_HEADER_PATTERN,
    CONFIG_HEADER_PATTERN,
    DATE_HEADER_PATTERN,
    INGEST_CONFIG,
    IngestConfig,
)
from .core.errors import WorkbookReadError
from .core.normalizers import cell_text, is_blank, normalize

logger = logging.getLogger(__name__)

EMPTY_HEADER_PREFIX = "_EMPTY_"


@dataclass(frozen=True)
class SheetSelection:
    """Which sheet/header row of a workbook holds the transaction table."""

    sheet_name: str
    header_row: int
    score: int
    fallback: bool = False


def score_headers(headers: Iterable[Any]) -> int:
    """
    Score a candidate header row.

    Each signal counts once no matter how many headers carry it, so a row of
    five amount columns does not outrank a row with a code and an amount.
    """
    norms = [normalize(h) for h in headers if not is_blank(h)]

    def _any(pattern: str) -> bool:
        return any(re.search(pattern, h) for h in norms)

    score = 0
    if _any(CODE_HEADER_PATTERN):
        score += 5
    if _any(AMOUNT_HEADER_PATTERN):
        score += 5
    if _any(DATE_HEADER_PATTERN):
        score += 2
    if _any(CONFIG_HEADER_PATTERN):
        score -= 2
    return score


def select_data_sheet(
    sheets: Mapping[str, pd.DataFrame],
    config: IngestConfig = INGEST_CONFIG,
) -> SheetSelection:
    """
    Pick the best (sheet, header row) pair of a workbook.

    Args:
        sheets:
            Sheet name -> raw frame (read with header=None), in workbook order.
        config:
            Header-row candidates, score floor and skip-sheet pattern.

    Returns:
        The winning SheetSelection, or a fallback on the first sheet.
    """
    if not sheets:
        raise ValueError("Workbook has no sheets.")

    best: SheetSelection | None = None
    for sheet_name, frame in sheets.items():
        if re.search(config.skip_sheet_pattern, normalize(sheet_name)):
            logger.debug("Skipping sheet %r (config/readme sheet)", sheet_name)
            continue
        for header_row in config.header_row_candidates:
            if header_row >= len(frame):
                break
            score = score_headers(frame.iloc[header_row].tolist())
            # strict '>' so the first pair wins ties
            if best is None or score > best.score:
                best = SheetSelection(str(sheet_name), header_row, score)

    if best is None or best.score <= config.score_floor:
        first = str(next(iter(sheets)))
        logger.warning(
            "No sheet scored above %s; falling back to sheet %r, header row 0",
            config.score_floor,
            first,
        )
        return SheetSelection(first, 0, best.score if best else 0, fallback=True)

    logger.info(
        "Selected sheet %r, header row %s (score %s)",
        best.sheet_name,
        best.header_row,
        best.score,
    )
    return best


def _header_names(values: Iterable[Any]) -> list[str]:
    names: list[str] = []
    seen: dict[str, int] = {}
    for i, value in enumerate(values):
        name = cell_text(value) or f"{EMPTY_HEADER_PREFIX}{i}"
        if name in seen:
            seen[name] += 1
            name = f"{name}_{seen[name]}"
        else:
            seen[name] = 0
        names.append(name)
    return names


def rows_from_sheet(frame: pd.DataFrame, header_row: int) -> list[dict[str, Any]]:
    """Turn a raw (header=None) sheet into row dicts below `header_row`."""
    if header_row >= len(frame):
        return []
    headers = _header_names(frame.iloc[header_row].tolist())
    rows: list[dict[str, Any]] = []
    for values in frame.iloc[header_row + 1:].itertuples(index=False, name=None):
        cells = [None if is_blank(v) else v for v in values]
        if all(v is None for v in cells):
            continue
        rows.append(dict(zip(headers, cells)))
    return rows


def load_workbook_sheets(path: str | Path) -> dict[str, pd.DataFrame]:
    """Read every sheet of a workbook without headers."""
    path = Path(path)
    if not path.exists():
        raise WorkbookReadError(path, "file not found")
    try:
        sheets = pd.read_excel(path, sheet_name=None, header=None, dtype=object)
    except (ValueError, OSError, KeyError, zipfile.BadZipFile, InvalidFileException) as exc:
        raise WorkbookReadError(path, str(exc)) from exc
    if not sheets:
        raise WorkbookReadError(path, "workbook has no sheets")
    return sheets


def read_workbook_rows(
    path: str | Path,
    config: IngestConfig = INGEST_CONFIG,
) -> list[dict[str, Any]]:
    """
    Load a merchant workbook and return its data rows.

    Returns:
        Ordered list of dicts (header -> cell value, None for empty cells).
    """
    sheets = load_workbook_sheets(path)
    selection = select_data_sheet(sheets, config)
    rows = rows_from_sheet(sheets[selection.sheet_name], selection.header_row)
    logger.info("Read %s rows from %s [%s]", len(rows), Path(path).name, selection.sheet_name)
    return rows


def load_merchant_excel(
    path: str | Path,
    config: IngestConfig = INGEST_CONFIG,
) -> pd.DataFrame:
    """
    Raw rows of a merchant workbook as a DataFrame.

    Columns are the sheet's own headers plus `source_file` and
    `raw_row_index` (position among the data rows). Useful in notebooks;
    the pipeline itself works on `read_workbook_rows`.
    """
    rows = read_workbook_rows(path, config)
    df = pd.DataFrame(rows)
    df["source_file"] = Path(path).name
    df["raw_row_index"] = range(len(df))
    return df
