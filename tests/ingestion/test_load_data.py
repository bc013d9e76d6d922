from __future__ import annotations

from pathlib import Path

import pandas as pd
import pytest

from payrecon.core.errors import WorkbookReadError
from payrecon.load_data import (
    load_merchant_excel,
    read_workbook_rows,
    rows_from_sheet,
    score_headers,
    select_data_sheet,
)


def _write_workbook(path: Path, sheets: dict[str, list[list[object]]]) -> Path:
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        for name, grid in sheets.items():
            pd.DataFrame(grid).to_excel(writer, sheet_name=name, index=False, header=False)
    return path


def test_score_headers_counts_each_signal_once() -> None:
    assert score_headers(["Mã giao dịch", "Số tiền", "Ngày"]) == 12
    assert score_headers(["Số tiền", "Tổng tiền"]) == 5
    assert score_headers(["Cấu hình", "Giá trị"]) == 3
    assert score_headers([None, "STT"]) == 0


def test_select_data_sheet_skips_config_and_finds_header_row() -> None:
    sheets = {
        "Config": pd.DataFrame([["Kênh thanh toán", "VNPay"]], dtype=object),
        "Summary": pd.DataFrame(
            [
                ["Báo cáo", None, None],
                ["Mã giao dịch", "Số tiền", "Ngày"],
                ["ABC123456", 500000, "05/01/2024"],
            ],
            dtype=object,
        ),
    }

    selection = select_data_sheet(sheets)

    assert selection.sheet_name == "Summary"
    assert selection.header_row == 1
    assert selection.score == 12
    assert selection.fallback is False


def test_select_data_sheet_falls_back_to_first_sheet() -> None:
    sheets = {"Data": pd.DataFrame([["foo", "bar"], ["1", "2"]], dtype=object)}

    selection = select_data_sheet(sheets)

    assert selection.sheet_name == "Data"
    assert selection.header_row == 0
    assert selection.fallback is True


def test_select_data_sheet_rejects_empty_workbook() -> None:
    with pytest.raises(ValueError):
        select_data_sheet({})


def test_rows_from_sheet_names_empty_and_repeated_headers() -> None:
    frame = pd.DataFrame(
        [
            ["Mã", None, "Mã"],
            ["A", 1, "B"],
            [None, None, None],
        ],
        dtype=object,
    )

    rows = rows_from_sheet(frame, header_row=0)

    assert rows == [{"Mã": "A", "_EMPTY_1": 1, "Mã_1": "B"}]


def test_read_workbook_rows_uses_detected_sheet(tmp_path: Path) -> None:
    path = _write_workbook(
        tmp_path / "merchant.xlsx",
        {
            "README": [["Hướng dẫn"], ["Không sửa sheet này"]],
            "Giao dịch": [
                ["BÁO CÁO GIAO DỊCH", None, None],
                ["Mã giao dịch", "Số tiền", "Điểm thu"],
                ["FT240105001", 500000, "PVD 01"],
                ["FT240105002", "1.250.000", "PVD 02"],
            ],
        },
    )

    rows = read_workbook_rows(path)

    assert len(rows) == 2
    assert rows[0]["Mã giao dịch"] == "FT240105001"
    assert rows[1]["Số tiền"] == "1.250.000"
    assert rows[1]["Điểm thu"] == "PVD 02"


def test_load_merchant_excel_adds_source_columns(tmp_path: Path) -> None:
    path = _write_workbook(
        tmp_path / "merchant.xlsx",
        {"Sheet1": [["Mã giao dịch", "Số tiền"], ["FT240105001", 500000]]},
    )

    df = load_merchant_excel(path)

    assert df["source_file"].tolist() == ["merchant.xlsx"]
    assert df["raw_row_index"].tolist() == [0]


def test_missing_or_corrupt_workbook_raises(tmp_path: Path) -> None:
    with pytest.raises(WorkbookReadError) as excinfo:
        read_workbook_rows(tmp_path / "missing.xlsx")
    assert excinfo.value.reason == "file not found"

    corrupt = tmp_path / "corrupt.xlsx"
    corrupt.write_text("not a workbook", encoding="utf-8")
    with pytest.raises(WorkbookReadError):
        read_workbook_rows(corrupt)
