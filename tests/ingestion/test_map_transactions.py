import pandas as pd
import pytest

from payrecon.cleaning.map_transactions import (
    CONFIDENCE_GUESSED,
    CONFIDENCE_HIGH,
    CONFIDENCE_PLACEHOLDER,
    DROP_AMOUNT_BELOW_FLOOR,
    DROP_CODE_EQUALS_POS,
    map_row,
    map_transactions,
)


INGESTED_AT = pd.Timestamp("2024-02-01T00:00:00", tz="UTC")


def _map(row: dict) -> tuple:
    return map_row(row, "merchant.xlsx", 0, "b1", INGESTED_AT)


def test_map_row_resolves_fields_from_synonyms() -> None:
    row = {
        "Mã giao dịch": "FT240105001",
        "Số tiền": "1.500.000",
        "Điểm thu": "PVD 01",
        "Thời gian": "05/01/2024 10:30",
    }

    transaction, reason = _map(row)

    assert reason is None
    assert transaction["id"] == "b1-merchant-0"
    assert transaction["transaction_code"] == "FT240105001"
    assert transaction["code_confidence"] == CONFIDENCE_HIGH
    assert transaction["amount"] == 1500000.0
    assert transaction["point_of_sale_name"] == "PVD 01"
    assert transaction["transaction_date"] == pd.Timestamp("2024-01-05T03:30:00", tz="UTC")
    assert transaction["created_at"] == INGESTED_AT


def test_map_row_keeps_amount_before_discount() -> None:
    row = {
        "Mã trừ tiền/Mã chuẩn chi": "97041234567890",
        "Số tiền trước KM": 520000,
        "Số tiền sau KM": 500000,
        "Điểm thu": "PVD 01",
    }

    transaction, _ = _map(row)

    assert transaction["amount"] == 500000.0
    assert transaction["amount_before_discount"] == 520000.0
    assert transaction["transaction_date"] == INGESTED_AT


def test_map_row_drops_code_equal_to_point_of_sale() -> None:
    row = {"Mã giao dịch": "PVD 01", "Điểm thu": "PVD 01", "Số tiền": 500000}

    transaction, reason = _map(row)

    assert transaction is None
    assert reason == DROP_CODE_EQUALS_POS


def test_map_row_re_resolves_code_colliding_with_point_of_sale() -> None:
    row = {
        "Mã giao dịch": "PVD 01",
        "Điểm thu": "PVD 01",
        "Số tiền": 500000,
        "Ghi chú": "9704123456789012",
    }

    transaction, reason = _map(row)

    assert reason is None
    assert transaction["transaction_code"] == "9704123456789012"
    assert transaction["code_confidence"] == CONFIDENCE_GUESSED
    assert transaction["amount"] == 500000.0


def test_map_row_scans_numeric_cells_for_amount() -> None:
    row = {
        "Mã giao dịch": "FT240105002",
        "Điểm thu": "PVD 01",
        "Cột 5": "2.350.000",
        "STT": 3,
    }

    transaction, _ = _map(row)

    assert transaction["amount"] == 2350000.0


def test_map_row_drops_amount_below_floor() -> None:
    row = {"Mã giao dịch": "FT240105003", "Số tiền": 500, "Điểm thu": "PVD 01"}

    transaction, reason = _map(row)

    assert transaction is None
    assert reason == DROP_AMOUNT_BELOW_FLOOR


def test_map_transactions_reports_drops_and_placeholders() -> None:
    rows = [
        {"Mã giao dịch": "FT240105001", "Số tiền": 500000, "Điểm thu": "PVD 01"},
        {"Điểm thu": "PVD 01", "Số tiền": 700000, "Ghi chú": "khách lẻ"},
        {"Mã giao dịch": "FT240105003", "Số tiền": 500, "Điểm thu": "PVD 01"},
    ]

    with pytest.warns(UserWarning, match="placeholder"):
        result = map_transactions(rows, "merchant.xlsx", "b1", ingested_at=INGESTED_AT)

    assert result.transactions["transaction_code"].tolist() == [
        "FT240105001",
        "UNK_merchant.xlsx_1",
    ]
    assert result.transactions["code_confidence"].tolist() == [
        CONFIDENCE_HIGH,
        CONFIDENCE_PLACEHOLDER,
    ]
    assert result.dropped["reason"].tolist() == [DROP_AMOUNT_BELOW_FLOOR]
    assert result.dropped["raw_row_index"].tolist() == [2]
    assert result.dropped["transaction_code"].tolist() == ["FT240105003"]
