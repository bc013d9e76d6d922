import pandas as pd
import pytest

from payrecon.core.config import AMOUNT_SYNONYMS, TRANSACTION_CODE_SYNONYMS
from payrecon.core.normalizers import (
    amounts_equal,
    cell_text,
    find_key,
    find_value,
    guess_transaction_code,
    looks_like_datetime,
    normalize,
    parse_amount,
    parse_amount_series,
    parse_timestamp,
    sanitize_transaction_code,
)


DEFAULT_TS = pd.Timestamp("2024-02-01T00:00:00", tz="UTC")


def test_normalize_strips_diacritics_and_case() -> None:
    assert normalize("  Điểm Thu ") == "diem thu"
    assert normalize("Số tiền trước KM") == "so tien truoc km"
    assert normalize(None) == ""
    assert normalize(float("nan")) == ""


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("10.010.000", 10010000.0),
        ("10,010,000", 10010000.0),
        ("1.234.567,89", 1234567.89),
        ("1,234,567.89", 1234567.89),
        ("1234,56", 1234.56),
        ("20,027,000 ₫", 20027000.0),
        ("500000 VND", 500000.0),
        (1500, 1500.0),
        (2500.5, 2500.5),
        ("abc", 0.0),
        ("", 0.0),
        (None, 0.0),
        (-5, 0.0),
        ("-5000", 0.0),
        (float("nan"), 0.0),
    ],
)
def test_parse_amount_locales(raw, expected) -> None:
    assert parse_amount(raw) == pytest.approx(expected)


def test_parse_amount_series_is_float() -> None:
    result = parse_amount_series(pd.Series(["1.000.000", None, 250000]))

    assert result.dtype == "float64"
    assert result.tolist() == [1000000.0, 0.0, 250000.0]


def test_amounts_equal_uses_cents() -> None:
    assert amounts_equal(0.1 + 0.2, 0.3) is True
    assert amounts_equal(100.0, 100.01) is True
    assert amounts_equal(100.0, 100.02) is False
    assert amounts_equal(500000, 480000) is False
    assert amounts_equal(500000, 480000, tolerance=20000) is True


def test_cell_text_drops_float_suffix() -> None:
    assert cell_text(1234567890.0) == "1234567890"
    assert cell_text(12.5) == "12.5"
    assert cell_text("  FT001 ") == "FT001"
    assert cell_text(None) == ""
    assert cell_text(pd.NA) == ""


def test_find_key_exact_before_fuzzy() -> None:
    row = {"Tổng số tiền": 1, "Số tiền": 2}

    assert find_key(row, AMOUNT_SYNONYMS) == "Số tiền"
    assert find_value(row, AMOUNT_SYNONYMS) == 2


def test_find_key_reverse_direction() -> None:
    row = {"Tiền": 5}

    assert find_key(row, AMOUNT_SYNONYMS) == "Tiền"
    assert find_key(row, AMOUNT_SYNONYMS, reverse=False) is None


def test_find_key_ignores_short_headers_in_reverse() -> None:
    assert find_key({"ID": "x"}, TRANSACTION_CODE_SYNONYMS) is None


def test_guess_transaction_code_skips_excluded_columns() -> None:
    row = {
        "Ghi chú": "FT24015ABC12",
        "Số tiền": "500000",
        "Mã": "12345",
        "Ngày": "05/01/2024",
    }

    assert guess_transaction_code(row) == "FT24015ABC12"


def test_guess_transaction_code_excludes_values_and_datetimes() -> None:
    row = {"A": "POS-HANOI-01", "B": "2024-01-05 10:30", "C": "TXN_123456"}

    assert guess_transaction_code(row, exclude_values=["POS-HANOI-01"]) == "TXN_123456"


def test_guess_transaction_code_ties_keep_first() -> None:
    assert guess_transaction_code({"A": "ABCDEF1", "B": "GHIJKL2"}) == "ABCDEF1"
    assert guess_transaction_code({"A": "12345"}) is None


def test_looks_like_datetime() -> None:
    assert looks_like_datetime("05/01/2024") is True
    assert looks_like_datetime("2024-01-05") is True
    assert looks_like_datetime("10:30") is True
    assert looks_like_datetime("FT240105") is False


def test_parse_timestamp_day_first_in_source_timezone() -> None:
    ts = parse_timestamp("05/01/2024 10:30", default=DEFAULT_TS)

    # Asia/Ho_Chi_Minh is UTC+7
    assert ts == pd.Timestamp("2024-01-05T03:30:00", tz="UTC")


def test_parse_timestamp_excel_serial_and_aware_values() -> None:
    assert parse_timestamp(45296, default=DEFAULT_TS) == pd.Timestamp("2024-01-04T17:00:00", tz="UTC")
    aware = parse_timestamp("2024-01-05T10:30:00+00:00", default=DEFAULT_TS)
    assert aware == pd.Timestamp("2024-01-05T10:30:00", tz="UTC")


def test_parse_timestamp_falls_back_to_default() -> None:
    assert parse_timestamp(None, default=DEFAULT_TS) == DEFAULT_TS
    assert parse_timestamp("not a date", default=DEFAULT_TS) == DEFAULT_TS
    assert parse_timestamp(5, default=DEFAULT_TS) == DEFAULT_TS


def test_sanitize_transaction_code() -> None:
    assert sanitize_transaction_code("a.b#c$d[e]") == "a_b_c_d_e_"
    assert sanitize_transaction_code("FT-001") == "FT-001"
