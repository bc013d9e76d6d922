import pandas as pd

from payrecon.core.validators import (
    code_issues,
    is_placeholder_code_series,
    validate_amount,
    validate_amount_series,
    validate_claim_status,
    validate_transaction_code,
    validate_transaction_code_series,
)


def test_code_issues_rules() -> None:
    assert code_issues("") == ["missing_code"]
    assert code_issues(None) == ["missing_code"]
    assert code_issues("FT24010500123") == []
    assert code_issues("POS01", "pos01") == ["code_equals_point_of_sale", "code_too_short"]
    assert code_issues("Điểm Thu 01", "diem thu 01") == ["code_equals_point_of_sale"]
    assert code_issues("UNK_merchant.xlsx_3") == ["placeholder_code"]


def test_validate_transaction_code_series() -> None:
    codes = pd.Series(["1234567890", "123", None, "PVD 01"])
    pos = pd.Series(["PVD 01", "PVD 01", "PVD 01", "PVD 01"])

    result = validate_transaction_code_series(codes, pos)

    assert result.tolist() == [True, False, False, False]
    assert validate_transaction_code("UNK_a.xlsx_0") is True


def test_is_placeholder_code_series() -> None:
    codes = pd.Series(["UNK_a.xlsx_0", "FT0001", None])

    assert is_placeholder_code_series(codes).tolist() == [True, False, False]


def test_validate_amount_rules() -> None:
    assert validate_amount(1000) is True
    assert validate_amount(999.99) is False
    assert validate_amount("abc") is False
    assert validate_amount(None) is False

    result = validate_amount_series(pd.Series([1000, 999, "x", None]))
    assert result.tolist() == [True, False, False, False]


def test_validate_claim_status() -> None:
    assert validate_claim_status("matched") is True
    assert validate_claim_status("PENDING") is True
    assert validate_claim_status("paid") is False
