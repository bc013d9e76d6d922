from __future__ import annotations

import pandas as pd
import pytest

from payrecon.cleaning.clean_claims import clean_claims
from payrecon.core.config import ERROR_TYPE, RECON_STATUS, MatchingConfig
from payrecon.engines.match_claims import (
    ClaimContext,
    classify_claim,
    count_claim_occurrences,
    reconcile_claims,
)


PROCESSED_AT = pd.Timestamp("2024-02-01T00:00:00", tz="UTC")


def _merchant(*rows: dict) -> pd.DataFrame:
    defaults = {"amount_before_discount": None, "point_of_sale_name": "PVD 01", "source_file": "m.xlsx"}
    return pd.DataFrame([{**defaults, **row} for row in rows])


def _claims(*rows: dict) -> pd.DataFrame:
    defaults = {"point_of_sale_name": "PVD 01", "agent_id": "a1", "status": "PENDING"}
    return clean_claims([{**defaults, **row} for row in rows], now=PROCESSED_AT)


def _reconcile(claims: pd.DataFrame, merchant: pd.DataFrame, **kwargs) -> pd.DataFrame:
    return reconcile_claims(claims, merchant, session_id="s1", processed_at=PROCESSED_AT, **kwargs)


def test_exact_claim_is_matched_with_zero_difference() -> None:
    merchant = _merchant({"id": "m1", "transaction_code": "FT001", "amount": 500000.0})
    claims = _claims({"id": "c1", "transaction_code": "FT001", "amount": "500,000.00"})

    records = _reconcile(claims, merchant)

    assert len(records) == 1
    record = records.iloc[0]
    assert record["id"] == "s1_c1"
    assert record["status"] == RECON_STATUS.matched
    assert record["merchant_transaction_id"] == "m1"
    assert record["difference"] == 0.0
    assert record["source_file"] == "m.xlsx"


def test_duplicate_ground_truth_surfaces_missing_in_agent() -> None:
    merchant = _merchant(
        {"id": "m1", "transaction_code": "FT001", "amount": 500000.0},
        {"id": "m2", "transaction_code": "FT001", "amount": 500000.0},
    )
    claims = _claims({"id": "c1", "transaction_code": "FT001", "amount": 500000})

    records = _reconcile(claims, merchant)

    assert records["status"].tolist() == [RECON_STATUS.matched, RECON_STATUS.missing_in_agent]
    assert records.loc[0, "merchant_transaction_id"] == "m1"
    assert records.loc[1, "id"] == "s1_missing_m2"
    assert records.loc[1, "error_type"] == ERROR_TYPE.missing_agent
    assert pd.isna(records.loc[1, "claim_id"])


def test_amount_mismatch_reports_signed_difference() -> None:
    merchant = _merchant({"id": "m1", "transaction_code": "FT001", "amount": 500000.0})
    claims = _claims({"id": "c1", "transaction_code": "FT001", "amount": 480000})

    records = _reconcile(claims, merchant)

    claim_record = records.iloc[0]
    assert claim_record["status"] == RECON_STATUS.error_amount
    assert claim_record["error_type"] == ERROR_TYPE.wrong_amount
    assert claim_record["difference"] == -20000.0
    assert "difference -20,000" in claim_record["error_detail"]
    # unbound merchant row is still reported
    assert records.iloc[1]["status"] == RECON_STATUS.missing_in_agent


def test_unknown_code_is_missing_in_merchant() -> None:
    merchant = _merchant({"id": "m1", "transaction_code": "FT001", "amount": 500000.0})
    with pytest.warns(UserWarning, match="no transaction code"):
        claims = _claims(
            {"id": "c1", "transaction_code": "FT999", "amount": 500000},
            {"id": "c2", "transaction_code": None, "amount": 500000},
        )

    records = _reconcile(claims, merchant)

    assert records["status"].tolist()[:2] == [
        RECON_STATUS.missing_in_merchant,
        RECON_STATUS.missing_in_merchant,
    ]
    assert records.loc[0, "error_type"] == ERROR_TYPE.missing_merchant
    assert pd.isna(records.loc[0, "difference"])
    assert records.loc[1, "error_detail"] == "Claim has no transaction code"


def test_second_claim_for_code_is_duplicate() -> None:
    merchant = _merchant({"id": "m1", "transaction_code": "FT001", "amount": 500000.0})
    claims = _claims(
        {"id": "c1", "transaction_code": "FT001", "amount": 500000, "agent_id": "a1"},
        {"id": "c2", "transaction_code": "FT001", "amount": 500000, "agent_id": "a1"},
    )

    records = _reconcile(claims, merchant)

    assert records["status"].tolist() == [RECON_STATUS.matched, RECON_STATUS.error_duplicate]
    assert records.loc[1, "error_type"] == ERROR_TYPE.duplicate
    assert records.loc[1, "error_detail"].startswith("Duplicate claim: code FT001")


def test_cross_agent_duplicate_names_agents() -> None:
    merchant = _merchant({"id": "m1", "transaction_code": "FT001", "amount": 500000.0})
    claims = _claims(
        {"id": "c1", "transaction_code": "FT001", "amount": 500000, "agent_id": "a1"},
        {"id": "c2", "transaction_code": "FT001", "amount": 500000, "agent_id": "a2"},
    )

    records = _reconcile(claims, merchant)

    assert records.loc[1, "status"] == RECON_STATUS.error_duplicate
    assert records.loc[1, "error_detail"] == "Cross-agent duplicate: code FT001 claimed by agents a1, a2"


def test_point_of_sale_mismatch_and_normalized_match() -> None:
    merchant = _merchant(
        {"id": "m1", "transaction_code": "FT001", "amount": 500000.0, "point_of_sale_name": "Điểm Thu PVD 01"},
        {"id": "m2", "transaction_code": "FT002", "amount": 300000.0, "point_of_sale_name": "PVD 02"},
    )
    claims = _claims(
        {"id": "c1", "transaction_code": "FT001", "amount": 500000, "point_of_sale_name": "diem thu pvd 01"},
        {"id": "c2", "transaction_code": "FT002", "amount": 300000, "point_of_sale_name": "PVD 09"},
    )

    records = _reconcile(claims, merchant)

    assert records.loc[0, "status"] == RECON_STATUS.matched
    assert records.loc[1, "status"] == RECON_STATUS.error_amount
    assert records.loc[1, "error_type"] == ERROR_TYPE.wrong_point_of_sale
    assert records.loc[1, "difference"] == 0.0


def test_amount_before_discount_is_compared_when_preferred() -> None:
    merchant = _merchant(
        {"id": "m1", "transaction_code": "FT001", "amount": 480000.0, "amount_before_discount": 500000.0}
    )
    claims = _claims({"id": "c1", "transaction_code": "FT001", "amount": 500000})

    preferred = _reconcile(claims, merchant)
    after_discount = _reconcile(
        claims, merchant, config=MatchingConfig(prefer_amount_before_discount=False)
    )

    assert preferred.loc[0, "status"] == RECON_STATUS.matched
    assert after_discount.loc[0, "status"] == RECON_STATUS.error_amount
    assert after_discount.loc[0, "difference"] == 20000.0


def test_reconcile_is_idempotent() -> None:
    merchant = _merchant(
        {"id": "m1", "transaction_code": "FT001", "amount": 500000.0},
        {"id": "m2", "transaction_code": "FT002", "amount": 300000.0},
    )
    claims = _claims(
        {"id": "c1", "transaction_code": "FT001", "amount": 500000},
        {"id": "c2", "transaction_code": "FT002", "amount": 310000},
        {"id": "c3", "transaction_code": "FT001", "amount": 500000, "agent_id": "a2"},
    )

    first = _reconcile(claims, merchant)
    second = _reconcile(claims, merchant)

    pd.testing.assert_frame_equal(first, second)


def test_settled_codes_and_bound_rows_are_not_paid_twice() -> None:
    merchant = _merchant({"id": "m1", "transaction_code": "FT001", "amount": 500000.0})
    claims = _claims({"id": "c9", "transaction_code": "FT001", "amount": 500000})

    records = _reconcile(claims, merchant, bound_merchant_ids={"m1"}, settled_codes={"FT001"})

    assert records["status"].tolist() == [RECON_STATUS.error_duplicate]


def test_bound_row_without_settled_code_is_a_mismatch() -> None:
    merchant = _merchant({"id": "m1", "transaction_code": "FT001", "amount": 500000.0})
    claims = _claims({"id": "c9", "transaction_code": "FT001", "amount": 500000})

    records = _reconcile(claims, merchant, bound_merchant_ids={"m1"})

    assert records.loc[0, "status"] == RECON_STATUS.error_amount
    assert records.loc[0, "error_type"] == ERROR_TYPE.mismatch
    assert "already matched" in records.loc[0, "error_detail"]
    assert len(records) == 1


def test_count_claim_occurrences_two_pass_counts() -> None:
    claims = pd.DataFrame(
        {
            "transaction_code": ["A", "B", "A", None],
            "agent_id": ["x", "y", "z", "x"],
        }
    )

    result = count_claim_occurrences(claims)

    assert result["occurrence_ordinal"].tolist() == [0, 0, 1, 0]
    assert result["occurrence_count"].tolist() == [2, 1, 2, 1]
    assert result["code_agents"].tolist() == [("x", "z"), ("y",), ("x", "z"), ()]


def test_classify_claim_reports_rule_name() -> None:
    ctx = ClaimContext(
        claim={"transaction_code": "FT001", "amount": 500000.0},
        candidates=[],
        occurrence_ordinal=0,
        occurrence_count=1,
        code_agents=(),
        bound_ids=frozenset(),
    )

    name, outcome = classify_claim(ctx)

    assert name == "missing_in_merchant"
    assert outcome.status == RECON_STATUS.missing_in_merchant
    assert outcome.detail == "Transaction code FT001 not found in merchant data"
