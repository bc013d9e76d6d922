# Docstring for payrecon/engines/match_claims module
"""
match_claims.py

Matching engine: classify every claim against the merchant ground truth.

The engine joins claims to merchant transactions on the settlement code,
then checks amount and point of sale, and gives every claim exactly one
auditable status with a human-readable reason.

Design goals
------------
- Pure and deterministic: same inputs, same classifications. No store
  access, no clock reads beyond the optional `processed_at` default.
- Declarative rules: classification is an ordered list of
  (name, predicate, outcome) rules evaluated in fixed order; each rule can be
  tested on its own (`CLASSIFICATION_RULES`, `classify_claim`).
- Two-pass duplicate detection: pass 1 counts claims per code and assigns
  each claim its occurrence ordinal (`count_claim_occurrences`); pass 2
  classifies using those counts.
- Exclusive binding: a merchant transaction is bound to at most one MATCHED
  claim per run.

Inputs
------
- claims_df: output of `cleaning.clean_claims.clean_claims()`
  (id, transaction_code, amount, point_of_sale_name, agent_id, ...)
- merchant_df: merchant transactions (MERCHANT_CORE_COLUMNS), usually
  `cleaning.merge_dedup.MergeResult.transactions` or store documents.

Classification rules (in order)
-------------------------------
1) missing_in_merchant  no merchant row has the code      -> MISSING_IN_MERCHANT
2) duplicate_claim      claim is not the first with code  -> ERROR_DUPLICATE
3) matched              first unbound candidate with equal
                        amount and compatible POS         -> MATCHED
4) wrong_amount         first candidate amount differs    -> ERROR_AMOUNT / WRONG_AMOUNT
5) wrong_point_of_sale  amount equal, POS differs         -> ERROR_AMOUNT / WRONG_POINT_OF_SALE
6) mismatch             anything else                     -> ERROR_AMOUNT / MISMATCH

After all claims, every merchant transaction not bound to a MATCHED claim
yields one MISSING_IN_AGENT record.

Amounts are compared at cent resolution within `MatchingConfig.amount_tolerance`.
When `prefer_amount_before_discount` is set and the merchant row carries an
amount before discount, that value is the one compared.

Public API
----------
- build_merchant_index(merchant_df) -> dict[str, list[dict]]
- count_claim_occurrences(claims_df) -> pd.DataFrame
- ClaimContext, Outcome, ClassificationRule
- CLASSIFICATION_RULES
- classify_claim(ctx, rules=CLASSIFICATION_RULES) -> tuple[str, Outcome]
- reconcile_claims(claims_df, merchant_df, config=MATCHING_CONFIG,
  session_id=None, processed_at=None) -> pd.DataFrame
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Sequence

import pandas as pd

from ..core.config import (
    ERROR_TYPE,
    MATCHING_CONFIG,
    RECON_STATUS,
    RECORD_COLUMNS,
    MatchingConfig,
)
from ..core.normalizers import amounts_equal, cell_text, is_blank, normalize, sanitize_transaction_code

logger = logging.getLogger(__name__)


# --- Pass 0: ground-truth index ------------------------------------------------------


def build_merchant_index(merchant_df: pd.DataFrame) -> dict[str, list[dict[str, Any]]]:
    """
    Group merchant rows by settlement code.

    Duplicated codes keep every row, in input order, so the first-wins rule
    stays deterministic.
    """
    index: dict[str, list[dict[str, Any]]] = {}
    if merchant_df is None or len(merchant_df) == 0:
        return index
    for row in merchant_df.to_dict("records"):
        code = cell_text(row.get("transaction_code"))
        if not code:
            continue
        index.setdefault(code, []).append(row)
    return index


# --- Pass 1: claim occurrence counts -------------------------------------------------


def count_claim_occurrences(
    claims_df: pd.DataFrame,
    settled_codes: Iterable[str] = (),
) -> pd.DataFrame:
    """
    Count claims per code and number each claim's occurrence.

    Returns a frame aligned with `claims_df` holding:
    - occurrence_ordinal: 0 for the first claim with a code, 1 for the next...
    - occurrence_count: how many claims share the code
    - code_agents: distinct agent ids claiming the code, first-seen order

    Codes in `settled_codes` were already matched by an earlier run, so every
    claim carrying one counts as a later occurrence. Claims without a code
    get ordinal 0 and count 1 (they never duplicate each other).
    """
    codes = claims_df["transaction_code"].map(cell_text)
    has_code = codes.ne("")
    settled = {cell_text(c) for c in settled_codes}

    ordinal = pd.Series(0, index=claims_df.index, dtype="int64")
    count = pd.Series(1, index=claims_df.index, dtype="int64")

    coded = codes[has_code]
    if len(coded) > 0:
        prior = coded.isin(settled).astype("int64")
        ordinal[has_code] = coded.groupby(coded, sort=False).cumcount().astype("int64") + prior
        count[has_code] = coded.map(coded.value_counts()).astype("int64") + prior

    agent_ids = (
        claims_df["agent_id"].map(cell_text)
        if "agent_id" in claims_df.columns
        else pd.Series("", index=claims_df.index)
    )
    by_code: dict[str, tuple[str, ...]] = {}
    for code, agent in zip(coded, agent_ids[has_code]):
        seen = by_code.setdefault(code, ())
        if agent and agent not in seen:
            by_code[code] = seen + (agent,)
    agents = pd.Series(
        [by_code.get(c, ()) for c in codes], index=claims_df.index, dtype="object"
    )

    return pd.DataFrame(
        {
            "occurrence_ordinal": ordinal,
            "occurrence_count": count,
            "code_agents": agents,
        },
        index=claims_df.index,
    )


# --- Pass 2: declarative classification ----------------------------------------------


@dataclass(frozen=True)
class ClaimContext:
    """Everything a rule may look at for one claim."""

    claim: Mapping[str, Any]
    candidates: Sequence[Mapping[str, Any]]
    occurrence_ordinal: int
    occurrence_count: int
    code_agents: tuple[str, ...]
    bound_ids: frozenset[str]
    config: MatchingConfig = MATCHING_CONFIG

    @property
    def code(self) -> str:
        return cell_text(self.claim.get("transaction_code"))

    @property
    def claim_amount(self) -> float:
        value = self.claim.get("amount")
        return 0.0 if is_blank(value) else float(value)

    @property
    def first_candidate(self) -> Mapping[str, Any] | None:
        return self.candidates[0] if self.candidates else None


@dataclass(frozen=True)
class Outcome:
    status: str
    error_type: str | None = None
    merchant: Mapping[str, Any] | None = None
    difference: float | None = None
    detail: str | None = None


@dataclass(frozen=True)
class ClassificationRule:
    name: str
    predicate: Callable[[ClaimContext], bool]
    outcome: Callable[[ClaimContext], Outcome]


def compared_amount(merchant: Mapping[str, Any], config: MatchingConfig) -> float:
    """Merchant amount a claim is compared with."""
    before = merchant.get("amount_before_discount")
    if config.prefer_amount_before_discount and not is_blank(before) and float(before) > 0:
        return float(before)
    amount = merchant.get("amount")
    return 0.0 if is_blank(amount) else float(amount)


def points_of_sale_compatible(claimed: Any, merchant: Any) -> bool:
    """Equal (verbatim or normalized), or missing on either side."""
    a, b = cell_text(claimed), cell_text(merchant)
    if not a or not b:
        return True
    return a == b or normalize(a) == normalize(b)


def _candidate_matches(ctx: ClaimContext, merchant: Mapping[str, Any]) -> bool:
    return amounts_equal(
        ctx.claim_amount, compared_amount(merchant, ctx.config), ctx.config.amount_tolerance
    ) and points_of_sale_compatible(
        ctx.claim.get("point_of_sale_name"), merchant.get("point_of_sale_name")
    )


def _first_unbound_match(ctx: ClaimContext) -> Mapping[str, Any] | None:
    for merchant in ctx.candidates:
        if cell_text(merchant.get("id")) in ctx.bound_ids:
            continue
        if _candidate_matches(ctx, merchant):
            return merchant
    return None


def _difference(ctx: ClaimContext, merchant: Mapping[str, Any] | None) -> float | None:
    if merchant is None:
        return None
    return round(ctx.claim_amount - compared_amount(merchant, ctx.config), 2)


def _fmt(amount: float) -> str:
    return f"{amount:,.0f}" if float(amount).is_integer() else f"{amount:,.2f}"


# Rule 1
def _is_missing_in_merchant(ctx: ClaimContext) -> bool:
    return not ctx.candidates


def _missing_in_merchant(ctx: ClaimContext) -> Outcome:
    if not ctx.code:
        detail = "Claim has no transaction code"
    else:
        detail = f"Transaction code {ctx.code} not found in merchant data"
    return Outcome(
        status=RECON_STATUS.missing_in_merchant,
        error_type=ERROR_TYPE.missing_merchant,
        detail=detail,
    )


# Rule 2
def _is_duplicate_claim(ctx: ClaimContext) -> bool:
    return ctx.occurrence_ordinal > 0


def _duplicate_claim(ctx: ClaimContext) -> Outcome:
    if len(ctx.code_agents) > 1:
        detail = (
            f"Cross-agent duplicate: code {ctx.code} claimed by agents "
            f"{', '.join(ctx.code_agents)}"
        )
    else:
        detail = (
            f"Duplicate claim: code {ctx.code} already claimed "
            f"(occurrence {ctx.occurrence_ordinal + 1} of {ctx.occurrence_count})"
        )
    return Outcome(
        status=RECON_STATUS.error_duplicate,
        error_type=ERROR_TYPE.duplicate,
        difference=_difference(ctx, ctx.first_candidate),
        detail=detail,
    )


# Rule 3
def _is_matched(ctx: ClaimContext) -> bool:
    return _first_unbound_match(ctx) is not None


def _matched(ctx: ClaimContext) -> Outcome:
    merchant = _first_unbound_match(ctx)
    return Outcome(
        status=RECON_STATUS.matched,
        merchant=merchant,
        difference=_difference(ctx, merchant),
    )


# Rule 4
def _is_wrong_amount(ctx: ClaimContext) -> bool:
    merchant = ctx.first_candidate
    return not amounts_equal(
        ctx.claim_amount, compared_amount(merchant, ctx.config), ctx.config.amount_tolerance
    )


def _wrong_amount(ctx: ClaimContext) -> Outcome:
    merchant = ctx.first_candidate
    truth = compared_amount(merchant, ctx.config)
    diff = _difference(ctx, merchant)
    return Outcome(
        status=RECON_STATUS.error_amount,
        error_type=ERROR_TYPE.wrong_amount,
        merchant=merchant,
        difference=diff,
        detail=(
            f"Amount mismatch: claimed {_fmt(ctx.claim_amount)}, merchant {_fmt(truth)} "
            f"(difference {'+' if diff >= 0 else '-'}{_fmt(abs(diff))})"
        ),
    )


# Rule 5
def _is_wrong_point_of_sale(ctx: ClaimContext) -> bool:
    merchant = ctx.first_candidate
    return not points_of_sale_compatible(
        ctx.claim.get("point_of_sale_name"), merchant.get("point_of_sale_name")
    )


def _wrong_point_of_sale(ctx: ClaimContext) -> Outcome:
    merchant = ctx.first_candidate
    return Outcome(
        status=RECON_STATUS.error_amount,
        error_type=ERROR_TYPE.wrong_point_of_sale,
        merchant=merchant,
        difference=_difference(ctx, merchant),
        detail=(
            f"Point of sale mismatch: claimed '{cell_text(ctx.claim.get('point_of_sale_name'))}', "
            f"merchant '{cell_text(merchant.get('point_of_sale_name'))}'"
        ),
    )


# Rule 6
def _mismatch(ctx: ClaimContext) -> Outcome:
    merchant = ctx.first_candidate
    if all(cell_text(m.get("id")) in ctx.bound_ids for m in ctx.candidates):
        detail = f"Merchant transaction for code {ctx.code} is already matched to another claim"
    else:
        detail = f"Claim does not match any merchant transaction for code {ctx.code}"
    return Outcome(
        status=RECON_STATUS.error_amount,
        error_type=ERROR_TYPE.mismatch,
        merchant=merchant,
        difference=_difference(ctx, merchant),
        detail=detail,
    )


CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule("missing_in_merchant", _is_missing_in_merchant, _missing_in_merchant),
    ClassificationRule("duplicate_claim", _is_duplicate_claim, _duplicate_claim),
    ClassificationRule("matched", _is_matched, _matched),
    ClassificationRule("wrong_amount", _is_wrong_amount, _wrong_amount),
    ClassificationRule("wrong_point_of_sale", _is_wrong_point_of_sale, _wrong_point_of_sale),
    ClassificationRule("mismatch", lambda ctx: True, _mismatch),
)


def classify_claim(
    ctx: ClaimContext,
    rules: Sequence[ClassificationRule] = CLASSIFICATION_RULES,
) -> tuple[str, Outcome]:
    """Return (rule name, outcome) of the first rule whose predicate holds."""
    for rule in rules:
        if rule.predicate(ctx):
            return rule.name, rule.outcome(ctx)
    raise ValueError("No classification rule applied; the rule list needs a catch-all.")


# --- Engine entrypoint ---------------------------------------------------------------


def _record(
    *,
    record_id: str,
    session_id: str | None,
    code: str,
    claim: Mapping[str, Any] | None,
    outcome: Outcome,
    processed_at: pd.Timestamp,
) -> dict[str, Any]:
    merchant = outcome.merchant
    claim_pos = cell_text(claim.get("point_of_sale_name")) if claim is not None else ""
    merchant_pos = cell_text(merchant.get("point_of_sale_name")) if merchant is not None else ""
    return {
        "id": record_id,
        "session_id": session_id,
        "transaction_code": code,
        "claim_id": cell_text(claim.get("id")) or None if claim is not None else None,
        "merchant_transaction_id": cell_text(merchant.get("id")) or None if merchant is not None else None,
        "status": outcome.status,
        "error_type": outcome.error_type,
        "difference": outcome.difference,
        "error_detail": outcome.detail,
        "agent_id": cell_text(claim.get("agent_id")) or None if claim is not None else None,
        "point_of_sale_name": claim_pos or merchant_pos or None,
        "claim_amount": float(claim.get("amount") or 0.0) if claim is not None else None,
        "merchant_amount": float(merchant.get("amount") or 0.0) if merchant is not None else None,
        "source_file": cell_text(merchant.get("source_file")) or None if merchant is not None else None,
        "processed_at": processed_at,
    }


def reconcile_claims(
    claims_df: pd.DataFrame,
    merchant_df: pd.DataFrame,
    config: MatchingConfig = MATCHING_CONFIG,
    session_id: str | None = None,
    processed_at: pd.Timestamp | None = None,
    bound_merchant_ids: Iterable[str] = (),
    settled_codes: Iterable[str] = (),
) -> pd.DataFrame:
    """
    Classify every claim and surface unclaimed merchant transactions.

    Args:
        claims_df:
            Cleaned claims, in the order they should be considered.
        merchant_df:
            Ground-truth merchant transactions.
        config:
            Amount tolerance and amount-before-discount preference.
        session_id:
            Stamped on every record and used as record id prefix.
        processed_at:
            Timestamp stamped on every record (default: now, UTC).
        bound_merchant_ids:
            Merchant transactions already settled by earlier runs. They are
            never bound again and never reported as MISSING_IN_AGENT.
        settled_codes:
            Codes of claims already MATCHED by earlier runs; new claims with
            these codes are duplicates.

    Returns:
        DataFrame with RECORD_COLUMNS: one record per claim in input order,
        then one MISSING_IN_AGENT record per unbound merchant transaction.
    """
    if processed_at is None:
        processed_at = pd.Timestamp.now(tz="UTC")
    prefix = session_id or "run"

    index = build_merchant_index(merchant_df)
    claims = claims_df.reset_index(drop=True)
    if "transaction_code" not in claims.columns:
        claims = claims.assign(transaction_code=pd.NA)

    # Pass 1
    occurrences = count_claim_occurrences(claims, settled_codes)
    ordinals = occurrences["occurrence_ordinal"].tolist()
    counts = occurrences["occurrence_count"].tolist()
    code_agents = occurrences["code_agents"].tolist()

    previously_bound = {cell_text(m) for m in bound_merchant_ids}
    bound: set[str] = set(previously_bound)
    records: list[dict[str, Any]] = []
    rule_hits: dict[str, int] = {}

    # Pass 2
    for pos, claim in enumerate(claims.to_dict("records")):
        code = cell_text(claim.get("transaction_code"))
        ctx = ClaimContext(
            claim=claim,
            candidates=index.get(code, []) if code else [],
            occurrence_ordinal=int(ordinals[pos]),
            occurrence_count=int(counts[pos]),
            code_agents=tuple(code_agents[pos]),
            bound_ids=frozenset(bound),
            config=config,
        )
        rule_name, outcome = classify_claim(ctx)
        rule_hits[rule_name] = rule_hits.get(rule_name, 0) + 1
        if outcome.status == RECON_STATUS.matched:
            bound.add(cell_text(outcome.merchant.get("id")))

        claim_id = cell_text(claim.get("id")) or str(pos)
        records.append(
            _record(
                record_id=sanitize_transaction_code(f"{prefix}_{claim_id}"),
                session_id=session_id,
                code=code,
                claim=claim,
                outcome=outcome,
                processed_at=processed_at,
            )
        )

    # Unbound ground truth
    missing_in_agent = 0
    for code, rows in index.items():
        for merchant in rows:
            merchant_id = cell_text(merchant.get("id"))
            if merchant_id in bound:
                continue
            missing_in_agent += 1
            outcome = Outcome(
                status=RECON_STATUS.missing_in_agent,
                error_type=ERROR_TYPE.missing_agent,
                merchant=merchant,
                detail=f"Merchant transaction {code} has no matching claim",
            )
            records.append(
                _record(
                    record_id=sanitize_transaction_code(f"{prefix}_missing_{merchant_id}"),
                    session_id=session_id,
                    code=code,
                    claim=None,
                    outcome=outcome,
                    processed_at=processed_at,
                )
            )

    logger.info(
        "Reconciled %s claims against %s merchant transactions: %s, missing_in_agent=%s",
        len(claims),
        sum(len(rows) for rows in index.values()),
        rule_hits,
        missing_in_agent,
    )
    return pd.DataFrame(records, columns=RECORD_COLUMNS)
