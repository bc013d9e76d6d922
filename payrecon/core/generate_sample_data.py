"""
generate_sample_data.py

Seeded generator for a synthetic merchant export and matching claims.

Writes into data/sample/:
- merchant_sample.xlsx: a "Cấu hình" sheet (skipped by the ingestor) and a
  "Giao dịch" data sheet whose header sits on row 1 under a title row,
  Vietnamese headers, and amounts written in mixed locales.
- claims_sample.json: claim documents covering every classification
  (matched, wrong amount, wrong point of sale, missing in merchant,
  duplicate claim, cross-agent duplicate). Some merchant rows are left
  unclaimed so they surface as MISSING_IN_AGENT.

Outputs are deterministic given a seed.
"""

from __future__ import annotations

import argparse
import json
import random
from pathlib import Path

import pandas as pd
from faker import Faker

from .config import SAMPLE_DIR


DEFAULT_SEED = 20250214

MERCHANT_HEADERS = [
    "STT",
    "Mã trừ tiền/Mã chuẩn chi",
    "Số tiền trước KM",
    "Số tiền sau KM",
    "Điểm thu",
    "Chi nhánh",
    "Số hóa đơn",
    "Số điện thoại",
    "Mã khuyến mại",
    "Thời gian GD",
]


def _code(rng: random.Random) -> str:
    return str(rng.randint(10**16, 10**17 - 1))


def _amount(rng: random.Random) -> int:
    # VND amounts, thousand-rounded most of the time
    value = rng.randint(150, 25_000) * 1000
    if rng.random() < 0.2:
        value += rng.randint(1, 999)
    return value


def _format_amount(rng: random.Random, value: int) -> object:
    # a lone separator followed by 3 digits reads as a decimal point, so
    # text formatting is only used once there are two separators
    if value < 1_000_000:
        return value
    style = rng.choice(["number", "dots", "commas"])
    if style == "dots":
        return f"{value:,}".replace(",", ".")
    if style == "commas":
        return f"{value:,}"
    return value


def _build_merchant_rows(
    rng: random.Random, faker: Faker, n_rows: int
) -> list[dict[str, object]]:
    points_of_sale = [f"{faker.last_name().upper()} {rng.randint(10, 999)}PVD 0{i}" for i in range(1, 5)]
    branches = [faker.city() for _ in range(3)]
    rows = []
    for i in range(n_rows):
        after = _amount(rng)
        promo = None
        before = after
        if rng.random() < 0.15:
            promo = f"KM{rng.randint(100, 999)}"
            before = after + rng.choice([10_000, 20_000, 50_000])
        rows.append(
            {
                "code": _code(rng),
                "before": before,
                "after": after,
                "pos": rng.choice(points_of_sale),
                "branch": rng.choice(branches),
                "invoice": f"{rng.randint(1, 999999):06d}",
                "phone": faker.phone_number(),
                "promo": promo,
                "time": faker.date_time_between(start_date="-30d", end_date="now"),
                "stt": i + 1,
            }
        )
    return rows


def _merchant_sheet(rng: random.Random, rows: list[dict[str, object]]) -> pd.DataFrame:
    grid: list[list[object]] = [["BÁO CÁO GIAO DỊCH THANH TOÁN"] + [None] * (len(MERCHANT_HEADERS) - 1)]
    grid.append(list(MERCHANT_HEADERS))
    for row in rows:
        grid.append(
            [
                row["stt"],
                row["code"],
                _format_amount(rng, int(row["before"])),
                _format_amount(rng, int(row["after"])),
                row["pos"],
                row["branch"],
                row["invoice"],
                row["phone"],
                row["promo"],
                row["time"].strftime("%d/%m/%Y %H:%M:%S"),
            ]
        )
    return pd.DataFrame(grid)


def _build_claims(
    rng: random.Random, faker: Faker, merchant_rows: list[dict[str, object]]
) -> list[dict[str, object]]:
    agents = [f"agent_{i:02d}_{faker.user_name()}" for i in range(3)]
    claims: list[dict[str, object]] = []

    def _claim(row: dict[str, object], **overrides: object) -> dict[str, object]:
        claim = {
            "id": f"claim_{len(claims) + 1:04d}",
            "transaction_code": row["code"],
            "amount": row["before"],
            "point_of_sale_name": row["pos"],
            "timestamp": row["time"].isoformat(),
            "status": "PENDING",
            "error_message": None,
            "agent_id": rng.choice(agents),
            "user_id": faker.user_name(),
        }
        claim.update(overrides)
        return claim

    # leave the last quarter unclaimed -> MISSING_IN_AGENT
    claimed = merchant_rows[: max(1, len(merchant_rows) * 3 // 4)]
    for i, row in enumerate(claimed):
        if i % 10 == 3:
            claims.append(_claim(row, amount=int(row["before"]) + 20_000))
        elif i % 10 == 5:
            claims.append(_claim(row, point_of_sale_name="DIEM THU KHAC 01"))
        else:
            claims.append(_claim(row))

    # duplicates: same agent, then a different agent
    claims.append(_claim(claimed[0], agent_id=claims[0]["agent_id"]))
    other_agent = next(a for a in agents if a != claims[1]["agent_id"]) if len(claimed) > 1 else agents[0]
    if len(claimed) > 1:
        claims.append(_claim(claimed[1], agent_id=other_agent))

    # codes the merchant never settled
    for _ in range(2):
        ghost = {"code": _code(rng), "before": _amount(rng), "pos": claimed[0]["pos"], "time": claimed[0]["time"]}
        claims.append(_claim(ghost))
    return claims


def generate_sample_data(
    output_dir: Path = SAMPLE_DIR,
    seed: int = DEFAULT_SEED,
    n_rows: int = 40,
) -> dict[str, Path]:
    rng = random.Random(seed)
    faker = Faker("vi_VN")
    faker.seed_instance(seed)
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    merchant_rows = _build_merchant_rows(rng, faker, n_rows)
    claims = _build_claims(rng, faker, merchant_rows)

    outputs = {
        "merchant": output_dir / "merchant_sample.xlsx",
        "claims": output_dir / "claims_sample.json",
    }

    config_sheet = pd.DataFrame({"Cấu hình": ["Kênh thanh toán", "Trạng thái"], "Giá trị": ["VNPay", "Hoạt động"]})
    with pd.ExcelWriter(outputs["merchant"], engine="openpyxl") as writer:
        config_sheet.to_excel(writer, sheet_name="Cấu hình", index=False)
        _merchant_sheet(rng, merchant_rows).to_excel(
            writer, sheet_name="Giao dịch", index=False, header=False
        )

    outputs["claims"].write_text(json.dumps(claims, ensure_ascii=False, indent=2), encoding="utf-8")
    return outputs


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Generate a seeded synthetic merchant export and claims."
    )
    parser.add_argument("--seed", type=int, default=DEFAULT_SEED, help="Deterministic RNG seed")
    parser.add_argument("--rows", type=int, default=40, help="Merchant rows to generate")
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=SAMPLE_DIR,
        help="Destination directory for the sample files",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    outputs = generate_sample_data(output_dir=args.output_dir, seed=args.seed, n_rows=args.rows)
    for label, path in outputs.items():
        print(f"Wrote {label} sample to: {path}")


if __name__ == "__main__":
    main()
