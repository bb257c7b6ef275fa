from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Mapping

from profitsync.normalize import ZERO, parse_decimal

PERCENTAGE_ONLY = "PERCENTAGE_ONLY"
FIXED_ONLY = "FIXED_ONLY"
PERCENTAGE_PLUS_FIXED = "PERCENTAGE_PLUS_FIXED"
FEE_TYPES = (PERCENTAGE_ONLY, FIXED_ONLY, PERCENTAGE_PLUS_FIXED)

_CENT = Decimal("0.01")
FEE_BEARING_KINDS = {"sale", "capture"}


@dataclass(frozen=True)
class FeeSchedule:
    fee_type: str
    percentage: Decimal = ZERO
    fixed: Decimal = ZERO

    def __post_init__(self) -> None:
        if self.fee_type not in FEE_TYPES:
            raise ValueError(f"Unknown fee type: {self.fee_type}")

    def fee_for(self, amount: Decimal) -> Decimal:
        if amount <= 0:
            return ZERO
        if self.fee_type == PERCENTAGE_ONLY:
            fee = amount * self.percentage
        elif self.fee_type == FIXED_ONLY:
            fee = self.fixed
        else:
            fee = amount * self.percentage + self.fixed
        return fee.quantize(_CENT, rounding=ROUND_HALF_UP)


# Documented fallback when a gateway has no configured schedule: 2.9% + 3.
DEFAULT_FEE_SCHEDULE = FeeSchedule(PERCENTAGE_PLUS_FIXED, Decimal("0.029"), Decimal("3"))


def default_schedule_from_settings(settings) -> FeeSchedule:
    return FeeSchedule(
        PERCENTAGE_PLUS_FIXED,
        Decimal(str(settings.default_fee_percent)),
        Decimal(str(settings.default_fee_fixed)),
    )


def schedules_from_rows(rows: Iterable[Mapping[str, Any]]) -> dict[str, FeeSchedule]:
    out: dict[str, FeeSchedule] = {}
    for r in rows:
        if not int(r.get("is_active", 1)):
            continue
        out[str(r["gateway"]).strip().lower()] = FeeSchedule(
            str(r["fee_type"]),
            parse_decimal(r.get("percentage_fee")),
            parse_decimal(r.get("fixed_fee")),
        )
    return out


def transaction_fee(
    txn: Mapping[str, Any],
    schedules: Mapping[str, FeeSchedule],
    default: FeeSchedule = DEFAULT_FEE_SCHEDULE,
) -> Decimal:
    """
    Stored upstream fee if present, else the gateway's schedule, else `default`.
    """
    stored = txn.get("fee")
    if stored is not None and str(stored).strip() != "":
        return parse_decimal(stored)
    gateway = str(txn.get("gateway") or "").strip().lower()
    schedule = schedules.get(gateway, default)
    return schedule.fee_for(parse_decimal(txn.get("amount")))


def order_fees(
    transactions: Iterable[Mapping[str, Any]],
    schedules: Mapping[str, FeeSchedule],
    default: FeeSchedule = DEFAULT_FEE_SCHEDULE,
) -> Decimal:
    """Fees over successful sale/capture transactions. No such transaction means no fee."""
    total = ZERO
    for t in transactions:
        if str(t.get("kind") or "").lower() not in FEE_BEARING_KINDS:
            continue
        if str(t.get("status") or "").lower() != "success":
            continue
        total += transaction_fee(t, schedules, default)
    return total
