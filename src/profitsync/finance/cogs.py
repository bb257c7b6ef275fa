from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping

from profitsync.normalize import ZERO, parse_decimal
from profitsync.util import parse_iso_utc


@dataclass(frozen=True)
class CostEntry:
    variant_id: str
    cost_price: Decimal
    effective_from: datetime
    effective_to: datetime | None = None

    def covers(self, at: datetime) -> bool:
        if at < self.effective_from:
            return False
        return self.effective_to is None or at < self.effective_to

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "CostEntry":
        effective_from = parse_iso_utc(row["effective_from"])
        if effective_from is None:
            raise ValueError(f"cost entry {row.get('id')} has no effective_from")
        return CostEntry(
            variant_id=str(row["variant_id"]),
            cost_price=parse_decimal(row["cost_price"]),
            effective_from=effective_from,
            effective_to=parse_iso_utc(row.get("effective_to")),
        )


def group_by_variant(entries: Iterable[CostEntry]) -> dict[str, list[CostEntry]]:
    out: dict[str, list[CostEntry]] = {}
    for e in entries:
        out.setdefault(e.variant_id, []).append(e)
    return out


def find_cost(entries: Iterable[CostEntry], at: datetime) -> CostEntry | None:
    """Entry with effective_from <= at < effective_to (or open). Latest start wins."""
    best: CostEntry | None = None
    for e in entries:
        if e.covers(at) and (best is None or e.effective_from > best.effective_from):
            best = e
    return best


@dataclass(frozen=True)
class OrderCogs:
    total: Decimal
    matched_lines: int
    total_lines: int
    unmatched_variants: tuple[str, ...] = ()

    @property
    def unmatched_lines(self) -> int:
        return self.total_lines - self.matched_lines

    @property
    def completeness(self) -> float:
        """Percentage of line items with a cost entry; 100 when there are none."""
        if self.total_lines == 0:
            return 100.0
        return round(self.matched_lines / self.total_lines * 100, 2)


def order_cogs(
    line_items: Iterable[Mapping[str, Any]],
    entries_by_variant: Mapping[str, list[CostEntry]],
    at: datetime,
) -> OrderCogs:
    total = ZERO
    matched = 0
    count = 0
    unmatched: list[str] = []
    for li in line_items:
        count += 1
        variant_id = li.get("variant_id")
        entry = find_cost(entries_by_variant.get(str(variant_id), []), at) if variant_id else None
        if entry is None:
            unmatched.append(str(li.get("external_variant_id") or li.get("sku") or li.get("title") or "?"))
            continue
        matched += 1
        total += entry.cost_price * int(li.get("quantity") or 0)
    return OrderCogs(total=total, matched_lines=matched, total_lines=count, unmatched_variants=tuple(unmatched))
