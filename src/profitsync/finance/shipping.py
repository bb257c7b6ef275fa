from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Mapping

from profitsync.normalize import ZERO, parse_decimal


@dataclass(frozen=True)
class ShippingTier:
    min_items: int
    max_items: int | None
    cost: Decimal
    cost_per_additional_item: Decimal = ZERO
    shipping_zone: str | None = None

    def contains(self, item_count: int) -> bool:
        if item_count < self.min_items:
            return False
        return self.max_items is None or item_count <= self.max_items

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "ShippingTier":
        max_items = row.get("max_items")
        return ShippingTier(
            min_items=int(row["min_items"]),
            max_items=int(max_items) if max_items is not None else None,
            cost=parse_decimal(row["cost"]),
            cost_per_additional_item=parse_decimal(row.get("cost_per_additional_item")),
            shipping_zone=(row.get("shipping_zone") or None),
        )


def _tiers_for_zone(tiers: list[ShippingTier], zone: str | None) -> list[ShippingTier]:
    if not zone:
        return tiers
    matching = [t for t in tiers if not t.shipping_zone or t.shipping_zone == zone]
    return matching or tiers


def shipping_cost(item_count: int, tiers: Iterable[ShippingTier], zone: str | None = None) -> Decimal:
    """
    Tiers are ordered by min_items and the first tier containing the count
    applies. Past the highest tier's max_items: that tier's cost plus the
    per-additional-item surcharge for each item over max. An open-ended top
    tier surcharges items above its min_items. Counts below every tier use
    the lowest tier.
    """
    tiers = list(tiers)
    if item_count <= 0 or not tiers:
        return ZERO
    ordered = sorted(_tiers_for_zone(tiers, zone), key=lambda t: t.min_items)

    top = ordered[-1]
    for tier in ordered:
        if not tier.contains(item_count):
            continue
        if tier is top and tier.max_items is None and item_count > tier.min_items:
            return tier.cost + (item_count - tier.min_items) * tier.cost_per_additional_item
        return tier.cost

    if top.max_items is not None and item_count > top.max_items:
        return top.cost + (item_count - top.max_items) * top.cost_per_additional_item
    if item_count < ordered[0].min_items:
        return ordered[0].cost
    # Count falls into a gap between tiers; charge the next tier up.
    for tier in ordered:
        if tier.min_items > item_count:
            return tier.cost
    return top.cost


def validate_tiers(tiers: Iterable[ShippingTier]) -> list[str]:
    tiers = list(tiers)
    if not tiers:
        return ["At least one shipping tier is required"]

    errors: list[str] = []
    ordered = sorted(tiers, key=lambda t: t.min_items)
    if ordered[0].min_items != 1:
        errors.append("First tier must start at 1 item")

    for i, (current, nxt) in enumerate(zip(ordered, ordered[1:]), start=1):
        if current.max_items is None:
            errors.append(f"Tier {i} is open-ended but tier {i + 1} follows it")
        elif current.max_items + 1 != nxt.min_items:
            errors.append(
                f"Gap or overlap between tier {i} (max: {current.max_items}) "
                f"and tier {i + 1} (min: {nxt.min_items})"
            )

    for t in ordered:
        if t.max_items is not None and t.max_items < t.min_items:
            errors.append(f"Tier with min_items={t.min_items} has max_items below min_items")
        if t.cost < 0:
            errors.append(f"Tier with min_items={t.min_items} has negative cost")
        if t.cost_per_additional_item < 0:
            errors.append(f"Tier with min_items={t.min_items} has negative per-item cost")
    return errors
