from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Mapping

from profitsync.finance.cogs import CostEntry, OrderCogs, group_by_variant, order_cogs
from profitsync.finance.fees import (
    DEFAULT_FEE_SCHEDULE,
    FeeSchedule,
    default_schedule_from_settings,
    order_fees,
    schedules_from_rows,
)
from profitsync.finance.shipping import ShippingTier, shipping_cost
from profitsync.normalize import ZERO, parse_decimal
from profitsync.repo import Repo
from profitsync.util import now_utc, parse_iso_utc, utc_midnight

_CENT = Decimal("0.01")
_RATIO = Decimal("0.0001")


def _ratio(num: Decimal, den: Decimal) -> Decimal:
    if den == 0:
        return ZERO
    return (num / den).quantize(_RATIO, rounding=ROUND_HALF_UP)


def _money(d: Decimal) -> float:
    return float(d.quantize(_CENT, rounding=ROUND_HALF_UP))


def _revenue_parts(order: Mapping[str, Any]) -> tuple[Decimal, Decimal, Decimal, Decimal]:
    return (
        parse_decimal(order.get("total_price")),
        parse_decimal(order.get("total_tax")),
        parse_decimal(order.get("total_discounts")),
        parse_decimal(order.get("total_refunds")),
    )


def net_revenue(order: Mapping[str, Any]) -> Decimal:
    gross, tax, discounts, refunds = _revenue_parts(order)
    return gross - tax - refunds - discounts


@dataclass(frozen=True)
class OrderProfit:
    store_id: str
    external_order_id: str
    gross_revenue: Decimal
    tax: Decimal
    discounts: Decimal
    refunds: Decimal
    net_revenue: Decimal
    cogs: OrderCogs
    shipping_cost: Decimal
    fees: Decimal
    shippable_items: int

    @property
    def profit(self) -> Decimal:
        return self.net_revenue - self.cogs.total - self.shipping_cost - self.fees

    @property
    def margin(self) -> Decimal:
        """profit / net revenue; zero net revenue gives zero margin."""
        return _ratio(self.profit, self.net_revenue)

    def to_dict(self) -> dict[str, Any]:
        return {
            "store_id": self.store_id,
            "external_order_id": self.external_order_id,
            "gross_revenue": _money(self.gross_revenue),
            "tax": _money(self.tax),
            "discounts": _money(self.discounts),
            "refunds": _money(self.refunds),
            "net_revenue": _money(self.net_revenue),
            "cogs": _money(self.cogs.total),
            "cogs_completeness": self.cogs.completeness,
            "shipping_cost": _money(self.shipping_cost),
            "fees": _money(self.fees),
            "profit": _money(self.profit),
            "margin": float(self.margin),
        }


def order_profit(
    order: Mapping[str, Any],
    *,
    entries_by_variant: Mapping[str, list[CostEntry]],
    fee_schedules: Mapping[str, FeeSchedule],
    shipping_tiers: list[ShippingTier],
    default_fee: FeeSchedule = DEFAULT_FEE_SCHEDULE,
) -> OrderProfit:
    """
    Revenue waterfall for one reconciled order (as returned by Repo.get_order).

    gross = upstream total; net = gross - tax - refunds - discounts.
    """
    gross, tax, discounts, refunds = _revenue_parts(order)
    at = parse_iso_utc(order.get("ordered_at")) or parse_iso_utc(order.get("processed_at")) or now_utc()

    line_items = list(order.get("line_items") or [])
    shippable = sum(
        int(li.get("quantity") or 0) for li in line_items if not int(li.get("shipping_exempt") or 0)
    )
    return OrderProfit(
        store_id=str(order.get("store_id")),
        external_order_id=str(order.get("external_order_id")),
        gross_revenue=gross,
        tax=tax,
        discounts=discounts,
        refunds=refunds,
        net_revenue=net_revenue(order),
        cogs=order_cogs(line_items, entries_by_variant, at),
        shipping_cost=shipping_cost(shippable, shipping_tiers, zone=order.get("shipping_country")),
        fees=order_fees(order.get("transactions") or [], fee_schedules, default_fee),
        shippable_items=shippable,
    )


@dataclass
class PeriodSummary:
    team_id: str
    start: date
    end: date
    orders: int = 0
    cancelled_orders: int = 0
    gross_revenue: Decimal = ZERO
    tax: Decimal = ZERO
    discounts: Decimal = ZERO
    refunds: Decimal = ZERO
    net_revenue: Decimal = ZERO
    cogs: Decimal = ZERO
    shipping_cost: Decimal = ZERO
    fees: Decimal = ZERO
    ad_spend: Decimal = ZERO
    attributed_revenue: Decimal = ZERO
    customers: int = 0
    new_customers: int = 0
    returning_customers: int = 0
    # All customers with an order before the period end.
    lifetime_customers: int = 0
    repeat_customers: int = 0
    lifetime_revenue: Decimal = ZERO
    matched_lines: int = 0
    total_lines: int = 0
    unmatched_variants: list[str] = field(default_factory=list)

    @property
    def gross_profit(self) -> Decimal:
        return self.net_revenue - self.cogs

    @property
    def contribution(self) -> Decimal:
        """Profit before ad spend."""
        return self.gross_profit - self.shipping_cost - self.fees

    @property
    def net_profit(self) -> Decimal:
        return self.contribution - self.ad_spend

    @property
    def margin(self) -> Decimal:
        return _ratio(self.net_profit, self.net_revenue)

    @property
    def blended_roas(self) -> Decimal:
        return _ratio(self.gross_revenue, self.ad_spend)

    @property
    def platform_roas(self) -> Decimal:
        return _ratio(self.attributed_revenue, self.ad_spend)

    @property
    def cac(self) -> Decimal | None:
        if self.new_customers == 0:
            return None
        return (self.ad_spend / self.new_customers).quantize(_CENT, rounding=ROUND_HALF_UP)

    @property
    def repeat_customer_rate(self) -> Decimal:
        """Share of lifetime customers with more than one order."""
        return _ratio(Decimal(self.repeat_customers), Decimal(self.lifetime_customers))

    @property
    def average_ltv(self) -> Decimal | None:
        if self.lifetime_customers == 0:
            return None
        return (self.lifetime_revenue / self.lifetime_customers).quantize(_CENT, rounding=ROUND_HALF_UP)

    @property
    def ltv_to_cac(self) -> Decimal | None:
        ltv, cac = self.average_ltv, self.cac
        if ltv is None or not cac:
            return None
        return _ratio(ltv, cac)

    @property
    def break_even_roas(self) -> Decimal | None:
        # ROAS at which ad spend eats the whole contribution.
        if self.contribution <= 0:
            return None
        return _ratio(self.gross_revenue, self.contribution)

    @property
    def cogs_completeness(self) -> float:
        if self.total_lines == 0:
            return 100.0
        return round(self.matched_lines / self.total_lines * 100, 2)

    def to_dict(self) -> dict[str, Any]:
        cac = self.cac
        be = self.break_even_roas
        ltv = self.average_ltv
        ltv_cac = self.ltv_to_cac
        return {
            "team_id": self.team_id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "orders": self.orders,
            "cancelled_orders": self.cancelled_orders,
            "gross_revenue": _money(self.gross_revenue),
            "tax": _money(self.tax),
            "discounts": _money(self.discounts),
            "refunds": _money(self.refunds),
            "net_revenue": _money(self.net_revenue),
            "cogs": _money(self.cogs),
            "gross_profit": _money(self.gross_profit),
            "shipping_cost": _money(self.shipping_cost),
            "fees": _money(self.fees),
            "contribution": _money(self.contribution),
            "ad_spend": _money(self.ad_spend),
            "net_profit": _money(self.net_profit),
            "margin": float(self.margin),
            "blended_roas": float(self.blended_roas),
            "platform_roas": float(self.platform_roas),
            "break_even_roas": float(be) if be is not None else None,
            "customers": self.customers,
            "new_customers": self.new_customers,
            "returning_customers": self.returning_customers,
            "repeat_customer_rate": float(self.repeat_customer_rate),
            "cac": _money(cac) if cac is not None else None,
            "average_ltv": _money(ltv) if ltv is not None else None,
            "ltv_to_cac": float(ltv_cac) if ltv_cac is not None else None,
            "cogs_completeness": self.cogs_completeness,
            "unmatched_variants": list(self.unmatched_variants),
        }


class ProfitEngine:
    def __init__(self, repo: Repo, settings=None):
        self.repo = repo
        self.default_fee = default_schedule_from_settings(settings) if settings else DEFAULT_FEE_SCHEDULE

    def _store_config(self, store_id: str, cache: dict[str, tuple[dict[str, FeeSchedule], list[ShippingTier]]]):
        if store_id not in cache:
            cache[store_id] = (
                schedules_from_rows(self.repo.list_fee_configs(store_id)),
                [ShippingTier.from_row(r) for r in self.repo.list_shipping_tiers(store_id)],
            )
        return cache[store_id]

    def _cost_entries(self, orders: list[dict[str, Any]]) -> dict[str, list[CostEntry]]:
        variant_ids = sorted(
            {str(li["variant_id"]) for o in orders for li in o.get("line_items") or [] if li.get("variant_id")}
        )
        return group_by_variant(CostEntry.from_row(r) for r in self.repo.list_cost_entries(variant_ids))

    def order_profit(self, store_id: str, external_order_id: str) -> OrderProfit | None:
        order = self.repo.get_order(store_id, external_order_id)
        if order is None:
            return None
        schedules, tiers = self._store_config(store_id, {})
        return order_profit(
            order,
            entries_by_variant=self._cost_entries([order]),
            fee_schedules=schedules,
            shipping_tiers=tiers,
            default_fee=self.default_fee,
        )

    def period_summary(self, team_id: str, start: date, end: date) -> PeriodSummary:
        """Aggregate for order dates start..end inclusive (UTC). Cancelled orders are excluded."""
        if end < start:
            raise ValueError("end must not be before start")
        window_start = utc_midnight(start)
        window_end = utc_midnight(end + timedelta(days=1))

        summary = PeriodSummary(team_id=team_id, start=start, end=end)
        orders = self.repo.list_orders_for_period(team_id, window_start, window_end)
        active = [o for o in orders if not o.get("cancelled_at")]
        summary.cancelled_orders = len(orders) - len(active)
        summary.orders = len(active)

        entries = self._cost_entries(active)
        cache: dict[str, tuple[dict[str, FeeSchedule], list[ShippingTier]]] = {}
        unmatched: set[str] = set()
        for o in active:
            schedules, tiers = self._store_config(str(o["store_id"]), cache)
            p = order_profit(
                o,
                entries_by_variant=entries,
                fee_schedules=schedules,
                shipping_tiers=tiers,
                default_fee=self.default_fee,
            )
            summary.gross_revenue += p.gross_revenue
            summary.tax += p.tax
            summary.discounts += p.discounts
            summary.refunds += p.refunds
            summary.net_revenue += p.net_revenue
            summary.cogs += p.cogs.total
            summary.shipping_cost += p.shipping_cost
            summary.fees += p.fees
            summary.matched_lines += p.cogs.matched_lines
            summary.total_lines += p.cogs.total_lines
            unmatched.update(p.cogs.unmatched_variants)
        summary.unmatched_variants = sorted(unmatched)

        for row in self.repo.list_ad_spend_for_period(team_id, start, end + timedelta(days=1)):
            summary.ad_spend += parse_decimal(row.get("spend"))
            summary.attributed_revenue += parse_decimal(row.get("revenue"))

        self._customer_metrics(summary, team_id, active, window_start, window_end)
        return summary

    def _customer_metrics(
        self,
        summary: PeriodSummary,
        team_id: str,
        active: list[dict[str, Any]],
        window_start: datetime,
        window_end: datetime,
    ) -> None:
        """A customer is new when their first non-cancelled order falls inside the window."""
        first_at: dict[str, datetime | None] = {}
        order_counts: dict[str, int] = {}
        for row in self.repo.list_customer_orders(team_id, window_end):
            email = str(row["customer_email"])
            order_counts[email] = order_counts.get(email, 0) + 1
            first_at.setdefault(email, parse_iso_utc(row.get("ordered_at")))
            summary.lifetime_revenue += net_revenue(row)
        summary.lifetime_customers = len(order_counts)
        summary.repeat_customers = sum(1 for n in order_counts.values() if n > 1)

        emails = {str(o["customer_email"]) for o in active if o.get("customer_email")}
        summary.customers = len(emails)
        for e in emails:
            first = first_at.get(e)
            if first is not None and first >= window_start:
                summary.new_customers += 1
        summary.returning_customers = summary.customers - summary.new_customers
