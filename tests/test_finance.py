from __future__ import annotations

import sqlite3
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from profitsync.config import Settings
from profitsync.db import LedgerDB
from profitsync.finance.cogs import CostEntry, find_cost, group_by_variant, order_cogs
from profitsync.finance.engine import ProfitEngine, order_profit
from profitsync.finance.fees import (
    DEFAULT_FEE_SCHEDULE,
    FIXED_ONLY,
    PERCENTAGE_ONLY,
    FeeSchedule,
    order_fees,
    transaction_fee,
)
from profitsync.finance.shipping import ShippingTier, shipping_cost, validate_tiers
from profitsync.normalize import (
    LineItemRecord,
    OrderRecord,
    SpendRecord,
    TransactionRecord,
    VariantRecord,
    to_utc_instant,
    to_utc_midnight,
)
from profitsync.reconcile import Reconciler
from profitsync.repo import Repo


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


TIERS = [
    ShippingTier(min_items=1, max_items=5, cost=Decimal("50")),
    ShippingTier(min_items=6, max_items=10, cost=Decimal("80"), cost_per_additional_item=Decimal("5")),
]


# Shipping


def test_shipping_tier_boundaries() -> None:
    assert shipping_cost(10, TIERS) == Decimal("80")
    assert shipping_cost(12, TIERS) == Decimal("90")
    assert shipping_cost(0, TIERS) == Decimal("0")
    assert shipping_cost(1, TIERS) == Decimal("50")
    assert shipping_cost(5, TIERS) == Decimal("50")
    assert shipping_cost(6, TIERS) == Decimal("80")
    assert shipping_cost(3, []) == Decimal("0")


def test_shipping_open_ended_top_tier_and_zones() -> None:
    tiers = [
        ShippingTier(min_items=1, max_items=3, cost=Decimal("40"), shipping_zone="SE"),
        ShippingTier(
            min_items=4,
            max_items=None,
            cost=Decimal("60"),
            cost_per_additional_item=Decimal("2"),
            shipping_zone="SE",
        ),
        ShippingTier(min_items=1, max_items=None, cost=Decimal("150"), shipping_zone="US"),
    ]
    assert shipping_cost(4, tiers, zone="SE") == Decimal("60")
    assert shipping_cost(6, tiers, zone="SE") == Decimal("64")
    assert shipping_cost(2, tiers, zone="SE") == Decimal("40")
    assert shipping_cost(2, tiers, zone="US") == Decimal("150")


def test_validate_tiers() -> None:
    assert validate_tiers(TIERS) == []
    assert validate_tiers([]) == ["At least one shipping tier is required"]
    gap = [
        ShippingTier(min_items=1, max_items=3, cost=Decimal("40")),
        ShippingTier(min_items=5, max_items=None, cost=Decimal("60")),
    ]
    errors = validate_tiers(gap)
    assert len(errors) == 1
    assert "Gap or overlap" in errors[0]


# Fees


def test_default_fee_fallback() -> None:
    txn = {"kind": "sale", "status": "success", "amount": "1000", "gateway": "klarna"}
    assert transaction_fee(txn, {}) == Decimal("32.00")
    assert order_fees([txn], {}) == Decimal("32.00")


def test_fee_precedence_and_filtering() -> None:
    schedules = {
        "stripe": FeeSchedule(PERCENTAGE_ONLY, percentage=Decimal("0.02")),
        "swish": FeeSchedule(FIXED_ONLY, fixed=Decimal("2")),
    }
    txns = [
        {"kind": "sale", "status": "success", "amount": "500", "gateway": "Stripe"},
        {"kind": "capture", "status": "success", "amount": "100", "gateway": "swish"},
        {"kind": "sale", "status": "success", "amount": "100", "gateway": "stripe", "fee": "7.50"},
        {"kind": "sale", "status": "failure", "amount": "999", "gateway": "stripe"},
        {"kind": "refund", "status": "success", "amount": "100", "gateway": "stripe"},
    ]
    assert order_fees(txns, schedules) == Decimal("10.00") + Decimal("2.00") + Decimal("7.50")
    assert order_fees([], schedules) == Decimal("0")


def test_fee_schedule_edge_cases() -> None:
    assert DEFAULT_FEE_SCHEDULE.fee_for(Decimal("0")) == Decimal("0")
    assert DEFAULT_FEE_SCHEDULE.fee_for(Decimal("-10")) == Decimal("0")
    with pytest.raises(ValueError):
        FeeSchedule("FLAT")


# COGS


def test_effective_dated_cost_lookup() -> None:
    entries = [
        CostEntry("v1", Decimal("10"), _utc(2024, 1, 1), _utc(2024, 2, 1)),
        CostEntry("v1", Decimal("12"), _utc(2024, 2, 1)),
    ]
    assert find_cost(entries, _utc(2024, 1, 15)).cost_price == Decimal("10")
    assert find_cost(entries, _utc(2024, 2, 1)).cost_price == Decimal("12")
    assert find_cost(entries, _utc(2023, 12, 31)) is None


def test_cogs_completeness_is_seventy_percent() -> None:
    entries = group_by_variant([CostEntry("v1", Decimal("10"), _utc(2024, 1, 1))])
    lines = [{"variant_id": "v1", "quantity": 1} for _ in range(7)]
    lines += [{"variant_id": None, "external_variant_id": f"x{i}", "quantity": 1} for i in range(3)]

    result = order_cogs(lines, entries, _utc(2024, 1, 15))

    assert result.completeness == 70.0
    assert result.total == Decimal("70")
    assert result.unmatched_lines == 3
    assert result.unmatched_variants == ("x0", "x1", "x2")


def test_order_profit_zero_net_revenue_has_zero_margin() -> None:
    p = order_profit(
        {"store_id": "s", "external_order_id": "1", "total_price": "0", "line_items": [], "transactions": []},
        entries_by_variant={},
        fee_schedules={},
        shipping_tiers=TIERS,
    )
    assert p.net_revenue == Decimal("0")
    assert p.margin == Decimal("0")
    assert p.to_dict()["margin"] == 0.0


# Repository-backed


def _seed(tmp_path: Path) -> tuple[Repo, str]:
    db_path = tmp_path / "ledger.sqlite3"
    LedgerDB(db_path).init()
    repo = Repo(db_path)
    store = repo.create_account(team_id="t1", platform="shopify", external_id="shop.myshopify.com", name="Shop")
    ads = repo.create_account(team_id="t1", platform="facebook", external_id="act_1", name="FB")

    Reconciler(repo).reconcile([VariantRecord(store_id=store, external_variant_id="501", sku="MUG")])
    variant = repo.find_variant(store, external_variant_id="501")
    repo.create_cost_entry(variant_id=variant["id"], cost_price=Decimal("150"), effective_from=_utc(2024, 1, 1))
    repo.upsert_fee_config(
        store_id=store,
        gateway="Stripe",
        fee_type=PERCENTAGE_ONLY,
        percentage_fee=Decimal("0.02"),
        fixed_fee=Decimal("0"),
    )
    for tier in TIERS:
        repo.add_shipping_tier(
            store_id=store,
            min_items=tier.min_items,
            max_items=tier.max_items,
            cost=tier.cost,
            cost_per_additional_item=tier.cost_per_additional_item,
        )

    Reconciler(repo).reconcile(
        [
            OrderRecord(
                store_id=store,
                external_order_id="1001",
                total_price=Decimal("1250"),
                total_tax=Decimal("250"),
                customer_email="a@example.com",
                ordered_at=to_utc_instant("2024-01-15T10:00:00Z"),
                line_items=(LineItemRecord(external_line_item_id="1", external_variant_id="501", quantity=2),),
                transactions=(
                    TransactionRecord(
                        external_transaction_id="tx1",
                        kind="sale",
                        gateway="stripe",
                        status="success",
                        amount=Decimal("1250"),
                    ),
                ),
            ),
            OrderRecord(
                store_id=store,
                external_order_id="1002",
                total_price=Decimal("999"),
                customer_email="b@example.com",
                ordered_at=to_utc_instant("2024-01-16T10:00:00Z"),
                cancelled_at=to_utc_instant("2024-01-16T11:00:00Z"),
            ),
            SpendRecord(
                account_id=ads,
                date=to_utc_midnight("2024-01-15"),
                campaign_id="c1",
                spend=Decimal("200"),
                revenue=Decimal("600"),
            ),
        ]
    )
    return repo, store


def test_order_profit_from_ledger(tmp_path: Path) -> None:
    repo, store = _seed(tmp_path)

    p = ProfitEngine(repo).order_profit(store, "1001")

    assert p is not None
    assert p.net_revenue == Decimal("1000")
    assert p.cogs.total == Decimal("300")
    assert p.shipping_cost == Decimal("50")
    assert p.fees == Decimal("25.00")
    assert p.profit == Decimal("625.00")
    assert ProfitEngine(repo).order_profit(store, "missing") is None


def test_period_summary(tmp_path: Path) -> None:
    repo, _store = _seed(tmp_path)
    settings = Settings(db_path=repo.db_path, web_host="127.0.0.1", web_port=0)

    s = ProfitEngine(repo, settings).period_summary("t1", date(2024, 1, 1), date(2024, 1, 31))

    assert s.orders == 1
    assert s.cancelled_orders == 1
    assert s.net_revenue == Decimal("1000")
    assert s.contribution == Decimal("625.00")
    assert s.ad_spend == Decimal("200")
    assert s.net_profit == Decimal("425.00")
    assert s.margin == Decimal("0.4250")
    assert s.blended_roas == Decimal("6.2500")
    assert s.platform_roas == Decimal("3.0000")
    assert s.new_customers == 1
    assert s.cac == Decimal("200.00")
    assert s.cogs_completeness == 100.0

    out = s.to_dict()
    assert out["net_profit"] == 425.0
    assert out["break_even_roas"] == 2.0

    other = ProfitEngine(repo).period_summary("t1", date(2024, 2, 1), date(2024, 2, 29))
    assert other.orders == 0
    assert other.cac is None
    assert other.margin == Decimal("0")


def test_new_cost_entry_closes_the_open_one(tmp_path: Path) -> None:
    repo, store = _seed(tmp_path)
    variant = repo.find_variant(store, sku="MUG")

    repo.create_cost_entry(variant_id=variant["id"], cost_price=Decimal("170"), effective_from=_utc(2024, 3, 1))

    entries = [CostEntry.from_row(r) for r in repo.list_cost_entries([variant["id"]])]
    assert [e.cost_price for e in entries] == [Decimal("150"), Decimal("170")]
    assert entries[0].effective_to == _utc(2024, 3, 1)
    assert entries[1].effective_to is None

    with pytest.raises(sqlite3.IntegrityError):
        with repo.connect() as conn:
            conn.execute(
                "INSERT INTO cost_entries(id, variant_id, cost_price, effective_from, created_at) "
                "VALUES('dup', ?, '1', '2024-04-01T00:00:00+00:00', '2024-04-01T00:00:00+00:00')",
                (variant["id"],),
            )


def test_backdated_cost_entry_is_rejected_and_same_start_replaces(tmp_path: Path) -> None:
    repo, store = _seed(tmp_path)
    variant = repo.find_variant(store, sku="MUG")

    with pytest.raises(ValueError):
        repo.create_cost_entry(variant_id=variant["id"], cost_price=Decimal("90"), effective_from=_utc(2023, 12, 1))

    repo.create_cost_entry(variant_id=variant["id"], cost_price=Decimal("160"), effective_from=_utc(2024, 1, 1))

    entries = [CostEntry.from_row(r) for r in repo.list_cost_entries([variant["id"]])]
    assert len(entries) == 1
    assert entries[0].cost_price == Decimal("160")
    assert entries[0].effective_from == _utc(2024, 1, 1)
    assert entries[0].effective_to is None


def test_period_summary_customer_metrics(tmp_path: Path) -> None:
    repo, store = _seed(tmp_path)
    Reconciler(repo).reconcile(
        [
            OrderRecord(
                store_id=store,
                external_order_id="0990",
                total_price=Decimal("400"),
                customer_email="a@example.com",
                ordered_at=to_utc_instant("2023-12-10T10:00:00Z"),
            ),
            OrderRecord(
                store_id=store,
                external_order_id="1003",
                total_price=Decimal("600"),
                customer_email="c@example.com",
                ordered_at=to_utc_instant("2024-01-20T10:00:00Z"),
            ),
            # After the period: not part of lifetime figures.
            OrderRecord(
                store_id=store,
                external_order_id="1100",
                total_price=Decimal("5000"),
                customer_email="c@example.com",
                ordered_at=to_utc_instant("2024-02-03T10:00:00Z"),
            ),
        ]
    )

    s = ProfitEngine(repo).period_summary("t1", date(2024, 1, 1), date(2024, 1, 31))

    assert s.orders == 2
    assert (s.customers, s.new_customers, s.returning_customers) == (2, 1, 1)
    assert (s.lifetime_customers, s.repeat_customers) == (2, 1)
    assert s.repeat_customer_rate == Decimal("0.5000")
    assert s.average_ltv == Decimal("1000.00")
    assert s.ltv_to_cac == Decimal("5.0000")

    out = s.to_dict()
    assert out["repeat_customer_rate"] == 0.5
    assert out["average_ltv"] == 1000.0
    assert out["returning_customers"] == 1

    empty = ProfitEngine(repo).period_summary("t1", date(2023, 1, 1), date(2023, 1, 31))
    assert empty.average_ltv is None
    assert empty.repeat_customer_rate == Decimal("0")
    assert empty.to_dict()["average_ltv"] is None
