from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator

from profitsync.errors import ValidationError
from profitsync.normalize import (
    NO_ID,
    OrderRecord,
    SpendRecord,
    VariantCostRecord,
    VariantRecord,
    canonical_id,
)
from profitsync.util import new_id, now_utc, now_utc_iso, parse_iso_utc


PLATFORM_KINDS = {
    "shopify": "store",
    "facebook": "ad_account",
    "google_sheets": "ad_account",
}

STATUS_SUCCESS = "SUCCESS"
STATUS_FAILED = "FAILED"
STATUS_PARTIAL = "PARTIAL"

COST_SOURCE_SHOPIFY = "shopify"
COST_HISTORY_START = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _money(d: Decimal | None) -> str | None:
    return None if d is None else str(d)


def _ts(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat()


def _day(d: date | datetime) -> str:
    return (d.date() if isinstance(d, datetime) else d).isoformat()


def _placeholders(n: int) -> str:
    return ",".join("?" for _ in range(n))


class Repo:
    """
    Ledger repository shared by the orchestrator, web app, importers and CLI.
    All SQL lives here (sqlite3 only).
    """

    def __init__(self, db_path: Path, *, busy_timeout: float = 15.0):
        self.db_path = db_path
        self.busy_timeout = busy_timeout

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Explicit write transaction (BEGIN IMMEDIATE). Commits on success,
        rolls back and re-raises on any error.
        """
        conn = self.connect()
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @staticmethod
    @contextmanager
    def savepoint(conn: sqlite3.Connection, name: str) -> Iterator[None]:
        conn.execute(f"SAVEPOINT {name}")
        try:
            yield
        except BaseException:
            conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        conn.execute(f"RELEASE SAVEPOINT {name}")

    # Accounts

    def create_account(
        self,
        *,
        team_id: str,
        platform: str,
        external_id: str,
        name: str,
        currency: str = "SEK",
        credentials_json: str = "{}",
        config: dict[str, Any] | None = None,
    ) -> str:
        if platform not in PLATFORM_KINDS:
            raise ValueError(f"Unknown platform: {platform}")
        now = now_utc_iso()
        account_id = new_id("acc")
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO accounts(
                  id, team_id, platform, kind, external_id, name, currency, is_active,
                  credentials_json, config_json, created_at, updated_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?)
                """,
                (
                    account_id,
                    team_id,
                    platform,
                    PLATFORM_KINDS[platform],
                    external_id.strip(),
                    name,
                    currency,
                    credentials_json,
                    json.dumps(config or {}, ensure_ascii=True),
                    now,
                    now,
                ),
            )
        return account_id

    def get_account(self, account_id: str, *, team_id: str | None = None) -> dict[str, Any] | None:
        sql = "SELECT * FROM accounts WHERE id=?"
        params: list[Any] = [account_id]
        if team_id is not None:
            sql += " AND team_id=?"
            params.append(team_id)
        with self.connect() as conn:
            row = conn.execute(sql, params).fetchone()
            return dict(row) if row else None

    def list_accounts(
        self,
        team_id: str,
        *,
        active_only: bool = True,
        account_id: str | None = None,
    ) -> list[dict[str, Any]]:
        sql = "SELECT * FROM accounts WHERE team_id=?"
        params: list[Any] = [team_id]
        if active_only:
            sql += " AND is_active=1"
        if account_id is not None:
            sql += " AND id=?"
            params.append(account_id)
        sql += " ORDER BY platform, name"
        with self.connect() as conn:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]

    def list_active_team_ids(self) -> list[str]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT DISTINCT team_id FROM accounts WHERE is_active=1 ORDER BY team_id"
            ).fetchall()
            return [str(r["team_id"]) for r in rows]

    def deactivate_account(self, account_id: str, *, team_id: str) -> bool:
        with self.connect() as conn:
            cur = conn.execute(
                "UPDATE accounts SET is_active=0, updated_at=? WHERE id=? AND team_id=?",
                (now_utc_iso(), account_id, team_id),
            )
            return cur.rowcount > 0

    def update_account_credentials(self, account_id: str, credentials_json: str) -> None:
        with self.connect() as conn:
            conn.execute(
                "UPDATE accounts SET credentials_json=?, updated_at=? WHERE id=?",
                (credentials_json, now_utc_iso(), account_id),
            )

    def mark_sync_success(self, account_id: str, *, watermark: datetime | None) -> None:
        """Record a successful run. A None watermark keeps the previous one."""
        with self.connect() as conn:
            conn.execute(
                """
                UPDATE accounts
                SET last_sync_at=COALESCE(?, last_sync_at), last_sync_status=?,
                    sync_error=NULL, updated_at=?
                WHERE id=?
                """,
                (_ts(watermark), STATUS_SUCCESS, now_utc_iso(), account_id),
            )

    def mark_sync_failed(self, account_id: str, *, error: str, status: str = STATUS_FAILED) -> None:
        # Watermark stays where it was.
        with self.connect() as conn:
            conn.execute(
                "UPDATE accounts SET last_sync_status=?, sync_error=?, updated_at=? WHERE id=?",
                (status, error[:2000], now_utc_iso(), account_id),
            )

    # Reconcile writes (caller owns the transaction)

    def spend_exists(self, conn: sqlite3.Connection, key: tuple[str, str, str, str]) -> bool:
        row = conn.execute(
            """
            SELECT 1 FROM ad_spend
            WHERE account_id=? AND date=? AND campaign_id=? AND ad_set_id=?
            """,
            key,
        ).fetchone()
        return row is not None

    def upsert_spend(self, conn: sqlite3.Connection, rec: SpendRecord) -> None:
        account_id, day, campaign_id, ad_set_id = rec.natural_key
        conn.execute(
            """
            INSERT INTO ad_spend(
              account_id, date, campaign_id, ad_set_id, campaign_name, ad_set_name,
              spend, impressions, clicks, conversions, revenue, roas, cpc, cpm,
              currency, updated_at
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(account_id, date, campaign_id, ad_set_id) DO UPDATE SET
              campaign_name=excluded.campaign_name,
              ad_set_name=excluded.ad_set_name,
              spend=excluded.spend,
              impressions=excluded.impressions,
              clicks=excluded.clicks,
              conversions=excluded.conversions,
              revenue=excluded.revenue,
              roas=excluded.roas,
              cpc=excluded.cpc,
              cpm=excluded.cpm,
              currency=excluded.currency,
              updated_at=excluded.updated_at
            """,
            (
                account_id,
                day,
                campaign_id,
                ad_set_id,
                rec.campaign_name,
                rec.ad_set_name,
                _money(rec.spend),
                rec.impressions,
                rec.clicks,
                rec.conversions,
                _money(rec.revenue),
                _money(rec.roas),
                _money(rec.cpc),
                _money(rec.cpm),
                rec.currency,
                now_utc_iso(),
            ),
        )

    def variant_exists(self, conn: sqlite3.Connection, key: tuple[str, str]) -> bool:
        row = conn.execute(
            "SELECT 1 FROM product_variants WHERE store_id=? AND external_variant_id=?",
            key,
        ).fetchone()
        return row is not None

    def upsert_variant(self, conn: sqlite3.Connection, rec: VariantRecord) -> None:
        conn.execute(
            """
            INSERT INTO product_variants(
              id, store_id, external_variant_id, external_product_id, title, sku,
              price, shipping_exempt, updated_at
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(store_id, external_variant_id) DO UPDATE SET
              external_product_id=excluded.external_product_id,
              title=excluded.title,
              sku=excluded.sku,
              price=excluded.price,
              shipping_exempt=excluded.shipping_exempt,
              updated_at=excluded.updated_at
            """,
            (
                new_id("var"),
                rec.store_id,
                rec.external_variant_id,
                rec.external_product_id,
                rec.title,
                rec.sku,
                _money(rec.price),
                1 if rec.shipping_exempt else 0,
                now_utc_iso(),
            ),
        )

    def resolve_variant_id(self, conn: sqlite3.Connection, store_id: str, external_variant_id: Any) -> str | None:
        ext = canonical_id(external_variant_id)
        if ext == NO_ID:
            return None
        row = conn.execute(
            "SELECT id FROM product_variants WHERE store_id=? AND external_variant_id=?",
            (store_id, ext),
        ).fetchone()
        return str(row["id"]) if row else None

    def order_exists(self, conn: sqlite3.Connection, key: tuple[str, str]) -> bool:
        row = conn.execute(
            "SELECT 1 FROM orders WHERE store_id=? AND external_order_id=?",
            key,
        ).fetchone()
        return row is not None

    def upsert_order(self, conn: sqlite3.Connection, rec: OrderRecord) -> None:
        """
        Replace the order row and its children by natural key. Children absent
        from `rec` are removed in the same transaction.
        """
        store_id, order_id = rec.natural_key
        conn.execute(
            """
            INSERT INTO orders(
              store_id, external_order_id, order_number, currency,
              total_price, subtotal_price, total_tax, total_discounts,
              total_shipping_price, total_refunds, financial_status, fulfillment_status,
              customer_email, shipping_country, tags_json, ordered_at, processed_at,
              cancelled_at, upstream_updated_at, updated_at
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(store_id, external_order_id) DO UPDATE SET
              order_number=excluded.order_number,
              currency=excluded.currency,
              total_price=excluded.total_price,
              subtotal_price=excluded.subtotal_price,
              total_tax=excluded.total_tax,
              total_discounts=excluded.total_discounts,
              total_shipping_price=excluded.total_shipping_price,
              total_refunds=excluded.total_refunds,
              financial_status=excluded.financial_status,
              fulfillment_status=excluded.fulfillment_status,
              customer_email=excluded.customer_email,
              shipping_country=excluded.shipping_country,
              tags_json=excluded.tags_json,
              ordered_at=excluded.ordered_at,
              processed_at=excluded.processed_at,
              cancelled_at=excluded.cancelled_at,
              upstream_updated_at=excluded.upstream_updated_at,
              updated_at=excluded.updated_at
            """,
            (
                store_id,
                order_id,
                rec.order_number,
                rec.currency,
                _money(rec.total_price),
                _money(rec.subtotal_price),
                _money(rec.total_tax),
                _money(rec.total_discounts),
                _money(rec.total_shipping_price),
                _money(rec.total_refunds),
                rec.financial_status,
                rec.fulfillment_status,
                rec.customer_email,
                rec.shipping_country,
                json.dumps(list(rec.tags), ensure_ascii=True),
                _ts(rec.ordered_at),
                _ts(rec.processed_at),
                _ts(rec.cancelled_at),
                _ts(rec.upstream_updated_at),
                now_utc_iso(),
            ),
        )

        for li in rec.line_items:
            conn.execute(
                """
                INSERT INTO order_line_items(
                  store_id, external_order_id, external_line_item_id, external_variant_id,
                  variant_id, title, sku, quantity, price, total_discount, tax_amount
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(store_id, external_order_id, external_line_item_id) DO UPDATE SET
                  external_variant_id=excluded.external_variant_id,
                  variant_id=excluded.variant_id,
                  title=excluded.title,
                  sku=excluded.sku,
                  quantity=excluded.quantity,
                  price=excluded.price,
                  total_discount=excluded.total_discount,
                  tax_amount=excluded.tax_amount
                """,
                (
                    store_id,
                    order_id,
                    li.external_line_item_id,
                    li.external_variant_id,
                    self.resolve_variant_id(conn, store_id, li.external_variant_id),
                    li.title,
                    li.sku,
                    li.quantity,
                    _money(li.price),
                    _money(li.total_discount),
                    _money(li.tax_amount),
                ),
            )
        self._delete_stale_children(
            conn, "order_line_items", "external_line_item_id", store_id, order_id,
            [li.external_line_item_id for li in rec.line_items],
        )

        for rf in rec.refunds:
            conn.execute(
                """
                INSERT INTO order_refunds(
                  store_id, external_order_id, external_refund_id, amount, note, restock, processed_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(store_id, external_order_id, external_refund_id) DO UPDATE SET
                  amount=excluded.amount,
                  note=excluded.note,
                  restock=excluded.restock,
                  processed_at=excluded.processed_at
                """,
                (
                    store_id,
                    order_id,
                    rf.external_refund_id,
                    _money(rf.amount),
                    rf.note,
                    1 if rf.restock else 0,
                    _ts(rf.processed_at),
                ),
            )
        self._delete_stale_children(
            conn, "order_refunds", "external_refund_id", store_id, order_id,
            [rf.external_refund_id for rf in rec.refunds],
        )

        if rec.transactions is None:
            return
        for tx in rec.transactions:
            conn.execute(
                """
                INSERT INTO order_transactions(
                  store_id, external_order_id, external_transaction_id, kind, gateway,
                  status, amount, fee, currency, processed_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(store_id, external_order_id, external_transaction_id) DO UPDATE SET
                  kind=excluded.kind,
                  gateway=excluded.gateway,
                  status=excluded.status,
                  amount=excluded.amount,
                  fee=excluded.fee,
                  currency=excluded.currency,
                  processed_at=excluded.processed_at
                """,
                (
                    store_id,
                    order_id,
                    tx.external_transaction_id,
                    tx.kind,
                    tx.gateway,
                    tx.status,
                    _money(tx.amount),
                    _money(tx.fee),
                    tx.currency,
                    _ts(tx.processed_at),
                ),
            )
        self._delete_stale_children(
            conn, "order_transactions", "external_transaction_id", store_id, order_id,
            [tx.external_transaction_id for tx in rec.transactions],
        )

    @staticmethod
    def _delete_stale_children(
        conn: sqlite3.Connection,
        table: str,
        key_column: str,
        store_id: str,
        order_id: str,
        keep: list[str],
    ) -> None:
        sql = f"DELETE FROM {table} WHERE store_id=? AND external_order_id=?"
        params: list[Any] = [store_id, order_id]
        if keep:
            sql += f" AND {key_column} NOT IN ({_placeholders(len(keep))})"
            params.extend(keep)
        conn.execute(sql, params)

    # Ledger reads

    def find_spend(
        self,
        account_id: str,
        day: date | datetime,
        campaign_id: Any = None,
        ad_set_id: Any = None,
    ) -> list[dict[str, Any]]:
        """Lookup by natural key; optional ids go through the same canonical_id as writes."""
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM ad_spend
                WHERE account_id=? AND date=? AND campaign_id=? AND ad_set_id=?
                """,
                (account_id, _day(day), canonical_id(campaign_id), canonical_id(ad_set_id)),
            ).fetchall()
            return [dict(r) for r in rows]

    def count_rows(self, table: str) -> int:
        with self.connect() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()
            return int(row["n"])

    def get_order(self, store_id: str, external_order_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM orders WHERE store_id=? AND external_order_id=?",
                (store_id, external_order_id),
            ).fetchone()
            if not row:
                return None
            out = dict(row)
            key = (store_id, external_order_id)
            out["line_items"] = [
                dict(r)
                for r in conn.execute(
                    """
                    SELECT li.*, COALESCE(pv.shipping_exempt, 0) AS shipping_exempt
                    FROM order_line_items li
                    LEFT JOIN product_variants pv ON pv.id = li.variant_id
                    WHERE li.store_id=? AND li.external_order_id=?
                    ORDER BY li.external_line_item_id
                    """,
                    key,
                ).fetchall()
            ]
            out["refunds"] = [
                dict(r)
                for r in conn.execute(
                    "SELECT * FROM order_refunds WHERE store_id=? AND external_order_id=?",
                    key,
                ).fetchall()
            ]
            out["transactions"] = [
                dict(r)
                for r in conn.execute(
                    "SELECT * FROM order_transactions WHERE store_id=? AND external_order_id=?",
                    key,
                ).fetchall()
            ]
            return out

    def list_orders_for_period(self, team_id: str, start: datetime, end: datetime) -> list[dict[str, Any]]:
        """Orders (with children) whose ordered_at falls in [start, end)."""
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT o.store_id, o.external_order_id
                FROM orders o
                JOIN accounts a ON a.id = o.store_id
                WHERE a.team_id=? AND o.ordered_at >= ? AND o.ordered_at < ?
                ORDER BY o.ordered_at, o.external_order_id
                """,
                (team_id, _ts(start), _ts(end)),
            ).fetchall()
        out: list[dict[str, Any]] = []
        for r in rows:
            order = self.get_order(str(r["store_id"]), str(r["external_order_id"]))
            if order is not None:
                out.append(order)
        return out

    def list_customer_orders(self, team_id: str, before: datetime) -> list[dict[str, Any]]:
        """Non-cancelled orders with a customer email, ordered before `before`, oldest first."""
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT o.customer_email, o.ordered_at, o.total_price, o.total_tax,
                       o.total_discounts, o.total_refunds
                FROM orders o
                JOIN accounts a ON a.id = o.store_id
                WHERE a.team_id=? AND o.cancelled_at IS NULL
                  AND o.customer_email IS NOT NULL AND o.customer_email <> ''
                  AND o.ordered_at < ?
                ORDER BY o.ordered_at, o.external_order_id
                """,
                (team_id, _ts(before)),
            ).fetchall()
            return [dict(r) for r in rows]

    def list_ad_spend_for_period(self, team_id: str, start: date, end: date) -> list[dict[str, Any]]:
        """Spend rows for dates in [start, end)."""
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT s.*, a.platform
                FROM ad_spend s
                JOIN accounts a ON a.id = s.account_id
                WHERE a.team_id=? AND s.date >= ? AND s.date < ?
                ORDER BY s.date, s.account_id, s.campaign_id, s.ad_set_id
                """,
                (team_id, _day(start), _day(end)),
            ).fetchall()
            return [dict(r) for r in rows]

    # Variants & cost entries

    def find_variant(
        self,
        store_id: str,
        *,
        external_variant_id: Any = None,
        sku: str | None = None,
    ) -> dict[str, Any] | None:
        with self.connect() as conn:
            ext = canonical_id(external_variant_id)
            if ext != NO_ID:
                row = conn.execute(
                    "SELECT * FROM product_variants WHERE store_id=? AND external_variant_id=?",
                    (store_id, ext),
                ).fetchone()
                return dict(row) if row else None
            if sku:
                row = conn.execute(
                    "SELECT * FROM product_variants WHERE store_id=? AND sku=? ORDER BY updated_at DESC",
                    (store_id, sku.strip()),
                ).fetchone()
                return dict(row) if row else None
        return None

    def create_cost_entry(
        self,
        *,
        variant_id: str,
        cost_price: Decimal,
        effective_from: datetime,
        source: str = "manual",
    ) -> str:
        """
        Add a cost entry and close the currently open one at `effective_from`,
        atomically. Keeps at most one open entry per variant.

        Raises ValueError when `effective_from` is before the open entry's start.
        """
        with self.transaction() as conn:
            return self.open_cost_entry(
                conn,
                variant_id=variant_id,
                cost_price=cost_price,
                effective_from=effective_from,
                source=source,
            )

    @staticmethod
    def current_cost_entry(conn: sqlite3.Connection, variant_id: str) -> dict[str, Any] | None:
        row = conn.execute(
            "SELECT * FROM cost_entries WHERE variant_id=? AND effective_to IS NULL",
            (variant_id,),
        ).fetchone()
        return dict(row) if row else None

    def open_cost_entry(
        self,
        conn: sqlite3.Connection,
        *,
        variant_id: str,
        cost_price: Decimal,
        effective_from: datetime,
        source: str,
    ) -> str:
        current = self.current_cost_entry(conn, variant_id)
        if current is not None:
            current_from = parse_iso_utc(current["effective_from"])
            if effective_from < current_from:
                raise ValueError(
                    f"cost for {variant_id} effective {effective_from.date()} precedes the "
                    f"current entry from {current_from.date()}"
                )
            if effective_from == current_from:
                # Same start replaces the open entry's cost.
                conn.execute(
                    "UPDATE cost_entries SET cost_price=?, source=? WHERE id=?",
                    (_money(cost_price), source, current["id"]),
                )
                return str(current["id"])
            conn.execute(
                "UPDATE cost_entries SET effective_to=? WHERE id=?",
                (_ts(effective_from), current["id"]),
            )

        entry_id = new_id("cost")
        conn.execute(
            """
            INSERT INTO cost_entries(id, variant_id, cost_price, effective_from, effective_to, source, created_at)
            VALUES(?, ?, ?, ?, NULL, ?, ?)
            """,
            (entry_id, variant_id, _money(cost_price), _ts(effective_from), source, now_utc_iso()),
        )
        return entry_id

    def apply_variant_cost(self, conn: sqlite3.Connection, rec: VariantCostRecord) -> bool:
        """
        Record a platform-reported unit cost.

        Manual and CSV costs win: an open entry from another source is left alone.
        The first cost a variant ever gets covers its whole history; later changes
        take effect now. Returns True when a new entry was opened.
        """
        variant_id = self.resolve_variant_id(conn, rec.store_id, rec.external_variant_id)
        if variant_id is None:
            raise ValidationError(f"unknown variant {rec.external_variant_id} for store {rec.store_id}")
        current = self.current_cost_entry(conn, variant_id)
        if current is not None and current["source"] != COST_SOURCE_SHOPIFY:
            return False
        if current is not None and Decimal(str(current["cost_price"])) == rec.cost_price:
            return False
        has_history = conn.execute(
            "SELECT 1 FROM cost_entries WHERE variant_id=? LIMIT 1",
            (variant_id,),
        ).fetchone()
        self.open_cost_entry(
            conn,
            variant_id=variant_id,
            cost_price=rec.cost_price,
            effective_from=now_utc().replace(microsecond=0) if has_history else COST_HISTORY_START,
            source=COST_SOURCE_SHOPIFY,
        )
        return True

    def list_cost_entries(self, variant_ids: list[str]) -> list[dict[str, Any]]:
        if not variant_ids:
            return []
        with self.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM cost_entries
                WHERE variant_id IN ({_placeholders(len(variant_ids))})
                ORDER BY variant_id, effective_from
                """,
                variant_ids,
            ).fetchall()
            return [dict(r) for r in rows]

    # Fees & shipping configuration

    def upsert_fee_config(
        self,
        *,
        store_id: str,
        gateway: str,
        fee_type: str,
        percentage_fee: Decimal,
        fixed_fee: Decimal,
        is_active: bool = True,
    ) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO payment_fee_configs(
                  store_id, gateway, fee_type, percentage_fee, fixed_fee, is_active, updated_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(store_id, gateway) DO UPDATE SET
                  fee_type=excluded.fee_type,
                  percentage_fee=excluded.percentage_fee,
                  fixed_fee=excluded.fixed_fee,
                  is_active=excluded.is_active,
                  updated_at=excluded.updated_at
                """,
                (
                    store_id,
                    gateway.strip().lower(),
                    fee_type,
                    _money(percentage_fee),
                    _money(fixed_fee),
                    1 if is_active else 0,
                    now_utc_iso(),
                ),
            )

    def list_fee_configs(self, store_id: str) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM payment_fee_configs WHERE store_id=? ORDER BY gateway",
                (store_id,),
            ).fetchall()
            return [dict(r) for r in rows]

    def add_shipping_tier(
        self,
        *,
        store_id: str,
        min_items: int,
        max_items: int | None,
        cost: Decimal,
        cost_per_additional_item: Decimal = Decimal("0"),
        shipping_zone: str | None = None,
    ) -> str:
        tier_id = new_id("tier")
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO shipping_tiers(
                  id, store_id, min_items, max_items, cost, cost_per_additional_item,
                  shipping_zone, is_active, created_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, 1, ?)
                """,
                (
                    tier_id,
                    store_id,
                    min_items,
                    max_items,
                    _money(cost),
                    _money(cost_per_additional_item),
                    shipping_zone,
                    now_utc_iso(),
                ),
            )
        return tier_id

    def list_shipping_tiers(self, store_id: str) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM shipping_tiers WHERE store_id=? AND is_active=1 ORDER BY min_items",
                (store_id,),
            ).fetchall()
            return [dict(r) for r in rows]

    # Bank statements

    def insert_bank_transaction(
        self,
        conn: sqlite3.Connection,
        *,
        team_id: str,
        day: date,
        description: str,
        amount: Decimal,
        balance: Decimal | None,
        row_hash: str,
    ) -> bool:
        cur = conn.execute(
            """
            INSERT INTO bank_transactions(id, team_id, date, description, amount, balance, row_hash, created_at)
            VALUES(?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(team_id, row_hash) DO NOTHING
            """,
            (
                new_id("bank"),
                team_id,
                day.isoformat(),
                description,
                _money(amount),
                _money(balance),
                row_hash,
                now_utc_iso(),
            ),
        )
        return cur.rowcount > 0

    def list_bank_transactions(self, team_id: str) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM bank_transactions WHERE team_id=? ORDER BY date, created_at",
                (team_id,),
            ).fetchall()
            return [dict(r) for r in rows]
