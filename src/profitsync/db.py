from __future__ import annotations

import sqlite3
from pathlib import Path


SCHEMA_VERSION = 2


class LedgerDB:
    def __init__(self, db_path: Path):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    def init(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )
            current_version = self._get_schema_version(conn)

            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                  id TEXT PRIMARY KEY,
                  team_id TEXT NOT NULL,
                  platform TEXT NOT NULL,
                  kind TEXT NOT NULL,
                  external_id TEXT NOT NULL,
                  name TEXT NOT NULL,
                  currency TEXT NOT NULL DEFAULT 'SEK',
                  is_active INTEGER NOT NULL DEFAULT 1,
                  credentials_json TEXT NOT NULL DEFAULT '{}',
                  config_json TEXT NOT NULL DEFAULT '{}',
                  last_sync_at TEXT,
                  last_sync_status TEXT,
                  sync_error TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  UNIQUE(team_id, platform, external_id)
                );

                CREATE INDEX IF NOT EXISTS idx_accounts_team_active
                ON accounts(team_id, is_active);

                CREATE TABLE IF NOT EXISTS orders (
                  store_id TEXT NOT NULL,
                  external_order_id TEXT NOT NULL,
                  order_number TEXT,
                  currency TEXT,
                  total_price TEXT NOT NULL DEFAULT '0',
                  subtotal_price TEXT NOT NULL DEFAULT '0',
                  total_tax TEXT NOT NULL DEFAULT '0',
                  total_discounts TEXT NOT NULL DEFAULT '0',
                  total_shipping_price TEXT NOT NULL DEFAULT '0',
                  total_refunds TEXT NOT NULL DEFAULT '0',
                  financial_status TEXT,
                  fulfillment_status TEXT,
                  customer_email TEXT,
                  shipping_country TEXT,
                  tags_json TEXT NOT NULL DEFAULT '[]',
                  ordered_at TEXT,
                  processed_at TEXT,
                  cancelled_at TEXT,
                  upstream_updated_at TEXT,
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (store_id, external_order_id),
                  FOREIGN KEY (store_id) REFERENCES accounts(id)
                );

                CREATE INDEX IF NOT EXISTS idx_orders_store_ordered
                ON orders(store_id, ordered_at);

                CREATE TABLE IF NOT EXISTS product_variants (
                  id TEXT PRIMARY KEY,
                  store_id TEXT NOT NULL,
                  external_variant_id TEXT NOT NULL,
                  external_product_id TEXT NOT NULL DEFAULT '',
                  title TEXT,
                  sku TEXT,
                  price TEXT NOT NULL DEFAULT '0',
                  shipping_exempt INTEGER NOT NULL DEFAULT 0,
                  updated_at TEXT NOT NULL,
                  UNIQUE(store_id, external_variant_id),
                  FOREIGN KEY (store_id) REFERENCES accounts(id)
                );

                CREATE INDEX IF NOT EXISTS idx_product_variants_sku
                ON product_variants(store_id, sku);

                CREATE TABLE IF NOT EXISTS order_line_items (
                  store_id TEXT NOT NULL,
                  external_order_id TEXT NOT NULL,
                  external_line_item_id TEXT NOT NULL,
                  external_variant_id TEXT NOT NULL DEFAULT '',
                  variant_id TEXT,
                  title TEXT,
                  sku TEXT,
                  quantity INTEGER NOT NULL DEFAULT 0,
                  price TEXT NOT NULL DEFAULT '0',
                  total_discount TEXT NOT NULL DEFAULT '0',
                  tax_amount TEXT NOT NULL DEFAULT '0',
                  PRIMARY KEY (store_id, external_order_id, external_line_item_id),
                  FOREIGN KEY (store_id, external_order_id)
                    REFERENCES orders(store_id, external_order_id) ON DELETE CASCADE,
                  FOREIGN KEY (variant_id) REFERENCES product_variants(id) ON DELETE SET NULL
                );

                CREATE TABLE IF NOT EXISTS order_refunds (
                  store_id TEXT NOT NULL,
                  external_order_id TEXT NOT NULL,
                  external_refund_id TEXT NOT NULL,
                  amount TEXT NOT NULL DEFAULT '0',
                  note TEXT,
                  restock INTEGER NOT NULL DEFAULT 0,
                  processed_at TEXT,
                  PRIMARY KEY (store_id, external_order_id, external_refund_id),
                  FOREIGN KEY (store_id, external_order_id)
                    REFERENCES orders(store_id, external_order_id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS order_transactions (
                  store_id TEXT NOT NULL,
                  external_order_id TEXT NOT NULL,
                  external_transaction_id TEXT NOT NULL,
                  kind TEXT NOT NULL,
                  gateway TEXT,
                  status TEXT,
                  amount TEXT NOT NULL DEFAULT '0',
                  fee TEXT,
                  currency TEXT,
                  processed_at TEXT,
                  PRIMARY KEY (store_id, external_order_id, external_transaction_id),
                  FOREIGN KEY (store_id, external_order_id)
                    REFERENCES orders(store_id, external_order_id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS cost_entries (
                  id TEXT PRIMARY KEY,
                  variant_id TEXT NOT NULL,
                  cost_price TEXT NOT NULL,
                  effective_from TEXT NOT NULL,
                  effective_to TEXT,
                  source TEXT NOT NULL DEFAULT 'manual',
                  created_at TEXT NOT NULL,
                  FOREIGN KEY (variant_id) REFERENCES product_variants(id) ON DELETE CASCADE
                );

                CREATE INDEX IF NOT EXISTS idx_cost_entries_variant_from
                ON cost_entries(variant_id, effective_from);

                CREATE TABLE IF NOT EXISTS ad_spend (
                  account_id TEXT NOT NULL,
                  date TEXT NOT NULL,
                  campaign_id TEXT NOT NULL DEFAULT '',
                  ad_set_id TEXT NOT NULL DEFAULT '',
                  campaign_name TEXT,
                  ad_set_name TEXT,
                  spend TEXT NOT NULL DEFAULT '0',
                  impressions INTEGER NOT NULL DEFAULT 0,
                  clicks INTEGER NOT NULL DEFAULT 0,
                  conversions INTEGER NOT NULL DEFAULT 0,
                  revenue TEXT NOT NULL DEFAULT '0',
                  roas TEXT NOT NULL DEFAULT '0',
                  cpc TEXT NOT NULL DEFAULT '0',
                  cpm TEXT NOT NULL DEFAULT '0',
                  currency TEXT,
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (account_id, date, campaign_id, ad_set_id),
                  FOREIGN KEY (account_id) REFERENCES accounts(id)
                );

                CREATE INDEX IF NOT EXISTS idx_ad_spend_date
                ON ad_spend(date);

                CREATE TABLE IF NOT EXISTS payment_fee_configs (
                  store_id TEXT NOT NULL,
                  gateway TEXT NOT NULL,
                  fee_type TEXT NOT NULL,
                  percentage_fee TEXT NOT NULL DEFAULT '0',
                  fixed_fee TEXT NOT NULL DEFAULT '0',
                  is_active INTEGER NOT NULL DEFAULT 1,
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (store_id, gateway),
                  FOREIGN KEY (store_id) REFERENCES accounts(id)
                );

                CREATE TABLE IF NOT EXISTS shipping_tiers (
                  id TEXT PRIMARY KEY,
                  store_id TEXT NOT NULL,
                  min_items INTEGER NOT NULL,
                  max_items INTEGER,
                  cost TEXT NOT NULL,
                  cost_per_additional_item TEXT NOT NULL DEFAULT '0',
                  shipping_zone TEXT,
                  is_active INTEGER NOT NULL DEFAULT 1,
                  created_at TEXT NOT NULL,
                  FOREIGN KEY (store_id) REFERENCES accounts(id)
                );

                CREATE TABLE IF NOT EXISTS bank_transactions (
                  id TEXT PRIMARY KEY,
                  team_id TEXT NOT NULL,
                  date TEXT NOT NULL,
                  description TEXT NOT NULL,
                  amount TEXT NOT NULL,
                  balance TEXT,
                  row_hash TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  UNIQUE(team_id, row_hash)
                );
                """
            )
            if current_version < 2:
                self._migrate_to_v2(conn)
            conn.execute(
                "INSERT OR REPLACE INTO meta(key, value) VALUES(?, ?)",
                ("schema_version", str(SCHEMA_VERSION)),
            )

    def _get_schema_version(self, conn: sqlite3.Connection) -> int:
        row = conn.execute(
            "SELECT value FROM meta WHERE key='schema_version'"
        ).fetchone()
        if not row:
            return 0
        try:
            return int(row["value"])
        except ValueError:
            return 0

    def _migrate_to_v2(self, conn: sqlite3.Connection) -> None:
        # v2: at most one open cost entry per variant.
        conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_cost_entries_open
            ON cost_entries(variant_id) WHERE effective_to IS NULL
            """
        )
