from __future__ import annotations

from datetime import date
from decimal import Decimal
from pathlib import Path

from profitsync.db import LedgerDB
from profitsync.importers.bank_statement import import_bank_statement_csv, parse_swedish_number
from profitsync.importers.cogs_csv import import_cogs_csv
from profitsync.normalize import VariantRecord
from profitsync.reconcile import Reconciler
from profitsync.repo import Repo


def _repo(tmp_path: Path) -> Repo:
    db_path = tmp_path / "ledger.sqlite3"
    LedgerDB(db_path).init()
    return Repo(db_path)


def test_parse_swedish_number() -> None:
    assert parse_swedish_number("1 234,50") == Decimal("1234.50")
    assert parse_swedish_number("1.234,50") == Decimal("1234.50")
    assert parse_swedish_number("−" + "99,00") == Decimal("-99.00")
    assert parse_swedish_number("") == Decimal("0")


def test_bank_statement_import_is_idempotent(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    csv_path = tmp_path / "statement.csv"
    csv_path.write_text(
        "Bokföringsdatum;Text;Belopp;Saldo\n"
        "2024-01-15;Kortköp ICA;-1 234,50;10 000,00\n"
        "16/01/2024;Swish;500,00;10 500,00\n"
        "igår;Okänd;1,00;1,00\n",
        encoding="utf-8",
    )

    first = import_bank_statement_csv(repo, team_id="t1", path=csv_path)
    assert first["ok"] is True
    assert (first["rows"], first["imported"], first["skipped"]) == (3, 2, 1)
    assert len(first["errors"]) == 1

    second = import_bank_statement_csv(repo, team_id="t1", path=csv_path)
    assert second["imported"] == 0
    assert second["skipped"] == 3

    rows = repo.list_bank_transactions("t1")
    assert [r["date"] for r in rows] == ["2024-01-15", "2024-01-16"]
    assert Decimal(rows[0]["amount"]) == Decimal("-1234.50")
    assert Decimal(rows[1]["balance"]) == Decimal("10500.00")
    # Another team importing the same file gets its own rows.
    assert import_bank_statement_csv(repo, team_id="t2", path=csv_path)["imported"] == 2


def test_bank_statement_without_required_columns(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    csv_path = tmp_path / "bad.csv"
    csv_path.write_text("foo,bar\n1,2\n", encoding="utf-8")

    res = import_bank_statement_csv(repo, team_id="t1", path=csv_path)

    assert res["ok"] is False
    assert res["imported"] == 0


def test_cogs_csv_import(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    store = repo.create_account(team_id="t1", platform="shopify", external_id="shop.myshopify.com", name="Shop")
    Reconciler(repo).reconcile(
        [
            VariantRecord(store_id=store, external_variant_id="501", sku="MUG"),
            VariantRecord(store_id=store, external_variant_id="502", sku="CUP"),
        ]
    )
    csv_path = tmp_path / "cogs.csv"
    csv_path.write_text(
        "sku,variant_id,cost,effective_from\n"
        "MUG,,120,2024-01-01\n"
        ",502,\"80,5\",\n"
        "NOPE,,1,\n"
        "MUG,,-1,\n",
        encoding="utf-8",
    )

    res = import_cogs_csv(repo, store_id=store, path=csv_path, default_effective_from=date(2024, 2, 1))

    assert res["ok"] is False
    assert (res["rows"], res["imported"]) == (4, 2)
    assert len(res["errors"]) == 2

    cup = repo.find_variant(store, external_variant_id="502")
    entries = repo.list_cost_entries([cup["id"]])
    assert len(entries) == 1
    assert Decimal(entries[0]["cost_price"]) == Decimal("80.5")
    assert entries[0]["effective_from"] == "2024-02-01T00:00:00+00:00"
    assert entries[0]["source"] == "csv"

    later = tmp_path / "cogs_later.csv"
    later.write_text("sku;cost;effective_from\nMUG;130;2024-06-01\n", encoding="utf-8")
    assert import_cogs_csv(repo, store_id=store, path=later)["imported"] == 1

    mug = repo.find_variant(store, sku="MUG")
    entries = repo.list_cost_entries([mug["id"]])
    assert [e["effective_to"] for e in entries] == ["2024-06-01T00:00:00+00:00", None]


def test_cogs_csv_row_dated_before_the_open_entry_is_rejected(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    store = repo.create_account(team_id="t1", platform="shopify", external_id="shop.myshopify.com", name="Shop")
    Reconciler(repo).reconcile([VariantRecord(store_id=store, external_variant_id="501", sku="MUG")])
    csv_path = tmp_path / "cogs.csv"
    csv_path.write_text("sku,cost,effective_from\nMUG,120,2024-03-01\nMUG,100,2024-01-01\n", encoding="utf-8")

    res = import_cogs_csv(repo, store_id=store, path=csv_path)

    assert res["ok"] is False
    assert (res["rows"], res["imported"]) == (2, 1)
    assert res["errors"][0].startswith("Row 3:")

    mug = repo.find_variant(store, sku="MUG")
    entries = repo.list_cost_entries([mug["id"]])
    assert [(e["effective_from"], e["effective_to"]) for e in entries] == [("2024-03-01T00:00:00+00:00", None)]
