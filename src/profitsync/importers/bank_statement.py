from __future__ import annotations

import csv
import io
import logging
import re
from decimal import Decimal
from pathlib import Path
from typing import Any

from profitsync.errors import ValidationError
from profitsync.normalize import parse_calendar_date, parse_decimal
from profitsync.repo import Repo
from profitsync.util import read_text_best_effort, sha256_hex

logger = logging.getLogger(__name__)

DATE_COLUMNS = ("datum", "date", "bokföringsdatum", "transaktionsdatum")
TEXT_COLUMNS = ("text", "beskrivning", "description", "meddelande")
AMOUNT_COLUMNS = ("belopp", "amount", "summa")
BALANCE_COLUMNS = ("saldo", "balance", "behållning")

_THOUSANDS_DOT_RE = re.compile(r"\.(?=\d{3}(\D|$))")


def _find_column(headers: list[str], candidates: tuple[str, ...]) -> int:
    for candidate in candidates:
        for idx, h in enumerate(headers):
            if candidate in h:
                return idx
    return -1


def parse_swedish_number(raw: Any) -> Decimal:
    """'1 234,50' / '1.234,50' / '-99,00' -> Decimal. Unparseable -> 0."""
    s = re.sub(r"\s+", "", str(raw or "")).replace("−", "-")
    if "," in s:
        s = _THOUSANDS_DOT_RE.sub("", s)
    return parse_decimal(s)


def import_bank_statement_csv(repo: Repo, *, team_id: str, path: Path) -> dict[str, Any]:
    """
    Import a bank statement export (Swedish banks: ';' separated, comma decimals).

    Required columns (matched loosely on header text):
    - datum/date, text/beskrivning, belopp/amount
    Optional:
    - saldo/balance

    Rows are keyed by a hash of their content, so re-importing the same file
    (or an overlapping export) does not duplicate transactions.
    """
    text = read_text_best_effort(path).strip()
    lines = text.splitlines()
    if len(lines) < 2:
        return {"ok": False, "rows": 0, "imported": 0, "skipped": 0, "errors": ["CSV file has no data rows"]}

    delimiter = ";" if ";" in lines[0] else ","
    reader = csv.reader(io.StringIO(text), delimiter=delimiter)
    headers = [h.strip().lower() for h in next(reader)]

    date_idx = _find_column(headers, DATE_COLUMNS)
    text_idx = _find_column(headers, TEXT_COLUMNS)
    amount_idx = _find_column(headers, AMOUNT_COLUMNS)
    balance_idx = _find_column(headers, BALANCE_COLUMNS)
    if min(date_idx, text_idx, amount_idx) < 0:
        return {
            "ok": False,
            "rows": len(lines) - 1,
            "imported": 0,
            "skipped": len(lines) - 1,
            "errors": ["Could not find required columns (Datum, Text, Belopp)"],
        }

    rows = 0
    imported = 0
    skipped = 0
    errors: list[str] = []
    with repo.transaction() as conn:
        for line_no, values in enumerate(reader, start=2):
            if not any(v.strip() for v in values):
                continue
            rows += 1
            cells = [v.strip() for v in values]
            raw_date = cells[date_idx] if date_idx < len(cells) else ""
            try:
                day = parse_calendar_date(raw_date or None)
            except ValidationError:
                errors.append(f"Row {line_no}: invalid date {raw_date!r}")
                skipped += 1
                continue
            description = cells[text_idx] if text_idx < len(cells) else ""
            amount = parse_swedish_number(cells[amount_idx] if amount_idx < len(cells) else "0")
            balance = (
                parse_swedish_number(cells[balance_idx])
                if 0 <= balance_idx < len(cells) and cells[balance_idx]
                else None
            )
            row_hash = sha256_hex(f"{day.isoformat()}|{description}|{amount}|{balance}")
            if repo.insert_bank_transaction(
                conn,
                team_id=team_id,
                day=day,
                description=description,
                amount=amount,
                balance=balance,
                row_hash=row_hash,
            ):
                imported += 1
            else:
                skipped += 1

    logger.info("[import] bank statement %s: %d rows, %d imported, %d skipped", path.name, rows, imported, skipped)
    return {"ok": True, "rows": rows, "imported": imported, "skipped": skipped, "errors": errors}
