from __future__ import annotations

import csv
import io
import logging
from datetime import date
from pathlib import Path
from typing import Any

from profitsync.errors import ValidationError
from profitsync.normalize import parse_calendar_date, parse_decimal
from profitsync.repo import Repo
from profitsync.util import now_utc, read_text_best_effort, utc_midnight

logger = logging.getLogger(__name__)


def import_cogs_csv(
    repo: Repo,
    *,
    store_id: str,
    path: Path,
    default_effective_from: date | None = None,
) -> dict[str, Any]:
    """
    Import unit costs as effective-dated cost entries.

    Columns:
    - variant_id (external Shopify variant id) or sku
    - cost
    Optional:
    - effective_from (YYYY-MM-DD); defaults to `default_effective_from` or today (UTC)

    Each row opens a new entry and closes the variant's previous open entry.
    Rows dated before the variant's open entry are rejected.
    """
    text = read_text_best_effort(path)
    delimiter = ";" if text.splitlines() and ";" in text.splitlines()[0] else ","
    reader = csv.DictReader(io.StringIO(text), delimiter=delimiter)
    fallback_day = default_effective_from or now_utc().date()

    rows = 0
    imported = 0
    errors: list[str] = []
    for line_no, r in enumerate(reader, start=2):
        row = {str(k).strip().lower(): (v or "").strip() for k, v in r.items() if k is not None}
        if not any(row.values()):
            continue
        rows += 1

        variant = repo.find_variant(
            store_id,
            external_variant_id=row.get("variant_id"),
            sku=row.get("sku") or None,
        )
        if variant is None:
            errors.append(f"Row {line_no}: unknown variant {row.get('variant_id') or row.get('sku')!r}")
            continue

        cost_raw = row.get("cost") or row.get("cost_price") or ""
        if cost_raw == "":
            errors.append(f"Row {line_no}: missing cost")
            continue
        cost = parse_decimal(cost_raw)
        if cost < 0:
            errors.append(f"Row {line_no}: negative cost")
            continue

        try:
            day = parse_calendar_date(row.get("effective_from")) if row.get("effective_from") else fallback_day
        except ValidationError as e:
            errors.append(f"Row {line_no}: {e}")
            continue

        try:
            repo.create_cost_entry(
                variant_id=str(variant["id"]),
                cost_price=cost,
                effective_from=utc_midnight(day),
                source="csv",
            )
        except ValueError as e:
            errors.append(f"Row {line_no}: {e}")
            continue
        imported += 1

    logger.info("[import] cogs %s: %d rows, %d imported", path.name, rows, imported)
    return {"ok": not errors, "rows": rows, "imported": imported, "errors": errors}
