from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Sequence

from profitsync.errors import PersistenceError, ValidationError
from profitsync.normalize import NormalizedRecord, OrderRecord, SpendRecord, VariantCostRecord, VariantRecord
from profitsync.repo import Repo

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50


@dataclass
class ReconcileResult:
    inserted: int = 0
    updated: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def written(self) -> int:
        return self.inserted + self.updated

    def merge(self, other: "ReconcileResult") -> None:
        self.inserted += other.inserted
        self.updated += other.updated
        self.failed += other.failed
        self.errors.extend(other.errors)

    def to_dict(self) -> dict[str, int]:
        return {"inserted": self.inserted, "updated": self.updated, "failed": self.failed}


def _describe(rec: NormalizedRecord) -> str:
    return f"{type(rec).__name__}{rec.natural_key}"


class Reconciler:
    """
    Idempotent create-or-replace of normalized records by natural key.

    Records are written in array order, `batch_size` per transaction. Each record
    runs inside its own savepoint so an integrity failure skips only that record.
    A failure of the transaction itself (lock timeout, commit error) fails the
    whole batch; batches already committed stand. Watermarks are not touched here.
    """

    def __init__(self, repo: Repo, *, batch_size: int = DEFAULT_BATCH_SIZE):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.repo = repo
        self.batch_size = batch_size

    def reconcile(self, records: Sequence[NormalizedRecord]) -> ReconcileResult:
        result = ReconcileResult()
        for start in range(0, len(records), self.batch_size):
            batch = records[start : start + self.batch_size]
            try:
                result.merge(self._reconcile_batch(batch))
            except PersistenceError as e:
                logger.error("[reconcile] batch of %d failed: %s", len(batch), e)
                result.failed += len(batch)
                result.errors.append(str(e))
        return result

    def _reconcile_batch(self, batch: Sequence[NormalizedRecord]) -> ReconcileResult:
        out = ReconcileResult()
        try:
            with self.repo.transaction() as conn:
                for idx, rec in enumerate(batch):
                    try:
                        with self.repo.savepoint(conn, f"rec_{idx}"):
                            inserted = self._apply(conn, rec)
                    except (sqlite3.IntegrityError, sqlite3.DataError, ValidationError) as e:
                        logger.warning("[reconcile] skipped %s: %s", _describe(rec), e)
                        out.failed += 1
                        out.errors.append(f"{_describe(rec)}: {e}")
                        continue
                    if inserted:
                        out.inserted += 1
                    else:
                        out.updated += 1
        except sqlite3.Error as e:
            raise PersistenceError(f"{type(e).__name__}: {e}") from e
        return out

    def _apply(self, conn: sqlite3.Connection, rec: NormalizedRecord) -> bool:
        """Write one record; returns True when the natural key (or cost entry) was new."""
        if isinstance(rec, SpendRecord):
            existed = self.repo.spend_exists(conn, rec.natural_key)
            self.repo.upsert_spend(conn, rec)
        elif isinstance(rec, OrderRecord):
            existed = self.repo.order_exists(conn, rec.natural_key)
            self.repo.upsert_order(conn, rec)
        elif isinstance(rec, VariantRecord):
            existed = self.repo.variant_exists(conn, rec.natural_key)
            self.repo.upsert_variant(conn, rec)
        elif isinstance(rec, VariantCostRecord):
            return self.repo.apply_variant_cost(conn, rec)
        else:
            raise TypeError(f"Unsupported record type: {type(rec).__name__}")
        return not existed
