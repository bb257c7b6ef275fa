from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable

from profitsync.config import Settings
from profitsync.connectors.base import FetchFilters, Page
from profitsync.credentials import CredentialCipher, seal_credentials
from profitsync.errors import AuthExpired, FetchError, Retryable, ValidationError
from profitsync.normalize import NormalizedRecord
from profitsync.reconcile import Reconciler
from profitsync.registry import build_adapter
from profitsync.repo import STATUS_FAILED, STATUS_PARTIAL, Repo
from profitsync.runs import COMPLETED, FAILED, RunStore
from profitsync.throttle import RateGovernor
from profitsync.util import now_utc, parse_iso_utc, utc_midnight

logger = logging.getLogger(__name__)

FULL = "full"
INCREMENTAL = "incremental"


@dataclass(frozen=True)
class SyncPlan:
    mode: str
    filters: FetchFilters
    # False when the window has an upper bound; a bounded run must not move the watermark.
    advances_watermark: bool = True


@dataclass
class SyncResult:
    source: str
    account_id: str
    platform: str
    success: bool = False
    count: int = 0
    skipped: int = 0
    failed: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "source": self.source,
            "account_id": self.account_id,
            "platform": self.platform,
            "success": self.success,
            "count": self.count,
            "skipped": self.skipped,
            "failed": self.failed,
        }
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class TeamSyncResult:
    run_id: str | None
    team_id: str
    results: list[SyncResult] = field(default_factory=list)

    @property
    def summary(self) -> dict[str, int]:
        successful = sum(1 for r in self.results if r.success)
        return {
            "total": len(self.results),
            "successful": successful,
            "failed": len(self.results) - successful,
            "items_synced": sum(r.count for r in self.results),
        }

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results)

    def message(self) -> str:
        s = self.summary
        if not s["total"]:
            return "No active accounts to sync"
        return f"Synced {s['items_synced']} records from {s['successful']}/{s['total']} sources"

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "run_id": self.run_id,
            "message": self.message(),
            "results": [r.to_dict() for r in self.results],
            "summary": self.summary,
        }


def _end_of_day(d: date) -> datetime:
    return datetime.combine(d, time(23, 59, 59), tzinfo=timezone.utc)


class SyncOrchestrator:
    """
    Runs fetch -> normalize -> reconcile per account and fans out across a team.

    Per account, pages are processed strictly in cursor order with a Rate
    Governor wait between them. Accounts run concurrently and independently:
    one failing never blocks or rolls back the others.
    """

    def __init__(
        self,
        repo: Repo,
        run_store: RunStore,
        settings: Settings,
        *,
        governor: RateGovernor | None = None,
        cipher: CredentialCipher | None = None,
        adapter_factory: Callable[..., Any] = build_adapter,
        http_client=None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.repo = repo
        self.run_store = run_store
        self.settings = settings
        self.governor = governor or RateGovernor()
        self.cipher = cipher
        self.reconciler = Reconciler(repo, batch_size=settings.batch_size)
        self._adapter_factory = adapter_factory
        self._http_client = http_client
        self._clock = clock

    # Planning

    def plan(
        self,
        account: dict[str, Any],
        *,
        full_sync: bool = False,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> SyncPlan:
        """
        full_sync wins over any watermark. Without a watermark the first sync is
        a full sync from date_from (or the initial lookback).
        """
        until = _end_of_day(date_to) if date_to else None
        watermark = parse_iso_utc(account.get("last_sync_at"))

        if full_sync or watermark is None:
            floor = date_from or (self._clock().date() - timedelta(days=self.settings.initial_lookback_days))
            return SyncPlan(
                mode=FULL,
                filters=FetchFilters(created_since=utc_midnight(floor), until=until),
                advances_watermark=until is None,
            )

        if account.get("kind") == "ad_account":
            # Ad platforms restate recent days; re-read a trailing window.
            since_day = watermark.date() - timedelta(days=self.settings.ads_restatement_days)
            filters = FetchFilters(created_since=utc_midnight(since_day), until=until)
        else:
            filters = FetchFilters(updated_since=watermark, until=until)
        return SyncPlan(mode=INCREMENTAL, filters=filters, advances_watermark=until is None)

    # Per-account

    def _build_adapter(self, account: dict[str, Any]):
        return self._adapter_factory(
            account,
            cipher=self.cipher,
            settings=self.settings,
            governor=self.governor,
            client=self._http_client,
        )

    def _persist_credentials(self, account: dict[str, Any], creds: dict[str, str]) -> None:
        if self.cipher is None:
            return
        self.repo.update_account_credentials(str(account["id"]), seal_credentials(self.cipher, creds))

    async def _fetch_with_recovery(
        self,
        adapter,
        account: dict[str, Any],
        *,
        filters: FetchFilters | None,
        cursor: str | None,
        resource: str,
    ) -> Page:
        refreshed = False
        attempt = 0
        while True:
            try:
                return await adapter.fetch_page(filters, cursor, resource=resource)
            except AuthExpired:
                if refreshed:
                    raise
                refreshed = True
                creds = await adapter.refresh_credentials()
                if not creds:
                    raise
                logger.info("[sync] %s: credentials refreshed, retrying", account["id"])
                await asyncio.to_thread(self._persist_credentials, account, creds)
            except Retryable as e:
                if attempt >= self.settings.max_fetch_retries:
                    raise FetchError(
                        f"{e} (gave up after {attempt} retries)",
                        status_code=e.status_code,
                    ) from e
                await self.governor.backoff(adapter.source_kind, attempt, e.retry_after)
                attempt += 1

    def _normalize_page(self, adapter, raws: list[dict[str, Any]], resource: str) -> tuple[list[NormalizedRecord], int]:
        records: list[NormalizedRecord] = []
        skipped = 0
        for raw in raws:
            try:
                records.extend(adapter.normalize(raw, resource=resource))
            except ValidationError as e:
                skipped += 1
                logger.warning("[sync] %s: skipped malformed %s record: %s", adapter.ctx.account_id, resource, e)
        return records, skipped

    async def _sync_stream(
        self,
        adapter,
        account: dict[str, Any],
        plan: SyncPlan,
        resource: str,
        result: SyncResult,
        run_id: str | None,
    ) -> None:
        cursor: str | None = None
        while True:
            page = await self._fetch_with_recovery(
                adapter,
                account,
                filters=plan.filters if cursor is None else None,
                cursor=cursor,
                resource=resource,
            )
            if page.records:
                records, skipped = self._normalize_page(adapter, page.records, resource)
                result.skipped += skipped
                outcome = await asyncio.to_thread(self.reconciler.reconcile, records)
                result.count += outcome.written
                result.failed += outcome.failed
                if run_id:
                    self.run_store.add_processed(
                        run_id,
                        outcome.written,
                        progress=f"{result.source}: {resource} {result.count} records",
                    )
            if page.next_cursor is None:
                return
            cursor = page.next_cursor
            await self.governor.wait(adapter.source_kind)

    async def sync_account(
        self,
        account: dict[str, Any],
        plan: SyncPlan,
        *,
        run_id: str | None = None,
    ) -> SyncResult:
        """Never raises; the outcome is recorded on the account and returned."""
        account_id = str(account["id"])
        result = SyncResult(
            source=str(account.get("name") or account_id),
            account_id=account_id,
            platform=str(account.get("platform")),
        )
        started = self._clock()
        logger.info("[sync] %s (%s) %s sync starting", account_id, result.platform, plan.mode)

        try:
            adapter = self._build_adapter(account)
            for resource in adapter.resources:
                await self._sync_stream(adapter, account, plan, resource, result, run_id)
        except AuthExpired as e:
            result.error = f"Authorization expired, reconnect this account ({e})"
        except FetchError as e:
            result.error = str(e)
        except Exception as e:  # noqa: BLE001
            result.error = f"{type(e).__name__}: {e}"

        if result.error is not None:
            logger.error("[sync] %s failed: %s", account_id, result.error)
            await asyncio.to_thread(
                self.repo.mark_sync_failed, account_id, error=result.error, status=STATUS_FAILED
            )
        elif result.failed:
            result.error = f"{result.failed} records failed to persist; watermark not advanced"
            logger.warning("[sync] %s partial: %s", account_id, result.error)
            await asyncio.to_thread(
                self.repo.mark_sync_failed, account_id, error=result.error, status=STATUS_PARTIAL
            )
        else:
            result.success = True
            await asyncio.to_thread(
                self.repo.mark_sync_success,
                account_id,
                watermark=started if plan.advances_watermark else None,
            )
            logger.info(
                "[sync] %s done: %d records, %d skipped", account_id, result.count, result.skipped
            )
        return result

    # Team fan-out

    def start(self, team_id: str) -> str:
        """Register a run for the team. Raises SyncAlreadyRunning."""
        return self.run_store.begin(team_id).run_id

    async def run(
        self,
        team_id: str,
        *,
        account_id: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        full_sync: bool = False,
        run_id: str | None = None,
    ) -> TeamSyncResult:
        if run_id is None:
            run_id = self.start(team_id)
        out = TeamSyncResult(run_id=run_id, team_id=team_id)
        try:
            accounts = await asyncio.to_thread(
                self.repo.list_accounts, team_id, active_only=True, account_id=account_id
            )
            self.run_store.update(run_id, progress=f"syncing {len(accounts)} accounts")
            plans = [
                self.plan(a, full_sync=full_sync, date_from=date_from, date_to=date_to)
                for a in accounts
            ]
            gathered = await asyncio.gather(
                *(self.sync_account(a, p, run_id=run_id) for a, p in zip(accounts, plans)),
                return_exceptions=True,
            )
            for account, res in zip(accounts, gathered):
                if isinstance(res, BaseException):
                    res = SyncResult(
                        source=str(account.get("name") or account["id"]),
                        account_id=str(account["id"]),
                        platform=str(account.get("platform")),
                        error=f"{type(res).__name__}: {res}",
                    )
                out.results.append(res)
        except Exception as e:  # noqa: BLE001
            self.run_store.finish(run_id, status=FAILED, error=f"{type(e).__name__}: {e}")
            raise

        summary = out.summary
        all_failed = summary["total"] > 0 and summary["successful"] == 0
        self.run_store.finish(
            run_id,
            status=FAILED if all_failed else COMPLETED,
            progress=out.message(),
            results=[r.to_dict() for r in out.results],
            summary=summary,
            error="all sources failed" if all_failed else None,
        )
        return out
