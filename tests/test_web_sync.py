from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import Any

from fastapi.testclient import TestClient

from profitsync.config import Settings
from profitsync.connectors.base import Page
from profitsync.db import LedgerDB
from profitsync.normalize import SpendRecord, to_utc_midnight
from profitsync.registry import account_context
from profitsync.repo import Repo
from profitsync.runs import InMemoryRunStore
from profitsync.sync import SyncOrchestrator
from profitsync.throttle import RateGovernor
from profitsync.web.app import create_app


def _settings_for_db(db_path: Path) -> Settings:
    return Settings(db_path=db_path, web_host="127.0.0.1", web_port=0)


class _OnePageAdapter:
    source_kind = "fake"
    resources = ("rows",)

    def __init__(self, account: dict[str, Any], **_kw: Any):
        self.ctx = account_context(account, None)

    async def fetch_page(self, filters=None, cursor=None, *, resource=None) -> Page:
        return Page(records=[{"date": "2024-01-15", "spend": "42"}])

    def normalize(self, raw: dict[str, Any], *, resource=None):
        return [SpendRecord(account_id=self.ctx.account_id, date=to_utc_midnight(raw["date"]), spend=Decimal(raw["spend"]))]

    async def refresh_credentials(self):
        return None


async def _no_sleep(_delay: float) -> None:
    return None


def _client_with_account(tmp_path: Path) -> tuple[TestClient, Repo, InMemoryRunStore, str]:
    db_path = tmp_path / "ledger.sqlite3"
    LedgerDB(db_path).init()
    settings = _settings_for_db(db_path)
    repo = Repo(db_path)
    acc = repo.create_account(team_id="t1", platform="facebook", external_id="act_1", name="FB")
    run_store = InMemoryRunStore()
    orchestrator = SyncOrchestrator(
        repo,
        run_store,
        settings,
        governor=RateGovernor(sleep=_no_sleep),
        adapter_factory=lambda account, **kw: _OnePageAdapter(account, **kw),
    )
    client = TestClient(create_app(settings, orchestrator=orchestrator))
    return client, repo, run_store, acc


def test_foreground_sync_returns_results(tmp_path: Path) -> None:
    client, repo, _store, acc = _client_with_account(tmp_path)

    resp = client.post("/sync", json={"team_id": "t1"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["summary"] == {"total": 1, "successful": 1, "failed": 0, "items_synced": 1}
    assert body["results"][0]["account_id"] == acc
    assert "error" not in body["results"][0]
    assert repo.count_rows("ad_spend") == 1

    status = client.get("/sync/status", params={"run_id": body["run_id"]})
    assert status.status_code == 200
    assert status.json()["status"] == "completed"
    assert status.json()["records_processed"] == 1


def test_background_sync_reports_status_url(tmp_path: Path) -> None:
    client, repo, _store, _acc = _client_with_account(tmp_path)

    resp = client.post("/sync", json={"team_id": "t1", "background": True, "full_sync": True})

    assert resp.status_code == 202
    body = resp.json()
    assert body["success"] is True
    assert body["status_url"] == f"/sync/status?run_id={body['run_id']}"

    status = client.get(body["status_url"])
    assert status.status_code == 200
    assert status.json()["status"] == "completed"
    assert repo.count_rows("ad_spend") == 1


def test_concurrent_sync_for_same_team_is_rejected(tmp_path: Path) -> None:
    client, _repo, run_store, _acc = _client_with_account(tmp_path)
    running = run_store.begin("t1")

    resp = client.post("/sync", json={"team_id": "t1"})

    assert resp.status_code == 409
    assert resp.json()["run_id"] == running.run_id
    # A different team is not blocked.
    assert client.post("/sync", json={"team_id": "t2"}).status_code == 200


def test_sync_validation_errors(tmp_path: Path) -> None:
    client, _repo, _store, _acc = _client_with_account(tmp_path)

    assert client.post("/sync", content=b"not json").status_code == 400
    assert client.post("/sync", json={}).status_code == 400
    resp = client.post("/sync", json={"team_id": "t1", "date_from": "2024-02-01", "date_to": "2024-01-01"})
    assert resp.status_code == 400


def test_unknown_run_status_is_404(tmp_path: Path) -> None:
    client, _repo, _store, _acc = _client_with_account(tmp_path)

    assert client.get("/sync/status", params={"run_id": "run_nope"}).status_code == 404
    assert client.get("/sync/status").status_code == 404


def test_pnl_endpoint(tmp_path: Path) -> None:
    client, _repo, _store, _acc = _client_with_account(tmp_path)
    client.post("/sync", json={"team_id": "t1", "date_from": "2024-01-01"})

    resp = client.get("/pnl", params={"team_id": "t1", "date_from": "2024-01-01", "date_to": "2024-01-31"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["orders"] == 0
    assert body["ad_spend"] == 42.0
    assert body["net_profit"] == -42.0
    assert body["cac"] is None

    bad = client.get("/pnl", params={"team_id": "t1", "date_from": "yesterday"})
    assert bad.status_code == 400
