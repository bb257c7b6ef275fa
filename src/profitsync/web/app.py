from __future__ import annotations

import json
import logging
from datetime import date, timedelta
from typing import Any

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
import uvicorn

from profitsync.config import Settings
from profitsync.credentials import cipher_from_settings
from profitsync.db import LedgerDB
from profitsync.errors import SyncAlreadyRunning
from profitsync.finance.engine import ProfitEngine
from profitsync.repo import Repo
from profitsync.runs import InMemoryRunStore, RunStore
from profitsync.sync import SyncOrchestrator
from profitsync.util import now_utc

logger = logging.getLogger(__name__)


def _parse_day(raw: Any, field: str) -> date | None:
    if raw is None or str(raw).strip() == "":
        return None
    try:
        return date.fromisoformat(str(raw).strip())
    except ValueError:
        raise ValueError(f"{field} must be YYYY-MM-DD") from None


def _as_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return bool(raw)
    if isinstance(raw, str):
        return raw.strip().lower() in {"1", "true", "yes", "y", "on"}
    return False


def _parse_sync_payload(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValueError("body must be a JSON object")
    team_id = str(payload.get("team_id") or "").strip()
    if not team_id:
        raise ValueError("team_id is required")
    date_from = _parse_day(payload.get("date_from"), "date_from")
    date_to = _parse_day(payload.get("date_to"), "date_to")
    if date_from and date_to and date_to < date_from:
        raise ValueError("date_to must not be before date_from")
    return {
        "team_id": team_id,
        "account_id": str(payload.get("account_id") or "").strip() or None,
        "date_from": date_from,
        "date_to": date_to,
        "full_sync": _as_bool(payload.get("full_sync")),
        "background": _as_bool(payload.get("background")),
    }


def create_app(
    settings: Settings,
    *,
    run_store: RunStore | None = None,
    orchestrator: SyncOrchestrator | None = None,
) -> FastAPI:
    LedgerDB(settings.db_path).init()
    repo = Repo(settings.db_path, busy_timeout=settings.batch_timeout_sec)
    if orchestrator is None:
        orchestrator = SyncOrchestrator(
            repo,
            run_store or InMemoryRunStore(settings.run_retention_sec),
            settings,
            cipher=cipher_from_settings(settings),
        )

    app = FastAPI(title="profitsync")
    app.state.orchestrator = orchestrator
    app.state.run_store = orchestrator.run_store

    async def _run_in_background(run_id: str, opts: dict[str, Any]) -> None:
        try:
            await orchestrator.run(
                opts["team_id"],
                account_id=opts["account_id"],
                date_from=opts["date_from"],
                date_to=opts["date_to"],
                full_sync=opts["full_sync"],
                run_id=run_id,
            )
        except Exception:  # noqa: BLE001
            # The run is already marked failed by the orchestrator.
            logger.exception("[web] background sync %s crashed", run_id)

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.post("/sync")
    async def run_sync(request: Request, background_tasks: BackgroundTasks):
        try:
            payload = json.loads((await request.body()).decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError):
            return JSONResponse({"success": False, "error": "invalid json"}, status_code=400)
        try:
            opts = _parse_sync_payload(payload)
        except ValueError as e:
            return JSONResponse({"success": False, "error": str(e)}, status_code=400)

        try:
            run_id = orchestrator.start(opts["team_id"])
        except SyncAlreadyRunning as e:
            return JSONResponse(
                {"success": False, "error": "A sync is already running for this team", "run_id": e.run_id},
                status_code=409,
            )

        if opts["background"]:
            background_tasks.add_task(_run_in_background, run_id, opts)
            return JSONResponse(
                {
                    "success": True,
                    "run_id": run_id,
                    "status_url": f"/sync/status?run_id={run_id}",
                },
                status_code=202,
            )

        result = await orchestrator.run(
            opts["team_id"],
            account_id=opts["account_id"],
            date_from=opts["date_from"],
            date_to=opts["date_to"],
            full_sync=opts["full_sync"],
            run_id=run_id,
        )
        return JSONResponse(result.to_dict())

    @app.get("/sync/status")
    def sync_status(run_id: str = ""):
        run = orchestrator.run_store.get(run_id) if run_id else None
        if run is None:
            return JSONResponse({"error": "unknown or expired run"}, status_code=404)
        return JSONResponse(run.to_dict())

    @app.get("/pnl")
    async def pnl(team_id: str, date_from: str | None = None, date_to: str | None = None):
        try:
            end = _parse_day(date_to, "date_to") or now_utc().date()
            start = _parse_day(date_from, "date_from") or (end - timedelta(days=29))
            if end < start:
                raise ValueError("date_to must not be before date_from")
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        engine = ProfitEngine(repo, settings)
        summary = await run_in_threadpool(engine.period_summary, team_id, start, end)
        return JSONResponse(summary.to_dict())

    return app


def run_web(settings: Settings) -> None:
    app = create_app(settings)
    uvicorn.run(app, host=settings.web_host, port=settings.web_port, log_level=settings.log_level.lower())
