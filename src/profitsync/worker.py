from __future__ import annotations

import asyncio
import logging
from typing import Any

from profitsync.config import Settings
from profitsync.credentials import cipher_from_settings
from profitsync.db import LedgerDB
from profitsync.errors import SyncAlreadyRunning
from profitsync.repo import Repo
from profitsync.runs import InMemoryRunStore, RunStore
from profitsync.sync import SyncOrchestrator

logger = logging.getLogger(__name__)


async def _tick(settings: Settings, *, run_store: RunStore | None = None, http_client=None) -> list[dict[str, Any]]:
    """Incremental sync for every team with at least one active account."""
    LedgerDB(settings.db_path).init()
    repo = Repo(settings.db_path, busy_timeout=settings.batch_timeout_sec)
    orchestrator = SyncOrchestrator(
        repo,
        run_store or InMemoryRunStore(settings.run_retention_sec),
        settings,
        cipher=cipher_from_settings(settings),
        http_client=http_client,
    )

    out: list[dict[str, Any]] = []
    for team_id in await asyncio.to_thread(repo.list_active_team_ids):
        try:
            result = await orchestrator.run(team_id)
        except SyncAlreadyRunning as e:
            logger.info("[worker] team %s skipped: %s", team_id, e)
            continue
        except Exception as e:  # noqa: BLE001
            logger.error("[worker] team %s failed: %s: %s", team_id, type(e).__name__, e)
            out.append({"team_id": team_id, "success": False, "error": f"{type(e).__name__}: {e}"})
            continue
        logger.info("[worker] team %s: %s", team_id, result.message())
        out.append({"team_id": team_id, **result.to_dict()})
    return out


def run_tick(settings: Settings) -> list[dict[str, Any]]:
    return asyncio.run(_tick(settings))


async def _run_forever(settings: Settings) -> None:
    # One run store for the process lifetime so overlapping ticks are refused per team.
    run_store = InMemoryRunStore(settings.run_retention_sec)
    while True:
        try:
            await _tick(settings, run_store=run_store)
        except Exception as e:  # noqa: BLE001
            logger.error("[worker] tick failed: %s: %s", type(e).__name__, e)
        await asyncio.sleep(settings.worker_interval_sec)


def run_worker(settings: Settings) -> None:
    asyncio.run(_run_forever(settings))
