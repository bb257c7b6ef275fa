from __future__ import annotations

import time
from dataclasses import asdict, dataclass, replace
from threading import Lock
from typing import Any, Callable, Protocol

from profitsync.errors import SyncAlreadyRunning
from profitsync.util import new_id

RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"


@dataclass(frozen=True)
class SyncRun:
    run_id: str
    team_id: str
    status: str = RUNNING
    progress: str = "starting"
    records_processed: int = 0
    error: str | None = None
    results: list[dict[str, Any]] | None = None
    summary: dict[str, Any] | None = None
    started_at: float = 0.0
    finished_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        if out["error"] is None:
            out.pop("error")
        return out


class RunStore(Protocol):
    """
    Ephemeral run status. Implementations must be safe for concurrent use by
    the orchestrator's fan-out tasks and status pollers.
    """

    def begin(self, team_id: str) -> SyncRun: ...

    def update(self, run_id: str, **fields: Any) -> SyncRun | None: ...

    def add_processed(self, run_id: str, n: int, progress: str | None = None) -> SyncRun | None: ...

    def finish(self, run_id: str, *, status: str, **fields: Any) -> SyncRun | None: ...

    def get(self, run_id: str) -> SyncRun | None: ...

    def active_for_team(self, team_id: str) -> SyncRun | None: ...


class InMemoryRunStore:
    """
    Process-local run store guarded by one lock.

    Eviction: a finished run is dropped once `retention_seconds` have passed
    since it finished. Running runs are never evicted. Eviction happens lazily
    on every access.
    """

    def __init__(self, retention_seconds: float = 600.0, *, clock: Callable[[], float] = time.time):
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._lock = Lock()
        self._runs: dict[str, SyncRun] = {}

    def _evict_locked(self) -> None:
        now = self._clock()
        expired = [
            rid
            for rid, run in self._runs.items()
            if run.finished_at is not None and now - run.finished_at >= self.retention_seconds
        ]
        for rid in expired:
            del self._runs[rid]

    def _active_locked(self, team_id: str) -> SyncRun | None:
        for run in self._runs.values():
            if run.team_id == team_id and run.status == RUNNING:
                return run
        return None

    def begin(self, team_id: str) -> SyncRun:
        with self._lock:
            self._evict_locked()
            active = self._active_locked(team_id)
            if active is not None:
                raise SyncAlreadyRunning(team_id, active.run_id)
            run = SyncRun(run_id=new_id("run"), team_id=team_id, started_at=self._clock())
            self._runs[run.run_id] = run
            return run

    def update(self, run_id: str, **fields: Any) -> SyncRun | None:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                return None
            run = replace(run, **fields)
            self._runs[run_id] = run
            return run

    def add_processed(self, run_id: str, n: int, progress: str | None = None) -> SyncRun | None:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                return None
            changes: dict[str, Any] = {"records_processed": run.records_processed + n}
            if progress is not None:
                changes["progress"] = progress
            run = replace(run, **changes)
            self._runs[run_id] = run
            return run

    def finish(self, run_id: str, *, status: str, **fields: Any) -> SyncRun | None:
        if status not in (COMPLETED, FAILED):
            raise ValueError(f"invalid final status: {status}")
        return self.update(run_id, status=status, finished_at=self._clock(), **fields)

    def get(self, run_id: str) -> SyncRun | None:
        with self._lock:
            self._evict_locked()
            return self._runs.get(run_id)

    def active_for_team(self, team_id: str) -> SyncRun | None:
        with self._lock:
            self._evict_locked()
            return self._active_locked(team_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)
