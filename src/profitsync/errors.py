from __future__ import annotations


class ProfitSyncError(RuntimeError):
    pass


class FetchError(ProfitSyncError):
    """Upstream request failed. Terminal for the account unless a subclass says otherwise."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthExpired(FetchError):
    """Credentials were rejected; one refresh attempt is allowed."""


class Retryable(FetchError):
    """Rate limited or transient upstream failure."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class ValidationError(ProfitSyncError):
    """A raw record is missing a required field or has an unparseable value."""


class PersistenceError(ProfitSyncError):
    """A reconcile batch could not be written."""


class SyncAlreadyRunning(ProfitSyncError):
    def __init__(self, team_id: str, run_id: str):
        super().__init__(f"sync already running for team {team_id} (run {run_id})")
        self.team_id = team_id
        self.run_id = run_id
