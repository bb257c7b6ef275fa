from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import httpx

from profitsync.errors import AuthExpired, FetchError, Retryable
from profitsync.normalize import NormalizedRecord


@dataclass(frozen=True)
class FetchFilters:
    """
    Window for one fetch. `updated_since` (incremental) and `created_since`
    (full sync floor) are mutually exclusive.
    """

    updated_since: datetime | None = None
    created_since: datetime | None = None
    until: datetime | None = None

    def __post_init__(self) -> None:
        if self.updated_since is not None and self.created_since is not None:
            raise ValueError("updated_since and created_since are mutually exclusive")

    @property
    def since(self) -> datetime | None:
        return self.updated_since or self.created_since


@dataclass(frozen=True)
class Page:
    records: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None

    @property
    def is_last(self) -> bool:
        return self.next_cursor is None


@dataclass(frozen=True)
class AccountContext:
    account_id: str
    team_id: str
    platform: str
    external_id: str
    currency: str
    credentials: dict[str, str]
    config: dict[str, Any]


class SourceAdapter(Protocol):
    source_kind: str
    resources: tuple[str, ...]

    async def fetch_page(
        self,
        filters: FetchFilters | None = None,
        cursor: str | None = None,
        *,
        resource: str | None = None,
    ) -> Page:
        """Fetch one page. Cursor-only or filters-only, never both."""

    def normalize(self, raw: dict[str, Any], *, resource: str | None = None) -> list[NormalizedRecord]:
        """Map one raw record to canonical records. Raises ValidationError."""

    async def refresh_credentials(self) -> dict[str, str] | None:
        """Return refreshed credentials, or None when this source cannot refresh."""


def check_page_args(filters: FetchFilters | None, cursor: str | None) -> None:
    if cursor is not None and filters is not None:
        # Upstreams ignore filters once a cursor is present.
        raise ValueError("pass either a cursor or filters, not both")


def _retry_after(resp: httpx.Response) -> float | None:
    raw = resp.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def raise_for_upstream(resp: httpx.Response, *, source: str) -> None:
    """Translate a non-2xx response into the fetch error taxonomy."""
    code = resp.status_code
    if 200 <= code < 300:
        return
    detail = resp.text[:300] if resp.text else ""
    if code in (401, 403):
        raise AuthExpired(f"{source}: credentials rejected (HTTP {code})", status_code=code)
    if code == 429 or code >= 500:
        raise Retryable(
            f"{source}: upstream unavailable (HTTP {code})",
            status_code=code,
            retry_after=_retry_after(resp),
        )
    raise FetchError(f"{source}: HTTP {code} {detail}".strip(), status_code=code)


async def send(client: httpx.AsyncClient, request: httpx.Request, *, source: str) -> httpx.Response:
    try:
        return await client.send(request)
    except httpx.TransportError as e:
        raise Retryable(f"{source}: {type(e).__name__}: {e}") from e


class HttpSourceAdapter:
    """Shared HTTP plumbing. A client may be injected; otherwise one is opened per request."""

    source_kind = ""
    resources: tuple[str, ...] = ("default",)

    def __init__(
        self,
        ctx: AccountContext,
        *,
        client: httpx.AsyncClient | None = None,
        governor=None,
        settings=None,
    ):
        self.ctx = ctx
        self.governor = governor
        self.settings = settings
        self._client = client
        self.credentials = dict(ctx.credentials)
        self.timeout = float(ctx.config.get("http_timeout_sec", 30.0))

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        data: dict[str, Any] | None = None,
    ) -> httpx.Response:
        if self._client is not None:
            request = self._client.build_request(method, url, params=params, headers=headers, data=data)
            return await send(self._client, request, source=self.source_kind)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            request = client.build_request(method, url, params=params, headers=headers, data=data)
            return await send(client, request, source=self.source_kind)

    async def refresh_credentials(self) -> dict[str, str] | None:
        return None
