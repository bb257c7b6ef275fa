from __future__ import annotations

import json
import logging
import re
from datetime import date, timedelta
from typing import Any

import httpx

from profitsync.connectors.base import (
    FetchFilters,
    HttpSourceAdapter,
    Page,
    check_page_args,
    raise_for_upstream,
)
from profitsync.errors import AuthExpired, FetchError, Retryable
from profitsync.normalize import NormalizedRecord, normalize_meta_insight
from profitsync.util import now_utc

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.facebook.com"
DEFAULT_GRAPH_VERSION = "v21.0"
INSIGHT_FIELDS = (
    "date_start",
    "date_stop",
    "spend",
    "impressions",
    "clicks",
    "actions",
    "purchase_roas",
    "campaign_id",
    "campaign_name",
    "adset_id",
    "adset_name",
    "account_currency",
)
DEFAULT_WINDOW_DAYS = 7

_AUTH_ERROR_CODES = {102, 190}
_RATE_LIMIT_CODES = {4, 17, 32, 613}


class MetaAdsAdapter(HttpSourceAdapter):
    """
    Meta (Facebook) Ads insights adapter (Graph API).

    Daily rows per campaign (or ad set). The cursor is the `paging.next` URL,
    which already carries every query parameter.
    """

    source_kind = "facebook"
    resources = ("insights",)

    def _account_id(self) -> str:
        raw = self.ctx.external_id.strip().removeprefix("act_")
        # keep digits only (UI sometimes includes separators)
        return re.sub(r"\D+", "", raw)

    def _base(self) -> str:
        base = str(self.ctx.config.get("graph_base_url") or GRAPH_BASE_URL).rstrip("/")
        version = str(self.ctx.config.get("graph_version") or DEFAULT_GRAPH_VERSION)
        return f"{base}/{version}"

    def _level(self) -> str:
        level = str(self.ctx.config.get("level") or "campaign").strip().lower()
        return level if level in {"campaign", "adset"} else "campaign"

    def _window(self, filters: FetchFilters | None) -> tuple[date, date]:
        until = filters.until.date() if filters and filters.until else now_utc().date()
        since_dt = filters.since if filters else None
        since = since_dt.date() if since_dt else until - timedelta(days=DEFAULT_WINDOW_DAYS)
        return since, until

    def _raise_for_graph(self, resp, body: Any) -> None:
        err = body.get("error") if isinstance(body, dict) else None
        if isinstance(err, dict):
            msg = str(err.get("message") or "unknown error")
            code = err.get("code")
            if code in _AUTH_ERROR_CODES:
                raise AuthExpired(f"facebook: {msg} (code={code})", status_code=resp.status_code)
            if code in _RATE_LIMIT_CODES:
                raise Retryable(f"facebook: {msg} (code={code})", status_code=resp.status_code)
            raise_for_upstream(resp, source=self.source_kind)
            raise FetchError(f"facebook: {msg} (code={code})", status_code=resp.status_code)
        raise_for_upstream(resp, source=self.source_kind)

    async def fetch_page(
        self,
        filters: FetchFilters | None = None,
        cursor: str | None = None,
        *,
        resource: str | None = None,
    ) -> Page:
        check_page_args(filters, cursor)

        if cursor is not None:
            # The next URL embeds the token it was issued with; send the current one.
            url = httpx.URL(cursor).copy_set_param("access_token", self.credentials.get("access_token") or "")
            resp = await self._request("GET", str(url))
        else:
            since, until = self._window(filters)
            params = {
                "access_token": self.credentials.get("access_token") or "",
                "fields": ",".join(INSIGHT_FIELDS),
                "level": self._level(),
                "time_increment": 1,
                "time_range": json.dumps({"since": since.isoformat(), "until": until.isoformat()}),
                "limit": int(self.ctx.config.get("page_size", 500)),
            }
            url = f"{self._base()}/act_{self._account_id()}/insights"
            resp = await self._request("GET", url, params=params)

        try:
            body = resp.json()
        except ValueError as e:
            raise_for_upstream(resp, source=self.source_kind)
            raise FetchError(f"facebook: non-JSON response: {resp.status_code}") from e
        self._raise_for_graph(resp, body)

        data = body.get("data") if isinstance(body, dict) else None
        records = [it for it in data or [] if isinstance(it, dict)]
        paging = body.get("paging") if isinstance(body, dict) else None
        next_url = paging.get("next") if isinstance(paging, dict) else None
        return Page(records=records, next_cursor=str(next_url) if next_url and records else None)

    def normalize(self, raw: dict[str, Any], *, resource: str | None = None) -> list[NormalizedRecord]:
        return [normalize_meta_insight(raw, account_id=self.ctx.account_id, currency=self.ctx.currency)]

    async def refresh_credentials(self) -> dict[str, str] | None:
        app_id = getattr(self.settings, "meta_app_id", None)
        app_secret = getattr(self.settings, "meta_app_secret", None)
        token = self.credentials.get("access_token")
        if not (app_id and app_secret and token):
            return None

        resp = await self._request(
            "GET",
            f"{self._base()}/oauth/access_token",
            params={
                "grant_type": "fb_exchange_token",
                "client_id": app_id,
                "client_secret": app_secret,
                "fb_exchange_token": token,
            },
        )
        if resp.status_code >= 400:
            raise AuthExpired("facebook: token exchange failed; reconnect the ad account", status_code=resp.status_code)
        new_token = (resp.json() or {}).get("access_token")
        if not new_token:
            return None
        logger.info("[facebook] refreshed access token for account %s", self.ctx.account_id)
        self.credentials["access_token"] = str(new_token)
        return dict(self.credentials)
