from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

from profitsync.connectors.base import (
    FetchFilters,
    HttpSourceAdapter,
    Page,
    check_page_args,
    raise_for_upstream,
)
from profitsync.errors import AuthExpired, FetchError, ValidationError
from profitsync.normalize import NormalizedRecord, normalize_sheet_row, parse_calendar_date

logger = logging.getLogger(__name__)

SHEETS_BASE_URL = "https://sheets.googleapis.com/v4/spreadsheets"
TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_SHEET_NAME = "Ad Spend"
MIN_POPULATED_COLUMNS = 4


class GoogleSheetsAdapter(HttpSourceAdapter):
    """
    Google Ads spend via a user-maintained spreadsheet.

    Fixed 9-column layout (date, campaign id, campaign name, spend, impressions,
    clicks, conversions, conversion value, currency). The first row is a header.
    The whole range comes back in one response, so there is never a cursor.
    """

    source_kind = "google_sheets"
    resources = ("rows",)

    def _spreadsheet_id(self) -> str:
        return self.ctx.external_id.strip().removeprefix("sheets:")

    def _sheet_name(self) -> str:
        return str(self.ctx.config.get("sheet_name") or DEFAULT_SHEET_NAME)

    def _slash_order(self) -> str:
        order = self.ctx.config.get("slash_date_order") or getattr(self.settings, "slash_date_order", None)
        return str(order or "DMY").upper()

    def _in_window(self, row: list[Any], filters: FetchFilters | None) -> bool:
        if filters is None or (filters.since is None and filters.until is None):
            return True
        try:
            day = parse_calendar_date(row[0], slash_order=self._slash_order())
        except ValidationError:
            # Let the normalizer reject it so it is counted as skipped.
            return True
        if filters.since is not None and day < filters.since.date():
            return False
        if filters.until is not None and day > filters.until.date():
            return False
        return True

    async def fetch_page(
        self,
        filters: FetchFilters | None = None,
        cursor: str | None = None,
        *,
        resource: str | None = None,
    ) -> Page:
        check_page_args(filters, cursor)
        if cursor is not None:
            return Page()

        sheet_range = quote(f"{self._sheet_name()}!A:I", safe="!:")
        url = f"{SHEETS_BASE_URL}/{self._spreadsheet_id()}/values/{sheet_range}"
        token = self.credentials.get("access_token") or ""
        resp = await self._request("GET", url, headers={"Authorization": f"Bearer {token}"})
        if resp.status_code == 404:
            raise FetchError(
                f"google_sheets: spreadsheet or sheet {self._sheet_name()!r} not found",
                status_code=404,
            )
        raise_for_upstream(resp, source=self.source_kind)

        body = resp.json()
        values = body.get("values") if isinstance(body, dict) else None
        records: list[dict[str, Any]] = []
        for idx, row in enumerate(values or []):
            if idx == 0 or not isinstance(row, list):
                continue
            populated = sum(1 for c in row if str(c).strip() != "")
            if populated < MIN_POPULATED_COLUMNS:
                continue
            if not self._in_window(row, filters):
                continue
            records.append({"row": row, "row_number": idx + 1})
        return Page(records=records, next_cursor=None)

    def normalize(self, raw: dict[str, Any], *, resource: str | None = None) -> list[NormalizedRecord]:
        return [
            normalize_sheet_row(
                raw.get("row") or [],
                account_id=self.ctx.account_id,
                slash_order=self._slash_order(),
                default_currency=self.ctx.currency or "SEK",
                spend_in_micros=bool(self.ctx.config.get("spend_in_micros")),
            )
        ]

    async def refresh_credentials(self) -> dict[str, str] | None:
        client_id = getattr(self.settings, "google_client_id", None)
        client_secret = getattr(self.settings, "google_client_secret", None)
        refresh_token = self.credentials.get("refresh_token")
        if not (client_id and client_secret and refresh_token):
            return None

        resp = await self._request(
            "POST",
            TOKEN_URL,
            data={
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        if resp.status_code == 400:
            raise AuthExpired("google_sheets: refresh token expired; reconnect Google", status_code=400)
        raise_for_upstream(resp, source=self.source_kind)
        body = resp.json()
        new_token = body.get("access_token") if isinstance(body, dict) else None
        if not new_token:
            return None
        logger.info("[google_sheets] refreshed access token for account %s", self.ctx.account_id)
        self.credentials["access_token"] = str(new_token)
        return dict(self.credentials)
