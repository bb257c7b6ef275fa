from __future__ import annotations

import json
from typing import Any

import httpx

from profitsync.connectors.base import AccountContext
from profitsync.connectors.google_sheets import GoogleSheetsAdapter
from profitsync.connectors.meta_ads import MetaAdsAdapter
from profitsync.connectors.shopify import ShopifyAdapter
from profitsync.credentials import CredentialCipher, open_credentials


def account_context(account: dict[str, Any], cipher: CredentialCipher | None) -> AccountContext:
    creds = open_credentials(cipher, account.get("credentials_json")) if cipher else {}
    return AccountContext(
        account_id=str(account["id"]),
        team_id=str(account["team_id"]),
        platform=str(account["platform"]),
        external_id=str(account["external_id"]),
        currency=str(account.get("currency") or "SEK"),
        credentials=creds,
        config=json.loads(account.get("config_json") or "{}"),
    )


def build_adapter(
    account: dict[str, Any],
    *,
    cipher: CredentialCipher | None,
    settings=None,
    governor=None,
    client: httpx.AsyncClient | None = None,
):
    ctx = account_context(account, cipher)
    kwargs = {"client": client, "governor": governor, "settings": settings}

    if ctx.platform == "shopify":
        return ShopifyAdapter(ctx, **kwargs)
    if ctx.platform == "facebook":
        return MetaAdsAdapter(ctx, **kwargs)
    if ctx.platform == "google_sheets":
        return GoogleSheetsAdapter(ctx, **kwargs)

    raise ValueError(f"Unknown platform: {ctx.platform}")
