from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from types import SimpleNamespace

import httpx
import pytest

from profitsync.connectors.base import AccountContext, FetchFilters
from profitsync.connectors.google_sheets import GoogleSheetsAdapter
from profitsync.connectors.meta_ads import MetaAdsAdapter
from profitsync.connectors.shopify import ShopifyAdapter, next_page_info
from profitsync.errors import AuthExpired, FetchError, Retryable, ValidationError


def _ctx(platform: str, external_id: str, **config) -> AccountContext:
    return AccountContext(
        account_id=f"acc_{platform}",
        team_id="t1",
        platform=platform,
        external_id=external_id,
        currency="SEK",
        credentials={"access_token": "tok", "refresh_token": "ref"},
        config=config,
    )


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _since() -> FetchFilters:
    return FetchFilters(updated_since=datetime(2024, 1, 1, tzinfo=timezone.utc))


# Shopify


def test_shopify_follows_link_cursor_without_filters() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if "page_info" not in request.url.params:
            return httpx.Response(
                200,
                json={"orders": [{"id": 1}]},
                headers={
                    "Link": '<https://shop.myshopify.com/admin/api/2024-01/orders.json?limit=250&page_info=abc>; rel="next"'
                },
            )
        return httpx.Response(200, json={"orders": [{"id": 2}]})

    async def run():
        async with _client(handler) as client:
            adapter = ShopifyAdapter(_ctx("shopify", "shop.myshopify.com"), client=client)
            first = await adapter.fetch_page(_since(), resource="orders")
            second = await adapter.fetch_page(None, first.next_cursor, resource="orders")
            return first, second

    first, second = asyncio.run(run())
    assert first.next_cursor == "abc"
    assert second.is_last
    assert [r["id"] for r in first.records + second.records] == [1, 2]

    assert seen[0].url.path == "/admin/api/2024-01/orders.json"
    assert seen[0].headers["X-Shopify-Access-Token"] == "tok"
    assert seen[0].url.params["status"] == "any"
    assert seen[0].url.params["updated_at_min"].startswith("2024-01-01T00:00:00")
    # Cursor requests carry only the cursor and page size.
    assert dict(seen[1].url.params) == {"page_info": "abc", "limit": "250"}


def test_shopify_rejects_cursor_with_filters() -> None:
    adapter = ShopifyAdapter(_ctx("shopify", "shop.myshopify.com"))
    with pytest.raises(ValueError):
        asyncio.run(adapter.fetch_page(_since(), "abc", resource="orders"))


def test_shopify_error_statuses() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("products.json"):
            return httpx.Response(401, text="unauthorized")
        return httpx.Response(429, headers={"Retry-After": "2"})

    async def run(resource: str):
        async with _client(handler) as client:
            adapter = ShopifyAdapter(_ctx("shopify", "shop.myshopify.com"), client=client)
            await adapter.fetch_page(None, resource=resource)

    with pytest.raises(AuthExpired):
        asyncio.run(run("products"))
    with pytest.raises(Retryable) as exc:
        asyncio.run(run("orders"))
    assert exc.value.retry_after == 2.0


def test_shopify_transport_error_is_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def run():
        async with _client(handler) as client:
            adapter = ShopifyAdapter(_ctx("shopify", "shop.myshopify.com"), client=client)
            await adapter.fetch_page(None, resource="orders")

    with pytest.raises(Retryable):
        asyncio.run(run())


def test_shopify_includes_transactions_when_configured() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/orders/7/transactions.json"):
            return httpx.Response(200, json={"transactions": [{"id": 70, "kind": "sale", "amount": "10"}]})
        return httpx.Response(200, json={"orders": [{"id": 7}]})

    async def run():
        async with _client(handler) as client:
            adapter = ShopifyAdapter(
                _ctx("shopify", "shop.myshopify.com", include_transactions=True),
                client=client,
            )
            return await adapter.fetch_page(None, resource="orders")

    page = asyncio.run(run())
    assert page.records[0]["transactions"][0]["id"] == 70


def test_shopify_products_are_not_date_windowed() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        resource = request.url.path.rsplit("/", 1)[-1].removesuffix(".json")
        return httpx.Response(200, json={resource: []})

    full = FetchFilters(
        created_since=datetime(2024, 6, 1, tzinfo=timezone.utc),
        until=datetime(2024, 6, 30, 23, 59, 59, tzinfo=timezone.utc),
    )

    async def run():
        async with _client(handler) as client:
            adapter = ShopifyAdapter(_ctx("shopify", "shop.myshopify.com"), client=client)
            await adapter.fetch_page(full, resource="products")
            await adapter.fetch_page(full, resource="orders")
            await adapter.fetch_page(_since(), resource="products")

    asyncio.run(run())
    assert dict(seen[0].url.params) == {"limit": "250"}
    assert seen[1].url.params["created_at_min"].startswith("2024-06-01")
    assert seen[1].url.params["created_at_max"].startswith("2024-06-30")
    # Incremental runs still pick up changed products.
    assert seen[2].url.params["updated_at_min"].startswith("2024-01-01")
    assert "created_at_min" not in seen[2].url.params


def test_shopify_attaches_inventory_costs_to_variants() -> None:
    seen: list[httpx.Request] = []
    products = [
        {
            "id": 1,
            "variants": [
                {"id": 501, "inventory_item_id": 9001},
                {"id": 502, "inventory_item_id": 9002},
                {"id": 503},
            ],
        }
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.endswith("inventory_items.json"):
            return httpx.Response(
                200,
                json={"inventory_items": [{"id": 9001, "cost": "40.00"}, {"id": 9002, "cost": None}]},
            )
        return httpx.Response(200, json={"products": products})

    async def run():
        async with _client(handler) as client:
            adapter = ShopifyAdapter(_ctx("shopify", "shop.myshopify.com"), client=client)
            return await adapter.fetch_page(None, resource="products")

    page = asyncio.run(run())
    variants = page.records[0]["variants"]
    assert variants[0]["inventory_cost"] == "40.00"
    assert "inventory_cost" not in variants[1]
    assert "inventory_cost" not in variants[2]
    assert seen[1].url.params["ids"] == "9001,9002"


def test_shopify_inventory_cost_errors_do_not_fail_the_catalog() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("inventory_items.json"):
            return httpx.Response(403, text="missing read_inventory scope")
        return httpx.Response(200, json={"products": [{"id": 1, "variants": [{"id": 501, "inventory_item_id": 9001}]}]})

    async def run():
        async with _client(handler) as client:
            adapter = ShopifyAdapter(_ctx("shopify", "shop.myshopify.com"), client=client)
            return await adapter.fetch_page(None, resource="products")

    page = asyncio.run(run())
    assert "inventory_cost" not in page.records[0]["variants"][0]


def test_next_page_info_absent() -> None:
    resp = httpx.Response(200, json={})
    assert next_page_info(resp) is None


# Meta


def test_meta_insights_paging_and_params() -> None:
    seen: list[httpx.Request] = []
    next_url = "https://graph.facebook.com/v21.0/act_123/insights?after=xyz"

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.params.get("after") == "xyz":
            return httpx.Response(200, json={"data": [{"date_start": "2024-01-02", "spend": "2"}]})
        return httpx.Response(
            200,
            json={
                "data": [{"date_start": "2024-01-01", "spend": "1"}],
                "paging": {"next": next_url},
            },
        )

    filters = FetchFilters(
        created_since=datetime(2024, 1, 1, tzinfo=timezone.utc),
        until=datetime(2024, 1, 7, 23, 59, 59, tzinfo=timezone.utc),
    )

    async def run():
        async with _client(handler) as client:
            adapter = MetaAdsAdapter(_ctx("facebook", "act_123"), client=client)
            first = await adapter.fetch_page(filters, resource="insights")
            second = await adapter.fetch_page(None, first.next_cursor, resource="insights")
            return adapter, first, second

    adapter, first, second = asyncio.run(run())
    assert first.next_cursor == next_url
    assert second.is_last
    assert seen[0].url.path == "/v21.0/act_123/insights"
    assert json.loads(seen[0].url.params["time_range"]) == {"since": "2024-01-01", "until": "2024-01-07"}
    assert seen[0].url.params["time_increment"] == "1"
    assert seen[0].url.params["level"] == "campaign"
    assert seen[1].url.params["after"] == "xyz"
    assert seen[1].url.params["access_token"] == "tok"

    rec = adapter.normalize(second.records[0])[0]
    assert rec.account_id == "acc_facebook"
    assert rec.currency == "SEK"


def test_meta_cursor_request_carries_current_token() -> None:
    seen: list[httpx.Request] = []
    next_url = "https://graph.facebook.com/v21.0/act_123/insights?access_token=tok&after=xyz"

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": []})

    async def run():
        async with _client(handler) as client:
            adapter = MetaAdsAdapter(_ctx("facebook", "act_123"), client=client)
            adapter.credentials["access_token"] = "fresh"
            await adapter.fetch_page(None, next_url, resource="insights")

    asyncio.run(run())
    assert seen[0].url.params.get_list("access_token") == ["fresh"]
    assert seen[0].url.params["after"] == "xyz"


def test_meta_default_window_ends_on_the_utc_date(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "profitsync.connectors.meta_ads.now_utc",
        lambda: datetime(2024, 3, 10, 23, 30, tzinfo=timezone.utc),
    )
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": []})

    async def run():
        async with _client(handler) as client:
            adapter = MetaAdsAdapter(_ctx("facebook", "act_123"), client=client)
            await adapter.fetch_page(None, resource="insights")

    asyncio.run(run())
    assert json.loads(seen[0].url.params["time_range"]) == {"since": "2024-03-03", "until": "2024-03-10"}


def test_meta_graph_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        code = int(request.url.params.get("limit"))
        return httpx.Response(400, json={"error": {"message": "boom", "code": code}})

    async def run(code: int):
        async with _client(handler) as client:
            adapter = MetaAdsAdapter(_ctx("facebook", "act_123", page_size=code), client=client)
            await adapter.fetch_page(None, resource="insights")

    with pytest.raises(AuthExpired):
        asyncio.run(run(190))
    with pytest.raises(Retryable):
        asyncio.run(run(17))
    with pytest.raises(FetchError) as exc:
        asyncio.run(run(100))
    assert not isinstance(exc.value, (AuthExpired, Retryable))


def test_meta_refresh_exchanges_token() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/oauth/access_token")
        assert request.url.params["grant_type"] == "fb_exchange_token"
        return httpx.Response(200, json={"access_token": "new"})

    settings = SimpleNamespace(meta_app_id="app", meta_app_secret="secret")

    async def run():
        async with _client(handler) as client:
            adapter = MetaAdsAdapter(_ctx("facebook", "act_123"), client=client, settings=settings)
            return await adapter.refresh_credentials()

    creds = asyncio.run(run())
    assert creds["access_token"] == "new"


def test_meta_refresh_without_app_credentials_returns_none() -> None:
    adapter = MetaAdsAdapter(_ctx("facebook", "act_123"), settings=SimpleNamespace(meta_app_id=None, meta_app_secret=None))
    assert asyncio.run(adapter.refresh_credentials()) is None


# Google Sheets


def test_sheets_skips_header_and_sparse_rows() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "values": [
                    ["Date", "Campaign ID", "Campaign", "Spend", "Impr", "Clicks", "Conv", "Value", "Currency"],
                    ["15/01/2024", "1", "Brand", "100", "1000", "10", "1", "300", "SEK"],
                    ["16/01/2024", "", "", ""],
                    ["31/12/2023", "1", "Brand", "50", "500", "5", "0", "0", "SEK"],
                    ["not a date", "1", "Brand", "50"],
                ]
            },
        )

    filters = FetchFilters(created_since=datetime(2024, 1, 1, tzinfo=timezone.utc))

    async def run():
        async with _client(handler) as client:
            adapter = GoogleSheetsAdapter(_ctx("google_sheets", "sheets:abc"), client=client)
            page = await adapter.fetch_page(filters, resource="rows")
            return adapter, page

    adapter, page = asyncio.run(run())
    assert page.is_last
    assert [r["row_number"] for r in page.records] == [2, 5]
    assert seen[0].headers["Authorization"] == "Bearer tok"
    assert seen[0].url.path.startswith("/v4/spreadsheets/abc/values/")

    rec = adapter.normalize(page.records[0])[0]
    assert rec.date == datetime(2024, 1, 15, tzinfo=timezone.utc)
    with pytest.raises(ValidationError):
        adapter.normalize(page.records[1])


def test_sheets_not_found() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": {"code": 404}})

    async def run():
        async with _client(handler) as client:
            adapter = GoogleSheetsAdapter(_ctx("google_sheets", "sheets:abc"), client=client)
            await adapter.fetch_page(None, resource="rows")

    with pytest.raises(FetchError) as exc:
        asyncio.run(run())
    assert exc.value.status_code == 404


def test_sheets_refresh_with_expired_refresh_token() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant"})

    settings = SimpleNamespace(google_client_id="cid", google_client_secret="cs", slash_date_order="DMY")

    async def run():
        async with _client(handler) as client:
            adapter = GoogleSheetsAdapter(_ctx("google_sheets", "sheets:abc"), client=client, settings=settings)
            await adapter.refresh_credentials()

    with pytest.raises(AuthExpired):
        asyncio.run(run())
