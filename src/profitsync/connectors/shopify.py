from __future__ import annotations

import logging
from typing import Any

import httpx

from profitsync.connectors.base import (
    FetchFilters,
    HttpSourceAdapter,
    Page,
    check_page_args,
    raise_for_upstream,
)
from profitsync.errors import FetchError, Retryable
from profitsync.normalize import NormalizedRecord, normalize_shopify_order, normalize_shopify_product

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "2024-01"
MAX_PAGE_SIZE = 250
INVENTORY_BATCH_SIZE = 100


def _iso(dt) -> str:
    return dt.isoformat()


def next_page_info(resp: httpx.Response) -> str | None:
    """Extract the page_info token from the `Link: <...>; rel="next"` header."""
    link = resp.links.get("next")
    if not link or not link.get("url"):
        return None
    return httpx.URL(link["url"]).params.get("page_info") or None


class ShopifyAdapter(HttpSourceAdapter):
    """
    Shopify Admin REST adapter.

    Two streams per store: `products` (variants, reconciled first so line items
    can reference them) and `orders`. Pagination is cursor based via page_info;
    once a cursor exists the request carries only page_info + limit.
    """

    source_kind = "shopify"
    resources = ("products", "orders")

    def _shop_domain(self) -> str:
        domain = self.ctx.external_id.strip().removeprefix("https://").removeprefix("http://")
        return domain.rstrip("/")

    def _api_version(self) -> str:
        return str(self.ctx.config.get("api_version") or DEFAULT_API_VERSION)

    def _page_size(self) -> int:
        return max(1, min(MAX_PAGE_SIZE, int(self.ctx.config.get("page_size", MAX_PAGE_SIZE))))

    def _headers(self) -> dict[str, str]:
        token = self.credentials.get("access_token") or ""
        return {"X-Shopify-Access-Token": token, "Content-Type": "application/json"}

    def _url(self, path: str) -> str:
        return f"https://{self._shop_domain()}/admin/api/{self._api_version()}/{path.lstrip('/')}"

    def _filter_params(self, resource: str, filters: FetchFilters | None) -> dict[str, Any]:
        params: dict[str, Any] = {"limit": self._page_size()}
        if resource == "orders":
            params["status"] = "any"
        if filters is None:
            return params
        if filters.updated_since is not None:
            params["updated_at_min"] = _iso(filters.updated_since)
        if resource == "products":
            # The catalog is never date-windowed: line items of any order must
            # find their variant.
            return params
        if filters.created_since is not None:
            params["created_at_min"] = _iso(filters.created_since)
        if filters.until is not None:
            params["created_at_max"] = _iso(filters.until)
        return params

    async def fetch_page(
        self,
        filters: FetchFilters | None = None,
        cursor: str | None = None,
        *,
        resource: str | None = None,
    ) -> Page:
        check_page_args(filters, cursor)
        resource = resource or "orders"
        if resource not in self.resources:
            raise ValueError(f"Unknown shopify resource: {resource}")

        if cursor is not None:
            params: dict[str, Any] = {"page_info": cursor, "limit": self._page_size()}
        else:
            params = self._filter_params(resource, filters)

        resp = await self._request("GET", self._url(f"{resource}.json"), params=params, headers=self._headers())
        raise_for_upstream(resp, source=self.source_kind)
        body = resp.json()
        if not isinstance(body, dict):
            raise FetchError(f"shopify: unexpected {resource} payload")
        records = [r for r in body.get(resource) or [] if isinstance(r, dict)]

        if resource == "orders" and self.ctx.config.get("include_transactions"):
            for order in records:
                order["transactions"] = await self._fetch_transactions(order.get("id"))
        if resource == "products" and self.ctx.config.get("import_inventory_costs", True):
            await self._attach_inventory_costs(records)

        return Page(records=records, next_cursor=next_page_info(resp) if records else None)

    async def _attach_inventory_costs(self, products: list[dict[str, Any]]) -> None:
        """Copy each variant's inventory item unit cost onto the variant as `inventory_cost`."""
        variants = [
            v
            for p in products
            for v in p.get("variants") or []
            if isinstance(v, dict) and v.get("inventory_item_id")
        ]
        item_ids = list(dict.fromkeys(str(v["inventory_item_id"]) for v in variants))
        costs: dict[str, Any] = {}
        try:
            for start in range(0, len(item_ids), INVENTORY_BATCH_SIZE):
                batch = item_ids[start : start + INVENTORY_BATCH_SIZE]
                if self.governor is not None:
                    await self.governor.wait(self.source_kind)
                resp = await self._request(
                    "GET",
                    self._url("inventory_items.json"),
                    params={"ids": ",".join(batch), "limit": len(batch)},
                    headers=self._headers(),
                )
                raise_for_upstream(resp, source=self.source_kind)
                body = resp.json()
                items = body.get("inventory_items") if isinstance(body, dict) else None
                for item in items or []:
                    if isinstance(item, dict) and item.get("cost") not in (None, ""):
                        costs[str(item.get("id"))] = item["cost"]
        except Retryable:
            raise
        except FetchError as e:
            # Stores without the read_inventory scope still sync their catalog.
            logger.warning("[shopify] %s: inventory costs unavailable: %s", self.ctx.account_id, e)
            return

        for v in variants:
            cost = costs.get(str(v["inventory_item_id"]))
            if cost is not None:
                v["inventory_cost"] = cost

    async def _fetch_transactions(self, order_id: Any) -> list[dict[str, Any]]:
        if self.governor is not None:
            await self.governor.wait(self.source_kind)
        resp = await self._request(
            "GET",
            self._url(f"orders/{order_id}/transactions.json"),
            headers=self._headers(),
        )
        raise_for_upstream(resp, source=self.source_kind)
        body = resp.json()
        txns = body.get("transactions") if isinstance(body, dict) else None
        return [t for t in txns or [] if isinstance(t, dict)]

    def normalize(self, raw: dict[str, Any], *, resource: str | None = None) -> list[NormalizedRecord]:
        if resource == "products":
            return list(normalize_shopify_product(raw, store_id=self.ctx.account_id))
        return [normalize_shopify_order(raw, store_id=self.ctx.account_id)]
