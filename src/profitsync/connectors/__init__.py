from profitsync.connectors.base import AccountContext, FetchFilters, HttpSourceAdapter, Page, SourceAdapter
from profitsync.connectors.google_sheets import GoogleSheetsAdapter
from profitsync.connectors.meta_ads import MetaAdsAdapter
from profitsync.connectors.shopify import ShopifyAdapter

__all__ = [
    "AccountContext",
    "FetchFilters",
    "HttpSourceAdapter",
    "Page",
    "SourceAdapter",
    "ShopifyAdapter",
    "MetaAdsAdapter",
    "GoogleSheetsAdapter",
]
