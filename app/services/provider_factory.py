from __future__ import annotations

from functools import lru_cache

from app.config import settings
from app.services.cj_supplier_client import CjSupplierClient
from app.services.mock_supplier import MockPrimarySupplier
from app.services.storefront_client import MockStorefront, ShopifyStorefrontClient
from app.services.supplier_provider import PrimarySupplier, Storefront


@lru_cache(maxsize=1)
def get_primary_supplier() -> PrimarySupplier:
    provider = settings.supplier_provider.strip().lower()
    if provider == 'cj':
        return CjSupplierClient()
    return MockPrimarySupplier()


@lru_cache(maxsize=1)
def get_storefront() -> Storefront:
    provider = settings.storefront_provider.strip().lower()
    if provider == 'shopify':
        return ShopifyStorefrontClient()
    return MockStorefront()
