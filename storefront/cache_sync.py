from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from storefront.catalog import (
    attach_shipping_rates,
    catalog_fingerprint,
    filter_catalog,
    merge_preserved_fields,
    shipping_rates_by_variant,
)
from storefront.config import ConfigurationError, settings
from storefront.printify_api import PrintifyApiClient, PrintifyApiError
from storefront.schemas import CachedCatalog, CatalogProduct, ShippingRate
from storefront.storage import ProductCacheError, ProductCacheStorage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheSyncResult:
    object_key: str
    count: int
    excluded: int
    changed: bool


def parse_cached_catalog(payload: Any) -> CachedCatalog:
    # Early cache files stored the bare product array.
    if isinstance(payload, list):
        payload = {"data": payload}
    try:
        return CachedCatalog.model_validate(payload)
    except ValidationError as exc:
        raise ProductCacheError(f"Cached catalog has an unexpected shape: {exc}", status_code=500) from exc


def load_cached_catalog(storage: ProductCacheStorage, key: str | None = None) -> CachedCatalog | None:
    payload, _etag = storage.read_json(key or settings.PRODUCT_CACHE_KEY)
    if payload is None:
        return None
    return parse_cached_catalog(payload)


class ProductCacheUpdater:
    def __init__(
        self,
        *,
        printify: PrintifyApiClient | None = None,
        storage: ProductCacheStorage | None = None,
    ) -> None:
        self._printify = printify or PrintifyApiClient()
        self._storage = storage or ProductCacheStorage()

    async def run(self) -> CacheSyncResult:
        key = settings.PRODUCT_CACHE_KEY
        try:
            result = await self._sync(key)
        except (ConfigurationError, PrintifyApiError, ProductCacheError) as exc:
            logger.error(
                "Product cache sync aborted; previous cache left untouched",
                extra={"key": key, "error": str(exc)},
            )
            raise
        logger.info(
            "Product cache sync finished",
            extra={
                "key": key,
                "count": result.count,
                "excluded": result.excluded,
                "changed": result.changed,
            },
        )
        return result

    async def _sync(self, key: str) -> CacheSyncResult:
        raw = await self._printify.list_all_products()
        try:
            fetched = CachedCatalog.model_validate(raw)
        except ValidationError as exc:
            raise PrintifyApiError(message=f"Printify catalog has an unexpected shape: {exc}") from exc

        products = filter_catalog(
            fetched.data,
            excluded_ids=settings.excluded_product_ids,
            drop_disabled_variants=settings.CACHE_DROP_DISABLED_VARIANTS,
        )
        excluded = len(fetched.data) - len(products)

        previous_payload, etag = self._storage.read_json(key)
        previous: CachedCatalog | None = None
        if previous_payload is not None:
            try:
                previous = parse_cached_catalog(previous_payload)
            except ProductCacheError:
                logger.warning("Existing product cache is unreadable; it will be replaced", extra={"key": key})

        if settings.CACHE_PRESERVE_IMAGES:
            products = merge_preserved_fields(products, previous)
        if settings.CACHE_INCLUDE_SHIPPING:
            products = await self._attach_shipping(products)

        if previous is not None and catalog_fingerprint(previous.data) == catalog_fingerprint(products):
            return CacheSyncResult(object_key=key, count=len(products), excluded=excluded, changed=False)

        catalog = CachedCatalog(current_page=1, last_page=fetched.last_page, data=products)
        self._storage.write_json(
            key,
            catalog.model_dump(mode="json"),
            if_match=etag,
            if_none_match=etag is None,
        )
        return CacheSyncResult(object_key=key, count=len(products), excluded=excluded, changed=True)

    async def _attach_shipping(self, products: list[CatalogProduct]) -> list[CatalogProduct]:
        pairs = sorted(
            {
                (product.blueprint_id, product.print_provider_id)
                for product in products
                if product.blueprint_id is not None and product.print_provider_id is not None
            }
        )
        rates_by_pair: dict[tuple[int, int], dict[int, ShippingRate]] = {}
        for blueprint_id, print_provider_id in pairs:
            profiles = await self._printify.get_shipping_profiles(
                blueprint_id=blueprint_id,
                print_provider_id=print_provider_id,
            )
            try:
                rates_by_pair[(blueprint_id, print_provider_id)] = shipping_rates_by_variant(
                    profiles,
                    country=settings.CACHE_SHIPPING_COUNTRY,
                )
            except (AttributeError, TypeError, ValueError) as exc:
                # pydantic ValidationError is a ValueError
                raise PrintifyApiError(
                    message=f"Shipping profiles for blueprint {blueprint_id} are malformed: {exc}"
                ) from exc
        return attach_shipping_rates(products, rates_by_pair=rates_by_pair)
