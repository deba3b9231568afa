"""Pure transformations over the mirrored fulfillment catalog."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping
from typing import Any
from urllib.parse import quote

from storefront.schemas import CachedCatalog, CatalogProduct, ShippingRate

_REST_OF_WORLD = "REST_OF_THE_WORLD"


def filter_catalog(
    products: Iterable[CatalogProduct],
    *,
    excluded_ids: set[str],
    drop_disabled_variants: bool,
) -> list[CatalogProduct]:
    kept: list[CatalogProduct] = []
    for product in products:
        if product.id in excluded_ids:
            continue
        if drop_disabled_variants:
            product = product.model_copy(
                update={"variants": [variant for variant in product.variants if variant.is_enabled]}
            )
        kept.append(product)
    return kept


def merge_preserved_fields(
    products: list[CatalogProduct],
    previous: CachedCatalog | None,
) -> list[CatalogProduct]:
    """Carry manually curated images over from the previous cache."""
    if previous is None:
        return products

    previous_by_id = {product.id: product for product in previous.data}
    merged: list[CatalogProduct] = []
    for product in products:
        earlier = previous_by_id.get(product.id)
        if earlier is not None and earlier.images:
            product = product.model_copy(update={"images": earlier.images})
        merged.append(product)
    return merged


def _profile_rate(profile: Mapping[str, Any]) -> ShippingRate | None:
    first = profile.get("first_item") or {}
    additional = profile.get("additional_items") or {}
    first_cost = first.get("cost") if isinstance(first, Mapping) else None
    additional_cost = additional.get("cost") if isinstance(additional, Mapping) else None
    if not isinstance(first_cost, int):
        return None
    if not isinstance(additional_cost, int):
        additional_cost = first_cost
    return ShippingRate(first_item=first_cost, additional_items=additional_cost)


def shipping_rates_by_variant(profiles: Iterable[Mapping[str, Any]], *, country: str) -> dict[int, ShippingRate]:
    """Index shipping profiles by variant id, preferring an exact country match."""
    exact: dict[int, ShippingRate] = {}
    fallback: dict[int, ShippingRate] = {}
    for profile in profiles:
        countries = profile.get("countries") or []
        if country in countries:
            target = exact
        elif _REST_OF_WORLD in countries:
            target = fallback
        else:
            continue
        rate = _profile_rate(profile)
        if rate is None:
            continue
        for variant_id in profile.get("variant_ids") or []:
            target.setdefault(int(variant_id), rate)
    return {**fallback, **exact}


def attach_shipping_rates(
    products: list[CatalogProduct],
    *,
    rates_by_pair: Mapping[tuple[int, int], Mapping[int, ShippingRate]],
) -> list[CatalogProduct]:
    updated: list[CatalogProduct] = []
    for product in products:
        if product.blueprint_id is None or product.print_provider_id is None:
            updated.append(product)
            continue
        rates = rates_by_pair.get((product.blueprint_id, product.print_provider_id)) or {}
        variants = [
            variant.model_copy(update={"shipping": rates.get(variant.id, variant.shipping)})
            for variant in product.variants
        ]
        updated.append(product.model_copy(update={"variants": variants}))
    return updated


def _image_filename(src: str) -> str:
    return src.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]


def rewrite_image_urls(catalog: CachedCatalog, *, base_url: str, prefix: str) -> CachedCatalog:
    base = base_url.rstrip("/")
    folder = prefix.strip("/")
    products: list[CatalogProduct] = []
    for product in catalog.data:
        images = []
        for image in product.images:
            path = "/".join(part for part in (folder, product.id, _image_filename(image.src)) if part)
            images.append(image.model_copy(update={"src": f"{base}/{quote(path)}"}))
        products.append(product.model_copy(update={"images": images}))
    return catalog.model_copy(update={"data": products})


def catalog_fingerprint(products: Iterable[CatalogProduct]) -> str:
    """Digest of product data only; pagination fields never affect it."""
    serialized = json.dumps(
        [product.model_dump(mode="json") for product in products],
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()
