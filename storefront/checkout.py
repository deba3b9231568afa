from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from typing import Any

import stripe

from storefront.cache_sync import load_cached_catalog
from storefront.config import require_settings, settings
from storefront.schemas import (
    CachedCatalog,
    CartItem,
    CatalogProduct,
    CatalogVariant,
    CreateCheckoutSessionRequest,
    CreateCheckoutSessionResponse,
)
from storefront.secret_store import stripe_api_key
from storefront.shipping import calculate_shipping_cents
from storefront.storage import ProductCacheError, ProductCacheStorage

logger = logging.getLogger(__name__)

# Stripe caps metadata values at 500 characters.
_METADATA_VALUE_LIMIT = 500
_ITEMS_KEY_PREFIX = "items_"
_ITEMS_CHUNKS_KEY = "items_chunks"


class CheckoutValidationError(ValueError):
    status_code = 400


class CheckoutProviderError(RuntimeError):
    def __init__(self, message: str, *, status_code: int = 502) -> None:
        super().__init__(message)
        self.status_code = status_code


def resolve_cart_line(catalog: CachedCatalog, item: CartItem) -> tuple[CatalogProduct, CatalogVariant]:
    product = catalog.find_product(item.productId)
    if product is None:
        raise CheckoutValidationError(
            f"Variant with id {item.variantId} not found (unknown product {item.productId})"
        )
    variant = product.find_variant(item.variantId)
    if variant is None:
        raise CheckoutValidationError(f"Variant with id {item.variantId} not found")
    if not variant.purchasable:
        reason = "is disabled" if not variant.is_enabled else "is not available"
        raise CheckoutValidationError(f"Variant with id {item.variantId} {reason}")
    return product, variant


def _line_item_name(product: CatalogProduct, variant: CatalogVariant) -> str:
    if product.title and variant.title:
        return f"{product.title} - {variant.title}"
    return product.title or variant.title or f"Variant {variant.id}"


def _product_image(product: CatalogProduct, variant: CatalogVariant) -> str | None:
    for image in product.images:
        if variant.id in image.variant_ids and image.src.startswith("https://"):
            return image.src
    for image in product.images:
        if image.src.startswith("https://"):
            return image.src
    return None


def build_line_items(
    items: Sequence[CartItem],
    catalog: CachedCatalog,
    *,
    currency: str,
) -> list[dict[str, Any]]:
    """Stripe line items priced from the cached catalog, never from the cart payload."""
    line_items: list[dict[str, Any]] = []
    for item in items:
        product, variant = resolve_cart_line(catalog, item)
        product_data: dict[str, Any] = {
            "name": _line_item_name(product, variant),
            "metadata": {
                "product_id": product.id,
                "variant_id": str(variant.id),
                "sku": variant.sku or "",
            },
        }
        image = _product_image(product, variant)
        if image:
            product_data["images"] = [image]
        line_items.append(
            {
                "price_data": {
                    "currency": currency,
                    "product_data": product_data,
                    "unit_amount": variant.price,
                },
                "quantity": item.quantity,
            }
        )
    return line_items


def cart_shipping_cents(items: Sequence[CartItem], catalog: CachedCatalog) -> int:
    lines = []
    for item in items:
        _product, variant = resolve_cart_line(catalog, item)
        lines.append((variant.shipping, item.quantity))
    return calculate_shipping_cents(lines, default_rate=settings.DEFAULT_SHIPPING_CENTS)


def encode_cart_metadata(items: Sequence[CartItem]) -> dict[str, str]:
    pairs = [[item.productId, item.variantId] for item in items]
    serialized = json.dumps(pairs, separators=(",", ":"))
    chunks = [
        serialized[start : start + _METADATA_VALUE_LIMIT]
        for start in range(0, len(serialized), _METADATA_VALUE_LIMIT)
    ]
    metadata = {f"{_ITEMS_KEY_PREFIX}{index}": chunk for index, chunk in enumerate(chunks)}
    metadata[_ITEMS_CHUNKS_KEY] = str(len(chunks))
    return metadata


def decode_cart_metadata(metadata: Mapping[str, Any] | None) -> list[tuple[str | None, int]]:
    """Return ``(product_id, variant_id)`` pairs recorded on a checkout session."""
    if not metadata:
        return []

    chunk_count_raw = metadata.get(_ITEMS_CHUNKS_KEY)
    if chunk_count_raw:
        try:
            chunk_count = int(chunk_count_raw)
        except (TypeError, ValueError) as exc:
            raise ValueError("Invalid items_chunks in checkout metadata") from exc
        parts = []
        for index in range(chunk_count):
            part = metadata.get(f"{_ITEMS_KEY_PREFIX}{index}")
            if part is None:
                raise ValueError(f"Checkout metadata is missing {_ITEMS_KEY_PREFIX}{index}")
            parts.append(part)
        try:
            pairs = json.loads("".join(parts))
        except json.JSONDecodeError as exc:
            raise ValueError("Checkout metadata items are not valid JSON") from exc
        if not isinstance(pairs, list):
            raise ValueError("Checkout metadata items must be a JSON array")
        decoded: list[tuple[str | None, int]] = []
        for pair in pairs:
            if not isinstance(pair, list) or len(pair) != 2:
                raise ValueError("Checkout metadata items must be [productId, variantId] pairs")
            try:
                decoded.append((str(pair[0]), int(pair[1])))
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Invalid variant id in checkout metadata: {pair[1]!r}") from exc
        return decoded

    # Sessions created before pairs were recorded only carry variant ids.
    legacy = metadata.get("variant_ids")
    if legacy:
        try:
            return [(None, int(value)) for value in str(legacy).split(",") if value.strip()]
        except ValueError as exc:
            raise ValueError("Invalid variant_ids in checkout metadata") from exc
    return []


class CheckoutSessionCreator:
    def __init__(self, *, storage: ProductCacheStorage | None = None) -> None:
        self._storage = storage

    def _load_catalog(self) -> CachedCatalog:
        storage = self._storage or ProductCacheStorage()
        catalog = load_cached_catalog(storage)
        if catalog is None:
            raise ProductCacheError("Product catalog cache is not available yet", status_code=503)
        return catalog

    def create(self, request: CreateCheckoutSessionRequest) -> CreateCheckoutSessionResponse:
        require_settings("CHECKOUT_SUCCESS_URL", "CHECKOUT_CANCEL_URL", component="Checkout")
        stripe.api_key = stripe_api_key()

        catalog = self._load_catalog()
        currency = settings.CHECKOUT_CURRENCY
        line_items = build_line_items(request.items, catalog, currency=currency)
        shipping_cents = cart_shipping_cents(request.items, catalog)

        try:
            checkout_session = stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                line_items=line_items,
                shipping_address_collection={"allowed_countries": settings.allowed_countries},
                shipping_options=[
                    {
                        "shipping_rate_data": {
                            "type": "fixed_amount",
                            "display_name": settings.SHIPPING_RATE_DISPLAY_NAME,
                            "fixed_amount": {"amount": shipping_cents, "currency": currency},
                        }
                    }
                ],
                success_url=settings.CHECKOUT_SUCCESS_URL,
                cancel_url=settings.CHECKOUT_CANCEL_URL,
                metadata=encode_cart_metadata(request.items),
            )
        except stripe.StripeError as exc:
            logger.exception("Stripe checkout session creation failed")
            raise CheckoutProviderError(
                f"Stripe checkout session creation failed: {exc.user_message or exc}",
                status_code=exc.http_status or 502,
            ) from exc

        logger.info(
            "Created checkout session",
            extra={
                "session_id": checkout_session.id,
                "line_items": len(line_items),
                "shipping_cents": shipping_cents,
            },
        )
        return CreateCheckoutSessionResponse(url=checkout_session.url, sessionId=checkout_session.id)
