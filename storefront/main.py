from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from storefront.cache_sync import ProductCacheUpdater, parse_cached_catalog
from storefront.catalog import rewrite_image_urls
from storefront.checkout import CheckoutProviderError, CheckoutSessionCreator, CheckoutValidationError
from storefront.config import ConfigurationError, settings
from storefront.db import get_session, init_db
from storefront.fulfillment import (
    CHECKOUT_COMPLETED,
    FulfillmentSubmissionError,
    OrderFulfiller,
    WebhookRequestError,
    verify_webhook,
)
from storefront.printify_api import PrintifyApiClient, PrintifyApiError
from storefront.schemas import (
    CacheSyncResponse,
    CachedCatalog,
    CreateCheckoutSessionRequest,
    CreateCheckoutSessionResponse,
)
from storefront.security import require_internal_api_token
from storefront.storage import ProductCacheError, ProductCacheStorage
from storefront.variant_map import VariantMap

logger = logging.getLogger(__name__)

printify_api = PrintifyApiClient()


@lru_cache(maxsize=1)
def get_cache_storage() -> ProductCacheStorage:
    return ProductCacheStorage()


@asynccontextmanager
async def _app_lifespan(app: FastAPI) -> AsyncIterator[None]:
    init_db()
    app.state.variant_map = None
    if settings.VARIANT_MAP_PATH:
        app.state.variant_map = VariantMap.load(settings.VARIANT_MAP_PATH)
    else:
        logger.warning("VARIANT_MAP_PATH is not set; checkout webhooks cannot be fulfilled")
    yield


app = FastAPI(
    title="Storefront API",
    default_response_class=ORJSONResponse,
    lifespan=_app_lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Stripe-Signature"],
)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(_request: Request, exc: ConfigurationError) -> ORJSONResponse:
    logger.error("Request hit missing configuration", extra={"error": str(exc)})
    return ORJSONResponse(status_code=500, content={"detail": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(_request: Request, exc: RequestValidationError) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": _validation_errors(exc)},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(_request: Request, exc: Exception) -> ORJSONResponse:
    logger.exception("Unhandled server exception", exc_info=exc)
    return ORJSONResponse(status_code=500, content={"detail": "Internal server error."})


def _validation_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


def _present_catalog(catalog: CachedCatalog) -> dict[str, Any]:
    if settings.PRODUCT_IMAGE_BASE_URL:
        catalog = rewrite_image_urls(
            catalog,
            base_url=settings.PRODUCT_IMAGE_BASE_URL,
            prefix=settings.PRODUCT_IMAGE_PREFIX,
        )
    return catalog.model_dump(mode="json")


@app.get("/health")
def health() -> dict[str, bool]:
    return {"ok": True}


@app.get("/products")
def get_cached_products(storage: ProductCacheStorage = Depends(get_cache_storage)):
    try:
        payload, _etag = storage.read_json(settings.PRODUCT_CACHE_KEY)
    except ProductCacheError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No cached product data available at {settings.PRODUCT_CACHE_KEY}.",
        )

    try:
        catalog = parse_cached_catalog(payload)
    except ProductCacheError:
        logger.warning("Cached catalog is malformed; returning an empty product list")
        return {"current_page": 1, "data": []}
    return _present_catalog(catalog)


@app.get("/products/live")
async def get_live_products():
    try:
        raw = await printify_api.list_all_products()
        catalog = CachedCatalog.model_validate(raw)
    except PrintifyApiError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Printify catalog has an unexpected shape",
        ) from exc
    return _present_catalog(catalog)


@app.get("/products/{product_id}")
async def get_product_by_id(product_id: str):
    try:
        raw = await printify_api.get_product(product_id=product_id)
    except PrintifyApiError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    if not settings.PRODUCT_IMAGE_BASE_URL:
        return raw
    try:
        catalog = CachedCatalog.model_validate({"data": [raw]})
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Printify product has an unexpected shape",
        ) from exc
    return _present_catalog(catalog)["data"][0]


@app.post("/checkout/sessions", response_model=CreateCheckoutSessionResponse)
def create_checkout_session(
    payload: CreateCheckoutSessionRequest,
    storage: ProductCacheStorage = Depends(get_cache_storage),
):
    creator = CheckoutSessionCreator(storage=storage)
    try:
        return creator.create(payload)
    except CheckoutValidationError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    except (ProductCacheError, CheckoutProviderError) as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@app.post("/webhooks/stripe")
async def stripe_webhook(request: Request, session: Session = Depends(get_session)):
    body = await request.body()
    try:
        event = verify_webhook(body, request.headers.get("stripe-signature"))
    except WebhookRequestError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    event_type = event.get("type")
    if event_type != CHECKOUT_COMPLETED:
        logger.info("Ignoring unhandled Stripe event", extra={"event_type": event_type})
        return {"received": True}

    data = event.get("data")
    session_obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(session_obj, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Stripe session payload.")

    variant_map: VariantMap | None = getattr(request.app.state, "variant_map", None)
    if variant_map is None:
        raise ConfigurationError("Variant map is not loaded. Set VARIANT_MAP_PATH.")

    fulfiller = OrderFulfiller(session=session, variant_map=variant_map, printify=printify_api)
    try:
        outcome = await fulfiller.fulfill(event_id=str(event.get("id") or ""), checkout_session=session_obj)
    except WebhookRequestError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    except FulfillmentSubmissionError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    return {
        "received": True,
        "status": outcome.status,
        "duplicate": outcome.duplicate,
        "providerOrderId": outcome.provider_order_id,
    }


@app.post(
    "/admin/cache/sync",
    response_model=CacheSyncResponse,
    dependencies=[Depends(require_internal_api_token)],
)
async def sync_product_cache(storage: ProductCacheStorage = Depends(get_cache_storage)):
    updater = ProductCacheUpdater(printify=printify_api, storage=storage)
    try:
        result = await updater.run()
    except (PrintifyApiError, ProductCacheError) as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return CacheSyncResponse(
        objectKey=result.object_key,
        count=result.count,
        excluded=result.excluded,
        changed=result.changed,
    )
