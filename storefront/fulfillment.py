from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import stripe
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.checkout import decode_cart_metadata
from storefront.config import settings
from storefront.models import ProcessedWebhookEvent
from storefront.printify_api import PrintifyApiClient, PrintifyApiError
from storefront.schemas import FulfillmentOrder, FulfillmentOrderLine, ShippingAddress
from storefront.secret_store import stripe_api_key, stripe_webhook_secret
from storefront.variant_map import VariantMap, VariantMappingError

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
PROCESSING = "processing"


class WebhookRequestError(ValueError):
    status_code = 400


class FulfillmentSubmissionError(RuntimeError):
    """The order could not be handed to the fulfillment provider; safe to retry."""

    status_code = 502


@dataclass(frozen=True)
class FulfillmentOutcome:
    session_id: str
    status: str
    provider_order_id: str | None = None
    duplicate: bool = False
    detail: str | None = None


def verify_webhook(payload: bytes, signature: str | None) -> dict[str, Any]:
    secret = stripe_webhook_secret()
    if not signature:
        raise WebhookRequestError("Missing Stripe signature header.")
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise WebhookRequestError("Webhook payload must be UTF-8.") from exc

    try:
        stripe.WebhookSignature.verify_header(
            text,
            signature,
            secret,
            settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )
    except stripe.SignatureVerificationError as exc:
        logger.warning("Webhook signature verification failed", extra={"error": str(exc)})
        raise WebhookRequestError("Invalid Stripe signature.") from exc

    try:
        event = json.loads(text)
    except json.JSONDecodeError as exc:
        raise WebhookRequestError("Invalid JSON payload.") from exc
    if not isinstance(event, dict):
        raise WebhookRequestError("Webhook payload must be a JSON object.")
    return event


def _field(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    try:
        return obj[key]
    except (KeyError, TypeError, AttributeError):
        return None


def _first_mapping(*candidates: Any) -> Mapping[str, Any]:
    for candidate in candidates:
        if isinstance(candidate, Mapping) and candidate:
            return candidate
    return {}


def extract_shipping_address(checkout_session: Mapping[str, Any]) -> ShippingAddress:
    customer = _first_mapping(checkout_session.get("customer_details"))
    shipping = _first_mapping(
        _field(checkout_session.get("collected_information"), "shipping_details"),
        checkout_session.get("shipping_details"),
        checkout_session.get("shipping"),
        customer,
    )
    address = _first_mapping(shipping.get("address"), customer.get("address"))
    name_parts = (shipping.get("name") or customer.get("name") or "").split()
    return ShippingAddress(
        first_name=name_parts[0] if name_parts else "Customer",
        last_name=" ".join(name_parts[1:]),
        email=customer.get("email"),
        phone=shipping.get("phone") or customer.get("phone") or "",
        country=address.get("country") or "",
        region=address.get("state") or "",
        address1=address.get("line1") or "",
        address2=address.get("line2") or "",
        city=address.get("city") or "",
        zip=address.get("postal_code") or "",
    )


def list_purchased_quantities(session_id: str) -> dict[int, int]:
    """Quantity per storefront variant id, read from the session's Stripe line items."""
    stripe.api_key = stripe_api_key()
    response = stripe.checkout.Session.list_line_items(
        session_id,
        limit=100,
        expand=["data.price.product"],
    )
    quantities: dict[int, int] = {}
    for item in _field(response, "data") or []:
        metadata = _field(_field(_field(item, "price"), "product"), "metadata")
        variant_raw = _field(metadata, "variant_id")
        if variant_raw in (None, ""):
            logger.warning(
                "Stripe line item carries no variant_id metadata",
                extra={"session_id": session_id, "line_item_id": _field(item, "id")},
            )
            continue
        try:
            variant_id = int(variant_raw)
        except (TypeError, ValueError):
            logger.warning(
                "Stripe line item has a non-numeric variant_id",
                extra={"session_id": session_id, "variant_id": variant_raw},
            )
            continue
        quantities[variant_id] = quantities.get(variant_id, 0) + int(_field(item, "quantity") or 0)
    return quantities


class OrderFulfiller:
    """
    Turns a completed checkout session into one fulfillment order.

    The session id is claimed in the ledger before any side effect, so
    overlapping or replayed deliveries of the same session submit at most one
    order. A claim is released when submission fails so the provider's retry
    can run the whole path again.
    """

    def __init__(
        self,
        *,
        session: Session,
        variant_map: VariantMap,
        printify: PrintifyApiClient | None = None,
    ) -> None:
        self._session = session
        self._variant_map = variant_map
        self._printify = printify or PrintifyApiClient()

    def _find(self, session_id: str) -> ProcessedWebhookEvent | None:
        return self._session.scalars(
            select(ProcessedWebhookEvent).where(ProcessedWebhookEvent.session_id == session_id)
        ).first()

    def _duplicate(self, session_id: str, existing: ProcessedWebhookEvent | None) -> FulfillmentOutcome:
        status = existing.status if existing else PROCESSING
        logger.info("Checkout session already processed", extra={"session_id": session_id, "status": status})
        return FulfillmentOutcome(
            session_id=session_id,
            status=status,
            provider_order_id=existing.provider_order_id if existing else None,
            duplicate=True,
        )

    def _claim(self, *, event_id: str, session_id: str) -> ProcessedWebhookEvent | None:
        claim = ProcessedWebhookEvent(session_id=session_id, event_id=event_id, status=PROCESSING)
        self._session.add(claim)
        try:
            self._session.commit()
        except IntegrityError:
            self._session.rollback()
            return None
        return claim

    def _finish(self, claim: ProcessedWebhookEvent, outcome: FulfillmentOutcome) -> FulfillmentOutcome:
        claim.status = outcome.status
        claim.provider_order_id = outcome.provider_order_id
        claim.detail = outcome.detail
        self._session.commit()
        return outcome

    def _release(self, claim: ProcessedWebhookEvent) -> None:
        self._session.rollback()
        self._session.delete(claim)
        self._session.commit()

    def _abort(self, *, session_id: str, status: str, detail: str) -> FulfillmentOutcome:
        logger.error(
            "Fulfillment order aborted",
            extra={"session_id": session_id, "status": status, "detail": detail},
        )
        return FulfillmentOutcome(session_id=session_id, status=status, detail=detail)

    async def fulfill(self, *, event_id: str, checkout_session: Mapping[str, Any]) -> FulfillmentOutcome:
        session_id = checkout_session.get("id")
        if not isinstance(session_id, str) or not session_id:
            raise WebhookRequestError("Missing Stripe session ID.")

        existing = self._find(session_id)
        if existing:
            return self._duplicate(session_id, existing)

        claim = self._claim(event_id=event_id, session_id=session_id)
        if claim is None:
            # Another delivery of this session claimed it first.
            return self._duplicate(session_id, self._find(session_id))

        try:
            outcome = await self._submit(session_id=session_id, checkout_session=checkout_session)
        except Exception:
            self._release(claim)
            raise
        return self._finish(claim, outcome)

    async def _submit(self, *, session_id: str, checkout_session: Mapping[str, Any]) -> FulfillmentOutcome:
        try:
            pairs = decode_cart_metadata(checkout_session.get("metadata"))
        except ValueError as exc:
            return self._abort(session_id=session_id, status="invalid_metadata", detail=str(exc))
        if not pairs:
            return self._abort(
                session_id=session_id,
                status="missing_items",
                detail="Checkout session metadata lists no variants",
            )

        variant_ids = list(dict.fromkeys(variant_id for _product_id, variant_id in pairs))
        try:
            mappings = {variant_id: self._variant_map.resolve(variant_id) for variant_id in variant_ids}
        except VariantMappingError as exc:
            return self._abort(session_id=session_id, status="unmapped_variant", detail=str(exc))

        try:
            quantities = list_purchased_quantities(session_id)
        except stripe.StripeError as exc:
            logger.exception("Failed to list Stripe line items", extra={"session_id": session_id})
            raise FulfillmentSubmissionError(f"Could not read line items for {session_id}: {exc}") from exc

        missing = [variant_id for variant_id in variant_ids if not quantities.get(variant_id)]
        if missing:
            return self._abort(
                session_id=session_id,
                status="missing_line_items",
                detail=f"No purchased quantity for variant IDs {missing}",
            )

        order = FulfillmentOrder(
            external_id=session_id,
            label=f"Order {session_id}",
            shipping_method=settings.PRINTIFY_SHIPPING_METHOD,
            line_items=[
                FulfillmentOrderLine(
                    product_id=mappings[variant_id].product_id,
                    variant_id=mappings[variant_id].provider_variant_id,
                    quantity=quantities[variant_id],
                )
                for variant_id in variant_ids
            ],
            address_to=extract_shipping_address(checkout_session),
        )

        try:
            created = await self._printify.create_order(order=order.to_payload())
        except PrintifyApiError as exc:
            logger.exception(
                "Failed to create fulfillment order",
                extra={"session_id": session_id, "status_code": exc.status_code},
            )
            raise FulfillmentSubmissionError(f"Fulfillment order creation failed: {exc}") from exc

        provider_order_id = created.get("id")
        logger.info(
            "Fulfillment order created",
            extra={"session_id": session_id, "provider_order_id": provider_order_id},
        )
        return FulfillmentOutcome(
            session_id=session_id,
            status="fulfilled",
            provider_order_id=str(provider_order_id) if provider_order_id is not None else None,
        )
