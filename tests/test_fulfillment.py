from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import pytest
import stripe
from fastapi.testclient import TestClient
from sqlalchemy import delete, select

import storefront.main as main_module
from storefront.checkout import encode_cart_metadata
from storefront.db import SessionLocal, init_db
from storefront.fulfillment import (
    FulfillmentSubmissionError,
    OrderFulfiller,
    extract_shipping_address,
    list_purchased_quantities,
)
from storefront.models import ProcessedWebhookEvent
from storefront.printify_api import PrintifyApiError
from storefront.schemas import CartItem
from storefront.storage import ProductCacheStorage
from storefront.variant_map import VariantMap

from fakes import FakeS3Client, catalog_payload

WEBHOOK_SECRET = "whsec_test_secret"


def _signature_header(payload: str, *, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    digest = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


def _completed_event(*, session_id: str, metadata: dict[str, str], event_id: str = "evt_1") -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "metadata": metadata,
                "customer_details": {
                    "email": "ada@example.com",
                    "name": "Ada Lovelace",
                    "phone": "+15555550100",
                },
                "shipping_details": {
                    "name": "Ada King Lovelace",
                    "address": {
                        "line1": "1 Main St",
                        "line2": "Apt 2",
                        "city": "Springfield",
                        "state": "IL",
                        "postal_code": "62701",
                        "country": "US",
                    },
                },
            }
        },
    }


def _post_event(api_client: TestClient, event: dict, *, signature: str | None = None):
    payload = json.dumps(event)
    headers = {"Content-Type": "application/json"}
    headers["Stripe-Signature"] = signature if signature is not None else _signature_header(payload)
    return api_client.post("/webhooks/stripe", content=payload, headers=headers)


@pytest.fixture()
def db_session():
    init_db()
    session = SessionLocal()
    session.execute(delete(ProcessedWebhookEvent))
    session.commit()
    try:
        yield session
    finally:
        session.execute(delete(ProcessedWebhookEvent))
        session.commit()
        session.close()


@pytest.fixture()
def api_client():
    s3 = FakeS3Client()
    s3.seed("cached-products.json", catalog_payload())
    main_module.app.dependency_overrides[main_module.get_cache_storage] = lambda: ProductCacheStorage(client=s3)
    try:
        with TestClient(main_module.app) as client:
            yield client
    finally:
        main_module.app.dependency_overrides.clear()


@pytest.fixture()
def created_orders(monkeypatch) -> list[dict]:
    orders: list[dict] = []

    async def fake_create_order(*, order: dict):
        orders.append(order)
        return {"id": f"pf-order-{len(orders)}"}

    monkeypatch.setattr(main_module.printify_api, "create_order", fake_create_order)
    return orders


def _fake_line_items(monkeypatch, quantities: dict[str, int]) -> list[str]:
    requested: list[str] = []

    def fake_list_line_items(session_id, **params):
        requested.append(session_id)
        assert params["expand"] == ["data.price.product"]
        return {
            "object": "list",
            "data": [
                {
                    "id": f"li_{variant_id}",
                    "quantity": quantity,
                    "price": {"product": {"metadata": {"variant_id": variant_id}}},
                }
                for variant_id, quantity in quantities.items()
            ],
        }

    monkeypatch.setattr(stripe.checkout.Session, "list_line_items", fake_list_line_items)
    return requested


def test_checkout_to_fulfillment_end_to_end(api_client, db_session, created_orders, monkeypatch):
    checkout_calls: list[dict] = []

    def fake_create(**kwargs):
        checkout_calls.append(kwargs)
        return SimpleNamespace(id="cs_test_e2e", url="https://checkout.stripe.com/c/pay/cs_test_e2e")

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    checkout = api_client.post(
        "/checkout/sessions",
        json={"items": [{"productId": "P1", "variantId": 101, "quantity": 2}]},
    )
    assert checkout.status_code == 200
    assert checkout.json() == {"url": "https://checkout.stripe.com/c/pay/cs_test_e2e", "sessionId": "cs_test_e2e"}
    [line_item] = checkout_calls[0]["line_items"]
    assert line_item["price_data"]["unit_amount"] == 2500
    assert line_item["quantity"] == 2

    _fake_line_items(monkeypatch, {"101": 2})
    response = _post_event(
        api_client,
        _completed_event(session_id="cs_test_e2e", metadata=checkout_calls[0]["metadata"]),
    )

    assert response.status_code == 200
    assert response.json() == {
        "received": True,
        "status": "fulfilled",
        "duplicate": False,
        "providerOrderId": "pf-order-1",
    }
    assert len(created_orders) == 1
    order = created_orders[0]
    assert order["external_id"] == "cs_test_e2e"
    assert order["line_items"] == [{"product_id": "pf-prod-1", "variant_id": 9101, "quantity": 2}]
    assert order["address_to"]["first_name"] == "Ada"
    assert order["address_to"]["last_name"] == "King Lovelace"
    assert order["address_to"]["region"] == "IL"
    assert order["address_to"]["email"] == "ada@example.com"

    row = db_session.scalars(
        select(ProcessedWebhookEvent).where(ProcessedWebhookEvent.session_id == "cs_test_e2e")
    ).one()
    assert row.status == "fulfilled"
    assert row.provider_order_id == "pf-order-1"
    assert row.event_id == "evt_1"


def test_duplicate_delivery_submits_one_order(api_client, db_session, created_orders, monkeypatch):
    requested = _fake_line_items(monkeypatch, {"101": 1, "201": 3})
    metadata = encode_cart_metadata(
        [
            CartItem(productId="P1", variantId=101, quantity=1),
            CartItem(productId="P2", variantId=201, quantity=3),
        ]
    )
    event = _completed_event(session_id="cs_dup", metadata=metadata)

    first = _post_event(api_client, event)
    second = _post_event(api_client, {**event, "id": "evt_2"})

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["duplicate"] is True
    assert second.json()["providerOrderId"] == "pf-order-1"
    assert len(created_orders) == 1
    assert requested == ["cs_dup"]
    assert created_orders[0]["line_items"] == [
        {"product_id": "pf-prod-1", "variant_id": 9101, "quantity": 1},
        {"product_id": "pf-prod-2", "variant_id": 9201, "quantity": 3},
    ]


def test_missing_signature_is_rejected(api_client, db_session, created_orders):
    event = _completed_event(session_id="cs_nosig", metadata={"variant_ids": "101"})

    response = api_client.post("/webhooks/stripe", content=json.dumps(event))

    assert response.status_code == 400
    assert response.json()["detail"] == "Missing Stripe signature header."
    assert created_orders == []


def test_invalid_signature_is_rejected(api_client, db_session, created_orders):
    event = _completed_event(session_id="cs_badsig", metadata={"variant_ids": "101"})
    forged = _signature_header(json.dumps(event), secret="whsec_wrong")

    response = _post_event(api_client, event, signature=forged)

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid Stripe signature."
    assert created_orders == []
    assert db_session.scalars(select(ProcessedWebhookEvent)).all() == []


def test_stale_signature_is_rejected(api_client, db_session, created_orders):
    event = _completed_event(session_id="cs_stale", metadata={"variant_ids": "101"})
    stale = _signature_header(json.dumps(event), timestamp=int(time.time()) - 3600)

    response = _post_event(api_client, event, signature=stale)

    assert response.status_code == 400
    assert created_orders == []


def test_other_event_types_are_acknowledged(api_client, db_session, created_orders):
    event = {"id": "evt_other", "type": "payment_intent.created", "data": {"object": {"id": "pi_1"}}}

    response = _post_event(api_client, event)

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert created_orders == []


def test_unmapped_variant_aborts_order_without_failing(api_client, db_session, created_orders, monkeypatch):
    requested = _fake_line_items(monkeypatch, {"103": 1})
    metadata = encode_cart_metadata([CartItem(productId="P1", variantId=103, quantity=1)])

    response = _post_event(api_client, _completed_event(session_id="cs_unmapped", metadata=metadata))

    assert response.status_code == 200
    assert response.json()["status"] == "unmapped_variant"
    assert created_orders == []
    assert requested == []
    row = db_session.scalars(select(ProcessedWebhookEvent)).one()
    assert row.status == "unmapped_variant"
    assert "103" in (row.detail or "")


def test_missing_metadata_is_recorded(api_client, db_session, created_orders):
    response = _post_event(api_client, _completed_event(session_id="cs_empty", metadata={}))

    assert response.status_code == 200
    assert response.json()["status"] == "missing_items"
    assert created_orders == []


def test_missing_line_item_quantity_aborts_order(api_client, db_session, created_orders, monkeypatch):
    _fake_line_items(monkeypatch, {"201": 1})
    metadata = encode_cart_metadata([CartItem(productId="P1", variantId=101, quantity=1)])

    response = _post_event(api_client, _completed_event(session_id="cs_noqty", metadata=metadata))

    assert response.status_code == 200
    assert response.json()["status"] == "missing_line_items"
    assert created_orders == []


def test_fulfillment_failure_returns_502_so_stripe_retries(api_client, db_session, monkeypatch):
    _fake_line_items(monkeypatch, {"101": 2})
    attempts: list[dict] = []

    async def failing_create_order(*, order: dict):
        attempts.append(order)
        raise PrintifyApiError(message="Printify API call failed (500): upstream down", status_code=500)

    monkeypatch.setattr(main_module.printify_api, "create_order", failing_create_order)
    metadata = encode_cart_metadata([CartItem(productId="P1", variantId=101, quantity=2)])
    event = _completed_event(session_id="cs_retry", metadata=metadata)

    response = _post_event(api_client, event)

    assert response.status_code == 502
    assert len(attempts) == 1
    assert db_session.scalars(select(ProcessedWebhookEvent)).all() == []

    async def working_create_order(*, order: dict):
        return {"id": "pf-order-retry"}

    monkeypatch.setattr(main_module.printify_api, "create_order", working_create_order)
    retried = _post_event(api_client, event)

    assert retried.status_code == 200
    assert retried.json()["providerOrderId"] == "pf-order-retry"


def test_extract_shipping_address_prefers_collected_information():
    address = extract_shipping_address(
        {
            "collected_information": {
                "shipping_details": {
                    "name": "Grace Hopper",
                    "address": {"line1": "2 Navy Way", "city": "Arlington", "country": "US", "postal_code": "22201"},
                }
            },
            "customer_details": {"email": "grace@example.com", "name": "G. Hopper"},
        }
    )

    assert address.first_name == "Grace"
    assert address.last_name == "Hopper"
    assert address.address1 == "2 Navy Way"
    assert address.zip == "22201"
    assert address.email == "grace@example.com"


def test_extract_shipping_address_falls_back_to_customer_details():
    address = extract_shipping_address(
        {"customer_details": {"email": "x@example.com", "address": {"country": "CA", "city": "Toronto"}}}
    )

    assert address.first_name == "Customer"
    assert address.country == "CA"
    assert address.city == "Toronto"


def test_list_purchased_quantities_skips_lines_without_variant(monkeypatch):
    def fake_list_line_items(session_id, **params):
        return {
            "data": [
                {"id": "li_1", "quantity": 2, "price": {"product": {"metadata": {"variant_id": "101"}}}},
                {"id": "li_2", "quantity": 1, "price": {"product": {"metadata": {}}}},
                {"id": "li_3", "quantity": 1, "price": {"product": {"metadata": {"variant_id": "101"}}}},
                {"id": "li_4", "quantity": 5, "price": {"product": {"metadata": {"variant_id": "n/a"}}}},
            ]
        }

    monkeypatch.setattr(stripe.checkout.Session, "list_line_items", fake_list_line_items)

    assert list_purchased_quantities("cs_1") == {101: 3}


class SlowPrintify:
    def __init__(self) -> None:
        self.orders: list[dict] = []

    async def create_order(self, *, order: dict):
        self.orders.append(order)
        await asyncio.sleep(0.05)
        return {"id": f"pf-order-{len(self.orders)}"}


def test_overlapping_deliveries_submit_one_order(db_session, monkeypatch):
    _fake_line_items(monkeypatch, {"101": 1})
    variant_map = VariantMap.from_dict({"101": {"product_id": "pf-prod-1", "variant_id": 9101}})
    printify = SlowPrintify()
    metadata = encode_cart_metadata([CartItem(productId="P1", variantId=101, quantity=1)])
    checkout_session = _completed_event(session_id="cs_race", metadata=metadata)["data"]["object"]
    first_session = SessionLocal()
    second_session = SessionLocal()

    async def deliver_twice():
        return await asyncio.gather(
            OrderFulfiller(session=first_session, variant_map=variant_map, printify=printify).fulfill(
                event_id="evt_a", checkout_session=checkout_session
            ),
            OrderFulfiller(session=second_session, variant_map=variant_map, printify=printify).fulfill(
                event_id="evt_b", checkout_session=checkout_session
            ),
        )

    try:
        outcomes = asyncio.run(deliver_twice())
    finally:
        first_session.close()
        second_session.close()

    assert len(printify.orders) == 1
    assert sorted(outcome.duplicate for outcome in outcomes) == [False, True]
    row = db_session.scalars(
        select(ProcessedWebhookEvent).where(ProcessedWebhookEvent.session_id == "cs_race")
    ).one()
    assert row.status == "fulfilled"
    assert row.provider_order_id == "pf-order-1"


def test_failed_submission_releases_claim(db_session, monkeypatch):
    _fake_line_items(monkeypatch, {"101": 1})
    variant_map = VariantMap.from_dict({"101": {"product_id": "pf-prod-1", "variant_id": 9101}})
    metadata = encode_cart_metadata([CartItem(productId="P1", variantId=101, quantity=1)])
    checkout_session = _completed_event(session_id="cs_release", metadata=metadata)["data"]["object"]

    class FailingPrintify:
        async def create_order(self, *, order: dict):
            raise PrintifyApiError(message="Printify API call failed (503)", status_code=503)

    session = SessionLocal()
    try:
        fulfiller = OrderFulfiller(session=session, variant_map=variant_map, printify=FailingPrintify())
        with pytest.raises(FulfillmentSubmissionError):
            asyncio.run(fulfiller.fulfill(event_id="evt_1", checkout_session=checkout_session))
    finally:
        session.close()

    assert db_session.scalars(select(ProcessedWebhookEvent)).all() == []
