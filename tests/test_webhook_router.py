import json
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.models.local import LocalRefund
from app.routers.webhooks import verify_signature
from app.services.payment_gateway import get_payment_gateway

from tests.conftest import SIGNING_KEY, SIGNING_SECRET, sign


@pytest.fixture
def client(payment_gateway):
    app.dependency_overrides[get_payment_gateway] = lambda: payment_gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def subscribed(store):
    store.update_gateway_options({"webhook_id": "wh_1", "webhook_signing_secret": SIGNING_SECRET})


@pytest.fixture
def checkout_order(store, order):
    order.transaction_id = "fcs_1"
    store.save_order(order)
    return order


def completed_event(checkout_session_id="fcs_1"):
    return {
        "event_type": "checkout.session.completed",
        "object": {
            "checkout_session": {
                "checkout_session_id": checkout_session_id,
                "success_url": "https://localhost:8000/orders/100/complete",
                "status": "complete",
                "amount_total": 2000,
                "line_items": [
                    {"line_item_id": "li_1", "quantity": 2, "price": {"price_id": "price_1", "unit_amount": 1000}}
                ],
            }
        },
    }


def post(client, path, payload):
    body = json.dumps(payload).encode("utf-8")
    return client.post(path, content=body, headers=sign(body))


def test_verify_signature_rejects_tampering():
    body = b'{"event_type": "refund.updated"}'
    headers = sign(body)
    args = (headers["flex-event-id"], headers["flex-timestamp"], headers["flex-signature"])

    assert verify_signature(SIGNING_KEY, body, *args)
    assert not verify_signature(SIGNING_KEY, body + b" ", *args)
    assert not verify_signature(b"other-key", body, *args)
    assert not verify_signature(SIGNING_KEY, body, args[0], "1700000001", args[2])
    assert not verify_signature(SIGNING_KEY, body, args[0], args[1], None)
    assert not verify_signature(SIGNING_KEY, body, args[0], args[1], "not base64!")


def test_checkout_completed_marks_order_paid(client, subscribed, store, checkout_order):
    response = post(client, "/webhooks", completed_event())

    assert response.status_code == 200
    order = store.get_order(checkout_order.id)
    assert order.status == "processing"
    assert order.get_meta("_pay_checkout_session_status") == "complete"
    assert order.get_meta("_pay_checkout_session_amount_total") == "2000"
    assert order.items[0].get_meta("_pay_line_item_price") == "price_1"


def test_checkout_completed_for_paid_order_keeps_status(client, subscribed, store, checkout_order):
    checkout_order.status = "completed"
    store.save_order(checkout_order)

    assert post(client, "/webhooks", completed_event()).status_code == 200
    assert store.get_order(checkout_order.id).status == "completed"


def test_bad_signature_is_unauthorized(client, subscribed, checkout_order):
    body = json.dumps(completed_event()).encode("utf-8")
    headers = sign(body)
    headers["flex-signature"] = sign(b"something else")["flex-signature"]

    response = client.post("/webhooks", content=body, headers=headers)
    assert response.status_code == 401


def test_missing_secret_is_unauthorized(client, checkout_order):
    assert post(client, "/webhooks", completed_event()).status_code == 401


def test_unknown_checkout_session(client, subscribed, checkout_order):
    response = post(client, "/webhooks", completed_event("fcs_unknown"))
    assert response.status_code == 422
    assert response.json() == {"error": "Order does not exist for the given checkout_session_id"}


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"object": {}}, "Webhook Event missing event_type"),
        ({"event_type": "customer.created", "object": {}}, "Cannot handle webhook of type customer.created"),
        ({"event_type": "checkout.session.completed", "object": {}}, "Cannot handle webhook of type checkout.session.completed"),
    ],
)
def test_unprocessable_events(client, subscribed, payload, message):
    response = post(client, "/webhooks", payload)
    assert response.status_code == 422
    assert response.json() == {"error": message}


def test_invalid_json_is_unprocessable(client, subscribed):
    body = b"{not json"
    response = client.post("/webhooks", content=body, headers=sign(body))
    assert response.status_code == 422


def test_failed_refund_is_removed_locally(client, subscribed, store, order):
    store.save_refund(LocalRefund(id=500, order_id=order.id, amount=Decimal("5.00")))

    response = post(
        client,
        "/webhooks",
        {
            "event_type": "refund.updated",
            "object": {"refund": {"refund_id": "re_1", "status": "failed", "metadata": {"refund_id": "500"}}},
        },
    )

    assert response.status_code == 200
    assert store.get_refund(500) is None
    saved = store.get_order(order.id)
    assert saved.refund_ids == []
    assert saved.notes[-1] == "Refund of 5.00 USD was failed by the payment platform and has been removed."


def test_succeeded_refund_is_kept(client, subscribed, store, order):
    store.save_refund(LocalRefund(id=501, order_id=order.id, amount=Decimal("5.00")))

    response = post(
        client,
        "/webhooks",
        {
            "event_type": "refund.updated",
            "object": {"refund": {"refund_id": "re_2", "status": "succeeded", "metadata": {"refund_id": "501"}}},
        },
    )

    assert response.status_code == 200
    assert store.get_refund(501) is not None


def test_unknown_refund_is_unprocessable(client, subscribed):
    response = post(
        client,
        "/webhooks",
        {"event_type": "refund.updated", "object": {"refund": {"refund_id": "re_3", "status": "failed"}}},
    )
    assert response.status_code == 422


def test_test_mode_endpoint_uses_test_secret(client, store, checkout_order):
    store.update_gateway_options({"test_webhook_signing_secret": SIGNING_SECRET})

    assert post(client, "/test/webhooks", completed_event()).status_code == 200
    assert store.get_order(checkout_order.id).status == "processing"


def test_live_endpoint_ignores_test_secret(client, store, checkout_order):
    store.update_gateway_options({"test_webhook_signing_secret": SIGNING_SECRET})

    assert post(client, "/webhooks", completed_event()).status_code == 401
