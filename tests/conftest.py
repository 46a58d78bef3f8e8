"""
Shared fixtures: an in-memory store, a fake payment platform served through
httpx.MockTransport and a gateway wired to both.
"""
import base64
import hashlib
import hmac
import json
from collections import defaultdict, deque
from decimal import Decimal
from typing import Any, Deque, Dict, List, Optional, Tuple

import httpx
import pytest

from app.models.local import GatewayOptions, LocalOrder, LocalOrderItem, LocalProduct
from app.resources.base import Gateway
from app.services.local_store import InMemoryLocalStore
from app.services.payment_gateway import PaymentGateway
from app.services.slack_service import SlackNotificationService
from app.utils.money import MoneyNormalizer
from app.workers.sync_worker import SyncQueue, SyncWorker

LIVE_KEY = "fsk_live_c2VjcmV0"
TEST_KEY = "fsk_test_c2VjcmV0"
SIGNING_KEY = b"super-secret-signing-key"
SIGNING_SECRET = "whsec_" + base64.b64encode(SIGNING_KEY).decode("ascii")


class FakePaymentAPI:
    """Records requests and answers them the way the payment platform does."""

    def __init__(self):
        self.requests: List[Tuple[str, str, Optional[Dict[str, Any]]]] = []
        self.queued: Dict[Tuple[str, str], Deque[httpx.Response]] = defaultdict(deque)
        self.counters: Dict[str, int] = defaultdict(int)
        self.products: Dict[str, Dict[str, Any]] = {}
        self.prices: Dict[str, Dict[str, Any]] = {}
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.webhooks: Dict[str, Dict[str, Any]] = {}
        self.amount_total_override: Optional[int] = None

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def queue(self, method: str, path: str, status_code: int, body: Any = None) -> None:
        """Answer the next ``method path`` request with a canned response."""
        content = b"" if body is None else json.dumps(body).encode("utf-8")
        self.queued[(method, path)].append(httpx.Response(status_code, content=content))

    def calls(self, method: Optional[str] = None, prefix: str = "") -> List[Tuple[str, str, Any]]:
        return [
            call
            for call in self.requests
            if (method is None or call[0] == method) and call[1].startswith(prefix)
        ]

    def _next_id(self, prefix: str) -> str:
        self.counters[prefix] += 1
        return f"{prefix}_{self.counters[prefix]}"

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        method, path = request.method, request.url.path
        self.requests.append((method, path, body))

        queued = self.queued.get((method, path))
        if queued:
            return queued.popleft()

        parts = path.strip("/").split("/")

        if parts[:2] == ["v1", "products"]:
            return self._products(method, parts[2:], body)
        if parts[:2] == ["v1", "prices"]:
            return self._prices(method, parts[2:], body)
        if parts[:2] == ["v1", "coupons"]:
            coupon = {**body["coupon"], "coupon_id": self._next_id("coupon")}
            return httpx.Response(200, json={"coupon": coupon})
        if parts[:3] == ["v1", "checkout", "sessions"]:
            return self._sessions(method, parts[3:], body)
        if parts[:2] == ["v1", "webhooks"]:
            return self._webhooks(method, parts[2:], body)

        return httpx.Response(404, json={"error": "not found"})

    def _products(self, method, rest, body):
        if method == "POST" and not rest:
            product = {**body["product"], "product_id": self._next_id("prod")}
            self.products[product["product_id"]] = product
            return httpx.Response(200, json={"product": product})
        product_id = rest[0]
        if product_id not in self.products:
            return httpx.Response(404, json={"error": "not found"})
        if method == "PATCH":
            self.products[product_id].update(body["product"])
        return httpx.Response(200, json={"product": self.products[product_id]})

    def _prices(self, method, rest, body):
        if method == "POST" and not rest:
            price = {**body["price"], "price_id": self._next_id("price")}
            self.prices[price["price_id"]] = price
            return httpx.Response(200, json={"price": price})
        price_id = rest[0]
        if price_id not in self.prices:
            return httpx.Response(404, json={"error": "not found"})
        if method == "POST":
            self.prices[price_id].update(body["price"])
        return httpx.Response(200, json={"price": self.prices[price_id]})

    def _amount_total(self, session: Dict[str, Any]) -> int:
        if self.amount_total_override is not None:
            return self.amount_total_override
        total = 0
        for line_item in session.get("line_items", []):
            price = self.prices.get(line_item["price"], {})
            total += (price.get("unit_amount") or 0) * line_item["quantity"]
        shipping = session.get("shipping_options") or {}
        total += (shipping.get("shipping_rate_data") or {}).get("amount", 0)
        total += (session.get("tax_rate") or {}).get("amount", 0)
        total += sum(fee["amount"] for fee in session.get("fees", []))
        for discount in session.get("discounts", []):
            total -= (discount.get("coupon_data") or {}).get("amount_off", 0)
        return total

    def _sessions(self, method, rest, body):
        if method == "POST" and not rest:
            session_id = self._next_id("fcs")
            session = {
                **body["checkout_session"],
                "checkout_session_id": session_id,
                "redirect_url": f"https://checkout.example.com/{session_id}",
                "status": "open",
                "test_mode": False,
            }
            session["amount_total"] = self._amount_total(session)
            self.sessions[session_id] = session
            return httpx.Response(200, json={"checkout_session": session})
        session_id = rest[0]
        if session_id not in self.sessions:
            return httpx.Response(404, json={"error": "not found"})
        if len(rest) > 1 and rest[1] == "refund":
            return httpx.Response(200, json={"checkout_session": self.sessions[session_id]})
        return httpx.Response(200, json={"checkout_session": self.sessions[session_id]})

    def _webhooks(self, method, rest, body):
        if method == "POST" and not rest:
            webhook = {
                **body["webhook"],
                "webhook_id": self._next_id("wh"),
                "signing_secret": SIGNING_SECRET,
            }
            self.webhooks[webhook["webhook_id"]] = webhook
            return httpx.Response(200, json={"webhook": webhook})
        webhook_id = rest[0]
        if webhook_id not in self.webhooks:
            return httpx.Response(404, json={"error": "not found"})
        if method == "DELETE":
            del self.webhooks[webhook_id]
            return httpx.Response(204)
        if method == "POST":
            self.webhooks[webhook_id].update(body["webhook"])
        return httpx.Response(200, json={"webhook": self.webhooks[webhook_id]})


@pytest.fixture
def api() -> FakePaymentAPI:
    return FakePaymentAPI()


@pytest.fixture
def store() -> InMemoryLocalStore:
    store = InMemoryLocalStore()
    store.save_gateway_options(GatewayOptions(enabled=True, api_key=LIVE_KEY))
    return store


@pytest.fixture
def gateway(store, api) -> Gateway:
    return Gateway.from_settings(store, transport=api.transport())


@pytest.fixture
def test_gateway(store, api) -> Gateway:
    options = store.get_gateway_options()
    options.api_key = TEST_KEY
    store.save_gateway_options(options)
    return Gateway.from_settings(store, transport=api.transport())


@pytest.fixture
def money() -> MoneyNormalizer:
    return MoneyNormalizer(decimals=2, decimal_separator=".", thousand_separator=",", currency_symbol="$")


@pytest.fixture
def slack() -> SlackNotificationService:
    return SlackNotificationService(webhook_url="", enabled=False)


@pytest.fixture
def payment_gateway(store, api, slack) -> PaymentGateway:
    return PaymentGateway(store=store, transport=api.transport(), slack=slack)


@pytest.fixture
def widget(store) -> LocalProduct:
    product = LocalProduct(
        id=1,
        type="simple",
        name="Widget",
        short_description="A very useful widget",
        permalink="https://shop.example.com/product/widget",
        regular_price="10.00",
        price="10.00",
    )
    store.save_product(product)
    return product


@pytest.fixture
def tshirt(store) -> LocalProduct:
    parent = LocalProduct(id=2, type="variable", name="T-Shirt", children=[3])
    variation = LocalProduct(
        id=3,
        type="variation",
        name="T-Shirt - Large",
        parent_id=2,
        regular_price="25.00",
        price="25.00",
        attributes={"Size": "Large"},
    )
    store.save_product(parent)
    store.save_product(variation)
    return variation


@pytest.fixture
def order(store, widget) -> LocalOrder:
    order = LocalOrder(
        id=100,
        status="pending",
        total=Decimal("20.00"),
        billing_email="customer@example.com",
        billing_first_name="Ada",
        billing_last_name="Lovelace",
        items=[
            LocalOrderItem(
                id=11,
                product_id=1,
                name="Widget",
                quantity=2,
                subtotal=Decimal("20.00"),
                total=Decimal("20.00"),
            )
        ],
    )
    store.save_order(order)
    return order


@pytest.fixture
def queue() -> SyncQueue:
    return SyncQueue(max_attempts=10, initial_delay=1.0, multiplier=2.0, max_delay=3600.0)


@pytest.fixture
def worker(store, queue, api, slack) -> SyncWorker:
    return SyncWorker(store=store, queue=queue, transport=api.transport(), slack=slack)


def sign(body: bytes, event_id: str = "evt_1", timestamp: str = "1700000000") -> Dict[str, str]:
    """Headers of a correctly signed webhook delivery."""
    content = f"{event_id}.{timestamp}.".encode("utf-8") + body
    signature = base64.b64encode(hmac.new(SIGNING_KEY, content, hashlib.sha256).digest()).decode("ascii")
    return {
        "flex-event-id": event_id,
        "flex-timestamp": timestamp,
        "flex-signature": signature,
        "content-type": "application/json",
    }
