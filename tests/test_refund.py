from decimal import Decimal

import pytest

from app.exceptions import IntegrityError
from app.models.local import LocalOrderItem, LocalRefund
from app.resources.base import ResourceAction
from app.resources.refund import CheckoutSessionRefund, Refund, RefundStatus, distribute_refund


@pytest.fixture
def paid_order(store, order):
    order.status = "processing"
    order.transaction_id = "fcs_1"
    order.items[0].update_meta("_pay_line_item_price", "price_1")
    store.save_order(order)
    return order


@pytest.mark.parametrize(
    "amounts, weights, refund_amount, expected",
    [
        ([], [1000, 500], 1500, [1000, 500]),
        ([], [1000, 1000, 1000], 1000, [333, 333, 334]),
        ([300, 100], [], 600, [450, 150]),
        ([0, 500], [], 300, [0, 300]),
        ([], [0, 0], 3, [1, 2]),
        ([], [], 100, []),
    ],
)
def test_distribute_refund(amounts, weights, refund_amount, expected):
    result = distribute_refund(amounts, weights, refund_amount)
    assert result == expected
    if result:
        assert sum(result) == refund_amount
    assert all(amount >= 0 for amount in result)


def test_refund_of_items_uses_pinned_prices(gateway, store, paid_order):
    refund = LocalRefund(
        id=500,
        order_id=paid_order.id,
        amount=Decimal("5.00"),
        items=[LocalOrderItem(id=900, refunded_item_id=11, quantity=-1, total=Decimal("-5.00"))],
    )

    request = CheckoutSessionRefund.from_local(gateway, refund)

    assert request.id() == "fcs_1"
    assert request.serialize() == {
        "line_items": [{"price": "price_1", "amount_to_refund": 500}],
        "refund_metadata": {"refund_id": "500"},
    }


def test_amount_only_refund_is_spread_over_order_items(gateway, store, paid_order):
    refund = LocalRefund(id=501, order_id=paid_order.id, amount=Decimal("7.50"))

    request = CheckoutSessionRefund.from_local(gateway, refund)

    assert [item.amount_to_refund for item in request.line_items] == [750]
    assert request.total() == 750


def test_refund_of_unpaid_order_is_rejected(gateway, store, order):
    with pytest.raises(IntegrityError, match="paid checkout session"):
        CheckoutSessionRefund.from_local(gateway, LocalRefund(id=502, order_id=order.id, amount=Decimal("1.00")))


def test_refund_of_unknown_item_is_rejected(gateway, store, paid_order):
    refund = LocalRefund(
        id=503,
        order_id=paid_order.id,
        amount=Decimal("1.00"),
        items=[LocalOrderItem(id=901, refunded_item_id=999, total=Decimal("-1.00"))],
    )
    with pytest.raises(IntegrityError):
        CheckoutSessionRefund.from_local(gateway, refund)


async def test_exec_posts_refund_request(gateway, store, api, paid_order):
    api.sessions["fcs_1"] = {"checkout_session_id": "fcs_1", "status": "complete"}
    request = CheckoutSessionRefund.from_local(
        gateway, LocalRefund(id=504, order_id=paid_order.id, amount=Decimal("20.00"))
    )
    assert request.needs() == ResourceAction.CREATE

    await request.exec(ResourceAction.CREATE)

    calls = api.calls("POST", "/v1/checkout/sessions/fcs_1/refund")
    assert calls[0][2]["checkout_session"]["line_items"] == [{"price": "price_1", "amount_to_refund": 2000}]


def test_remote_refund_finds_local_refund(gateway, store, paid_order):
    store.save_refund(LocalRefund(id=505, order_id=paid_order.id, amount=Decimal("2.00")))

    refund = Refund.from_remote(
        gateway, {"refund_id": "re_1", "status": "failed", "metadata": {"refund_id": "505"}}
    )

    assert refund.id() == "re_1"
    assert refund.status.is_failure()
    assert refund.local().id == 505
    assert refund.needs() == ResourceAction.NONE


def test_remote_refund_without_metadata_has_no_local(gateway):
    refund = Refund.from_remote(gateway, {"refund_id": "re_2", "status": "succeeded"})
    assert refund.local() is None
    assert refund.status == RefundStatus.SUCCEEDED
    assert not refund.status.is_failure()
