from decimal import Decimal

from app.models.local import LocalOrder, LocalOrderItem
from app.resources.base import ResourceAction, resolve
from app.resources.line_item import LineItem
from app.resources.price import Price


async def test_price_waits_for_product_then_creates_both(gateway, store, api, widget):
    price = Price.from_local(gateway, widget)
    assert price.needs() == ResourceAction.DEPENDENCY

    await price.exec(ResourceAction.DEPENDENCY)

    saved = store.get_product(widget.id)
    assert saved.get_meta("_pay_product_id") == "prod_1"
    assert saved.get_meta("_pay_price_id") == "price_1"
    assert saved.get_meta("_pay_price_product") == "prod_1"
    assert saved.get_meta("_pay_price_amount") == "1000"
    # Product strictly before price
    paths = [path for method, path, body in api.calls("POST")]
    assert paths == ["/v1/products", "/v1/prices"]


async def test_price_resolution_is_idempotent(gateway, store, api, widget):
    await resolve(Price.from_local(gateway, widget))
    request_count = len(api.requests)

    again = Price.from_local(gateway, store.get_product(widget.id))
    assert again.needs() == ResourceAction.NONE
    await resolve(again)
    assert len(api.requests) == request_count


async def test_amount_change_recreates_price_and_deactivates_old(gateway, store, api, widget):
    await resolve(Price.from_local(gateway, widget))

    local = store.get_product(widget.id)
    local.regular_price = "12.50"
    local.price = "12.50"
    store.save_product(local)

    price = Price.from_local(gateway, local)
    assert price.needs() == ResourceAction.CREATE
    await price.exec(ResourceAction.CREATE)

    assert price.id() == "price_2"
    assert store.get_product(widget.id).get_meta("_pay_price_amount") == "1250"
    assert api.prices["price_1"]["active"] is False
    assert api.prices["price_2"]["unit_amount"] == 1250


async def test_description_change_updates_price_in_place(gateway, store, api, widget):
    await resolve(Price.from_local(gateway, widget))

    local = store.get_product(widget.id)
    local.short_description = "Updated copy"
    store.save_product(local)

    price = Price.from_local(gateway, store.get_product(widget.id))
    # The description is shared with the product, which is updated first
    assert price.product.needs() == ResourceAction.UPDATE
    assert price.needs() == ResourceAction.DEPENDENCY
    await resolve(price)

    assert api.calls("PATCH", "/v1/products/prod_1")
    assert api.calls("POST", "/v1/prices/price_1")
    assert store.get_product(widget.id).get_meta("_pay_price_id") == "price_1"


async def test_renamed_product_repoints_price(gateway, store, api, widget):
    await resolve(Price.from_local(gateway, widget))

    local = store.get_product(widget.id)
    local.name = "Widget Pro"
    store.save_product(local)

    price = Price.from_local(gateway, store.get_product(widget.id))
    assert price.product.needs() == ResourceAction.CREATE
    assert price.needs() == ResourceAction.DEPENDENCY

    await resolve(price)

    saved = store.get_product(widget.id)
    assert saved.get_meta("_pay_product_id") == "prod_2"
    assert saved.get_meta("_pay_price_product") == "prod_2"
    assert saved.get_meta("_pay_price_id") == "price_2"
    assert api.prices["price_2"]["product"] == "prod_2"
    assert api.prices["price_1"]["active"] is False
    assert Price.from_local(gateway, saved).needs() == ResourceAction.NONE


async def test_variation_price_uses_parent_product(gateway, store, api, tshirt):
    price = Price.from_local(gateway, tshirt)
    assert price.description == "Size: Large"
    assert price.unit_amount == 2500

    await resolve(price)

    parent = store.get_product(tshirt.parent_id)
    variation = store.get_product(tshirt.id)
    assert parent.get_meta("_pay_product_id") == "prod_1"
    assert variation.get_meta("_pay_price_product") == "prod_1"
    assert api.products["prod_1"]["name"] == "T-Shirt"


def test_price_without_amount_needs_nothing(gateway, store, widget):
    widget.regular_price = None
    store.save_product(widget)
    assert Price.from_local(gateway, widget).needs() == ResourceAction.NONE


def test_line_item_charged_differently_uses_adhoc_price(gateway, store, widget):
    item = LocalOrderItem(id=1, product_id=widget.id, name="Widget + gift wrap", quantity=1, subtotal=Decimal("13.00"))
    price = Price.from_line_item(gateway, item)

    assert price.adhoc
    assert price.unit_amount == 1300
    assert price.description == "Widget + gift wrap"
    assert price.needs() == ResourceAction.DEPENDENCY


async def test_paid_order_pins_stored_price_even_if_catalog_changed(gateway, store, api, widget):
    item = LocalOrderItem(id=1, product_id=widget.id, name="Widget", quantity=1, subtotal=Decimal("10.00"))
    item.update_meta("_pay_line_item_price", "price_paid")
    order = LocalOrder(id=7, status="completed", total=Decimal("10.00"), items=[item])

    # Catalog moved on since the order was paid
    widget.regular_price = "15.00"
    widget.price = "15.00"
    store.save_product(widget)

    line_item = LineItem.from_local(gateway, order, item)
    assert line_item.price.id() == "price_paid"
    assert line_item.price.pinned
    assert line_item.needs() == ResourceAction.NONE

    await resolve(line_item)
    assert api.requests == []


def test_unpaid_order_ignores_stored_price(gateway, store, widget):
    item = LocalOrderItem(id=1, product_id=widget.id, name="Widget", quantity=1, subtotal=Decimal("10.00"))
    item.update_meta("_pay_line_item_price", "price_old")
    order = LocalOrder(id=8, status="pending", total=Decimal("10.00"), items=[item])

    line_item = LineItem.from_local(gateway, order, item)
    assert line_item.price.id() is None
    assert not line_item.price.pinned
