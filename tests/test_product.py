import pytest

from app.exceptions import ResponseError
from app.resources.base import ResourceAction, resolve
from app.resources.product import Product


async def test_new_product_is_created_and_bookkept(gateway, store, api, widget):
    product = Product.from_local(gateway, widget)
    assert product.needs() == ResourceAction.CREATE

    await product.exec(ResourceAction.CREATE)

    saved = store.get_product(widget.id)
    assert saved.get_meta("_pay_product_id") == "prod_1"
    assert saved.get_meta("_pay_product_name") == "Widget"
    assert api.calls("POST", "/v1/products")[0][2]["product"]["name"] == "Widget"


async def test_exec_of_needs_is_idempotent(gateway, store, api, widget):
    await resolve(Product.from_local(gateway, widget))
    request_count = len(api.requests)

    again = Product.from_local(gateway, store.get_product(widget.id))
    assert again.needs() == ResourceAction.NONE
    await resolve(again)

    assert len(api.requests) == request_count


async def test_description_change_updates_in_place(gateway, store, api, widget):
    await resolve(Product.from_local(gateway, widget))

    local = store.get_product(widget.id)
    local.short_description = "Now even more useful"
    store.save_product(local)

    product = Product.from_local(gateway, local)
    assert product.needs() == ResourceAction.UPDATE
    await product.exec(ResourceAction.UPDATE)

    patch = api.calls("PATCH", "/v1/products/prod_1")
    assert patch[0][2]["product"]["description"] == "Now even more useful"
    assert store.get_product(widget.id).get_meta("_pay_product_id") == "prod_1"


async def test_rename_recreates_and_deactivates_previous(gateway, store, api, widget):
    await resolve(Product.from_local(gateway, widget))

    local = store.get_product(widget.id)
    local.name = "Widget Pro"
    store.save_product(local)

    product = Product.from_local(gateway, local)
    assert product.needs() == ResourceAction.CREATE
    await product.exec(ResourceAction.CREATE)

    assert product.id() == "prod_2"
    assert store.get_product(widget.id).get_meta("_pay_product_id") == "prod_2"
    # The old product is deactivated, never deleted
    assert api.products["prod_1"]["active"] is False
    assert not api.calls("DELETE")


async def test_recreate_skips_deactivation_when_previous_is_gone(gateway, store, api, widget):
    await resolve(Product.from_local(gateway, widget))
    del api.products["prod_1"]

    local = store.get_product(widget.id)
    local.name = "Widget Pro"
    store.save_product(local)

    product = Product.from_local(gateway, local)
    await product.exec(ResourceAction.CREATE)

    assert product.id() == "prod_2"
    assert not api.calls("PATCH")


async def test_failed_deactivation_does_not_fail_recreation(gateway, store, api, widget):
    await resolve(Product.from_local(gateway, widget))
    api.queue("PATCH", "/v1/products/prod_1", 500, {"error": "boom"})

    local = store.get_product(widget.id)
    local.name = "Widget Pro"
    store.save_product(local)

    product = Product.from_local(gateway, local)
    await product.exec(ResourceAction.CREATE)

    assert store.get_product(widget.id).get_meta("_pay_product_id") == "prod_2"


async def test_create_failure_propagates(gateway, store, api, widget):
    api.queue("POST", "/v1/products", 422, {"error": "invalid"})

    with pytest.raises(ResponseError) as info:
        await Product.from_local(gateway, widget).exec(ResourceAction.CREATE)

    assert info.value.status_code == 422
    assert store.get_product(widget.id).get_meta("_pay_product_id") is None


def test_ineligible_product_types_need_nothing(gateway, store, tshirt):
    assert Product.from_local(gateway, tshirt).needs() == ResourceAction.NONE
    parent = store.get_product(tshirt.parent_id)
    assert Product.from_local(gateway, parent).needs() == ResourceAction.CREATE


def test_gtin_is_only_sent_when_managed(gateway, store, widget):
    assert "gtin" not in Product.from_local(gateway, widget).serialize()

    widget.global_unique_id = "0123456789012"
    store.save_product(widget)
    assert Product.from_local(gateway, widget).serialize()["gtin"] == "0123456789012"


def test_update_requires_remote_id(gateway, widget):
    product = Product.from_local(gateway, widget)
    assert product.can(ResourceAction.CREATE)
    assert not product.can(ResourceAction.UPDATE)
    assert not product.can(ResourceAction.DELETE)


def test_test_mode_keys_are_separate(test_gateway, store, widget):
    widget.update_meta("_pay_product_id", "prod_live")
    store.save_product(widget)

    product = Product.from_local(test_gateway, widget)
    assert product.id() is None
    assert product.needs() == ResourceAction.CREATE
