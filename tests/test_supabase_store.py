from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from app.models.local import GatewayOptions, LocalOrder, LocalProduct
from app.services.supabase_service import SupabaseLocalStore


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def supabase_store(client):
    return SupabaseLocalStore(client=client)


def select_returns(client, rows):
    client.table.return_value.select.return_value.eq.return_value.limit.return_value.execute.return_value.data = rows


def test_get_product_builds_model(supabase_store, client):
    select_returns(client, [{"id": 1, "name": "Widget", "regular_price": "10.00", "meta": {"_pay_product_id": "prod_1"}}])

    product = supabase_store.get_product(1)

    assert product.name == "Widget"
    assert product.get_meta("_pay_product_id") == "prod_1"
    client.table.assert_called_with("products")
    client.table.return_value.select.return_value.eq.assert_called_with("id", 1)


def test_missing_row_is_none(supabase_store, client):
    select_returns(client, [])
    assert supabase_store.get_order(5) is None


def test_save_order_upserts_json(supabase_store, client):
    order = LocalOrder(id=100, total=Decimal("20.00"))
    order.update_meta("_pay_checkout_session_status", "open")

    supabase_store.save_order(order)

    row = client.table.return_value.upsert.call_args[0][0]
    assert row["id"] == 100
    assert row["total"] == "20.00"
    assert row["meta"] == {"_pay_checkout_session_status": "open"}


def test_find_order_by_transaction_id(supabase_store, client):
    select_returns(client, [{"id": 100, "transaction_id": "fcs_1"}])

    assert supabase_store.find_order_by_transaction_id("fcs_1").id == 100
    client.table.return_value.select.return_value.eq.assert_called_with("transaction_id", "fcs_1")


def test_list_products_filters_by_type(supabase_store, client):
    client.table.return_value.select.return_value.in_.return_value.execute.return_value.data = [
        {"id": 1, "name": "Widget"}
    ]

    products = supabase_store.list_products(["simple"])

    assert [product.id for product in products] == [1]
    client.table.return_value.select.return_value.in_.assert_called_with("type", ["simple"])


def test_gateway_options_default_when_missing(supabase_store, client, monkeypatch):
    monkeypatch.setattr("app.config.settings.gateway_enabled", False)
    select_returns(client, [])

    options = supabase_store.get_gateway_options()
    assert isinstance(options, GatewayOptions)
    assert options.enabled is False


def test_gateway_options_round_trip_row(supabase_store, client):
    select_returns(client, [{"id": 1, "enabled": True, "api_key": "fsk_live_x", "options": {"webhook_id": "wh_1"}}])
    assert supabase_store.get_gateway_options().options == {"webhook_id": "wh_1"}

    supabase_store.save_gateway_options(GatewayOptions(enabled=True, api_key="fsk_live_x"))
    row = client.table.return_value.upsert.call_args[0][0]
    assert row["id"] == 1
    assert row["enabled"] is True


def test_query_failure_is_raised(supabase_store, client):
    client.table.return_value.select.return_value.eq.return_value.limit.return_value.execute.side_effect = RuntimeError("db down")

    with pytest.raises(RuntimeError):
        supabase_store.get_product(1)


def test_variation_fields_are_persisted(supabase_store, client):
    product = LocalProduct(id=3, type="variation", name="T-Shirt - Large", parent_id=2, attributes={"Size": "Large"})

    supabase_store.save_product(product)

    row = client.table.return_value.upsert.call_args[0][0]
    assert row["parent_id"] == 2
    assert row["attributes"] == {"Size": "Large"}
