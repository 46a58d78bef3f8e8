import json

import httpx
import pytest
import structlog

from app.exceptions import ConfigurationError, ResponseError, TransportError
from app.services.payment_client import PaymentAPIClient, expect
from app.utils.retry import is_transient_error


def _client(handler, api_key="fsk_live_abc"):
    return PaymentAPIClient(api_key=api_key, base_url="https://api.test", transport=httpx.MockTransport(handler))


async def test_request_sends_auth_and_json_headers():
    seen = {}

    def handler(request):
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        seen["url"] = str(request.url)
        return httpx.Response(200, json={"product": {"product_id": "prod_1"}})

    client = _client(handler)
    data = await client.request("/v1/products", method="POST", data={"product": {"name": "Widget"}})
    await client.close()

    assert data == {"product": {"product_id": "prod_1"}}
    assert seen["url"] == "https://api.test/v1/products"
    assert seen["headers"]["authorization"] == "Bearer fsk_live_abc"
    assert seen["headers"]["content-type"] == "application/json"
    assert seen["headers"]["accept"] == "application/json"
    assert seen["body"] == {"product": {"name": "Widget"}}


async def test_request_forwards_bound_traceparent():
    seen = {}

    def handler(request):
        seen["traceparent"] = request.headers.get("traceparent")
        return httpx.Response(200, json={})

    client = _client(handler)
    with structlog.contextvars.bound_contextvars(traceparent="00-abc-def-01"):
        await client.request("/v1/products/prod_1")
    await client.close()

    assert seen["traceparent"] == "00-abc-def-01"


async def test_missing_api_key_is_a_configuration_error():
    client = _client(lambda request: httpx.Response(200, json={}), api_key="")
    with pytest.raises(ConfigurationError, match="API Key is not set"):
        await client.request("/v1/products")
    await client.close()


async def test_non_2xx_raises_response_error_with_status():
    client = _client(lambda request: httpx.Response(404, json={"error": "not found"}))
    with pytest.raises(ResponseError) as info:
        await client.request("/v1/products/prod_missing")
    await client.close()

    assert info.value.status_code == 404
    assert "not found" in info.value.body
    assert not is_transient_error(info.value)


async def test_server_errors_are_transient():
    client = _client(lambda request: httpx.Response(503, text="unavailable"))
    with pytest.raises(ResponseError) as info:
        await client.request("/v1/products")
    await client.close()

    assert info.value.status_code == 503
    assert is_transient_error(info.value)


@pytest.mark.parametrize("body, message", [("", "Missing response body."), ("{not json", "Invalid JSON response.")])
async def test_protocol_failures_raise_response_error(body, message):
    client = _client(lambda request: httpx.Response(200, text=body))
    with pytest.raises(ResponseError, match=message) as info:
        await client.request("/v1/products")
    await client.close()

    assert info.value.status_code == 200
    assert is_transient_error(info.value)


async def test_no_content_returns_empty_dict():
    client = _client(lambda request: httpx.Response(204))
    assert await client.request("/v1/webhooks/wh_1", method="DELETE") == {}
    await client.close()


async def test_transport_failure_is_chained():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    with pytest.raises(TransportError) as info:
        await client.request("/v1/products")
    await client.close()

    assert isinstance(info.value.__cause__, httpx.ConnectError)
    assert is_transient_error(info.value)


def test_expect_unwraps_envelope():
    assert expect({"price": {"price_id": "price_1"}}, "price") == {"price_id": "price_1"}
    with pytest.raises(ResponseError, match="Missing price in response."):
        expect({"product": {}}, "price")
