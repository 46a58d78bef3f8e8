"""
Payment platform API client.
Builds authenticated JSON requests and classifies transport, application and
protocol failures. Retry policy belongs to the callers.
"""
import json
from typing import Any, Dict, Optional

import httpx
import structlog

from app.config import settings
from app.exceptions import ConfigurationError, ResponseError, TransportError
from app.utils.logger import current_traceparent

logger = structlog.get_logger()

DEFAULT_BASE_URL = "https://api.withflex.com"


class PaymentAPIClient:
    """Client for interacting with the payment platform REST API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize payment API client.

        Args:
            api_key: Secret API key (``fsk_...``)
            base_url: API base URL
            timeout: Request timeout in seconds, defaults to the configured timeout
            transport: Optional httpx transport, used to fake the remote API in tests
        """
        self.api_key = api_key
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout if timeout is not None else settings.http_timeout_seconds),
            transport=transport,
        )

    def _build_headers(self, headers: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        built = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        traceparent = current_traceparent()
        if traceparent:
            built["traceparent"] = traceparent
        if headers:
            built.update(headers)
        return built

    async def request(
        self,
        path: str,
        method: str = "GET",
        data: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Send a request to the payment platform.

        Args:
            path: Versioned API path, e.g. ``/v1/products``
            method: HTTP method
            data: JSON-serializable request body
            headers: Extra headers, overriding the defaults

        Returns:
            Decoded JSON response body

        Raises:
            ConfigurationError: If no API key is configured
            TransportError: If the request could not be sent
            ResponseError: If the response is non-2xx, empty or not JSON
        """
        if not self.api_key:
            raise ConfigurationError("API Key is not set")

        url = f"{self.base_url}{path}"
        content = json.dumps(data) if data is not None else None

        logger.debug("Payment API request", method=method, url=url)

        try:
            response = await self.client.request(
                method,
                path,
                content=content,
                headers=self._build_headers(headers),
            )
        except httpx.HTTPError as e:
            logger.error("Payment API request failed", method=method, url=url, error=str(e))
            raise TransportError(
                f"Request failed: {str(e)}", context={"method": method, "url": url}
            ) from e

        body = response.text

        if response.status_code == 204:
            return {}

        if response.status_code < 200 or response.status_code >= 300:
            logger.error(
                "Payment API returned error status",
                method=method,
                url=url,
                status_code=response.status_code,
                response_body=body,
            )
            raise ResponseError(
                f"Unexpected response status {response.status_code}",
                status_code=response.status_code,
                body=body,
                context={"method": method, "url": url},
            )

        if not body.strip():
            logger.error("Payment API returned empty body", method=method, url=url)
            raise ResponseError(
                "Missing response body.",
                status_code=response.status_code,
                body=body,
                context={"method": method, "url": url},
            )

        try:
            return json.loads(body)
        except ValueError as e:
            logger.error(
                "Payment API returned invalid JSON",
                method=method,
                url=url,
                response_body=body,
            )
            raise ResponseError(
                "Invalid JSON response.",
                status_code=response.status_code,
                body=body,
                context={"method": method, "url": url},
            ) from e

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


def expect(data: Any, key: str) -> Dict[str, Any]:
    """
    Unwrap the ``{"<resource>": {...}}`` response envelope.

    Raises:
        ResponseError: If the expected key is missing or is not an object
    """
    if not isinstance(data, dict) or not isinstance(data.get(key), dict):
        raise ResponseError(
            f"Missing {key} in response.",
            context={"expected_key": key},
        )
    return data[key]
