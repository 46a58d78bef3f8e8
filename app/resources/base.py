"""
Base contract for payment platform resources.

Every resource derives the remote action it requires from a diff against the
remote state cached in the local store (``needs``), checks whether its current
state permits an action (``can``), performs it (``exec``) and exposes its
canonical wire form (``serialize``). Composite resources resolve their children
first and then re-evaluate themselves.
"""
import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from app.config import settings
from app.exceptions import IntegrityError
from app.services.local_store import LocalStore
from app.services.payment_client import PaymentAPIClient, expect
from app.utils.money import MoneyNormalizer

logger = structlog.get_logger()

MAX_RESOLUTION_DEPTH = 10

META_PREFIX = "_pay_"
TEST_META_PREFIX = "_pay_test_"
TEST_OPTION_PREFIX = "test_"
TEST_KEY_PREFIX = "fsk_test_"


class ResourceAction(str, Enum):
    """The single action vocabulary spoken by needs(), can() and exec()."""
    CREATE = "create"
    UPDATE = "update"
    REFRESH = "refresh"
    DEPENDENCY = "dependency"
    DELETE = "delete"
    NONE = "none"


def content_hash(data: Any) -> str:
    """SHA-256 of the canonical (sorted-key, compact) JSON form of ``data``."""
    encoded = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class Gateway:
    """
    Everything a resource needs to talk to the remote API and the local store.

    Passed explicitly into every resource factory instead of being looked up
    from process-wide state.
    """

    def __init__(
        self,
        client: PaymentAPIClient,
        store: LocalStore,
        money: Optional[MoneyNormalizer] = None,
        test_mode: Optional[bool] = None,
        enabled: Optional[bool] = None,
        allow_http_webhooks: Optional[bool] = None,
        public_base_url: Optional[str] = None,
        checkout_url: Optional[str] = None,
        order_received_url: Optional[str] = None,
        url_signing_secret: Optional[str] = None,
    ):
        self.client = client
        self.store = store
        self.money = money or MoneyNormalizer.from_settings()
        self.test_mode = (
            test_mode if test_mode is not None else is_test_key(client.api_key)
        )
        self.enabled = enabled if enabled is not None else store.get_gateway_options().enabled
        self.allow_http_webhooks = (
            allow_http_webhooks if allow_http_webhooks is not None else settings.allow_http_webhooks
        )
        self.public_base_url = (public_base_url or settings.public_base_url).rstrip("/")
        self.checkout_url = checkout_url or settings.checkout_url
        self.order_received_url_template = order_received_url or settings.order_received_url
        self.url_signing_secret = url_signing_secret or settings.url_signing_secret

    @classmethod
    def from_settings(cls, store: LocalStore, transport=None) -> "Gateway":
        """
        Build a gateway from the configured settings and the stored gateway options.

        Args:
            store: Local store
            transport: Optional httpx transport for the remote client
        """
        options = store.get_gateway_options()
        client = PaymentAPIClient(
            api_key=options.api_key or settings.payment_api_key,
            base_url=settings.payment_api_base_url,
            transport=transport,
        )
        return cls(client=client, store=store, enabled=options.enabled)

    def with_mode(self, test_mode: bool) -> "Gateway":
        """Copy of this gateway scoped to the given mode."""
        return Gateway(
            client=self.client,
            store=self.store,
            money=self.money,
            test_mode=test_mode,
            enabled=self.enabled,
            allow_http_webhooks=self.allow_http_webhooks,
            public_base_url=self.public_base_url,
            checkout_url=self.checkout_url,
            order_received_url=self.order_received_url_template,
            url_signing_secret=self.url_signing_secret,
        )

    def meta_key(self, name: str) -> str:
        """Mode-scoped metadata key for catalog entities."""
        return (TEST_META_PREFIX if self.test_mode else META_PREFIX) + name

    @staticmethod
    def order_meta_key(name: str) -> str:
        """Metadata key for orders and order items; the mode is recorded separately."""
        return META_PREFIX + name

    def option_key(self, name: str) -> str:
        """Mode-scoped gateway option key."""
        return (TEST_OPTION_PREFIX if self.test_mode else "") + name

    def to_minor_units(self, value: Any) -> int:
        return self.money.to_minor_units(value)

    def webhook_url(self) -> str:
        return self.public_base_url + ("/test/webhooks" if self.test_mode else "/webhooks")

    def order_token(self, order_id: int) -> str:
        return hmac.new(
            self.url_signing_secret.encode("utf-8"),
            f"complete-order-{order_id}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def verify_order_token(self, order_id: int, token: Optional[str]) -> bool:
        if not token:
            return False
        return hmac.compare_digest(self.order_token(order_id), token)

    def success_url(self, order_id: int) -> str:
        return f"{self.public_base_url}/orders/{order_id}/complete?_token={self.order_token(order_id)}"

    def order_received_url(self, order_id: int) -> str:
        return self.order_received_url_template.format(order_id=order_id)


def is_test_key(api_key: Optional[str]) -> bool:
    return bool(api_key) and api_key.startswith(TEST_KEY_PREFIX)


class Resource(ABC):
    """Base class for every payment platform resource."""

    def __init__(self, gateway: Gateway, id: Optional[str] = None):
        self.gateway = gateway
        self._id = id

    def id(self) -> Optional[str]:
        """Remote identity, if known."""
        return self._id

    @abstractmethod
    def needs(self) -> ResourceAction:
        """Action required to bring the remote resource in line with local state. Never does remote I/O."""

    @abstractmethod
    def can(self, action: ResourceAction) -> bool:
        """Whether the current state permits ``action``."""

    @abstractmethod
    async def exec(self, action: ResourceAction, depth: int = 0) -> None:
        """Perform ``action`` if permitted, otherwise do nothing."""

    @abstractmethod
    def serialize(self) -> Any:
        """Canonical wire representation, limited to locally authoritative fields."""

    def dependencies(self) -> List["Resource"]:
        """Child resources that must be resolved before this one."""
        return []

    def hash(self) -> str:
        return content_hash(self.serialize())

    def dependency_pending(self) -> bool:
        return any(child.needs() != ResourceAction.NONE for child in self.dependencies())

    async def resolve_dependencies(self, depth: int) -> None:
        """
        Execute whatever each child currently needs.

        Raises:
            IntegrityError: If resolution recursed past MAX_RESOLUTION_DEPTH
        """
        if depth >= MAX_RESOLUTION_DEPTH:
            raise IntegrityError(
                "Dependency resolution did not converge",
                context={"resource": type(self).__name__, "id": self.id(), "depth": depth},
            )
        for child in self.dependencies():
            await child.exec(child.needs(), depth + 1)

    async def remote_request(
        self, path: str, method: str = "GET", data: Optional[Any] = None
    ) -> Dict[str, Any]:
        return await self.gateway.client.request(path, method=method, data=data)

    async def remote_resource(
        self, key: str, path: str, method: str = "GET", data: Optional[Any] = None
    ) -> Dict[str, Any]:
        """Send a request and unwrap the ``key`` envelope from the response."""
        return expect(await self.remote_request(path, method=method, data=data), key)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.id()!r}>"


async def resolve(resource: Resource) -> ResourceAction:
    """
    Bring a resource in sync by executing whatever it currently needs.

    Returns:
        The action that was requested
    """
    action = resource.needs()
    if action != ResourceAction.NONE:
        logger.debug("Resolving resource", resource=repr(resource), action=action.value)
    await resource.exec(action)
    return action
