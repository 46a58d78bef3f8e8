"""
Webhook subscription resource.

One subscription per mode (live/test). Self-heals when the remote subscription
disappears out of band: an update that 404s re-creates it, a delete that 404s
is treated as done.
"""
import base64
import binascii
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import structlog

from app.exceptions import IntegrityError, PaymentSyncError, ResponseError
from app.resources.base import Gateway, Resource, ResourceAction

logger = structlog.get_logger()

KEY_ID = "webhook_id"
KEY_URL = "webhook_url"
KEY_HASH = "webhook_hash"
KEY_SIGNING_SECRET = "webhook_signing_secret"


class WebhookEvent(str, Enum):
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    REFUND_UPDATED = "refund.updated"


DEFAULT_EVENTS = [event.value for event in WebhookEvent]


class Webhook(Resource):
    """Remote event subscription pointing at this service."""

    def __init__(
        self,
        gateway: Gateway,
        url: str,
        id: Optional[str] = None,
        signing_secret: Optional[str] = None,
        events: Optional[List[str]] = None,
        test_mode: Optional[bool] = None,
        managed: bool = False,
    ):
        super().__init__(gateway, id)
        self.url = url
        self.signing_secret = signing_secret
        self.events = list(events) if events is not None else list(DEFAULT_EVENTS)
        self.test_mode = test_mode if test_mode is not None else gateway.test_mode
        # Only managed webhooks read and write the gateway options
        self.managed = managed

    @classmethod
    def from_local(cls, gateway: Gateway, test_mode: Optional[bool] = None) -> "Webhook":
        """
        Intended webhook for a mode, with the stored id and signing secret.

        Args:
            gateway: Gateway context
            test_mode: Mode to build for, defaults to the gateway's mode
        """
        if test_mode is not None and test_mode != gateway.test_mode:
            gateway = gateway.with_mode(test_mode)
        options = gateway.store.get_gateway_options().options
        return cls(
            gateway,
            url=gateway.webhook_url(),
            id=options.get(gateway.option_key(KEY_ID)) or None,
            signing_secret=options.get(gateway.option_key(KEY_SIGNING_SECRET)) or None,
            test_mode=gateway.test_mode,
            managed=True,
        )

    @classmethod
    def from_remote(cls, gateway: Gateway, data: Dict[str, Any]) -> "Webhook":
        if not data.get("url"):
            raise IntegrityError("URL missing from webhook.", context={"webhook_id": data.get("webhook_id")})
        webhook = cls(gateway, url=data["url"])
        webhook.extract(data)
        return webhook

    def extract(self, data: Dict[str, Any]) -> None:
        self._id = data.get("webhook_id", self._id)
        self.url = data.get("url", self.url)
        self.events = data.get("events", self.events)
        self.signing_secret = data.get("signing_secret", self.signing_secret)
        self.test_mode = data.get("test_mode", self.test_mode)

    def secret(self) -> bytes:
        """
        Decode the signing secret (``<prefix>_<base64>``) into the HMAC key.

        Raises:
            IntegrityError: If no secret is stored or it cannot be decoded
        """
        parts = (self.signing_secret or "").split("_")
        if len(parts) < 2 or not parts[1]:
            raise IntegrityError("Webhook was received, but secret is not present.")
        try:
            return base64.b64decode(parts[1], validate=True)
        except (binascii.Error, ValueError) as e:
            raise IntegrityError("Failed to base64 decode the signing secret.") from e

    def serialize(self) -> Dict[str, Any]:
        return {"url": self.url, "events": self.events}

    def _keys(self) -> List[str]:
        return [self.gateway.option_key(key) for key in (KEY_ID, KEY_URL, KEY_SIGNING_SECRET, KEY_HASH)]

    def apply_to(self, hash: Optional[str] = None) -> None:
        """Persist the subscription bookkeeping in the gateway options."""
        self.gateway.store.update_gateway_options(
            {
                self.gateway.option_key(KEY_ID): self._id,
                self.gateway.option_key(KEY_URL): self.url,
                self.gateway.option_key(KEY_SIGNING_SECRET): self.signing_secret,
                self.gateway.option_key(KEY_HASH): hash or self.hash(),
            }
        )

    def remove_from(self) -> None:
        self.gateway.store.remove_gateway_options(self._keys())

    def needs(self) -> ResourceAction:
        if not self.managed:
            return ResourceAction.NONE

        # A disabled gateway keeps no subscription
        if not self.gateway.enabled:
            return ResourceAction.DELETE if self._id is not None else ResourceAction.NONE

        # Never subscribe a plaintext URL unless explicitly allowed
        if urlparse(self.url).scheme != "https" and not self.gateway.allow_http_webhooks:
            return ResourceAction.NONE

        if self._id is None:
            return ResourceAction.CREATE

        options = self.gateway.store.get_gateway_options().options
        if options.get(self.gateway.option_key(KEY_URL)) != self.url:
            return ResourceAction.CREATE

        if options.get(self.gateway.option_key(KEY_HASH)) != self.hash():
            return ResourceAction.UPDATE

        return ResourceAction.NONE

    def can(self, action: ResourceAction) -> bool:
        if action == ResourceAction.CREATE:
            return True
        if action in (ResourceAction.UPDATE, ResourceAction.DELETE):
            return self._id is not None
        return False

    async def exec(self, action: ResourceAction, depth: int = 0) -> None:
        if not self.can(action):
            return

        existing: Optional[Webhook] = None
        intended_hash = self.hash()
        payload: Dict[str, Any] = self.serialize()

        if self._id is not None and action == ResourceAction.CREATE:
            existing = Webhook(self.gateway, url=self.url, id=self._id, test_mode=self.test_mode)
            try:
                current = await self.remote_resource("webhook", f"/v1/webhooks/{self._id}")
            except ResponseError as e:
                if e.status_code != 404:
                    raise
                # Already gone, create from scratch
                existing = None
            else:
                current.pop("webhook_id", None)
                current.pop("signing_secret", None)
                payload = {**current, **payload}

        try:
            if action == ResourceAction.CREATE:
                data = await self.remote_request(
                    "/v1/webhooks", method="POST", data={"webhook": payload}
                )
            elif action == ResourceAction.UPDATE:
                data = await self.remote_request(
                    f"/v1/webhooks/{self._id}", method="POST", data={"webhook": payload}
                )
            else:
                await self.remote_request(f"/v1/webhooks/{self._id}", method="DELETE")
                logger.info("Webhook deleted", webhook_id=self._id, test_mode=self.test_mode)
                if self.managed:
                    self.remove_from()
                self._id = None
                return
        except ResponseError as e:
            if e.status_code != 404 or not self.managed:
                raise
            if action == ResourceAction.UPDATE:
                logger.warning("Webhook missing on update, re-creating", webhook_id=self._id)
                self._id = None
                await self.exec(ResourceAction.CREATE, depth + 1)
                return
            if action == ResourceAction.DELETE:
                logger.info("Webhook already deleted", webhook_id=self._id)
                self.remove_from()
                self._id = None
                return
            raise

        if not isinstance(data, dict) or not isinstance(data.get("webhook"), dict):
            raise ResponseError("Missing webhook in response.", context={"action": action.value})

        self.extract(data["webhook"])
        logger.info(
            "Webhook synced",
            action=action.value,
            webhook_id=self._id,
            url=self.url,
            test_mode=self.test_mode,
        )
        if self.managed:
            self.apply_to(intended_hash)

        if existing is not None:
            try:
                await existing.exec(ResourceAction.UPDATE, depth + 1)
            except PaymentSyncError as e:
                logger.warning(
                    "Failed to update previous webhook",
                    webhook_id=existing.id(),
                    replacement_id=self._id,
                    error=str(e),
                )
