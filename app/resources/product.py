"""
Product resource.
A catalog product mirrored on the payment platform. The name is identity-bearing:
renaming re-creates the remote product and deactivates the old one.
"""
from typing import Any, Dict, Optional

import structlog

from app.exceptions import PaymentSyncError, ResponseError
from app.models.local import ELIGIBLE_PRODUCT_TYPES, LocalProduct
from app.resources.base import Gateway, Resource, ResourceAction

logger = structlog.get_logger()

KEY_ID = "product_id"
KEY_HASH = "product_hash"
KEY_NAME = "product_name"
KEY_HSA_FSA_ELIGIBILITY = "product_hsa_fsa_eligibility"


class Product(Resource):
    """Remote product derived from a local catalog product."""

    def __init__(
        self,
        gateway: Gateway,
        name: str = "",
        active: bool = True,
        description: Optional[str] = None,
        gtin: Optional[str] = None,
        url: Optional[str] = None,
        hsa_fsa_eligibility: Optional[str] = None,
        id: Optional[str] = None,
        local_id: Optional[int] = None,
    ):
        super().__init__(gateway, id)
        self.name = name
        self.active = active
        self.description = description
        self.gtin = gtin
        self.url = url
        self.hsa_fsa_eligibility = hsa_fsa_eligibility
        self.local_id = local_id

    @classmethod
    def from_local(cls, gateway: Gateway, product: LocalProduct) -> "Product":
        """
        Build the intended remote state from a local product.

        Args:
            gateway: Gateway context
            product: Local product (the system of record)
        """
        description = (product.short_description or "").strip()
        return cls(
            gateway,
            name=product.name,
            id=product.get_meta(gateway.meta_key(KEY_ID)),
            active=product.status != "trash",
            description=description or None,
            gtin=product.managed_gtin(),
            url=product.permalink or None,
            hsa_fsa_eligibility=product.get_meta(gateway.meta_key(KEY_HSA_FSA_ELIGIBILITY)),
            local_id=product.id,
        )

    @classmethod
    def from_remote(cls, gateway: Gateway, data: Any) -> "Product":
        """Build a product from an API payload or a bare product id."""
        if isinstance(data, str):
            return cls(gateway, id=data)
        product = cls(gateway)
        product.extract(data)
        return product

    def local(self) -> Optional[LocalProduct]:
        if self.local_id is None:
            return None
        return self.gateway.store.get_product(self.local_id)

    def serialize(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "active": self.active,
            "description": self.description,
            "url": self.url,
        }
        # GTIN is only sent when the store manages it
        local = self.local()
        if local is not None and local.managed_gtin() is not None:
            data["gtin"] = self.gtin
        return data

    def extract(self, data: Dict[str, Any]) -> None:
        """Fold an API product payload into this resource."""
        self.name = data.get("name", self.name)
        self._id = data.get("product_id", self._id)
        self.active = data.get("active", self.active)
        self.description = data.get("description", self.description)
        self.gtin = data.get("gtin", self.gtin)
        self.url = data.get("url", self.url)
        self.hsa_fsa_eligibility = data.get("hsa_fsa_eligibility", self.hsa_fsa_eligibility)

    def needs(self) -> ResourceAction:
        local = self.local()
        if local is None or local.type not in ELIGIBLE_PRODUCT_TYPES:
            return ResourceAction.NONE

        if self._id is None:
            return ResourceAction.CREATE

        if local.get_meta(self.gateway.meta_key(KEY_NAME)) != self.name:
            return ResourceAction.CREATE

        if local.get_meta(self.gateway.meta_key(KEY_HASH)) != self.hash():
            return ResourceAction.UPDATE

        return ResourceAction.NONE

    def can(self, action: ResourceAction) -> bool:
        if action == ResourceAction.CREATE:
            return True
        if action == ResourceAction.UPDATE:
            return self._id is not None
        return False

    def apply_to(self, product: LocalProduct, hash: Optional[str] = None) -> None:
        """Write remote bookkeeping onto a local product."""
        product.update_meta(self.gateway.meta_key(KEY_ID), self._id)
        product.update_meta(self.gateway.meta_key(KEY_NAME), self.name)
        product.update_meta(self.gateway.meta_key(KEY_HASH), hash or self.hash())
        product.update_meta(self.gateway.meta_key(KEY_HSA_FSA_ELIGIBILITY), self.hsa_fsa_eligibility)

        # Only override the GTIN when the store manages it or has none
        if product.managed_gtin() is not None or not product.global_unique_id:
            product.global_unique_id = self.gtin

    async def exec(self, action: ResourceAction, depth: int = 0) -> None:
        if not self.can(action):
            return

        existing: Optional[Product] = None
        intended_hash = self.hash()
        payload: Dict[str, Any] = self.serialize()

        if self._id is not None and action == ResourceAction.CREATE:
            existing = Product(self.gateway, name=self.name, id=self._id, active=False)
            try:
                current = await self.remote_resource("product", f"/v1/products/{self._id}")
            except ResponseError as e:
                if e.status_code != 404:
                    raise
                logger.info("Previous product no longer exists", product_id=self._id)
                existing = None
            else:
                # Keep remote-only values on re-creation
                current.pop("product_id", None)
                payload = {**current, **payload}

        if action == ResourceAction.CREATE:
            data = await self.remote_resource(
                "product", "/v1/products", method="POST", data={"product": payload}
            )
        else:
            data = await self.remote_resource(
                "product", f"/v1/products/{self._id}", method="PATCH", data={"product": payload}
            )

        self.extract(data)
        logger.info(
            "Product synced",
            action=action.value,
            product_id=self._id,
            local_product_id=self.local_id,
        )

        local = self.local()
        if local is not None:
            self.apply_to(local, intended_hash)
            self.gateway.store.save_product(local)

        if existing is not None:
            try:
                await existing.exec(ResourceAction.UPDATE, depth + 1)
            except PaymentSyncError as e:
                logger.warning(
                    "Failed to deactivate previous product",
                    product_id=existing.id(),
                    replacement_id=self._id,
                    error=str(e),
                )
