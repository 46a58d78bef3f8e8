"""
Price resource.
A unit amount attached to exactly one remote product. The product reference and
the unit amount are identity-bearing: changing either re-creates the price.
"""
from typing import Any, Dict, Optional

import structlog

from app.exceptions import PaymentSyncError, ResponseError
from app.models.local import PRICED_PRODUCT_TYPES, LocalOrderItem, LocalProduct
from app.resources.base import Gateway, Resource, ResourceAction
from app.resources.product import Product

logger = structlog.get_logger()

KEY_ID = "price_id"
KEY_HASH = "price_hash"
KEY_PRODUCT = "price_product"
KEY_AMOUNT = "price_amount"
KEY_HSA_FSA_ELIGIBILITY = "price_hsa_fsa_eligibility"


def charged_quantity(gateway: Gateway, item: LocalOrderItem) -> int:
    """
    Quantity an order item is charged at.

    A subtotal that does not split evenly over the quantity (bundles, dynamic
    pricing) is charged as a single unit of the whole subtotal.
    """
    quantity = item.quantity or 1
    if gateway.to_minor_units(item.subtotal) % quantity:
        return 1
    return quantity


class Price(Resource):
    """
    Remote price.

    Three flavours exist:

    * catalog prices, backed by a local product whose metadata caches the last
      synced state (``local_id`` is set);
    * ad-hoc prices for order items charged differently from the catalog
      (add-ons, dynamic pricing), which have no local snapshot and are created
      once and then only referenced;
    * pinned prices, a stored reference taken from a paid order item, which are
      never acted upon.
    """

    def __init__(
        self,
        gateway: Gateway,
        product: Optional[Product] = None,
        id: Optional[str] = None,
        active: bool = True,
        description: Optional[str] = None,
        unit_amount: Optional[int] = None,
        hsa_fsa_eligibility: Optional[str] = None,
        local_id: Optional[int] = None,
        adhoc: bool = False,
        pinned: bool = False,
    ):
        super().__init__(gateway, id)
        self.product = product or Product(gateway)
        self.active = active
        self.description = description
        self.unit_amount = unit_amount
        self.hsa_fsa_eligibility = hsa_fsa_eligibility
        self.local_id = local_id
        self.adhoc = adhoc
        self.pinned = pinned

    @classmethod
    def from_local(cls, gateway: Gateway, product: LocalProduct) -> "Price":
        """
        Build the intended remote price of a local product or variation.

        Variations are priced against their parent's remote product.
        """
        remote_product: Optional[Product] = None
        if product.type == "variation":
            parent = gateway.store.get_product(product.parent_id) if product.parent_id else None
            if parent is not None:
                remote_product = Product.from_local(gateway, parent)
        else:
            remote_product = Product.from_local(gateway, product)

        description = (product.short_description or "").strip()
        if not description and product.type == "variation":
            description = product.formatted_attributes()

        return cls(
            gateway,
            product=remote_product,
            id=product.get_meta(gateway.meta_key(KEY_ID)),
            active=product.status != "trash",
            description=description or None,
            unit_amount=(
                gateway.to_minor_units(product.regular_price) if product.regular_price else None
            ),
            hsa_fsa_eligibility=product.get_meta(gateway.meta_key(KEY_HSA_FSA_ELIGIBILITY)),
            local_id=product.id,
        )

    @classmethod
    def from_line_item(
        cls, gateway: Gateway, item: LocalOrderItem, stored_id: Optional[str] = None
    ) -> "Price":
        """
        Price charged for an order item.

        Uses the catalog price when the item was charged the catalog amount,
        otherwise an ad-hoc price for the amount actually charged. A ``stored_id``
        (recorded when the order was paid) always wins and pins the price.

        Args:
            gateway: Gateway context
            item: Local order item
            stored_id: Remote price id stored on the item at checkout time
        """
        unit_amount = gateway.to_minor_units(item.subtotal) // charged_quantity(gateway, item)

        catalog = None
        product_id = item.catalog_product_id()
        if product_id is not None:
            catalog = gateway.store.get_product(product_id)

        if catalog is not None and catalog.price is not None:
            if gateway.to_minor_units(catalog.price) == unit_amount:
                price = cls.from_local(gateway, catalog)
                if stored_id is not None:
                    price._id = stored_id
                    price.pinned = True
                return price

        remote_product: Optional[Product] = None
        if catalog is not None:
            owner = catalog
            if catalog.type == "variation" and catalog.parent_id:
                owner = gateway.store.get_product(catalog.parent_id) or catalog
            remote_product = Product.from_local(gateway, owner)

        return cls(
            gateway,
            product=remote_product,
            id=stored_id,
            description=item.name or None,
            unit_amount=unit_amount,
            adhoc=True,
            pinned=stored_id is not None,
        )

    @classmethod
    def from_remote(cls, gateway: Gateway, data: Any) -> "Price":
        """Build a price from an API payload or a bare price id."""
        if isinstance(data, str):
            return cls(gateway, id=data)
        price = cls(gateway)
        price.extract(data)
        return price

    def local(self) -> Optional[LocalProduct]:
        if self.local_id is None:
            return None
        return self.gateway.store.get_product(self.local_id)

    def serialize(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "description": self.description,
            "product": self.product.id(),
            "unit_amount": self.unit_amount,
        }

    def dependencies(self):
        return [self.product]

    def extract(self, data: Dict[str, Any]) -> None:
        """Fold an API price payload into this resource."""
        self._id = data.get("price_id", self._id)
        self.active = data.get("active", self.active)
        self.description = data.get("description", self.description)
        self.unit_amount = data.get("unit_amount", self.unit_amount)
        self.hsa_fsa_eligibility = data.get("hsa_fsa_eligibility", self.hsa_fsa_eligibility)

        if data.get("product") is not None:
            updated = Product.from_remote(self.gateway, data["product"])
            if updated.id() != self.product.id():
                self.product = updated

    def apply_to(self, product: LocalProduct, hash: Optional[str] = None) -> None:
        """Write remote bookkeeping onto a local product."""
        product.update_meta(self.gateway.meta_key(KEY_ID), self._id)
        product.update_meta(self.gateway.meta_key(KEY_HASH), hash or self.hash())
        product.update_meta(self.gateway.meta_key(KEY_PRODUCT), self.product.id())
        product.update_meta(
            self.gateway.meta_key(KEY_AMOUNT),
            str(self.unit_amount) if self.unit_amount is not None else None,
        )
        product.update_meta(self.gateway.meta_key(KEY_HSA_FSA_ELIGIBILITY), self.hsa_fsa_eligibility)

    def needs(self) -> ResourceAction:
        if self.pinned:
            return ResourceAction.NONE

        if self.adhoc:
            return self._adhoc_needs()

        local = self.local()
        if local is None or local.type not in PRICED_PRODUCT_TYPES:
            return ResourceAction.NONE

        if self.unit_amount is None:
            return ResourceAction.NONE

        # The product is synced first, a re-created product re-points the price
        if self.dependency_pending() or self.product.id() is None:
            return ResourceAction.DEPENDENCY

        if self._id is None:
            return ResourceAction.CREATE

        if local.get_meta(self.gateway.meta_key(KEY_PRODUCT)) != self.product.id():
            return ResourceAction.CREATE

        amount = local.get_meta(self.gateway.meta_key(KEY_AMOUNT))
        if amount is None or int(amount) != self.unit_amount:
            return ResourceAction.CREATE

        if local.get_meta(self.gateway.meta_key(KEY_HASH)) != self.hash():
            return ResourceAction.UPDATE

        return ResourceAction.NONE

    def _adhoc_needs(self) -> ResourceAction:
        if self.unit_amount is None:
            return ResourceAction.NONE
        if self.dependency_pending() or self.product.id() is None:
            return ResourceAction.DEPENDENCY
        if self._id is None:
            return ResourceAction.CREATE
        return ResourceAction.NONE

    def can(self, action: ResourceAction) -> bool:
        if action in (ResourceAction.CREATE, ResourceAction.DEPENDENCY):
            return True
        if action == ResourceAction.UPDATE:
            return self._id is not None
        return False

    async def exec(self, action: ResourceAction, depth: int = 0) -> None:
        if not self.can(action):
            return

        if action == ResourceAction.DEPENDENCY:
            await self.resolve_dependencies(depth)

            action = self.needs()
            if action == ResourceAction.DEPENDENCY or not self.can(action):
                # The product could not be resolved yet
                logger.info(
                    "Price dependency unresolved",
                    local_product_id=self.local_id,
                    product_id=self.product.id(),
                )
                return

        existing: Optional[Price] = None
        intended_hash = self.hash()
        payload: Dict[str, Any] = self.serialize()

        if self._id is not None and action == ResourceAction.CREATE:
            existing = Price(self.gateway, product=self.product, id=self._id, active=False)
            try:
                current = await self.remote_resource("price", f"/v1/prices/{self._id}")
            except ResponseError as e:
                if e.status_code != 404:
                    raise
                logger.info("Previous price no longer exists", price_id=self._id)
                existing = None
            else:
                current.pop("price_id", None)
                current.pop("price", None)
                payload = {**current, **payload}

        path = "/v1/prices" if action == ResourceAction.CREATE else f"/v1/prices/{self._id}"
        data = await self.remote_resource("price", path, method="POST", data={"price": payload})

        self.extract(data)
        logger.info(
            "Price synced",
            action=action.value,
            price_id=self._id,
            product_id=self.product.id(),
            unit_amount=self.unit_amount,
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
                    "Failed to deactivate previous price",
                    price_id=existing.id(),
                    replacement_id=self._id,
                    error=str(e),
                )
