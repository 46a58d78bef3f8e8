"""
Coupon and checkout Discount resources.
Coupons are normally sent inline with the checkout session (``coupon_data``);
they only depend on the prices they apply to existing remotely.
"""
from typing import Any, Dict, List, Optional

import structlog

from app.models.local import LocalProduct
from app.resources.base import Gateway, Resource, ResourceAction
from app.resources.price import Price

logger = structlog.get_logger()


class Coupon(Resource):
    """Fixed amount-off coupon restricted to a set of prices."""

    def __init__(
        self,
        gateway: Gateway,
        name: str,
        id: Optional[str] = None,
        amount_off: Optional[int] = None,
        applies_to: Optional[List[Price]] = None,
    ):
        super().__init__(gateway, id)
        if applies_to and not all(isinstance(price, Price) for price in applies_to):
            raise TypeError("Coupon.applies_to may only contain Price instances")
        self.name = name
        self.amount_off = amount_off
        self.applies_to: List[Price] = list(applies_to or [])

    @classmethod
    def from_sale(cls, gateway: Gateway, product: LocalProduct) -> "Coupon":
        """
        Coupon representing a product's sale discount (regular minus sale price, per unit).
        """
        regular = gateway.to_minor_units(product.regular_price)
        sale = gateway.to_minor_units(product.sale_price) if product.sale_price else regular
        return cls(
            gateway,
            name=f"{product.name} (Sale)",
            amount_off=max(regular - sale, 0),
            applies_to=[Price.from_local(gateway, product)],
        )

    def serialize(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "amount_off": self.amount_off,
        }
        if self.applies_to:
            data["applies_to"] = {"prices": [price.id() for price in self.applies_to]}
        return data

    def dependencies(self):
        return list(self.applies_to)

    def extract(self, data: Dict[str, Any]) -> None:
        self._id = data.get("coupon_id", self._id)
        self.name = data.get("name", self.name)
        self.amount_off = data.get("amount_off", self.amount_off)

    def needs(self) -> ResourceAction:
        # A zero coupon never needs anything
        if not self.amount_off:
            return ResourceAction.NONE

        if self.dependency_pending():
            return ResourceAction.DEPENDENCY

        return ResourceAction.NONE

    def can(self, action: ResourceAction) -> bool:
        if action == ResourceAction.DEPENDENCY:
            return True
        if action == ResourceAction.CREATE:
            return self._id is None and bool(self.amount_off)
        return False

    async def exec(self, action: ResourceAction, depth: int = 0) -> None:
        if not self.can(action):
            return

        if action == ResourceAction.DEPENDENCY:
            await self.resolve_dependencies(depth)
            return

        data = await self.remote_resource(
            "coupon", "/v1/coupons", method="POST", data={"coupon": self.serialize()}
        )
        self.extract(data)
        logger.info("Coupon created", coupon_id=self._id, name=self.name, amount_off=self.amount_off)


class Discount(Resource):
    """Coupon application on a checkout session. Has no identity of its own."""

    def __init__(self, gateway: Gateway, coupon: Coupon):
        super().__init__(gateway)
        self.coupon = coupon

    def id(self) -> Optional[str]:
        return None

    def serialize(self) -> Dict[str, Any]:
        if self.coupon.id() is not None:
            return {"coupon_id": self.coupon.id()}
        return {"coupon_data": self.coupon.serialize()}

    def dependencies(self):
        return [self.coupon]

    def amount_off(self) -> int:
        return self.coupon.amount_off or 0

    def needs(self) -> ResourceAction:
        if self.dependency_pending():
            return ResourceAction.DEPENDENCY
        return ResourceAction.NONE

    def can(self, action: ResourceAction) -> bool:
        return action == ResourceAction.DEPENDENCY

    async def exec(self, action: ResourceAction, depth: int = 0) -> None:
        if not self.can(action):
            return
        await self.resolve_dependencies(depth)
