"""
Checkout session line item.
"""
from typing import Any, Dict, Optional

from app.models.local import LocalOrder, LocalOrderItem
from app.resources.base import Gateway, Resource, ResourceAction
from app.resources.price import Price, charged_quantity

KEY_PRICE = "line_item_price"


class LineItem(Resource):
    """Quantity of a price on a checkout session, tied to one local order item."""

    def __init__(
        self,
        gateway: Gateway,
        price: Optional[Price] = None,
        id: Optional[str] = None,
        quantity: int = 1,
        order_id: Optional[int] = None,
        item_id: Optional[int] = None,
    ):
        super().__init__(gateway, id)
        self.price = price or Price(gateway)
        self.quantity = quantity
        self.order_id = order_id
        self.item_id = item_id

    @classmethod
    def from_local(cls, gateway: Gateway, order: LocalOrder, item: LocalOrderItem) -> "LineItem":
        """
        Line item for an order item.

        Once the order has been paid the price stored at checkout is pinned, so
        refunds keep referencing the price the customer was charged even if the
        catalog changed since.
        """
        stored_id = item.get_meta(gateway.order_meta_key(KEY_PRICE))
        if stored_id and not order.needs_payment():
            price = Price.from_line_item(gateway, item, stored_id)
        else:
            price = Price.from_line_item(gateway, item)

        return cls(
            gateway,
            price=price,
            quantity=charged_quantity(gateway, item),
            order_id=order.id,
            item_id=item.id,
        )

    @classmethod
    def from_remote(cls, gateway: Gateway, data: Dict[str, Any]) -> "LineItem":
        return cls(
            gateway,
            id=data.get("line_item_id"),
            price=Price.from_remote(gateway, data["price"]) if data.get("price") else None,
            quantity=data.get("quantity") or 1,
        )

    def serialize(self) -> Dict[str, Any]:
        return {"quantity": self.quantity, "price": self.price.id()}

    def subtotal(self) -> int:
        return (self.price.unit_amount or 0) * self.quantity

    def dependencies(self):
        return [self.price]

    def apply_to(self, item: LocalOrderItem) -> None:
        """Pin the price on the local order item."""
        item.update_meta(self.gateway.order_meta_key(KEY_PRICE), self.price.id())

    def needs(self) -> ResourceAction:
        if self.item_id is None:
            return ResourceAction.NONE
        if self.price.needs() != ResourceAction.NONE:
            return ResourceAction.DEPENDENCY
        return ResourceAction.NONE

    def can(self, action: ResourceAction) -> bool:
        return action == ResourceAction.DEPENDENCY

    async def exec(self, action: ResourceAction, depth: int = 0) -> None:
        if not self.can(action):
            return
        await self.resolve_dependencies(depth)
