"""
Refund resources.

``CheckoutSessionRefund`` is the outbound request refunding part of a paid
checkout session; ``Refund`` is the inbound refund status reported by the
payment platform.
"""
import math
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from app.exceptions import IntegrityError
from app.models.local import LocalOrder, LocalOrderItem, LocalRefund
from app.resources.base import Gateway, Resource, ResourceAction
from app.resources.checkout_components import _try_enum
from app.resources.line_item import LineItem
from app.resources.price import Price

logger = structlog.get_logger()


class RefundStatus(str, Enum):
    PENDING = "pending"
    REQUIRES_ACTION = "requires_action"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    def is_failure(self) -> bool:
        return self in (RefundStatus.FAILED, RefundStatus.CANCELED)


class RefundLineItem:
    """Amount to refund against one price of the checkout session."""

    def __init__(self, price: Price, amount_to_refund: int):
        self.price = price
        self.amount_to_refund = amount_to_refund

    @classmethod
    def from_local(
        cls, gateway: Gateway, order: LocalOrder, refund_item: LocalOrderItem
    ) -> "RefundLineItem":
        """Refund line item for a local refund item, priced like the original order item."""
        original = order.get_item(refund_item.refunded_item_id) if refund_item.refunded_item_id else None
        if original is None:
            raise IntegrityError(
                "Refunded order item not found",
                context={"order_id": order.id, "refunded_item_id": refund_item.refunded_item_id},
            )
        line_item = LineItem.from_local(gateway, order, original)
        return cls(price=line_item.price, amount_to_refund=gateway.to_minor_units(refund_item.total))

    def serialize(self) -> Dict[str, Any]:
        return {"price": self.price.id(), "amount_to_refund": self.amount_to_refund}


def distribute_refund(amounts: List[int], weights: List[int], refund_amount: int) -> List[int]:
    """
    Spread ``refund_amount`` over line items so the parts add up exactly.

    When ``amounts`` is empty the whole amount is spread proportionally to
    ``weights``; otherwise any shortfall is topped up proportionally to the given
    amounts. Rounding is then corrected a cent at a time, round-robin, without
    ever taking an item below zero.

    Args:
        amounts: Amounts requested per line item (may be empty)
        weights: Line item totals used for a proportional spread
        refund_amount: Authoritative total to refund, in minor units

    Returns:
        Final amount per line item
    """
    if not amounts:
        weight_total = sum(weights)
        if weight_total <= 0:
            if not weights:
                return []
            # Nothing to weigh by, split evenly
            weights = [1] * len(weights)
            weight_total = len(weights)
        result = [math.ceil(weight * refund_amount / weight_total) for weight in weights]
    else:
        result = list(amounts)
        requested = sum(result)
        remainder = refund_amount - requested
        if remainder > 0 and requested > 0:
            result = [amount + math.ceil(amount * remainder / requested) for amount in result]

    if not result:
        return result

    remainder = refund_amount - sum(result)
    index = 0
    while remainder < 0:
        if result[index] > 0:
            result[index] -= 1
            remainder += 1
        index = (index + 1) % len(result)
    while remainder > 0:
        result[index] += 1
        remainder -= 1
        index = (index + 1) % len(result)

    return result


class CheckoutSessionRefund(Resource):
    """Refund request against a paid checkout session."""

    def __init__(
        self,
        gateway: Gateway,
        id: str,
        line_items: List[RefundLineItem],
        refund_metadata: Optional[Dict[str, str]] = None,
    ):
        super().__init__(gateway, id)
        self.line_items = list(line_items)
        self.refund_metadata = refund_metadata

    @classmethod
    def from_local(cls, gateway: Gateway, refund: LocalRefund) -> "CheckoutSessionRefund":
        """
        Build the refund request for a local refund.

        Raises:
            IntegrityError: If the order is missing, unpaid or has nothing to refund against
        """
        order = gateway.store.get_order(refund.order_id)
        if order is None or not order.transaction_id:
            raise IntegrityError(
                "Refunds require a paid checkout session",
                context={"refund_id": refund.id, "order_id": refund.order_id},
            )

        refund_amount = gateway.to_minor_units(refund.amount)
        requested = [RefundLineItem.from_local(gateway, order, item) for item in refund.items]

        if requested:
            prices = [line_item.price for line_item in requested]
            amounts = distribute_refund(
                [line_item.amount_to_refund for line_item in requested], [], refund_amount
            )
        else:
            # Only an amount was given, spread it over every order item
            prices = [LineItem.from_local(gateway, order, item).price for item in order.items]
            amounts = distribute_refund(
                [], [gateway.to_minor_units(item.total) for item in order.items], refund_amount
            )

        if not prices:
            raise IntegrityError(
                "Refunds can only be made against line items",
                context={"refund_id": refund.id, "order_id": order.id},
            )

        return cls(
            gateway,
            id=order.transaction_id,
            line_items=[RefundLineItem(price, amount) for price, amount in zip(prices, amounts)],
            refund_metadata={"refund_id": str(refund.id)},
        )

    def serialize(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"line_items": [item.serialize() for item in self.line_items]}
        if self.refund_metadata is not None:
            data["refund_metadata"] = self.refund_metadata
        return data

    def total(self) -> int:
        return sum(item.amount_to_refund for item in self.line_items)

    def needs(self) -> ResourceAction:
        return ResourceAction.CREATE if self.line_items else ResourceAction.NONE

    def can(self, action: ResourceAction) -> bool:
        return action == ResourceAction.CREATE and bool(self.line_items)

    async def exec(self, action: ResourceAction, depth: int = 0) -> None:
        if not self.can(action):
            return
        await self.remote_request(
            f"/v1/checkout/sessions/{self._id}/refund",
            method="POST",
            data={"checkout_session": self.serialize()},
        )
        logger.info(
            "Refund requested",
            checkout_session_id=self._id,
            refund_metadata=self.refund_metadata,
            amount=self.total(),
        )


class Refund(Resource):
    """Refund status reported by the payment platform."""

    def __init__(
        self,
        gateway: Gateway,
        id: Optional[str] = None,
        status: Optional[RefundStatus] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(gateway, id)
        self.status = status
        self.metadata = metadata

    @classmethod
    def from_remote(cls, gateway: Gateway, data: Dict[str, Any]) -> "Refund":
        refund = cls(gateway)
        refund.extract(data)
        return refund

    def extract(self, data: Dict[str, Any]) -> None:
        self._id = data.get("refund_id", self._id)
        self.status = _try_enum(RefundStatus, data.get("status")) or self.status
        if isinstance(data.get("metadata"), dict):
            self.metadata = data["metadata"]

    def local(self) -> Optional[LocalRefund]:
        """Local refund referenced by ``metadata.refund_id``."""
        refund_id = (self.metadata or {}).get("refund_id")
        if refund_id is None:
            return None
        try:
            return self.gateway.store.get_refund(int(refund_id))
        except (TypeError, ValueError):
            return None

    def serialize(self) -> Dict[str, Any]:
        return {}

    def needs(self) -> ResourceAction:
        return ResourceAction.NONE

    def can(self, action: ResourceAction) -> bool:
        return False

    async def exec(self, action: ResourceAction, depth: int = 0) -> None:
        return None
