"""
Checkout session resource.

The aggregate root of a purchase attempt. Its line items and discounts are
resolved first; an open session is never mutated, any change to its total or
content re-creates it.
"""
from collections import defaultdict
from typing import Any, Dict, List, Optional

import structlog

from app.exceptions import IntegrityError
from app.models.local import LocalOrder
from app.resources.base import Gateway, Resource, ResourceAction, content_hash
from app.resources.checkout_components import (
    CustomerDefaults,
    Fee,
    Mode,
    ShippingOptions,
    Status,
    TaxRate,
    _try_enum,
)
from app.resources.coupon import Coupon, Discount
from app.resources.line_item import LineItem

logger = structlog.get_logger()

KEY_STATUS = "checkout_session_status"
KEY_REDIRECT_URL = "checkout_session_redirect_url"
KEY_HASH = "checkout_session_hash"
KEY_AMOUNT_TOTAL = "checkout_session_amount_total"
KEY_TEST_MODE = "checkout_session_test_mode"


class CheckoutSession(Resource):
    """Remote hosted checkout for one local order."""

    def __init__(
        self,
        gateway: Gateway,
        success_url: str,
        defaults: Optional[CustomerDefaults] = None,
        redirect_url: Optional[str] = None,
        line_items: Optional[List[LineItem]] = None,
        id: Optional[str] = None,
        client_reference_id: Optional[str] = None,
        amount_total: Optional[int] = None,
        mode: Mode = Mode.PAYMENT,
        status: Optional[Status] = None,
        test_mode: Optional[bool] = None,
        shipping_options: Optional[ShippingOptions] = None,
        tax_rate: Optional[TaxRate] = None,
        cancel_url: Optional[str] = None,
        discounts: Optional[List[Discount]] = None,
        fees: Optional[List[Fee]] = None,
        order_id: Optional[int] = None,
    ):
        super().__init__(gateway, id)
        if line_items and not all(isinstance(item, LineItem) for item in line_items):
            raise TypeError("CheckoutSession.line_items may only contain LineItem instances")
        if discounts and not all(isinstance(item, Discount) for item in discounts):
            raise TypeError("CheckoutSession.discounts may only contain Discount instances")
        self.success_url = success_url
        self.defaults = defaults
        self.redirect_url = redirect_url
        self.line_items: List[LineItem] = list(line_items or [])
        self.client_reference_id = client_reference_id
        self.amount_total = amount_total
        self.mode = mode
        self.status = status
        self.test_mode = test_mode
        self.shipping_options = shipping_options
        self.tax_rate = tax_rate
        self.cancel_url = cancel_url
        self.discounts: List[Discount] = list(discounts or [])
        self.fees: List[Fee] = list(fees or [])
        self.order_id = order_id

    @classmethod
    def from_local(cls, gateway: Gateway, order: LocalOrder) -> "CheckoutSession":
        """
        Build the intended checkout session for a local order.

        Raises:
            IntegrityError: If the session's components do not add up to the order total
        """
        line_items = [LineItem.from_local(gateway, order, item) for item in order.items]
        by_item = {line_item.item_id: line_item for line_item in line_items}

        # Group coupon discounts by code and per-item amount so evenly spread
        # discounts share one remote coupon
        grouped: Dict[str, Dict[int, List[int]]] = defaultdict(lambda: defaultdict(list))
        for coupon_line in order.coupons:
            for item_id, amount in coupon_line.discounts.items():
                grouped[coupon_line.code][gateway.to_minor_units(amount)].append(item_id)

        discounts: List[Discount] = []
        for code, group in grouped.items():
            for per_item_amount, item_ids in group.items():
                amount_off = per_item_amount * len(item_ids)
                if not amount_off:
                    continue
                prices = [by_item[item_id].price for item_id in item_ids if item_id in by_item]
                discounts.append(
                    Discount(gateway, Coupon(gateway, name=code, amount_off=amount_off, applies_to=prices))
                )

        # Sale prices are charged as catalog price minus a per-unit coupon
        for item in order.items:
            product_id = item.catalog_product_id()
            product = gateway.store.get_product(product_id) if product_id is not None else None
            if product is None or not product.is_on_sale() or product.price != product.sale_price:
                continue
            line_item = by_item[item.id]
            if line_item.price.adhoc:
                continue
            coupon = Coupon.from_sale(gateway, product)
            if not coupon.amount_off:
                continue
            for _ in range(item.quantity):
                discounts.append(Discount(gateway, coupon))

        tax_rate = TaxRate.from_local(gateway, order)
        test_mode_meta = order.get_meta(gateway.order_meta_key(KEY_TEST_MODE))

        session = cls(
            gateway,
            success_url=gateway.success_url(order.id),
            defaults=CustomerDefaults.from_local(gateway, order),
            redirect_url=order.get_meta(gateway.order_meta_key(KEY_REDIRECT_URL)),
            line_items=line_items,
            id=order.transaction_id or None,
            client_reference_id=str(order.id),
            amount_total=gateway.to_minor_units(order.total),
            mode=Mode.PAYMENT,
            status=_try_enum(Status, order.get_meta(gateway.order_meta_key(KEY_STATUS))),
            test_mode=test_mode_meta == "yes" if test_mode_meta else gateway.test_mode,
            shipping_options=ShippingOptions.from_local(gateway, order) if order.shipping_method else None,
            tax_rate=tax_rate if tax_rate.amount > 0 else None,
            cancel_url=gateway.checkout_url,
            discounts=discounts,
            fees=[Fee.from_local(gateway, fee) for fee in order.fees],
            order_id=order.id,
        )

        computed = session.computed_total()
        if computed != session.amount_total:
            logger.error(
                "Checkout session total does not match order total",
                order_id=order.id,
                computed_total=computed,
                order_total=session.amount_total,
            )
            raise IntegrityError(
                "Checkout session total does not match order total",
                context={
                    "order_id": order.id,
                    "computed_total": computed,
                    "order_total": session.amount_total,
                },
            )

        return session

    @classmethod
    def from_remote(cls, gateway: Gateway, data: Dict[str, Any]) -> "CheckoutSession":
        """
        Build a session from an API payload.

        Raises:
            IntegrityError: If the payload has no success URL
        """
        if not data.get("success_url"):
            raise IntegrityError(
                "Success URL missing from checkout session.",
                context={"checkout_session_id": data.get("checkout_session_id")},
            )
        session = cls(gateway, success_url=data["success_url"])
        session.extract(data)
        if isinstance(data.get("line_items"), list):
            session.line_items = [
                LineItem.from_remote(gateway, line_item)
                for line_item in data["line_items"]
                if isinstance(line_item, dict)
            ]
        return session

    def extract(self, data: Dict[str, Any]) -> None:
        """Fold an API checkout session payload into this resource."""
        self._id = data.get("checkout_session_id", self._id)
        if isinstance(data.get("defaults"), dict):
            self.defaults = CustomerDefaults.from_remote(self.gateway, data["defaults"])
        self.success_url = data.get("success_url", self.success_url)
        self.redirect_url = data.get("redirect_url", self.redirect_url)
        self.client_reference_id = data.get("client_reference_id", self.client_reference_id)
        self.amount_total = data.get("amount_total", self.amount_total)
        self.mode = _try_enum(Mode, data.get("mode")) or self.mode
        self.status = _try_enum(Status, data.get("status")) or self.status
        self.test_mode = data.get("test_mode", self.test_mode)
        if isinstance(data.get("shipping_options"), dict):
            self.shipping_options = ShippingOptions.from_remote(self.gateway, data["shipping_options"])
        if isinstance(data.get("tax_rate"), dict):
            self.tax_rate = TaxRate.from_remote(self.gateway, data["tax_rate"])
        self.cancel_url = data.get("cancel_url", self.cancel_url)

    def serialize(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "defaults": self.defaults.serialize() if self.defaults else None,
            "success_url": self.success_url,
            "line_items": [line_item.serialize() for line_item in self.line_items],
            "client_reference_id": self.client_reference_id,
            "mode": self.mode.value,
            "cancel_url": self.cancel_url,
        }
        if self.shipping_options is not None:
            data["shipping_options"] = self.shipping_options.serialize()
        if self.tax_rate is not None:
            data["tax_rate"] = self.tax_rate.serialize()
        if self.discounts:
            data["discounts"] = [discount.serialize() for discount in self.discounts]
        if self.fees:
            data["fees"] = [fee.serialize() for fee in self.fees]
        return data

    def computed_total(self) -> int:
        """Total implied by the session's own components, in minor units."""
        total = sum(line_item.subtotal() for line_item in self.line_items)
        if self.shipping_options is not None:
            total += self.shipping_options.amount()
        if self.tax_rate is not None:
            total += self.tax_rate.amount
        total += sum(fee.amount for fee in self.fees)
        total -= sum(discount.amount_off() for discount in self.discounts)
        return total

    def dependencies(self):
        return [*self.line_items, *self.discounts]

    def local(self) -> Optional[LocalOrder]:
        if self.order_id is not None:
            return self.gateway.store.get_order(self.order_id)
        if self._id is not None:
            return self.gateway.store.find_order_by_transaction_id(self._id)
        return None

    def apply_to(self, order: LocalOrder, hash: Optional[str] = None) -> None:
        """Write the session bookkeeping onto a local order."""
        order.transaction_id = self._id
        order.update_meta(self.gateway.order_meta_key(KEY_HASH), hash or self.hash())
        order.update_meta(self.gateway.order_meta_key(KEY_REDIRECT_URL), self.redirect_url)
        order.update_meta(
            self.gateway.order_meta_key(KEY_AMOUNT_TOTAL),
            str(self.amount_total) if self.amount_total is not None else None,
        )
        order.update_meta(
            self.gateway.order_meta_key(KEY_STATUS), self.status.value if self.status else None
        )
        order.update_meta(
            self.gateway.order_meta_key(KEY_TEST_MODE),
            None if self.test_mode is None else ("yes" if self.test_mode else "no"),
        )

    def apply_line_items_to(self, order: LocalOrder) -> None:
        """Pin each line item's price on its order item."""
        for position, line_item in enumerate(self.line_items):
            if line_item.item_id is not None:
                item = order.get_item(line_item.item_id)
            elif len(self.line_items) == len(order.items):
                item = order.items[position]
            else:
                item = None
            if item is not None and line_item.price.id() is not None:
                line_item.apply_to(item)

    def needs(self) -> ResourceAction:
        # Dependencies take priority over the session's own state
        if self.dependency_pending():
            return ResourceAction.DEPENDENCY

        if self.status == Status.COMPLETE:
            return ResourceAction.NONE

        if self._id is None:
            return ResourceAction.CREATE

        order = self.local()
        if order is None:
            return ResourceAction.NONE

        stored_total = order.get_meta(self.gateway.order_meta_key(KEY_AMOUNT_TOTAL))
        if stored_total is None or int(stored_total) != self.amount_total:
            return ResourceAction.CREATE

        if order.get_meta(self.gateway.order_meta_key(KEY_HASH)) != self.hash():
            return ResourceAction.CREATE

        return ResourceAction.NONE

    def can(self, action: ResourceAction) -> bool:
        if action in (ResourceAction.CREATE, ResourceAction.DEPENDENCY):
            return True
        if action == ResourceAction.REFRESH:
            return self._id is not None
        return False

    async def exec(self, action: ResourceAction, depth: int = 0) -> None:
        if not self.can(action):
            return

        # Save the dependencies before (re-)creating the session
        if action == ResourceAction.DEPENDENCY:
            await self.resolve_dependencies(depth)
            await self.exec(self.needs(), depth + 1)
            return

        intended_hash = content_hash(self.serialize())

        if action == ResourceAction.CREATE:
            data = await self.remote_resource(
                "checkout_session",
                "/v1/checkout/sessions",
                method="POST",
                data={"checkout_session": self.serialize()},
            )
        else:
            data = await self.remote_resource(
                "checkout_session", f"/v1/checkout/sessions/{self._id}"
            )

        self.extract(data)
        logger.info(
            "Checkout session synced",
            action=action.value,
            checkout_session_id=self._id,
            order_id=self.order_id,
            status=self.status.value if self.status else None,
        )

        order = self.local()
        if order is not None:
            self.apply_to(order, intended_hash)
            self.apply_line_items_to(order)
            self.gateway.store.save_order(order)
