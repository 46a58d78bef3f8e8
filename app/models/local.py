"""
Pydantic models for the hosting store's products, orders and refunds.
These models describe the field contract the sync engine reads and writes;
remote ids and hashes are cached in each entity's ``meta`` key/value pairs.
"""
import re
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

ELIGIBLE_PRODUCT_TYPES = ("simple", "variable")
PRICED_PRODUCT_TYPES = ("simple", "variation")

_GTIN_PATTERN = re.compile(r"^(\d{8}|\d{12,14})$")


class MetaMixin(BaseModel):
    """Key/value metadata storage shared by products, orders, items and refunds."""
    meta: Dict[str, Any] = Field(default_factory=dict)

    def get_meta(self, key: str, default: Any = None) -> Any:
        value = self.meta.get(key)
        return default if value is None or value == "" else value

    def meta_exists(self, key: str) -> bool:
        return key in self.meta

    def update_meta(self, key: str, value: Any) -> None:
        if value is None:
            self.delete_meta(key)
        else:
            self.meta[key] = value

    def delete_meta(self, key: str) -> None:
        self.meta.pop(key, None)


class LocalProduct(MetaMixin):
    """Catalog product or variation."""
    id: int
    type: str = "simple"  # simple, variable, variation, grouped, external
    status: str = "publish"  # publish, draft, private, trash
    name: str
    short_description: Optional[str] = None
    permalink: Optional[str] = None
    global_unique_id: Optional[str] = None
    regular_price: Optional[str] = None
    sale_price: Optional[str] = None
    price: Optional[str] = None
    parent_id: Optional[int] = None
    children: List[int] = Field(default_factory=list)
    attributes: Dict[str, str] = Field(default_factory=dict)

    def managed_gtin(self) -> Optional[str]:
        """GTIN managed by the store, if the product carries a valid one."""
        if not self.global_unique_id:
            return None
        digits = re.sub(r"\D", "", self.global_unique_id)
        return digits if _GTIN_PATTERN.match(digits) else None

    def is_on_sale(self) -> bool:
        return bool(self.sale_price) and self.sale_price != self.regular_price

    def formatted_attributes(self) -> str:
        return ", ".join(f"{name}: {value}" for name, value in self.attributes.items())


class LocalOrderItem(MetaMixin):
    """Order line item (or refund line item when ``refunded_item_id`` is set)."""
    id: int
    product_id: Optional[int] = None
    variation_id: Optional[int] = None
    name: str = ""
    quantity: int = 1
    subtotal: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    refunded_item_id: Optional[int] = None

    def catalog_product_id(self) -> Optional[int]:
        return self.variation_id or self.product_id


class LocalFee(BaseModel):
    """Order fee line."""
    id: int
    name: str
    amount: Decimal = Decimal("0")


class LocalCouponLine(BaseModel):
    """Coupon applied to an order with its per-item discount amounts."""
    code: str
    discounts: Dict[int, Decimal] = Field(default_factory=dict)  # item id -> discount on that line


class LocalOrder(MetaMixin):
    """Store order."""
    id: int
    status: str = "pending"  # pending, processing, on-hold, completed, cancelled, refunded, failed
    transaction_id: Optional[str] = None
    currency: str = "USD"
    total: Decimal = Decimal("0")
    total_tax: Decimal = Decimal("0")
    shipping_total: Decimal = Decimal("0")
    shipping_method: Optional[str] = None
    billing_email: Optional[str] = None
    billing_first_name: Optional[str] = None
    billing_last_name: Optional[str] = None
    billing_phone: Optional[str] = None
    items: List[LocalOrderItem] = Field(default_factory=list)
    fees: List[LocalFee] = Field(default_factory=list)
    coupons: List[LocalCouponLine] = Field(default_factory=list)
    refund_ids: List[int] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)

    def is_pending(self) -> bool:
        return self.status == "pending"

    def needs_payment(self) -> bool:
        return self.status in ("pending", "failed")

    def payment_complete(self, transaction_id: Optional[str] = None) -> bool:
        """
        Mark the order as paid.

        Returns:
            True if the order moved to processing, False if it was already paid
        """
        if not self.needs_payment():
            return False
        if transaction_id:
            self.transaction_id = transaction_id
        self.status = "processing"
        return True

    def add_note(self, note: str) -> None:
        self.notes.append(note)

    def get_item(self, item_id: int) -> Optional[LocalOrderItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None


class LocalRefund(MetaMixin):
    """Refund recorded against an order."""
    id: int
    order_id: int
    amount: Decimal = Decimal("0")
    reason: Optional[str] = None
    items: List[LocalOrderItem] = Field(default_factory=list)


class GatewayOptions(BaseModel):
    """Persisted gateway settings and webhook bookkeeping."""
    enabled: bool = False
    api_key: str = ""
    options: Dict[str, Optional[str]] = Field(default_factory=dict)
