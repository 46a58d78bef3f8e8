"""
Value resources embedded in a checkout session: customer defaults, shipping,
tax and fees. They travel inline and never need a remote action of their own.
"""
from enum import Enum
from typing import Any, Dict, Optional

from app.models.local import LocalFee, LocalOrder
from app.resources.base import Gateway, Resource, ResourceAction


class Mode(str, Enum):
    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"


class Status(str, Enum):
    OPEN = "open"
    COMPLETE = "complete"


class FeeType(str, Enum):
    CUSTOM = "custom"


def _try_enum(enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError:
        return None


class ValueResource(Resource):
    """Inline resource with nothing to synchronize on its own."""

    def needs(self) -> ResourceAction:
        return ResourceAction.NONE

    def can(self, action: ResourceAction) -> bool:
        return False

    async def exec(self, action: ResourceAction, depth: int = 0) -> None:
        return None


class CustomerDefaults(ValueResource):
    """Pre-filled customer contact details for the hosted checkout."""

    def __init__(
        self,
        gateway: Gateway,
        id: Optional[str] = None,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
    ):
        super().__init__(gateway, id)
        self.email = email
        self.first_name = first_name
        self.last_name = last_name
        self.phone = phone

    @classmethod
    def from_local(cls, gateway: Gateway, order: LocalOrder) -> "CustomerDefaults":
        return cls(
            gateway,
            email=order.billing_email,
            first_name=order.billing_first_name,
            last_name=order.billing_last_name,
            phone=order.billing_phone,
        )

    @classmethod
    def from_remote(cls, gateway: Gateway, data: Dict[str, Any]) -> "CustomerDefaults":
        defaults = cls(gateway)
        defaults.extract(data)
        return defaults

    def extract(self, data: Dict[str, Any]) -> None:
        self._id = data.get("customer_id", self._id)
        self.email = data.get("email", self.email)
        self.first_name = data.get("first_name", self.first_name)
        self.last_name = data.get("last_name", self.last_name)
        self.phone = data.get("phone", self.phone)

    def serialize(self) -> Dict[str, Any]:
        fields = {
            "customer_id": self._id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone": self.phone,
        }
        return {key: value for key, value in fields.items() if value is not None}


class ShippingRate(ValueResource):
    def __init__(self, gateway: Gateway, display_name: str, amount: int, id: Optional[str] = None):
        super().__init__(gateway, id)
        self.display_name = display_name
        self.amount = amount

    def serialize(self) -> Dict[str, Any]:
        return {"display_name": self.display_name, "amount": self.amount}


class ShippingOptions(ValueResource):
    """Shipping charged on the session, by rate id or as inline rate data."""

    def __init__(self, gateway: Gateway, shipping_rate: ShippingRate):
        super().__init__(gateway)
        self.shipping_rate = shipping_rate

    def id(self) -> Optional[str]:
        return self.shipping_rate.id()

    def amount(self) -> int:
        return self.shipping_rate.amount

    @classmethod
    def from_local(cls, gateway: Gateway, order: LocalOrder) -> "ShippingOptions":
        return cls(
            gateway,
            ShippingRate(
                gateway,
                display_name=order.shipping_method or "",
                amount=gateway.to_minor_units(order.shipping_total),
            ),
        )

    @classmethod
    def from_remote(cls, gateway: Gateway, data: Dict[str, Any]) -> "ShippingOptions":
        return cls(
            gateway,
            ShippingRate(
                gateway,
                display_name="",
                amount=data.get("shipping_amount") or 0,
                id=data.get("shipping_rate_id"),
            ),
        )

    def serialize(self) -> Dict[str, Any]:
        if self.id() is not None:
            return {"shipping_rate_id": self.id()}
        return {"shipping_rate_data": self.shipping_rate.serialize()}


class TaxRate(ValueResource):
    def __init__(self, gateway: Gateway, amount: int):
        super().__init__(gateway)
        self.amount = amount

    def id(self) -> Optional[str]:
        return None

    @classmethod
    def from_local(cls, gateway: Gateway, order: LocalOrder) -> "TaxRate":
        return cls(gateway, amount=gateway.to_minor_units(order.total_tax))

    @classmethod
    def from_remote(cls, gateway: Gateway, data: Dict[str, Any]) -> "TaxRate":
        return cls(gateway, amount=data.get("amount") or 0)

    def serialize(self) -> Dict[str, Any]:
        return {"amount": self.amount}


class Fee(ValueResource):
    def __init__(
        self,
        gateway: Gateway,
        amount: int,
        type: FeeType = FeeType.CUSTOM,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ):
        super().__init__(gateway)
        self.amount = amount
        self.type = type
        self.name = name
        self.description = description

    def id(self) -> Optional[str]:
        return None

    @classmethod
    def from_local(cls, gateway: Gateway, fee: LocalFee) -> "Fee":
        return cls(gateway, amount=gateway.to_minor_units(fee.amount), name=fee.name)

    @classmethod
    def from_remote(cls, gateway: Gateway, data: Dict[str, Any]) -> "Fee":
        return cls(
            gateway,
            amount=data.get("amount") or 0,
            type=_try_enum(FeeType, data.get("fee_type")) or FeeType.CUSTOM,
            name=data.get("name"),
            description=data.get("description"),
        )

    def serialize(self) -> Dict[str, Any]:
        return {
            "amount": self.amount,
            "fee_type": self.type.value,
            "name": self.name,
            "description": self.description,
        }
