"""
Local store contract consumed by the sync engine.
The hosting store is the system of record; resources read entities through this
interface and write remote bookkeeping back through it.
"""
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

import structlog

from app.config import settings
from app.models.local import GatewayOptions, LocalOrder, LocalProduct, LocalRefund

logger = structlog.get_logger()


class LocalStore(ABC):
    """Read/write access to the hosting store's products, orders, refunds and gateway options."""

    @abstractmethod
    def get_product(self, product_id: int) -> Optional[LocalProduct]:
        pass

    @abstractmethod
    def save_product(self, product: LocalProduct) -> LocalProduct:
        pass

    @abstractmethod
    def list_products(self, types: Optional[Iterable[str]] = None) -> List[LocalProduct]:
        pass

    @abstractmethod
    def get_order(self, order_id: int) -> Optional[LocalOrder]:
        pass

    @abstractmethod
    def save_order(self, order: LocalOrder) -> LocalOrder:
        pass

    @abstractmethod
    def find_order_by_transaction_id(self, transaction_id: str) -> Optional[LocalOrder]:
        pass

    @abstractmethod
    def get_refund(self, refund_id: int) -> Optional[LocalRefund]:
        pass

    @abstractmethod
    def save_refund(self, refund: LocalRefund) -> LocalRefund:
        pass

    @abstractmethod
    def delete_refund(self, refund_id: int) -> bool:
        pass

    @abstractmethod
    def get_gateway_options(self) -> GatewayOptions:
        pass

    @abstractmethod
    def save_gateway_options(self, options: GatewayOptions) -> GatewayOptions:
        pass

    def get_refunds_for_order(self, order_id: int) -> List[LocalRefund]:
        """Refunds of an order, newest first."""
        order = self.get_order(order_id)
        if not order:
            return []
        refunds = [self.get_refund(refund_id) for refund_id in reversed(order.refund_ids)]
        return [refund for refund in refunds if refund is not None]

    def update_gateway_options(self, values: Dict[str, Optional[str]]) -> GatewayOptions:
        options = self.get_gateway_options()
        options.options.update(values)
        return self.save_gateway_options(options)

    def remove_gateway_options(self, keys: Iterable[str]) -> GatewayOptions:
        options = self.get_gateway_options()
        for key in keys:
            options.options.pop(key, None)
        return self.save_gateway_options(options)


class InMemoryLocalStore(LocalStore):
    """Dict-backed store. Copies on read and write so callers never share rows."""

    def __init__(self):
        self.products: Dict[int, LocalProduct] = {}
        self.orders: Dict[int, LocalOrder] = {}
        self.refunds: Dict[int, LocalRefund] = {}
        self.gateway_options = GatewayOptions(
            enabled=settings.gateway_enabled, api_key=settings.payment_api_key
        )

    def get_product(self, product_id: int) -> Optional[LocalProduct]:
        product = self.products.get(product_id)
        return product.model_copy(deep=True) if product else None

    def save_product(self, product: LocalProduct) -> LocalProduct:
        self.products[product.id] = product.model_copy(deep=True)
        return product

    def list_products(self, types: Optional[Iterable[str]] = None) -> List[LocalProduct]:
        wanted = set(types) if types else None
        return [
            product.model_copy(deep=True)
            for product in self.products.values()
            if wanted is None or product.type in wanted
        ]

    def get_order(self, order_id: int) -> Optional[LocalOrder]:
        order = self.orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    def save_order(self, order: LocalOrder) -> LocalOrder:
        self.orders[order.id] = order.model_copy(deep=True)
        return order

    def find_order_by_transaction_id(self, transaction_id: str) -> Optional[LocalOrder]:
        for order in self.orders.values():
            if order.transaction_id == transaction_id:
                return order.model_copy(deep=True)
        return None

    def get_refund(self, refund_id: int) -> Optional[LocalRefund]:
        refund = self.refunds.get(refund_id)
        return refund.model_copy(deep=True) if refund else None

    def save_refund(self, refund: LocalRefund) -> LocalRefund:
        self.refunds[refund.id] = refund.model_copy(deep=True)
        order = self.orders.get(refund.order_id)
        if order and refund.id not in order.refund_ids:
            order.refund_ids.append(refund.id)
        return refund

    def delete_refund(self, refund_id: int) -> bool:
        refund = self.refunds.pop(refund_id, None)
        if refund is None:
            return False
        order = self.orders.get(refund.order_id)
        if order and refund_id in order.refund_ids:
            order.refund_ids.remove(refund_id)
        logger.info("Deleted local refund", refund_id=refund_id, order_id=refund.order_id)
        return True

    def get_gateway_options(self) -> GatewayOptions:
        return self.gateway_options.model_copy(deep=True)

    def save_gateway_options(self, options: GatewayOptions) -> GatewayOptions:
        self.gateway_options = options.model_copy(deep=True)
        return options


_store: Optional[LocalStore] = None


def get_local_store() -> LocalStore:
    """Return the process-wide local store for the configured backend."""
    global _store
    if _store is None:
        if settings.local_store_backend == "supabase":
            from app.services.supabase_service import SupabaseLocalStore

            _store = SupabaseLocalStore()
        else:
            _store = InMemoryLocalStore()
        logger.info("Local store initialized", backend=settings.local_store_backend)
    return _store


def set_local_store(store: Optional[LocalStore]) -> None:
    """Replace the process-wide local store (used by tests and embedding hosts)."""
    global _store
    _store = store
