"""
Supabase-backed local store.
Persists products, orders, refunds and gateway options in Supabase tables,
with nested data (meta, items, fees, coupons) kept in JSON columns.
"""

from typing import Any, Dict, Iterable, List, Optional

import structlog
from supabase import Client, create_client

from app.config import settings
from app.models.local import GatewayOptions, LocalOrder, LocalProduct, LocalRefund
from app.services.local_store import LocalStore

logger = structlog.get_logger()

GATEWAY_OPTIONS_ROW_ID = 1


class SupabaseLocalStore(LocalStore):
    """Local store backed by Supabase tables."""

    def __init__(self, client: Optional[Client] = None):
        """
        Initialize Supabase client.

        Args:
            client: Optional pre-built client, defaults to one built from settings
        """
        self.client: Client = client or create_client(
            settings.supabase_url, settings.supabase_service_key
        )

    def _select_one(self, table: str, column: str, value: Any) -> Optional[Dict[str, Any]]:
        """
        Fetch a single row by column value.

        Args:
            table: Table name
            column: Column to match
            value: Value to match

        Returns:
            Row dict if found, None otherwise
        """
        try:
            # Don't use .single() - it throws exception on 0 rows
            result = (
                self.client.table(table)
                .select("*")
                .eq(column, value)
                .limit(1)
                .execute()
            )
            if result.data and len(result.data) > 0:
                return result.data[0]
            return None
        except Exception as e:
            logger.error(
                "Failed to fetch row",
                table=table,
                column=column,
                value=value,
                error=str(e),
            )
            raise

    def _upsert(self, table: str, row: Dict[str, Any]) -> None:
        try:
            self.client.table(table).upsert(row).execute()
        except Exception as e:
            logger.error("Failed to upsert row", table=table, row_id=row.get("id"), error=str(e))
            raise

    # Products

    def get_product(self, product_id: int) -> Optional[LocalProduct]:
        row = self._select_one("products", "id", product_id)
        return LocalProduct(**row) if row else None

    def save_product(self, product: LocalProduct) -> LocalProduct:
        self._upsert("products", product.model_dump(mode="json"))
        return product

    def list_products(self, types: Optional[Iterable[str]] = None) -> List[LocalProduct]:
        try:
            query = self.client.table("products").select("*")
            if types:
                query = query.in_("type", list(types))
            result = query.execute()
            return [LocalProduct(**row) for row in result.data] if result.data else []
        except Exception as e:
            logger.error("Failed to list products", types=types, error=str(e))
            raise

    # Orders

    def get_order(self, order_id: int) -> Optional[LocalOrder]:
        row = self._select_one("orders", "id", order_id)
        return LocalOrder(**row) if row else None

    def save_order(self, order: LocalOrder) -> LocalOrder:
        self._upsert("orders", order.model_dump(mode="json"))
        return order

    def find_order_by_transaction_id(self, transaction_id: str) -> Optional[LocalOrder]:
        row = self._select_one("orders", "transaction_id", transaction_id)
        return LocalOrder(**row) if row else None

    # Refunds

    def get_refund(self, refund_id: int) -> Optional[LocalRefund]:
        row = self._select_one("refunds", "id", refund_id)
        return LocalRefund(**row) if row else None

    def save_refund(self, refund: LocalRefund) -> LocalRefund:
        self._upsert("refunds", refund.model_dump(mode="json"))
        order = self.get_order(refund.order_id)
        if order and refund.id not in order.refund_ids:
            order.refund_ids.append(refund.id)
            self.save_order(order)
        return refund

    def delete_refund(self, refund_id: int) -> bool:
        refund = self.get_refund(refund_id)
        if refund is None:
            return False
        try:
            self.client.table("refunds").delete().eq("id", refund_id).execute()
        except Exception as e:
            logger.error("Failed to delete refund", refund_id=refund_id, error=str(e))
            raise
        order = self.get_order(refund.order_id)
        if order and refund_id in order.refund_ids:
            order.refund_ids.remove(refund_id)
            self.save_order(order)
        logger.info("Deleted local refund", refund_id=refund_id, order_id=refund.order_id)
        return True

    # Gateway options

    def get_gateway_options(self) -> GatewayOptions:
        row = self._select_one("gateway_options", "id", GATEWAY_OPTIONS_ROW_ID)
        if not row:
            return GatewayOptions(enabled=settings.gateway_enabled, api_key=settings.payment_api_key)
        row = {key: value for key, value in row.items() if key != "id"}
        return GatewayOptions(**row)

    def save_gateway_options(self, options: GatewayOptions) -> GatewayOptions:
        row = options.model_dump(mode="json")
        row["id"] = GATEWAY_OPTIONS_ROW_ID
        self._upsert("gateway_options", row)
        return options
