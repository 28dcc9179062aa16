"""
Module: sales_kernel.selectors.stock_selector
Responsibility: Read-only queries over inventory items and their transaction
    trail: stock levels, history, low-stock alerts and trail reconciliation.
Architecture position: Kernel > Selectors.

Audit relevance:
    reconcile() replays the append-only InventoryTransaction rows of an item
    and compares the result to the stored quantities.  A mismatch means the
    item row was written outside StockLedger.
"""

from uuid import UUID

from sqlalchemy import select

from sales_kernel.domain.dtos import (
    InventoryTransactionRecord,
    ItemStatus,
    LedgerReconciliation,
    LowStockAlert,
    StockLevel,
)
from sales_kernel.exceptions import ItemNotFoundError
from sales_kernel.models.inventory import InventoryItem, InventoryTransaction
from sales_kernel.selectors.base import BaseSelector


class StockSelector(BaseSelector[InventoryItem]):
    """Read side of the stock ledger."""

    def _get_item(self, item_id: UUID) -> InventoryItem:
        item = self.session.get(InventoryItem, item_id)
        if item is None:
            raise ItemNotFoundError(str(item_id))
        return item

    def stock_level(self, item_id: UUID) -> StockLevel:
        return StockLevel.from_model(self._get_item(item_id))

    def _trail(self, item_id: UUID) -> list[InventoryTransaction]:
        return list(
            self.session.execute(
                select(InventoryTransaction)
                .where(InventoryTransaction.item_id == item_id)
                .order_by(InventoryTransaction.occurred_at, InventoryTransaction.created_at)
            ).scalars()
        )

    def transaction_history(self, item_id: UUID) -> list[InventoryTransactionRecord]:
        """All transactions of an item, oldest first."""
        self._get_item(item_id)
        return [InventoryTransactionRecord.from_model(row) for row in self._trail(item_id)]

    def low_stock_alerts(self) -> list[LowStockAlert]:
        """ACTIVE items with a reorder threshold whose stock fell below it."""
        items = self.session.execute(
            select(InventoryItem)
            .where(
                InventoryItem.status == ItemStatus.ACTIVE.value,
                InventoryItem.minimum_stock > 0,
                InventoryItem.current_stock < InventoryItem.minimum_stock,
            )
            .order_by(InventoryItem.sku)
        ).scalars()
        return [
            LowStockAlert(
                item_id=item.id,
                sku=item.sku,
                name=item.name,
                current_stock=item.current_stock,
                minimum_stock=item.minimum_stock,
            )
            for item in items
        ]

    def reconcile(self, item_id: UUID) -> LedgerReconciliation:
        """Replay the transaction trail and compare it to the item row."""
        item = self._get_item(item_id)
        trail = self._trail(item_id)
        return LedgerReconciliation(
            item_id=item.id,
            expected_current=sum(row.stock_delta for row in trail),
            actual_current=item.current_stock,
            expected_reserved=sum(row.reserved_delta for row in trail),
            actual_reserved=item.reserved_stock,
            transaction_count=len(trail),
        )
