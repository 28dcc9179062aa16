"""
StockLedger -- sole writer of inventory quantities.

Responsibility:
    Every change to an item's current_stock or reserved_stock goes through
    this service, and every such change appends exactly one
    InventoryTransaction row describing it.

Architecture position:
    Kernel > Services.  Flush-only: it runs inside the transaction of the
    engine that called it (BundleReservationEngine,
    PurchaseTransactionProcessor) and never commits.

Invariants enforced:
    - 0 <= reserved_stock <= current_stock after every operation, checked
      before flush.  A violation raises LedgerCorruptionError and is logged
      at CRITICAL; it is never repaired here.
    - Every mutation locks the item row first (SELECT ... FOR UPDATE) and
      re-reads it, so the check and the write see the same quantities.
    - Quantities are positive integers.

Failure modes:
    - InvalidQuantityError: quantity not a positive int (or zero adjustment).
    - ItemNotFoundError: unknown item.
    - InsufficientStockError: not enough stock for the operation.
    - LedgerCorruptionError: stored row already inconsistent.
"""

from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import select

from sales_kernel.domain.dtos import ItemStatus, StockLevel, TransactionType, require_positive_quantity
from sales_kernel.domain.values import Money
from sales_kernel.exceptions import (
    InsufficientStockError,
    InvalidQuantityError,
    ItemNotFoundError,
    LedgerCorruptionError,
)
from sales_kernel.logging_config import get_logger
from sales_kernel.models.inventory import InventoryItem, InventoryTransaction
from sales_kernel.services.base import BaseService

logger = get_logger("services.stock_ledger")


class StockLedger(BaseService[InventoryItem]):
    """
    Append-only stock ledger over InventoryItem rows.

    Contract:
        reserve/release move reserved_stock only.  consume/receive/issue/
        adjust move current_stock; consume also draws down reserved_stock by
        up to the consumed quantity.

    Non-goals:
        - Does NOT price anything; Money appears only in register_item.
        - Does NOT retry on lock timeouts (see UnitOfWork).
    """

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def lock_item(self, item_id: UUID) -> InventoryItem:
        """Lock and re-read one item row."""
        item = self.session.execute(
            select(InventoryItem)
            .where(InventoryItem.id == item_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if item is None:
            raise ItemNotFoundError(str(item_id))
        return item

    def lock_items(self, item_ids: Iterable[UUID]) -> dict[UUID, InventoryItem]:
        """Lock several items in ascending id order."""
        return {item_id: self.lock_item(item_id) for item_id in sorted(set(item_ids), key=str)}

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _append(
        self,
        item: InventoryItem,
        quantity: int,
        reserved_delta: int,
        transaction_type: TransactionType,
        reference: str | None,
        notes: str | None = None,
    ) -> InventoryTransaction:
        self._verify(item)
        row = InventoryTransaction(
            item_id=item.id,
            quantity=quantity,
            reserved_delta=reserved_delta,
            transaction_type=transaction_type.value,
            reference=reference,
            notes=notes,
            occurred_at=self.clock.now(),
        )
        self.session.add(row)
        self.session.flush()
        return row

    def _verify(self, item: InventoryItem) -> None:
        if 0 <= item.reserved_stock <= item.current_stock:
            return
        logger.critical(
            "ledger_corruption_detected",
            extra={
                "item_id": str(item.id),
                "current_stock": item.current_stock,
                "reserved_stock": item.reserved_stock,
            },
        )
        raise LedgerCorruptionError(str(item.id), item.current_stock, item.reserved_stock)

    def _log(self, event_name: str, item: InventoryItem, **fields) -> None:
        logger.info(
            event_name,
            extra={
                "item_id": str(item.id),
                "sku": item.sku,
                "current_stock": item.current_stock,
                "reserved_stock": item.reserved_stock,
                **fields,
            },
        )

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def register_item(
        self,
        sku: str,
        item_name: str,
        base_price: Money,
        initial_stock: int = 0,
        minimum_stock: int = 0,
        description: str | None = None,
    ) -> StockLevel:
        """
        Create an inventory item, recording opening stock as an INITIAL row.

        Raises:
            InvalidQuantityError: initial_stock or minimum_stock negative or
                not an int.
        """
        for value in (initial_stock, minimum_stock):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise InvalidQuantityError(value, "must be a non-negative integer")

        item = InventoryItem(
            sku=sku,
            name=item_name,
            description=description,
            current_stock=initial_stock,
            reserved_stock=0,
            minimum_stock=minimum_stock,
            base_price_minor=base_price.minor_units,
            currency=base_price.currency.code,
            status=ItemStatus.ACTIVE.value,
        )
        self.session.add(item)
        self.session.flush()

        if initial_stock > 0:
            self._append(item, initial_stock, 0, TransactionType.INITIAL, reference=None, notes="opening stock")

        self._log("item_registered", item, initial_stock=initial_stock)
        return StockLevel.from_model(item)

    # ------------------------------------------------------------------
    # Reservation
    # ------------------------------------------------------------------

    def reserve(self, item_id: UUID, quantity: int, reference: str | None = None) -> StockLevel:
        """
        Set aside ``quantity`` units of available stock.

        Raises:
            InsufficientStockError: current_stock - reserved_stock < quantity.
        """
        require_positive_quantity(quantity)
        item = self.lock_item(item_id)

        if item.available_stock < quantity:
            raise InsufficientStockError(str(item.id), item.available_stock, quantity)

        item.reserved_stock += quantity
        self._append(item, quantity, quantity, TransactionType.RESERVATION, reference)
        self._log("stock_reserved", item, quantity=quantity, reference=reference)
        return StockLevel.from_model(item)

    def release(self, item_id: UUID, quantity: int, reference: str | None = None) -> StockLevel:
        """Return up to ``quantity`` reserved units to available stock."""
        require_positive_quantity(quantity)
        item = self.lock_item(item_id)

        released = min(quantity, max(item.reserved_stock, 0))
        item.reserved_stock -= released
        self._append(item, -released, -released, TransactionType.RESERVATION, reference)
        self._log("stock_released", item, quantity=released, requested=quantity, reference=reference)
        return StockLevel.from_model(item)

    # ------------------------------------------------------------------
    # Movements
    # ------------------------------------------------------------------

    def consume(
        self,
        item_id: UUID,
        quantity: int,
        reference: str | None,
        transaction_type: TransactionType = TransactionType.SALE,
    ) -> StockLevel:
        """
        Remove ``quantity`` units from stock, drawing down reservations first.

        Raises:
            InsufficientStockError: current_stock < quantity.
        """
        require_positive_quantity(quantity)
        item = self.lock_item(item_id)

        if item.current_stock < quantity:
            raise InsufficientStockError(str(item.id), item.current_stock, quantity)

        drawn = min(max(item.reserved_stock, 0), quantity)
        item.current_stock -= quantity
        item.reserved_stock -= drawn
        self._append(item, -quantity, -drawn, transaction_type, reference)
        self._log(
            "stock_consumed",
            item,
            quantity=quantity,
            reservation_drawn=drawn,
            transaction_type=transaction_type.value,
            reference=reference,
        )
        return StockLevel.from_model(item)

    def receive(
        self,
        item_id: UUID,
        quantity: int,
        reference: str | None = None,
        notes: str | None = None,
    ) -> StockLevel:
        """Add supplier stock (IN)."""
        require_positive_quantity(quantity)
        item = self.lock_item(item_id)

        item.current_stock += quantity
        self._append(item, quantity, 0, TransactionType.IN, reference, notes)
        self._log("stock_received", item, quantity=quantity, reference=reference)
        return StockLevel.from_model(item)

    def issue(
        self,
        item_id: UUID,
        quantity: int,
        reference: str | None = None,
    ) -> StockLevel:
        """Manual stock removal (OUT)."""
        return self.consume(item_id, quantity, reference, transaction_type=TransactionType.OUT)

    def adjust(
        self,
        item_id: UUID,
        delta: int,
        reason: str,
        reference: str | None = None,
    ) -> StockLevel:
        """
        Manual correction of current_stock by a signed ``delta``.

        Raises:
            InvalidQuantityError: delta is zero or not an int.
            InsufficientStockError: the result would go below zero or below
                the reserved quantity.
        """
        if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
            raise InvalidQuantityError(delta, "adjustment must be a non-zero integer")
        item = self.lock_item(item_id)

        new_current = item.current_stock + delta
        if new_current < 0 or new_current < item.reserved_stock:
            raise InsufficientStockError(str(item.id), item.available_stock, -delta)

        item.current_stock = new_current
        self._append(item, delta, 0, TransactionType.ADJUSTMENT, reference, notes=reason)
        self._log("stock_adjusted", item, delta=delta, reason=reason)
        return StockLevel.from_model(item)
