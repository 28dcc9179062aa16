"""
Module: sales_kernel.models.inventory
Responsibility: ORM persistence for inventory items and their append-only
    stock transaction trail.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/.  MUST NOT import from services/ or selectors/.

Invariants enforced:
    - 0 <= reserved_stock <= current_stock (table CHECK constraints, and
      re-checked by StockLedger before every flush).
    - InventoryTransaction rows are never updated or deleted
      (db/immutability.py).
    - Quantities are integers; there is no fractional stock.

Audit relevance:
    Replaying an item's InventoryTransaction rows in order reproduces its
    current_stock and reserved_stock (StockSelector.reconcile).
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import BigInteger, CheckConstraint, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from sales_kernel.db.base import TrackedBase, UTCDateTime, UUIDString
from sales_kernel.domain.dtos import ItemStatus, TransactionType
from sales_kernel.domain.values import Money

__all__ = ["InventoryItem", "InventoryTransaction", "TransactionType"]


class InventoryItem(TrackedBase):
    """
    A stock-keeping unit with physical and reserved quantities.

    Contract:
        current_stock counts every unit on hand, including units reserved for
        bundles.  Available-to-promise is current_stock - reserved_stock.
        Only StockLedger writes the quantity columns.

    Non-goals:
        - No warehouse locations or lots; one stock figure per item.
    """

    __tablename__ = "inventory_items"

    __table_args__ = (
        CheckConstraint("current_stock >= 0", name="ck_item_current_nonneg"),
        CheckConstraint("reserved_stock >= 0", name="ck_item_reserved_nonneg"),
        CheckConstraint("reserved_stock <= current_stock", name="ck_item_reserved_le_current"),
        CheckConstraint("minimum_stock >= 0", name="ck_item_minimum_nonneg"),
        Index("idx_item_status", "status"),
    )

    sku: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
    )

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    description: Mapped[str | None] = mapped_column(
        String(1000),
        nullable=True,
    )

    # Units on hand, reserved units included
    current_stock: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    reserved_stock: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    # Reorder threshold; 0 disables low-stock alerts
    minimum_stock: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    # Catalog price in minor units
    base_price_minor: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=ItemStatus.ACTIVE.value,
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<InventoryItem {self.sku}: current={self.current_stock} "
            f"reserved={self.reserved_stock}>"
        )

    @property
    def base_price(self) -> Money:
        return Money.from_minor(self.base_price_minor, self.currency)

    @property
    def available_stock(self) -> int:
        return self.current_stock - self.reserved_stock

    @property
    def is_active(self) -> bool:
        return self.status == ItemStatus.ACTIVE


class InventoryTransaction(TrackedBase):
    """
    One stock movement.  Append-only.

    ``quantity`` is the signed change to current_stock, except on
    RESERVATION rows, which leave current_stock alone and carry the signed
    reserved quantity instead.  ``reserved_delta`` is the signed change to
    reserved_stock made by the same operation.
    """

    __tablename__ = "inventory_transactions"

    __table_args__ = (
        Index("idx_inv_txn_item_time", "item_id", "occurred_at"),
        Index("idx_inv_txn_reference", "reference"),
    )

    item_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("inventory_items.id"),
        nullable=False,
    )

    quantity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    reserved_delta: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    transaction_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )

    # Sale id, bundle id, purchase order... whatever caused the movement
    reference: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    notes: Mapped[str | None] = mapped_column(
        String(1000),
        nullable=True,
    )

    occurred_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<InventoryTransaction {self.transaction_type} {self.quantity:+d} item={self.item_id}>"

    @property
    def stock_delta(self) -> int:
        """Signed change this row made to current_stock."""
        if TransactionType(self.transaction_type).moves_stock:
            return self.quantity
        return 0
