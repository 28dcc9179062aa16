"""
Module: sales_kernel.models.bundle
Responsibility: ORM persistence for product bundles (packages of inventory
    items sold together) and their lines.
Architecture position: Kernel > Models.

Invariants enforced:
    - Bundle lines are written once, at creation, and never modified
      (db/immutability.py).
    - Line quantities are positive.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import BigInteger, Boolean, CheckConstraint, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from sales_kernel.db.base import DecimalString, TrackedBase, UUIDString
from sales_kernel.domain.dtos import BundleStatus
from sales_kernel.domain.values import Money


class Bundle(TrackedBase):
    """
    A named package of items.

    Creating a bundle triggers exactly one reservation pass over its lines
    (BundleReservationEngine); an INACTIVE bundle holds no reservation.
    """

    __tablename__ = "bundles"

    __table_args__ = (Index("idx_bundle_status", "status"),)

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
    )

    # BS per USD at creation, used to price lines whose item is in the other currency
    conversion_rate: Mapped[Decimal | None] = mapped_column(
        DecimalString(),
        nullable=True,
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=BundleStatus.ACTIVE.value,
        nullable=False,
    )

    # True while the bundle's lines hold reserved stock
    is_reserved: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    lines: Mapped[list["BundleLine"]] = relationship(
        back_populates="bundle",
        cascade="all, delete-orphan",
        order_by="BundleLine.line_number",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Bundle {self.name!r} status={self.status} lines={len(self.lines)}>"

    @property
    def is_active(self) -> bool:
        return self.status == BundleStatus.ACTIVE

    def quantities_by_item(self) -> dict[UUID, int]:
        """Line quantities merged per item."""
        merged: dict[UUID, int] = {}
        for line in self.lines:
            merged[line.item_id] = merged.get(line.item_id, 0) + line.quantity
        return merged


class BundleLine(TrackedBase):
    """One item of a bundle, with an optional whole-line price override."""

    __tablename__ = "bundle_lines"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_bundle_line_quantity_positive"),
        Index("idx_bundle_line_bundle", "bundle_id"),
    )

    bundle_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("bundles.id"),
        nullable=False,
    )

    line_number: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
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

    # Replaces base_price * quantity for the whole line, in the bundle's currency
    override_price_minor: Mapped[int | None] = mapped_column(
        BigInteger,
        nullable=True,
    )

    bundle: Mapped[Bundle] = relationship(back_populates="lines")

    def __repr__(self) -> str:
        return f"<BundleLine #{self.line_number} item={self.item_id} qty={self.quantity}>"

    @property
    def override_price(self) -> Money | None:
        if self.override_price_minor is None:
            return None
        return Money.from_minor(self.override_price_minor, self.bundle.currency)
