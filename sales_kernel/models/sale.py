"""
Module: sales_kernel.models.sale
Responsibility: ORM persistence for sales and their frozen line items.
Architecture position: Kernel > Models.

Invariants enforced:
    - total_minor equals the sum of line total_price_minor (written once by
      PurchaseTransactionProcessor).
    - SaleLine rows are immutable once written; prices are frozen at sale
      time and never re-read from the catalog.
    - is_paid and payment_status are derived fields, re-derived from the
      payment sum on every payment write.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import BigInteger, Boolean, CheckConstraint, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from sales_kernel.db.base import DecimalString, TrackedBase, UTCDateTime, UUIDString
from sales_kernel.domain.dtos import PaymentStatus, SaleStatus
from sales_kernel.domain.values import Money


class Sale(TrackedBase):
    """
    A completed checkout, priced in USD or BS.

    Contract:
        conversion_rate is the BS-per-USD snapshot in force at sale time.
        client_id is an opaque reference; the client registry lives outside
        this kernel.
    """

    __tablename__ = "sales"

    __table_args__ = (
        CheckConstraint("total_minor >= 0", name="ck_sale_total_nonneg"),
        Index("idx_sale_client", "client_id"),
        Index("idx_sale_status", "status"),
        Index("idx_sale_payment_status", "payment_status"),
    )

    client_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        nullable=False,
    )

    bundle_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("bundles.id"),
        nullable=True,
    )

    total_minor: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
    )

    conversion_rate: Mapped[Decimal] = mapped_column(
        DecimalString(),
        nullable=False,
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=SaleStatus.PENDING.value,
        nullable=False,
    )

    # Derived from the payment sum
    is_paid: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    payment_status: Mapped[str] = mapped_column(
        String(20),
        default=PaymentStatus.PENDING.value,
        nullable=False,
    )

    payment_method: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )

    transaction_reference: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    purchase_date: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )

    lines: Mapped[list["SaleLine"]] = relationship(
        back_populates="sale",
        cascade="all, delete-orphan",
        order_by="SaleLine.line_number",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Sale {self.id} {self.total} status={self.status} payment={self.payment_status}>"

    @property
    def total(self) -> Money:
        return Money.from_minor(self.total_minor, self.currency, self.conversion_rate)

    @property
    def is_cancelled(self) -> bool:
        return self.status == SaleStatus.CANCELLED


class SaleLine(TrackedBase):
    """One frozen line of a sale."""

    __tablename__ = "sale_lines"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_sale_line_quantity_positive"),
        Index("idx_sale_line_sale", "sale_id"),
    )

    sale_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("sales.id"),
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

    unit_price_minor: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    total_price_minor: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    sale: Mapped[Sale] = relationship(back_populates="lines")

    def __repr__(self) -> str:
        return f"<SaleLine #{self.line_number} item={self.item_id} qty={self.quantity}>"
