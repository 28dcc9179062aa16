"""
Module: sales_kernel.models.payment
Responsibility: ORM persistence for payments against sales, and for the
    installment plans that schedule them.
Architecture position: Kernel > Models.

Invariants enforced:
    - A PAID payment is immutable (db/immutability.py).  Corrections are new
      rows, never edits.
    - native_amount_minor is the credit against the sale in the sale's own
      currency; only PAID rows count toward the settlement sum.
    - Both the payment-time rate and the sale-time rate are stored, so a
      BS payment can always be re-derived for audit.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import BigInteger, CheckConstraint, Date, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from sales_kernel.db.base import DecimalString, TrackedBase, UTCDateTime, UUIDString
from sales_kernel.domain.dtos import PaymentRecordStatus, PlanStatus


class PaymentPlan(TrackedBase):
    """Installment schedule for the balance of a sale."""

    __tablename__ = "payment_plans"

    __table_args__ = (
        CheckConstraint("installment_count > 0", name="ck_plan_count_positive"),
        Index("idx_plan_sale", "sale_id"),
    )

    sale_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("sales.id"),
        nullable=False,
    )

    down_payment_minor: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        nullable=False,
    )

    installment_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    frequency: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )

    start_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=PlanStatus.ACTIVE.value,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<PaymentPlan sale={self.sale_id} {self.installment_count}x{self.frequency}>"


class Payment(TrackedBase):
    """
    A payment (or a scheduled installment) against a sale.

    Installments are created PENDING with a due_date and become PAID through
    PaymentReconciliationEngine.settle_installment.
    """

    __tablename__ = "payments"

    __table_args__ = (
        CheckConstraint("amount_minor >= 0", name="ck_payment_amount_nonneg"),
        CheckConstraint("native_amount_minor >= 0", name="ck_payment_native_nonneg"),
        Index("idx_payment_sale_status", "sale_id", "status"),
        Index("idx_payment_due", "status", "due_date"),
    )

    sale_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("sales.id"),
        nullable=False,
    )

    plan_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("payment_plans.id"),
        nullable=True,
    )

    # As tendered
    amount_minor: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
    )

    # BS per USD when the payment was made
    conversion_rate: Mapped[Decimal] = mapped_column(
        DecimalString(),
        nullable=False,
    )

    # BS per USD recorded on the sale
    sale_conversion_rate: Mapped[Decimal] = mapped_column(
        DecimalString(),
        nullable=False,
    )

    # Credit against the sale, in the sale's currency
    native_amount_minor: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    method: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=PaymentRecordStatus.PENDING.value,
        nullable=False,
    )

    transaction_reference: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    notes: Mapped[str | None] = mapped_column(
        String(1000),
        nullable=True,
    )

    paid_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    due_date: Mapped[date | None] = mapped_column(
        Date,
        nullable=True,
    )

    installment_number: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Payment {self.id} {self.amount_minor} {self.currency} status={self.status}>"

    @property
    def is_paid(self) -> bool:
        return self.status == PaymentRecordStatus.PAID

    @property
    def is_outstanding(self) -> bool:
        """Scheduled and not yet settled."""
        return self.status in (PaymentRecordStatus.PENDING, PaymentRecordStatus.OVERDUE)
