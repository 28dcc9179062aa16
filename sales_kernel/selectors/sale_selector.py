"""
Module: sales_kernel.selectors.sale_selector
Responsibility: Read-only queries over sales and their payments, including
    the settlement projection shared with the payment write path.
Architecture position: Kernel > Selectors.
"""

from uuid import UUID

from sqlalchemy import exists, select

from sales_kernel.domain.dtos import PaymentInfo, PaymentRecordStatus, SaleInfo
from sales_kernel.domain.settlement import Settlement, settle
from sales_kernel.domain.values import Money
from sales_kernel.exceptions import SaleNotFoundError
from sales_kernel.models.payment import Payment
from sales_kernel.models.sale import Sale
from sales_kernel.selectors.base import BaseSelector


class SaleSelector(BaseSelector[Sale]):
    """Read side of sales and payments."""

    def get_sale_model(self, sale_id: UUID) -> Sale:
        sale = self.session.get(Sale, sale_id)
        if sale is None:
            raise SaleNotFoundError(str(sale_id))
        return sale

    def get_sale(self, sale_id: UUID) -> SaleInfo:
        return SaleInfo.from_model(self.get_sale_model(sale_id))

    def _payments(self, sale_id: UUID, *statuses: PaymentRecordStatus) -> list[Payment]:
        query = select(Payment).where(Payment.sale_id == sale_id)
        if statuses:
            query = query.where(Payment.status.in_([s.value for s in statuses]))
        return list(
            self.session.execute(
                query.order_by(Payment.installment_number, Payment.paid_at, Payment.created_at)
            ).scalars()
        )

    def payments_for_sale(self, sale_id: UUID) -> list[PaymentInfo]:
        sale = self.get_sale_model(sale_id)
        return [PaymentInfo.from_model(p, sale.currency) for p in self._payments(sale.id)]

    def outstanding_installments(self, sale_id: UUID) -> list[Payment]:
        """Scheduled installments not yet settled (PENDING or OVERDUE)."""
        return self._payments(
            sale_id, PaymentRecordStatus.PENDING, PaymentRecordStatus.OVERDUE
        )

    def settlement(self, sale: Sale) -> Settlement:
        """Sale total against the sum of its PAID native amounts."""
        paid = self._payments(sale.id, PaymentRecordStatus.PAID)
        return settle(
            Money.from_minor(sale.total_minor, sale.currency),
            (Money.from_minor(p.native_amount_minor, sale.currency) for p in paid),
        )

    def has_overdue(self, sale_id: UUID) -> bool:
        return bool(
            self.session.execute(
                select(
                    exists().where(
                        Payment.sale_id == sale_id,
                        Payment.status == PaymentRecordStatus.OVERDUE.value,
                    )
                )
            ).scalar()
        )
