"""
Settlement -- pure arithmetic for sale totals against accumulated payments.

Both the write path (PaymentReconciliationEngine.record_payment) and the read
path (get_remaining_balance, SaleSelector.settlement) go through ``settle``
so the two can never disagree about whether a sale is paid.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from sales_kernel.domain.dtos import PaymentStatus
from sales_kernel.domain.values import Money


@dataclass(frozen=True)
class Settlement:
    """Sale total versus the sum of PAID native amounts."""

    total: Money
    paid: Money

    @property
    def raw_remaining(self) -> Money:
        """total - paid, may be negative."""
        return self.total - self.paid

    @property
    def remaining(self) -> Money:
        """Outstanding balance, floored at zero."""
        raw = self.raw_remaining
        return raw if raw.is_positive else Money.zero(self.total.currency)

    @property
    def is_paid(self) -> bool:
        return self.paid >= self.total

    def credit(self, amount: Money) -> Settlement:
        return Settlement(total=self.total, paid=self.paid + amount)


def settle(total: Money, paid_amounts: Iterable[Money]) -> Settlement:
    """Sum ``paid_amounts`` against ``total``; all must share its currency."""
    paid = Money.zero(total.currency)
    for amount in paid_amounts:
        paid = paid + amount
    return Settlement(total=total, paid=paid)


def derive_payment_status(
    settlement: Settlement,
    *,
    sale_cancelled: bool = False,
    has_overdue: bool = False,
) -> PaymentStatus:
    """
    Derive a sale's payment status.

    Precedence: CANCELLED, PAID, OVERDUE, PARTIAL, PENDING.
    """
    if sale_cancelled:
        return PaymentStatus.CANCELLED
    if settlement.is_paid:
        return PaymentStatus.PAID
    if has_overdue:
        return PaymentStatus.OVERDUE
    if settlement.paid.is_positive:
        return PaymentStatus.PARTIAL
    return PaymentStatus.PENDING


def split_installments(balance: Money, count: int) -> list[Money]:
    """
    Split ``balance`` into ``count`` integer-cent installments.

    Every installment gets the floor share; the remainder lands on the last
    one so the parts sum exactly to ``balance``.
    """
    if count <= 0:
        raise ValueError("installment count must be positive")
    share, remainder = divmod(balance.minor_units, count)
    parts = [Money.from_minor(share, balance.currency) for _ in range(count)]
    parts[-1] = Money.from_minor(share + remainder, balance.currency)
    return parts
