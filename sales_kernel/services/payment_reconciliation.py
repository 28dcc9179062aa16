"""
PaymentReconciliationEngine -- partial payments against a sale total.

Responsibility:
    Records payments (possibly in BS against a USD sale, or the reverse),
    converts each into the sale's native currency, and re-derives the sale's
    is_paid / payment_status from the payment sum after every write.

Architecture position:
    Kernel > Services.  Owns its transactions through a UnitOfWork; every
    public operation is one transaction holding a row lock on the sale.

Invariants enforced:
    - Sum of PAID native amounts never exceeds the sale total.  A credit
      within the rounding tolerance of the balance is capped at the
      balance; anything beyond raises OverpaymentError.
    - is_paid == (sum of PAID native amounts >= total), derived through the
      same settle() used by get_remaining_balance.
    - Payments against a cancelled or already settled sale are rejected.
    - When a sale becomes fully paid, its outstanding scheduled installments
      are CANCELLED.

Failure modes:
    - SaleNotFoundError, SaleCancelledError, AlreadyFullyPaidError,
      OverpaymentError, PaymentNotFoundError.
    - InvalidAmountError / InvalidRateError / InvalidCurrencyError for bad
      inputs, before any lock is taken.
    - BusyError / PersistenceError from the UnitOfWork.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from sales_kernel.db.unit_of_work import UnitOfWork
from sales_kernel.domain.clock import Clock, SystemClock
from sales_kernel.domain.dtos import (
    BalanceSnapshot,
    PaymentInfo,
    PaymentMethod,
    PaymentRecordStatus,
    PaymentResult,
    PlanStatus,
    coerce_enum,
)
from sales_kernel.domain.settlement import Settlement, derive_payment_status
from sales_kernel.domain.values import Currency, Money, as_currency, parse_rate
from sales_kernel.exceptions import (
    AlreadyFullyPaidError,
    InvalidAmountError,
    InvalidStatusError,
    OverpaymentError,
    PaymentNotFoundError,
    SaleCancelledError,
    SaleNotFoundError,
)
from sales_kernel.logging_config import LogContext, get_logger
from sales_kernel.models.payment import Payment, PaymentPlan
from sales_kernel.models.sale import Sale
from sales_kernel.selectors.sale_selector import SaleSelector

logger = get_logger("services.payment_reconciliation")


def lock_sale(session: Session, sale_id: UUID) -> Sale:
    sale = session.execute(
        select(Sale)
        .where(Sale.id == sale_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if sale is None:
        raise SaleNotFoundError(str(sale_id))
    return sale


def rederive_payment_state(session: Session, sale: Sale) -> Settlement:
    """
    Recompute is_paid and payment_status of ``sale`` from its payments.

    Cancels outstanding installments (and closes their plans) once the sale
    is fully paid.  Caller holds the sale lock.
    """
    selector = SaleSelector(session)
    settlement = selector.settlement(sale)

    if settlement.is_paid and not sale.is_cancelled:
        outstanding = selector.outstanding_installments(sale.id)
        for installment in outstanding:
            installment.status = PaymentRecordStatus.CANCELLED.value
        plans = session.execute(
            select(PaymentPlan).where(
                PaymentPlan.sale_id == sale.id,
                PaymentPlan.status == PlanStatus.ACTIVE.value,
            )
        ).scalars()
        for plan in plans:
            plan.status = PlanStatus.INACTIVE.value
        if outstanding:
            logger.info(
                "installments_cancelled",
                extra={"sale_id": str(sale.id), "count": len(outstanding)},
            )

    status = derive_payment_status(
        settlement,
        sale_cancelled=sale.is_cancelled,
        has_overdue=selector.has_overdue(sale.id),
    )
    sale.is_paid = settlement.is_paid
    sale.payment_status = status.value
    session.flush()
    return settlement


def balance_snapshot(sale: Sale, selector: SaleSelector) -> BalanceSnapshot:
    """Settlement of ``sale`` with its payment status derived from the payment rows."""
    settlement = selector.settlement(sale)
    status = derive_payment_status(
        settlement,
        sale_cancelled=sale.is_cancelled,
        has_overdue=selector.has_overdue(sale.id),
    )
    return BalanceSnapshot(
        sale_id=sale.id,
        total_amount=settlement.total,
        total_paid=settlement.paid,
        remaining_balance=settlement.remaining,
        is_paid=settlement.is_paid,
        payment_status=status,
        conversion_rate=sale.conversion_rate,
    )


class PaymentReconciliationEngine:
    """
    Records payments and keeps each sale's derived payment state current.

    Contract:
        record_payment and settle_installment are the only ways a payment
        becomes PAID.  Both run the same credit path.

    Non-goals:
        - Does NOT fetch exchange rates; callers pass the rate in force.
        - Does NOT refund; a PAID payment is immutable.
    """

    def __init__(
        self,
        uow: UnitOfWork,
        clock: Clock | None = None,
        overpayment_tolerance_minor: int = 1,
    ):
        self._uow = uow
        self._clock = clock or SystemClock()
        self._tolerance = overpayment_tolerance_minor

    # ------------------------------------------------------------------
    # Credit path
    # ------------------------------------------------------------------

    def _credit(
        self,
        session: Session,
        sale: Sale,
        payment: Payment,
        tendered: Money,
        rate: Decimal,
        cap_to_balance: bool = False,
    ) -> PaymentResult:
        if sale.is_cancelled:
            raise SaleCancelledError(str(sale.id))

        before = SaleSelector(session).settlement(sale)
        if before.is_paid:
            raise AlreadyFullyPaidError(str(sale.id))

        sale_currency = Currency(sale.currency)
        native = tendered if tendered.currency == sale_currency else tendered.convert(sale_currency, rate)
        if not native.is_positive:
            raise InvalidAmountError(tendered.amount, f"credits nothing once converted to {sale_currency}")

        remaining = before.remaining
        excess = native.minor_units - remaining.minor_units
        if excess > 0:
            if excess > self._tolerance and not cap_to_balance:
                raise OverpaymentError(str(sale.id), remaining.amount, native.amount, sale_currency.code)
            logger.info(
                "payment_capped_to_balance",
                extra={
                    "sale_id": str(sale.id),
                    "credited_minor": native.minor_units,
                    "remaining_minor": remaining.minor_units,
                },
            )
            native = remaining
            if cap_to_balance:
                payment.amount_minor = native.minor_units

        payment.native_amount_minor = native.minor_units
        payment.status = PaymentRecordStatus.PAID.value
        payment.paid_at = self._clock.now()
        session.flush()

        after = rederive_payment_state(session, sale)

        logger.info(
            "payment_recorded",
            extra={
                "sale_id": str(sale.id),
                "payment_id": str(payment.id),
                "tendered": str(tendered.amount),
                "tendered_currency": tendered.currency.code,
                "credited": str(native.amount),
                "sale_currency": sale_currency.code,
                "conversion_rate": str(rate),
                "total_paid": str(after.paid.amount),
                "remaining": str(after.remaining.amount),
                "is_paid": after.is_paid,
                "payment_status": sale.payment_status,
            },
        )
        if after.is_paid:
            logger.info("sale_fully_paid", extra={"sale_id": str(sale.id)})

        return PaymentResult(
            payment=PaymentInfo.from_model(payment, sale.currency),
            is_fully_paid=after.is_paid,
            remaining_balance=after.remaining,
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def record_payment(
        self,
        sale_id: UUID,
        amount: Money | Decimal | str | int,
        currency_type: Currency | str,
        conversion_rate: Decimal | str | int,
        method: PaymentMethod | str,
        reference: str | None = None,
        notes: str | None = None,
    ) -> PaymentResult:
        """
        Record a payment of ``amount`` in ``currency_type`` against a sale.

        ``conversion_rate`` is the BS-per-USD rate at payment time; it is
        used only when the payment and the sale are in different currencies.
        """
        currency = as_currency(currency_type)
        tendered = amount if isinstance(amount, Money) else Money.of(amount, currency)
        if tendered.currency != currency:
            raise InvalidAmountError(tendered, f"amount is not in {currency}")
        if not tendered.is_positive:
            raise InvalidAmountError(tendered.amount, "payment must be positive")
        rate = parse_rate(conversion_rate)
        payment_method = coerce_enum(PaymentMethod, method)

        with LogContext.bind(sale_id=str(sale_id)), self._uow.begin() as session:
            sale = lock_sale(session, sale_id)
            payment = Payment(
                sale_id=sale.id,
                amount_minor=tendered.minor_units,
                currency=tendered.currency.code,
                conversion_rate=rate,
                sale_conversion_rate=sale.conversion_rate,
                native_amount_minor=0,
                method=payment_method.value,
                status=PaymentRecordStatus.PENDING.value,
                transaction_reference=reference,
                notes=notes,
            )
            session.add(payment)
            return self._credit(session, sale, payment, tendered.with_rate(rate), rate)

    def settle_installment(
        self,
        payment_id: UUID,
        method: PaymentMethod | str,
        reference: str | None = None,
    ) -> PaymentResult:
        """
        Mark a PENDING or OVERDUE installment as PAID.

        The installment's scheduled amount is credited through the same path
        as record_payment, capped at the outstanding balance.
        """
        payment_method = coerce_enum(PaymentMethod, method)

        with self._uow.begin() as session:
            installment = session.get(Payment, payment_id)
            if installment is None:
                raise PaymentNotFoundError(str(payment_id))

            with LogContext.bind(sale_id=str(installment.sale_id)):
                sale = lock_sale(session, installment.sale_id)
                installment = session.execute(
                    select(Payment)
                    .where(Payment.id == payment_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                ).scalar_one()
                if not installment.is_outstanding:
                    raise InvalidStatusError(
                        installment.status,
                        [PaymentRecordStatus.PENDING.value, PaymentRecordStatus.OVERDUE.value],
                    )

                installment.method = payment_method.value
                installment.transaction_reference = reference
                scheduled = Money.from_minor(installment.native_amount_minor, sale.currency)
                return self._credit(
                    session,
                    sale,
                    installment,
                    scheduled,
                    sale.conversion_rate,
                    cap_to_balance=True,
                )

    def get_remaining_balance(self, sale_id: UUID) -> BalanceSnapshot:
        """Read-only settlement projection of a sale."""
        with self._uow.begin() as session:
            selector = SaleSelector(session)
            sale = selector.get_sale_model(sale_id)
            return balance_snapshot(sale, selector)
