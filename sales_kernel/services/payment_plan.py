"""
PaymentPlanService -- installment schedules for a sale's balance.

Responsibility:
    Splits the outstanding balance of a sale into PENDING installments with
    due dates, and flags installments whose due date has passed as OVERDUE.
    Installments are settled through
    PaymentReconciliationEngine.settle_installment, never here.

Architecture position:
    Kernel > Services.  Owns its transactions through a UnitOfWork.

Invariants enforced:
    - Installment amounts (plus the down payment, if any) sum exactly to the
      balance outstanding when the plan was created; the integer-cent
      remainder lands on the last installment.
    - A sale has at most one ACTIVE plan.  Creating a new plan closes the
      previous one and cancels its outstanding installments.
"""

import calendar
from datetime import date, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from sales_kernel.db.unit_of_work import UnitOfWork
from sales_kernel.domain.clock import Clock, SystemClock
from sales_kernel.domain.dtos import (
    InstallmentFrequency,
    PaymentInfo,
    PaymentPlanInfo,
    PaymentRecordStatus,
    PlanStatus,
    coerce_enum,
)
from sales_kernel.domain.settlement import split_installments
from sales_kernel.domain.values import Money
from sales_kernel.exceptions import (
    AlreadyFullyPaidError,
    InvalidAmountError,
    InvalidQuantityError,
    SaleCancelledError,
)
from sales_kernel.logging_config import LogContext, get_logger
from sales_kernel.models.payment import Payment, PaymentPlan
from sales_kernel.selectors.sale_selector import SaleSelector
from sales_kernel.services.payment_reconciliation import lock_sale, rederive_payment_state

logger = get_logger("services.payment_plan")


def add_months(start: date, months: int) -> date:
    """``start`` moved by ``months`` calendar months, clamping the day."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def generate_due_dates(start: date, count: int, frequency: InstallmentFrequency) -> list[date]:
    """Due dates of ``count`` installments, the first one period after ``start``."""
    if frequency == InstallmentFrequency.WEEKLY:
        return [start + timedelta(days=7 * n) for n in range(1, count + 1)]
    if frequency == InstallmentFrequency.BIWEEKLY:
        return [start + timedelta(days=14 * n) for n in range(1, count + 1)]
    return [add_months(start, n) for n in range(1, count + 1)]


class PaymentPlanService:
    """Creates installment schedules and tracks overdue installments."""

    def __init__(self, uow: UnitOfWork, clock: Clock | None = None):
        self._uow = uow
        self._clock = clock or SystemClock()

    def create_plan(
        self,
        sale_id: UUID,
        installment_count: int,
        frequency: InstallmentFrequency | str,
        start_date: date,
        down_payment: Money | Decimal | str | None = None,
    ) -> PaymentPlanInfo:
        """
        Schedule the outstanding balance of a sale.

        A down payment becomes installment 0, due on ``start_date``.

        Raises:
            InvalidQuantityError: installment_count is not a positive int.
            InvalidAmountError: down payment not below the outstanding balance.
            SaleCancelledError / AlreadyFullyPaidError: nothing to schedule.
        """
        if isinstance(installment_count, bool) or not isinstance(installment_count, int) or installment_count <= 0:
            raise InvalidQuantityError(installment_count, "installment count must be a positive integer")
        plan_frequency = coerce_enum(InstallmentFrequency, frequency)

        with LogContext.bind(sale_id=str(sale_id)), self._uow.begin() as session:
            sale = lock_sale(session, sale_id)
            if sale.is_cancelled:
                raise SaleCancelledError(str(sale.id))

            selector = SaleSelector(session)
            balance = selector.settlement(sale).remaining
            if balance.is_zero:
                raise AlreadyFullyPaidError(str(sale.id))

            if down_payment is None:
                down = Money.zero(sale.currency)
            elif isinstance(down_payment, Money):
                down = down_payment
            else:
                down = Money.of(down_payment, sale.currency)
            if down.currency.code != sale.currency:
                raise InvalidAmountError(down, f"down payment must be in {sale.currency}")
            if down >= balance:
                raise InvalidAmountError(down.amount, "down payment must be below the outstanding balance")

            self._close_active_plans(session, sale.id)

            plan = PaymentPlan(
                sale_id=sale.id,
                down_payment_minor=down.minor_units,
                installment_count=installment_count,
                frequency=plan_frequency.value,
                start_date=start_date,
                status=PlanStatus.ACTIVE.value,
            )
            session.add(plan)
            session.flush()

            scheduled: list[tuple[int, Money, date]] = []
            if down.is_positive:
                scheduled.append((0, down, start_date))
            parts = split_installments(balance - down, installment_count)
            due_dates = generate_due_dates(start_date, installment_count, plan_frequency)
            scheduled.extend(
                (number, part, due)
                for number, (part, due) in enumerate(zip(parts, due_dates), start=1)
            )

            installments = []
            for number, part, due in scheduled:
                installment = Payment(
                    sale_id=sale.id,
                    plan_id=plan.id,
                    amount_minor=part.minor_units,
                    currency=sale.currency,
                    conversion_rate=sale.conversion_rate,
                    sale_conversion_rate=sale.conversion_rate,
                    native_amount_minor=part.minor_units,
                    status=PaymentRecordStatus.PENDING.value,
                    due_date=due,
                    installment_number=number,
                    notes="down payment" if number == 0 else f"installment {number} of {installment_count}",
                )
                session.add(installment)
                installments.append(installment)
            session.flush()
            rederive_payment_state(session, sale)

            logger.info(
                "payment_plan_created",
                extra={
                    "sale_id": str(sale.id),
                    "plan_id": str(plan.id),
                    "installment_count": installment_count,
                    "frequency": plan_frequency.value,
                    "scheduled": str(balance.amount),
                    "down_payment": str(down.amount),
                },
            )
            return PaymentPlanInfo(
                plan_id=plan.id,
                sale_id=sale.id,
                frequency=plan_frequency,
                installments=tuple(PaymentInfo.from_model(p, sale.currency) for p in installments),
            )

    def _close_active_plans(self, session, sale_id: UUID) -> None:
        plans = list(
            session.execute(
                select(PaymentPlan).where(
                    PaymentPlan.sale_id == sale_id,
                    PaymentPlan.status == PlanStatus.ACTIVE.value,
                )
            ).scalars()
        )
        if not plans:
            return
        for plan in plans:
            plan.status = PlanStatus.INACTIVE.value
        for installment in SaleSelector(session).outstanding_installments(sale_id):
            if installment.plan_id is not None:
                installment.status = PaymentRecordStatus.CANCELLED.value
        session.flush()
        logger.info("payment_plan_replaced", extra={"sale_id": str(sale_id), "closed": len(plans)})

    def mark_overdue(self, as_of: date | None = None) -> int:
        """
        Flag PENDING installments due before ``as_of`` as OVERDUE.

        Returns the number of installments flagged.  Affected sales get
        payment_status OVERDUE while a balance remains.
        """
        cutoff = as_of or self._clock.now().date()

        def _due(query):
            return query.where(
                Payment.status == PaymentRecordStatus.PENDING.value,
                Payment.due_date.is_not(None),
                Payment.due_date < cutoff,
            )

        flagged = 0
        with self._uow.begin() as session:
            sale_ids = set(session.execute(_due(select(Payment.sale_id)).distinct()).scalars())

            # Sale lock before payment locks, as in settle_installment
            for sale_id in sorted(sale_ids, key=str):
                sale = lock_sale(session, sale_id)
                due = list(
                    session.execute(
                        _due(select(Payment).where(Payment.sale_id == sale_id))
                        .with_for_update()
                        .execution_options(populate_existing=True)
                    ).scalars()
                )
                for installment in due:
                    installment.status = PaymentRecordStatus.OVERDUE.value
                session.flush()
                rederive_payment_state(session, sale)
                flagged += len(due)

            if flagged:
                logger.warning(
                    "installments_overdue",
                    extra={"count": flagged, "as_of": cutoff.isoformat()},
                )
            return flagged
