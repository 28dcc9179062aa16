"""
Sales Kernel

An inventory stock ledger and sale/payment reconciliation engine with:
- Row-locked, append-only stock movements
- All-or-nothing bundle reservation with compensation
- Atomic checkout (sale + stock consumption in one transaction)
- Partial and installment payments in USD or BS
"""

from dataclasses import dataclass

from sqlalchemy.orm import sessionmaker

from sales_kernel.config import LedgerConfig
from sales_kernel.db.engine import create_tables, init_engine_from_url
from sales_kernel.db.immutability import register_immutability_listeners
from sales_kernel.db.unit_of_work import UnitOfWork
from sales_kernel.domain.clock import Clock, SystemClock
from sales_kernel.logging_config import configure_logging
from sales_kernel.services.bundle_reservation import BundleReservationEngine
from sales_kernel.services.payment_plan import PaymentPlanService
from sales_kernel.services.payment_reconciliation import PaymentReconciliationEngine
from sales_kernel.services.purchase_processor import PurchaseTransactionProcessor

__version__ = "0.1.0"


@dataclass(frozen=True)
class SalesKernel:
    """The engines, sharing one UnitOfWork and clock, as configured by bootstrap()."""

    uow: UnitOfWork
    clock: Clock
    bundles: BundleReservationEngine
    processor: PurchaseTransactionProcessor
    reconciliation: PaymentReconciliationEngine
    plans: PaymentPlanService


def bootstrap(config: LedgerConfig | None = None, clock: Clock | None = None) -> SalesKernel:
    """
    Wire the kernel up from ``config``: logging, engine, schema, guards,
    then the engines themselves.

    StockLedger is not included: it works inside a caller's session, opened
    with ``kernel.uow.begin()``.
    """
    config = config or LedgerConfig.with_defaults()
    clock = clock or SystemClock()
    configure_logging(level=config.log_level.upper())
    engine = init_engine_from_url(config.database_url, **config.engine_kwargs)
    create_tables(engine)
    register_immutability_listeners()
    uow = UnitOfWork(
        sessionmaker(bind=engine, expire_on_commit=False),
        lock_timeout_seconds=config.lock_timeout_seconds,
    )
    return SalesKernel(
        uow=uow,
        clock=clock,
        bundles=BundleReservationEngine(uow, clock),
        processor=PurchaseTransactionProcessor(uow, clock),
        reconciliation=PaymentReconciliationEngine(
            uow, clock, overpayment_tolerance_minor=config.overpayment_tolerance_minor
        ),
        plans=PaymentPlanService(uow, clock),
    )
