"""
Pytest fixtures for the sales kernel test suite.

Provides:
- A fresh in-memory SQLite database per test (single shared connection)
- A UnitOfWork and the four engines bound to it
- A deterministic clock
- Item / sale factories and read helpers
- Captured structured logs

Environment Variables:
- DATABASE_URL: PostgreSQL connection URL for tests marked ``postgres``.
  Those tests are skipped when it is not set.

Tests must not hold two UnitOfWork blocks open at once against the in-memory
database: every session shares one SQLite connection.
"""

import itertools
import json
import logging
from io import StringIO
from uuid import UUID, uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from sales_kernel.db.engine import build_engine, create_tables
from sales_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from sales_kernel.db.unit_of_work import UnitOfWork
from sales_kernel.domain.clock import DeterministicClock
from sales_kernel.domain.dtos import CartLine
from sales_kernel.domain.values import Money
from sales_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from sales_kernel.models.bundle import Bundle
from sales_kernel.models.payment import Payment
from sales_kernel.selectors.sale_selector import SaleSelector
from sales_kernel.selectors.stock_selector import StockSelector
from sales_kernel.services.bundle_reservation import BundleReservationEngine
from sales_kernel.services.payment_plan import PaymentPlanService
from sales_kernel.services.payment_reconciliation import PaymentReconciliationEngine
from sales_kernel.services.purchase_processor import PurchaseTransactionProcessor
from sales_kernel.services.stock_ledger import StockLedger

TEST_CLIENT_ID = uuid4()


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture sales_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, ledger_ops):
            ...
            logs = captured_logs()
            assert any(r["message"] == "stock_reserved" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("sales_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "postgres: mark test as requiring PostgreSQL")
    config.addinivalue_line("markers", "slow_locks: mark test as potentially waiting for DB locks")


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _immutability_guards():
    register_immutability_listeners()
    yield
    unregister_immutability_listeners()


@pytest.fixture
def engine():
    engine = build_engine("sqlite:///:memory:")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def uow(engine) -> UnitOfWork:
    return UnitOfWork(sessionmaker(bind=engine, expire_on_commit=False), lock_timeout_seconds=1.0)


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock()


# =============================================================================
# Engines
# =============================================================================


@pytest.fixture
def processor(uow, clock) -> PurchaseTransactionProcessor:
    return PurchaseTransactionProcessor(uow, clock)


@pytest.fixture
def reconciliation(uow, clock) -> PaymentReconciliationEngine:
    return PaymentReconciliationEngine(uow, clock)


@pytest.fixture
def bundles(uow, clock) -> BundleReservationEngine:
    return BundleReservationEngine(uow, clock)


@pytest.fixture
def plans(uow, clock) -> PaymentPlanService:
    return PaymentPlanService(uow, clock)


# =============================================================================
# Factories and read helpers
# =============================================================================


@pytest.fixture
def make_item(uow, clock):
    """Register an inventory item and return its id."""
    counter = itertools.count(1)

    def _make(
        initial_stock: int = 10,
        price: str = "10.00",
        currency: str = "USD",
        minimum_stock: int = 0,
        sku: str | None = None,
    ) -> UUID:
        n = next(counter)
        with uow.begin() as session:
            level = StockLedger(session, clock).register_item(
                sku=sku or f"SKU-{n:04d}",
                item_name=f"Item {n}",
                base_price=Money.of(price, currency),
                initial_stock=initial_stock,
                minimum_stock=minimum_stock,
            )
        return level.item_id

    return _make


@pytest.fixture
def ledger_ops(uow, clock):
    """Run one StockLedger call in its own transaction: ledger_ops("reserve", item_id, 4)."""

    def _run(operation: str, *args, **kwargs):
        with uow.begin() as session:
            return getattr(StockLedger(session, clock), operation)(*args, **kwargs)

    return _run


@pytest.fixture
def stock_level(uow):
    def _level(item_id: UUID):
        with uow.begin() as session:
            return StockSelector(session).stock_level(item_id)

    return _level


@pytest.fixture
def history(uow):
    def _history(item_id: UUID):
        with uow.begin() as session:
            return StockSelector(session).transaction_history(item_id)

    return _history


@pytest.fixture
def make_sale(make_item, processor):
    """Direct sale of one unit of a fresh item priced at ``total``."""

    def _make(total: str = "50.00", currency: str = "USD", rate: str = "36.50"):
        item_id = make_item(initial_stock=100, price=total, currency=currency)
        return processor.create_direct_sale(
            TEST_CLIENT_ID, [CartLine(item_id, 1)], "CASH", currency, rate
        )

    return _make


@pytest.fixture
def payments_of(uow):
    """All payment rows of a sale as PaymentInfo, ordered by installment number."""

    def _payments(sale_id: UUID):
        with uow.begin() as session:
            infos = SaleSelector(session).payments_for_sale(sale_id)
        return sorted(infos, key=lambda p: (p.installment_number is None, p.installment_number or 0))

    return _payments


@pytest.fixture
def load_bundle(uow):
    def _load(bundle_id: UUID) -> Bundle:
        with uow.begin() as session:
            return session.get(Bundle, bundle_id)

    return _load


@pytest.fixture
def only_bundle(uow):
    """The single bundle in the database (for bundles whose creation raised)."""

    def _load() -> Bundle:
        with uow.begin() as session:
            return session.execute(select(Bundle)).scalar_one()

    return _load


@pytest.fixture
def payment_rows(uow):
    def _rows(sale_id: UUID) -> list[Payment]:
        with uow.begin() as session:
            return list(
                session.execute(select(Payment).where(Payment.sale_id == sale_id)).scalars()
            )

    return _rows
