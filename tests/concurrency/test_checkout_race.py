"""
Checkout, Reservation and Payment Race Tests.

Threads released together by a Barrier contend for the same rows.  Row
locks (SELECT ... FOR UPDATE on PostgreSQL, BEGIN IMMEDIATE on SQLite)
must serialize them so that:

- the last unit of an item is sold exactly once
- concurrent reservations never push reserved_stock above current_stock
- a bundle is reserved or released by one pass at a time
- concurrent payments never credit more than the sale total

Runs against a file-backed SQLite database, and against PostgreSQL when
DATABASE_URL is set.
"""

import os
from concurrent.futures import ThreadPoolExecutor
from threading import Barrier
from uuid import uuid4

import pytest
from sqlalchemy.orm import sessionmaker

from sales_kernel.db.engine import build_engine, create_tables, drop_tables
from sales_kernel.db.unit_of_work import UnitOfWork
from sales_kernel.domain.clock import SystemClock
from sales_kernel.domain.dtos import BundleLineSpec, CartLine
from sales_kernel.domain.values import Money
from sales_kernel.exceptions import (
    AlreadyFullyPaidError,
    BundleStockUnavailableError,
    BundleTransitionInProgressError,
    InsufficientStockError,
    OverpaymentError,
)
from sales_kernel.selectors.stock_selector import StockSelector
from sales_kernel.services.bundle_reservation import BundleReservationEngine
from sales_kernel.services.payment_reconciliation import PaymentReconciliationEngine
from sales_kernel.services.purchase_processor import PurchaseTransactionProcessor
from sales_kernel.services.stock_ledger import StockLedger

pytestmark = pytest.mark.slow_locks


@pytest.fixture(params=["sqlite", pytest.param("postgres", marks=pytest.mark.postgres)])
def race_uow(request, tmp_path):
    if request.param == "postgres":
        url = os.environ.get("DATABASE_URL")
        if not url:
            pytest.skip("DATABASE_URL not set")
    else:
        url = f"sqlite:///{tmp_path / 'race.db'}"

    engine = build_engine(url, lock_timeout_seconds=10.0)
    drop_tables(engine)
    create_tables(engine)
    yield UnitOfWork(sessionmaker(bind=engine, expire_on_commit=False), lock_timeout_seconds=10.0)
    drop_tables(engine)
    engine.dispose()


def _register(uow, clock, stock, price="10.00"):
    with uow.begin() as session:
        return StockLedger(session, clock).register_item(
            sku=f"RACE-{uuid4().hex[:8]}",
            item_name="Contended",
            base_price=Money.of(price, "USD"),
            initial_stock=stock,
        ).item_id


def _level(uow, item_id):
    with uow.begin() as session:
        return StockSelector(session).stock_level(item_id)


def _race(n, fn, expected_errors):
    """Run ``fn`` in ``n`` threads released at once; return (results, errors)."""
    barrier = Barrier(n)

    def _worker(i):
        barrier.wait()
        try:
            return ("ok", fn(i))
        except expected_errors as exc:
            return ("error", exc)

    with ThreadPoolExecutor(max_workers=n) as pool:
        outcomes = list(pool.map(_worker, range(n)))

    results = [value for kind, value in outcomes if kind == "ok"]
    errors = [value for kind, value in outcomes if kind == "error"]
    return results, errors


class TestLastUnit:
    def test_last_unit_sold_once(self, race_uow):
        clock = SystemClock()
        item_id = _register(race_uow, clock, stock=1)
        processor = PurchaseTransactionProcessor(race_uow, clock)

        results, errors = _race(
            2,
            lambda i: processor.create_direct_sale(uuid4(), [CartLine(item_id, 1)], "CASH", "USD", "36.50"),
            InsufficientStockError,
        )

        assert len(results) == 1
        assert len(errors) == 1
        assert errors[0].available == 0
        assert _level(race_uow, item_id).current_stock == 0

    def test_many_reservations_never_oversubscribe(self, race_uow):
        clock = SystemClock()
        item_id = _register(race_uow, clock, stock=5)

        def _reserve(i):
            with race_uow.begin() as session:
                return StockLedger(session, clock).reserve(item_id, 1, reference=f"cart-{i}")

        results, errors = _race(8, _reserve, InsufficientStockError)

        assert len(results) == 5
        assert len(errors) == 3
        level = _level(race_uow, item_id)
        assert (level.current_stock, level.reserved_stock) == (5, 5)
        with race_uow.begin() as session:
            assert StockSelector(session).reconcile(item_id).is_consistent


class TestBundleRace:
    def test_scarce_stock_goes_to_one_bundle(self, race_uow):
        clock = SystemClock()
        item_id = _register(race_uow, clock, stock=5)
        bundles = BundleReservationEngine(race_uow, clock)

        results, errors = _race(
            2,
            lambda i: bundles.create_bundle(f"Kit {i}", [BundleLineSpec(item_id, 3)], "USD"),
            BundleStockUnavailableError,
        )

        assert len(results) == 1
        assert len(errors) == 1
        assert _level(race_uow, item_id).reserved_stock == 3

    def test_concurrent_reserve_claims_bundle_once(self, race_uow):
        clock = SystemClock()
        item_id = _register(race_uow, clock, stock=10)
        bundles = BundleReservationEngine(race_uow, clock)
        bundle = bundles.create_bundle("Kit", [BundleLineSpec(item_id, 2)], "USD")
        bundles.release_bundle(bundle.bundle_id)

        results, errors = _race(
            8, lambda i: bundles.reserve_for_bundle(bundle.bundle_id), BundleTransitionInProgressError
        )

        assert len(results) + len(errors) == 8
        assert results
        assert _level(race_uow, item_id).reserved_stock == 2
        with race_uow.begin() as session:
            assert StockSelector(session).reconcile(item_id).is_consistent

    def test_concurrent_release_keeps_other_reservations(self, race_uow):
        clock = SystemClock()
        item_id = _register(race_uow, clock, stock=10)
        bundles = BundleReservationEngine(race_uow, clock)
        bundle = bundles.create_bundle("Kit", [BundleLineSpec(item_id, 2)], "USD")
        with race_uow.begin() as session:
            StockLedger(session, clock).reserve(item_id, 3, reference="other-cart")

        results, errors = _race(
            4, lambda i: bundles.release_bundle(bundle.bundle_id), BundleTransitionInProgressError
        )

        assert len(results) + len(errors) == 4
        assert sum(1 for released in results if released.reserved) == 1
        assert _level(race_uow, item_id).reserved_stock == 3


class TestPaymentRace:
    def test_concurrent_payments_cannot_overpay(self, race_uow):
        clock = SystemClock()
        item_id = _register(race_uow, clock, stock=1, price="50.00")
        sale = PurchaseTransactionProcessor(race_uow, clock).create_direct_sale(
            uuid4(), [CartLine(item_id, 1)], "CASH", "USD", "36.50"
        )
        reconciliation = PaymentReconciliationEngine(race_uow, clock)

        results, errors = _race(
            2,
            lambda i: reconciliation.record_payment(sale.sale_id, "30.00", "USD", "36.50", "CASH"),
            (OverpaymentError, AlreadyFullyPaidError),
        )

        assert len(results) == 1
        assert isinstance(errors[0], OverpaymentError)
        balance = reconciliation.get_remaining_balance(sale.sale_id)
        assert balance.total_paid == Money.of("30.00", "USD")
        assert not balance.is_paid
