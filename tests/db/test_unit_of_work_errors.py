"""
Tests for UnitOfWork commit/rollback and error translation.
"""

import sqlite3

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from sales_kernel.db.unit_of_work import is_lock_timeout
from sales_kernel.domain.values import Money
from sales_kernel.exceptions import BusyError, InsufficientStockError, PersistenceError
from sales_kernel.models.inventory import InventoryItem
from sales_kernel.services.stock_ledger import StockLedger


def count_items(uow) -> int:
    with uow.begin() as session:
        return session.execute(select(func.count()).select_from(InventoryItem)).scalar()


def register(session, clock, sku="SKU-X"):
    return StockLedger(session, clock).register_item(
        sku=sku, item_name="Widget", base_price=Money.of("1.00", "USD"), initial_stock=5
    )


class _PgLockError(Exception):
    pgcode = "55P03"


class TestCommitAndRollback:
    def test_commits_on_clean_exit(self, uow, clock):
        with uow.begin() as session:
            register(session, clock)

        assert count_items(uow) == 1

    def test_kernel_error_rolls_back_and_propagates(self, uow, clock):
        with pytest.raises(InsufficientStockError):
            with uow.begin() as session:
                level = register(session, clock)
                raise InsufficientStockError(level.item_id, 5, 6)

        assert count_items(uow) == 0

    def test_other_exceptions_propagate_unchanged(self, uow, clock):
        with pytest.raises(KeyError):
            with uow.begin() as session:
                register(session, clock)
                raise KeyError("boom")

        assert count_items(uow) == 0


class TestTranslation:
    def test_integrity_error_becomes_persistence_error(self, uow, make_item):
        make_item(sku="DUP-1")

        with pytest.raises(PersistenceError) as exc_info:
            make_item(sku="DUP-1")

        assert not exc_info.value.retryable
        assert count_items(uow) == 1

    def test_locked_database_becomes_busy_error(self, uow):
        with pytest.raises(BusyError) as exc_info:
            with uow.begin():
                raise OperationalError("UPDATE inventory_items", {}, sqlite3.OperationalError("database is locked"))

        assert exc_info.value.retryable
        assert exc_info.value.lock_timeout_seconds == 1.0

    def test_other_operational_error_becomes_persistence_error(self, uow):
        with pytest.raises(PersistenceError):
            with uow.begin():
                raise OperationalError("SELECT", {}, sqlite3.OperationalError("disk I/O error"))

    def test_busy_is_logged(self, uow, captured_logs):
        with pytest.raises(BusyError):
            with uow.begin():
                raise OperationalError("UPDATE", {}, sqlite3.OperationalError("database is locked"))

        warnings = [r for r in captured_logs() if r["message"] == "lock_wait_timeout"]
        assert warnings and warnings[0]["level"] == "WARNING"


class TestIsLockTimeout:
    def test_postgres_lock_not_available(self):
        exc = OperationalError("SELECT ... FOR UPDATE", {}, _PgLockError("canceling statement due to lock timeout"))
        assert is_lock_timeout(exc)

    def test_sqlite_locked(self):
        assert is_lock_timeout(OperationalError("x", {}, sqlite3.OperationalError("database is locked")))

    def test_unrelated(self):
        assert not is_lock_timeout(OperationalError("x", {}, sqlite3.OperationalError("no such table: sales")))
