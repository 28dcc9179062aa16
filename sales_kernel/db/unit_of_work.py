"""
Module: sales_kernel.db.unit_of_work
Responsibility: One database transaction per engine operation, with bounded
    lock waits and translation of SQLAlchemy failures into typed kernel
    errors.
Architecture position: Kernel > DB.  Used by every engine in services/.
    Services below the engines (StockLedger) never commit; they flush into
    the session the UnitOfWork hands them.

Failure modes:
    - BusyError when a row lock could not be acquired within
      lock_timeout_seconds (PostgreSQL 55P03, SQLite "database is locked").
    - PersistenceError for any other SQLAlchemyError.
    - Kernel errors raised inside the block propagate unchanged after
      rollback.
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from sales_kernel.exceptions import BusyError, PersistenceError, SalesKernelError
from sales_kernel.logging_config import get_logger

logger = get_logger("db.unit_of_work")

# PostgreSQL SQLSTATE for lock_not_available
_PG_LOCK_NOT_AVAILABLE = "55P03"


def is_lock_timeout(exc: OperationalError) -> bool:
    """True when ``exc`` reports a lock wait that ran out of time."""
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) == _PG_LOCK_NOT_AVAILABLE:
        return True
    return "database is locked" in str(orig or exc).lower()


class UnitOfWork:
    """
    Transaction boundary for engine operations.

    Contract:
        ``with uow.begin() as session:`` yields a fresh Session.  On normal
        exit the session is committed; on any exception it is rolled back,
        closed, and the error is re-raised (translated if it came from the
        database driver).

    Guarantees:
        - A kernel error raised inside the block leaves no partial writes.
        - Lock waits are bounded by lock_timeout_seconds.
        - Nothing is retried here; BusyError.retryable tells the caller.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        lock_timeout_seconds: float = 3.0,
    ):
        self._session_factory = session_factory
        self.lock_timeout_seconds = lock_timeout_seconds

    @property
    def session_factory(self) -> sessionmaker[Session]:
        return self._session_factory

    def _apply_lock_timeout(self, session: Session) -> None:
        if session.get_bind().dialect.name != "postgresql":
            return
        millis = int(self.lock_timeout_seconds * 1000)
        # SET LOCAL does not accept bind parameters
        session.execute(text(f"SET LOCAL lock_timeout = '{millis}ms'"))

    @contextmanager
    def begin(self) -> Generator[Session, None, None]:
        session = self._session_factory()
        try:
            self._apply_lock_timeout(session)
            yield session
            session.commit()
        except SalesKernelError as exc:
            session.rollback()
            logger.info(
                "transaction_rolled_back",
                extra={"error_code": exc.code},
            )
            raise
        except OperationalError as exc:
            session.rollback()
            if is_lock_timeout(exc):
                logger.warning(
                    "lock_wait_timeout",
                    extra={"lock_timeout_seconds": self.lock_timeout_seconds},
                )
                raise BusyError(self.lock_timeout_seconds) from exc
            logger.error("transaction_failed", exc_info=True)
            raise PersistenceError(str(exc.orig or exc)) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("transaction_failed", exc_info=True)
            raise PersistenceError(str(exc)) from exc
        except Exception:
            session.rollback()
            logger.warning("transaction_rolled_back", exc_info=True)
            raise
        finally:
            session.close()
