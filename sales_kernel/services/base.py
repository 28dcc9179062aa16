"""
BaseService -- abstract base for flush-only kernel services.

Responsibility:
    Provides the common constructor and session-handling contract for
    services that write inside a transaction they do not own.  Such services
    receive a SQLAlchemy ``Session`` and use ``session.flush()`` -- never
    ``session.commit()``.

Architecture position:
    Kernel > Services.  StockLedger extends this class.  The engines
    (BundleReservationEngine, PurchaseTransactionProcessor,
    PaymentReconciliationEngine, PaymentPlanService) own their transactions
    through a UnitOfWork instead.

Failure modes:
    - If a subclass calls ``session.commit()``, a multi-line sale could
      persist half its stock consumption.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from sales_kernel.db.base import Base
from sales_kernel.domain.clock import Clock, SystemClock

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for flush-only services.

    Guarantees:
        - The service never calls ``session.commit()`` or
          ``session.rollback()``; the caller controls transaction
          boundaries.

    Non-goals:
        - Does NOT provide read-only query methods; those belong in
          ``sales_kernel/selectors/``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
