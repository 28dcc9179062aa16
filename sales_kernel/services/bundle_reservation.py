"""
BundleReservationEngine -- all-or-nothing stock reservation for bundles.

Responsibility:
    Reserves stock for every line of a bundle.  Each line is reserved in its
    own short transaction so a large bundle never holds many row locks at
    once; a failure part-way through is undone by releasing, in reverse
    order, what the pass already reserved.

Architecture position:
    Kernel > Services.  Owns its transactions through a UnitOfWork and
    drives StockLedger inside them.

Invariants enforced:
    - Lines are merged per item and reserved in ascending item id order.
    - After a failed pass every reservation it made has been released, or
      PartialReservationFailureError names the ones that could not be.
    - A bundle is reserved at most once; is_reserved tracks it.
    - Reserve and release passes claim the bundle under a row lock
      (RESERVING / RELEASING) before touching stock.

Failure modes:
    - BundleNotFoundError: unknown bundle.
    - BundleTransitionInProgressError: another pass owns the bundle.
    - BundleStockUnavailableError: a line could not be reserved (earlier
      lines already released).
    - PartialReservationFailureError: a compensating release failed.
      Logged at CRITICAL; requires operator action.
"""

from collections.abc import Sequence
from decimal import Decimal
from uuid import UUID

from sales_kernel.db.unit_of_work import UnitOfWork
from sales_kernel.domain.clock import Clock, SystemClock
from sales_kernel.domain.dtos import BundleLineSpec, BundleReservation, BundleStatus
from sales_kernel.domain.values import Currency, Money, as_currency, parse_rate
from sales_kernel.exceptions import (
    BundleNotFoundError,
    BundleStockUnavailableError,
    BundleTransitionInProgressError,
    CurrencyMismatchError,
    InsufficientStockError,
    InvalidQuantityError,
    ItemNotFoundError,
    PartialReservationFailureError,
    SalesKernelError,
)
from sales_kernel.logging_config import LogContext, get_logger
from sales_kernel.models.bundle import Bundle, BundleLine
from sales_kernel.models.inventory import InventoryItem
from sales_kernel.services.stock_ledger import StockLedger

logger = get_logger("services.bundle_reservation")


def _reference(bundle_id: UUID) -> str:
    return f"bundle:{bundle_id}"


class BundleReservationEngine:
    """Creates bundles and reserves or releases their stock."""

    def __init__(self, uow: UnitOfWork, clock: Clock | None = None):
        self._uow = uow
        self._clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Bundle lifecycle
    # ------------------------------------------------------------------

    def create_bundle(
        self,
        name: str,
        lines: Sequence[BundleLineSpec],
        currency: Currency | str,
        conversion_rate: Decimal | str | int | None = None,
    ) -> BundleReservation:
        """
        Persist a bundle and run its single reservation pass.

        If the pass fails the bundle is kept, marked INACTIVE, and the
        reservation error is re-raised.
        """
        if not lines:
            raise InvalidQuantityError(0, "bundle must contain at least one line")
        bundle_currency = as_currency(currency)
        rate = parse_rate(conversion_rate) if conversion_rate is not None else None
        for spec in lines:
            if spec.override_price is not None and spec.override_price.currency != bundle_currency:
                raise CurrencyMismatchError(
                    spec.override_price.currency.code, bundle_currency.code, "price"
                )

        with self._uow.begin() as session:
            for item_id in sorted({spec.item_id for spec in lines}, key=str):
                if session.get(InventoryItem, item_id) is None:
                    raise ItemNotFoundError(str(item_id))

            bundle = Bundle(
                name=name,
                currency=bundle_currency.code,
                conversion_rate=rate,
                status=BundleStatus.ACTIVE.value,
                is_reserved=False,
            )
            for number, spec in enumerate(lines, start=1):
                bundle.lines.append(
                    BundleLine(
                        line_number=number,
                        item_id=spec.item_id,
                        quantity=spec.quantity,
                        override_price_minor=(
                            spec.override_price.minor_units if spec.override_price is not None else None
                        ),
                    )
                )
            session.add(bundle)
            session.flush()
            bundle_id = bundle.id

        logger.info("bundle_created", extra={"bundle_id": str(bundle_id), "line_count": len(lines)})

        try:
            return self.reserve_for_bundle(bundle_id)
        except SalesKernelError:
            self._set_status(bundle_id, BundleStatus.INACTIVE)
            raise

    def _set_status(self, bundle_id: UUID, status: BundleStatus, reserved: bool | None = None) -> None:
        with self._uow.begin() as session:
            bundle = session.get(Bundle, bundle_id, with_for_update=True)
            if bundle is None:
                raise BundleNotFoundError(str(bundle_id))
            bundle.status = status.value
            if reserved is not None:
                bundle.is_reserved = reserved

    def nominal_price(self, bundle_id: UUID) -> Money:
        """Sum of line overrides, else item base price times quantity, in the bundle currency."""
        with self._uow.begin() as session:
            bundle = session.get(Bundle, bundle_id)
            if bundle is None:
                raise BundleNotFoundError(str(bundle_id))
            total = Money.zero(bundle.currency)
            for line in bundle.lines:
                if line.override_price is not None:
                    total = total + line.override_price
                    continue
                item = session.get(InventoryItem, line.item_id)
                price = item.base_price
                if price.currency != total.currency:
                    if bundle.conversion_rate is None:
                        raise CurrencyMismatchError(price.currency.code, bundle.currency, "price")
                    price = price.convert(bundle.currency, bundle.conversion_rate)
                total = total + price * line.quantity
            return total

    # ------------------------------------------------------------------
    # Reservation pass
    # ------------------------------------------------------------------

    @staticmethod
    def _lock_bundle(session, bundle_id: UUID) -> Bundle:
        bundle = session.get(Bundle, bundle_id, with_for_update=True, populate_existing=True)
        if bundle is None:
            raise BundleNotFoundError(str(bundle_id))
        if bundle.status in (BundleStatus.RESERVING, BundleStatus.RELEASING):
            raise BundleTransitionInProgressError(str(bundle_id), bundle.status)
        return bundle

    @staticmethod
    def _plan(bundle: Bundle) -> list[tuple[UUID, int]]:
        quantities = bundle.quantities_by_item()
        return [(item_id, quantities[item_id]) for item_id in sorted(quantities, key=str)]

    def reserve_for_bundle(self, bundle_id: UUID) -> BundleReservation:
        """
        Reserve every line of a bundle, or none of them.

        The bundle row is locked and moved to RESERVING before any line is
        touched, so only one pass runs per bundle.  On failure it returns to
        the status it had before the pass.

        Raises:
            BundleNotFoundError: unknown bundle.
            BundleTransitionInProgressError: another pass owns the bundle.
            BundleStockUnavailableError: a line lacked available stock.
            PartialReservationFailureError: compensation failed.
        """
        with LogContext.bind(bundle_id=str(bundle_id)):
            with self._uow.begin() as session:
                bundle = self._lock_bundle(session, bundle_id)
                plan = self._plan(bundle)
                if bundle.is_reserved:
                    logger.info("bundle_already_reserved", extra={"bundle_id": str(bundle_id)})
                    return BundleReservation(bundle_id=bundle_id, reserved=tuple(plan))
                previous = BundleStatus(bundle.status)
                bundle.status = BundleStatus.RESERVING.value

            try:
                reserved = self._reserve_lines(bundle_id, plan)
            except SalesKernelError:
                self._set_status(bundle_id, previous)
                raise

            self._set_status(bundle_id, BundleStatus.ACTIVE, reserved=True)
            logger.info(
                "bundle_reserved",
                extra={"bundle_id": str(bundle_id), "line_count": len(reserved)},
            )
            return BundleReservation(bundle_id=bundle_id, reserved=tuple(reserved))

    def _reserve_lines(self, bundle_id: UUID, plan: list[tuple[UUID, int]]) -> list[tuple[UUID, int]]:
        reserved: list[tuple[UUID, int]] = []
        for item_id, quantity in plan:
            try:
                with self._uow.begin() as session:
                    StockLedger(session, self._clock).reserve(
                        item_id, quantity, reference=_reference(bundle_id)
                    )
            except InsufficientStockError as exc:
                logger.warning(
                    "bundle_reservation_failed",
                    extra={
                        "bundle_id": str(bundle_id),
                        "failed_item_id": str(item_id),
                        "available": exc.available,
                        "requested": exc.requested,
                        "compensating": len(reserved),
                    },
                )
                self._compensate(bundle_id, list(reversed(reserved)))
                raise BundleStockUnavailableError(
                    str(bundle_id), str(item_id), exc.available, exc.requested
                ) from exc
            except SalesKernelError as exc:
                logger.warning(
                    "bundle_reservation_failed",
                    extra={
                        "bundle_id": str(bundle_id),
                        "failed_item_id": str(item_id),
                        "error_code": exc.code,
                        "compensating": len(reserved),
                    },
                )
                self._compensate(bundle_id, list(reversed(reserved)))
                raise
            reserved.append((item_id, quantity))
        return reserved

    def _compensate(self, bundle_id: UUID, lines: list[tuple[UUID, int]]) -> None:
        """Release ``lines`` in the given order, each in its own transaction."""
        unreleased: list[tuple[UUID, int]] = []
        for item_id, quantity in lines:
            try:
                with self._uow.begin() as session:
                    StockLedger(session, self._clock).release(
                        item_id, quantity, reference=_reference(bundle_id)
                    )
            except SalesKernelError:
                logger.error(
                    "bundle_compensation_step_failed",
                    extra={"bundle_id": str(bundle_id), "failed_item_id": str(item_id), "quantity": quantity},
                    exc_info=True,
                )
                unreleased.append((item_id, quantity))

        if unreleased:
            logger.critical(
                "bundle_compensation_failed",
                extra={
                    "bundle_id": str(bundle_id),
                    "unreleased": [[str(item_id), qty] for item_id, qty in unreleased],
                },
            )
            raise PartialReservationFailureError(str(bundle_id), unreleased)

    def release_bundle(self, bundle_id: UUID) -> BundleReservation:
        """
        Abandon a bundle: release its reservation and mark it INACTIVE.

        The bundle is locked and moved to RELEASING first, so concurrent
        calls release at most once.  Lines are then released in ascending
        item id order, each in its own transaction.  A bundle that holds no
        reservation is only deactivated.

        Raises:
            BundleNotFoundError: unknown bundle.
            BundleTransitionInProgressError: another pass owns the bundle.
            PartialReservationFailureError: some lines could not be released;
                the bundle is INACTIVE and the error names them.
        """
        with LogContext.bind(bundle_id=str(bundle_id)):
            with self._uow.begin() as session:
                bundle = self._lock_bundle(session, bundle_id)
                plan = self._plan(bundle) if bundle.is_reserved else []
                bundle.status = (BundleStatus.RELEASING if plan else BundleStatus.INACTIVE).value

            if plan:
                try:
                    self._compensate(bundle_id, plan)
                except SalesKernelError:
                    self._set_status(bundle_id, BundleStatus.INACTIVE, reserved=False)
                    raise
                self._set_status(bundle_id, BundleStatus.INACTIVE, reserved=False)

            logger.info(
                "bundle_released",
                extra={"bundle_id": str(bundle_id), "line_count": len(plan)},
            )
            return BundleReservation(bundle_id=bundle_id, reserved=tuple(plan))
