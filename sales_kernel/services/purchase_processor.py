"""
PurchaseTransactionProcessor -- atomic checkout.

Responsibility:
    Turns a cart (or a bundle) into a Sale with frozen line prices and
    consumes the stock for it, all in one transaction: no sale without its
    stock consumption, no stock consumption without its sale.

Architecture position:
    Kernel > Services.  Owns its transactions through a UnitOfWork and
    drives StockLedger inside them.

Invariants enforced:
    - Items are locked in ascending id order before anything is checked.
    - Line prices are frozen at sale time; the sale total is the exact sum
      of line totals in integer minor units.
    - Any failure rolls the whole checkout back.

Failure modes:
    - InsufficientStockError / ItemNotFoundError from the stock check.
    - BundleNotFoundError for an unknown bundle, BundleInactiveError for an
      INACTIVE one.
    - InvalidStatusError for an unknown payment method or sale status.
    - BusyError / PersistenceError from the UnitOfWork.
"""

from collections.abc import Sequence
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from sales_kernel.db.unit_of_work import UnitOfWork
from sales_kernel.domain.clock import Clock, SystemClock
from sales_kernel.domain.dtos import (
    BundleStatus,
    CartLine,
    PaymentMethod,
    PaymentStatus,
    SaleInfo,
    SaleStatus,
    coerce_enum,
    require_positive_quantity,
)
from sales_kernel.domain.values import Currency, Money, as_currency, parse_rate
from sales_kernel.exceptions import (
    BundleInactiveError,
    BundleNotFoundError,
    BundleTransitionInProgressError,
    CurrencyMismatchError,
    InsufficientStockError,
    InvalidQuantityError,
)
from sales_kernel.logging_config import LogContext, get_logger
from sales_kernel.models.bundle import Bundle
from sales_kernel.models.inventory import InventoryItem
from sales_kernel.models.sale import Sale, SaleLine
from sales_kernel.services.payment_reconciliation import lock_sale, rederive_payment_state
from sales_kernel.services.stock_ledger import StockLedger

logger = get_logger("services.purchase_processor")


def price_in(amount: Money, currency: Currency, rate: Decimal) -> Money:
    """``amount`` expressed in ``currency`` at the sale's BS-per-USD rate."""
    if amount.currency == currency:
        return amount
    return amount.convert(currency, rate)


class PurchaseTransactionProcessor:
    """Creates sales and updates their lifecycle status."""

    def __init__(self, uow: UnitOfWork, clock: Clock | None = None):
        self._uow = uow
        self._clock = clock or SystemClock()

    def _check_stock(self, items: dict[UUID, InventoryItem], requested: dict[UUID, int]) -> None:
        for item_id in sorted(requested, key=str):
            item = items[item_id]
            # Checked against physical stock; reservations do not block a direct sale
            if item.current_stock < requested[item_id]:
                raise InsufficientStockError(str(item.id), item.current_stock, requested[item_id])

    def _new_sale(
        self,
        client_id: UUID,
        currency: Currency,
        rate: Decimal,
        payment_method: PaymentMethod,
        transaction_reference: str | None,
        bundle_id: UUID | None = None,
    ) -> Sale:
        return Sale(
            client_id=client_id,
            bundle_id=bundle_id,
            total_minor=0,
            currency=currency.code,
            conversion_rate=rate,
            status=SaleStatus.COMPLETED.value,
            is_paid=False,
            payment_status=PaymentStatus.PENDING.value,
            payment_method=payment_method.value,
            transaction_reference=transaction_reference,
            purchase_date=self._clock.now(),
        )

    def _finish(self, session: Session, sale: Sale, lines: list[SaleLine]) -> None:
        total = Money.zero(sale.currency)
        for number, line in enumerate(lines, start=1):
            line.line_number = number
            sale.lines.append(line)
            total = total + Money.from_minor(line.total_price_minor, sale.currency)
        sale.total_minor = total.minor_units
        session.add(sale)
        session.flush()
        rederive_payment_state(session, sale)

    def create_direct_sale(
        self,
        client_id: UUID,
        cart_lines: Sequence[CartLine],
        payment_method: PaymentMethod | str,
        currency_type: Currency | str,
        conversion_rate: Decimal | str | int,
        transaction_reference: str | None = None,
    ) -> SaleInfo:
        """
        Sell the cart: freeze prices, persist the sale, consume the stock.

        Raises:
            InvalidQuantityError: empty cart.
            ItemNotFoundError / InsufficientStockError: stock check failed.
            CurrencyMismatchError: a cart price override is not in the sale
                currency.
        """
        if not cart_lines:
            raise InvalidQuantityError(0, "cart must contain at least one line")
        currency = as_currency(currency_type)
        rate = parse_rate(conversion_rate)
        method = coerce_enum(PaymentMethod, payment_method)
        for line in cart_lines:
            if line.unit_price is not None and line.unit_price.currency != currency:
                raise CurrencyMismatchError(line.unit_price.currency.code, currency.code, "price")

        requested: dict[UUID, int] = {}
        for line in cart_lines:
            requested[line.item_id] = requested.get(line.item_id, 0) + line.quantity

        with self._uow.begin() as session:
            ledger = StockLedger(session, self._clock)
            items = ledger.lock_items(requested)
            self._check_stock(items, requested)

            sale = self._new_sale(client_id, currency, rate, method, transaction_reference)
            lines = []
            for cart_line in cart_lines:
                item = items[cart_line.item_id]
                unit = cart_line.unit_price or price_in(item.base_price, currency, rate)
                lines.append(
                    SaleLine(
                        item_id=item.id,
                        quantity=cart_line.quantity,
                        unit_price_minor=unit.minor_units,
                        total_price_minor=(unit * cart_line.quantity).minor_units,
                    )
                )
            self._finish(session, sale, lines)

            with LogContext.bind(sale_id=str(sale.id)):
                for cart_line in cart_lines:
                    ledger.consume(cart_line.item_id, cart_line.quantity, reference=str(sale.id))

                logger.info(
                    "sale_created",
                    extra={
                        "sale_id": str(sale.id),
                        "line_count": len(lines),
                        "total": str(sale.total.amount),
                        "currency": sale.currency,
                        "conversion_rate": str(rate),
                    },
                )
            return SaleInfo.from_model(sale)

    def create_bundle_sale(
        self,
        client_id: UUID,
        bundle_id: UUID,
        payment_method: PaymentMethod | str,
        currency_type: Currency | str,
        conversion_rate: Decimal | str | int,
        quantity: int = 1,
        transaction_reference: str | None = None,
    ) -> SaleInfo:
        """
        Sell ``quantity`` copies of a bundle.

        Line prices come from the bundle's overrides, else from item base
        prices; consumption draws down the bundle's reservation.  The
        bundle row is locked before its items.

        Raises:
            BundleNotFoundError: unknown bundle.
            BundleInactiveError: the bundle was released or never reserved.
            BundleTransitionInProgressError: a reserve or release pass owns it.
            InsufficientStockError: not enough stock for ``quantity`` copies.
        """
        require_positive_quantity(quantity)
        currency = as_currency(currency_type)
        rate = parse_rate(conversion_rate)
        method = coerce_enum(PaymentMethod, payment_method)

        with LogContext.bind(bundle_id=str(bundle_id)), self._uow.begin() as session:
            bundle = session.get(Bundle, bundle_id, with_for_update=True, populate_existing=True)
            if bundle is None:
                raise BundleNotFoundError(str(bundle_id))
            if bundle.status in (BundleStatus.RESERVING, BundleStatus.RELEASING):
                raise BundleTransitionInProgressError(str(bundle_id), bundle.status)
            if not bundle.is_active:
                raise BundleInactiveError(str(bundle_id))

            requested = {item_id: qty * quantity for item_id, qty in bundle.quantities_by_item().items()}
            ledger = StockLedger(session, self._clock)
            items = ledger.lock_items(requested)
            self._check_stock(items, requested)

            bundle_rate = bundle.conversion_rate or rate
            sale = self._new_sale(client_id, currency, rate, method, transaction_reference, bundle_id=bundle.id)
            lines = []
            for bundle_line in bundle.lines:
                item = items[bundle_line.item_id]
                line_quantity = bundle_line.quantity * quantity
                if bundle_line.override_price is not None:
                    line_total = price_in(bundle_line.override_price, currency, bundle_rate) * quantity
                else:
                    line_total = price_in(item.base_price, currency, rate) * line_quantity
                lines.append(
                    SaleLine(
                        item_id=item.id,
                        quantity=line_quantity,
                        # total_price is authoritative when an override does not divide evenly
                        unit_price_minor=line_total.minor_units // line_quantity,
                        total_price_minor=line_total.minor_units,
                    )
                )
            self._finish(session, sale, lines)

            with LogContext.bind(sale_id=str(sale.id)):
                for item_id in sorted(requested, key=str):
                    ledger.consume(item_id, requested[item_id], reference=str(sale.id))
                bundle.is_reserved = False
                session.flush()

                logger.info(
                    "bundle_sale_created",
                    extra={
                        "sale_id": str(sale.id),
                        "bundle_id": str(bundle.id),
                        "quantity": quantity,
                        "total": str(sale.total.amount),
                        "currency": sale.currency,
                    },
                )
            return SaleInfo.from_model(sale)

    def update_status(self, sale_id: UUID, new_status: SaleStatus | str) -> SaleInfo:
        """
        Move a sale to ``new_status``.  No stock side effects.

        Raises:
            InvalidStatusError: status outside the five sale statuses.
            SaleNotFoundError: unknown sale.
        """
        status = coerce_enum(SaleStatus, new_status)
        with LogContext.bind(sale_id=str(sale_id)), self._uow.begin() as session:
            sale = lock_sale(session, sale_id)
            previous = sale.status
            sale.status = status.value
            session.flush()
            rederive_payment_state(session, sale)
            logger.info(
                "sale_status_updated",
                extra={
                    "sale_id": str(sale.id),
                    "from_status": previous,
                    "to_status": status.value,
                    "payment_status": sale.payment_status,
                },
            )
            return SaleInfo.from_model(sale)
