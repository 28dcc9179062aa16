"""
Typed Exception Hierarchy for the Sales Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the ledger (API handlers, background jobs) must react differently
to "not enough stock" than to "the row is locked, try again". Parsing message
strings for that is fragile, so every failure has:

  1. A TYPED exception class (catch by type, not message)
  2. A CODE class attribute (machine-readable, API-safe)
  3. A RETRYABLE class attribute (is it safe to retry with backoff?)
  4. Structured DATA as instance attributes

Example:

    try:
        processor.create_direct_sale(...)
    except InsufficientStockError as e:
        return {"error": e.code, "item": e.item_id, "available": e.available}
    except BusyError:
        schedule_retry()

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    SalesKernelError (base)
    |
    +-- MoneyError
    |   +-- InvalidAmountError
    |   +-- InvalidRateError
    |   +-- InvalidCurrencyError
    |   +-- CurrencyMismatchError
    |
    +-- StockError
    |   +-- InvalidQuantityError
    |   +-- ItemNotFoundError
    |   +-- InsufficientStockError
    |   +-- LedgerCorruptionError
    |
    +-- BundleError
    |   +-- BundleNotFoundError
    |   +-- BundleStockUnavailableError
    |   +-- PartialReservationFailureError
    |   +-- BundleInactiveError
    |   +-- BundleTransitionInProgressError
    |
    +-- SaleError
    |   +-- SaleNotFoundError
    |   +-- InvalidStatusError
    |   +-- SaleCancelledError
    |
    +-- PaymentError
    |   +-- PaymentNotFoundError
    |   +-- AlreadyFullyPaidError
    |   +-- OverpaymentError
    |
    +-- ConcurrencyError
    |   +-- BusyError
    |
    +-- PersistenceError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                          | Retryable | When Raised
-------------|-------------------------------|-----------|---------------------------------
Money        | INVALID_AMOUNT                | no        | >2 decimals, negative, float
             | INVALID_RATE                  | no        | Rate zero/negative/non-numeric
             | INVALID_CURRENCY              | no        | Currency not USD/BS
             | CURRENCY_MISMATCH             | no        | Arithmetic across currencies
-------------|-------------------------------|-----------|---------------------------------
Stock        | INVALID_QUANTITY              | no        | Quantity not a positive int
             | ITEM_NOT_FOUND                | no        | Unknown inventory item
             | INSUFFICIENT_STOCK            | no        | Not enough stock at lock time
             | LEDGER_CORRUPTION             | no        | reserved > current after write
-------------|-------------------------------|-----------|---------------------------------
Bundle       | BUNDLE_NOT_FOUND              | no        | Unknown bundle
             | BUNDLE_STOCK_UNAVAILABLE      | no        | A line could not be reserved
             | PARTIAL_RESERVATION_FAILURE   | no        | Compensation failed (operator)
             | BUNDLE_INACTIVE               | no        | Released or failed bundle sold
             | BUNDLE_TRANSITION_IN_PROGRESS | YES       | Reserve/release pass running
-------------|-------------------------------|-----------|---------------------------------
Sale         | SALE_NOT_FOUND                | no        | Unknown sale
             | INVALID_STATUS                | no        | Status outside the enumeration
             | SALE_CANCELLED                | no        | Payment against cancelled sale
-------------|-------------------------------|-----------|---------------------------------
Payment      | PAYMENT_NOT_FOUND             | no        | Unknown payment/installment
             | ALREADY_FULLY_PAID            | no        | Sale already settled
             | OVERPAYMENT                   | no        | Credit exceeds balance
-------------|-------------------------------|-----------|---------------------------------
Concurrency  | BUSY                          | YES       | Lock wait timed out
Persistence  | PERSISTENCE_ERROR             | no        | Storage failure
Immutability | IMMUTABILITY_VIOLATION        | no        | Edit of an append-only row

===============================================================================
"""

from decimal import Decimal


class SalesKernelError(Exception):
    """
    Base exception for all sales kernel errors.

    All subclasses must have a ``code`` class attribute. ``retryable`` tells
    callers whether retrying with backoff can succeed.
    """

    code: str = "SALES_KERNEL_ERROR"
    retryable: bool = False


# Money-related exceptions


class MoneyError(SalesKernelError):
    """Base exception for money and currency errors."""

    code: str = "MONEY_ERROR"


class InvalidAmountError(MoneyError):
    """Amount is malformed, has too many decimals, or is negative."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount: object, reason: str):
        self.amount = str(amount)
        self.reason = reason
        super().__init__(f"Invalid amount {amount!r}: {reason}")


class InvalidRateError(MoneyError):
    """Conversion rate is not a positive decimal."""

    code: str = "INVALID_RATE"

    def __init__(self, rate: object):
        self.rate = str(rate)
        super().__init__(f"Conversion rate must be a positive decimal, got {rate!r}")


class InvalidCurrencyError(MoneyError):
    """Currency code is not supported by the registry."""

    code: str = "INVALID_CURRENCY"

    def __init__(self, currency: object):
        self.currency = str(currency)
        super().__init__(f"Unsupported currency code: {currency!r}")


class CurrencyMismatchError(MoneyError):
    """Arithmetic or comparison across two different currencies."""

    code: str = "CURRENCY_MISMATCH"

    def __init__(self, left: str, right: str, operation: str):
        self.left = left
        self.right = right
        self.operation = operation
        super().__init__(f"Cannot {operation} {left} and {right} without conversion")


# Stock-related exceptions


class StockError(SalesKernelError):
    """Base exception for stock ledger errors."""

    code: str = "STOCK_ERROR"


class InvalidQuantityError(StockError):
    """Quantity is not a positive integer (or a zero adjustment)."""

    code: str = "INVALID_QUANTITY"

    def __init__(self, quantity: object, reason: str = "must be a positive integer"):
        self.quantity = quantity
        self.reason = reason
        super().__init__(f"Invalid quantity {quantity!r}: {reason}")


class ItemNotFoundError(StockError):
    """Inventory item does not exist."""

    code: str = "ITEM_NOT_FOUND"

    def __init__(self, item_id: str):
        self.item_id = str(item_id)
        super().__init__(f"Inventory item not found: {item_id}")


class InsufficientStockError(StockError):
    """Requested quantity exceeds what is available at lock time."""

    code: str = "INSUFFICIENT_STOCK"

    def __init__(self, item_id: str, available: int, requested: int):
        self.item_id = str(item_id)
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for item {item_id}: "
            f"available={available}, requested={requested}"
        )


class LedgerCorruptionError(StockError):
    """
    The reserved <= current invariant was violated inside a transaction.

    Fatal: the transaction is rolled back and the condition is logged for
    operator investigation. It is never repaired automatically.
    """

    code: str = "LEDGER_CORRUPTION"

    def __init__(self, item_id: str, current_stock: int, reserved_stock: int):
        self.item_id = str(item_id)
        self.current_stock = current_stock
        self.reserved_stock = reserved_stock
        super().__init__(
            f"Ledger invariant violated for item {item_id}: "
            f"current_stock={current_stock}, reserved_stock={reserved_stock}"
        )


# Bundle-related exceptions


class BundleError(SalesKernelError):
    """Base exception for bundle reservation errors."""

    code: str = "BUNDLE_ERROR"


class BundleNotFoundError(BundleError):
    """Bundle does not exist."""

    code: str = "BUNDLE_NOT_FOUND"

    def __init__(self, bundle_id: str):
        self.bundle_id = str(bundle_id)
        super().__init__(f"Bundle not found: {bundle_id}")


class BundleStockUnavailableError(BundleError):
    """
    One line of a bundle could not be reserved.

    Every reservation made earlier in the same call has already been released
    when this is raised.
    """

    code: str = "BUNDLE_STOCK_UNAVAILABLE"

    def __init__(
        self,
        bundle_id: str,
        failed_item_id: str,
        available: int,
        requested: int,
    ):
        self.bundle_id = str(bundle_id)
        self.failed_item_id = str(failed_item_id)
        self.available = available
        self.requested = requested
        super().__init__(
            f"Bundle {bundle_id} cannot be reserved: item {failed_item_id} "
            f"has {available} available, {requested} requested"
        )


class PartialReservationFailureError(BundleError):
    """
    A compensating release failed after a bundle reservation failure.

    Stock may be left over-reserved. Requires operator intervention.
    """

    code: str = "PARTIAL_RESERVATION_FAILURE"

    def __init__(self, bundle_id: str, unreleased: list[tuple[str, int]]):
        self.bundle_id = str(bundle_id)
        self.unreleased = [(str(item_id), qty) for item_id, qty in unreleased]
        super().__init__(
            f"Bundle {bundle_id}: compensation failed, "
            f"{len(self.unreleased)} reservation(s) left in place"
        )


class BundleInactiveError(BundleError):
    """Bundle is INACTIVE: it holds no reservation and cannot be sold."""

    code: str = "BUNDLE_INACTIVE"

    def __init__(self, bundle_id: str):
        self.bundle_id = str(bundle_id)
        super().__init__(f"Bundle {bundle_id} is inactive")


class BundleTransitionInProgressError(BundleError):
    """
    Another call is reserving or releasing the bundle.

    Transient: safe to retry once that pass has finished.
    """

    code: str = "BUNDLE_TRANSITION_IN_PROGRESS"
    retryable: bool = True

    def __init__(self, bundle_id: str, status: str):
        self.bundle_id = str(bundle_id)
        self.status = status
        super().__init__(f"Bundle {bundle_id} is {status}")


# Sale-related exceptions


class SaleError(SalesKernelError):
    """Base exception for sale errors."""

    code: str = "SALE_ERROR"


class SaleNotFoundError(SaleError):
    """Sale does not exist."""

    code: str = "SALE_NOT_FOUND"

    def __init__(self, sale_id: str):
        self.sale_id = str(sale_id)
        super().__init__(f"Sale not found: {sale_id}")


class InvalidStatusError(SaleError):
    """Status value is not part of the allowed enumeration."""

    code: str = "INVALID_STATUS"

    def __init__(self, status: object, allowed: list[str]):
        self.status = str(status)
        self.allowed = allowed
        super().__init__(f"Invalid status {status!r}; allowed: {', '.join(allowed)}")


class SaleCancelledError(SaleError):
    """Operation is not permitted on a cancelled sale."""

    code: str = "SALE_CANCELLED"

    def __init__(self, sale_id: str):
        self.sale_id = str(sale_id)
        super().__init__(f"Sale {sale_id} is cancelled")


# Payment-related exceptions


class PaymentError(SalesKernelError):
    """Base exception for payment errors."""

    code: str = "PAYMENT_ERROR"


class PaymentNotFoundError(PaymentError):
    """Payment (or scheduled installment) does not exist."""

    code: str = "PAYMENT_NOT_FOUND"

    def __init__(self, payment_id: str):
        self.payment_id = str(payment_id)
        super().__init__(f"Payment not found: {payment_id}")


class AlreadyFullyPaidError(PaymentError):
    """Payment attempted against a settled sale. Do not retry."""

    code: str = "ALREADY_FULLY_PAID"

    def __init__(self, sale_id: str):
        self.sale_id = str(sale_id)
        super().__init__(f"Sale {sale_id} is already fully paid")


class OverpaymentError(PaymentError):
    """Payment credit exceeds the outstanding balance beyond rounding tolerance."""

    code: str = "OVERPAYMENT"

    def __init__(self, sale_id: str, remaining: Decimal, attempted: Decimal, currency: str):
        self.sale_id = str(sale_id)
        self.remaining = remaining
        self.attempted = attempted
        self.currency = currency
        super().__init__(
            f"Payment of {attempted} {currency} exceeds remaining balance "
            f"{remaining} {currency} on sale {sale_id}"
        )


# Concurrency exceptions


class ConcurrencyError(SalesKernelError):
    """Base exception for contention errors."""

    code: str = "CONCURRENCY_ERROR"


class BusyError(ConcurrencyError):
    """
    Lock acquisition timed out.

    Transient: safe to retry with backoff. Retry policy belongs to the caller.
    """

    code: str = "BUSY"
    retryable: bool = True

    def __init__(self, lock_timeout_seconds: float):
        self.lock_timeout_seconds = lock_timeout_seconds
        super().__init__(
            f"Could not acquire row lock within {lock_timeout_seconds}s; retry later"
        )


# Persistence exceptions


class PersistenceError(SalesKernelError):
    """Underlying storage failure. The transaction was rolled back."""

    code: str = "PERSISTENCE_ERROR"

    def __init__(self, message: str):
        self.detail = message
        super().__init__(f"Persistence failure: {message}")


# Immutability exceptions


class ImmutabilityError(SalesKernelError):
    """Base exception for immutability violations."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.reason = reason
        super().__init__(f"Cannot modify {entity_type} {entity_id}: {reason}")
