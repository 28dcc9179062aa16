"""
DTOs -- Pure domain data transfer objects and enumerations.

Responsibility:
    Defines the enumerations shared by models and services, the inputs the
    engines accept (CartLine, BundleLineSpec) and the frozen results they
    return (StockLevel, SaleInfo, PaymentInfo, PaymentResult, BalanceSnapshot,
    ...). Services never hand ORM instances back to callers.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    from_model() class methods are boundary converters invoked only from the
    service and selector layers.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

from sales_kernel.domain.values import Money
from sales_kernel.exceptions import InvalidQuantityError, InvalidStatusError

if TYPE_CHECKING:
    from sales_kernel.models.inventory import InventoryItem, InventoryTransaction
    from sales_kernel.models.payment import Payment
    from sales_kernel.models.sale import Sale, SaleLine


# =============================================================================
# Enumerations
# =============================================================================


class TransactionType(str, Enum):
    """Kind of stock movement recorded in the inventory transaction trail."""

    INITIAL = "INITIAL"
    IN = "IN"
    OUT = "OUT"
    ADJUSTMENT = "ADJUSTMENT"
    RESERVATION = "RESERVATION"
    FULFILLMENT = "FULFILLMENT"
    SALE = "SALE"

    @property
    def moves_stock(self) -> bool:
        """True when the row's quantity changes current_stock."""
        return self is not TransactionType.RESERVATION


class ItemStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class BundleStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    # Transient: a reservation or release pass owns the bundle
    RESERVING = "RESERVING"
    RELEASING = "RELEASING"


class SaleStatus(str, Enum):
    """Lifecycle status of a sale. Independent of stock and of payments."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    """Derived settlement status of a sale."""

    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


class PaymentRecordStatus(str, Enum):
    """Status of an individual payment row."""

    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    CARD = "CARD"
    TRANSFER = "TRANSFER"
    OTHER = "OTHER"


class InstallmentFrequency(str, Enum):
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"


class PlanStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


def coerce_enum(enum_cls: type[Enum], value: object) -> Enum:
    """
    Parse ``value`` into ``enum_cls`` (case-insensitive by value).

    Raises:
        InvalidStatusError: value is not a member of the enumeration.
    """
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().upper())
    except ValueError:
        raise InvalidStatusError(value, [member.value for member in enum_cls]) from None


def require_positive_quantity(quantity: object) -> int:
    """Return ``quantity`` if it is a positive int, else raise."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidQuantityError(quantity)
    return quantity


# =============================================================================
# Inputs
# =============================================================================


@dataclass(frozen=True)
class CartLine:
    """
    One line of a direct-sale cart.

    ``unit_price`` overrides the item's catalog price when given; it must be
    in the sale's currency.
    """

    item_id: UUID
    quantity: int
    unit_price: Money | None = None

    def __post_init__(self) -> None:
        require_positive_quantity(self.quantity)


@dataclass(frozen=True)
class BundleLineSpec:
    """
    One line of a bundle definition.

    ``override_price`` replaces ``base_price * quantity`` for the whole line.
    """

    item_id: UUID
    quantity: int
    override_price: Money | None = None

    def __post_init__(self) -> None:
        require_positive_quantity(self.quantity)


# =============================================================================
# Stock results
# =============================================================================


@dataclass(frozen=True)
class StockLevel:
    """Point-in-time stock quantities of one inventory item."""

    item_id: UUID
    sku: str
    name: str
    current_stock: int
    reserved_stock: int
    minimum_stock: int
    base_price: Money

    @property
    def available(self) -> int:
        """Available-to-promise: current_stock - reserved_stock."""
        return self.current_stock - self.reserved_stock

    @property
    def below_minimum(self) -> bool:
        return self.minimum_stock > 0 and self.current_stock < self.minimum_stock

    @classmethod
    def from_model(cls, item: InventoryItem) -> StockLevel:
        return cls(
            item_id=item.id,
            sku=item.sku,
            name=item.name,
            current_stock=item.current_stock,
            reserved_stock=item.reserved_stock,
            minimum_stock=item.minimum_stock,
            base_price=item.base_price,
        )


@dataclass(frozen=True)
class InventoryTransactionRecord:
    """Read-only view of one inventory transaction row."""

    transaction_id: UUID
    item_id: UUID
    quantity: int
    reserved_delta: int
    transaction_type: TransactionType
    reference: str | None
    notes: str | None
    occurred_at: datetime

    @classmethod
    def from_model(cls, row: InventoryTransaction) -> InventoryTransactionRecord:
        return cls(
            transaction_id=row.id,
            item_id=row.item_id,
            quantity=row.quantity,
            reserved_delta=row.reserved_delta,
            transaction_type=TransactionType(row.transaction_type),
            reference=row.reference,
            notes=row.notes,
            occurred_at=row.occurred_at,
        )


@dataclass(frozen=True)
class LowStockAlert:
    item_id: UUID
    sku: str
    name: str
    current_stock: int
    minimum_stock: int

    @property
    def message(self) -> str:
        return f"{self.name} is below minimum stock ({self.current_stock}/{self.minimum_stock})"


@dataclass(frozen=True)
class LedgerReconciliation:
    """
    Result of replaying an item's transaction trail.

    ``expected_*`` come from the trail, ``actual_*`` from the item row.
    """

    item_id: UUID
    expected_current: int
    actual_current: int
    expected_reserved: int
    actual_reserved: int
    transaction_count: int

    @property
    def is_consistent(self) -> bool:
        return (
            self.expected_current == self.actual_current
            and self.expected_reserved == self.actual_reserved
        )


@dataclass(frozen=True)
class BundleReservation:
    """Per-item quantities reserved for a bundle by one reservation pass."""

    bundle_id: UUID
    reserved: tuple[tuple[UUID, int], ...]


# =============================================================================
# Sale and payment results
# =============================================================================


@dataclass(frozen=True)
class SaleLineInfo:
    item_id: UUID
    quantity: int
    unit_price: Money
    total_price: Money

    @classmethod
    def from_model(cls, line: SaleLine, currency: str) -> SaleLineInfo:
        return cls(
            item_id=line.item_id,
            quantity=line.quantity,
            unit_price=Money.from_minor(line.unit_price_minor, currency),
            total_price=Money.from_minor(line.total_price_minor, currency),
        )


@dataclass(frozen=True)
class SaleInfo:
    sale_id: UUID
    client_id: UUID
    bundle_id: UUID | None
    lines: tuple[SaleLineInfo, ...]
    total_amount: Money
    conversion_rate: Decimal
    status: SaleStatus
    is_paid: bool
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    purchase_date: datetime

    @property
    def currency(self) -> str:
        return self.total_amount.currency.code

    @classmethod
    def from_model(cls, sale: Sale) -> SaleInfo:
        return cls(
            sale_id=sale.id,
            client_id=sale.client_id,
            bundle_id=sale.bundle_id,
            lines=tuple(SaleLineInfo.from_model(line, sale.currency) for line in sale.lines),
            total_amount=Money.from_minor(sale.total_minor, sale.currency, sale.conversion_rate),
            conversion_rate=sale.conversion_rate,
            status=SaleStatus(sale.status),
            is_paid=sale.is_paid,
            payment_status=PaymentStatus(sale.payment_status),
            payment_method=PaymentMethod(sale.payment_method),
            purchase_date=sale.purchase_date,
        )


@dataclass(frozen=True)
class PaymentInfo:
    """
    Read-only view of a payment.

    ``amount`` is what was tendered, in the tendered currency with the
    payment-time rate; ``native_amount`` is what it credited against the sale.
    """

    payment_id: UUID
    sale_id: UUID
    amount: Money
    native_amount: Money
    conversion_rate: Decimal
    sale_conversion_rate: Decimal
    method: PaymentMethod | None
    status: PaymentRecordStatus
    transaction_reference: str | None
    paid_at: datetime | None
    due_date: date | None
    installment_number: int | None

    @classmethod
    def from_model(cls, payment: Payment, sale_currency: str) -> PaymentInfo:
        return cls(
            payment_id=payment.id,
            sale_id=payment.sale_id,
            amount=Money.from_minor(payment.amount_minor, payment.currency, payment.conversion_rate),
            native_amount=Money.from_minor(payment.native_amount_minor, sale_currency),
            conversion_rate=payment.conversion_rate,
            sale_conversion_rate=payment.sale_conversion_rate,
            method=PaymentMethod(payment.method) if payment.method else None,
            status=PaymentRecordStatus(payment.status),
            transaction_reference=payment.transaction_reference,
            paid_at=payment.paid_at,
            due_date=payment.due_date,
            installment_number=payment.installment_number,
        )


@dataclass(frozen=True)
class PaymentResult:
    payment: PaymentInfo
    is_fully_paid: bool
    remaining_balance: Money


@dataclass(frozen=True)
class BalanceSnapshot:
    """Outstanding balance of a sale, in the sale's native currency."""

    sale_id: UUID
    total_amount: Money
    total_paid: Money
    remaining_balance: Money
    is_paid: bool
    payment_status: PaymentStatus
    conversion_rate: Decimal

    @property
    def currency(self) -> str:
        return self.total_amount.currency.code


@dataclass(frozen=True)
class PaymentPlanInfo:
    plan_id: UUID
    sale_id: UUID
    frequency: InstallmentFrequency
    installments: tuple[PaymentInfo, ...]

    @property
    def scheduled_total(self) -> Money:
        total = Money.zero(self.installments[0].native_amount.currency)
        for installment in self.installments:
            total = total + installment.native_amount
        return total
