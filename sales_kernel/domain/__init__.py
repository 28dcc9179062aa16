"""
Pure domain layer.

Money and currency value objects, DTOs, enumerations and settlement
arithmetic, with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O

Time comes only from an injected Clock.
"""

from sales_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from sales_kernel.domain.currency import CurrencyInfo, CurrencyRegistry
from sales_kernel.domain.dtos import (
    BalanceSnapshot,
    BundleLineSpec,
    BundleReservation,
    BundleStatus,
    CartLine,
    InstallmentFrequency,
    InventoryTransactionRecord,
    ItemStatus,
    LedgerReconciliation,
    LowStockAlert,
    PaymentInfo,
    PaymentMethod,
    PaymentPlanInfo,
    PaymentRecordStatus,
    PaymentResult,
    PaymentStatus,
    PlanStatus,
    SaleInfo,
    SaleLineInfo,
    SaleStatus,
    StockLevel,
    TransactionType,
)
from sales_kernel.domain.settlement import Settlement, derive_payment_status, settle, split_installments
from sales_kernel.domain.values import Currency, Money, as_currency, parse_rate

__all__ = [
    # Clock
    "Clock",
    "DeterministicClock",
    "SystemClock",
    # Money
    "Currency",
    "CurrencyInfo",
    "CurrencyRegistry",
    "Money",
    "as_currency",
    "parse_rate",
    # Enumerations
    "BundleStatus",
    "InstallmentFrequency",
    "ItemStatus",
    "PaymentMethod",
    "PaymentRecordStatus",
    "PaymentStatus",
    "PlanStatus",
    "SaleStatus",
    "TransactionType",
    # DTOs
    "BalanceSnapshot",
    "BundleLineSpec",
    "BundleReservation",
    "CartLine",
    "InventoryTransactionRecord",
    "LedgerReconciliation",
    "LowStockAlert",
    "PaymentInfo",
    "PaymentPlanInfo",
    "PaymentResult",
    "SaleInfo",
    "SaleLineInfo",
    "StockLevel",
    # Settlement
    "Settlement",
    "derive_payment_status",
    "settle",
    "split_installments",
]
