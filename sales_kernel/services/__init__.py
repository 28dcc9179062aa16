"""Services for the sales kernel (write side)."""

from sales_kernel.services.bundle_reservation import BundleReservationEngine
from sales_kernel.services.payment_plan import PaymentPlanService
from sales_kernel.services.payment_reconciliation import PaymentReconciliationEngine
from sales_kernel.services.purchase_processor import PurchaseTransactionProcessor
from sales_kernel.services.stock_ledger import StockLedger

__all__ = [
    "BundleReservationEngine",
    "PaymentPlanService",
    "PaymentReconciliationEngine",
    "PurchaseTransactionProcessor",
    "StockLedger",
]
