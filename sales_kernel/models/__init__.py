"""ORM models for the sales kernel."""

from sales_kernel.models.bundle import Bundle, BundleLine
from sales_kernel.models.inventory import InventoryItem, InventoryTransaction, TransactionType
from sales_kernel.models.payment import Payment, PaymentPlan
from sales_kernel.models.sale import Sale, SaleLine

__all__ = [
    "InventoryItem",
    "InventoryTransaction",
    "TransactionType",
    "Bundle",
    "BundleLine",
    "Sale",
    "SaleLine",
    "Payment",
    "PaymentPlan",
]
