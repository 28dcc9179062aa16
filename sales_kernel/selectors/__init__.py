"""Read-only selectors."""

from sales_kernel.selectors.sale_selector import SaleSelector
from sales_kernel.selectors.stock_selector import StockSelector

__all__ = ["SaleSelector", "StockSelector"]
