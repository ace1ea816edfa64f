"""Customer and invoice bookkeeping over an Excel workbook.

Exposes the service wiring (``build_services``) and the service classes for
programmatic use.
"""

from .config import BillingConfig, SheetNames
from .customer_service import CustomerService
from .errors import AppError, ErrorCode, user_facing_message
from .invoice_service import InvoiceService
from .runner import BillingServices, build_services

__all__ = [
    "AppError",
    "BillingConfig",
    "BillingServices",
    "CustomerService",
    "ErrorCode",
    "InvoiceService",
    "SheetNames",
    "build_services",
    "user_facing_message",
]
