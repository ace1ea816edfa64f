"""Domain models for customer and invoice bookkeeping.

These dataclasses represent the entities stored in the billing workbook:
customers, invoice headers and their line items, plus the request, filter
and summary shapes that flow between the services and their callers.
"""

from __future__ import annotations  # Postponed evaluation of annotations (PEP 563)

from dataclasses import dataclass, field  # Dataclass utilities
from datetime import date, datetime
from enum import Enum
from typing import List, Optional


class InvoiceStatus(str, Enum):
    """Lifecycle state of an invoice."""

    DRAFT = "draft"  # Initial state after creation
    ISSUED = "issued"  # Sent to the customer
    CANCELLED = "cancelled"  # Terminal


TAX_RATE = 0.10  # Consumption tax applied to every line item
ITEM_NAME = "制作費"  # Production fee, the only billable item
ITEM_UNIT = "式"  # "Lot" unit used on the printed invoice
ITEM_QUANTITY = 1
ITEM_SUFFIX = "-001"  # One line item per invoice today


@dataclass(slots=True)
class Customer:
    """A customer row from the customer sheet."""

    customer_id: str  # C00001 style, generated
    company_name: str
    registered_at: datetime  # Set once at creation
    updated_at: datetime  # Refreshed on every mutation
    contact_person: Optional[str] = None
    postal_code: Optional[str] = None  # 123-4567
    address: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None  # 03-1234-5678

    def __str__(self) -> str:
        return f"customer(id={self.customer_id}, name={self.company_name})"


@dataclass(slots=True)
class InvoiceLineItem:
    """A single billable line belonging to an invoice."""

    item_id: str
    invoice_number: str  # Header row this line belongs to
    unit_price: int
    amount: int  # floor(unit_price * 1.10)
    item_name: str = ITEM_NAME
    quantity: int = ITEM_QUANTITY
    unit: str = ITEM_UNIT
    tax_rate: float = TAX_RATE


@dataclass(slots=True)
class Invoice:
    """An invoice header row together with its line items."""

    invoice_number: str  # YYYYMM-NNN
    issue_date: datetime
    customer_id: str
    advertiser: str
    subject: str
    subtotal: int
    tax_amount: int
    total_amount: int
    status: InvoiceStatus
    created_at: datetime
    updated_at: datetime
    items: List[InvoiceLineItem] = field(default_factory=list)
    notes: Optional[str] = None
    pdf_url: Optional[str] = None  # Filled in by the rendering pipeline

    def __str__(self) -> str:
        return (
            f"invoice(number={self.invoice_number}, customer={self.customer_id}, "
            f"total={self.total_amount}, status={self.status.value})"
        )


# ---------------------------------------------------------------------------
# Requests and filters
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class CreateCustomerRequest:
    company_name: str
    contact_person: Optional[str] = None
    postal_code: Optional[str] = None
    address: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None


@dataclass(slots=True)
class UpdateCustomerRequest:
    """Partial update; ``None`` means "leave unchanged"."""

    company_name: Optional[str] = None
    contact_person: Optional[str] = None
    postal_code: Optional[str] = None
    address: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None


@dataclass(slots=True)
class CustomerFilter:
    company_name: Optional[str] = None  # Case-insensitive substring
    contact_person: Optional[str] = None
    email: Optional[str] = None
    registered_after: Optional[datetime] = None
    registered_before: Optional[datetime] = None


@dataclass(slots=True)
class CreateInvoiceRequest:
    customer_id: str
    advertiser: str
    subject: str
    unit_price: int  # Production fee before tax
    notes: Optional[str] = None


@dataclass(slots=True)
class UpdateInvoiceRequest:
    """Partial update; the number, items and created_at are never patched."""

    issue_date: Optional[datetime] = None
    customer_id: Optional[str] = None
    advertiser: Optional[str] = None
    subject: Optional[str] = None
    subtotal: Optional[int] = None
    tax_amount: Optional[int] = None
    total_amount: Optional[int] = None
    notes: Optional[str] = None
    status: Optional[InvoiceStatus] = None
    pdf_url: Optional[str] = None


@dataclass(slots=True)
class InvoiceFilter:
    date_from: Optional[date] = None  # Inclusive; dates cover the whole day
    date_to: Optional[date] = None  # Inclusive
    customer_id: Optional[str] = None
    advertiser: Optional[str] = None  # Case-insensitive substring
    status: Optional[InvoiceStatus] = None


# ---------------------------------------------------------------------------
# Results and summaries
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class CustomerSearchResult:
    customers: List[Customer] = field(default_factory=list)
    total_count: int = 0
    filtered_count: int = 0


@dataclass(slots=True)
class RecentCompany:
    company_name: str
    registered_at: datetime


@dataclass(slots=True)
class CustomerStats:
    total_count: int = 0
    recent_registrations: int = 0  # Registered within the last 30 days
    top_companies: List[RecentCompany] = field(default_factory=list)


@dataclass(slots=True)
class InvoiceSearchResult:
    invoices: List[Invoice] = field(default_factory=list)
    total_count: int = 0
    filtered_count: int = 0


@dataclass(slots=True)
class InvoiceStats:
    total_count: int = 0
    draft_count: int = 0
    issued_count: int = 0
    cancelled_count: int = 0
    total_amount: int = 0
    this_month_count: int = 0
    this_month_amount: int = 0


@dataclass(slots=True)
class CustomerTotal:
    customer_id: str
    invoice_count: int
    total_amount: int
    customer_name: Optional[str] = None


@dataclass(slots=True)
class MonthlyReport:
    year: int
    month: int
    invoice_count: int = 0
    total_amount: int = 0
    average_amount: float = 0.0
    top_customers: List[CustomerTotal] = field(default_factory=list)


__all__ = [
    "Customer",
    "CreateCustomerRequest",
    "CreateInvoiceRequest",
    "CustomerFilter",
    "CustomerSearchResult",
    "CustomerStats",
    "CustomerTotal",
    "Invoice",
    "InvoiceFilter",
    "InvoiceLineItem",
    "InvoiceSearchResult",
    "InvoiceStats",
    "InvoiceStatus",
    "MonthlyReport",
    "RecentCompany",
    "UpdateCustomerRequest",
    "UpdateInvoiceRequest",
    "ITEM_NAME",
    "ITEM_QUANTITY",
    "ITEM_SUFFIX",
    "ITEM_UNIT",
    "TAX_RATE",
]
