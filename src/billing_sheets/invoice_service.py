"""Invoice use cases: validation, the status lifecycle and reporting."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional

from billing_sheets.customer_repository import CustomerRepository
from billing_sheets.errors import (
    CustomerError,
    ErrorCode,
    InvoiceError,
    ValidationError,
    error_context,
)
from billing_sheets.invoice_repository import InvoiceRepository, compute_amounts
from billing_sheets.model import (
    CreateInvoiceRequest,
    CustomerTotal,
    Invoice,
    InvoiceFilter,
    InvoiceSearchResult,
    InvoiceStats,
    InvoiceStatus,
    MonthlyReport,
    UpdateInvoiceRequest,
)

logger = logging.getLogger(__name__)

ADVERTISER_MAX = 200
SUBJECT_MAX = 300
NOTES_MAX = 1000
UNIT_PRICE_MAX = 99_999_999
TOP_CUSTOMERS = 5

ALLOWED_TRANSITIONS: Dict[InvoiceStatus, FrozenSet[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.ISSUED, InvoiceStatus.CANCELLED}),
    InvoiceStatus.ISSUED: frozenset({InvoiceStatus.CANCELLED}),
    InvoiceStatus.CANCELLED: frozenset(),
}


def can_transition(current: InvoiceStatus, new: InvoiceStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


def validate_transition(
    current: InvoiceStatus, new: InvoiceStatus, context: Optional[str] = None
) -> None:
    if not can_transition(current, new):
        raise InvoiceError(
            ErrorCode.INVOICE_STATUS_ERROR,
            f"Cannot change invoice status from {current.value} to {new.value}",
            context,
            {"current_status": current.value, "new_status": new.value},
        )


def _require_text(value: Optional[str], field: str, label: str, limit: int) -> None:
    if not value or not value.strip():
        raise ValidationError(f"{label} is required", field, value)
    if len(value) > limit:
        raise ValidationError(
            f"{label} must be at most {limit} characters", field, value
        )


def _validate_notes(notes: Optional[str]) -> None:
    if notes and len(notes) > NOTES_MAX:
        raise ValidationError(
            f"Notes must be at most {NOTES_MAX} characters", "notes", notes
        )


def validate_unit_price(unit_price: object, field: str = "unit_price") -> None:
    # bool is an int subclass and never a price
    if isinstance(unit_price, bool) or not isinstance(unit_price, int):
        raise ValidationError("Unit price must be a whole number", field, unit_price)
    if unit_price <= 0:
        raise ValidationError("Unit price must be greater than zero", field, unit_price)
    if unit_price > UNIT_PRICE_MAX:
        raise ValidationError(
            f"Unit price must be at most {UNIT_PRICE_MAX:,}", field, unit_price
        )


def parse_status(value: object) -> InvoiceStatus:
    try:
        return InvoiceStatus(value)
    except ValueError:
        raise ValidationError(
            f"Unknown invoice status {value!r}", "status", value
        ) from None


def validate_amount_patch(current: Invoice, request: UpdateInvoiceRequest) -> None:
    """Patched amounts must still satisfy subtotal + tax == total at 10% tax.

    Fields left out of the patch keep their stored values, so changing the
    subtotal means sending all three figures.
    """
    patched = (request.subtotal, request.tax_amount, request.total_amount)
    if all(value is None for value in patched):
        return

    subtotal = current.subtotal if request.subtotal is None else request.subtotal
    validate_unit_price(subtotal, "subtotal")
    amounts = (
        subtotal,
        current.tax_amount if request.tax_amount is None else request.tax_amount,
        current.total_amount if request.total_amount is None else request.total_amount,
    )
    expected = compute_amounts(subtotal)
    if amounts != expected:
        raise ValidationError(
            f"Amounts do not add up: expected subtotal/tax/total {expected}, got {amounts}",
            "total_amount",
            {"subtotal": amounts[0], "tax_amount": amounts[1], "total_amount": amounts[2]},
        )


def validate_create_request(request: CreateInvoiceRequest) -> None:
    if not request.customer_id or not request.customer_id.strip():
        raise ValidationError("Customer ID is required", "customer_id", request.customer_id)
    _require_text(request.advertiser, "advertiser", "Advertiser", ADVERTISER_MAX)
    _require_text(request.subject, "subject", "Subject", SUBJECT_MAX)
    validate_unit_price(request.unit_price)
    _validate_notes(request.notes)


def validate_update_request(request: UpdateInvoiceRequest) -> None:
    if request.customer_id is not None and not request.customer_id.strip():
        raise ValidationError("Customer ID is required", "customer_id", request.customer_id)
    if request.advertiser is not None:
        _require_text(request.advertiser, "advertiser", "Advertiser", ADVERTISER_MAX)
    if request.subject is not None:
        _require_text(request.subject, "subject", "Subject", SUBJECT_MAX)
    _validate_notes(request.notes)
    if request.status is not None:
        parse_status(request.status)


class InvoiceService:
    """Invoice operations on top of the invoice and customer repositories."""

    def __init__(
        self,
        repository: InvoiceRepository,
        customer_repository: CustomerRepository,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._customers = customer_repository
        self._clock = clock or datetime.now

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def create_invoice(self, request: CreateInvoiceRequest) -> Invoice:
        context = "InvoiceService.create_invoice"
        logger.info("Creating invoice for customer %s", request.customer_id)
        with error_context(context):
            validate_create_request(request)
            self._require_customer(request.customer_id.strip(), context)
            invoice = self._repository.create(request)
            logger.info(
                "Invoice %s created for %s", invoice.invoice_number, invoice.customer_id
            )
            return invoice

    def update_invoice(
        self, invoice_number: str, request: UpdateInvoiceRequest
    ) -> Invoice:
        """Apply a partial update.

        Cancelled invoices accept no changes at all. A status change must be
        allowed by :data:`ALLOWED_TRANSITIONS`, and a new customer must exist.
        """
        context = "InvoiceService.update_invoice"
        logger.info("Updating invoice %s", invoice_number)
        with error_context(context):
            current = self.get_invoice(invoice_number)
            if current.status is InvoiceStatus.CANCELLED:
                raise InvoiceError(
                    ErrorCode.INVOICE_STATUS_ERROR,
                    f"Invoice '{invoice_number}' is cancelled and cannot be changed",
                    context,
                    {"invoice_number": invoice_number, "status": current.status.value},
                )

            validate_update_request(request)
            validate_amount_patch(current, request)
            if request.status is not None:
                new_status = parse_status(request.status)
                if new_status is not current.status:
                    validate_transition(current.status, new_status, context)

            if request.customer_id is not None:
                customer_id = request.customer_id.strip()
                if customer_id != current.customer_id:
                    self._require_customer(customer_id, context)

            invoice = self._repository.update(invoice_number, request)
            logger.info("Invoice %s updated", invoice_number)
            return invoice

    def delete_invoice(self, invoice_number: str) -> None:
        context = "InvoiceService.delete_invoice"
        logger.info("Deleting invoice %s", invoice_number)
        with error_context(context):
            invoice = self.get_invoice(invoice_number)
            if invoice.status is InvoiceStatus.ISSUED:
                raise InvoiceError(
                    ErrorCode.INVOICE_STATUS_ERROR,
                    f"Issued invoice '{invoice_number}' cannot be deleted; cancel it instead",
                    context,
                    {"invoice_number": invoice_number, "status": invoice.status.value},
                )
            self._repository.delete(invoice_number)
            logger.info("Invoice %s deleted", invoice_number)

    def issue_invoice(self, invoice_number: str) -> Invoice:
        context = "InvoiceService.issue_invoice"
        logger.info("Issuing invoice %s", invoice_number)
        with error_context(context):
            invoice = self.get_invoice(invoice_number)
            if invoice.status is not InvoiceStatus.DRAFT:
                raise InvoiceError(
                    ErrorCode.INVOICE_STATUS_ERROR,
                    f"Only draft invoices can be issued (current: {invoice.status.value})",
                    context,
                    {"invoice_number": invoice_number, "status": invoice.status.value},
                )
            issued = self._repository.update(
                invoice_number,
                UpdateInvoiceRequest(
                    status=InvoiceStatus.ISSUED,
                    issue_date=self._clock().replace(microsecond=0),
                ),
            )
            logger.info("Invoice %s issued", invoice_number)
            return issued

    def cancel_invoice(self, invoice_number: str) -> Invoice:
        context = "InvoiceService.cancel_invoice"
        logger.info("Cancelling invoice %s", invoice_number)
        with error_context(context):
            invoice = self.get_invoice(invoice_number)
            if invoice.status is InvoiceStatus.CANCELLED:
                raise InvoiceError(
                    ErrorCode.INVOICE_STATUS_ERROR,
                    f"Invoice '{invoice_number}' is already cancelled",
                    context,
                    {"invoice_number": invoice_number},
                )
            validate_transition(invoice.status, InvoiceStatus.CANCELLED, context)
            cancelled = self._repository.update(
                invoice_number, UpdateInvoiceRequest(status=InvoiceStatus.CANCELLED)
            )
            logger.info("Invoice %s cancelled", invoice_number)
            return cancelled

    def attach_pdf_url(self, invoice_number: str, pdf_url: str) -> Invoice:
        """Record where the rendered PDF of an invoice was stored."""
        context = "InvoiceService.attach_pdf_url"
        with error_context(context):
            if not pdf_url or not pdf_url.strip():
                raise ValidationError("PDF URL is required", "pdf_url", pdf_url)
            self.get_invoice(invoice_number)
            return self._repository.update(
                invoice_number, UpdateInvoiceRequest(pdf_url=pdf_url)
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_invoice(self, invoice_number: str) -> Invoice:
        context = "InvoiceService.get_invoice"
        with error_context(context):
            if not invoice_number:
                raise ValidationError(
                    "Invoice number is required", "invoice_number", invoice_number
                )
            invoice = self._repository.find_by_number(invoice_number)
            if invoice is None:
                raise InvoiceError(
                    ErrorCode.INVOICE_NOT_FOUND,
                    f"Invoice '{invoice_number}' not found",
                    context,
                    {"invoice_number": invoice_number},
                )
            return invoice

    def get_all_invoices(self) -> List[Invoice]:
        with error_context("InvoiceService.get_all_invoices"):
            return self._repository.find_all()

    def get_invoices_by_customer(self, customer_id: str) -> List[Invoice]:
        context = "InvoiceService.get_invoices_by_customer"
        with error_context(context):
            self._require_customer(customer_id, context)
            return self._repository.find_by_customer_id(customer_id)

    def search_invoices(self, criteria: InvoiceFilter) -> InvoiceSearchResult:
        with error_context("InvoiceService.search_invoices"):
            total = self._repository.count()
            matches = self._repository.find_by_filter(criteria)
            logger.info("Invoice search matched %d of %d", len(matches), total)
            return InvoiceSearchResult(
                invoices=matches, total_count=total, filtered_count=len(matches)
            )

    def get_invoice_stats(self) -> InvoiceStats:
        with error_context("InvoiceService.get_invoice_stats"):
            invoices = self._repository.find_all()
            now = self._clock()
            this_month = [
                i
                for i in invoices
                if (i.issue_date.year, i.issue_date.month) == (now.year, now.month)
            ]
            return InvoiceStats(
                total_count=len(invoices),
                draft_count=_count_status(invoices, InvoiceStatus.DRAFT),
                issued_count=_count_status(invoices, InvoiceStatus.ISSUED),
                cancelled_count=_count_status(invoices, InvoiceStatus.CANCELLED),
                total_amount=sum(i.total_amount for i in invoices),
                this_month_count=len(this_month),
                this_month_amount=sum(i.total_amount for i in this_month),
            )

    def generate_monthly_report(self, year: int, month: int) -> MonthlyReport:
        """Summarise the invoices issued in ``year``/``month``.

        Customers are ranked by billed total; the top five are returned with
        their company name when the customer still exists.
        """
        context = "InvoiceService.generate_monthly_report"
        with error_context(context):
            if not 1 <= month <= 12:
                raise ValidationError("Month must be between 1 and 12", "month", month)

            monthly = [
                i
                for i in self._repository.find_all()
                if i.issue_date.year == year and i.issue_date.month == month
            ]
            total = sum(i.total_amount for i in monthly)

            per_customer: Dict[str, CustomerTotal] = {}
            for invoice in monthly:
                entry = per_customer.get(invoice.customer_id)
                if entry is None:
                    entry = per_customer[invoice.customer_id] = CustomerTotal(
                        customer_id=invoice.customer_id, invoice_count=0, total_amount=0
                    )
                entry.invoice_count += 1
                entry.total_amount += invoice.total_amount

            top = sorted(per_customer.values(), key=lambda c: c.total_amount, reverse=True)
            top = top[:TOP_CUSTOMERS]
            for entry in top:
                customer = self._customers.find_by_id(entry.customer_id)
                entry.customer_name = customer.company_name if customer else None

            report = MonthlyReport(
                year=year,
                month=month,
                invoice_count=len(monthly),
                total_amount=total,
                average_amount=total / len(monthly) if monthly else 0.0,
                top_customers=top,
            )
            logger.info(
                "Monthly report %04d-%02d: %d invoices, total %d",
                year,
                month,
                report.invoice_count,
                report.total_amount,
            )
            return report

    def _require_customer(self, customer_id: str, context: str) -> None:
        if not self._customers.exists(customer_id):
            raise CustomerError(
                ErrorCode.CUSTOMER_NOT_FOUND,
                f"Customer '{customer_id}' not found",
                context,
                {"customer_id": customer_id},
            )


def _count_status(invoices: List[Invoice], status: InvoiceStatus) -> int:
    return sum(1 for i in invoices if i.status is status)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "InvoiceService",
    "can_transition",
    "parse_status",
    "validate_amount_patch",
    "validate_create_request",
    "validate_transition",
    "validate_unit_price",
]
