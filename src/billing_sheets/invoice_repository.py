"""Invoice persistence across the header and line-item sheets.

An invoice is stored as one row on the invoice sheet plus its line-item rows
on a second sheet keyed by invoice number. The workbook has no transactions,
so writes follow a fixed order instead: creation writes the header before
the line item, deletion removes the line items before the header. A failure
between the two steps leaves the sheets out of step and needs a manual fix.

Invoice numbers are ``YYYYMM-NNN``; the sequence restarts every calendar
month and is derived from the highest number already present for the
current month.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from datetime import date, datetime, time
from typing import Callable, Dict, Iterator, List, Optional, Tuple, TypeVar

from billing_sheets.config import INVOICE_HEADERS, LINE_ITEM_HEADERS, BillingConfig
from billing_sheets.errors import ErrorCode, InvoiceError, StoreError, with_retry
from billing_sheets.model import (
    ITEM_NAME,
    ITEM_QUANTITY,
    ITEM_SUFFIX,
    ITEM_UNIT,
    TAX_RATE,
    CreateInvoiceRequest,
    Invoice,
    InvoiceFilter,
    InvoiceLineItem,
    InvoiceStatus,
    UpdateInvoiceRequest,
)
from billing_sheets.workbook_store import (
    Row,
    WorkbookStore,
    cell_datetime,
    cell_float,
    cell_int,
    cell_text,
    pad,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

HEADER_WIDTH = len(INVOICE_HEADERS)
ITEM_WIDTH = len(LINE_ITEM_HEADERS)

_PATCHABLE_FIELDS = (
    "issue_date",
    "customer_id",
    "advertiser",
    "subject",
    "subtotal",
    "tax_amount",
    "total_amount",
    "notes",
    "status",
    "pdf_url",
)


def compute_amounts(unit_price: int) -> Tuple[int, int, int]:
    """Return (subtotal, tax_amount, total_amount) for ``unit_price``.

    The total is floored first and the tax is whatever remains, so the three
    figures always add up exactly.
    """
    total = unit_price * 110 // 100  # floor(unit_price * 1.10) without floats
    return unit_price, total - unit_price, total


def month_prefix(moment: datetime) -> str:
    return f"{moment.year:04d}{moment.month:02d}"


def invoice_to_row(invoice: Invoice) -> Row:
    return [
        invoice.invoice_number,
        invoice.issue_date,
        invoice.customer_id,
        invoice.advertiser,
        invoice.subject,
        invoice.subtotal,
        invoice.tax_amount,
        invoice.total_amount,
        invoice.notes or "",
        invoice.status.value,
        invoice.pdf_url or "",
        invoice.created_at,
        invoice.updated_at,
    ]


def _parse_status(value: object, invoice_number: str) -> InvoiceStatus:
    text = (cell_text(value) or "").lower()
    if not text:
        return InvoiceStatus.DRAFT
    try:
        return InvoiceStatus(text)
    except ValueError:
        logger.warning(
            "Invoice %s has unknown status %r; treating it as draft", invoice_number, value
        )
        return InvoiceStatus.DRAFT


def row_to_invoice(row: Row) -> Invoice:
    values = pad(row, HEADER_WIDTH)
    number = cell_text(values[0]) or ""
    created_at = cell_datetime(values[11]) or datetime.min
    return Invoice(
        invoice_number=number,
        issue_date=cell_datetime(values[1]) or created_at,
        customer_id=cell_text(values[2]) or "",
        advertiser=cell_text(values[3]) or "",
        subject=cell_text(values[4]) or "",
        subtotal=cell_int(values[5]),
        tax_amount=cell_int(values[6]),
        total_amount=cell_int(values[7]),
        notes=cell_text(values[8]),
        status=_parse_status(values[9], number),
        pdf_url=cell_text(values[10]),
        created_at=created_at,
        updated_at=cell_datetime(values[12]) or created_at,
    )


def item_to_row(item: InvoiceLineItem) -> Row:
    return [
        item.item_id,
        item.invoice_number,
        item.item_name,
        item.quantity,
        item.unit,
        item.unit_price,
        item.tax_rate,
        item.amount,
    ]


def row_to_item(row: Row) -> InvoiceLineItem:
    values = pad(row, ITEM_WIDTH)
    return InvoiceLineItem(
        item_id=cell_text(values[0]) or "",
        invoice_number=cell_text(values[1]) or "",
        item_name=cell_text(values[2]) or "",
        quantity=cell_int(values[3], ITEM_QUANTITY),
        unit=cell_text(values[4]) or "",
        unit_price=cell_int(values[5]),
        tax_rate=cell_float(values[6], TAX_RATE),
        amount=cell_int(values[7]),
    )


class InvoiceRepository:
    """CRUD and filtered scans over the invoice and line-item sheets."""

    def __init__(
        self,
        store: WorkbookStore,
        config: Optional[BillingConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._config = config or BillingConfig()
        self._sheet = self._config.sheets.invoices
        self._item_sheet = self._config.sheets.line_items
        self._clock = clock or datetime.now

        present = store.sheet_names()
        for name in (self._sheet, self._item_sheet):
            if name not in present:
                raise StoreError(
                    ErrorCode.STORE_SHEET_NOT_FOUND,
                    f"Invoice sheet '{name}' not found",
                    "InvoiceRepository",
                    {"sheet": name},
                    False,
                )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def create(self, request: CreateInvoiceRequest) -> Invoice:
        context = "InvoiceRepository.create"
        logger.info(
            "Creating invoice for customer %s (unit price %s)",
            request.customer_id,
            request.unit_price,
        )

        def operation() -> Invoice:
            now = self._now()
            invoice_number = self._next_invoice_number(now)

            # Re-read before writing; narrows the window for a concurrent writer
            if self._find_header(invoice_number) is not None:
                raise InvoiceError(
                    ErrorCode.INVOICE_DUPLICATE,
                    f"Invoice number '{invoice_number}' already exists",
                    context,
                    {"invoice_number": invoice_number},
                )

            subtotal, tax_amount, total_amount = compute_amounts(request.unit_price)
            item = InvoiceLineItem(
                item_id=f"{invoice_number}{ITEM_SUFFIX}",
                invoice_number=invoice_number,
                item_name=ITEM_NAME,
                quantity=ITEM_QUANTITY,
                unit=ITEM_UNIT,
                unit_price=request.unit_price,
                tax_rate=TAX_RATE,
                amount=total_amount,
            )
            invoice = Invoice(
                invoice_number=invoice_number,
                issue_date=now,
                customer_id=request.customer_id.strip(),
                advertiser=request.advertiser.strip(),
                subject=request.subject.strip(),
                items=[item],
                subtotal=subtotal,
                tax_amount=tax_amount,
                total_amount=total_amount,
                notes=(request.notes or "").strip() or None,
                status=InvoiceStatus.DRAFT,
                created_at=now,
                updated_at=now,
            )

            # Header first, then the line item
            self._store.append_row(self._sheet, invoice_to_row(invoice))
            self._store.append_row(self._item_sheet, item_to_row(item))
            return invoice

        invoice = self._retry(operation, context)
        logger.info(
            "Created invoice %s (total %d)", invoice.invoice_number, invoice.total_amount
        )
        return invoice

    def update(self, invoice_number: str, request: UpdateInvoiceRequest) -> Invoice:
        """Merge the non-None fields of ``request`` into the stored header.

        The number, the line items and ``created_at`` are never patched.
        """
        context = "InvoiceRepository.update"
        logger.info("Updating invoice %s", invoice_number)

        def operation() -> Invoice:
            found = self._find_header(invoice_number)
            if found is None:
                raise self._not_found(invoice_number, context)
            row_number, row = found

            invoice = row_to_invoice(row)
            previous_subtotal = invoice.subtotal
            for name in _PATCHABLE_FIELDS:
                value = getattr(request, name)
                if value is None:
                    continue
                if name == "status":
                    value = InvoiceStatus(value)
                elif isinstance(value, str):
                    value = value.strip()
                    if name in ("notes", "pdf_url"):
                        value = value or None
                setattr(invoice, name, value)
            invoice.invoice_number = invoice_number
            invoice.updated_at = self._now()

            self._store.write_range(self._sheet, row_number, 1, [invoice_to_row(invoice)])
            if invoice.subtotal != previous_subtotal:
                self._reprice_items(invoice)
            invoice.items = self._items_by_invoice().get(invoice_number, [])
            return invoice

        invoice = self._retry(operation, context)
        logger.info("Updated invoice %s", invoice_number)
        return invoice

    def delete(self, invoice_number: str) -> bool:
        context = "InvoiceRepository.delete"
        logger.info("Deleting invoice %s", invoice_number)

        def operation() -> bool:
            if self._find_header(invoice_number) is None:
                raise self._not_found(invoice_number, context)

            # Line items first, bottom-up so earlier row numbers stay valid
            rows = self._store.read_range(self._item_sheet)
            removed = 0
            for index in range(len(rows) - 1, 0, -1):
                row = rows[index]
                if row and len(row) > 1 and cell_text(row[1]) == invoice_number:
                    self._store.delete_row(self._item_sheet, index + 1)
                    removed += 1

            found = self._find_header(invoice_number)
            if found is None:
                raise self._not_found(invoice_number, context)
            self._store.delete_row(self._sheet, found[0])
            logger.debug("Removed %d line items of %s", removed, invoice_number)
            return True

        deleted = self._retry(operation, context)
        logger.info("Deleted invoice %s", invoice_number)
        return deleted

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def find_by_number(self, invoice_number: str) -> Optional[Invoice]:
        def operation() -> Optional[Invoice]:
            found = self._find_header(invoice_number)
            if found is None:
                return None
            invoice = row_to_invoice(found[1])
            invoice.items = self._items_by_invoice().get(invoice_number, [])
            return invoice

        return self._retry(operation, "InvoiceRepository.find_by_number")

    def find_by_customer_id(self, customer_id: str) -> List[Invoice]:
        def operation() -> List[Invoice]:
            return [
                invoice
                for invoice in self._load_all()
                if invoice.customer_id == customer_id
            ]

        return self._retry(operation, "InvoiceRepository.find_by_customer_id")

    def find_all(self) -> List[Invoice]:
        invoices = self._retry(self._load_all, "InvoiceRepository.find_all")
        logger.debug("Loaded %d invoices", len(invoices))
        return invoices

    def find_by_filter(self, criteria: InvoiceFilter) -> List[Invoice]:
        def operation() -> List[Invoice]:
            return [invoice for invoice in self._load_all() if _matches(invoice, criteria)]

        return self._retry(operation, "InvoiceRepository.find_by_filter")

    def count(self) -> int:
        return self._retry(
            lambda: sum(1 for _ in self._header_rows()), "InvoiceRepository.count"
        )

    def exists(self, invoice_number: str) -> bool:
        return self._retry(
            lambda: self._find_header(invoice_number) is not None,
            "InvoiceRepository.exists",
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _header_rows(self) -> Iterator[Tuple[int, Row]]:
        rows = self._store.read_range(self._sheet)
        for index, row in enumerate(rows[1:], start=2):  # Row 1 is the header
            if row and cell_text(row[0]):
                yield index, row

    def _find_header(self, invoice_number: str) -> Optional[Tuple[int, Row]]:
        for row_number, row in self._header_rows():
            if cell_text(row[0]) == invoice_number:
                return row_number, row
        return None

    def _items_by_invoice(self) -> Dict[str, List[InvoiceLineItem]]:
        grouped: Dict[str, List[InvoiceLineItem]] = defaultdict(list)
        for row in self._store.read_range(self._item_sheet)[1:]:
            if not row or len(row) < 2:
                continue
            number = cell_text(row[1])
            if number:
                grouped[number].append(row_to_item(row))
        return grouped

    def _reprice_items(self, invoice: Invoice) -> None:
        """Bring the line items in line with a changed subtotal."""
        rows = self._store.read_range(self._item_sheet)
        for index, row in enumerate(rows[1:], start=2):
            if row and len(row) > 1 and cell_text(row[1]) == invoice.invoice_number:
                item = row_to_item(row)
                item.unit_price = invoice.subtotal
                item.amount = invoice.total_amount
                self._store.write_range(self._item_sheet, index, 1, [item_to_row(item)])

    def _load_all(self) -> List[Invoice]:
        items = self._items_by_invoice()
        invoices = []
        for _, row in self._header_rows():
            invoice = row_to_invoice(row)
            invoice.items = items.get(invoice.invoice_number, [])
            invoices.append(invoice)
        return invoices

    def _next_invoice_number(self, now: datetime) -> str:
        prefix = month_prefix(now)
        pattern = re.compile(rf"^{prefix}-(\d{{3,}})$")  # Widens past -999
        highest = 0
        for _, row in self._header_rows():
            value = row[0]
            if not isinstance(value, str):
                continue
            match = pattern.match(value.strip())
            if match:
                highest = max(highest, int(match.group(1)))
        return f"{prefix}-{highest + 1:03d}"

    def _now(self) -> datetime:
        return self._clock().replace(microsecond=0)

    def _retry(self, operation: Callable[[], T], context: str) -> T:
        return with_retry(
            operation,
            context,
            max_attempts=self._config.max_retries,
            base_delay=self._config.retry_base_delay,
        )

    @staticmethod
    def _not_found(invoice_number: str, context: str) -> InvoiceError:
        return InvoiceError(
            ErrorCode.INVOICE_NOT_FOUND,
            f"Invoice '{invoice_number}' not found",
            context,
            {"invoice_number": invoice_number},
        )


def _bounds(criteria: InvoiceFilter) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Widen plain dates to cover the whole day; both ends are inclusive."""
    start, end = criteria.date_from, criteria.date_to
    if isinstance(start, date) and not isinstance(start, datetime):
        start = datetime.combine(start, time.min)
    if isinstance(end, date) and not isinstance(end, datetime):
        end = datetime.combine(end, time.max)
    return start, end


def _matches(invoice: Invoice, criteria: InvoiceFilter) -> bool:
    start, end = _bounds(criteria)
    if start and invoice.issue_date < start:
        return False
    if end and invoice.issue_date > end:
        return False
    if criteria.customer_id and invoice.customer_id != criteria.customer_id:
        return False
    if criteria.advertiser and criteria.advertiser.lower() not in invoice.advertiser.lower():
        return False
    if criteria.status and invoice.status != criteria.status:
        return False
    return True


__all__ = [
    "InvoiceRepository",
    "compute_amounts",
    "invoice_to_row",
    "item_to_row",
    "month_prefix",
    "row_to_invoice",
    "row_to_item",
]
