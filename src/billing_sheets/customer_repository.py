"""Customer persistence on top of the workbook store.

Every public method performs a full read of the customer sheet and runs
inside :func:`billing_sheets.errors.with_retry`. There is no index: lookups
are linear scans, and new identifiers are derived from the highest existing
``C#####`` value. Two concurrent writers can therefore still produce the
same identifier; the store gives us nothing to prevent that.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Callable, Iterator, List, Optional, Tuple, TypeVar

from billing_sheets.config import CUSTOMER_HEADERS, BillingConfig
from billing_sheets.errors import CustomerError, ErrorCode, StoreError, with_retry
from billing_sheets.model import (
    CreateCustomerRequest,
    Customer,
    CustomerFilter,
    UpdateCustomerRequest,
)
from billing_sheets.workbook_store import (
    Row,
    WorkbookStore,
    cell_datetime,
    cell_text,
    pad,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

CUSTOMER_ID_PATTERN = re.compile(r"^C(\d{5,})$")  # Widens past C99999
WIDTH = len(CUSTOMER_HEADERS)

_UPDATABLE_FIELDS = (
    "company_name",
    "contact_person",
    "postal_code",
    "address",
    "email",
    "phone_number",
)


def format_customer_id(sequence: int) -> str:
    return f"C{sequence:05d}"


def customer_to_row(customer: Customer) -> Row:
    return [
        customer.customer_id,
        customer.company_name,
        customer.contact_person or "",
        customer.postal_code or "",
        customer.address or "",
        customer.email or "",
        customer.phone_number or "",
        customer.registered_at,
        customer.updated_at,
    ]


def row_to_customer(row: Row) -> Customer:
    values = pad(row, WIDTH)
    registered_at = cell_datetime(values[7]) or datetime.min
    return Customer(
        customer_id=cell_text(values[0]) or "",
        company_name=cell_text(values[1]) or "",
        contact_person=cell_text(values[2]),
        postal_code=cell_text(values[3]),
        address=cell_text(values[4]),
        email=cell_text(values[5]),
        phone_number=cell_text(values[6]),
        registered_at=registered_at,
        updated_at=cell_datetime(values[8]) or registered_at,
    )


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None


def names_overlap(left: str, right: str) -> bool:
    """True when either name contains the other, ignoring case."""
    a, b = left.strip().lower(), right.strip().lower()
    if not a or not b:
        return False
    return a in b or b in a


class CustomerRepository:
    """CRUD and filtered scans over the customer sheet."""

    def __init__(
        self,
        store: WorkbookStore,
        config: Optional[BillingConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._config = config or BillingConfig()
        self._sheet = self._config.sheets.customers
        self._clock = clock or datetime.now

        if self._sheet not in store.sheet_names():
            raise StoreError(
                ErrorCode.STORE_SHEET_NOT_FOUND,
                f"Customer sheet '{self._sheet}' not found",
                "CustomerRepository",
                {"sheet": self._sheet},
                False,
            )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def create(self, request: CreateCustomerRequest) -> Customer:
        context = "CustomerRepository.create"
        logger.info("Creating customer '%s'", request.company_name)

        def operation() -> Customer:
            rows = list(self._data_rows())
            customer_id = self._next_customer_id(rows)

            for _, row in rows:
                existing = row_to_customer(row)
                if names_overlap(existing.company_name, request.company_name):
                    raise CustomerError(
                        ErrorCode.CUSTOMER_DUPLICATE,
                        f"Company name '{request.company_name}' is already registered",
                        context,
                        {
                            "company_name": request.company_name,
                            "existing_customer_id": existing.customer_id,
                        },
                    )

            now = self._now()
            customer = Customer(
                customer_id=customer_id,
                company_name=request.company_name.strip(),
                contact_person=_clean(request.contact_person),
                postal_code=_clean(request.postal_code),
                address=_clean(request.address),
                email=_clean(request.email),
                phone_number=_clean(request.phone_number),
                registered_at=now,
                updated_at=now,
            )
            self._store.append_row(self._sheet, customer_to_row(customer))
            return customer

        customer = self._retry(operation, context)
        logger.info("Created customer %s", customer.customer_id)
        return customer

    def update(self, customer_id: str, request: UpdateCustomerRequest) -> Customer:
        """Merge the non-None fields of ``request`` into the stored row.

        An empty string clears an optional field.
        """
        context = "CustomerRepository.update"
        logger.info("Updating customer %s", customer_id)

        def operation() -> Customer:
            for row_number, row in self._data_rows():
                if cell_text(row[0]) != customer_id:
                    continue
                customer = row_to_customer(row)
                for name in _UPDATABLE_FIELDS:
                    value = getattr(request, name)
                    if value is not None:
                        setattr(customer, name, _clean(value))
                customer.customer_id = customer_id  # Never changes
                customer.updated_at = self._now()
                self._store.write_range(
                    self._sheet, row_number, 1, [customer_to_row(customer)]
                )
                return customer
            raise self._not_found(customer_id, context)

        customer = self._retry(operation, context)
        logger.info("Updated customer %s", customer_id)
        return customer

    def delete(self, customer_id: str) -> bool:
        context = "CustomerRepository.delete"
        logger.info("Deleting customer %s", customer_id)

        def operation() -> bool:
            for row_number, row in self._data_rows():
                if cell_text(row[0]) == customer_id:
                    self._store.delete_row(self._sheet, row_number)
                    return True
            raise self._not_found(customer_id, context)

        deleted = self._retry(operation, context)
        logger.info("Deleted customer %s", customer_id)
        return deleted

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def find_by_id(self, customer_id: str) -> Optional[Customer]:
        def operation() -> Optional[Customer]:
            for _, row in self._data_rows():
                if cell_text(row[0]) == customer_id:
                    return row_to_customer(row)
            return None

        return self._retry(operation, "CustomerRepository.find_by_id")

    def find_by_company_name(self, company_name: str) -> Optional[Customer]:
        """Return the first customer whose name contains ``company_name``."""
        needle = company_name.strip().lower()

        def operation() -> Optional[Customer]:
            for _, row in self._data_rows():
                name = cell_text(row[1])
                if name and needle in name.lower():
                    return row_to_customer(row)
            return None

        return self._retry(operation, "CustomerRepository.find_by_company_name")

    def find_conflicting_name(
        self, company_name: str, exclude_id: Optional[str] = None
    ) -> Optional[Customer]:
        """Return a customer whose name overlaps ``company_name`` either way."""

        def operation() -> Optional[Customer]:
            for _, row in self._data_rows():
                customer = row_to_customer(row)
                if customer.customer_id == exclude_id:
                    continue
                if names_overlap(customer.company_name, company_name):
                    return customer
            return None

        return self._retry(operation, "CustomerRepository.find_conflicting_name")

    def find_all(self) -> List[Customer]:
        def operation() -> List[Customer]:
            return [row_to_customer(row) for _, row in self._data_rows()]

        customers = self._retry(operation, "CustomerRepository.find_all")
        logger.debug("Loaded %d customers", len(customers))
        return customers

    def find_by_filter(self, criteria: CustomerFilter) -> List[Customer]:
        def operation() -> List[Customer]:
            return [
                customer
                for customer in (row_to_customer(row) for _, row in self._data_rows())
                if _matches(customer, criteria)
            ]

        return self._retry(operation, "CustomerRepository.find_by_filter")

    def count(self) -> int:
        return self._retry(
            lambda: sum(1 for _ in self._data_rows()), "CustomerRepository.count"
        )

    def exists(self, customer_id: str) -> bool:
        return self.find_by_id(customer_id) is not None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _data_rows(self) -> Iterator[Tuple[int, Row]]:
        """Yield (sheet row number, row) for every row with a customer ID."""
        rows = self._store.read_range(self._sheet)
        for index, row in enumerate(rows[1:], start=2):  # Row 1 is the header
            if row and cell_text(row[0]):
                yield index, row

    @staticmethod
    def _next_customer_id(rows: List[Tuple[int, Row]]) -> str:
        highest = 0
        for _, row in rows:
            value = row[0]
            if not isinstance(value, str):
                continue
            match = CUSTOMER_ID_PATTERN.match(value.strip())
            if match:
                highest = max(highest, int(match.group(1)))
        return format_customer_id(highest + 1)

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
    def _not_found(customer_id: str, context: str) -> CustomerError:
        return CustomerError(
            ErrorCode.CUSTOMER_NOT_FOUND,
            f"Customer '{customer_id}' not found",
            context,
            {"customer_id": customer_id},
        )


def _contains(value: Optional[str], needle: Optional[str]) -> bool:
    if not needle:
        return True
    if value is None:
        return True  # Blank optional fields do not exclude a customer
    return needle.lower() in value.lower()


def _matches(customer: Customer, criteria: CustomerFilter) -> bool:
    if criteria.company_name and criteria.company_name.lower() not in customer.company_name.lower():
        return False
    if not _contains(customer.contact_person, criteria.contact_person):
        return False
    if not _contains(customer.email, criteria.email):
        return False
    if criteria.registered_after and customer.registered_at < criteria.registered_after:
        return False
    if criteria.registered_before and customer.registered_at > criteria.registered_before:
        return False
    return True


__all__ = [
    "CUSTOMER_ID_PATTERN",
    "CustomerRepository",
    "customer_to_row",
    "format_customer_id",
    "names_overlap",
    "row_to_customer",
]
