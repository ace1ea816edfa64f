"""Business rules for customers.

Validates requests, enforces the duplicate-name policy, guards deletion of
customers that still have invoices and computes summary statistics. All
persistence goes through :class:`CustomerRepository`.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

from billing_sheets.customer_repository import CustomerRepository
from billing_sheets.errors import (
    CustomerError,
    ErrorCode,
    ValidationError,
    error_context,
)
from billing_sheets.model import (
    CreateCustomerRequest,
    Customer,
    CustomerFilter,
    CustomerSearchResult,
    CustomerStats,
    RecentCompany,
    UpdateCustomerRequest,
)

if TYPE_CHECKING:  # pragma: no cover
    from billing_sheets.invoice_repository import InvoiceRepository

logger = logging.getLogger(__name__)

COMPANY_NAME_MAX = 100
CONTACT_PERSON_MAX = 50
RECENT_DAYS = 30
TOP_COMPANIES = 5

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
POSTAL_CODE_PATTERN = re.compile(r"^\d{3}-\d{4}$")
PHONE_PATTERN = re.compile(r"^0\d{1,4}-\d{1,4}-\d{3,4}$")  # Japanese landline/mobile


def _validate_company_name(value: Optional[str]) -> None:
    if not value or not value.strip():
        raise ValidationError("Company name is required", "company_name", value)
    if len(value) > COMPANY_NAME_MAX:
        raise ValidationError(
            f"Company name must be at most {COMPANY_NAME_MAX} characters",
            "company_name",
            value,
        )


def _validate_optional_fields(
    request: CreateCustomerRequest | UpdateCustomerRequest,
) -> None:
    if request.contact_person and len(request.contact_person) > CONTACT_PERSON_MAX:
        raise ValidationError(
            f"Contact person must be at most {CONTACT_PERSON_MAX} characters",
            "contact_person",
            request.contact_person,
        )
    if request.email and not EMAIL_PATTERN.match(request.email):
        raise ValidationError("Enter a valid email address", "email", request.email)
    if request.postal_code and not POSTAL_CODE_PATTERN.match(request.postal_code):
        raise ValidationError(
            "Postal code must look like 123-4567", "postal_code", request.postal_code
        )
    if request.phone_number and not PHONE_PATTERN.match(request.phone_number):
        raise ValidationError(
            "Enter a valid phone number", "phone_number", request.phone_number
        )


def validate_create_request(request: CreateCustomerRequest) -> None:
    _validate_company_name(request.company_name)
    _validate_optional_fields(request)


def validate_update_request(request: UpdateCustomerRequest) -> None:
    if request.company_name is not None:
        _validate_company_name(request.company_name)
    _validate_optional_fields(request)


class CustomerService:
    """Customer use cases on top of :class:`CustomerRepository`.

    ``invoice_repository`` is optional; when given, customers that still
    have invoices cannot be deleted.
    """

    def __init__(
        self,
        repository: CustomerRepository,
        invoice_repository: Optional["InvoiceRepository"] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._invoices = invoice_repository
        self._clock = clock or datetime.now

    def create_customer(self, request: CreateCustomerRequest) -> Customer:
        context = "CustomerService.create_customer"
        logger.info("Creating customer '%s'", request.company_name)
        with error_context(context):
            validate_create_request(request)
            self._check_duplicate_name(request.company_name, None, context)
            customer = self._repository.create(request)
            logger.info("Customer %s created", customer.customer_id)
            return customer

    def get_customer(self, customer_id: str) -> Customer:
        context = "CustomerService.get_customer"
        with error_context(context):
            if not customer_id:
                raise ValidationError("Customer ID is required", "customer_id", customer_id)
            customer = self._repository.find_by_id(customer_id)
            if customer is None:
                raise CustomerError(
                    ErrorCode.CUSTOMER_NOT_FOUND,
                    f"Customer '{customer_id}' not found",
                    context,
                    {"customer_id": customer_id},
                )
            return customer

    def get_all_customers(self) -> list[Customer]:
        with error_context("CustomerService.get_all_customers"):
            customers = self._repository.find_all()
            logger.info("Loaded %d customers", len(customers))
            return customers

    def search_customers(self, criteria: CustomerFilter) -> CustomerSearchResult:
        with error_context("CustomerService.search_customers"):
            total = self._repository.count()
            matches = self._repository.find_by_filter(criteria)
            logger.info("Customer search matched %d of %d", len(matches), total)
            return CustomerSearchResult(
                customers=matches, total_count=total, filtered_count=len(matches)
            )

    def find_by_company_name(self, company_name: str) -> Optional[Customer]:
        with error_context("CustomerService.find_by_company_name"):
            if not company_name or not company_name.strip():
                raise ValidationError(
                    "Company name is required", "company_name", company_name
                )
            return self._repository.find_by_company_name(company_name)

    def update_customer(
        self, customer_id: str, request: UpdateCustomerRequest
    ) -> Customer:
        context = "CustomerService.update_customer"
        logger.info("Updating customer %s", customer_id)
        with error_context(context):
            if not customer_id:
                raise ValidationError("Customer ID is required", "customer_id", customer_id)
            validate_update_request(request)
            self.get_customer(customer_id)

            if request.company_name:
                self._check_duplicate_name(request.company_name, customer_id, context)

            customer = self._repository.update(customer_id, request)
            logger.info("Customer %s updated", customer_id)
            return customer

    def delete_customer(self, customer_id: str) -> None:
        context = "CustomerService.delete_customer"
        logger.info("Deleting customer %s", customer_id)
        with error_context(context):
            if not customer_id:
                raise ValidationError("Customer ID is required", "customer_id", customer_id)
            self.get_customer(customer_id)

            if self._invoices is not None:
                invoices = self._invoices.find_by_customer_id(customer_id)
                if invoices:
                    raise CustomerError(
                        ErrorCode.CUSTOMER_HAS_INVOICES,
                        f"Customer '{customer_id}' still has {len(invoices)} invoice(s)",
                        context,
                        {
                            "customer_id": customer_id,
                            "invoice_numbers": [i.invoice_number for i in invoices],
                        },
                    )

            self._repository.delete(customer_id)
            logger.info("Customer %s deleted", customer_id)

    def get_customer_stats(self) -> CustomerStats:
        with error_context("CustomerService.get_customer_stats"):
            customers = self._repository.find_all()
            cutoff = self._clock() - timedelta(days=RECENT_DAYS)
            newest = sorted(customers, key=lambda c: c.registered_at, reverse=True)
            return CustomerStats(
                total_count=len(customers),
                recent_registrations=sum(
                    1 for c in customers if c.registered_at >= cutoff
                ),
                top_companies=[
                    RecentCompany(company_name=c.company_name, registered_at=c.registered_at)
                    for c in newest[:TOP_COMPANIES]
                ],
            )

    def _check_duplicate_name(
        self, company_name: str, exclude_id: Optional[str], context: str
    ) -> None:
        existing = self._repository.find_conflicting_name(company_name, exclude_id)
        if existing is not None:
            raise CustomerError(
                ErrorCode.CUSTOMER_DUPLICATE,
                f"Company name '{company_name}' is already registered",
                context,
                {
                    "company_name": company_name,
                    "existing_customer_id": existing.customer_id,
                },
            )


__all__ = [
    "CustomerService",
    "validate_create_request",
    "validate_update_request",
]
