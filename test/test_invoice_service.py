from datetime import datetime

import pytest

from billing_sheets.errors import (
    CustomerError,
    ErrorCode,
    InvoiceError,
    ValidationError,
    user_facing_message,
)
from billing_sheets.invoice_service import (
    ALLOWED_TRANSITIONS,
    can_transition,
    validate_transition,
)
from billing_sheets.model import (
    CreateCustomerRequest,
    CreateInvoiceRequest,
    InvoiceFilter,
    InvoiceStatus,
    UpdateInvoiceRequest,
)


@pytest.fixture
def customers(services):
    acme = services.customers.create_customer(CreateCustomerRequest(company_name="Acme"))
    globex = services.customers.create_customer(CreateCustomerRequest(company_name="Globex"))
    return acme, globex


def _invoice(services, customer_id="C00001", unit_price=100000, **kwargs):
    return services.invoices.create_invoice(
        CreateInvoiceRequest(
            customer_id=customer_id,
            advertiser=kwargs.pop("advertiser", "Acme Foods"),
            subject=kwargs.pop("subject", "Spring campaign"),
            unit_price=unit_price,
            **kwargs,
        )
    )


# --------------------------------------------------------------------
# WORKED EXAMPLE
# --------------------------------------------------------------------
def test_worked_example(services, clock):
    acme = services.customers.create_customer(CreateCustomerRequest(company_name="Acme"))
    globex = services.customers.create_customer(CreateCustomerRequest(company_name="Globex"))
    assert (acme.customer_id, globex.customer_id) == ("C00001", "C00002")

    invoice = _invoice(services, acme.customer_id, 100000)
    assert invoice.invoice_number == "202503-001"
    assert (invoice.subtotal, invoice.tax_amount, invoice.total_amount) == (
        100000,
        10000,
        110000,
    )
    assert invoice.status is InvoiceStatus.DRAFT

    clock.now = datetime(2025, 3, 18, 9, 0, 0)
    issued = services.invoices.issue_invoice(invoice.invoice_number)
    assert issued.status is InvoiceStatus.ISSUED
    assert issued.issue_date == datetime(2025, 3, 18, 9, 0, 0)

    cancelled = services.invoices.cancel_invoice(invoice.invoice_number)
    assert cancelled.status is InvoiceStatus.CANCELLED

    with pytest.raises(InvoiceError) as info:
        services.invoices.issue_invoice(invoice.invoice_number)
    assert info.value.code is ErrorCode.INVOICE_STATUS_ERROR
    assert not info.value.is_retryable


# --------------------------------------------------------------------
# STATE MACHINE
# --------------------------------------------------------------------
def test_transition_table():
    assert ALLOWED_TRANSITIONS[InvoiceStatus.CANCELLED] == frozenset()
    assert can_transition(InvoiceStatus.DRAFT, InvoiceStatus.ISSUED)
    assert can_transition(InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED)
    assert can_transition(InvoiceStatus.ISSUED, InvoiceStatus.CANCELLED)
    assert not can_transition(InvoiceStatus.ISSUED, InvoiceStatus.DRAFT)
    assert not can_transition(InvoiceStatus.CANCELLED, InvoiceStatus.DRAFT)


def test_validate_transition_raises_status_error():
    with pytest.raises(InvoiceError, match="issued to draft"):
        validate_transition(InvoiceStatus.ISSUED, InvoiceStatus.DRAFT)


def test_update_cannot_move_issued_back_to_draft(services, customers):
    invoice = _invoice(services)
    services.invoices.issue_invoice(invoice.invoice_number)
    with pytest.raises(InvoiceError) as info:
        services.invoices.update_invoice(
            invoice.invoice_number, UpdateInvoiceRequest(status=InvoiceStatus.DRAFT)
        )
    assert info.value.code is ErrorCode.INVOICE_STATUS_ERROR


def test_cancelled_invoice_is_frozen(services, customers):
    invoice = _invoice(services)
    services.invoices.cancel_invoice(invoice.invoice_number)

    with pytest.raises(InvoiceError) as info:
        services.invoices.update_invoice(
            invoice.invoice_number, UpdateInvoiceRequest(subject="Changed")
        )
    assert info.value.code is ErrorCode.INVOICE_STATUS_ERROR

    with pytest.raises(InvoiceError) as info:
        services.invoices.update_invoice(
            invoice.invoice_number, UpdateInvoiceRequest(status=InvoiceStatus.DRAFT)
        )
    assert info.value.code is ErrorCode.INVOICE_STATUS_ERROR

    stored = services.invoices.get_invoice(invoice.invoice_number)
    assert stored.subject == "Spring campaign"
    assert stored.status is InvoiceStatus.CANCELLED


def test_cancel_twice_fails(services, customers):
    invoice = _invoice(services)
    services.invoices.cancel_invoice(invoice.invoice_number)
    with pytest.raises(InvoiceError, match="already cancelled"):
        services.invoices.cancel_invoice(invoice.invoice_number)


def test_issue_requires_draft(services, customers):
    invoice = _invoice(services)
    services.invoices.issue_invoice(invoice.invoice_number)
    with pytest.raises(InvoiceError):
        services.invoices.issue_invoice(invoice.invoice_number)


# --------------------------------------------------------------------
# CREATE / UPDATE VALIDATION
# --------------------------------------------------------------------
@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"customer_id": ""}, "customer_id"),
        ({"advertiser": ""}, "advertiser"),
        ({"advertiser": "a" * 201}, "advertiser"),
        ({"subject": " "}, "subject"),
        ({"subject": "s" * 301}, "subject"),
        ({"unit_price": 0}, "unit_price"),
        ({"unit_price": -5}, "unit_price"),
        ({"unit_price": 100_000_000}, "unit_price"),
        ({"unit_price": 1000.5}, "unit_price"),
        ({"unit_price": True}, "unit_price"),
        ({"notes": "n" * 1001}, "notes"),
    ],
)
def test_create_invoice_validation(services, customers, overrides, field):
    values = {
        "customer_id": "C00001",
        "advertiser": "Acme Foods",
        "subject": "Spring campaign",
        "unit_price": 1000,
    }
    values.update(overrides)
    with pytest.raises(ValidationError) as info:
        services.invoices.create_invoice(CreateInvoiceRequest(**values))
    assert info.value.field == field
    assert services.invoice_repository.count() == 0


def test_create_invoice_at_price_limits(services, customers):
    assert _invoice(services, unit_price=1).total_amount == 1
    assert _invoice(services, unit_price=99_999_999).total_amount == 109_999_998


def test_create_invoice_for_unknown_customer(services, customers):
    with pytest.raises(CustomerError) as info:
        _invoice(services, customer_id="C00099")
    assert info.value.code is ErrorCode.CUSTOMER_NOT_FOUND
    assert user_facing_message(info.value) == "The selected customer could not be found."


def test_update_invoice_fields(services, customers):
    invoice = _invoice(services)
    updated = services.invoices.update_invoice(
        invoice.invoice_number,
        UpdateInvoiceRequest(customer_id="C00002", notes="Moved to Globex"),
    )
    assert updated.customer_id == "C00002"
    assert updated.notes == "Moved to Globex"


def test_update_invoice_to_unknown_customer(services, customers):
    invoice = _invoice(services)
    with pytest.raises(CustomerError):
        services.invoices.update_invoice(
            invoice.invoice_number, UpdateInvoiceRequest(customer_id="C00042")
        )


def test_update_invoice_validates_patched_text(services, customers):
    invoice = _invoice(services)
    with pytest.raises(ValidationError):
        services.invoices.update_invoice(
            invoice.invoice_number, UpdateInvoiceRequest(advertiser="")
        )


def test_update_invoice_rejects_unknown_status(services, customers):
    invoice = _invoice(services)
    with pytest.raises(ValidationError) as info:
        services.invoices.update_invoice(
            invoice.invoice_number, UpdateInvoiceRequest(status="DONE")
        )
    assert info.value.field == "status"
    assert info.value.code is ErrorCode.DATA_INVALID
    assert not info.value.is_retryable
    assert services.invoices.get_invoice(invoice.invoice_number).status is InvoiceStatus.DRAFT


def test_update_invoice_accepts_status_value_string(services, customers):
    invoice = _invoice(services)
    updated = services.invoices.update_invoice(
        invoice.invoice_number, UpdateInvoiceRequest(status="issued")
    )
    assert updated.status is InvoiceStatus.ISSUED


@pytest.mark.parametrize(
    "amounts",
    [
        {"subtotal": 5},
        {"total_amount": 999},
        {"subtotal": 200000, "tax_amount": 20000, "total_amount": 200000},
        {"subtotal": 0, "tax_amount": 0, "total_amount": 0},
    ],
)
def test_update_invoice_rejects_inconsistent_amounts(services, customers, amounts):
    invoice = _invoice(services, unit_price=100000)
    with pytest.raises(ValidationError):
        services.invoices.update_invoice(invoice.invoice_number, UpdateInvoiceRequest(**amounts))

    stored = services.invoices.get_invoice(invoice.invoice_number)
    assert (stored.subtotal, stored.tax_amount, stored.total_amount) == (100000, 10000, 110000)
    assert stored.items[0].unit_price == 100000


def test_update_invoice_with_consistent_amounts_reprices(services, customers):
    invoice = _invoice(services, unit_price=100000)
    updated = services.invoices.update_invoice(
        invoice.invoice_number,
        UpdateInvoiceRequest(subtotal=15, tax_amount=1, total_amount=16),
    )
    assert (updated.subtotal, updated.tax_amount, updated.total_amount) == (15, 1, 16)
    assert (updated.items[0].unit_price, updated.items[0].amount) == (15, 16)
    assert updated.subtotal + updated.tax_amount == updated.total_amount


def test_get_invoice_not_found(services):
    with pytest.raises(InvoiceError) as info:
        services.invoices.get_invoice("202503-404")
    assert info.value.code is ErrorCode.INVOICE_NOT_FOUND


# --------------------------------------------------------------------
# DELETE
# --------------------------------------------------------------------
def test_delete_draft_invoice(services, customers):
    invoice = _invoice(services)
    services.invoices.delete_invoice(invoice.invoice_number)
    assert not services.invoice_repository.exists(invoice.invoice_number)


def test_delete_issued_invoice_is_refused(services, customers):
    invoice = _invoice(services)
    services.invoices.issue_invoice(invoice.invoice_number)
    with pytest.raises(InvoiceError) as info:
        services.invoices.delete_invoice(invoice.invoice_number)
    assert info.value.code is ErrorCode.INVOICE_STATUS_ERROR
    assert services.invoice_repository.exists(invoice.invoice_number)


def test_delete_cancelled_invoice(services, customers):
    invoice = _invoice(services)
    services.invoices.issue_invoice(invoice.invoice_number)
    services.invoices.cancel_invoice(invoice.invoice_number)
    services.invoices.delete_invoice(invoice.invoice_number)
    assert services.invoices.get_all_invoices() == []


# --------------------------------------------------------------------
# QUERIES AND REPORTS
# --------------------------------------------------------------------
def test_get_invoices_by_customer(services, customers):
    _invoice(services, "C00001")
    _invoice(services, "C00002")
    assert len(services.invoices.get_invoices_by_customer("C00002")) == 1

    with pytest.raises(CustomerError):
        services.invoices.get_invoices_by_customer("C00404")


def test_search_invoices(services, customers):
    _invoice(services, "C00001", advertiser="Acme Foods")
    _invoice(services, "C00002", advertiser="Globex Drinks")
    result = services.invoices.search_invoices(InvoiceFilter(advertiser="GLOBEX"))
    assert (result.total_count, result.filtered_count) == (2, 1)
    assert result.invoices[0].customer_id == "C00002"


def test_attach_pdf_url(services, customers):
    invoice = _invoice(services)
    updated = services.invoices.attach_pdf_url(
        invoice.invoice_number, "https://files.example/202503-001.pdf"
    )
    assert updated.pdf_url == "https://files.example/202503-001.pdf"
    with pytest.raises(ValidationError):
        services.invoices.attach_pdf_url(invoice.invoice_number, "")


def test_invoice_stats(services, customers, clock):
    clock.now = datetime(2025, 2, 20, 9, 0, 0)
    _invoice(services, unit_price=50000)  # 55000, last month
    clock.now = datetime(2025, 3, 15, 10, 30, 0)
    issued = _invoice(services, unit_price=100000)  # 110000
    cancelled = _invoice(services, unit_price=10000)  # 11000
    services.invoices.issue_invoice(issued.invoice_number)
    services.invoices.cancel_invoice(cancelled.invoice_number)

    stats = services.invoices.get_invoice_stats()
    assert stats.total_count == 3
    assert (stats.draft_count, stats.issued_count, stats.cancelled_count) == (1, 1, 1)
    assert stats.total_amount == 176000
    assert stats.this_month_count == 2
    assert stats.this_month_amount == 121000


def test_monthly_report(services, customers, clock):
    clock.now = datetime(2025, 3, 2, 9, 0, 0)
    _invoice(services, "C00001", unit_price=100000)  # 110000
    _invoice(services, "C00002", unit_price=300000)  # 330000
    _invoice(services, "C00001", unit_price=100000)  # 110000
    clock.now = datetime(2025, 4, 2, 9, 0, 0)
    _invoice(services, "C00002", unit_price=1000)

    report = services.invoices.generate_monthly_report(2025, 3)

    assert (report.year, report.month) == (2025, 3)
    assert report.invoice_count == 3
    assert report.total_amount == 550000
    assert report.average_amount == pytest.approx(550000 / 3)
    assert [(c.customer_id, c.customer_name, c.invoice_count, c.total_amount)
            for c in report.top_customers] == [
        ("C00002", "Globex", 1, 330000),
        ("C00001", "Acme", 2, 220000),
    ]


def test_monthly_report_for_empty_month(services):
    report = services.invoices.generate_monthly_report(2024, 1)
    assert report.invoice_count == 0
    assert report.average_amount == 0.0
    assert report.top_customers == []


def test_monthly_report_rejects_bad_month(services):
    with pytest.raises(ValidationError):
        services.invoices.generate_monthly_report(2025, 13)
