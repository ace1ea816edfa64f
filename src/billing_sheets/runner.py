from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from billing_sheets.config import BillingConfig
from billing_sheets.customer_repository import CustomerRepository
from billing_sheets.customer_service import CustomerService
from billing_sheets.errors import AppError, with_retry
from billing_sheets.invoice_repository import InvoiceRepository
from billing_sheets.invoice_service import InvoiceService
from billing_sheets.report import (
    build_error_payload,
    build_monthly_report_payload,
    build_stats_payload,
    write_payload_to_json,
)
from billing_sheets.workbook_store import WorkbookStore

logger = logging.getLogger(__name__)

DEFAULT_REPORT_NAME = "billing_report.json"
DEFAULT_MONTHLY_REPORT_NAME = "monthly_report.json"


@dataclass
class BillingServices:
    """Everything wired to one workbook."""

    config: BillingConfig
    store: WorkbookStore
    customer_repository: CustomerRepository
    invoice_repository: InvoiceRepository
    customers: CustomerService
    invoices: InvoiceService


def open_store(config: BillingConfig) -> WorkbookStore:
    if config.workbook_path is None:
        return WorkbookStore.in_memory()
    return with_retry(
        lambda: WorkbookStore.open(config.workbook_path),
        "open_store",
        max_attempts=config.max_retries,
        base_delay=config.retry_base_delay,
    )


def initialize_workbook(store: WorkbookStore, config: BillingConfig) -> List[str]:
    """Create any missing sheet with its header row; return the new sheet names."""
    created = store.initialize(config.sheets)
    if created:
        logger.info("Created sheets: %s", ", ".join(created))
    return created


def build_services(
    config: Optional[BillingConfig] = None,
    store: Optional[WorkbookStore] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> BillingServices:
    """Open (or take) the store, make sure its sheets exist and wire the services."""

    config = config or BillingConfig()
    store = store if store is not None else open_store(config)
    initialize_workbook(store, config)

    customer_repository = CustomerRepository(store, config, clock)
    invoice_repository = InvoiceRepository(store, config, clock)
    customers = CustomerService(
        customer_repository,
        invoice_repository if config.enforce_customer_invoice_integrity else None,
        clock,
    )
    invoices = InvoiceService(invoice_repository, customer_repository, clock)

    return BillingServices(
        config=config,
        store=store,
        customer_repository=customer_repository,
        invoice_repository=invoice_repository,
        customers=customers,
        invoices=invoices,
    )


def run_stats_report(
    services: BillingServices,
    *,
    output_path: str | None = None,
) -> Path:
    """Write customer and invoice statistics to JSON.

    On failure an error report is written to the same path before the
    error propagates.
    """

    report_path = Path(output_path) if output_path else Path(DEFAULT_REPORT_NAME)

    try:
        payload = build_stats_payload(
            services.customers.get_customer_stats(),
            services.invoices.get_invoice_stats(),
        )
    except AppError as exc:
        write_payload_to_json(build_error_payload(str(exc)), report_path)
        raise

    return write_payload_to_json(payload, report_path)


def run_monthly_report(
    services: BillingServices,
    year: int,
    month: int,
    *,
    output_path: str | None = None,
) -> Path:
    report_path = (
        Path(output_path) if output_path else Path(DEFAULT_MONTHLY_REPORT_NAME)
    )

    try:
        report = services.invoices.generate_monthly_report(year, month)
    except AppError as exc:
        write_payload_to_json(build_error_payload(str(exc)), report_path)
        raise

    return write_payload_to_json(build_monthly_report_payload(report), report_path)


__all__ = [
    "BillingServices",
    "DEFAULT_MONTHLY_REPORT_NAME",
    "DEFAULT_REPORT_NAME",
    "build_services",
    "initialize_workbook",
    "open_store",
    "run_monthly_report",
    "run_stats_report",
]
