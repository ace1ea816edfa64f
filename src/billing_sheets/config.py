"""Runtime settings for the billing workbook.

Settings are plain frozen dataclasses handed to the store, repositories and
services through their constructors, so each test can build an isolated
set. :meth:`BillingConfig.from_env` reads overrides from the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from billing_sheets.errors import AppError, ErrorCode

APP_NAME = "billing-sheets"

CUSTOMER_HEADERS = (
    "Customer ID",
    "Company Name",
    "Contact Person",
    "Postal Code",
    "Address",
    "Email",
    "Phone Number",
    "Registered At",
    "Updated At",
)

INVOICE_HEADERS = (
    "Invoice Number",
    "Issue Date",
    "Customer ID",
    "Advertiser",
    "Subject",
    "Subtotal",
    "Tax Amount",
    "Total Amount",
    "Notes",
    "Status",
    "PDF URL",
    "Created At",
    "Updated At",
)

LINE_ITEM_HEADERS = (
    "Item ID",
    "Invoice Number",
    "Item Name",
    "Quantity",
    "Unit",
    "Unit Price",
    "Tax Rate",
    "Amount",
)


@dataclass(frozen=True)
class SheetNames:
    customers: str = "customers"
    invoices: str = "invoices"
    line_items: str = "invoice_items"

    def headers(self) -> dict[str, tuple[str, ...]]:
        """Header schema keyed by sheet name."""
        return {
            self.customers: CUSTOMER_HEADERS,
            self.invoices: INVOICE_HEADERS,
            self.line_items: LINE_ITEM_HEADERS,
        }


@dataclass(frozen=True)
class BillingConfig:
    workbook_path: Optional[Path] = None  # None keeps the workbook in memory
    sheets: SheetNames = field(default_factory=SheetNames)
    max_retries: int = 3
    retry_base_delay: float = 1.0  # seconds
    log_level: str = "INFO"
    enforce_customer_invoice_integrity: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BillingConfig":
        env = os.environ if environ is None else environ
        workbook = env.get("BILLING_WORKBOOK")
        try:
            return cls(
                workbook_path=Path(workbook) if workbook else None,
                max_retries=int(env.get("BILLING_MAX_RETRIES", "3")),
                retry_base_delay=float(env.get("BILLING_RETRY_DELAY", "1.0")),
                log_level=env.get("BILLING_LOG_LEVEL", "INFO").upper(),
                enforce_customer_invoice_integrity=env.get(
                    "BILLING_ENFORCE_INTEGRITY", "true"
                ).strip().lower()
                not in ("0", "false", "no"),
            )
        except ValueError as exc:
            raise AppError(
                ErrorCode.CONFIG_ERROR,
                f"Invalid billing configuration: {exc}",
                "BillingConfig.from_env",
            ) from exc


__all__ = [
    "APP_NAME",
    "BillingConfig",
    "CUSTOMER_HEADERS",
    "INVOICE_HEADERS",
    "LINE_ITEM_HEADERS",
    "SheetNames",
]
