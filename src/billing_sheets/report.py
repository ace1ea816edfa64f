from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from billing_sheets.model import (
    CustomerStats,
    CustomerTotal,
    InvoiceStats,
    MonthlyReport,
)


def iso_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _serialise_customer_stats(stats: CustomerStats) -> Dict[str, Any]:
    return {
        "total_count": stats.total_count,
        "recent_registrations": stats.recent_registrations,
        "recent_companies": [
            {
                "company_name": c.company_name,
                "registered_at": c.registered_at.isoformat(),
            }
            for c in stats.top_companies
        ],
    }


def _serialise_invoice_stats(stats: InvoiceStats) -> Dict[str, Any]:
    return {
        "total_count": stats.total_count,
        "draft_count": stats.draft_count,
        "issued_count": stats.issued_count,
        "cancelled_count": stats.cancelled_count,
        "total_amount": stats.total_amount,
        "this_month_count": stats.this_month_count,
        "this_month_amount": stats.this_month_amount,
    }


def _serialise_customer_total(total: CustomerTotal) -> Dict[str, Any]:
    return {
        "customer_id": total.customer_id,
        "customer_name": total.customer_name,
        "invoice_count": total.invoice_count,
        "total_amount": total.total_amount,
    }


def build_stats_payload(
    customer_stats: CustomerStats,
    invoice_stats: InvoiceStats,
) -> Dict[str, Any]:
    """Build the JSON payload for the combined customer/invoice statistics."""

    return {
        "status": "success",
        "timestamp": iso_timestamp(),
        "customers": _serialise_customer_stats(customer_stats),
        "invoices": _serialise_invoice_stats(invoice_stats),
    }


def build_monthly_report_payload(report: MonthlyReport) -> Dict[str, Any]:
    return {
        "status": "success",
        "timestamp": iso_timestamp(),
        "year": report.year,
        "month": report.month,
        "invoice_count": report.invoice_count,
        "total_amount": report.total_amount,
        "average_amount": report.average_amount,
        "top_customers": [_serialise_customer_total(c) for c in report.top_customers],
    }


def build_error_payload(error: str) -> Dict[str, Any]:
    return {
        "status": "error",
        "timestamp": iso_timestamp(),
        "error": error,
    }


def write_payload_to_json(payload: Dict[str, Any], output_path: Path) -> Path:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, ensure_ascii=False)

    return output_path
