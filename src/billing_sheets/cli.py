"""Command-line interface for the billing workbook."""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path

from .config import APP_NAME, BillingConfig
from .errors import AppError, user_facing_message
from .runner import (
    build_services,
    initialize_workbook,
    open_store,
    run_monthly_report,
    run_stats_report,
)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Manage customers and invoices kept in an Excel workbook",
    )
    parser.add_argument(
        "--workbook",
        help="Excel workbook holding the billing sheets (default: $BILLING_WORKBOOK)",
    )
    parser.add_argument("--log-level", help="Logging level (default: INFO)")

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init", help="Create any missing billing sheets")

    stats = commands.add_parser("stats", help="Write customer and invoice statistics")
    stats.add_argument("--output", help="Optional JSON output path")

    monthly = commands.add_parser("monthly-report", help="Write a monthly invoice report")
    monthly.add_argument("--year", type=int, required=True)
    monthly.add_argument("--month", type=int, required=True)
    monthly.add_argument("--output", help="Optional JSON output path")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        config = BillingConfig.from_env()
    except AppError as exc:
        print(user_facing_message(exc), file=sys.stderr)
        return 1
    if args.workbook:
        config = replace(config, workbook_path=Path(args.workbook))
    if args.log_level:
        config = replace(config, log_level=args.log_level.upper())

    if not isinstance(logging.getLevelName(config.log_level), int):
        parser.error(f"unknown log level: {config.log_level}")

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if config.workbook_path is None:
        parser.error("--workbook is required when BILLING_WORKBOOK is not set")

    try:
        if args.command == "init":
            created = initialize_workbook(open_store(config), config)
            if created:
                print(f"Created sheets: {', '.join(created)}")
            else:
                print("All sheets already exist")
            return 0

        services = build_services(config)
        if args.command == "stats":
            path = run_stats_report(services, output_path=args.output)
        else:
            path = run_monthly_report(
                services, args.year, args.month, output_path=args.output
            )
    except AppError as exc:
        print(user_facing_message(exc), file=sys.stderr)
        return 1

    print(f"Report written to {path}")
    return 0


if __name__ == "__main__":  # pragma: no cover - manual invocation
    sys.exit(main())
