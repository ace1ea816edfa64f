"""Shared fixtures: an in-memory workbook, a controllable clock and wired services."""

from datetime import datetime

import pytest

from billing_sheets.config import BillingConfig
from billing_sheets.runner import build_services
from billing_sheets.workbook_store import WorkbookStore


class FakeClock:
    """Callable clock whose current time tests can move."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 15, 10, 30, 0))


@pytest.fixture
def config():
    # No real waiting between retries
    return BillingConfig(retry_base_delay=0)


@pytest.fixture
def store(config):
    store = WorkbookStore.in_memory()
    store.initialize(config.sheets)
    return store


@pytest.fixture
def services(config, store, clock):
    return build_services(config, store=store, clock=clock)
