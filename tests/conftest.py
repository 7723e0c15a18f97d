"""
Pytest fixtures for the lab receivables test suite.

Provides:
- Structured-log capture
- Deterministic clock and default configuration
- In-memory and SQLite-backed ledger stores
- Invoice / payment builders driven through ReceivablesService

Environment Variables:
- None.  SQL-backed tests run against a throwaway SQLite file per test.
"""

import itertools
import json
import logging
from decimal import Decimal
from io import StringIO
from uuid import UUID

import pytest
from sqlalchemy.orm import sessionmaker

from billing_kernel.db.engine import build_engine, create_tables
from billing_kernel.domain.clock import DeterministicClock
from billing_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from billing_modules.receivables.config import ReceivablesConfig
from billing_modules.receivables.repository import InMemoryLedgerStore
from billing_modules.receivables.service import ReceivablesService
from billing_modules.receivables.sql_repository import SqlAlchemyLedgerStore

# Deterministic parent entity IDs
ORG_ID = UUID("00000000-0000-4000-a000-000000000001")
CLIENT_ID = UUID("00000000-0000-4000-a000-000000000002")
OTHER_CLIENT_ID = UUID("00000000-0000-4000-a000-000000000003")
OTHER_ORG_ID = UUID("00000000-0000-4000-a000-000000000004")
TEST_ACTOR_ID = UUID("00000000-0000-4000-a000-000000000099")


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture billing_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, service):
            service.allocate(...)
            logs = captured_logs()
            assert any(r["message"] == "allocation_committed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("billing_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Core fixtures
# =============================================================================


@pytest.fixture
def org_id() -> UUID:
    return ORG_ID


@pytest.fixture
def client_id() -> UUID:
    return CLIENT_ID


@pytest.fixture
def other_client_id() -> UUID:
    return OTHER_CLIENT_ID


@pytest.fixture
def other_org_id() -> UUID:
    return OTHER_ORG_ID


@pytest.fixture
def test_actor_id() -> UUID:
    return TEST_ACTOR_ID


@pytest.fixture
def deterministic_clock() -> DeterministicClock:
    """Clock fixed at 2024-01-01 12:00 UTC."""
    return DeterministicClock()


@pytest.fixture
def receivables_config() -> ReceivablesConfig:
    return ReceivablesConfig.with_defaults()


@pytest.fixture
def memory_store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def sqlite_engine(tmp_path):
    """Engine over a fresh SQLite file with every receivables table created."""
    engine = build_engine(f"sqlite:///{tmp_path / 'receivables.db'}")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sqlite_store(sqlite_engine) -> SqlAlchemyLedgerStore:
    return SqlAlchemyLedgerStore(sessionmaker(bind=sqlite_engine, expire_on_commit=False))


@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    """Every store implementation; tests using it run once per backend."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def service(memory_store, deterministic_clock, receivables_config) -> ReceivablesService:
    return ReceivablesService(memory_store, deterministic_clock, receivables_config)


@pytest.fixture
def any_service(store, deterministic_clock, receivables_config) -> ReceivablesService:
    """ReceivablesService over each store backend."""
    return ReceivablesService(store, deterministic_clock, receivables_config)


# =============================================================================
# Builders
# =============================================================================


def _invoice_builder(service: ReceivablesService):
    numbers = itertools.count(1001)

    def _make(
        *line_prices: str,
        client_id: UUID = CLIENT_ID,
        organization_id: UUID = ORG_ID,
        send: bool = True,
        issue_date=None,
        due_date=None,
    ):
        prices = line_prices or ("500.00",)
        invoice = service.create_invoice(
            organization_id=organization_id,
            client_id=client_id,
            invoice_number=f"INV-{next(numbers)}",
            lines=[
                {"description": f"Lab panel {i + 1}", "quantity": 1, "unit_price": price}
                for i, price in enumerate(prices)
            ],
            issue_date=issue_date,
            due_date=due_date,
        )
        if send:
            service.finalize_invoice(invoice.id)
            invoice = service.send_invoice(invoice.id)
        return invoice

    return _make


def _payment_builder(service: ReceivablesService):
    def _make(amount: str, client_id: UUID = CLIENT_ID, organization_id: UUID = ORG_ID, method="check"):
        return service.record_payment(
            organization_id=organization_id,
            client_id=client_id,
            amount=Decimal(amount),
            method=method,
        )

    return _make


@pytest.fixture
def make_invoice(service):
    """Create (and by default finalize and send) an invoice; one line per price."""
    return _invoice_builder(service)


@pytest.fixture
def make_payment(service):
    return _payment_builder(service)


@pytest.fixture
def make_any_invoice(any_service):
    return _invoice_builder(any_service)


@pytest.fixture
def make_any_payment(any_service):
    return _payment_builder(any_service)
