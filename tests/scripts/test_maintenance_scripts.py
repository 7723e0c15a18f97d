"""
Smoke tests for the maintenance scripts.

Each script is imported from scripts/ and its main() run against a seeded
SQLite file, the way cron would run it against PostgreSQL.
"""

import importlib
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy.orm import sessionmaker

from billing_kernel.db.engine import build_engine, create_tables, reset_engine
from billing_modules.receivables.models import AllocationTarget
from billing_modules.receivables.service import ReceivablesService
from billing_modules.receivables.sql_repository import SqlAlchemyLedgerStore

SCRIPTS_DIR = Path(__file__).parents[2] / "scripts"


@pytest.fixture
def script(monkeypatch):
    monkeypatch.syspath_prepend(str(SCRIPTS_DIR))

    def _load(name):
        return importlib.import_module(name)

    yield _load
    reset_engine()


@pytest.fixture
def seeded_db(tmp_path, deterministic_clock, org_id, client_id):
    path = tmp_path / "ledger.db"
    engine = build_engine(f"sqlite:///{path}")
    create_tables(engine)
    service = ReceivablesService(
        SqlAlchemyLedgerStore(sessionmaker(bind=engine, expire_on_commit=False)),
        deterministic_clock,
    )

    invoice = service.create_invoice(
        org_id, client_id, "INV-9001", lines=[{"description": "Lipid panel", "unit_price": "120.00"}]
    )
    service.finalize_invoice(invoice.id)
    service.send_invoice(invoice.id)
    payment = service.record_payment(org_id, client_id, "200.00", "check")
    service.allocate(payment.id, [AllocationTarget(invoice.id, Decimal("120.00"))])
    service.issue_adjustment_credit(
        org_id, client_id, "15.00", reason="promo",
        expires_at=datetime(2024, 2, 1, tzinfo=timezone.utc),
    )
    engine.dispose()

    return [
        "--database-url", f"sqlite:///{path}",
        "--config", str(tmp_path / "missing.yaml"),
    ]


class TestExpireCredits:
    def test_expires_past_due_credits(self, script, seeded_db, capsys):
        module = script("expire_credits")

        code = module.main([*seeded_db, "--as-of", "2024-03-01T00:00:00"])

        assert code == 0
        assert "Expired 1 credit(s)." in capsys.readouterr().out

    def test_nothing_to_expire_before_cutoff(self, script, seeded_db, capsys):
        module = script("expire_credits")

        module.main([*seeded_db, "--as-of", "2024-01-15T00:00:00+00:00"])

        assert "Expired 0 credit(s)." in capsys.readouterr().out


class TestCheckIntegrity:
    def test_clean_ledger_exits_zero(self, script, seeded_db, capsys):
        module = script("check_integrity")

        assert module.main(seeded_db) == 0
        assert "No integrity incidents found." in capsys.readouterr().out


class TestReconciliationReport:
    def test_prints_totals(self, script, seeded_db, capsys):
        module = script("reconciliation_report")

        assert module.main(seeded_db) == 0

        out = capsys.readouterr().out
        assert "Unposted payments (1):" in out
        assert "Total unallocated payments:" in out
        assert "80.00" in out
