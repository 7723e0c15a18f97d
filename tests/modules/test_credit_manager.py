"""
Tests for client credits.

Covers:
- Converting a payment remainder to credit
- Targeted and oldest-first application
- Expiry and refund
- The client credit summary identity
"""

from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from billing_kernel.exceptions import (
    CreditExceededError,
    CreditExpiredError,
    CreditNotAvailableError,
    CreditNotFoundError,
    InvalidTargetError,
    OverAllocationError,
    PaymentExceededError,
)
from billing_modules.receivables.config import ReceivablesConfig
from billing_modules.receivables.models import (
    AllocationTarget,
    CreditStatus,
    InvoiceStatus,
    PaymentStatus,
)
from billing_modules.receivables.service import ReceivablesService


@pytest.fixture
def make_credit(service, client_id, org_id):
    def _make(amount: str, expires_at=None, client=None):
        return service.issue_adjustment_credit(
            organization_id=org_id,
            client_id=client or client_id,
            amount=Decimal(amount),
            reason="billing correction",
            expires_at=expires_at,
        )

    return _make


class TestCreateCredit:
    def test_remainder_becomes_credit_and_posts_payment(self, service, make_invoice, make_payment):
        invoice = make_invoice("200.00")
        payment = make_payment("300.00")
        service.allocate(payment.id, [AllocationTarget(invoice.id, Decimal("200.00"))])

        credit = service.create_credit(payment.id, "100.00")

        assert credit.amount == Decimal("100.00")
        assert credit.remaining_amount == Decimal("100.00")
        assert credit.status is CreditStatus.AVAILABLE
        assert credit.source_payment_id == payment.id
        assert service.get_payment(payment.id).status is PaymentStatus.POSTED

    def test_partial_credit_leaves_payment_unposted(self, service, make_payment):
        payment = make_payment("300.00")

        service.create_credit(payment.id, "100.00")

        stored = service.get_payment(payment.id)
        assert stored.status is PaymentStatus.UNPOSTED
        assert stored.unallocated_amount == Decimal("200.00")

    def test_credit_larger_than_remainder(self, service, make_payment):
        payment = make_payment("100.00")

        with pytest.raises(PaymentExceededError):
            service.create_credit(payment.id, "100.01")

    def test_adjustment_credit_requires_reason(self, service, org_id, client_id):
        with pytest.raises(ValueError):
            service.issue_adjustment_credit(org_id, client_id, "10.00", reason="  ")

    def test_config_expiry_applied(self, memory_store, deterministic_clock, org_id, client_id):
        svc = ReceivablesService(
            memory_store, deterministic_clock, ReceivablesConfig(credit_expiry_days=90)
        )

        credit = svc.issue_adjustment_credit(org_id, client_id, "10.00", reason="goodwill")

        assert credit.expires_at == deterministic_clock.now() + timedelta(days=90)


class TestApplyCredit:
    def test_targeted_application(self, service, make_invoice, make_credit):
        invoice = make_invoice("500.00")
        credit = make_credit("50.00")

        result = service.apply_credit(credit.id, invoice_id=invoice.id)

        assert result.total_applied == Decimal("50.00")
        assert result.credit.remaining_amount == Decimal("0.00")
        assert result.credit.status is CreditStatus.APPLIED
        assert result.allocations[0].credit_id == credit.id
        assert result.allocations[0].payment_id is None
        assert service.get_invoice(invoice.id).balance_due == Decimal("450.00")

    def test_targeted_default_capped_by_invoice_balance(self, service, make_invoice, make_credit):
        invoice = make_invoice("30.00")
        credit = make_credit("50.00")

        result = service.apply_credit(credit.id, invoice_id=invoice.id)

        assert result.total_applied == Decimal("30.00")
        assert result.credit.remaining_amount == Decimal("20.00")
        assert result.credit.status is CreditStatus.AVAILABLE
        assert service.get_invoice(invoice.id).status is InvoiceStatus.PAID

    def test_explicit_amount(self, service, make_invoice, make_credit):
        invoice = make_invoice("500.00")
        credit = make_credit("50.00")

        result = service.apply_credit(credit.id, invoice_id=invoice.id, amount="20.00")

        assert result.credit.remaining_amount == Decimal("30.00")

    def test_amount_above_remaining(self, service, make_invoice, make_credit):
        invoice = make_invoice("500.00")
        credit = make_credit("50.00")

        with pytest.raises(CreditExceededError):
            service.apply_credit(credit.id, invoice_id=invoice.id, amount="60.00")

    def test_amount_above_invoice_balance(self, service, make_invoice, make_credit):
        invoice = make_invoice("30.00")
        credit = make_credit("50.00")

        with pytest.raises(OverAllocationError):
            service.apply_credit(credit.id, invoice_id=invoice.id, amount="40.00")

        assert service.get_credit(credit.id).remaining_amount == Decimal("50.00")

    def test_other_clients_invoice(self, service, make_invoice, make_credit, other_client_id):
        invoice = make_invoice("100.00", client_id=other_client_id)
        credit = make_credit("50.00")

        with pytest.raises(InvalidTargetError):
            service.apply_credit(credit.id, invoice_id=invoice.id)

    def test_oldest_first(self, service, make_invoice, make_credit):
        older = make_invoice("100.00", issue_date=date(2023, 12, 1))
        newer = make_invoice("100.00", issue_date=date(2023, 12, 15))
        credit = make_credit("150.00")

        result = service.apply_credit(credit.id)

        assert [a.invoice_id for a in result.allocations] == [older.id, newer.id]
        assert service.get_invoice(older.id).status is InvoiceStatus.PAID
        assert service.get_invoice(newer.id).balance_due == Decimal("50.00")

    def test_same_issue_date_ordered_by_id(self, any_service, make_any_invoice, org_id, client_id):
        same_day = date(2023, 12, 1)
        invoices = [make_any_invoice("100.00", issue_date=same_day) for _ in range(2)]
        low, high = sorted(invoices, key=lambda inv: str(inv.id))
        credit = any_service.issue_adjustment_credit(
            organization_id=org_id, client_id=client_id, amount="150.00", reason="billing correction"
        )

        result = any_service.apply_credit(credit.id)

        assert [a.invoice_id for a in result.allocations] == [low.id, high.id]
        assert any_service.get_invoice(low.id).balance_due == Decimal("0.00")
        assert any_service.get_invoice(high.id).balance_due == Decimal("50.00")

    def test_oldest_first_with_no_open_invoices(self, service, make_credit):
        credit = make_credit("50.00")

        result = service.apply_credit(credit.id)

        assert result.allocations == ()
        assert result.credit.remaining_amount == Decimal("50.00")

    def test_unknown_credit(self, service, make_invoice):
        invoice = make_invoice()

        with pytest.raises(CreditNotFoundError):
            service.apply_credit(uuid4(), invoice_id=invoice.id)

    def test_overpayment_credit_round_trip(self, service, make_invoice, make_payment):
        """Every cent of an overpayment lands on a later invoice."""
        first = make_invoice("100.00")
        second = make_invoice("500.00")
        payment = make_payment("150.00")

        closed = service.allocate(
            payment.id, [AllocationTarget(first.id, Decimal("100.00"))], close_out=True
        )
        service.apply_credit(closed.credit.id, invoice_id=second.id)

        applied = service.list_allocations(credit_id=closed.credit.id)
        assert sum(a.amount for a in applied) == Decimal("50.00")
        assert service.get_invoice(second.id).balance_due == Decimal("450.00")


class TestExpiry:
    def test_expired_credit_cannot_be_applied(
        self, service, make_invoice, make_credit, deterministic_clock
    ):
        invoice = make_invoice()
        credit = make_credit("50.00", expires_at=deterministic_clock.now() + timedelta(days=1))
        deterministic_clock.advance_days(2)

        with pytest.raises(CreditExpiredError):
            service.apply_credit(credit.id, invoice_id=invoice.id)

    def test_expire_credits_sweep(self, service, make_credit, deterministic_clock):
        now = deterministic_clock.now()
        due = make_credit("50.00", expires_at=now)
        later = make_credit("20.00", expires_at=now + timedelta(days=30))
        never = make_credit("10.00")

        expired = service.expire_credits()

        assert [c.id for c in expired] == [due.id]
        assert service.get_credit(due.id).status is CreditStatus.EXPIRED
        assert service.get_credit(due.id).remaining_amount == Decimal("50.00")
        assert service.get_credit(later.id).status is CreditStatus.AVAILABLE
        assert service.get_credit(never.id).status is CreditStatus.AVAILABLE

    def test_sweep_is_idempotent(self, service, make_credit, deterministic_clock):
        make_credit("50.00", expires_at=deterministic_clock.now())

        assert len(service.expire_credits()) == 1
        assert service.expire_credits() == []


class TestRefund:
    def test_refund_zeroes_remaining(self, service, make_credit):
        credit = make_credit("50.00")

        refunded = service.refund_credit(credit.id, "client request")

        assert refunded.status is CreditStatus.REFUNDED
        assert refunded.remaining_amount == Decimal("0.00")

    def test_refunded_credit_cannot_be_applied(self, service, make_invoice, make_credit):
        invoice = make_invoice()
        credit = make_credit("50.00")
        service.refund_credit(credit.id, "client request")

        with pytest.raises(CreditNotAvailableError):
            service.apply_credit(credit.id, invoice_id=invoice.id)

    def test_refund_after_partial_application(self, service, make_invoice, make_credit):
        invoice = make_invoice()
        credit = make_credit("50.00")
        service.apply_credit(credit.id, invoice_id=invoice.id, amount="20.00")

        refunded = service.refund_credit(credit.id, "client request")

        assert refunded.remaining_amount == Decimal("0.00")
        assert service.get_invoice(invoice.id).paid_amount == Decimal("20.00")


class TestClientCreditSummary:
    def test_summary_accounts_for_every_cent(
        self, service, make_invoice, make_credit, deterministic_clock, client_id
    ):
        invoice = make_invoice("500.00")

        refunded = make_credit("100.00")
        service.apply_credit(refunded.id, invoice_id=invoice.id, amount="40.00")
        service.refund_credit(refunded.id, "client request")

        make_credit("50.00", expires_at=deterministic_clock.now())
        service.expire_credits()

        make_credit("30.00")

        summary = service.client_credit_summary(client_id)

        assert summary.total_credits == Decimal("180.00")
        assert summary.available == Decimal("30.00")
        assert summary.applied == Decimal("40.00")
        assert summary.expired == Decimal("50.00")
        assert summary.refunded == Decimal("60.00")
        assert summary.total_credits == (
            summary.available + summary.applied + summary.expired + summary.refunded
        )

    def test_other_clients_excluded(self, service, make_credit, client_id, other_client_id):
        make_credit("25.00", client=other_client_id)

        summary = service.client_credit_summary(client_id)

        assert summary.total_credits == Decimal("0.00")
        assert summary.credits == ()
