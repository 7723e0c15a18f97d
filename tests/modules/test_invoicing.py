"""
Tests for invoice lifecycle and payment intake.

Covers:
- Drafting, line items, finalize / send / cancel transitions
- Invoice number uniqueness
- Payment recording, duplicate keys and voiding
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from billing_kernel.exceptions import (
    DuplicatePaymentError,
    InvalidAmountError,
    InvalidStateError,
    InvalidTargetError,
    InvoiceNotFoundError,
    PaymentNotFoundError,
    PaymentVoidedError,
)
from billing_modules.receivables.models import (
    AllocationTarget,
    InvoiceStatus,
    PaymentStatus,
)


class TestCreateInvoice:
    def test_draft_with_lines(self, any_service, org_id, client_id):
        invoice = any_service.create_invoice(
            organization_id=org_id,
            client_id=client_id,
            invoice_number="INV-2001",
            lines=[
                {"description": "CBC", "quantity": 2, "unit_price": "12.50", "service_code": "85025"},
                {"description": "Lipid panel", "unit_price": "40.00", "service_code": "80061"},
            ],
        )

        assert invoice.status is InvoiceStatus.DRAFT
        assert invoice.total_amount == Decimal("65.00")
        assert invoice.paid_amount == Decimal("0.00")
        assert len(invoice.line_item_ids) == 2

        lines = any_service.get_line_items(invoice.id)
        assert [li.line_number for li in lines] == [1, 2]
        assert lines[0].line_total == Decimal("25.00")
        assert lines[0].service_code == "85025"

    def test_due_date_defaults_to_terms(self, service, org_id, client_id):
        invoice = service.create_invoice(org_id, client_id, "INV-2002", issue_date=date(2024, 3, 1))

        assert invoice.due_date == date(2024, 3, 31)

    def test_issue_date_defaults_to_today(self, service, org_id, client_id, deterministic_clock):
        invoice = service.create_invoice(org_id, client_id, "INV-2003")

        assert invoice.issue_date == deterministic_clock.today()

    def test_duplicate_number_in_organization(self, service, org_id, client_id, other_org_id):
        service.create_invoice(org_id, client_id, "INV-2004")

        with pytest.raises(InvalidStateError):
            service.create_invoice(org_id, client_id, "INV-2004")

        # Numbers are scoped per organization
        service.create_invoice(other_org_id, client_id, "INV-2004")

    def test_blank_number(self, service, org_id, client_id):
        with pytest.raises(ValueError):
            service.create_invoice(org_id, client_id, " ")

    def test_float_quantity_rejected(self, service, org_id, client_id):
        with pytest.raises(InvalidAmountError):
            service.create_invoice(
                org_id, client_id, "INV-2005",
                lines=[{"description": "CBC", "quantity": 1.5, "unit_price": "10.00"}],
            )

    def test_sub_cent_price_rejected(self, service, org_id, client_id):
        with pytest.raises(InvalidAmountError):
            service.create_invoice(
                org_id, client_id, "INV-2006",
                lines=[{"description": "CBC", "unit_price": "10.005"}],
            )

        # The failed call left no invoice behind
        service.create_invoice(org_id, client_id, "INV-2006")


class TestLineItems:
    def test_add_and_remove(self, service, make_invoice):
        invoice = make_invoice("100.00", "50.00", send=False)
        first, second = service.get_line_items(invoice.id)

        service.remove_line_item(second.id)
        added = service.add_line_item(invoice.id, "Glucose", "7.25", quantity=2)

        assert added.line_number == 3
        assert service.get_invoice(invoice.id).total_amount == Decimal("114.50")
        assert [li.id for li in service.get_line_items(invoice.id)] == [first.id, added.id]

    def test_lines_frozen_after_finalize(self, service, make_invoice):
        invoice = make_invoice("100.00", send=False)
        service.finalize_invoice(invoice.id)

        with pytest.raises(InvalidStateError):
            service.add_line_item(invoice.id, "Late addition", "10.00")

    @pytest.mark.parametrize("quantity", ["two", "NaN", "-1", "0"])
    def test_unusable_quantity(self, service, make_invoice, quantity):
        invoice = make_invoice("100.00", send=False)

        with pytest.raises(InvalidAmountError) as exc_info:
            service.add_line_item(invoice.id, "Glucose", "7.25", quantity=quantity)

        assert exc_info.value.field == "quantity"
        assert len(service.get_line_items(invoice.id)) == 1

    def test_unknown_invoice(self, service):
        with pytest.raises(InvoiceNotFoundError):
            service.add_line_item(uuid4(), "CBC", "10.00")


class TestTransitions:
    def test_finalize_and_send(self, service, make_invoice):
        invoice = make_invoice("100.00", send=False)

        assert service.finalize_invoice(invoice.id).status is InvoiceStatus.FINALIZED
        sent = service.send_invoice(invoice.id)

        assert sent.status is InvoiceStatus.SENT
        assert sent.balance_due == Decimal("100.00")

    def test_finalize_empty_invoice(self, service, org_id, client_id):
        invoice = service.create_invoice(org_id, client_id, "INV-2010")

        with pytest.raises(InvalidStateError):
            service.finalize_invoice(invoice.id)

    def test_send_requires_finalize(self, service, make_invoice):
        invoice = make_invoice("100.00", send=False)

        with pytest.raises(InvalidStateError):
            service.send_invoice(invoice.id)

    def test_past_due_invoice_sent_as_overdue(self, make_invoice):
        invoice = make_invoice("100.00", issue_date=date(2023, 10, 1))

        assert invoice.status is InvoiceStatus.OVERDUE

    def test_transitions_audited(self, service, make_invoice):
        invoice = make_invoice("100.00")

        actions = [e.action for e in service.audit_trail(invoice.id)]
        for action in ("invoice_created", "line_item_added", "invoice_finalized", "invoice_sent"):
            assert action in actions


class TestCancel:
    def test_cancel_unpaid_invoice(self, service, make_invoice, make_payment):
        invoice = make_invoice("100.00")

        cancelled = service.cancel_invoice(invoice.id, reason="ordered in error")

        assert cancelled.status is InvoiceStatus.CANCELLED
        payment = make_payment("100.00")
        with pytest.raises(InvalidTargetError):
            service.allocate(payment.id, [AllocationTarget(invoice.id, Decimal("100.00"))])

    def test_cancel_with_allocations(self, service, make_invoice, make_payment):
        invoice = make_invoice("100.00")
        payment = make_payment("40.00")
        service.allocate(payment.id, [AllocationTarget(invoice.id, Decimal("40.00"))])

        with pytest.raises(InvalidStateError):
            service.cancel_invoice(invoice.id)

    def test_cancel_twice(self, service, make_invoice):
        invoice = make_invoice("100.00", send=False)
        service.cancel_invoice(invoice.id)

        with pytest.raises(InvalidStateError):
            service.cancel_invoice(invoice.id)


class TestPaymentIntake:
    def test_record_payment(self, any_service, org_id, client_id, deterministic_clock):
        payment = any_service.record_payment(
            org_id, client_id, "250.00", "ach", reference_number="ACH-778"
        )

        stored = any_service.get_payment(payment.id)
        assert stored.amount == Decimal("250.00")
        assert stored.status is PaymentStatus.UNPOSTED
        assert stored.reference_number == "ACH-778"
        assert stored.received_at == deterministic_clock.now()

    @pytest.mark.parametrize("amount", ["0", "-10.00"])
    def test_non_positive_amount(self, service, org_id, client_id, amount):
        with pytest.raises(InvalidAmountError):
            service.record_payment(org_id, client_id, amount, "check")

    def test_duplicate_idempotency_key(self, service, org_id, client_id):
        first = service.record_payment(org_id, client_id, "50.00", "card", idempotency_key="evt-1")

        with pytest.raises(DuplicatePaymentError) as exc_info:
            service.record_payment(org_id, client_id, "50.00", "card", idempotency_key="evt-1")

        assert exc_info.value.existing_payment_id == str(first.id)

    def test_void_unallocated_payment(self, service, make_payment):
        payment = make_payment("50.00")

        voided = service.void_payment(payment.id, "NSF")

        assert voided.status is PaymentStatus.VOIDED

    def test_void_twice(self, service, make_payment):
        payment = make_payment("50.00")
        service.void_payment(payment.id, "NSF")

        with pytest.raises(PaymentVoidedError):
            service.void_payment(payment.id, "NSF")

    def test_void_allocated_payment(self, service, make_invoice, make_payment):
        invoice = make_invoice("100.00")
        payment = make_payment("50.00")
        service.allocate(payment.id, [AllocationTarget(invoice.id, Decimal("50.00"))])

        with pytest.raises(InvalidStateError):
            service.void_payment(payment.id, "NSF")

    def test_void_unknown_payment(self, service):
        with pytest.raises(PaymentNotFoundError):
            service.void_payment(uuid4(), "NSF")
