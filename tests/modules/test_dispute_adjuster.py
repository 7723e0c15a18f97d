"""
Tests for filing and resolving disputes.

Covers:
- Open disputes leave the payable balance
- Approval waives, rejection restores
- Disputable amount limits
- Stale line versions
- Invoice-level disputes
"""

from dataclasses import replace
from decimal import Decimal
from uuid import uuid4

import pytest

from billing_kernel.exceptions import (
    ConcurrentModificationError,
    DisputeAmountExceededError,
    DisputeNotFoundError,
    DisputeNotOpenError,
    InvalidStateError,
    LineItemNotFoundError,
    OverAllocationError,
)
from billing_modules.receivables.config import ReceivablesConfig
from billing_modules.receivables.models import (
    AllocationTarget,
    DisputeOutcome,
    DisputePriority,
    DisputeReasonCategory,
    DisputeStatus,
    InvoiceStatus,
)
from billing_modules.receivables.service import ReceivablesService


@pytest.fixture
def disputed_line(service, make_invoice):
    """A sent $200.00 invoice and its only line item."""
    invoice = make_invoice("200.00")
    return invoice, service.get_line_items(invoice.id)[0]


class TestFileDispute:
    def test_open_dispute_reduces_balance(self, any_service, make_any_invoice):
        invoice = make_any_invoice("200.00")
        line = any_service.get_line_items(invoice.id)[0]

        dispute = any_service.file_dispute(line.id, "80.00", "Test not performed")

        assert dispute.status is DisputeStatus.OPEN
        assert dispute.line_item_id == line.id

        invoice = any_service.get_invoice(invoice.id)
        assert invoice.status is InvoiceStatus.DISPUTED
        assert invoice.disputed_amount == Decimal("80.00")
        assert invoice.balance_due == Decimal("120.00")
        assert any_service.get_line_items(invoice.id)[0].disputed_amount == Decimal("80.00")

    def test_disputed_amount_cannot_be_paid(self, service, disputed_line, make_payment):
        invoice, line = disputed_line
        service.file_dispute(line.id, "80.00", "Duplicate charge")
        payment = make_payment("200.00")

        with pytest.raises(OverAllocationError) as exc_info:
            service.allocate(payment.id, [AllocationTarget(invoice.id, Decimal("200.00"))])

        assert exc_info.value.remaining == Decimal("120.00")

    def test_undisputed_part_can_be_paid(self, service, disputed_line, make_payment):
        invoice, line = disputed_line
        service.file_dispute(line.id, "80.00", "Duplicate charge")
        payment = make_payment("120.00")

        service.allocate(payment.id, [AllocationTarget(invoice.id, Decimal("120.00"))])

        invoice = service.get_invoice(invoice.id)
        assert invoice.balance_due == Decimal("0.00")
        assert invoice.status is InvoiceStatus.DISPUTED

    def test_amount_above_line_balance(self, service, disputed_line):
        _, line = disputed_line

        with pytest.raises(DisputeAmountExceededError):
            service.file_dispute(line.id, "200.01", "Wrong price")

    def test_paid_portion_is_not_disputable(self, service, disputed_line, make_payment):
        invoice, line = disputed_line
        payment = make_payment("150.00")
        service.allocate(
            payment.id, [AllocationTarget(invoice.id, Decimal("150.00"), line_item_id=line.id)]
        )

        with pytest.raises(DisputeAmountExceededError):
            service.file_dispute(line.id, "60.00", "Wrong price")

        dispute = service.file_dispute(line.id, "50.00", "Wrong price")
        assert dispute.disputed_amount == Decimal("50.00")

    def test_stale_line_version(self, service, disputed_line, make_payment):
        invoice, line = disputed_line
        payment = make_payment("50.00")
        service.allocate(
            payment.id, [AllocationTarget(invoice.id, Decimal("50.00"), line_item_id=line.id)]
        )

        with pytest.raises(ConcurrentModificationError):
            service.file_dispute(line.id, "20.00", "Wrong price", expected_version=line.version)

        current = service.get_line_items(invoice.id)[0]
        service.file_dispute(line.id, "20.00", "Wrong price", expected_version=current.version)

    def test_line_behind_its_allocations(
        self, service, memory_store, disputed_line, make_payment, captured_logs
    ):
        invoice, line = disputed_line
        payment = make_payment("50.00")
        service.allocate(
            payment.id, [AllocationTarget(invoice.id, Decimal("50.00"), line_item_id=line.id)]
        )
        with memory_store.transaction() as uow:
            current = uow.get_line_item(line.id)
            uow.update_line_item(replace(current, allocated_amount=Decimal("0.00")))

        with pytest.raises(ConcurrentModificationError, match="not yet reflected"):
            service.file_dispute(line.id, "20.00", "Wrong price")

        assert service.get_invoice(invoice.id).disputed_amount == Decimal("0.00")
        assert any(
            r["message"] == "dispute_rejected_pending_allocation" for r in captured_logs()
        )

    def test_draft_invoice_not_disputable(self, service, make_invoice):
        invoice = make_invoice("200.00", send=False)
        line = service.get_line_items(invoice.id)[0]

        with pytest.raises(InvalidStateError):
            service.file_dispute(line.id, "10.00", "Too early")

    def test_unknown_line(self, service):
        with pytest.raises(LineItemNotFoundError):
            service.file_dispute(uuid4(), "10.00", "Missing")

    def test_category_and_priority_recorded(self, service, disputed_line):
        _, line = disputed_line

        dispute = service.file_dispute(
            line.id,
            "10.00",
            "Billed for cancelled panel",
            reason_category=DisputeReasonCategory.SERVICE_NOT_RENDERED,
            priority=DisputePriority.HIGH,
        )

        stored = service.get_dispute(dispute.id)
        assert stored.reason_category is DisputeReasonCategory.SERVICE_NOT_RENDERED
        assert stored.priority is DisputePriority.HIGH


class TestResolveDispute:
    def test_rejection_restores_balance(self, any_service, make_any_invoice):
        invoice = make_any_invoice("200.00")
        line = any_service.get_line_items(invoice.id)[0]
        dispute = any_service.file_dispute(line.id, "80.00", "Wrong price")

        resolved = any_service.resolve_dispute(dispute.id, DisputeOutcome.REJECTED, notes="Price correct")

        assert resolved.status is DisputeStatus.REJECTED
        assert resolved.outcome is DisputeOutcome.REJECTED
        assert resolved.resolution_amount == Decimal("0.00")

        invoice = any_service.get_invoice(invoice.id)
        assert invoice.balance_due == Decimal("200.00")
        assert invoice.status is InvoiceStatus.SENT

    def test_approval_waives_full_amount(self, service, disputed_line):
        invoice, line = disputed_line
        dispute = service.file_dispute(line.id, "80.00", "Wrong price")

        service.resolve_dispute(dispute.id, "approved")

        invoice = service.get_invoice(invoice.id)
        assert invoice.waived_amount == Decimal("80.00")
        assert invoice.disputed_amount == Decimal("0.00")
        assert invoice.balance_due == Decimal("120.00")
        assert invoice.status is InvoiceStatus.SENT
        assert service.get_line_items(invoice.id)[0].waived_amount == Decimal("80.00")

    def test_partial_approval(self, service, disputed_line):
        invoice, line = disputed_line
        dispute = service.file_dispute(line.id, "80.00", "Wrong price")

        resolved = service.resolve_dispute(dispute.id, DisputeOutcome.APPROVED, resolution_amount="30.00")

        assert resolved.resolution_amount == Decimal("30.00")
        invoice = service.get_invoice(invoice.id)
        assert invoice.waived_amount == Decimal("30.00")
        assert invoice.balance_due == Decimal("170.00")

    def test_waived_invoice_can_be_settled(self, service, disputed_line, make_payment):
        invoice, line = disputed_line
        dispute = service.file_dispute(line.id, "80.00", "Wrong price")
        service.resolve_dispute(dispute.id, DisputeOutcome.APPROVED)
        payment = make_payment("120.00")

        service.allocate(payment.id, [AllocationTarget(invoice.id, Decimal("120.00"))])

        assert service.get_invoice(invoice.id).status is InvoiceStatus.PAID

    def test_resolution_above_disputed_amount(self, service, disputed_line):
        _, line = disputed_line
        dispute = service.file_dispute(line.id, "80.00", "Wrong price")

        with pytest.raises(DisputeAmountExceededError):
            service.resolve_dispute(dispute.id, DisputeOutcome.APPROVED, resolution_amount="80.01")

        assert service.get_dispute(dispute.id).is_open

    def test_resolving_twice(self, service, disputed_line):
        _, line = disputed_line
        dispute = service.file_dispute(line.id, "80.00", "Wrong price")
        service.resolve_dispute(dispute.id, DisputeOutcome.REJECTED)

        with pytest.raises(DisputeNotOpenError):
            service.resolve_dispute(dispute.id, DisputeOutcome.APPROVED)

    def test_unknown_dispute(self, service):
        with pytest.raises(DisputeNotFoundError):
            service.resolve_dispute(uuid4(), DisputeOutcome.REJECTED)

    def test_resolution_is_audited(self, service, disputed_line):
        _, line = disputed_line
        dispute = service.file_dispute(line.id, "80.00", "Wrong price")
        service.resolve_dispute(dispute.id, DisputeOutcome.APPROVED, resolution_amount="30.00")

        resolved = [e for e in service.audit_trail(dispute.id) if e.action == "dispute_resolved"]
        assert len(resolved) == 1
        assert Decimal(resolved[0].payload["waived"]) == Decimal("30.00")
        assert Decimal(resolved[0].payload["returned_to_balance"]) == Decimal("50.00")


class TestInvoiceLevelDispute:
    def test_invoice_dispute(self, service, make_invoice):
        invoice = make_invoice("300.00", "200.00")

        dispute = service.file_invoice_dispute(invoice.id, "100.00", "Contract rate not applied")

        assert dispute.line_item_id is None
        invoice = service.get_invoice(invoice.id)
        assert invoice.balance_due == Decimal("400.00")
        assert invoice.status is InvoiceStatus.DISPUTED

    def test_invoice_dispute_above_balance(self, service, make_invoice):
        invoice = make_invoice("100.00")

        with pytest.raises(DisputeAmountExceededError):
            service.file_invoice_dispute(invoice.id, "100.01", "Everything")

    def test_disabled_by_config(self, memory_store, deterministic_clock):
        svc = ReceivablesService(
            memory_store,
            deterministic_clock,
            ReceivablesConfig(allow_invoice_level_disputes=False),
        )
        invoice = svc.create_invoice(
            organization_id=uuid4(),
            client_id=uuid4(),
            invoice_number="INV-9001",
            lines=[{"description": "CMP", "unit_price": "100.00"}],
        )

        with pytest.raises(InvalidStateError):
            svc.file_invoice_dispute(invoice.id, "10.00", "Rate")
