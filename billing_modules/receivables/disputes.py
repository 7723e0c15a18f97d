"""
Dispute Adjuster (``billing_modules.receivables.disputes``).

Responsibility
--------------
Files client disputes against a line item (or, when enabled, a whole
invoice), which takes the disputed amount out of the payable balance while
the dispute is open, and resolves them: an approval waives all or part of
the amount, a rejection returns it to the balance.

Architecture position
---------------------
**Modules layer** -- stateful engine over the caller's unit of work.

Invariants enforced
-------------------
* A dispute never exceeds the unpaid, undisputed portion of its target,
  nor the invoice's current balance.
* A dispute filed against stale data fails with
  ``ConcurrentModificationError`` -- stale line version, or allocations
  committed but not yet reflected in the line's allocated amount.
* Resolution is one-way: only open disputes resolve.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from uuid import UUID, uuid4

from billing_kernel.db.types import ZERO, positive_money, sum_money
from billing_kernel.domain.clock import Clock
from billing_kernel.exceptions import (
    ConcurrentModificationError,
    DisputeAmountExceededError,
    DisputeNotFoundError,
    DisputeNotOpenError,
    InvalidStateError,
    InvoiceNotFoundError,
    LineItemNotFoundError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_modules.receivables.audit import record_audit
from billing_modules.receivables.config import ReceivablesConfig
from billing_modules.receivables.models import (
    PRE_SEND_STATUSES,
    Dispute,
    DisputeOutcome,
    DisputePriority,
    DisputeReasonCategory,
    DisputeStatus,
    Invoice,
    InvoiceStatus,
)
from billing_modules.receivables.recalculator import BalanceRecalculator
from billing_modules.receivables.repository import LedgerUnitOfWork
from billing_modules.receivables.workflows import DISPUTE_WORKFLOW

logger = get_logger("modules.receivables.disputes")

_OUTCOME_ACTIONS = {
    DisputeOutcome.APPROVED: "approve",
    DisputeOutcome.REJECTED: "reject",
}


class DisputeAdjuster:
    """Files and resolves disputes, keeping invoice balances in step."""

    def __init__(
        self,
        clock: Clock,
        config: ReceivablesConfig,
        recalculator: BalanceRecalculator,
    ):
        self._clock = clock
        self._config = config
        self._recalculator = recalculator

    def file_dispute(
        self,
        uow: LedgerUnitOfWork,
        line_item_id: UUID,
        amount: Decimal,
        reason: str,
        expected_version: int | None = None,
        reason_category: DisputeReasonCategory = DisputeReasonCategory.OTHER,
        priority: DisputePriority = DisputePriority.NORMAL,
    ) -> Dispute:
        """
        Dispute part of a line item.

        Args:
            expected_version: Line-item version the client was looking at.
                A mismatch means the line changed underneath them.

        Raises:
            LineItemNotFoundError, InvalidStateError, InvalidAmountError,
            DisputeAmountExceededError, ConcurrentModificationError.
        """
        line = uow.get_line_item(line_item_id)
        if line is None or line.is_deleted:
            raise LineItemNotFoundError(str(line_item_id))

        if expected_version is not None and line.version != expected_version:
            logger.warning(
                "dispute_rejected_stale_line",
                extra={
                    "line_item_id": str(line_item_id),
                    "expected_version": expected_version,
                    "actual_version": line.version,
                },
            )
            raise ConcurrentModificationError(
                "line_item",
                str(line_item_id),
                f"expected version {expected_version}, found {line.version}",
            )

        committed = sum_money(a.amount for a in uow.list_allocations(line_item_id=line_item_id))
        if committed != line.allocated_amount:
            logger.warning(
                "dispute_rejected_pending_allocation",
                extra={
                    "line_item_id": str(line_item_id),
                    "committed_allocations": str(committed),
                    "line_allocated_amount": str(line.allocated_amount),
                },
            )
            raise ConcurrentModificationError(
                "line_item",
                str(line_item_id),
                "allocations not yet reflected in the line balance",
            )

        invoice = self._disputable_invoice(uow, line.invoice_id)
        amount = positive_money(amount, "disputed_amount")
        disputable = max(ZERO, min(line.open_balance, invoice.balance_due))
        if amount > disputable:
            raise DisputeAmountExceededError(str(line_item_id), amount, disputable)

        return self._open(
            uow, invoice, amount, reason, reason_category, priority, line_item_id=line.id
        )

    def file_invoice_dispute(
        self,
        uow: LedgerUnitOfWork,
        invoice_id: UUID,
        amount: Decimal,
        reason: str,
        reason_category: DisputeReasonCategory = DisputeReasonCategory.OTHER,
        priority: DisputePriority = DisputePriority.NORMAL,
    ) -> Dispute:
        """Dispute part of an invoice's balance without naming a line."""
        if not self._config.allow_invoice_level_disputes:
            raise InvalidStateError("invoice", str(invoice_id), "any", "file an invoice-level dispute on")
        invoice = self._disputable_invoice(uow, invoice_id)
        amount = positive_money(amount, "disputed_amount")
        if amount > invoice.balance_due:
            raise DisputeAmountExceededError(str(invoice_id), amount, invoice.balance_due)
        return self._open(uow, invoice, amount, reason, reason_category, priority)

    def resolve_dispute(
        self,
        uow: LedgerUnitOfWork,
        dispute_id: UUID,
        outcome: DisputeOutcome | str,
        resolution_amount: Decimal | None = None,
        notes: str | None = None,
    ) -> Dispute:
        """
        Close an open dispute.

        ``approved`` waives ``resolution_amount`` (default: the whole
        disputed amount) and returns any remainder to the balance;
        ``rejected`` returns the whole amount.

        Raises:
            DisputeNotFoundError, DisputeNotOpenError, InvalidAmountError,
            DisputeAmountExceededError.
        """
        dispute = uow.get_dispute(dispute_id)
        if dispute is None:
            raise DisputeNotFoundError(str(dispute_id))
        if not dispute.is_open:
            raise DisputeNotOpenError(str(dispute_id), dispute.status.value)

        outcome = DisputeOutcome(outcome)
        status = DisputeStatus(
            DISPUTE_WORKFLOW.require(dispute.id, dispute.status.value, _OUTCOME_ACTIONS[outcome])
        )
        waived = ZERO
        if outcome is DisputeOutcome.APPROVED:
            waived = (
                dispute.disputed_amount
                if resolution_amount is None
                else positive_money(resolution_amount, "resolution_amount")
            )
            if waived > dispute.disputed_amount:
                raise DisputeAmountExceededError(str(dispute_id), waived, dispute.disputed_amount)

        invoice = uow.get_invoice(dispute.invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(str(dispute.invoice_id))

        with LogContext.bind(invoice_id=invoice.id):
            resolved = uow.update_dispute(
                replace(
                    dispute,
                    status=status,
                    outcome=outcome,
                    resolution_amount=waived,
                    resolved_at=self._clock.now(),
                    resolution_notes=notes,
                )
            )
            self._recalculator.recalculate(uow, invoice.id, expected_version=invoice.version)

            record_audit(
                uow, self._clock, "dispute", dispute.id, "dispute_resolved",
                {
                    "outcome": outcome,
                    "waived": waived,
                    "returned_to_balance": dispute.disputed_amount - waived,
                    "notes": notes,
                },
            )
            logger.info(
                "dispute_resolved",
                extra={
                    "dispute_id": str(dispute_id),
                    "outcome": outcome.value,
                    "waived": str(waived),
                    "returned_to_balance": str(dispute.disputed_amount - waived),
                },
            )
        return resolved

    # ------------------------------------------------------------------

    def _disputable_invoice(self, uow: LedgerUnitOfWork, invoice_id: UUID) -> Invoice:
        invoice = uow.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))
        if invoice.status in PRE_SEND_STATUSES or invoice.status is InvoiceStatus.CANCELLED:
            raise InvalidStateError("invoice", str(invoice_id), invoice.status.value, "dispute")
        return invoice

    def _open(
        self,
        uow: LedgerUnitOfWork,
        invoice: Invoice,
        amount: Decimal,
        reason: str,
        reason_category: DisputeReasonCategory,
        priority: DisputePriority,
        line_item_id: UUID | None = None,
    ) -> Dispute:
        with LogContext.bind(invoice_id=invoice.id):
            dispute = uow.add_dispute(
                Dispute(
                    id=uuid4(),
                    organization_id=invoice.organization_id,
                    invoice_id=invoice.id,
                    disputed_amount=amount,
                    reason=reason,
                    filed_at=self._clock.now(),
                    line_item_id=line_item_id,
                    reason_category=DisputeReasonCategory(reason_category),
                    priority=DisputePriority(priority),
                )
            )
            self._recalculator.recalculate(uow, invoice.id, expected_version=invoice.version)

            record_audit(
                uow, self._clock, "dispute", dispute.id, "dispute_filed",
                {
                    "invoice_id": invoice.id,
                    "line_item_id": line_item_id,
                    "amount": amount,
                    "reason_category": dispute.reason_category,
                    "priority": dispute.priority,
                },
            )
            logger.info(
                "dispute_filed",
                extra={
                    "dispute_id": str(dispute.id),
                    "line_item_id": str(line_item_id) if line_item_id else None,
                    "amount": str(amount),
                    "priority": dispute.priority.value,
                },
            )
        return dispute
