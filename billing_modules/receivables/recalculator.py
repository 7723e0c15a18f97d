"""
Balance Recalculator (``billing_modules.receivables.recalculator``).

Responsibility
--------------
Re-derive an invoice's money fields and status -- and each of its line
items' allocated / disputed / waived amounts -- from the allocation and
dispute rows committed for it.

Architecture position
---------------------
**Modules layer** -- stateful wrapper around the pure
``billing_engines.balance`` derivation.  Called explicitly by every engine
that writes allocations or disputes; there are no implicit triggers.

Invariants enforced
-------------------
* BALANCE_DUE_DERIVED -- derived fields are recomputed from source rows,
  never incremented.
* Idempotent: running twice with no intervening writes performs no write
  (and therefore no version bump) the second time.
* Never mutates Allocation or Dispute rows.
* A derivation that would need a negative balance raises
  ``InvariantViolationError`` instead of persisting.
"""

from __future__ import annotations

from dataclasses import replace
from uuid import UUID

from billing_engines.balance import compute_invoice_balance, compute_line_amounts
from billing_kernel.db.types import ZERO, sum_money
from billing_kernel.domain.clock import Clock
from billing_kernel.exceptions import (
    ConcurrentModificationError,
    InvoiceNotFoundError,
    InvariantViolationError,
)
from billing_kernel.invariants import LedgerInvariant
from billing_kernel.logging_config import get_logger
from billing_modules.receivables.models import Invoice, InvoiceStatus
from billing_modules.receivables.repository import LedgerUnitOfWork

logger = get_logger("modules.receivables.recalculator")


class BalanceRecalculator:
    """
    Derives invoice and line-item balances from committed rows.

    Contract:
        ``recalculate(uow, invoice_id)`` returns the invoice as it stands
        after derivation.  Pass ``expected_version`` to fail fast when the
        invoice changed since the caller validated against it.
    """

    def __init__(self, clock: Clock):
        self._clock = clock

    def recalculate(
        self,
        uow: LedgerUnitOfWork,
        invoice_id: UUID,
        expected_version: int | None = None,
    ) -> Invoice:
        invoice = uow.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))
        if expected_version is not None and invoice.version != expected_version:
            logger.warning(
                "recalculation_version_mismatch",
                extra={
                    "invoice_id": str(invoice_id),
                    "expected_version": expected_version,
                    "actual_version": invoice.version,
                },
            )
            raise ConcurrentModificationError(
                "invoice",
                str(invoice_id),
                f"validated against version {expected_version}, found {invoice.version}",
            )

        lines = uow.list_line_items(invoice_id)
        allocations = uow.list_allocations(invoice_id=invoice_id)
        disputes = uow.list_disputes(invoice_id=invoice_id)

        for line in lines:
            amounts = compute_line_amounts(
                line_total=line.line_total,
                allocated_amount=sum_money(a.amount for a in allocations if a.line_item_id == line.id),
                disputed_amount=sum_money(d.open_amount for d in disputes if d.line_item_id == line.id),
                waived_amount=sum_money(d.waived_amount for d in disputes if d.line_item_id == line.id),
            )
            if amounts.open_balance < ZERO:
                self._raise_if_stale(uow, invoice)
                raise self._violation(
                    LedgerInvariant.BALANCE_NON_NEGATIVE,
                    "line_item",
                    line.id,
                    f"line open balance would be {amounts.open_balance}",
                )
            if (
                amounts.allocated_amount != line.allocated_amount
                or amounts.disputed_amount != line.disputed_amount
                or amounts.waived_amount != line.waived_amount
            ):
                uow.update_line_item(
                    replace(
                        line,
                        allocated_amount=amounts.allocated_amount,
                        disputed_amount=amounts.disputed_amount,
                        waived_amount=amounts.waived_amount,
                    )
                )

        total = sum_money(line.line_total for line in lines)
        paid = sum_money(a.amount for a in allocations)
        open_disputed = sum_money(d.open_amount for d in disputes)
        waived = sum_money(d.waived_amount for d in disputes)

        derived = compute_invoice_balance(
            current_status=invoice.status.value,
            total_amount=total,
            paid_amount=paid,
            disputed_amount=open_disputed,
            waived_amount=waived,
            has_open_dispute=any(d.is_open for d in disputes),
            due_date=invoice.due_date,
            today=self._clock.today(),
        )
        if invoice.status is not InvoiceStatus.CANCELLED:
            if paid > total:
                self._raise_if_stale(uow, invoice)
                raise self._violation(
                    LedgerInvariant.INVOICE_NOT_OVERALLOCATED,
                    "invoice",
                    invoice.id,
                    f"allocations {paid} exceed total {total}",
                )
            if derived.is_overdrawn:
                self._raise_if_stale(uow, invoice)
                raise self._violation(
                    LedgerInvariant.BALANCE_NON_NEGATIVE,
                    "invoice",
                    invoice.id,
                    f"balance_due would be {derived.raw_balance}",
                )

        updated = replace(
            invoice,
            total_amount=derived.total_amount,
            paid_amount=derived.paid_amount,
            disputed_amount=derived.disputed_amount,
            waived_amount=derived.waived_amount,
            balance_due=derived.balance_due,
            status=InvoiceStatus(derived.status),
            line_item_ids=tuple(line.id for line in lines),
        )
        if updated == invoice:
            logger.debug("invoice_recalculation_unchanged", extra={"invoice_id": str(invoice_id)})
            return invoice

        if updated.status is not invoice.status:
            logger.info(
                "invoice_status_changed",
                extra={
                    "invoice_id": str(invoice_id),
                    "from_status": invoice.status.value,
                    "to_status": updated.status.value,
                },
            )
        logger.info(
            "invoice_recalculated",
            extra={
                "invoice_id": str(invoice_id),
                "total_amount": str(updated.total_amount),
                "paid_amount": str(updated.paid_amount),
                "disputed_amount": str(updated.disputed_amount),
                "waived_amount": str(updated.waived_amount),
                "balance_due": str(updated.balance_due),
                "status": updated.status.value,
            },
        )
        return uow.update_invoice(updated)

    def _raise_if_stale(self, uow: LedgerUnitOfWork, invoice: Invoice) -> None:
        """A concurrent commit can make a stale read look like a violation."""
        current = uow.get_invoice(invoice.id)
        if current is not None and current.version != invoice.version:
            raise ConcurrentModificationError(
                "invoice",
                str(invoice.id),
                f"changed to version {current.version} during recalculation",
            )

    def _violation(
        self,
        invariant: LedgerInvariant,
        entity_type: str,
        entity_id: UUID,
        detail: str,
    ) -> InvariantViolationError:
        logger.error(
            "invariant_violation_detected",
            extra={
                "invariant": invariant.value,
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "detail": detail,
            },
        )
        return InvariantViolationError(invariant.value, entity_type, str(entity_id), detail)
