"""
Allocation Target Validation (``billing_modules.receivables.targets``).

Responsibility
--------------
The validate-then-write core shared by payment allocation and credit
application: resolve each target invoice / line item, check it may receive
money from the given client, check capacity cumulatively across the batch,
then append Allocation rows and recalculate every touched invoice.

Architecture position
---------------------
**Modules layer** -- used by ``AllocationEngine`` and ``CreditManager``.

Invariants enforced
-------------------
* All-or-nothing: every leg is validated before the first row is written.
* The invoice is the serialization point: each touched invoice is
  recalculated against the version read during validation, so two batches
  racing for the same balance cannot both commit.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from uuid import UUID, uuid4

from billing_engines.allocation import AllocationLeg, find_shortfall
from billing_kernel.db.types import ZERO, positive_money
from billing_kernel.exceptions import InvalidAmountError, InvalidTargetError, OverAllocationError
from billing_kernel.logging_config import get_logger
from billing_modules.receivables.config import ReceivablesConfig
from billing_modules.receivables.models import Allocation, AllocationTarget, Invoice
from billing_modules.receivables.recalculator import BalanceRecalculator
from billing_modules.receivables.repository import LedgerUnitOfWork

logger = get_logger("modules.receivables.targets")


class TargetValidator:
    """Validates allocation legs and writes them once they pass."""

    def __init__(self, config: ReceivablesConfig, recalculator: BalanceRecalculator):
        self._config = config
        self._recalculator = recalculator

    def to_legs(self, targets: Sequence[AllocationTarget]) -> tuple[AllocationLeg, ...]:
        """Quantize target amounts; every amount must be positive."""
        legs = []
        for index, target in enumerate(targets):
            amount = positive_money(target.amount, f"targets[{index}].amount")
            legs.append(
                AllocationLeg(
                    invoice_id=target.invoice_id,
                    amount=amount,
                    line_item_id=target.line_item_id,
                )
            )
        return tuple(legs)

    def validate(
        self,
        uow: LedgerUnitOfWork,
        *,
        organization_id: UUID,
        client_id: UUID,
        legs: Sequence[AllocationLeg],
    ) -> dict[UUID, Invoice]:
        """
        Check every leg; return the target invoices as read.

        Raises:
            InvalidTargetError: Unknown, foreign or non-allocatable target.
            OverAllocationError: A leg exceeds its remaining balance.
        """
        if not legs:
            raise InvalidAmountError("targets", ZERO, "at least one target is required")

        invoices: dict[UUID, Invoice] = {}
        line_capacity = {}

        for leg in legs:
            invoice = invoices.get(leg.invoice_id)
            if invoice is None:
                invoice = self._resolve_invoice(uow, leg.invoice_id, organization_id, client_id)
                invoices[invoice.id] = invoice

            if leg.line_item_id is not None and leg.line_item_id not in line_capacity:
                line = uow.get_line_item(leg.line_item_id)
                if line is None or line.invoice_id != invoice.id:
                    raise InvalidTargetError(
                        str(invoice.id), "line item is not on this invoice", str(leg.line_item_id)
                    )
                if line.is_deleted:
                    raise InvalidTargetError(
                        str(invoice.id), "line item is deleted", str(leg.line_item_id)
                    )
                line_capacity[line.id] = line.open_balance

        shortfall = find_shortfall(
            legs=legs,
            invoice_capacity={inv_id: inv.balance_due for inv_id, inv in invoices.items()},
            line_capacity=line_capacity,
        )
        if shortfall is not None:
            raise OverAllocationError(
                str(shortfall.invoice_id),
                shortfall.requested,
                shortfall.remaining,
                str(shortfall.line_item_id) if shortfall.line_item_id else None,
            )
        return invoices

    def write(
        self,
        uow: LedgerUnitOfWork,
        *,
        legs: Sequence[AllocationLeg],
        invoices: dict[UUID, Invoice],
        batch_key: str,
        created_at: datetime,
        payment_id: UUID | None = None,
        credit_id: UUID | None = None,
    ) -> tuple[tuple[Allocation, ...], tuple[Invoice, ...]]:
        """Append one Allocation per leg, then recalculate each invoice."""
        allocations = tuple(
            uow.add_allocation(
                Allocation(
                    id=uuid4(),
                    invoice_id=leg.invoice_id,
                    amount=leg.amount,
                    batch_key=batch_key,
                    created_at=created_at,
                    payment_id=payment_id,
                    credit_id=credit_id,
                    line_item_id=leg.line_item_id,
                )
            )
            for leg in legs
        )
        updated = tuple(
            self._recalculator.recalculate(uow, invoice_id, expected_version=invoice.version)
            for invoice_id, invoice in invoices.items()
        )
        return allocations, updated

    def _resolve_invoice(
        self,
        uow: LedgerUnitOfWork,
        invoice_id: UUID,
        organization_id: UUID,
        client_id: UUID,
    ) -> Invoice:
        invoice = uow.get_invoice(invoice_id)
        if invoice is None:
            raise InvalidTargetError(str(invoice_id), "invoice not found")
        if invoice.organization_id != organization_id:
            raise InvalidTargetError(str(invoice_id), "invoice belongs to a different organization")
        if invoice.client_id != client_id:
            raise InvalidTargetError(str(invoice_id), "invoice belongs to a different client")
        if invoice.status not in self._config.allocatable_statuses:
            raise InvalidTargetError(
                str(invoice_id), f"invoice status '{invoice.status.value}' does not accept allocations"
            )
        return invoice
