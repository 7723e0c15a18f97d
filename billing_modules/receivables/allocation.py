"""
Allocation Engine (``billing_modules.receivables.allocation``).

Responsibility
--------------
Splits one received payment across invoices and invoice line items.
Validates the whole batch, writes one Allocation per target, recalculates
every affected invoice, settles the payment's status and -- on close-out --
converts the unallocated remainder into a client credit.

Architecture position
---------------------
**Modules layer** -- stateful engine.  Runs inside the caller's
``LedgerUnitOfWork``; ``ReceivablesService`` owns commit / rollback.

Invariants enforced
-------------------
* PAYMENT_NOT_OVERALLOCATED -- allocated + credited never exceeds amount.
* INVOICE_NOT_OVERALLOCATED -- no target receives more than its remaining
  balance, counted cumulatively within the batch.
* POSTED_PAYMENT_SETTLED -- a payment is posted only when its remainder is
  zero (fully allocated, or the rest converted to credit).
* Idempotency -- one batch key per (payment, batch); a replay raises
  ``AlreadyAllocatedError`` instead of allocating twice.
* OPTIMISTIC_VERSIONING -- the payment and every touched invoice are
  written against the versions read during validation.

Failure modes
-------------
* PaymentNotFoundError / PaymentVoidedError -- bad funding source.
* InvalidAmountError -- a target amount is zero, negative or a float.
* PaymentExceededError -- batch larger than the unallocated remainder.
* InvalidTargetError / OverAllocationError -- see ``TargetValidator``.
* AlreadyAllocatedError -- batch key already committed for the payment.
* ConcurrentModificationError -- lost a race; nothing was written.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace
from uuid import UUID

from billing_engines.allocation import batch_total
from billing_kernel.db.types import ZERO
from billing_kernel.domain.clock import Clock
from billing_kernel.exceptions import (
    AlreadyAllocatedError,
    InvalidAmountError,
    PaymentExceededError,
    PaymentNotFoundError,
    PaymentVoidedError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.utils.idempotency import allocation_batch_key
from billing_modules.receivables.audit import record_audit
from billing_modules.receivables.credits import CreditManager
from billing_modules.receivables.models import (
    AllocationResult,
    AllocationTarget,
    PaymentStatus,
)
from billing_modules.receivables.repository import LedgerUnitOfWork
from billing_modules.receivables.targets import TargetValidator

logger = get_logger("modules.receivables.allocation")


class AllocationEngine:
    """
    Allocates payments to invoices.

    Contract:
        ``allocate`` is all-or-nothing within the caller's unit of work:
        it either writes every allocation of the batch or raises before
        writing any.
    """

    def __init__(
        self,
        clock: Clock,
        targets: TargetValidator,
        credits: CreditManager,
    ):
        self._clock = clock
        self._targets = targets
        self._credits = credits

    def allocate(
        self,
        uow: LedgerUnitOfWork,
        payment_id: UUID,
        targets: Sequence[AllocationTarget],
        close_out: bool = False,
        idempotency_key: str | None = None,
    ) -> AllocationResult:
        """
        Allocate ``payment_id`` across ``targets``.

        Args:
            uow: Unit of work the writes join.
            payment_id: Funding payment.
            targets: Invoice / line-item legs, validated in order.
            close_out: Convert any remainder to a credit and post the payment.
            idempotency_key: Caller-chosen batch key; defaults to a
                fingerprint of the payment and the sorted targets.
        """
        with LogContext.bind(payment_id=payment_id):
            payment = uow.get_payment(payment_id)
            if payment is None:
                raise PaymentNotFoundError(str(payment_id))
            if payment.status is PaymentStatus.VOIDED:
                raise PaymentVoidedError(str(payment_id))

            legs = self._targets.to_legs(targets)
            if not legs and not close_out:
                raise InvalidAmountError("targets", ZERO, "at least one target is required")

            batch_key = None
            if legs:
                batch_key = idempotency_key or allocation_batch_key(
                    "payment",
                    payment.id,
                    [(leg.invoice_id, leg.line_item_id, leg.amount) for leg in legs],
                )
                if any(a.batch_key == batch_key for a in uow.list_allocations(payment_id=payment.id)):
                    logger.warning("allocation_batch_replayed", extra={"batch_key": batch_key})
                    raise AlreadyAllocatedError(str(payment_id), batch_key)

            requested = batch_total(legs)
            if requested > payment.unallocated_amount:
                logger.warning(
                    "allocation_rejected_payment_exceeded",
                    extra={
                        "requested": str(requested),
                        "unallocated": str(payment.unallocated_amount),
                    },
                )
                raise PaymentExceededError(str(payment_id), requested, payment.unallocated_amount)

            logger.info(
                "allocation_started",
                extra={
                    "target_count": len(legs),
                    "requested": str(requested),
                    "unallocated": str(payment.unallocated_amount),
                    "close_out": close_out,
                },
            )

            allocations = ()
            invoices = ()
            if legs:
                validated = self._targets.validate(
                    uow,
                    organization_id=payment.organization_id,
                    client_id=payment.client_id,
                    legs=legs,
                )
                allocations, invoices = self._targets.write(
                    uow,
                    legs=legs,
                    invoices=validated,
                    batch_key=batch_key,
                    created_at=self._clock.now(),
                    payment_id=payment.id,
                )

                allocated = payment.allocated_amount + requested
                status = payment.status
                if payment.amount - allocated - payment.credited_amount == ZERO:
                    status = PaymentStatus.POSTED
                payment = uow.update_payment(
                    replace(payment, allocated_amount=allocated, status=status)
                )

                record_audit(
                    uow, self._clock, "payment", payment.id, "payment_allocated",
                    {
                        "batch_key": batch_key,
                        "allocations": [
                            {
                                "invoice_id": a.invoice_id,
                                "line_item_id": a.line_item_id,
                                "amount": a.amount,
                            }
                            for a in allocations
                        ],
                        "payment_status": payment.status,
                    },
                )

            credit = None
            if close_out and payment.unallocated_amount > ZERO:
                credit, payment = self._credits.issue_from_payment(
                    uow, payment, payment.unallocated_amount
                )

            logger.info(
                "allocation_committed",
                extra={
                    "allocation_count": len(allocations),
                    "allocated": str(requested),
                    "payment_status": payment.status.value,
                    "credit_id": str(credit.id) if credit else None,
                    "credit_amount": str(credit.amount) if credit else None,
                },
            )
            return AllocationResult(
                allocations=allocations,
                payment_status=payment.status,
                credit=credit,
                invoices=invoices,
            )
