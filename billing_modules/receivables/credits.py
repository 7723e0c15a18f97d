"""
Credit Manager (``billing_modules.receivables.credits``).

Responsibility
--------------
Turns unallocated payment remainders (and explicit adjustments) into
client-scoped credits, applies credits to invoices -- a named invoice or
oldest-first across the client's open invoices -- and ends a credit's
life by exhaustion, expiry or refund.

Architecture position
---------------------
**Modules layer** -- stateful engine.  Every method takes the caller's
``LedgerUnitOfWork`` and writes inside it; the caller commits.

Invariants enforced
-------------------
* CREDIT_REMAINING_BOUNDED -- 0 <= remaining_amount <= amount, and
  remaining only ever decreases.
* Credits are never deleted; status records why they left ``available``.
* Credit applications are ordinary Allocation rows (``credit_id`` set) and
  go through the same target validation as payments.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID, uuid4

from billing_engines.allocation import AllocationLeg, plan_oldest_first
from billing_kernel.db.types import ZERO, positive_money, sum_money
from billing_kernel.domain.clock import Clock
from billing_kernel.exceptions import (
    CreditExceededError,
    CreditExpiredError,
    CreditNotAvailableError,
    CreditNotFoundError,
    PaymentExceededError,
    PaymentNotFoundError,
    PaymentVoidedError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.utils.idempotency import allocation_batch_key
from billing_modules.receivables.audit import record_audit
from billing_modules.receivables.config import ReceivablesConfig
from billing_modules.receivables.models import (
    ClientCreditSummary,
    Credit,
    CreditApplicationResult,
    CreditStatus,
    InvoiceStatus,
    Payment,
    PaymentStatus,
)
from billing_modules.receivables.repository import LedgerUnitOfWork
from billing_modules.receivables.targets import TargetValidator
from billing_modules.receivables.workflows import CREDIT_WORKFLOW

logger = get_logger("modules.receivables.credits")

OVERPAYMENT_REASON = "overpayment"


class CreditManager:
    """
    Creates, applies, expires and refunds client credits.

    Contract:
        All amounts are quantized to cents on entry.  Errors are raised
        before the first write of the call.
    """

    def __init__(
        self,
        clock: Clock,
        config: ReceivablesConfig,
        targets: TargetValidator,
    ):
        self._clock = clock
        self._config = config
        self._targets = targets

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_credit(
        self,
        uow: LedgerUnitOfWork,
        payment_id: UUID,
        amount: Decimal,
    ) -> Credit:
        """
        Convert part (or all) of a payment's unallocated remainder to credit.

        The payment is posted once its remainder reaches zero.

        Raises:
            PaymentNotFoundError, PaymentVoidedError, InvalidAmountError,
            PaymentExceededError.
        """
        payment = uow.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))
        if payment.status is PaymentStatus.VOIDED:
            raise PaymentVoidedError(str(payment_id))
        amount = positive_money(amount, "credit_amount")
        if amount > payment.unallocated_amount:
            raise PaymentExceededError(str(payment_id), amount, payment.unallocated_amount)

        credit, _ = self.issue_from_payment(uow, payment, amount)
        return credit

    def issue_from_payment(
        self,
        uow: LedgerUnitOfWork,
        payment: Payment,
        amount: Decimal,
    ) -> tuple[Credit, Payment]:
        now = self._clock.now()
        credit = uow.add_credit(
            Credit(
                id=uuid4(),
                organization_id=payment.organization_id,
                client_id=payment.client_id,
                amount=amount,
                remaining_amount=amount,
                created_at=now,
                source_payment_id=payment.id,
                expires_at=self._default_expiry(now),
                reason=OVERPAYMENT_REASON,
            )
        )
        credited = payment.credited_amount + amount
        status = payment.status
        if payment.amount - payment.allocated_amount - credited == ZERO:
            status = PaymentStatus.POSTED
        payment = uow.update_payment(replace(payment, credited_amount=credited, status=status))

        record_audit(
            uow, self._clock, "credit", credit.id, "credit_created",
            {
                "source_payment_id": payment.id,
                "amount": amount,
                "expires_at": credit.expires_at,
                "payment_status": payment.status,
            },
        )
        logger.info(
            "credit_created",
            extra={
                "credit_id": str(credit.id),
                "payment_id": str(payment.id),
                "client_id": str(payment.client_id),
                "amount": str(amount),
                "payment_status": payment.status.value,
            },
        )
        return credit, payment

    def issue_adjustment_credit(
        self,
        uow: LedgerUnitOfWork,
        organization_id: UUID,
        client_id: UUID,
        amount: Decimal,
        reason: str,
        expires_at: datetime | None = None,
    ) -> Credit:
        """Issue a goodwill / correction credit not backed by a payment."""
        amount = positive_money(amount, "credit_amount")
        if not reason or not reason.strip():
            raise ValueError("adjustment credits require a reason")
        now = self._clock.now()
        credit = uow.add_credit(
            Credit(
                id=uuid4(),
                organization_id=organization_id,
                client_id=client_id,
                amount=amount,
                remaining_amount=amount,
                created_at=now,
                expires_at=expires_at if expires_at is not None else self._default_expiry(now),
                reason=reason,
            )
        )
        record_audit(
            uow, self._clock, "credit", credit.id, "credit_adjustment_issued",
            {"client_id": client_id, "amount": amount, "reason": reason},
        )
        logger.info(
            "credit_adjustment_issued",
            extra={
                "credit_id": str(credit.id),
                "client_id": str(client_id),
                "amount": str(amount),
            },
        )
        return credit

    def _default_expiry(self, now: datetime) -> datetime | None:
        if self._config.credit_expiry_days is None:
            return None
        return now + timedelta(days=self._config.credit_expiry_days)

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    def apply_credit(
        self,
        uow: LedgerUnitOfWork,
        credit_id: UUID,
        invoice_id: UUID | None = None,
        amount: Decimal | None = None,
        line_item_id: UUID | None = None,
    ) -> CreditApplicationResult:
        """
        Apply a credit to one invoice (or line item), or oldest-first.

        With ``invoice_id`` the default amount is the smaller of the credit's
        remaining amount and the target's balance.  Without it the credit is
        spread across the client's allocatable, non-disputed invoices with a
        positive balance, ordered by (issue_date, id).

        Raises:
            CreditNotFoundError, CreditExpiredError, CreditNotAvailableError,
            CreditExceededError, InvalidTargetError, OverAllocationError.
        """
        credit = self._usable_credit(uow, credit_id)

        if amount is not None:
            amount = positive_money(amount, "credit_amount")
            if amount > credit.remaining_amount:
                raise CreditExceededError(str(credit_id), amount, credit.remaining_amount)

        if invoice_id is not None:
            legs = self._targeted_leg(uow, credit, invoice_id, amount, line_item_id)
        else:
            legs = self._oldest_first_legs(uow, credit, amount or credit.remaining_amount)

        if not legs:
            logger.info(
                "credit_application_no_open_invoices",
                extra={"credit_id": str(credit_id), "client_id": str(credit.client_id)},
            )
            return CreditApplicationResult(credit=credit, allocations=())

        invoices = self._targets.validate(
            uow,
            organization_id=credit.organization_id,
            client_id=credit.client_id,
            legs=legs,
        )
        applied = sum_money(leg.amount for leg in legs)
        batch_key = allocation_batch_key(
            "credit",
            f"{credit.id}@{credit.version}",
            [(leg.invoice_id, leg.line_item_id, leg.amount) for leg in legs],
        )
        allocations, _ = self._targets.write(
            uow,
            legs=legs,
            invoices=invoices,
            batch_key=batch_key,
            created_at=self._clock.now(),
            credit_id=credit.id,
        )

        remaining = credit.remaining_amount - applied
        status = credit.status
        if remaining == ZERO:
            status = CreditStatus(CREDIT_WORKFLOW.require(credit.id, credit.status.value, "apply"))
        credit = uow.update_credit(replace(credit, remaining_amount=remaining, status=status))

        record_audit(
            uow, self._clock, "credit", credit.id, "credit_applied",
            {
                "applied": applied,
                "remaining": remaining,
                "allocations": [
                    {"invoice_id": a.invoice_id, "line_item_id": a.line_item_id, "amount": a.amount}
                    for a in allocations
                ],
            },
        )
        logger.info(
            "credit_applied",
            extra={
                "credit_id": str(credit.id),
                "applied": str(applied),
                "remaining": str(remaining),
                "invoice_count": len(invoices),
                "status": credit.status.value,
            },
        )
        return CreditApplicationResult(credit=credit, allocations=allocations)

    def _usable_credit(self, uow: LedgerUnitOfWork, credit_id: UUID) -> Credit:
        credit = uow.get_credit(credit_id)
        if credit is None:
            raise CreditNotFoundError(str(credit_id))
        if credit.is_expired_at(self._clock.now()):
            expires_at = credit.expires_at.isoformat() if credit.expires_at else None
            logger.warning(
                "credit_application_rejected_expired",
                extra={"credit_id": str(credit_id), "expires_at": expires_at},
            )
            raise CreditExpiredError(str(credit_id), expires_at)
        if credit.status is not CreditStatus.AVAILABLE:
            raise CreditNotAvailableError(str(credit_id), credit.status.value)
        return credit

    def _targeted_leg(
        self,
        uow: LedgerUnitOfWork,
        credit: Credit,
        invoice_id: UUID,
        amount: Decimal | None,
        line_item_id: UUID | None,
    ) -> tuple[AllocationLeg, ...]:
        if amount is None:
            invoice = uow.get_invoice(invoice_id)
            capacity = invoice.balance_due if invoice is not None else ZERO
            if line_item_id is not None:
                line = uow.get_line_item(line_item_id)
                if line is not None:
                    capacity = min(capacity, line.open_balance)
            amount = min(credit.remaining_amount, capacity)
            if amount <= ZERO:
                # Nothing to apply; let validation name the reason.
                amount = credit.remaining_amount
        return (AllocationLeg(invoice_id=invoice_id, amount=amount, line_item_id=line_item_id),)

    def _oldest_first_legs(
        self,
        uow: LedgerUnitOfWork,
        credit: Credit,
        amount: Decimal,
    ) -> tuple[AllocationLeg, ...]:
        statuses = [
            s for s in self._config.allocatable_statuses if s is not InvoiceStatus.DISPUTED
        ]
        open_invoices = [
            inv
            for inv in uow.list_invoices(
                organization_id=credit.organization_id,
                client_id=credit.client_id,
                statuses=statuses,
            )
            if inv.balance_due > ZERO
        ]
        plan = plan_oldest_first(
            amount=amount,
            open_balances=[(inv.id, inv.balance_due) for inv in open_invoices],
        )
        return tuple(
            AllocationLeg(invoice_id=leg.target_id, amount=leg.allocated) for leg in plan.legs
        )

    # ------------------------------------------------------------------
    # End of life
    # ------------------------------------------------------------------

    def expire_credits(self, uow: LedgerUnitOfWork, as_of: datetime) -> list[Credit]:
        """Mark every available credit with expires_at <= as_of as expired."""
        expired: list[Credit] = []
        for credit in uow.list_credits(statuses=[CreditStatus.AVAILABLE]):
            if credit.expires_at is None or credit.expires_at > as_of:
                continue
            status = CreditStatus(CREDIT_WORKFLOW.require(credit.id, credit.status.value, "expire"))
            updated = uow.update_credit(replace(credit, status=status))
            record_audit(
                uow, self._clock, "credit", credit.id, "credit_expired",
                {"expires_at": credit.expires_at, "remaining": credit.remaining_amount},
            )
            expired.append(updated)

        logger.info(
            "credits_expired",
            extra={
                "as_of": as_of.isoformat(),
                "expired_count": len(expired),
                "expired_amount": str(sum_money(c.remaining_amount for c in expired)),
            },
        )
        return expired

    def refund_credit(self, uow: LedgerUnitOfWork, credit_id: UUID, reason: str) -> Credit:
        """
        Pay an available credit back to the client outside the ledger.

        The remaining amount is zeroed; applied portions stay applied.
        """
        credit = self._usable_credit(uow, credit_id)
        status = CreditStatus(CREDIT_WORKFLOW.require(credit.id, credit.status.value, "refund"))
        refunded = credit.remaining_amount
        updated = uow.update_credit(replace(credit, status=status, remaining_amount=ZERO))
        record_audit(
            uow, self._clock, "credit", credit.id, "credit_refunded",
            {"refunded": refunded, "reason": reason},
        )
        logger.info(
            "credit_refunded",
            extra={"credit_id": str(credit_id), "refunded": str(refunded)},
        )
        return updated

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def client_credit_summary(self, uow: LedgerUnitOfWork, client_id: UUID) -> ClientCreditSummary:
        """
        Aggregate a client's credits.

        total == available + applied + expired + refunded, where ``applied``
        is what credit allocations actually consumed.
        """
        credits = uow.list_credits(client_id=client_id)
        available = applied = expired = refunded = ZERO
        for credit in credits:
            consumed = sum_money(a.amount for a in uow.list_allocations(credit_id=credit.id))
            applied += consumed
            if credit.status is CreditStatus.AVAILABLE:
                available += credit.remaining_amount
            elif credit.status is CreditStatus.EXPIRED:
                expired += credit.remaining_amount
            elif credit.status is CreditStatus.REFUNDED:
                refunded += credit.amount - consumed
        return ClientCreditSummary(
            client_id=client_id,
            total_credits=sum_money(c.amount for c in credits),
            available=available,
            applied=applied,
            expired=expired,
            refunded=refunded,
            credits=tuple(credits),
        )
