"""
Reconciliation Reporting (``billing_modules.receivables.reconciliation``).

Responsibility
--------------
Read-only projections over the receivables ledger:

* ``ReconciliationReporter`` -- unposted payments, open invoices by aging
  bucket, and headline totals (balance due, unapplied credits, unallocated
  payments).  The totals are independent views; they are not expected to
  cross-balance.
* ``IntegrityChecker`` -- recomputes every derived figure from source rows
  and reports each disagreement as a data-integrity incident.  Nothing is
  auto-corrected.

Architecture position
---------------------
**Modules layer** -- reporting.  Never writes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from billing_engines.aging import AgingCalculator, AgingInput, AgingReport, build_buckets
from billing_engines.balance import compute_invoice_balance
from billing_kernel.db.types import ZERO, sum_money
from billing_kernel.domain.clock import Clock
from billing_kernel.invariants import LedgerInvariant
from billing_kernel.logging_config import get_logger
from billing_kernel.utils.hashing import hash_payload
from billing_modules.receivables.config import ReceivablesConfig
from billing_modules.receivables.models import (
    PRE_SEND_STATUSES,
    CreditStatus,
    Invoice,
    InvoiceStatus,
    PaymentStatus,
)
from billing_modules.receivables.repository import LedgerUnitOfWork

logger = get_logger("modules.receivables.reconciliation")


@dataclass(frozen=True)
class UnpostedPayment:
    payment_id: UUID
    client_id: UUID
    received_at: datetime
    method: str
    reference_number: str | None
    amount: Decimal
    allocated_amount: Decimal
    credited_amount: Decimal
    unallocated_amount: Decimal


@dataclass(frozen=True)
class ReconciliationTotals:
    total_balance_due: Decimal
    total_unapplied_credits: Decimal
    total_unallocated_payments: Decimal
    total_payments_received: Decimal
    total_allocated: Decimal
    total_disputed: Decimal


@dataclass(frozen=True)
class ReconciliationReport:
    """Point-in-time reconciliation snapshot."""

    as_of: datetime
    unposted_payments: tuple[UnpostedPayment, ...]
    aging: AgingReport
    totals: ReconciliationTotals

    @property
    def balance_by_bucket(self) -> dict[str, Decimal]:
        return self.aging.total_by_bucket()


class ReconciliationReporter:
    """Builds reconciliation reports."""

    def __init__(self, clock: Clock, config: ReceivablesConfig):
        self._clock = clock
        self._aging = AgingCalculator(build_buckets(config.aging_bucket_edges))

    def report(
        self,
        uow: LedgerUnitOfWork,
        organization_id: UUID | None = None,
        as_of: datetime | None = None,
    ) -> ReconciliationReport:
        as_of = as_of or self._clock.now()

        payments = uow.list_payments(organization_id=organization_id)
        live_payments = [p for p in payments if p.status is not PaymentStatus.VOIDED]
        unposted = tuple(
            UnpostedPayment(
                payment_id=p.id,
                client_id=p.client_id,
                received_at=p.received_at,
                method=p.method,
                reference_number=p.reference_number,
                amount=p.amount,
                allocated_amount=p.allocated_amount,
                credited_amount=p.credited_amount,
                unallocated_amount=p.unallocated_amount,
            )
            for p in payments
            if p.status is PaymentStatus.UNPOSTED
        )

        open_invoices = [
            inv
            for inv in uow.list_invoices(organization_id=organization_id)
            if _is_receivable(inv) and inv.balance_due > ZERO
        ]
        aging = self._aging.generate_report(
            invoices=[
                AgingInput(
                    invoice_id=inv.id,
                    invoice_number=inv.invoice_number,
                    client_id=inv.client_id,
                    due_date=inv.due_date,
                    balance_due=inv.balance_due,
                )
                for inv in open_invoices
            ],
            as_of_date=as_of.date(),
        )

        credits = [
            c
            for c in uow.list_credits(organization_id=organization_id, statuses=[CreditStatus.AVAILABLE])
            if not c.is_expired_at(as_of)
        ]

        totals = ReconciliationTotals(
            total_balance_due=sum_money(inv.balance_due for inv in open_invoices),
            total_unapplied_credits=sum_money(c.remaining_amount for c in credits),
            total_unallocated_payments=sum_money(p.unallocated_amount for p in unposted),
            total_payments_received=sum_money(p.amount for p in live_payments),
            total_allocated=sum_money(p.allocated_amount for p in live_payments),
            total_disputed=sum_money(inv.disputed_amount for inv in open_invoices),
        )

        logger.info(
            "reconciliation_report_generated",
            extra={
                "as_of": as_of.isoformat(),
                "unposted_payment_count": len(unposted),
                "open_invoice_count": len(open_invoices),
                "total_balance_due": str(totals.total_balance_due),
                "total_unapplied_credits": str(totals.total_unapplied_credits),
                "total_unallocated_payments": str(totals.total_unallocated_payments),
            },
        )
        return ReconciliationReport(
            as_of=as_of,
            unposted_payments=unposted,
            aging=aging,
            totals=totals,
        )


def _is_receivable(invoice: Invoice) -> bool:
    return invoice.status not in PRE_SEND_STATUSES and invoice.status is not InvoiceStatus.CANCELLED


# ---------------------------------------------------------------------------
# Integrity checking
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IntegrityIncident:
    """One disagreement between stored and recomputed state."""

    invariant: LedgerInvariant
    entity_type: str
    entity_id: UUID
    detail: str
    expected: str | None = None
    actual: str | None = None


class IntegrityChecker:
    """
    Consistency-check job over the ledger invariants.

    Every incident is logged at ERROR as ``data_integrity_incident`` and
    returned; nothing is repaired.
    """

    def __init__(self, clock: Clock):
        self._clock = clock

    def check(self, uow: LedgerUnitOfWork, organization_id: UUID | None = None) -> list[IntegrityIncident]:
        incidents: list[IntegrityIncident] = []
        today = self._clock.today()

        invoices = uow.list_invoices(organization_id=organization_id)
        for invoice in invoices:
            incidents.extend(self._check_invoice(uow, invoice, today))

        for payment in uow.list_payments(organization_id=organization_id):
            allocated = sum_money(a.amount for a in uow.list_allocations(payment_id=payment.id))
            credited = sum_money(
                c.amount for c in uow.list_credits(source_payment_id=payment.id)
            )
            if allocated != payment.allocated_amount:
                incidents.append(self._incident(
                    LedgerInvariant.PAYMENT_NOT_OVERALLOCATED, "payment", payment.id,
                    "allocated_amount disagrees with allocation rows",
                    allocated, payment.allocated_amount,
                ))
            if credited != payment.credited_amount:
                incidents.append(self._incident(
                    LedgerInvariant.PAYMENT_NOT_OVERALLOCATED, "payment", payment.id,
                    "credited_amount disagrees with credits issued",
                    credited, payment.credited_amount,
                ))
            if allocated + credited > payment.amount:
                incidents.append(self._incident(
                    LedgerInvariant.PAYMENT_NOT_OVERALLOCATED, "payment", payment.id,
                    "allocations and credits exceed the payment amount",
                    payment.amount, allocated + credited,
                ))
            if payment.status is PaymentStatus.POSTED and payment.amount - allocated - credited != ZERO:
                incidents.append(self._incident(
                    LedgerInvariant.POSTED_PAYMENT_SETTLED, "payment", payment.id,
                    "posted payment has an unallocated remainder",
                    ZERO, payment.amount - allocated - credited,
                ))

        for credit in uow.list_credits(organization_id=organization_id):
            consumed = sum_money(a.amount for a in uow.list_allocations(credit_id=credit.id))
            if credit.status is CreditStatus.REFUNDED:
                expected_remaining = ZERO
            else:
                expected_remaining = credit.amount - consumed
            if consumed > credit.amount or credit.remaining_amount != expected_remaining:
                incidents.append(self._incident(
                    LedgerInvariant.CREDIT_REMAINING_BOUNDED, "credit", credit.id,
                    "remaining_amount disagrees with credit applications",
                    expected_remaining, credit.remaining_amount,
                ))

        # Audit rows carry no organization; only a full check covers them.
        if organization_id is None:
            for entry in uow.list_audit_entries():
                recomputed = hash_payload(entry.payload)
                if recomputed != entry.payload_hash:
                    incidents.append(self._incident(
                        LedgerInvariant.AUDIT_PAYLOAD_INTACT, entry.entity_type, entry.entity_id,
                        f"{entry.action} payload no longer matches its hash",
                        entry.payload_hash, recomputed,
                    ))

        logger.info(
            "integrity_check_completed",
            extra={
                "invoice_count": len(invoices),
                "incident_count": len(incidents),
            },
        )
        return incidents

    def _check_invoice(self, uow: LedgerUnitOfWork, invoice: Invoice, today: date) -> list[IntegrityIncident]:
        incidents: list[IntegrityIncident] = []
        lines = uow.list_line_items(invoice.id)
        allocations = uow.list_allocations(invoice_id=invoice.id)
        disputes = uow.list_disputes(invoice_id=invoice.id)

        total = sum_money(line.line_total for line in lines)
        paid = sum_money(a.amount for a in allocations)
        derived = compute_invoice_balance(
            current_status=invoice.status.value,
            total_amount=total,
            paid_amount=paid,
            disputed_amount=sum_money(d.open_amount for d in disputes),
            waived_amount=sum_money(d.waived_amount for d in disputes),
            has_open_dispute=any(d.is_open for d in disputes),
            due_date=invoice.due_date,
            today=today,
        )

        stored = (
            invoice.total_amount,
            invoice.paid_amount,
            invoice.disputed_amount,
            invoice.waived_amount,
            invoice.balance_due,
        )
        expected = (
            derived.total_amount,
            derived.paid_amount,
            derived.disputed_amount,
            derived.waived_amount,
            derived.balance_due,
        )
        if stored != expected:
            incidents.append(self._incident(
                LedgerInvariant.BALANCE_DUE_DERIVED, "invoice", invoice.id,
                "stored balances disagree with allocations and disputes",
                "/".join(str(v) for v in expected), "/".join(str(v) for v in stored),
            ))
        if invoice.status is not InvoiceStatus.CANCELLED:
            if derived.is_overdrawn or invoice.balance_due < ZERO:
                incidents.append(self._incident(
                    LedgerInvariant.BALANCE_NON_NEGATIVE, "invoice", invoice.id,
                    "balance is negative", ZERO, derived.raw_balance,
                ))
            if paid > total:
                incidents.append(self._incident(
                    LedgerInvariant.INVOICE_NOT_OVERALLOCATED, "invoice", invoice.id,
                    "allocations exceed the invoice total", total, paid,
                ))
        return incidents

    def _incident(
        self,
        invariant: LedgerInvariant,
        entity_type: str,
        entity_id: UUID,
        detail: str,
        expected: object,
        actual: object,
    ) -> IntegrityIncident:
        incident = IntegrityIncident(
            invariant=invariant,
            entity_type=entity_type,
            entity_id=entity_id,
            detail=detail,
            expected=str(expected),
            actual=str(actual),
        )
        logger.error(
            "data_integrity_incident",
            extra={
                "invariant": invariant.value,
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "detail": detail,
                "expected": incident.expected,
                "actual": incident.actual,
            },
        )
        return incident
