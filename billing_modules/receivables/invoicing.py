"""
Invoicing & Payment Intake (``billing_modules.receivables.invoicing``).

Responsibility
--------------
The explicit lifecycle around the allocation core: drafting invoices and
their line items, finalizing and sending them, cancelling, and recording
or voiding received payments.

Architecture position
---------------------
**Modules layer** -- stateful engines over the caller's unit of work.
Lifecycle steps go through ``INVOICE_WORKFLOW``; payment-driven invoice
states are left to ``BalanceRecalculator``.

Invariants enforced
-------------------
* Line items change only while the invoice is a draft; removal is a soft
  delete so line numbers are never reused.
* An invoice is finalized only with at least one line item.
* An invoice with allocations is never cancelled.
* One payment per ``idempotency_key``.
* A payment with allocations or credits is never voided.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from uuid import UUID, uuid4

from billing_kernel.db.types import ZERO, positive_money, round_money, to_decimal, to_money
from billing_kernel.domain.clock import Clock
from billing_kernel.exceptions import (
    DuplicatePaymentError,
    InvalidAmountError,
    InvalidStateError,
    InvoiceNotFoundError,
    LineItemNotFoundError,
    PaymentNotFoundError,
    PaymentVoidedError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_modules.receivables.audit import record_audit
from billing_modules.receivables.config import ReceivablesConfig
from billing_modules.receivables.models import (
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    Payment,
    PaymentStatus,
)
from billing_modules.receivables.recalculator import BalanceRecalculator
from billing_modules.receivables.repository import LedgerUnitOfWork
from billing_modules.receivables.workflows import INVOICE_WORKFLOW

logger = get_logger("modules.receivables.invoicing")


class InvoiceLifecycle:
    """Drafts, finalizes, sends and cancels invoices."""

    def __init__(
        self,
        clock: Clock,
        config: ReceivablesConfig,
        recalculator: BalanceRecalculator,
    ):
        self._clock = clock
        self._config = config
        self._recalculator = recalculator

    def create_invoice(
        self,
        uow: LedgerUnitOfWork,
        organization_id: UUID,
        client_id: UUID,
        invoice_number: str,
        issue_date: date | None = None,
        due_date: date | None = None,
    ) -> Invoice:
        """
        Open a draft invoice.

        ``due_date`` defaults to ``issue_date`` plus the configured payment
        terms.  Invoice numbers are unique per organization.
        """
        if not invoice_number or not invoice_number.strip():
            raise ValueError("invoice_number is required")
        if any(
            inv.invoice_number == invoice_number
            for inv in uow.list_invoices(organization_id=organization_id)
        ):
            raise InvalidStateError("invoice", invoice_number, "exists", "create duplicate")

        issue_date = issue_date or self._clock.today()
        if due_date is None:
            due_date = issue_date + timedelta(days=self._config.default_payment_terms_days)

        invoice = uow.add_invoice(
            Invoice(
                id=uuid4(),
                organization_id=organization_id,
                client_id=client_id,
                invoice_number=invoice_number,
                issue_date=issue_date,
                due_date=due_date,
                status=InvoiceStatus(INVOICE_WORKFLOW.initial_state),
            )
        )
        record_audit(
            uow, self._clock, "invoice", invoice.id, "invoice_created",
            {
                "invoice_number": invoice_number,
                "client_id": client_id,
                "issue_date": issue_date,
                "due_date": due_date,
            },
        )
        logger.info(
            "invoice_created",
            extra={
                "invoice_id": str(invoice.id),
                "invoice_number": invoice_number,
                "client_id": str(client_id),
                "due_date": due_date.isoformat(),
            },
        )
        return invoice

    def add_line_item(
        self,
        uow: LedgerUnitOfWork,
        invoice_id: UUID,
        description: str,
        quantity: Decimal | int | str,
        unit_price: Decimal | int | str,
        service_code: str | None = None,
    ) -> InvoiceLineItem:
        invoice = self._get(uow, invoice_id)
        INVOICE_WORKFLOW.require(invoice.id, invoice.status.value, "edit_lines")

        quantity = to_decimal(quantity, "quantity")
        if quantity <= 0:
            raise InvalidAmountError("quantity", quantity)
        unit_price = to_money(unit_price, "unit_price")
        if unit_price < ZERO:
            raise InvalidAmountError("unit_price", unit_price, "cannot be negative")

        existing = uow.list_line_items(invoice.id, include_deleted=True)
        line = uow.add_line_item(
            InvoiceLineItem(
                id=uuid4(),
                invoice_id=invoice.id,
                line_number=max((li.line_number for li in existing), default=0) + 1,
                description=description,
                quantity=quantity,
                unit_price=unit_price,
                line_total=round_money(quantity * unit_price),
                service_code=service_code,
            )
        )
        self._recalculator.recalculate(uow, invoice.id, expected_version=invoice.version)

        record_audit(
            uow, self._clock, "invoice", invoice.id, "line_item_added",
            {
                "line_item_id": line.id,
                "line_number": line.line_number,
                "service_code": service_code,
                "line_total": line.line_total,
            },
        )
        logger.info(
            "line_item_added",
            extra={
                "invoice_id": str(invoice.id),
                "line_item_id": str(line.id),
                "line_total": str(line.line_total),
            },
        )
        return line

    def remove_line_item(self, uow: LedgerUnitOfWork, line_item_id: UUID) -> InvoiceLineItem:
        line = uow.get_line_item(line_item_id)
        if line is None or line.is_deleted:
            raise LineItemNotFoundError(str(line_item_id))
        invoice = self._get(uow, line.invoice_id)
        INVOICE_WORKFLOW.require(invoice.id, invoice.status.value, "edit_lines")

        removed = uow.update_line_item(replace(line, is_deleted=True))
        self._recalculator.recalculate(uow, invoice.id, expected_version=invoice.version)

        record_audit(
            uow, self._clock, "invoice", invoice.id, "line_item_removed",
            {"line_item_id": line.id, "line_total": line.line_total},
        )
        logger.info(
            "line_item_removed",
            extra={"invoice_id": str(invoice.id), "line_item_id": str(line.id)},
        )
        return removed

    def finalize(self, uow: LedgerUnitOfWork, invoice_id: UUID) -> Invoice:
        invoice = self._get(uow, invoice_id)
        status = INVOICE_WORKFLOW.require(invoice.id, invoice.status.value, "finalize")
        if not uow.list_line_items(invoice.id):
            raise InvalidStateError("invoice", str(invoice_id), invoice.status.value, "finalize empty")
        return self._transition(uow, invoice, InvoiceStatus(status), "invoice_finalized")

    def mark_sent(self, uow: LedgerUnitOfWork, invoice_id: UUID) -> Invoice:
        """Send a finalized invoice; it becomes payable (or overdue) at once."""
        invoice = self._get(uow, invoice_id)
        status = INVOICE_WORKFLOW.require(invoice.id, invoice.status.value, "send")
        sent = self._transition(uow, invoice, InvoiceStatus(status), "invoice_sent")
        return self._recalculator.recalculate(uow, sent.id, expected_version=sent.version)

    def cancel(self, uow: LedgerUnitOfWork, invoice_id: UUID, reason: str | None = None) -> Invoice:
        invoice = self._get(uow, invoice_id)
        status = INVOICE_WORKFLOW.require(invoice.id, invoice.status.value, "cancel")
        if uow.list_allocations(invoice_id=invoice.id):
            raise InvalidStateError("invoice", str(invoice_id), invoice.status.value, "cancel allocated")
        return self._transition(
            uow, invoice, InvoiceStatus(status), "invoice_cancelled", {"reason": reason}
        )

    # ------------------------------------------------------------------

    def _get(self, uow: LedgerUnitOfWork, invoice_id: UUID) -> Invoice:
        invoice = uow.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))
        return invoice

    def _transition(
        self,
        uow: LedgerUnitOfWork,
        invoice: Invoice,
        status: InvoiceStatus,
        action: str,
        payload: dict | None = None,
    ) -> Invoice:
        with LogContext.bind(invoice_id=invoice.id):
            updated = uow.update_invoice(replace(invoice, status=status))
            record_audit(
                uow, self._clock, "invoice", invoice.id, action,
                {"from_status": invoice.status, "to_status": status, **(payload or {})},
            )
            logger.info(
                action,
                extra={
                    "invoice_id": str(invoice.id),
                    "from_status": invoice.status.value,
                    "to_status": status.value,
                },
            )
        return updated


class PaymentIntake:
    """Records and voids received payments."""

    def __init__(self, clock: Clock, config: ReceivablesConfig):
        self._clock = clock
        self._config = config

    def record_payment(
        self,
        uow: LedgerUnitOfWork,
        organization_id: UUID,
        client_id: UUID,
        amount: Decimal,
        method: str,
        reference_number: str | None = None,
        received_at: datetime | None = None,
        idempotency_key: str | None = None,
    ) -> Payment:
        """
        Record money received from a client.

        The payment starts unposted and unallocated.

        Raises:
            InvalidAmountError: Amount is not a positive exact decimal.
            DuplicatePaymentError: ``idempotency_key`` was already used.
        """
        if idempotency_key is not None:
            existing = uow.find_payment_by_idempotency_key(idempotency_key)
            if existing is not None:
                logger.warning(
                    "payment_duplicate_rejected",
                    extra={
                        "idempotency_key": idempotency_key,
                        "existing_payment_id": str(existing.id),
                    },
                )
                raise DuplicatePaymentError(idempotency_key, str(existing.id))

        payment = uow.add_payment(
            Payment(
                id=uuid4(),
                organization_id=organization_id,
                client_id=client_id,
                amount=positive_money(amount, "payment_amount"),
                method=method,
                received_at=received_at or self._clock.now(),
                reference_number=reference_number,
                idempotency_key=idempotency_key,
            )
        )
        record_audit(
            uow, self._clock, "payment", payment.id, "payment_recorded",
            {
                "client_id": client_id,
                "amount": payment.amount,
                "method": method,
                "reference_number": reference_number,
            },
        )
        logger.info(
            "payment_recorded",
            extra={
                "payment_id": str(payment.id),
                "client_id": str(client_id),
                "amount": str(payment.amount),
                "method": method,
            },
        )
        return payment

    def void_payment(self, uow: LedgerUnitOfWork, payment_id: UUID, reason: str) -> Payment:
        payment = uow.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))
        if payment.status is PaymentStatus.VOIDED:
            raise PaymentVoidedError(str(payment_id))
        if payment.allocated_amount > ZERO or payment.credited_amount > ZERO:
            raise InvalidStateError("payment", str(payment_id), payment.status.value, "void allocated")

        voided = uow.update_payment(replace(payment, status=PaymentStatus.VOIDED))
        record_audit(
            uow, self._clock, "payment", payment.id, "payment_voided",
            {"amount": payment.amount, "reason": reason},
        )
        logger.info(
            "payment_voided",
            extra={"payment_id": str(payment_id), "amount": str(payment.amount)},
        )
        return voided
