"""
Receivables Service (``billing_modules.receivables.service``).

Thin glue layer that:
1. Opens one unit of work per call and binds the log context
2. Calls the stateful engines (allocation, credits, disputes, invoicing)
3. Commits on success, rolls back on any error

All computation lives in engines.  This service owns the transaction
boundary.

Usage:
    service = ReceivablesService(InMemoryLedgerStore(), clock)
    invoice = service.create_invoice(
        organization_id=org_id, client_id=client_id,
        invoice_number="INV-1001",
        lines=[{"description": "CBC", "quantity": 1, "unit_price": "500.00"}],
    )
    service.finalize_invoice(invoice.id)
    service.send_invoice(invoice.id)
    payment = service.record_payment(org_id, client_id, Decimal("500.00"), "check")
    result = service.allocate(payment.id, [AllocationTarget(invoice.id, Decimal("500.00"))])
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from billing_kernel.db.types import ZERO, round_money, to_money
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import (
    AlreadyAllocatedError,
    ConcurrencyError,
    DuplicatePaymentError,
    InvalidAmountError,
    ValidationError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.utils.idempotency import payment_idempotency_key
from billing_modules.receivables.allocation import AllocationEngine
from billing_modules.receivables.config import ReceivablesConfig
from billing_modules.receivables.credits import CreditManager
from billing_modules.receivables.disputes import DisputeAdjuster
from billing_modules.receivables.invoicing import InvoiceLifecycle, PaymentIntake
from billing_modules.receivables.models import (
    Allocation,
    AllocationResult,
    AllocationTarget,
    AuditEntry,
    ClientCreditSummary,
    Credit,
    CreditApplicationResult,
    CreditStatus,
    Dispute,
    DisputeOutcome,
    DisputePriority,
    DisputeReasonCategory,
    Invoice,
    InvoiceLineItem,
    Payment,
)
from billing_modules.receivables.recalculator import BalanceRecalculator
from billing_modules.receivables.reconciliation import (
    IntegrityChecker,
    IntegrityIncident,
    ReconciliationReport,
    ReconciliationReporter,
)
from billing_modules.receivables.repository import (
    SYSTEM_ACTOR_ID,
    LedgerStore,
    LedgerUnitOfWork,
)
from billing_modules.receivables.targets import TargetValidator

logger = get_logger("modules.receivables.service")


class OperationStatus(str, Enum):
    """Outcome of a webhook / RPC-style operation."""

    SUCCEEDED = "succeeded"
    REJECTED = "rejected"
    CONFLICT = "conflict"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class OperationResult:
    """Tagged result for callers that cannot handle exceptions."""

    status: OperationStatus
    value: Any = None
    error_code: str | None = None
    message: str | None = None

    @property
    def is_success(self) -> bool:
        return self.status is OperationStatus.SUCCEEDED


class ReceivablesService:
    """
    Orchestrates receivables operations through the engines.

    Engine composition:
    - BalanceRecalculator: derived invoice / line balances
    - AllocationEngine: splitting payments across invoices
    - CreditManager: overpayment credits, application, expiry, refund
    - DisputeAdjuster: filing and resolving disputes
    - InvoiceLifecycle / PaymentIntake: drafting, sending, recording
    - ReconciliationReporter / IntegrityChecker: read-only reporting

    Transaction boundary: every public method runs in exactly one unit of
    work from ``store.transaction()``; a raised error leaves nothing behind.
    """

    def __init__(
        self,
        store: LedgerStore,
        clock: Clock | None = None,
        config: ReceivablesConfig | None = None,
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._config = config or ReceivablesConfig.with_defaults()

        self._recalculator = BalanceRecalculator(self._clock)
        targets = TargetValidator(self._config, self._recalculator)
        self._credits = CreditManager(self._clock, self._config, targets)
        self._allocation = AllocationEngine(self._clock, targets, self._credits)
        self._disputes = DisputeAdjuster(self._clock, self._config, self._recalculator)
        self._invoices = InvoiceLifecycle(self._clock, self._config, self._recalculator)
        self._payments = PaymentIntake(self._clock, self._config)
        self._reporter = ReconciliationReporter(self._clock, self._config)
        self._integrity = IntegrityChecker(self._clock)

    @property
    def config(self) -> ReceivablesConfig:
        return self._config

    @contextmanager
    def _transaction(self, actor_id: UUID, **log_fields: Any) -> Iterator[LedgerUnitOfWork]:
        with LogContext.correlation(), LogContext.bind(actor_id=actor_id, **log_fields):
            with self._store.transaction(actor_id) as uow:
                yield uow

    def _amount(self, value: Decimal | int | str, field: str) -> Decimal:
        """Coerce caller input; reject more precision than the currency has."""
        money = to_money(value, field)
        places = self._config.currency_decimal_places
        exact = Decimal(value)
        if exact != round_money(exact, places):
            raise InvalidAmountError(field, money, f"more than {places} decimal places")
        return money

    def _targets(self, targets: Sequence[AllocationTarget | Mapping[str, Any]]) -> list[AllocationTarget]:
        coerced = []
        for index, target in enumerate(targets):
            if isinstance(target, Mapping):
                target = AllocationTarget(
                    invoice_id=target["invoice_id"],
                    amount=target["amount"],
                    line_item_id=target.get("line_item_id"),
                )
            coerced.append(
                AllocationTarget(
                    invoice_id=target.invoice_id,
                    amount=self._amount(target.amount, f"targets[{index}].amount"),
                    line_item_id=target.line_item_id,
                )
            )
        return coerced

    # =========================================================================
    # Invoices
    # =========================================================================

    def create_invoice(
        self,
        organization_id: UUID,
        client_id: UUID,
        invoice_number: str,
        lines: Sequence[Mapping[str, Any]] = (),
        issue_date: date | None = None,
        due_date: date | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Invoice:
        """Create a draft invoice, optionally with its line items."""
        with self._transaction(actor_id, organization_id=organization_id) as uow:
            invoice = self._invoices.create_invoice(
                uow, organization_id, client_id, invoice_number, issue_date, due_date
            )
            for line in lines:
                self._invoices.add_line_item(
                    uow,
                    invoice.id,
                    description=line["description"],
                    quantity=line.get("quantity", 1),
                    unit_price=self._amount(line["unit_price"], "unit_price"),
                    service_code=line.get("service_code"),
                )
            return uow.get_invoice(invoice.id)

    def add_line_item(
        self,
        invoice_id: UUID,
        description: str,
        unit_price: Decimal | int | str,
        quantity: Decimal | int | str = 1,
        service_code: str | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> InvoiceLineItem:
        with self._transaction(actor_id, invoice_id=invoice_id) as uow:
            return self._invoices.add_line_item(
                uow,
                invoice_id,
                description=description,
                quantity=quantity,
                unit_price=self._amount(unit_price, "unit_price"),
                service_code=service_code,
            )

    def remove_line_item(self, line_item_id: UUID, actor_id: UUID = SYSTEM_ACTOR_ID) -> InvoiceLineItem:
        with self._transaction(actor_id) as uow:
            return self._invoices.remove_line_item(uow, line_item_id)

    def finalize_invoice(self, invoice_id: UUID, actor_id: UUID = SYSTEM_ACTOR_ID) -> Invoice:
        with self._transaction(actor_id, invoice_id=invoice_id) as uow:
            return self._invoices.finalize(uow, invoice_id)

    def send_invoice(self, invoice_id: UUID, actor_id: UUID = SYSTEM_ACTOR_ID) -> Invoice:
        """
        Send a finalized invoice.

        With ``auto_apply_credits`` enabled the client's available credits
        are applied to it, oldest first, in the same transaction.
        """
        with self._transaction(actor_id, invoice_id=invoice_id) as uow:
            invoice = self._invoices.mark_sent(uow, invoice_id)
            if self._config.auto_apply_credits:
                invoice = self._auto_apply_credits(uow, invoice)
            return invoice

    def _auto_apply_credits(self, uow: LedgerUnitOfWork, invoice: Invoice) -> Invoice:
        if invoice.status not in self._config.allocatable_statuses:
            return invoice
        now = self._clock.now()
        for credit in uow.list_credits(
            organization_id=invoice.organization_id,
            client_id=invoice.client_id,
            statuses=[CreditStatus.AVAILABLE],
        ):
            if invoice.balance_due <= ZERO:
                break
            if credit.is_expired_at(now):
                continue
            self._credits.apply_credit(uow, credit.id, invoice_id=invoice.id)
            invoice = uow.get_invoice(invoice.id)
        logger.info(
            "credits_auto_applied",
            extra={"invoice_id": str(invoice.id), "balance_due": str(invoice.balance_due)},
        )
        return invoice

    def cancel_invoice(
        self,
        invoice_id: UUID,
        reason: str | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Invoice:
        with self._transaction(actor_id, invoice_id=invoice_id) as uow:
            return self._invoices.cancel(uow, invoice_id, reason)

    def recalculate(self, invoice_id: UUID, actor_id: UUID = SYSTEM_ACTOR_ID) -> Invoice:
        with self._transaction(actor_id, invoice_id=invoice_id) as uow:
            return self._recalculator.recalculate(uow, invoice_id)

    # =========================================================================
    # Payments
    # =========================================================================

    def record_payment(
        self,
        organization_id: UUID,
        client_id: UUID,
        amount: Decimal | int | str,
        method: str,
        reference_number: str | None = None,
        received_at: datetime | None = None,
        idempotency_key: str | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Payment:
        with self._transaction(actor_id, organization_id=organization_id) as uow:
            return self._payments.record_payment(
                uow,
                organization_id,
                client_id,
                self._amount(amount, "payment_amount"),
                method,
                reference_number=reference_number,
                received_at=received_at,
                idempotency_key=idempotency_key,
            )

    def void_payment(self, payment_id: UUID, reason: str, actor_id: UUID = SYSTEM_ACTOR_ID) -> Payment:
        with self._transaction(actor_id, payment_id=payment_id) as uow:
            return self._payments.void_payment(uow, payment_id, reason)

    def allocate(
        self,
        payment_id: UUID,
        targets: Sequence[AllocationTarget | Mapping[str, Any]],
        close_out: bool = False,
        idempotency_key: str | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> AllocationResult:
        """
        Allocate a payment across invoices / line items.

        Raises:
            OverAllocationError, PaymentExceededError, InvalidTargetError,
            AlreadyAllocatedError, ConcurrentModificationError.
        """
        coerced = self._targets(targets)
        with self._transaction(actor_id, payment_id=payment_id) as uow:
            return self._allocation.allocate(
                uow,
                payment_id,
                coerced,
                close_out=close_out,
                idempotency_key=idempotency_key,
            )

    def try_allocate(
        self,
        payment_id: UUID,
        targets: Sequence[AllocationTarget | Mapping[str, Any]],
        close_out: bool = False,
        idempotency_key: str | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> OperationResult:
        """``allocate`` returning an ``OperationResult`` instead of raising."""
        try:
            result = self.allocate(payment_id, targets, close_out, idempotency_key, actor_id)
        except AlreadyAllocatedError as exc:
            return self._failed(OperationStatus.DUPLICATE, exc)
        except ConcurrencyError as exc:
            return self._failed(OperationStatus.CONFLICT, exc)
        except ValidationError as exc:
            return self._failed(OperationStatus.REJECTED, exc)
        return OperationResult(status=OperationStatus.SUCCEEDED, value=result)

    def receive_processor_payment(
        self,
        organization_id: UUID,
        client_id: UUID,
        amount: Decimal | int | str,
        reference_number: str,
        metadata: Mapping[str, Any] | None = None,
        method: str = "processor",
        received_at: datetime | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> OperationResult:
        """
        Webhook receiver for card / processor payments.

        Records the payment under a key derived from (invoice, amount,
        method, reference) so a redelivered event is reported as a
        duplicate.  When ``metadata["invoice_id"]`` names an invoice that
        can receive money, up to its balance is allocated to it and any
        excess becomes a client credit.  Otherwise the payment is left
        unposted for manual allocation.
        """
        metadata = metadata or {}
        raw_invoice_id = metadata.get("invoice_id")
        invoice_id = _parse_invoice_id(raw_invoice_id)
        try:
            money = self._amount(amount, "payment_amount")
            key = payment_idempotency_key(invoice_id, money, method, reference_number)
            with self._transaction(actor_id, organization_id=organization_id) as uow:
                payment = self._payments.record_payment(
                    uow,
                    organization_id,
                    client_id,
                    money,
                    method,
                    reference_number=reference_number,
                    received_at=received_at,
                    idempotency_key=key,
                )
                invoice = uow.get_invoice(invoice_id) if invoice_id else None
                if (
                    invoice is None
                    or invoice.organization_id != organization_id
                    or invoice.client_id != client_id
                    or invoice.status not in self._config.allocatable_statuses
                ):
                    logger.warning(
                        "processor_payment_left_unallocated",
                        extra={
                            "payment_id": str(payment.id),
                            "invoice_id": str(raw_invoice_id) if raw_invoice_id else None,
                        },
                    )
                    return OperationResult(status=OperationStatus.SUCCEEDED, value=payment)

                applied = min(money, invoice.balance_due)
                targets = [AllocationTarget(invoice.id, applied)] if applied > ZERO else []
                result = self._allocation.allocate(uow, payment.id, targets, close_out=True)
        except DuplicatePaymentError as exc:
            return self._failed(
                OperationStatus.DUPLICATE, exc, value=UUID(exc.existing_payment_id)
            )
        except ConcurrencyError as exc:
            return self._failed(OperationStatus.CONFLICT, exc)
        except ValidationError as exc:
            return self._failed(OperationStatus.REJECTED, exc)
        return OperationResult(status=OperationStatus.SUCCEEDED, value=result)

    def _failed(self, status: OperationStatus, exc: Exception, value: Any = None) -> OperationResult:
        logger.warning(
            "operation_failed",
            extra={"status": status.value, "error_code": exc.code, "detail": str(exc)},
        )
        return OperationResult(status=status, value=value, error_code=exc.code, message=str(exc))

    # =========================================================================
    # Credits
    # =========================================================================

    def create_credit(
        self,
        payment_id: UUID,
        amount: Decimal | int | str,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Credit:
        with self._transaction(actor_id, payment_id=payment_id) as uow:
            return self._credits.create_credit(uow, payment_id, self._amount(amount, "credit_amount"))

    def issue_adjustment_credit(
        self,
        organization_id: UUID,
        client_id: UUID,
        amount: Decimal | int | str,
        reason: str,
        expires_at: datetime | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Credit:
        with self._transaction(actor_id, organization_id=organization_id) as uow:
            return self._credits.issue_adjustment_credit(
                uow, organization_id, client_id, self._amount(amount, "credit_amount"),
                reason, expires_at,
            )

    def apply_credit(
        self,
        credit_id: UUID,
        invoice_id: UUID | None = None,
        amount: Decimal | int | str | None = None,
        line_item_id: UUID | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> CreditApplicationResult:
        if amount is not None:
            amount = self._amount(amount, "credit_amount")
        with self._transaction(actor_id, invoice_id=invoice_id) as uow:
            return self._credits.apply_credit(uow, credit_id, invoice_id, amount, line_item_id)

    def expire_credits(
        self,
        as_of: datetime | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> list[Credit]:
        with self._transaction(actor_id) as uow:
            return self._credits.expire_credits(uow, as_of or self._clock.now())

    def refund_credit(self, credit_id: UUID, reason: str, actor_id: UUID = SYSTEM_ACTOR_ID) -> Credit:
        with self._transaction(actor_id) as uow:
            return self._credits.refund_credit(uow, credit_id, reason)

    def client_credit_summary(self, client_id: UUID) -> ClientCreditSummary:
        with self._store.transaction() as uow:
            return self._credits.client_credit_summary(uow, client_id)

    # =========================================================================
    # Disputes
    # =========================================================================

    def file_dispute(
        self,
        line_item_id: UUID,
        amount: Decimal | int | str,
        reason: str,
        expected_version: int | None = None,
        reason_category: DisputeReasonCategory = DisputeReasonCategory.OTHER,
        priority: DisputePriority = DisputePriority.NORMAL,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Dispute:
        with self._transaction(actor_id) as uow:
            return self._disputes.file_dispute(
                uow,
                line_item_id,
                self._amount(amount, "disputed_amount"),
                reason,
                expected_version=expected_version,
                reason_category=reason_category,
                priority=priority,
            )

    def file_invoice_dispute(
        self,
        invoice_id: UUID,
        amount: Decimal | int | str,
        reason: str,
        reason_category: DisputeReasonCategory = DisputeReasonCategory.OTHER,
        priority: DisputePriority = DisputePriority.NORMAL,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Dispute:
        with self._transaction(actor_id, invoice_id=invoice_id) as uow:
            return self._disputes.file_invoice_dispute(
                uow,
                invoice_id,
                self._amount(amount, "disputed_amount"),
                reason,
                reason_category=reason_category,
                priority=priority,
            )

    def resolve_dispute(
        self,
        dispute_id: UUID,
        outcome: DisputeOutcome | str,
        resolution_amount: Decimal | int | str | None = None,
        notes: str | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Dispute:
        if resolution_amount is not None:
            resolution_amount = self._amount(resolution_amount, "resolution_amount")
        with self._transaction(actor_id) as uow:
            return self._disputes.resolve_dispute(uow, dispute_id, outcome, resolution_amount, notes)

    # =========================================================================
    # Reporting
    # =========================================================================

    def reconciliation_report(
        self,
        organization_id: UUID | None = None,
        as_of: datetime | None = None,
    ) -> ReconciliationReport:
        with self._store.transaction() as uow:
            return self._reporter.report(uow, organization_id, as_of)

    def check_integrity(self, organization_id: UUID | None = None) -> list[IntegrityIncident]:
        with self._store.transaction() as uow:
            return self._integrity.check(uow, organization_id)

    # =========================================================================
    # Reads
    # =========================================================================

    def get_invoice(self, invoice_id: UUID) -> Invoice | None:
        with self._store.transaction() as uow:
            return uow.get_invoice(invoice_id)

    def get_line_items(self, invoice_id: UUID) -> list[InvoiceLineItem]:
        with self._store.transaction() as uow:
            return uow.list_line_items(invoice_id)

    def get_payment(self, payment_id: UUID) -> Payment | None:
        with self._store.transaction() as uow:
            return uow.get_payment(payment_id)

    def get_credit(self, credit_id: UUID) -> Credit | None:
        with self._store.transaction() as uow:
            return uow.get_credit(credit_id)

    def get_dispute(self, dispute_id: UUID) -> Dispute | None:
        with self._store.transaction() as uow:
            return uow.get_dispute(dispute_id)

    def list_allocations(
        self,
        payment_id: UUID | None = None,
        invoice_id: UUID | None = None,
        credit_id: UUID | None = None,
    ) -> list[Allocation]:
        with self._store.transaction() as uow:
            return uow.list_allocations(payment_id=payment_id, credit_id=credit_id, invoice_id=invoice_id)

    def audit_trail(self, entity_id: UUID) -> list[AuditEntry]:
        with self._store.transaction() as uow:
            return uow.list_audit_entries(entity_id)


def _parse_invoice_id(raw: Any) -> UUID | None:
    """Invoice id from processor metadata; unparsable ids count as absent."""
    if not raw:
        return None
    try:
        return UUID(str(raw))
    except ValueError:
        logger.warning("processor_invoice_id_unparsable", extra={"raw_invoice_id": str(raw)})
        return None
