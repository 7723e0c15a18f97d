"""
Receivables Domain Models (``billing_modules.receivables.models``).

Responsibility
--------------
Frozen dataclass value objects for the nouns of lab receivables: invoices,
line items, payments, allocations, credits, disputes and audit entries,
plus the request/result shapes of the allocation engine.

Architecture position
---------------------
**Modules layer** -- pure data definitions with ZERO I/O.  Returned by the
unit of work and by every service.  No dependency on the database.

Invariants enforced
-------------------
* All models are ``frozen=True``; updates go through ``dataclasses.replace``
  and a version-checked write.
* All monetary fields are ``Decimal`` -- NEVER ``float``.
* Arithmetic invariants (non-negative balances, allocations within the
  payment amount, credit remaining within amount) are checked on
  construction; a breach raises ``InvariantViolationError``.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from billing_kernel.db.types import ZERO, round_money
from billing_kernel.exceptions import InvariantViolationError
from billing_kernel.invariants import LedgerInvariant
from billing_kernel.logging_config import get_logger

logger = get_logger("modules.receivables.models")


class InvoiceStatus(str, Enum):
    """Invoice lifecycle and derived payment states."""
    DRAFT = "draft"
    FINALIZED = "finalized"
    SENT = "sent"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


# States the recalculator leaves alone.
PRE_SEND_STATUSES = frozenset({InvoiceStatus.DRAFT, InvoiceStatus.FINALIZED})


class PaymentStatus(str, Enum):
    UNPOSTED = "unposted"
    POSTED = "posted"
    VOIDED = "voided"


class CreditStatus(str, Enum):
    AVAILABLE = "available"
    APPLIED = "applied"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class DisputeStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class DisputeOutcome(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class DisputeReasonCategory(str, Enum):
    PRICING = "pricing"
    SERVICE_NOT_RENDERED = "service_not_rendered"
    DUPLICATE = "duplicate"
    OTHER = "other"


class DisputePriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class FundingSource(str, Enum):
    """What an allocation draws its money from."""
    PAYMENT = "payment"
    CREDIT = "credit"


def _violation(invariant: LedgerInvariant, entity_type: str, entity_id: UUID, detail: str):
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


@dataclass(frozen=True)
class InvoiceLineItem:
    """A billed test or service on an invoice."""
    id: UUID
    invoice_id: UUID
    line_number: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    line_total: Decimal
    service_code: str | None = None  # CPT / lab test code
    allocated_amount: Decimal = ZERO
    disputed_amount: Decimal = ZERO
    waived_amount: Decimal = ZERO
    is_deleted: bool = False
    version: int = 1

    def __post_init__(self):
        if self.quantity <= 0:
            raise ValueError("quantity must be positive")
        if self.unit_price < 0:
            raise ValueError("unit_price cannot be negative")
        if self.line_total != round_money(self.quantity * self.unit_price):
            raise ValueError(
                f"line_total ({self.line_total}) must equal quantity x unit_price "
                f"({round_money(self.quantity * self.unit_price)})"
            )
        if min(self.allocated_amount, self.disputed_amount, self.waived_amount) < 0:
            raise _violation(
                LedgerInvariant.BALANCE_NON_NEGATIVE, "line_item", self.id,
                "derived amounts cannot be negative",
            )

    @property
    def open_balance(self) -> Decimal:
        """Line total not yet allocated, disputed or waived at line level."""
        return (
            self.line_total
            - self.allocated_amount
            - self.disputed_amount
            - self.waived_amount
        )


@dataclass(frozen=True)
class Invoice:
    """A client invoice. Money fields other than total are derived."""
    id: UUID
    organization_id: UUID
    client_id: UUID
    invoice_number: str
    issue_date: date
    due_date: date
    status: InvoiceStatus = InvoiceStatus.DRAFT
    total_amount: Decimal = ZERO
    paid_amount: Decimal = ZERO
    disputed_amount: Decimal = ZERO
    waived_amount: Decimal = ZERO
    balance_due: Decimal = ZERO
    line_item_ids: tuple[UUID, ...] = field(default_factory=tuple)
    version: int = 1

    def __post_init__(self):
        if self.due_date < self.issue_date:
            raise ValueError("due_date cannot precede issue_date")
        if self.status is InvoiceStatus.CANCELLED:
            return
        if self.balance_due < 0:
            raise _violation(
                LedgerInvariant.BALANCE_NON_NEGATIVE, "invoice", self.id,
                f"balance_due {self.balance_due} is negative",
            )
        if self.paid_amount > self.total_amount:
            raise _violation(
                LedgerInvariant.INVOICE_NOT_OVERALLOCATED, "invoice", self.id,
                f"paid {self.paid_amount} exceeds total {self.total_amount}",
            )

    @property
    def effective_total(self) -> Decimal:
        """Total after approved dispute waivers."""
        return self.total_amount - self.waived_amount


@dataclass(frozen=True)
class Payment:
    """Money received from a client, independent of any invoice."""
    id: UUID
    organization_id: UUID
    client_id: UUID
    amount: Decimal
    method: str  # check, ach, wire, card, processor
    received_at: datetime
    reference_number: str | None = None
    status: PaymentStatus = PaymentStatus.UNPOSTED
    allocated_amount: Decimal = ZERO
    credited_amount: Decimal = ZERO
    idempotency_key: str | None = None
    version: int = 1

    def __post_init__(self):
        if self.amount <= 0:
            logger.warning(
                "payment_invalid_amount",
                extra={"payment_id": str(self.id), "amount": str(self.amount)},
            )
            raise ValueError("Payment amount must be positive")
        if self.allocated_amount < 0 or self.credited_amount < 0:
            raise ValueError("allocated_amount and credited_amount cannot be negative")
        if self.allocated_amount + self.credited_amount > self.amount:
            raise _violation(
                LedgerInvariant.PAYMENT_NOT_OVERALLOCATED, "payment", self.id,
                f"allocated {self.allocated_amount} + credited {self.credited_amount} "
                f"exceeds amount {self.amount}",
            )

    @property
    def unallocated_amount(self) -> Decimal:
        return self.amount - self.allocated_amount - self.credited_amount


@dataclass(frozen=True)
class Allocation:
    """Links a payment or credit amount to an invoice (optionally one line)."""
    id: UUID
    invoice_id: UUID
    amount: Decimal
    batch_key: str
    created_at: datetime
    payment_id: UUID | None = None
    credit_id: UUID | None = None
    line_item_id: UUID | None = None

    def __post_init__(self):
        if (self.payment_id is None) == (self.credit_id is None):
            raise ValueError("Allocation needs exactly one of payment_id or credit_id")
        if self.amount <= 0:
            raise ValueError("Allocation amount must be positive")

    @property
    def source(self) -> FundingSource:
        return FundingSource.PAYMENT if self.payment_id else FundingSource.CREDIT


@dataclass(frozen=True)
class Credit:
    """A reusable, client-scoped pool of funds."""
    id: UUID
    organization_id: UUID
    client_id: UUID
    amount: Decimal
    remaining_amount: Decimal
    created_at: datetime
    status: CreditStatus = CreditStatus.AVAILABLE
    source_payment_id: UUID | None = None
    expires_at: datetime | None = None
    reason: str | None = None
    version: int = 1

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError("Credit amount must be positive")
        if not (ZERO <= self.remaining_amount <= self.amount):
            raise _violation(
                LedgerInvariant.CREDIT_REMAINING_BOUNDED, "credit", self.id,
                f"remaining {self.remaining_amount} outside [0, {self.amount}]",
            )

    def is_expired_at(self, moment: datetime) -> bool:
        if self.status is CreditStatus.EXPIRED:
            return True
        return self.expires_at is not None and self.expires_at <= moment

    @property
    def applied_amount(self) -> Decimal:
        return self.amount - self.remaining_amount


@dataclass(frozen=True)
class Dispute:
    """A client objection to a billed line item (or a whole invoice)."""
    id: UUID
    organization_id: UUID
    invoice_id: UUID
    disputed_amount: Decimal
    reason: str
    filed_at: datetime
    line_item_id: UUID | None = None
    status: DisputeStatus = DisputeStatus.OPEN
    outcome: DisputeOutcome | None = None
    resolution_amount: Decimal = ZERO  # waived portion
    reason_category: DisputeReasonCategory = DisputeReasonCategory.OTHER
    priority: DisputePriority = DisputePriority.NORMAL
    resolved_at: datetime | None = None
    resolution_notes: str | None = None
    version: int = 1

    def __post_init__(self):
        if self.disputed_amount <= 0:
            raise ValueError("disputed_amount must be positive")
        if not (ZERO <= self.resolution_amount <= self.disputed_amount):
            raise ValueError("resolution_amount must be within [0, disputed_amount]")

    @property
    def is_open(self) -> bool:
        return self.status is DisputeStatus.OPEN

    @property
    def open_amount(self) -> Decimal:
        return self.disputed_amount if self.is_open else ZERO

    @property
    def waived_amount(self) -> Decimal:
        if self.status is DisputeStatus.RESOLVED:
            return self.resolution_amount
        return ZERO


@dataclass(frozen=True)
class AuditEntry:
    """Append-only record of a committed mutation."""
    id: UUID
    entity_type: str
    entity_id: UUID
    action: str
    payload: dict[str, Any]
    payload_hash: str
    created_at: datetime
    actor_id: UUID


# ---------------------------------------------------------------------------
# Engine request / result shapes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AllocationTarget:
    """One leg of an allocation batch."""
    invoice_id: UUID
    amount: Decimal
    line_item_id: UUID | None = None


@dataclass(frozen=True)
class AllocationResult:
    """Outcome of a committed allocation batch."""
    allocations: tuple[Allocation, ...]
    payment_status: PaymentStatus
    credit: Credit | None = None
    invoices: tuple[Invoice, ...] = ()

    @property
    def total_allocated(self) -> Decimal:
        return sum((a.amount for a in self.allocations), ZERO)

    @property
    def is_posted(self) -> bool:
        return self.payment_status is PaymentStatus.POSTED


@dataclass(frozen=True)
class CreditApplicationResult:
    """Outcome of applying one credit to one or more invoices."""
    credit: Credit
    allocations: tuple[Allocation, ...]

    @property
    def total_applied(self) -> Decimal:
        return sum((a.amount for a in self.allocations), ZERO)


@dataclass(frozen=True)
class ClientCreditSummary:
    client_id: UUID
    total_credits: Decimal
    available: Decimal
    applied: Decimal
    expired: Decimal
    refunded: Decimal
    credits: tuple[Credit, ...] = ()
