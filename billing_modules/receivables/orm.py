"""
Receivables ORM Models (``billing_modules.receivables.orm``).

Responsibility
--------------
SQLAlchemy persistence models for the receivables ledger.  Maps the frozen
domain dataclasses from ``models.py`` to database tables.

Architecture position
---------------------
**Modules layer** -- persistence.  Imports from ``billing_kernel.db.base``
and sibling ``models.py``.  Only ``sql_repository`` talks to these classes.
"""

import json
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase, VersionedBase


# ---------------------------------------------------------------------------
# 1. InvoiceModel
# ---------------------------------------------------------------------------


class InvoiceModel(VersionedBase):
    """
    ORM model for client invoices.

    Guarantees:
        - invoice_number unique per organization.
        - balance_due non-negative (check constraint) unless cancelled.
        - status stored as string enum value.
    """

    __tablename__ = "rcv_invoices"

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "invoice_number", name="uq_rcv_invoices_org_number"
        ),
        CheckConstraint(
            "balance_due >= 0 OR status = 'cancelled'",
            name="ck_rcv_invoices_balance_non_negative",
        ),
        Index("idx_rcv_invoices_client_id", "client_id"),
        Index("idx_rcv_invoices_status", "status"),
        Index("idx_rcv_invoices_due_date", "due_date"),
    )

    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    client_id: Mapped[UUID] = mapped_column(nullable=False)
    invoice_number: Mapped[str] = mapped_column(String(100), nullable=False)
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="draft")
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(nullable=False)
    disputed_amount: Mapped[Decimal] = mapped_column(nullable=False)
    waived_amount: Mapped[Decimal] = mapped_column(nullable=False)
    balance_due: Mapped[Decimal] = mapped_column(nullable=False)

    def to_dto(self, line_item_ids: tuple[UUID, ...] = ()):
        """Convert ORM model to frozen dataclass."""
        from billing_modules.receivables.models import Invoice, InvoiceStatus

        return Invoice(
            id=self.id,
            organization_id=self.organization_id,
            client_id=self.client_id,
            invoice_number=self.invoice_number,
            issue_date=self.issue_date,
            due_date=self.due_date,
            status=InvoiceStatus(self.status),
            total_amount=self.total_amount,
            paid_amount=self.paid_amount,
            disputed_amount=self.disputed_amount,
            waived_amount=self.waived_amount,
            balance_due=self.balance_due,
            line_item_ids=line_item_ids,
            version=self.version,
        )

    @classmethod
    def from_dto(cls, dto, created_by_id: UUID) -> "InvoiceModel":
        """Create ORM model from frozen dataclass."""
        return cls(
            id=dto.id,
            organization_id=dto.organization_id,
            client_id=dto.client_id,
            invoice_number=dto.invoice_number,
            issue_date=dto.issue_date,
            due_date=dto.due_date,
            status=dto.status.value,
            total_amount=dto.total_amount,
            paid_amount=dto.paid_amount,
            disputed_amount=dto.disputed_amount,
            waived_amount=dto.waived_amount,
            balance_due=dto.balance_due,
            version=dto.version,
            created_by_id=created_by_id,
        )

    def __repr__(self) -> str:
        return (
            f"<InvoiceModel {self.invoice_number} "
            f"status={self.status} balance={self.balance_due}>"
        )


# ---------------------------------------------------------------------------
# 2. InvoiceLineItemModel
# ---------------------------------------------------------------------------


class InvoiceLineItemModel(VersionedBase):
    """
    ORM model for invoice line items.

    Soft-deleted rows stay in the table (``is_deleted``) for audit.
    """

    __tablename__ = "rcv_invoice_line_items"

    __table_args__ = (
        UniqueConstraint(
            "invoice_id", "line_number", name="uq_rcv_line_items_invoice_line"
        ),
        Index("idx_rcv_line_items_invoice_id", "invoice_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("rcv_invoices.id"), nullable=False
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    service_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    # not money: keeps full scale
    quantity: Mapped[Decimal] = mapped_column(Numeric(38, 9, asdecimal=True), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    line_total: Mapped[Decimal] = mapped_column(nullable=False)
    allocated_amount: Mapped[Decimal] = mapped_column(nullable=False)
    disputed_amount: Mapped[Decimal] = mapped_column(nullable=False)
    waived_amount: Mapped[Decimal] = mapped_column(nullable=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)

    def to_dto(self):
        from billing_modules.receivables.models import InvoiceLineItem

        return InvoiceLineItem(
            id=self.id,
            invoice_id=self.invoice_id,
            line_number=self.line_number,
            description=self.description,
            quantity=Decimal(self.quantity).normalize(),
            unit_price=self.unit_price,
            line_total=self.line_total,
            service_code=self.service_code,
            allocated_amount=self.allocated_amount,
            disputed_amount=self.disputed_amount,
            waived_amount=self.waived_amount,
            is_deleted=self.is_deleted,
            version=self.version,
        )

    @classmethod
    def from_dto(cls, dto, created_by_id: UUID) -> "InvoiceLineItemModel":
        return cls(
            id=dto.id,
            invoice_id=dto.invoice_id,
            line_number=dto.line_number,
            description=dto.description,
            service_code=dto.service_code,
            quantity=dto.quantity,
            unit_price=dto.unit_price,
            line_total=dto.line_total,
            allocated_amount=dto.allocated_amount,
            disputed_amount=dto.disputed_amount,
            waived_amount=dto.waived_amount,
            is_deleted=dto.is_deleted,
            version=dto.version,
            created_by_id=created_by_id,
        )

    def __repr__(self) -> str:
        return f"<InvoiceLineItemModel #{self.line_number} total={self.line_total}>"


# ---------------------------------------------------------------------------
# 3. PaymentModel
# ---------------------------------------------------------------------------


class PaymentModel(VersionedBase):
    """
    ORM model for received payments.

    Guarantees:
        - idempotency_key unique when present (duplicate processor events).
        - allocated + credited never exceeds amount (check constraint).
    """

    __tablename__ = "rcv_payments"

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_rcv_payments_idempotency_key"),
        CheckConstraint("amount > 0", name="ck_rcv_payments_amount_positive"),
        CheckConstraint(
            "allocated_amount + credited_amount <= amount",
            name="ck_rcv_payments_not_overallocated",
        ),
        Index("idx_rcv_payments_client_id", "client_id"),
        Index("idx_rcv_payments_status", "status"),
    )

    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    client_id: Mapped[UUID] = mapped_column(nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    method: Mapped[str] = mapped_column(String(50), nullable=False)
    reference_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="unposted")
    received_at: Mapped[datetime] = mapped_column(nullable=False)
    allocated_amount: Mapped[Decimal] = mapped_column(nullable=False)
    credited_amount: Mapped[Decimal] = mapped_column(nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def to_dto(self):
        from billing_modules.receivables.models import Payment, PaymentStatus

        return Payment(
            id=self.id,
            organization_id=self.organization_id,
            client_id=self.client_id,
            amount=self.amount,
            method=self.method,
            received_at=self.received_at,
            reference_number=self.reference_number,
            status=PaymentStatus(self.status),
            allocated_amount=self.allocated_amount,
            credited_amount=self.credited_amount,
            idempotency_key=self.idempotency_key,
            version=self.version,
        )

    @classmethod
    def from_dto(cls, dto, created_by_id: UUID) -> "PaymentModel":
        return cls(
            id=dto.id,
            organization_id=dto.organization_id,
            client_id=dto.client_id,
            amount=dto.amount,
            method=dto.method,
            reference_number=dto.reference_number,
            status=dto.status.value,
            received_at=dto.received_at,
            allocated_amount=dto.allocated_amount,
            credited_amount=dto.credited_amount,
            idempotency_key=dto.idempotency_key,
            version=dto.version,
            created_by_id=created_by_id,
        )

    def __repr__(self) -> str:
        return f"<PaymentModel {self.id} amount={self.amount} status={self.status}>"


# ---------------------------------------------------------------------------
# 4. AllocationModel
# ---------------------------------------------------------------------------


class AllocationModel(TrackedBase):
    """
    ORM model for allocations.  Append-only: never updated or deleted.

    Exactly one of payment_id / credit_id is set.
    """

    __tablename__ = "rcv_allocations"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_rcv_allocations_amount_positive"),
        CheckConstraint(
            "(payment_id IS NULL) <> (credit_id IS NULL)",
            name="ck_rcv_allocations_single_source",
        ),
        Index("idx_rcv_allocations_payment_id", "payment_id"),
        Index("idx_rcv_allocations_credit_id", "credit_id"),
        Index("idx_rcv_allocations_invoice_id", "invoice_id"),
        Index("idx_rcv_allocations_batch_key", "batch_key"),
    )

    payment_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("rcv_payments.id"), nullable=True
    )
    credit_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("rcv_credits.id"), nullable=True
    )
    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("rcv_invoices.id"), nullable=False
    )
    line_item_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("rcv_invoice_line_items.id"), nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    batch_key: Mapped[str] = mapped_column(String(255), nullable=False)
    allocated_at: Mapped[datetime] = mapped_column(nullable=False)

    def to_dto(self):
        from billing_modules.receivables.models import Allocation

        return Allocation(
            id=self.id,
            invoice_id=self.invoice_id,
            amount=self.amount,
            batch_key=self.batch_key,
            created_at=self.allocated_at,
            payment_id=self.payment_id,
            credit_id=self.credit_id,
            line_item_id=self.line_item_id,
        )

    @classmethod
    def from_dto(cls, dto, created_by_id: UUID) -> "AllocationModel":
        return cls(
            id=dto.id,
            payment_id=dto.payment_id,
            credit_id=dto.credit_id,
            invoice_id=dto.invoice_id,
            line_item_id=dto.line_item_id,
            amount=dto.amount,
            batch_key=dto.batch_key,
            allocated_at=dto.created_at,
            created_by_id=created_by_id,
        )


# ---------------------------------------------------------------------------
# 5. CreditModel
# ---------------------------------------------------------------------------


class CreditModel(VersionedBase):
    """ORM model for client credits. Never deleted; status carries the end state."""

    __tablename__ = "rcv_credits"

    __table_args__ = (
        CheckConstraint(
            "remaining_amount >= 0 AND remaining_amount <= amount",
            name="ck_rcv_credits_remaining_bounded",
        ),
        Index("idx_rcv_credits_client_id", "client_id"),
        Index("idx_rcv_credits_status", "status"),
    )

    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    client_id: Mapped[UUID] = mapped_column(nullable=False)
    source_payment_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("rcv_payments.id"), nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    remaining_amount: Mapped[Decimal] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="available")
    issued_at: Mapped[datetime] = mapped_column(nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    def to_dto(self):
        from billing_modules.receivables.models import Credit, CreditStatus

        return Credit(
            id=self.id,
            organization_id=self.organization_id,
            client_id=self.client_id,
            amount=self.amount,
            remaining_amount=self.remaining_amount,
            created_at=self.issued_at,
            status=CreditStatus(self.status),
            source_payment_id=self.source_payment_id,
            expires_at=self.expires_at,
            reason=self.reason,
            version=self.version,
        )

    @classmethod
    def from_dto(cls, dto, created_by_id: UUID) -> "CreditModel":
        return cls(
            id=dto.id,
            organization_id=dto.organization_id,
            client_id=dto.client_id,
            source_payment_id=dto.source_payment_id,
            amount=dto.amount,
            remaining_amount=dto.remaining_amount,
            status=dto.status.value,
            issued_at=dto.created_at,
            expires_at=dto.expires_at,
            reason=dto.reason,
            version=dto.version,
            created_by_id=created_by_id,
        )


# ---------------------------------------------------------------------------
# 6. DisputeModel
# ---------------------------------------------------------------------------


class DisputeModel(VersionedBase):
    """ORM model for line-item and invoice disputes."""

    __tablename__ = "rcv_disputes"

    __table_args__ = (
        CheckConstraint("disputed_amount > 0", name="ck_rcv_disputes_amount_positive"),
        Index("idx_rcv_disputes_invoice_id", "invoice_id"),
        Index("idx_rcv_disputes_line_item_id", "line_item_id"),
        Index("idx_rcv_disputes_status", "status"),
    )

    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("rcv_invoices.id"), nullable=False
    )
    line_item_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("rcv_invoice_line_items.id"), nullable=True
    )
    disputed_amount: Mapped[Decimal] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="open")
    outcome: Mapped[str | None] = mapped_column(String(20), nullable=True)
    resolution_amount: Mapped[Decimal] = mapped_column(nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    reason_category: Mapped[str] = mapped_column(String(50), default="other")
    priority: Mapped[str] = mapped_column(String(20), default="normal")
    filed_at: Mapped[datetime] = mapped_column(nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_dto(self):
        from billing_modules.receivables.models import (
            Dispute,
            DisputeOutcome,
            DisputePriority,
            DisputeReasonCategory,
            DisputeStatus,
        )

        return Dispute(
            id=self.id,
            organization_id=self.organization_id,
            invoice_id=self.invoice_id,
            disputed_amount=self.disputed_amount,
            reason=self.reason,
            filed_at=self.filed_at,
            line_item_id=self.line_item_id,
            status=DisputeStatus(self.status),
            outcome=DisputeOutcome(self.outcome) if self.outcome else None,
            resolution_amount=self.resolution_amount,
            reason_category=DisputeReasonCategory(self.reason_category),
            priority=DisputePriority(self.priority),
            resolved_at=self.resolved_at,
            resolution_notes=self.resolution_notes,
            version=self.version,
        )

    @classmethod
    def from_dto(cls, dto, created_by_id: UUID) -> "DisputeModel":
        return cls(
            id=dto.id,
            organization_id=dto.organization_id,
            invoice_id=dto.invoice_id,
            line_item_id=dto.line_item_id,
            disputed_amount=dto.disputed_amount,
            status=dto.status.value,
            outcome=dto.outcome.value if dto.outcome else None,
            resolution_amount=dto.resolution_amount,
            reason=dto.reason,
            reason_category=dto.reason_category.value,
            priority=dto.priority.value,
            filed_at=dto.filed_at,
            resolved_at=dto.resolved_at,
            resolution_notes=dto.resolution_notes,
            version=dto.version,
            created_by_id=created_by_id,
        )


# ---------------------------------------------------------------------------
# 7. AuditEntryModel
# ---------------------------------------------------------------------------


class AuditEntryModel(TrackedBase):
    """Append-only audit trail.  Payload kept as canonical JSON text."""

    __tablename__ = "rcv_audit_entries"

    __table_args__ = (
        Index("idx_rcv_audit_entries_entity", "entity_type", "entity_id"),
    )

    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[UUID] = mapped_column(nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(nullable=False)

    def to_dto(self):
        from billing_modules.receivables.models import AuditEntry

        return AuditEntry(
            id=self.id,
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            action=self.action,
            payload=json.loads(self.payload_json),
            payload_hash=self.payload_hash,
            created_at=self.recorded_at,
            actor_id=self.created_by_id,
        )

    @classmethod
    def from_dto(cls, dto) -> "AuditEntryModel":
        from billing_kernel.utils.hashing import canonicalize_json

        return cls(
            id=dto.id,
            entity_type=dto.entity_type,
            entity_id=dto.entity_id,
            action=dto.action,
            payload_json=canonicalize_json(dto.payload),
            payload_hash=dto.payload_hash,
            recorded_at=dto.created_at,
            created_by_id=dto.actor_id,
        )
