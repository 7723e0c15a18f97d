"""
SQLAlchemy Unit of Work (``billing_modules.receivables.sql_repository``).

Responsibility
--------------
``LedgerStore`` / ``LedgerUnitOfWork`` backed by a SQLAlchemy session.  Used
against PostgreSQL in production and SQLite in tests and local tooling.

Architecture position
---------------------
**Modules layer** -- persistence adapter.  The only module that imports the
ORM classes in ``orm.py``.

Invariants enforced
-------------------
* OPTIMISTIC_VERSIONING -- every ``update_*`` is a single conditional
  ``UPDATE ... WHERE id = :id AND version = :read_version``.  Zero rows
  matched means another transaction won: ``ConcurrentModificationError``.
* Reads always refresh from the database (``populate_existing``) so a
  version read is never served from a stale identity map.
* Database constraint failures surface as kernel exceptions, never as raw
  ``sqlalchemy.exc.IntegrityError``.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any
from uuid import UUID

from sqlalchemy import exc as sa_exc
from sqlalchemy import inspect, select, update
from sqlalchemy.orm import Session, sessionmaker

from billing_kernel.exceptions import (
    ConcurrentModificationError,
    InvariantViolationError,
)
from billing_kernel.invariants import LedgerInvariant
from billing_kernel.logging_config import get_logger
from billing_modules.receivables.orm import (
    AllocationModel,
    AuditEntryModel,
    CreditModel,
    DisputeModel,
    InvoiceLineItemModel,
    InvoiceModel,
    PaymentModel,
)
from billing_modules.receivables.repository import (
    SYSTEM_ACTOR_ID,
    LedgerStore,
    LedgerUnitOfWork,
)

logger = get_logger("modules.receivables.sql_repository")

# Columns a versioned UPDATE never touches (or sets on its own).
_IMMUTABLE_COLUMNS = frozenset(
    {"id", "created_at", "updated_at", "created_by_id", "updated_by_id", "version"}
)


class SqlAlchemyLedgerStore(LedgerStore):
    """Store that opens one SQLAlchemy session per unit of work."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def unit_of_work(self, actor_id: UUID = SYSTEM_ACTOR_ID) -> "SqlAlchemyUnitOfWork":
        return SqlAlchemyUnitOfWork(self._session_factory(), actor_id)


class SqlAlchemyUnitOfWork(LedgerUnitOfWork):
    """Unit of work wrapping one ``Session`` (one database transaction)."""

    def __init__(self, session: Session, actor_id: UUID):
        self._session = session
        self.actor_id = actor_id

    # -- generic helpers ---------------------------------------------------

    def _get(self, model_cls, entity_id: UUID):
        return self._session.get(model_cls, entity_id, populate_existing=True)

    def _scalars(self, stmt) -> list[Any]:
        return list(
            self._session.scalars(stmt.execution_options(populate_existing=True))
        )

    def _insert(self, row) -> None:
        self._session.add(row)
        self._flush()

    def _flush(self) -> None:
        try:
            self._session.flush()
        except sa_exc.IntegrityError as exc:
            raise self._translate(exc) from exc

    def _translate(self, exc: sa_exc.IntegrityError) -> Exception:
        message = str(exc.orig)
        logger.warning("database_constraint_rejected", extra={"detail": message})
        if "check constraint" in message.lower():
            return InvariantViolationError(
                LedgerInvariant.BALANCE_NON_NEGATIVE.value,
                "database",
                "-",
                message,
            )
        return ConcurrentModificationError("database", "-", message)

    def _versioned_update(self, model_cls, entity_type: str, dto):
        row = model_cls.from_dto(dto, self.actor_id)
        values = {
            attr.key: getattr(row, attr.key)
            for attr in inspect(model_cls).column_attrs
            if attr.key not in _IMMUTABLE_COLUMNS
        }
        values["version"] = dto.version + 1
        values["updated_by_id"] = self.actor_id

        stmt = (
            update(model_cls)
            .where(model_cls.id == dto.id, model_cls.version == dto.version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self._session.execute(stmt)
        except sa_exc.IntegrityError as exc:
            raise self._translate(exc) from exc

        if result.rowcount != 1:
            logger.warning(
                "optimistic_lock_conflict",
                extra={
                    "entity_type": entity_type,
                    "entity_id": str(dto.id),
                    "expected_version": dto.version,
                },
            )
            raise ConcurrentModificationError(
                entity_type, str(dto.id), f"version {dto.version} is stale"
            )
        return replace(dto, version=dto.version + 1)

    # -- invoices ----------------------------------------------------------

    def _line_item_ids(self, invoice_id: UUID) -> tuple[UUID, ...]:
        stmt = (
            select(InvoiceLineItemModel.id)
            .where(
                InvoiceLineItemModel.invoice_id == invoice_id,
                InvoiceLineItemModel.is_deleted.is_(False),
            )
            .order_by(InvoiceLineItemModel.line_number)
        )
        return tuple(self._session.scalars(stmt))

    def _invoice_dto(self, row: InvoiceModel):
        return row.to_dto(self._line_item_ids(row.id))

    def get_invoice(self, invoice_id):
        row = self._get(InvoiceModel, invoice_id)
        return self._invoice_dto(row) if row is not None else None

    def list_invoices(self, organization_id=None, client_id=None, statuses=None):
        stmt = select(InvoiceModel)
        if organization_id is not None:
            stmt = stmt.where(InvoiceModel.organization_id == organization_id)
        if client_id is not None:
            stmt = stmt.where(InvoiceModel.client_id == client_id)
        if statuses is not None:
            stmt = stmt.where(InvoiceModel.status.in_([s.value for s in statuses]))
        stmt = stmt.order_by(InvoiceModel.issue_date, InvoiceModel.id)
        return [self._invoice_dto(row) for row in self._scalars(stmt)]

    def add_invoice(self, invoice):
        self._insert(InvoiceModel.from_dto(invoice, self.actor_id))
        return invoice

    def update_invoice(self, invoice):
        return self._versioned_update(InvoiceModel, "invoice", invoice)

    # -- line items --------------------------------------------------------

    def get_line_item(self, line_item_id):
        row = self._get(InvoiceLineItemModel, line_item_id)
        return row.to_dto() if row is not None else None

    def list_line_items(self, invoice_id, include_deleted=False):
        stmt = select(InvoiceLineItemModel).where(
            InvoiceLineItemModel.invoice_id == invoice_id
        )
        if not include_deleted:
            stmt = stmt.where(InvoiceLineItemModel.is_deleted.is_(False))
        stmt = stmt.order_by(InvoiceLineItemModel.line_number)
        return [row.to_dto() for row in self._scalars(stmt)]

    def add_line_item(self, line_item):
        self._insert(InvoiceLineItemModel.from_dto(line_item, self.actor_id))
        return line_item

    def update_line_item(self, line_item):
        return self._versioned_update(InvoiceLineItemModel, "line_item", line_item)

    # -- payments ----------------------------------------------------------

    def get_payment(self, payment_id):
        row = self._get(PaymentModel, payment_id)
        return row.to_dto() if row is not None else None

    def find_payment_by_idempotency_key(self, key):
        stmt = select(PaymentModel).where(PaymentModel.idempotency_key == key)
        rows = self._scalars(stmt)
        return rows[0].to_dto() if rows else None

    def list_payments(self, organization_id=None, statuses=None):
        stmt = select(PaymentModel)
        if organization_id is not None:
            stmt = stmt.where(PaymentModel.organization_id == organization_id)
        if statuses is not None:
            stmt = stmt.where(PaymentModel.status.in_([s.value for s in statuses]))
        stmt = stmt.order_by(PaymentModel.received_at, PaymentModel.id)
        return [row.to_dto() for row in self._scalars(stmt)]

    def add_payment(self, payment):
        self._insert(PaymentModel.from_dto(payment, self.actor_id))
        return payment

    def update_payment(self, payment):
        return self._versioned_update(PaymentModel, "payment", payment)

    # -- allocations -------------------------------------------------------

    def list_allocations(self, payment_id=None, credit_id=None, invoice_id=None, line_item_id=None):
        stmt = select(AllocationModel)
        if payment_id is not None:
            stmt = stmt.where(AllocationModel.payment_id == payment_id)
        if credit_id is not None:
            stmt = stmt.where(AllocationModel.credit_id == credit_id)
        if invoice_id is not None:
            stmt = stmt.where(AllocationModel.invoice_id == invoice_id)
        if line_item_id is not None:
            stmt = stmt.where(AllocationModel.line_item_id == line_item_id)
        stmt = stmt.order_by(AllocationModel.allocated_at, AllocationModel.id)
        return [row.to_dto() for row in self._scalars(stmt)]

    def add_allocation(self, allocation):
        self._insert(AllocationModel.from_dto(allocation, self.actor_id))
        return allocation

    # -- credits -----------------------------------------------------------

    def get_credit(self, credit_id):
        row = self._get(CreditModel, credit_id)
        return row.to_dto() if row is not None else None

    def list_credits(self, organization_id=None, client_id=None, statuses=None, source_payment_id=None):
        stmt = select(CreditModel)
        if organization_id is not None:
            stmt = stmt.where(CreditModel.organization_id == organization_id)
        if client_id is not None:
            stmt = stmt.where(CreditModel.client_id == client_id)
        if source_payment_id is not None:
            stmt = stmt.where(CreditModel.source_payment_id == source_payment_id)
        if statuses is not None:
            stmt = stmt.where(CreditModel.status.in_([s.value for s in statuses]))
        stmt = stmt.order_by(CreditModel.issued_at, CreditModel.id)
        return [row.to_dto() for row in self._scalars(stmt)]

    def add_credit(self, credit):
        self._insert(CreditModel.from_dto(credit, self.actor_id))
        return credit

    def update_credit(self, credit):
        return self._versioned_update(CreditModel, "credit", credit)

    # -- disputes ----------------------------------------------------------

    def get_dispute(self, dispute_id):
        row = self._get(DisputeModel, dispute_id)
        return row.to_dto() if row is not None else None

    def list_disputes(self, invoice_id=None, line_item_id=None, statuses=None):
        stmt = select(DisputeModel)
        if invoice_id is not None:
            stmt = stmt.where(DisputeModel.invoice_id == invoice_id)
        if line_item_id is not None:
            stmt = stmt.where(DisputeModel.line_item_id == line_item_id)
        if statuses is not None:
            stmt = stmt.where(DisputeModel.status.in_([s.value for s in statuses]))
        stmt = stmt.order_by(DisputeModel.filed_at, DisputeModel.id)
        return [row.to_dto() for row in self._scalars(stmt)]

    def add_dispute(self, dispute):
        self._insert(DisputeModel.from_dto(dispute, self.actor_id))
        return dispute

    def update_dispute(self, dispute):
        return self._versioned_update(DisputeModel, "dispute", dispute)

    # -- audit -------------------------------------------------------------

    def add_audit_entry(self, entry):
        self._insert(AuditEntryModel.from_dto(entry))
        return entry

    def list_audit_entries(self, entity_id=None):
        stmt = select(AuditEntryModel)
        if entity_id is not None:
            stmt = stmt.where(AuditEntryModel.entity_id == entity_id)
        stmt = stmt.order_by(AuditEntryModel.recorded_at, AuditEntryModel.id)
        return [row.to_dto() for row in self._scalars(stmt)]

    # -- transaction -------------------------------------------------------

    def commit(self):
        try:
            self._session.commit()
        except sa_exc.IntegrityError as exc:
            self._session.rollback()
            raise self._translate(exc) from exc

    def rollback(self):
        self._session.rollback()

    def close(self):
        self._session.close()
