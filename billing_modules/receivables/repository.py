"""
Receivables Persistence Boundary (``billing_modules.receivables.repository``).

Responsibility
--------------
Declares the abstract unit of work every engine and service depends on, and
ships the in-memory implementation used by unit tests and local tooling.
The SQLAlchemy implementation lives in ``sql_repository``.

Architecture position
---------------------
**Modules layer** -- persistence port.  Engines receive a ``LedgerUnitOfWork``
as an explicit argument on every call; nothing reaches for a global client.

Invariants enforced
-------------------
* OPTIMISTIC_VERSIONING -- ``update_*`` succeeds only against the version
  that was read.  A stale write raises ``ConcurrentModificationError``
  immediately (same transaction) or at ``commit()`` (another transaction
  won the race).
* Atomicity -- nothing a unit of work writes is visible to other units of
  work until ``commit()``; ``rollback()`` discards every pending write.
* Read-your-writes within one unit of work.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Iterable, Iterator
from uuid import UUID

from billing_kernel.exceptions import ConcurrentModificationError
from billing_kernel.logging_config import get_logger
from billing_modules.receivables.models import (
    Allocation,
    AuditEntry,
    Credit,
    CreditStatus,
    Dispute,
    DisputeStatus,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    Payment,
    PaymentStatus,
)

logger = get_logger("modules.receivables.repository")

# Well-known actor for cron jobs and processor webhooks.
SYSTEM_ACTOR_ID = UUID("00000000-0000-4000-8000-000000000000")


class LedgerUnitOfWork(ABC):
    """
    One transaction against the receivables ledger.

    Contract:
        Reads return frozen dataclasses.  ``update_*`` takes the entity as
        read (carrying its version) and returns it with the bumped version.
        ``commit()`` publishes all writes atomically or raises.
    """

    actor_id: UUID

    # -- invoices ----------------------------------------------------------

    @abstractmethod
    def get_invoice(self, invoice_id: UUID) -> Invoice | None: ...

    @abstractmethod
    def list_invoices(
        self,
        organization_id: UUID | None = None,
        client_id: UUID | None = None,
        statuses: Iterable[InvoiceStatus] | None = None,
    ) -> list[Invoice]:
        """Invoices ordered by (issue_date, id)."""

    @abstractmethod
    def add_invoice(self, invoice: Invoice) -> Invoice: ...

    @abstractmethod
    def update_invoice(self, invoice: Invoice) -> Invoice: ...

    # -- line items --------------------------------------------------------

    @abstractmethod
    def get_line_item(self, line_item_id: UUID) -> InvoiceLineItem | None: ...

    @abstractmethod
    def list_line_items(
        self, invoice_id: UUID, include_deleted: bool = False
    ) -> list[InvoiceLineItem]:
        """Line items ordered by line_number."""

    @abstractmethod
    def add_line_item(self, line_item: InvoiceLineItem) -> InvoiceLineItem: ...

    @abstractmethod
    def update_line_item(self, line_item: InvoiceLineItem) -> InvoiceLineItem: ...

    # -- payments ----------------------------------------------------------

    @abstractmethod
    def get_payment(self, payment_id: UUID) -> Payment | None: ...

    @abstractmethod
    def find_payment_by_idempotency_key(self, key: str) -> Payment | None: ...

    @abstractmethod
    def list_payments(
        self,
        organization_id: UUID | None = None,
        statuses: Iterable[PaymentStatus] | None = None,
    ) -> list[Payment]:
        """Payments ordered by (received_at, id)."""

    @abstractmethod
    def add_payment(self, payment: Payment) -> Payment: ...

    @abstractmethod
    def update_payment(self, payment: Payment) -> Payment: ...

    # -- allocations -------------------------------------------------------

    @abstractmethod
    def list_allocations(
        self,
        payment_id: UUID | None = None,
        credit_id: UUID | None = None,
        invoice_id: UUID | None = None,
        line_item_id: UUID | None = None,
    ) -> list[Allocation]:
        """Allocations ordered by (created_at, id)."""

    @abstractmethod
    def add_allocation(self, allocation: Allocation) -> Allocation: ...

    # -- credits -----------------------------------------------------------

    @abstractmethod
    def get_credit(self, credit_id: UUID) -> Credit | None: ...

    @abstractmethod
    def list_credits(
        self,
        organization_id: UUID | None = None,
        client_id: UUID | None = None,
        statuses: Iterable[CreditStatus] | None = None,
        source_payment_id: UUID | None = None,
    ) -> list[Credit]:
        """Credits ordered by (created_at, id)."""

    @abstractmethod
    def add_credit(self, credit: Credit) -> Credit: ...

    @abstractmethod
    def update_credit(self, credit: Credit) -> Credit: ...

    # -- disputes ----------------------------------------------------------

    @abstractmethod
    def get_dispute(self, dispute_id: UUID) -> Dispute | None: ...

    @abstractmethod
    def list_disputes(
        self,
        invoice_id: UUID | None = None,
        line_item_id: UUID | None = None,
        statuses: Iterable[DisputeStatus] | None = None,
    ) -> list[Dispute]:
        """Disputes ordered by (filed_at, id)."""

    @abstractmethod
    def add_dispute(self, dispute: Dispute) -> Dispute: ...

    @abstractmethod
    def update_dispute(self, dispute: Dispute) -> Dispute: ...

    # -- audit -------------------------------------------------------------

    @abstractmethod
    def add_audit_entry(self, entry: AuditEntry) -> AuditEntry: ...

    @abstractmethod
    def list_audit_entries(self, entity_id: UUID | None = None) -> list[AuditEntry]: ...

    # -- transaction -------------------------------------------------------

    @abstractmethod
    def commit(self) -> None: ...

    @abstractmethod
    def rollback(self) -> None: ...

    def close(self) -> None:
        """Release resources. Default: nothing to release."""


class LedgerStore(ABC):
    """Factory for units of work against one backing store."""

    @abstractmethod
    def unit_of_work(self, actor_id: UUID = SYSTEM_ACTOR_ID) -> LedgerUnitOfWork: ...

    @contextmanager
    def transaction(self, actor_id: UUID = SYSTEM_ACTOR_ID) -> Iterator[LedgerUnitOfWork]:
        """
        Transactional scope around one engine call.

        Commits on normal exit; rolls back and re-raises on any exception.
        """
        uow = self.unit_of_work(actor_id)
        logger.debug("transaction_started")
        try:
            yield uow
            uow.commit()
            logger.debug("transaction_committed")
        except Exception:
            uow.rollback()
            logger.warning("transaction_rolled_back", exc_info=True)
            raise
        finally:
            uow.close()


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

_VERSIONED_TABLES = {
    "invoices": "invoice",
    "line_items": "line_item",
    "payments": "payment",
    "credits": "credit",
    "disputes": "dispute",
}

_TABLES = (*_VERSIONED_TABLES, "allocations", "audit")


def _matches(value: Any, wanted: Any) -> bool:
    return wanted is None or value == wanted


class InMemoryLedgerStore(LedgerStore):
    """
    Dict-backed store with read-committed visibility.

    Committed state is a table -> {id: entity} mapping guarded by one lock.
    Each unit of work buffers writes in an overlay and publishes them in a
    single locked step after re-checking every base version.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._tables: dict[str, dict[UUID, Any]] = {name: {} for name in _TABLES}

    def unit_of_work(self, actor_id: UUID = SYSTEM_ACTOR_ID) -> "InMemoryUnitOfWork":
        return InMemoryUnitOfWork(self, actor_id)

    # Committed-state access (used by InMemoryUnitOfWork only)

    def _read(self, table: str, entity_id: UUID) -> Any:
        with self._lock:
            return self._tables[table].get(entity_id)

    def _scan(self, table: str) -> dict[UUID, Any]:
        with self._lock:
            return dict(self._tables[table])

    def _publish(
        self,
        overlay: dict[str, dict[UUID, Any]],
        base_versions: dict[tuple[str, UUID], int | None],
    ) -> None:
        with self._lock:
            for (table, entity_id), base in base_versions.items():
                current = self._tables[table].get(entity_id)
                current_version = current.version if current is not None else None
                if current_version != base:
                    logger.warning(
                        "optimistic_lock_conflict",
                        extra={
                            "entity_type": _VERSIONED_TABLES.get(table, table),
                            "entity_id": str(entity_id),
                            "expected_version": base,
                            "actual_version": current_version,
                        },
                    )
                    raise ConcurrentModificationError(
                        _VERSIONED_TABLES.get(table, table), str(entity_id)
                    )
            for table, rows in overlay.items():
                for entity_id in rows:
                    if table not in _VERSIONED_TABLES and entity_id in self._tables[table]:
                        raise ConcurrentModificationError(table, str(entity_id), "duplicate id")
            # Mirrors uq_rcv_payments_idempotency_key
            for payment in overlay["payments"].values():
                if payment.idempotency_key is None:
                    continue
                for existing in self._tables["payments"].values():
                    if existing.idempotency_key == payment.idempotency_key and existing.id != payment.id:
                        raise ConcurrentModificationError(
                            "payment", str(payment.id), "duplicate idempotency key"
                        )
            for table, rows in overlay.items():
                self._tables[table].update(rows)


class InMemoryUnitOfWork(LedgerUnitOfWork):
    """Unit of work over an ``InMemoryLedgerStore``."""

    def __init__(self, store: InMemoryLedgerStore, actor_id: UUID):
        self._store = store
        self.actor_id = actor_id
        self._overlay: dict[str, dict[UUID, Any]] = {name: {} for name in _TABLES}
        # (table, id) -> committed version this UoW built on (None = insert)
        self._base_versions: dict[tuple[str, UUID], int | None] = {}
        self._closed = False

    # -- generic helpers ---------------------------------------------------

    def _get(self, table: str, entity_id: UUID) -> Any:
        if entity_id in self._overlay[table]:
            return self._overlay[table][entity_id]
        return self._store._read(table, entity_id)

    def _all(self, table: str) -> list[Any]:
        rows = self._store._scan(table)
        rows.update(self._overlay[table])
        return list(rows.values())

    def _insert(self, table: str, entity: Any) -> Any:
        if self._get(table, entity.id) is not None:
            raise ConcurrentModificationError(table, str(entity.id), "duplicate id")
        self._overlay[table][entity.id] = entity
        if table in _VERSIONED_TABLES:
            self._base_versions.setdefault((table, entity.id), None)
        return entity

    def _update(self, table: str, entity: Any) -> Any:
        entity_type = _VERSIONED_TABLES[table]
        current = self._get(table, entity.id)
        if current is None:
            raise ConcurrentModificationError(entity_type, str(entity.id), "row vanished")
        if current.version != entity.version:
            raise ConcurrentModificationError(
                entity_type,
                str(entity.id),
                f"read version {entity.version}, current {current.version}",
            )
        key = (table, entity.id)
        if key not in self._base_versions:
            committed = self._store._read(table, entity.id)
            self._base_versions[key] = committed.version if committed else None
        updated = replace(entity, version=entity.version + 1)
        self._overlay[table][entity.id] = updated
        return updated

    # -- invoices ----------------------------------------------------------

    def get_invoice(self, invoice_id):
        return self._get("invoices", invoice_id)

    def list_invoices(self, organization_id=None, client_id=None, statuses=None):
        wanted = set(statuses) if statuses is not None else None
        rows = [
            inv for inv in self._all("invoices")
            if _matches(inv.organization_id, organization_id)
            and _matches(inv.client_id, client_id)
            and (wanted is None or inv.status in wanted)
        ]
        return sorted(rows, key=lambda inv: (inv.issue_date, str(inv.id)))

    def add_invoice(self, invoice):
        return self._insert("invoices", invoice)

    def update_invoice(self, invoice):
        return self._update("invoices", invoice)

    # -- line items --------------------------------------------------------

    def get_line_item(self, line_item_id):
        return self._get("line_items", line_item_id)

    def list_line_items(self, invoice_id, include_deleted=False):
        rows = [
            li for li in self._all("line_items")
            if li.invoice_id == invoice_id and (include_deleted or not li.is_deleted)
        ]
        return sorted(rows, key=lambda li: li.line_number)

    def add_line_item(self, line_item):
        return self._insert("line_items", line_item)

    def update_line_item(self, line_item):
        return self._update("line_items", line_item)

    # -- payments ----------------------------------------------------------

    def get_payment(self, payment_id):
        return self._get("payments", payment_id)

    def find_payment_by_idempotency_key(self, key):
        for payment in self._all("payments"):
            if payment.idempotency_key == key:
                return payment
        return None

    def list_payments(self, organization_id=None, statuses=None):
        wanted = set(statuses) if statuses is not None else None
        rows = [
            p for p in self._all("payments")
            if _matches(p.organization_id, organization_id)
            and (wanted is None or p.status in wanted)
        ]
        return sorted(rows, key=lambda p: (p.received_at, str(p.id)))

    def add_payment(self, payment):
        return self._insert("payments", payment)

    def update_payment(self, payment):
        return self._update("payments", payment)

    # -- allocations -------------------------------------------------------

    def list_allocations(self, payment_id=None, credit_id=None, invoice_id=None, line_item_id=None):
        rows = [
            a for a in self._all("allocations")
            if _matches(a.payment_id, payment_id)
            and _matches(a.credit_id, credit_id)
            and _matches(a.invoice_id, invoice_id)
            and _matches(a.line_item_id, line_item_id)
        ]
        return sorted(rows, key=lambda a: (a.created_at, str(a.id)))

    def add_allocation(self, allocation):
        return self._insert("allocations", allocation)

    # -- credits -----------------------------------------------------------

    def get_credit(self, credit_id):
        return self._get("credits", credit_id)

    def list_credits(self, organization_id=None, client_id=None, statuses=None, source_payment_id=None):
        wanted = set(statuses) if statuses is not None else None
        rows = [
            c for c in self._all("credits")
            if _matches(c.organization_id, organization_id)
            and _matches(c.client_id, client_id)
            and _matches(c.source_payment_id, source_payment_id)
            and (wanted is None or c.status in wanted)
        ]
        return sorted(rows, key=lambda c: (c.created_at, str(c.id)))

    def add_credit(self, credit):
        return self._insert("credits", credit)

    def update_credit(self, credit):
        return self._update("credits", credit)

    # -- disputes ----------------------------------------------------------

    def get_dispute(self, dispute_id):
        return self._get("disputes", dispute_id)

    def list_disputes(self, invoice_id=None, line_item_id=None, statuses=None):
        wanted = set(statuses) if statuses is not None else None
        rows = [
            d for d in self._all("disputes")
            if _matches(d.invoice_id, invoice_id)
            and _matches(d.line_item_id, line_item_id)
            and (wanted is None or d.status in wanted)
        ]
        return sorted(rows, key=lambda d: (d.filed_at, str(d.id)))

    def add_dispute(self, dispute):
        return self._insert("disputes", dispute)

    def update_dispute(self, dispute):
        return self._update("disputes", dispute)

    # -- audit -------------------------------------------------------------

    def add_audit_entry(self, entry):
        return self._insert("audit", entry)

    def list_audit_entries(self, entity_id=None):
        rows = [e for e in self._all("audit") if _matches(e.entity_id, entity_id)]
        return sorted(rows, key=lambda e: (e.created_at, str(e.id)))

    # -- transaction -------------------------------------------------------

    def commit(self):
        if self._closed:
            raise RuntimeError("unit of work already closed")
        self._store._publish(self._overlay, self._base_versions)
        self._reset()

    def rollback(self):
        self._reset()

    def close(self):
        self._reset()
        self._closed = True

    def _reset(self):
        self._overlay = {name: {} for name in _TABLES}
        self._base_versions = {}


