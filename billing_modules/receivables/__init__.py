"""
Receivables Module.

Handles lab invoices, received payments, payment allocation, client
credits, disputes and reconciliation reporting.

Balance math, allocation planning and aging come from shared engines.
"""

from billing_modules.receivables.config import ReceivablesConfig, load_config
from billing_modules.receivables.models import (
    Allocation,
    AllocationResult,
    AllocationTarget,
    Credit,
    CreditStatus,
    Dispute,
    DisputeOutcome,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    Payment,
    PaymentStatus,
)
from billing_modules.receivables.repository import (
    SYSTEM_ACTOR_ID,
    InMemoryLedgerStore,
    LedgerStore,
    LedgerUnitOfWork,
)
from billing_modules.receivables.service import (
    OperationResult,
    OperationStatus,
    ReceivablesService,
)
from billing_modules.receivables.sql_repository import SqlAlchemyLedgerStore
from billing_modules.receivables.workflows import (
    CREDIT_WORKFLOW,
    DISPUTE_WORKFLOW,
    INVOICE_WORKFLOW,
)

__all__ = [
    "Allocation",
    "AllocationResult",
    "AllocationTarget",
    "CREDIT_WORKFLOW",
    "Credit",
    "CreditStatus",
    "DISPUTE_WORKFLOW",
    "Dispute",
    "DisputeOutcome",
    "INVOICE_WORKFLOW",
    "InMemoryLedgerStore",
    "Invoice",
    "InvoiceLineItem",
    "InvoiceStatus",
    "LedgerStore",
    "LedgerUnitOfWork",
    "OperationResult",
    "OperationStatus",
    "Payment",
    "PaymentStatus",
    "ReceivablesConfig",
    "ReceivablesService",
    "SYSTEM_ACTOR_ID",
    "SqlAlchemyLedgerStore",
    "load_config",
]
