"""
Ledger Invariants Contract.

These invariants are structural law for the receivables ledger.  No
configuration value may switch them off.

This module exists solely to declare them explicitly.  Enforcement is
distributed across the allocation engine, the balance recalculator, the
unit-of-work version checks and the integrity checker.
"""

from enum import Enum, unique


@unique
class LedgerInvariant(str, Enum):
    """Non-configurable invariants enforced by the receivables core."""

    BALANCE_DUE_DERIVED = "balance_due_derived"
    """balance_due == max(0, total - waived - paid - open disputes).
    Enforced by BalanceRecalculator; audited by IntegrityChecker."""

    BALANCE_NON_NEGATIVE = "balance_non_negative"
    """No persisted invoice carries a negative balance_due."""

    PAYMENT_NOT_OVERALLOCATED = "payment_not_overallocated"
    """sum(allocations) + sum(credits) for a payment never exceeds its
    amount.  Enforced by AllocationEngine before writes."""

    INVOICE_NOT_OVERALLOCATED = "invoice_not_overallocated"
    """sum(allocations) against an invoice never exceeds its total."""

    POSTED_PAYMENT_SETTLED = "posted_payment_settled"
    """A posted payment is fully allocated or its remainder is a credit."""

    CREDIT_REMAINING_BOUNDED = "credit_remaining_bounded"
    """0 <= credit.remaining_amount <= credit.amount, non-increasing."""

    AUDIT_PAYLOAD_INTACT = "audit_payload_intact"
    """An audit entry's payload still hashes to its stored payload_hash."""

    OPTIMISTIC_VERSIONING = "optimistic_versioning"
    """Updates to versioned rows succeed only against the version read.
    Enforced by the unit of work; losers get ConcurrentModificationError."""


ALL_LEDGER_INVARIANTS: frozenset[LedgerInvariant] = frozenset(LedgerInvariant)
