"""
Module: billing_engines.balance
Responsibility:
    Derive an invoice's balance-due and status, and a line item's derived
    amounts, from already-summed allocation and dispute totals.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import billing_kernel primitives.  Status values are plain
    strings so the engine does not depend on the receivables models.

Invariants enforced:
    - BALANCE_DUE_DERIVED: balance_due = max(0, total - waived - paid -
      open_disputes), quantized to cents.
    - BALANCE_NON_NEGATIVE: the clamp means a derived balance is never
      negative; a negative raw balance is reported, not hidden.
    - Purity: ``today`` is a parameter, never read from a clock.

Failure modes:
    - None.  Inputs are assumed to be quantized Decimals.

Usage:
    from billing_engines.balance import compute_balance_due, derive_status

    balance = compute_balance_due(
        total_amount=Decimal("500.00"),
        paid_amount=Decimal("300.00"),
        disputed_amount=Decimal("0.00"),
        waived_amount=Decimal("0.00"),
    )  # Decimal("200.00")
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from billing_engines.tracer import traced_engine
from billing_kernel.db.types import ZERO, round_money
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.balance")

STATUS_DRAFT = "draft"
STATUS_FINALIZED = "finalized"
STATUS_SENT = "sent"
STATUS_PARTIAL = "partial"
STATUS_PAID = "paid"
STATUS_OVERDUE = "overdue"
STATUS_DISPUTED = "disputed"
STATUS_CANCELLED = "cancelled"

# Lifecycle states the derivation never overrides.
RETAINED_STATUSES = frozenset({STATUS_DRAFT, STATUS_FINALIZED, STATUS_CANCELLED})


@dataclass(frozen=True)
class InvoiceBalance:
    """
    Derived money fields and status of one invoice.

    Guarantees:
        - balance_due >= 0.
        - ``raw_balance`` keeps the unclamped value so callers can flag
          over-allocation instead of silently absorbing it.
    """

    total_amount: Decimal
    paid_amount: Decimal
    disputed_amount: Decimal
    waived_amount: Decimal
    balance_due: Decimal
    raw_balance: Decimal
    status: str

    @property
    def is_overdrawn(self) -> bool:
        return self.raw_balance < ZERO


@dataclass(frozen=True)
class LineItemAmounts:
    """Derived amounts of one line item."""

    allocated_amount: Decimal
    disputed_amount: Decimal
    waived_amount: Decimal
    open_balance: Decimal


def compute_balance_due(
    *,
    total_amount: Decimal,
    paid_amount: Decimal,
    disputed_amount: Decimal,
    waived_amount: Decimal,
) -> Decimal:
    """max(0, total - waived - paid - open disputes), quantized to cents."""
    raw = round_money(total_amount - waived_amount - paid_amount - disputed_amount)
    return max(ZERO, raw)


def derive_status(
    *,
    current_status: str,
    balance_due: Decimal,
    total_amount: Decimal,
    paid_amount: Decimal,
    waived_amount: Decimal,
    has_open_dispute: bool,
    due_date: date,
    today: date,
) -> str:
    """
    Derive invoice status.  First match wins:

        cancelled (explicit) -> draft/finalized retained -> disputed ->
        paid -> partial -> overdue -> sent
    """
    if current_status in RETAINED_STATUSES:
        return current_status
    if has_open_dispute:
        return STATUS_DISPUTED
    if balance_due == ZERO and paid_amount + waived_amount > ZERO:
        return STATUS_PAID
    if ZERO < paid_amount < total_amount:
        return STATUS_PARTIAL
    if due_date < today and balance_due > ZERO:
        return STATUS_OVERDUE
    return STATUS_SENT


@traced_engine(
    "invoice_balance",
    "1.0",
    fingerprint_fields=(
        "total_amount",
        "paid_amount",
        "disputed_amount",
        "waived_amount",
        "current_status",
    ),
)
def compute_invoice_balance(
    *,
    current_status: str,
    total_amount: Decimal,
    paid_amount: Decimal,
    disputed_amount: Decimal,
    waived_amount: Decimal,
    has_open_dispute: bool,
    due_date: date,
    today: date,
) -> InvoiceBalance:
    """Derive balance and status in one step."""
    raw = round_money(total_amount - waived_amount - paid_amount - disputed_amount)
    balance_due = max(ZERO, raw)
    if raw < ZERO:
        logger.error(
            "invoice_balance_overdrawn",
            extra={
                "total_amount": str(total_amount),
                "paid_amount": str(paid_amount),
                "disputed_amount": str(disputed_amount),
                "waived_amount": str(waived_amount),
                "raw_balance": str(raw),
            },
        )
    status = derive_status(
        current_status=current_status,
        balance_due=balance_due,
        total_amount=total_amount,
        paid_amount=paid_amount,
        waived_amount=waived_amount,
        has_open_dispute=has_open_dispute,
        due_date=due_date,
        today=today,
    )
    return InvoiceBalance(
        total_amount=total_amount,
        paid_amount=paid_amount,
        disputed_amount=disputed_amount,
        waived_amount=waived_amount,
        balance_due=balance_due,
        raw_balance=raw,
        status=status,
    )


def compute_line_amounts(
    *,
    line_total: Decimal,
    allocated_amount: Decimal,
    disputed_amount: Decimal,
    waived_amount: Decimal,
) -> LineItemAmounts:
    open_balance = round_money(line_total - allocated_amount - disputed_amount - waived_amount)
    return LineItemAmounts(
        allocated_amount=round_money(allocated_amount),
        disputed_amount=round_money(disputed_amount),
        waived_amount=round_money(waived_amount),
        open_balance=open_balance,
    )
