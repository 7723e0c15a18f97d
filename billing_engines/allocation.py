"""
Module: billing_engines.allocation
Responsibility:
    Pure allocation arithmetic: validate an allocation batch against the
    capacity of its targets (cumulatively, in caller order) and plan an
    oldest-first spread of a funding amount across open balances.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import billing_kernel primitives.

Invariants enforced:
    - A batch never claims more from an invoice (or a line item) than its
      remaining capacity, counting earlier legs of the same batch.
    - Sequential planning conserves money:
      total_allocated + unallocated == amount.
    - Purity: no clock access, no I/O.

Failure modes:
    - KeyError when a leg references an invoice or line item with no
      capacity entry.  Callers resolve targets before calling.

Usage:
    from billing_engines.allocation import AllocationLeg, find_shortfall

    shortfall = find_shortfall(
        legs=[AllocationLeg(invoice_id=inv, amount=Decimal("150.00"))],
        invoice_capacity={inv: Decimal("100.00")},
        line_capacity={},
    )
    shortfall.remaining  # Decimal("100.00")
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Hashable, Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from billing_engines.tracer import traced_engine
from billing_kernel.db.types import ZERO, round_money
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.allocation")


@dataclass(frozen=True)
class AllocationLeg:
    """
    One requested leg of a batch.

    Guarantees:
        - amount > 0.
    """

    invoice_id: UUID
    amount: Decimal
    line_item_id: UUID | None = None

    def __post_init__(self) -> None:
        if self.amount <= ZERO:
            raise ValueError("Allocation leg amount must be positive")


@dataclass(frozen=True)
class LegShortfall:
    """The first leg of a batch that does not fit its target."""

    index: int
    invoice_id: UUID
    line_item_id: UUID | None
    requested: Decimal
    remaining: Decimal

    @property
    def excess(self) -> Decimal:
        return self.requested - self.remaining


@dataclass(frozen=True)
class PlannedLeg:
    """Result of sequential planning for one open balance."""

    target_id: Hashable
    allocated: Decimal
    remaining: Decimal

    @property
    def is_fully_allocated(self) -> bool:
        return self.remaining == ZERO


@dataclass(frozen=True)
class SequentialPlan:
    """
    Complete oldest-first plan.

    Guarantees:
        - total_allocated + unallocated == source_amount.
        - ``legs`` only contains targets that receive money.
    """

    source_amount: Decimal
    legs: tuple[PlannedLeg, ...]
    total_allocated: Decimal
    unallocated: Decimal

    @property
    def is_fully_allocated(self) -> bool:
        return self.unallocated == ZERO


def batch_total(legs: Sequence[AllocationLeg]) -> Decimal:
    total = ZERO
    for leg in legs:
        total += leg.amount
    return round_money(total)


@traced_engine("allocation_capacity", "1.0")
def find_shortfall(
    *,
    legs: Sequence[AllocationLeg],
    invoice_capacity: Mapping[UUID, Decimal],
    line_capacity: Mapping[UUID, Decimal],
) -> LegShortfall | None:
    """
    Return the first leg that exceeds its remaining capacity, or None.

    An invoice leg is capped by the invoice's capacity; a line-item leg by
    the smaller of the line's and the invoice's capacity.  Earlier legs of
    the batch consume capacity before later ones are checked.
    """
    used_by_invoice: dict[UUID, Decimal] = defaultdict(lambda: ZERO)
    used_by_line: dict[UUID, Decimal] = defaultdict(lambda: ZERO)

    for index, leg in enumerate(legs):
        remaining = invoice_capacity[leg.invoice_id] - used_by_invoice[leg.invoice_id]
        if leg.line_item_id is not None:
            line_remaining = line_capacity[leg.line_item_id] - used_by_line[leg.line_item_id]
            remaining = min(remaining, line_remaining)
        remaining = max(ZERO, remaining)

        if leg.amount > remaining:
            logger.info(
                "allocation_leg_exceeds_capacity",
                extra={
                    "leg_index": index,
                    "invoice_id": str(leg.invoice_id),
                    "line_item_id": str(leg.line_item_id) if leg.line_item_id else None,
                    "requested": str(leg.amount),
                    "remaining": str(remaining),
                },
            )
            return LegShortfall(
                index=index,
                invoice_id=leg.invoice_id,
                line_item_id=leg.line_item_id,
                requested=leg.amount,
                remaining=remaining,
            )

        used_by_invoice[leg.invoice_id] += leg.amount
        if leg.line_item_id is not None:
            used_by_line[leg.line_item_id] += leg.amount

    return None


@traced_engine("allocation_sequential", "1.0", fingerprint_fields=("amount",))
def plan_oldest_first(
    *,
    amount: Decimal,
    open_balances: Sequence[tuple[Hashable, Decimal]],
) -> SequentialPlan:
    """
    Spread ``amount`` over ``open_balances`` in the order given.

    Callers sort oldest-first; each target receives up to its open
    balance until the amount is exhausted.
    """
    remaining_to_allocate = amount
    legs: list[PlannedLeg] = []

    for target_id, open_balance in open_balances:
        if remaining_to_allocate <= ZERO:
            break
        if open_balance <= ZERO:
            continue
        to_allocate = min(remaining_to_allocate, open_balance)
        remaining_to_allocate -= to_allocate
        legs.append(
            PlannedLeg(
                target_id=target_id,
                allocated=to_allocate,
                remaining=open_balance - to_allocate,
            )
        )

    total_allocated = amount - remaining_to_allocate

    logger.debug(
        "allocation_sequential_planned",
        extra={
            "source_amount": str(amount),
            "total_allocated": str(total_allocated),
            "unallocated": str(remaining_to_allocate),
            "targets_funded": len(legs),
        },
    )

    return SequentialPlan(
        source_amount=amount,
        legs=tuple(legs),
        total_allocated=total_allocated,
        unallocated=remaining_to_allocate,
    )
