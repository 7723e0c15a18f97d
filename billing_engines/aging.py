"""
Module: billing_engines.aging
Responsibility:
    Age open invoice balances by days past due and group them into
    contiguous day-range buckets for the reconciliation report.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  ``as_of_date`` always
    arrives as a parameter.

Invariants enforced:
    - An invoice that is not yet due ages as 0 days.
    - Buckets are contiguous from day 0 and the last one is open-ended, so
      every age lands in exactly one bucket.
    - Report totals per bucket include empty buckets at 0.00.

Failure modes:
    - ValueError from ``build_buckets`` on empty, unsorted, duplicate or
      non-positive edges.
"""

from __future__ import annotations

from bisect import bisect_left
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from billing_engines.tracer import traced_engine
from billing_kernel.db.types import ZERO, sum_money
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.aging")


@dataclass(frozen=True)
class AgingBucket:
    """Inclusive day range; ``max_days`` is None for the open-ended last bucket."""

    name: str
    min_days: int
    max_days: int | None

    @property
    def is_unbounded(self) -> bool:
        return self.max_days is None

    def covers(self, age_days: int) -> bool:
        return age_days >= self.min_days and (self.max_days is None or age_days <= self.max_days)


DEFAULT_BUCKET_EDGES: tuple[int, ...] = (30, 60, 90)


def build_buckets(edges: Sequence[int] = DEFAULT_BUCKET_EDGES) -> tuple[AgingBucket, ...]:
    """
    Buckets from ascending upper edges.

    ``(30, 60, 90)`` gives 0-30, 31-60, 61-90 and 90+.
    """
    edges = tuple(edges)
    if not edges:
        raise ValueError("at least one aging bucket edge is required")
    if any(edge <= 0 for edge in edges):
        raise ValueError("aging bucket edges must be positive")
    if any(later <= earlier for earlier, later in zip(edges, edges[1:])):
        raise ValueError("aging bucket edges must be strictly ascending")

    lowers = (0,) + tuple(edge + 1 for edge in edges[:-1])
    bounded = tuple(
        AgingBucket(f"{low}-{high}", low, high) for low, high in zip(lowers, edges)
    )
    return bounded + (AgingBucket(f"{edges[-1]}+", edges[-1] + 1, None),)


DEFAULT_BUCKETS: tuple[AgingBucket, ...] = build_buckets()


@dataclass(frozen=True)
class AgingInput:
    """One open invoice as the reconciliation reporter sees it."""

    invoice_id: UUID
    invoice_number: str
    client_id: UUID
    due_date: date
    balance_due: Decimal


@dataclass(frozen=True)
class AgedInvoice:
    invoice_id: UUID
    invoice_number: str
    client_id: UUID
    due_date: date
    balance_due: Decimal
    days_past_due: int
    bucket: AgingBucket

    @property
    def is_overdue(self) -> bool:
        return self.days_past_due > 0


@dataclass(frozen=True)
class AgingReport:
    as_of_date: date
    buckets: tuple[AgingBucket, ...]
    invoices: tuple[AgedInvoice, ...]

    @property
    def invoice_count(self) -> int:
        return len(self.invoices)

    def total_balance(self) -> Decimal:
        return sum_money(aged.balance_due for aged in self.invoices)

    def overdue_balance(self) -> Decimal:
        return sum_money(aged.balance_due for aged in self.invoices if aged.is_overdue)

    def total_by_bucket(self) -> dict[str, Decimal]:
        return _bucket_totals(self.buckets, self.invoices)

    def total_by_client(self) -> dict[UUID, dict[str, Decimal]]:
        """Per-client bucket totals, for clients with at least one open invoice."""
        by_client: dict[UUID, list[AgedInvoice]] = {}
        for aged in self.invoices:
            by_client.setdefault(aged.client_id, []).append(aged)
        return {
            client_id: _bucket_totals(self.buckets, invoices)
            for client_id, invoices in by_client.items()
        }

    def invoices_in_bucket(self, bucket_name: str) -> tuple[AgedInvoice, ...]:
        return tuple(aged for aged in self.invoices if aged.bucket.name == bucket_name)


def _bucket_totals(
    buckets: Sequence[AgingBucket], invoices: Iterable[AgedInvoice]
) -> dict[str, Decimal]:
    totals = {bucket.name: ZERO for bucket in buckets}
    for aged in invoices:
        totals[aged.bucket.name] += aged.balance_due
    return totals


class AgingCalculator:
    """Ages invoices against one bucket layout."""

    def __init__(self, buckets: Sequence[AgingBucket] = DEFAULT_BUCKETS):
        self.buckets = tuple(buckets)
        # Upper edges of the bounded buckets, for bisecting an age.
        self._upper_edges = [b.max_days for b in self.buckets if b.max_days is not None]

    @staticmethod
    def days_past_due(due_date: date, as_of_date: date) -> int:
        return max(0, (as_of_date - due_date).days)

    def bucket_for(self, age_days: int) -> AgingBucket:
        if age_days < 0:
            raise ValueError(f"age cannot be negative: {age_days}")
        return self.buckets[bisect_left(self._upper_edges, age_days)]

    def age(self, invoice: AgingInput, as_of_date: date) -> AgedInvoice:
        days = self.days_past_due(invoice.due_date, as_of_date)
        return AgedInvoice(
            invoice_id=invoice.invoice_id,
            invoice_number=invoice.invoice_number,
            client_id=invoice.client_id,
            due_date=invoice.due_date,
            balance_due=invoice.balance_due,
            days_past_due=days,
            bucket=self.bucket_for(days),
        )

    @traced_engine("aging", "1.0", fingerprint_fields=("as_of_date",))
    def generate_report(
        self,
        *,
        invoices: Sequence[AgingInput],
        as_of_date: date,
    ) -> AgingReport:
        aged = tuple(
            sorted(
                (self.age(invoice, as_of_date) for invoice in invoices),
                key=lambda a: (-a.days_past_due, a.invoice_number),
            )
        )
        logger.info(
            "aging_report_generated",
            extra={
                "as_of_date": as_of_date.isoformat(),
                "invoice_count": len(aged),
                "overdue_count": sum(1 for a in aged if a.is_overdue),
            },
        )
        return AgingReport(as_of_date=as_of_date, buckets=self.buckets, invoices=aged)
