"""
Tests for the pure allocation engine.

Covers:
- Cumulative capacity checks across a batch
- Line-item legs capped by both line and invoice capacity
- Oldest-first planning
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from billing_engines.allocation import (
    AllocationLeg,
    batch_total,
    find_shortfall,
    plan_oldest_first,
)


class TestAllocationLeg:
    def test_rejects_non_positive_amount(self):
        with pytest.raises(ValueError):
            AllocationLeg(invoice_id=uuid4(), amount=Decimal("0.00"))

    def test_batch_total(self):
        inv = uuid4()
        legs = [
            AllocationLeg(invoice_id=inv, amount=Decimal("10.10")),
            AllocationLeg(invoice_id=inv, amount=Decimal("0.20")),
        ]

        assert batch_total(legs) == Decimal("10.30")


class TestFindShortfall:
    """Capacity is consumed leg by leg, in caller order."""

    def test_fitting_batch_has_no_shortfall(self):
        inv = uuid4()
        legs = [AllocationLeg(invoice_id=inv, amount=Decimal("100.00"))]

        assert find_shortfall(
            legs=legs, invoice_capacity={inv: Decimal("100.00")}, line_capacity={}
        ) is None

    def test_single_leg_over_capacity(self):
        inv = uuid4()
        legs = [AllocationLeg(invoice_id=inv, amount=Decimal("150.00"))]

        shortfall = find_shortfall(
            legs=legs, invoice_capacity={inv: Decimal("100.00")}, line_capacity={}
        )

        assert shortfall.index == 0
        assert shortfall.remaining == Decimal("100.00")
        assert shortfall.excess == Decimal("50.00")

    def test_cumulative_legs_on_same_invoice(self):
        """Two legs that each fit but together exceed the balance."""
        inv = uuid4()
        legs = [
            AllocationLeg(invoice_id=inv, amount=Decimal("60.00")),
            AllocationLeg(invoice_id=inv, amount=Decimal("60.00")),
        ]

        shortfall = find_shortfall(
            legs=legs, invoice_capacity={inv: Decimal("100.00")}, line_capacity={}
        )

        assert shortfall.index == 1
        assert shortfall.remaining == Decimal("40.00")

    def test_line_leg_capped_by_line(self):
        inv, line = uuid4(), uuid4()
        legs = [AllocationLeg(invoice_id=inv, amount=Decimal("150.00"), line_item_id=line)]

        shortfall = find_shortfall(
            legs=legs,
            invoice_capacity={inv: Decimal("500.00")},
            line_capacity={line: Decimal("100.00")},
        )

        assert shortfall.line_item_id == line
        assert shortfall.remaining == Decimal("100.00")

    def test_line_leg_capped_by_invoice(self):
        """A line leg also draws on the invoice balance."""
        inv, line = uuid4(), uuid4()
        legs = [
            AllocationLeg(invoice_id=inv, amount=Decimal("300.00")),
            AllocationLeg(invoice_id=inv, amount=Decimal("150.00"), line_item_id=line),
        ]

        shortfall = find_shortfall(
            legs=legs,
            invoice_capacity={inv: Decimal("400.00")},
            line_capacity={line: Decimal("200.00")},
        )

        assert shortfall.index == 1
        assert shortfall.remaining == Decimal("100.00")


class TestPlanOldestFirst:
    def test_spreads_in_order(self):
        plan = plan_oldest_first(
            amount=Decimal("250.00"),
            open_balances=[("a", Decimal("100.00")), ("b", Decimal("100.00")), ("c", Decimal("100.00"))],
        )

        assert [(leg.target_id, leg.allocated) for leg in plan.legs] == [
            ("a", Decimal("100.00")),
            ("b", Decimal("100.00")),
            ("c", Decimal("50.00")),
        ]
        assert plan.unallocated == Decimal("0.00")
        assert plan.is_fully_allocated

    def test_leftover_when_balances_exhausted(self):
        plan = plan_oldest_first(
            amount=Decimal("250.00"),
            open_balances=[("a", Decimal("100.00"))],
        )

        assert plan.total_allocated == Decimal("100.00")
        assert plan.unallocated == Decimal("150.00")

    def test_skips_settled_targets(self):
        plan = plan_oldest_first(
            amount=Decimal("50.00"),
            open_balances=[("a", Decimal("0.00")), ("b", Decimal("80.00"))],
        )

        assert [leg.target_id for leg in plan.legs] == ["b"]
        assert plan.legs[0].remaining == Decimal("30.00")
