"""
Hypothesis-based property tests for the receivables ledger.

Properties:
- balance_due is max(0, total - waived - paid - disputed), never negative
- oldest-first planning conserves the source amount
- random allocation sequences never over-allocate an invoice or a payment,
  and leave nothing for the integrity checker to report
- recalculating a consistent invoice is a no-op
- applying a credit moves exactly what it takes off the invoice balance

The service-level properties share one in-memory store across examples;
each example creates its own invoices and payments.
"""

from decimal import Decimal
from uuid import uuid4

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from billing_engines.allocation import plan_oldest_first
from billing_engines.balance import compute_balance_due
from billing_modules.receivables.models import AllocationTarget, PaymentStatus
from billing_modules.receivables.service import OperationStatus

FIXTURE_SETTINGS = settings(
    max_examples=50,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture],
)


def money(min_value="0.00", max_value="10000.00"):
    return st.decimals(
        min_value=Decimal(min_value),
        max_value=Decimal(max_value),
        places=2,
        allow_nan=False,
        allow_infinity=False,
    )


class TestBalanceProperties:
    @given(total=money(), paid=money(), disputed=money(), waived=money())
    @settings(max_examples=300)
    def test_balance_due_formula(self, total, paid, disputed, waived):
        balance = compute_balance_due(
            total_amount=total,
            paid_amount=paid,
            disputed_amount=disputed,
            waived_amount=waived,
        )

        assert balance >= Decimal("0")
        assert balance == max(Decimal("0.00"), total - waived - paid - disputed)

    @given(
        amount=money("0.01"),
        balances=st.lists(money(), min_size=0, max_size=8),
    )
    @settings(max_examples=300)
    def test_oldest_first_conserves_amount(self, amount, balances):
        plan = plan_oldest_first(
            amount=amount, open_balances=[(i, b) for i, b in enumerate(balances)]
        )

        assert plan.total_allocated + plan.unallocated == amount
        assert plan.total_allocated == min(amount, sum(balances, Decimal("0.00")))
        for leg in plan.legs:
            assert Decimal("0") < leg.allocated <= balances[leg.target_id]


class TestAllocationSequences:
    @given(
        prices=st.lists(money("1.00", "500.00"), min_size=1, max_size=3),
        attempts=st.lists(
            st.tuples(money("0.01", "800.00"), money("0.01", "800.00")),
            min_size=1,
            max_size=5,
        ),
    )
    @FIXTURE_SETTINGS
    def test_no_over_allocation(self, service, make_invoice, make_payment, prices, attempts):
        invoice = make_invoice(*[str(p) for p in prices])

        for payment_amount, requested in attempts:
            payment = make_payment(str(payment_amount))
            result = service.try_allocate(payment.id, [AllocationTarget(invoice.id, requested)])

            assert result.status in (OperationStatus.SUCCEEDED, OperationStatus.REJECTED)
            stored_payment = service.get_payment(payment.id)
            assert stored_payment.allocated_amount + stored_payment.credited_amount <= payment_amount
            if result.is_success:
                assert stored_payment.allocated_amount == requested

        stored = service.get_invoice(invoice.id)
        assert stored.paid_amount <= stored.total_amount
        assert stored.balance_due == max(
            Decimal("0.00"), stored.total_amount - stored.waived_amount - stored.paid_amount
        )
        assert service.check_integrity() == []

    @given(
        price=money("1.00", "500.00"),
        payment_amount=money("0.01", "800.00"),
    )
    @FIXTURE_SETTINGS
    def test_close_out_settles_payment(self, service, make_invoice, make_payment, price, payment_amount):
        invoice = make_invoice(str(price))
        payment = make_payment(str(payment_amount))
        applied = min(price, payment_amount)

        result = service.allocate(
            payment.id, [AllocationTarget(invoice.id, applied)], close_out=True
        )

        assert result.payment_status is PaymentStatus.POSTED
        stored = service.get_payment(payment.id)
        assert stored.allocated_amount + stored.credited_amount == payment_amount
        expected_credit = payment_amount - applied
        if expected_credit > 0:
            assert result.credit.amount == expected_credit
        else:
            assert result.credit is None

    @given(
        price=money("1.00", "500.00"),
        paid_fraction=st.integers(min_value=0, max_value=100),
    )
    @FIXTURE_SETTINGS
    def test_recalculation_is_idempotent(
        self, service, make_invoice, make_payment, price, paid_fraction
    ):
        invoice = make_invoice(str(price))
        paid = (price * paid_fraction / 100).quantize(Decimal("0.01"))
        if paid > 0:
            payment = make_payment(str(paid))
            service.allocate(payment.id, [AllocationTarget(invoice.id, paid)])

        first = service.recalculate(invoice.id)
        second = service.recalculate(invoice.id)

        assert second == first
        assert second.version == first.version


class TestCreditProperties:
    @given(
        price=money("1.00", "500.00"),
        credit_amount=money("0.01", "800.00"),
    )
    @FIXTURE_SETTINGS
    def test_applied_credit_moves_balance(
        self, service, make_invoice, price, credit_amount
    ):
        client_id = uuid4()
        invoice = make_invoice(str(price), client_id=client_id)
        credit = service.issue_adjustment_credit(
            invoice.organization_id, client_id, str(credit_amount), reason="goodwill"
        )

        result = service.apply_credit(credit.id, invoice_id=invoice.id)

        applied = min(price, credit_amount)
        assert result.total_applied == applied
        assert result.credit.remaining_amount == credit_amount - applied
        assert service.get_invoice(invoice.id).balance_due == price - applied

        summary = service.client_credit_summary(client_id)
        assert summary.total_credits == (
            summary.available + summary.applied + summary.expired + summary.refunded
        )
