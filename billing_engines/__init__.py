"""
Billing Engines.

Pure calculation engines shared by the receivables module.  No I/O, no
clock access; every input arrives as a parameter.

Engines:
- balance: invoice balance-due and status derivation
- allocation: batch capacity checks and oldest-first planning
- aging: days-past-due bucketing for reconciliation reports
"""

from billing_engines.aging import (
    DEFAULT_BUCKETS,
    AgedInvoice,
    AgingBucket,
    AgingCalculator,
    AgingInput,
    AgingReport,
    build_buckets,
)
from billing_engines.allocation import (
    AllocationLeg,
    LegShortfall,
    PlannedLeg,
    SequentialPlan,
    batch_total,
    find_shortfall,
    plan_oldest_first,
)
from billing_engines.balance import (
    InvoiceBalance,
    LineItemAmounts,
    compute_balance_due,
    compute_invoice_balance,
    compute_line_amounts,
    derive_status,
)
from billing_engines.tracer import traced_engine

__all__ = [
    "DEFAULT_BUCKETS",
    "AgedInvoice",
    "AgingBucket",
    "AgingCalculator",
    "AgingInput",
    "AgingReport",
    "AllocationLeg",
    "InvoiceBalance",
    "LegShortfall",
    "LineItemAmounts",
    "PlannedLeg",
    "SequentialPlan",
    "batch_total",
    "build_buckets",
    "compute_balance_due",
    "compute_invoice_balance",
    "compute_line_amounts",
    "derive_status",
    "find_shortfall",
    "plan_oldest_first",
    "traced_engine",
]
