"""
Billing Modules.

Orchestration layers over the billing kernel and engines.

Modules:
- Receivables: invoices, payments, allocations, credits, disputes,
  reconciliation
"""

from billing_modules import receivables

__all__ = ["receivables"]
