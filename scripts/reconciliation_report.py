#!/usr/bin/env python3
"""
Print the receivables reconciliation report.

Sections: unposted payments, open balance by aging bucket, and totals of
balance due, unapplied credits and unallocated payments.

Usage:
    python3 scripts/reconciliation_report.py
    python3 scripts/reconciliation_report.py --organization-id <uuid>
"""

from __future__ import annotations

import argparse
import sys
from uuid import UUID

from _common import add_common_arguments, build_service


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Print the receivables reconciliation report.")
    add_common_arguments(parser)
    parser.add_argument("--organization-id", type=UUID, default=None)
    args = parser.parse_args(argv)

    service = build_service(args)
    report = service.reconciliation_report(args.organization_id)

    print(f"Reconciliation as of {report.as_of.isoformat()}")
    print()
    print(f"Unposted payments ({len(report.unposted_payments)}):")
    for row in report.unposted_payments:
        print(
            f"  {row.payment_id}  {row.method:<10} amount={row.amount:>12} "
            f"allocated={row.allocated_amount:>12} unallocated={row.unallocated_amount:>12}"
        )
    print()
    print("Open balance by aging bucket:")
    for bucket, amount in report.balance_by_bucket.items():
        print(f"  {bucket:<8} {amount:>14}")
    print()
    totals = report.totals
    print(f"Total balance due:          {totals.total_balance_due:>14}")
    print(f"Total unapplied credits:    {totals.total_unapplied_credits:>14}")
    print(f"Total unallocated payments: {totals.total_unallocated_payments:>14}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
