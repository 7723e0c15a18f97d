#!/usr/bin/env python3
"""
Run the receivables consistency check.

Recomputes invoice balances, payment allocation totals and credit
remainders from their source rows and reports every disagreement.  Each
incident is also logged at ERROR as ``data_integrity_incident``.  Nothing
is corrected.

Exit status is 1 when any incident is found, so cron / CI can alert on it.

Usage:
    python3 scripts/check_integrity.py
    python3 scripts/check_integrity.py --organization-id <uuid>
"""

from __future__ import annotations

import argparse
import sys
from uuid import UUID

from _common import add_common_arguments, build_service


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the receivables consistency check.")
    add_common_arguments(parser)
    parser.add_argument("--organization-id", type=UUID, default=None)
    args = parser.parse_args(argv)

    service = build_service(args)
    incidents = service.check_integrity(args.organization_id)

    if not incidents:
        print("No integrity incidents found.")
        return 0

    print(f"{len(incidents)} integrity incident(s):")
    for incident in incidents:
        print(
            f"  [{incident.invariant.value}] {incident.entity_type} {incident.entity_id}: "
            f"{incident.detail} (expected {incident.expected}, actual {incident.actual})"
        )
    return 1


if __name__ == "__main__":
    sys.exit(main())
