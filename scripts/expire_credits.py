#!/usr/bin/env python3
"""
Expire client credits whose expiry date has passed.

Meant to run from cron once a day.  Every available credit with
expires_at <= now (or --as-of) is marked expired in one transaction.

Usage:
    python3 scripts/expire_credits.py
    python3 scripts/expire_credits.py --as-of 2025-01-01T00:00:00+00:00
    DATABASE_URL=postgresql://... python3 scripts/expire_credits.py
"""

from __future__ import annotations

import argparse
import sys
from datetime import datetime, timezone

from _common import add_common_arguments, build_service


def _parse_as_of(value: str) -> datetime:
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.split("\n\n")[0].strip())
    add_common_arguments(parser)
    parser.add_argument("--as-of", type=_parse_as_of, default=None, help="ISO-8601 cutoff (default: now)")
    args = parser.parse_args(argv)

    service = build_service(args)
    expired = service.expire_credits(as_of=args.as_of)

    for credit in expired:
        print(f"{credit.id}  client={credit.client_id}  remaining={credit.remaining_amount}")
    print(f"Expired {len(expired)} credit(s).")
    return 0


if __name__ == "__main__":
    sys.exit(main())
