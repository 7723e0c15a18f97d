"""Database layer - engine, declarative base, column types and money helpers."""

from billing_kernel.db.base import (
    UUID,
    Base,
    CentsNumeric,
    TrackedBase,
    UTCDateTime,
    UUIDString,
    VersionedBase,
)
from billing_kernel.db.engine import create_tables, get_engine, get_session
from billing_kernel.db.types import (
    ZERO,
    positive_money,
    round_money,
    sum_money,
    to_decimal,
    to_money,
)

__all__ = [
    "get_engine",
    "get_session",
    "create_tables",
    "Base",
    "TrackedBase",
    "VersionedBase",
    "UUIDString",
    "CentsNumeric",
    "UTCDateTime",
    "UUID",
    "ZERO",
    "round_money",
    "to_decimal",
    "to_money",
    "positive_money",
    "sum_money",
]
