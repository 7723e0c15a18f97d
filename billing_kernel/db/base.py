"""
Module: billing_kernel.db.base
Responsibility: declarative base and column types shared by every receivables
    table: string-stored UUID keys, cent-exact money, UTC timestamps, the
    audit columns and the optimistic-concurrency version counter.
Architecture position: Kernel > DB.  Lowest-level import target within the
    kernel besides db.types.  MUST NOT import from modules, engines or services.

Invariants enforced:
    - Money is Numeric(38, 9) on disk and a cent-quantized Decimal in Python.
      Floats are refused at bind time.
    - Timestamps come back timezone-aware in UTC on every backend (SQLite
      drops the offset on the way in).
    - Versioned rows carry a ``version`` that every conditional UPDATE checks.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from billing_kernel.db.types import round_money


class UUIDString(TypeDecorator):
    """UUID stored as its 36-character string form."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(value if isinstance(value, PyUUID) else PyUUID(str(value)))

    def process_result_value(self, value, dialect):
        return PyUUID(value) if value is not None else None


class CentsNumeric(TypeDecorator):
    """Numeric(38, 9) column read back as a Decimal quantized to cents."""

    impl = Numeric(38, 9, asdecimal=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if isinstance(value, float):
            raise TypeError("money columns do not accept float")
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return round_money(Decimal(value))


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime, normalized to UTC in both directions."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetimes are not stored")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """
    Declarative base for all receivables tables.

    ``Mapped[Decimal]`` columns get CentsNumeric, ``Mapped[datetime]`` get
    UTCDateTime, ``Mapped[UUID]`` get UUIDString and ``Mapped[int]`` get
    BigInteger unless a column names its type explicitly.
    """

    type_annotation_map: ClassVar[dict] = {
        Decimal: CentsNumeric(),
        datetime: UTCDateTime(),
        PyUUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[PyUUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TrackedBase(Base):
    """
    Rows that record who created them and when.

    ``created_at``/``updated_at`` are database-side timestamps of the row
    itself; business timestamps (received_at, filed_at, ...) live on the
    concrete tables and come from the injected clock.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )
    created_by_id: Mapped[PyUUID] = mapped_column(nullable=False)
    updated_by_id: Mapped[PyUUID | None] = mapped_column(nullable=True)


class VersionedBase(TrackedBase):
    """
    TrackedBase plus an optimistic-concurrency counter.

    The store bumps ``version`` itself with
    ``UPDATE ... WHERE id = :id AND version = :expected`` rather than using
    the mapper's version_id_col, so a lost race raises
    ConcurrentModificationError at the call site instead of StaleDataError
    inside a flush.
    """

    __abstract__ = True

    version: Mapped[int] = mapped_column(nullable=False, default=1)


UUID = PyUUID
