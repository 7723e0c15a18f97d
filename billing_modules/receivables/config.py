"""
Receivables Configuration Schema.

Defines the structure and sensible defaults for receivables settings.
Actual values are loaded from a YAML file or a dict at runtime.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Self

import yaml

from billing_engines.aging import build_buckets
from billing_kernel.logging_config import get_logger
from billing_modules.receivables.models import InvoiceStatus, PRE_SEND_STATUSES

logger = get_logger("modules.receivables.config")

_DEFAULT_ALLOCATABLE = (
    InvoiceStatus.SENT,
    InvoiceStatus.PARTIAL,
    InvoiceStatus.OVERDUE,
    InvoiceStatus.DISPUTED,
    InvoiceStatus.PAID,
)


@dataclass
class ReceivablesConfig:
    """
    Configuration schema for the receivables module.

    Field defaults represent common lab-billing practice.
    Override at instantiation:

        config = ReceivablesConfig(
            credit_expiry_days=365,
            auto_apply_credits=True,
        )
    """

    # Money
    currency_decimal_places: int = 2

    # Invoicing
    default_payment_terms_days: int = 30

    # Aging buckets (upper edges, in days past due)
    aging_bucket_edges: tuple[int, ...] = (30, 60, 90)

    # Credits
    credit_expiry_days: int | None = None  # None = credits never expire
    auto_apply_credits: bool = False  # apply open credits when an invoice is sent

    # Disputes
    allow_invoice_level_disputes: bool = True

    # Allocation
    allocatable_statuses: tuple[InvoiceStatus, ...] = _DEFAULT_ALLOCATABLE

    def __post_init__(self):
        if self.currency_decimal_places not in (0, 2, 3):
            raise ValueError(
                f"currency_decimal_places must be 0, 2 or 3, got {self.currency_decimal_places}"
            )
        if self.default_payment_terms_days < 0:
            raise ValueError("default_payment_terms_days cannot be negative")

        self.aging_bucket_edges = tuple(self.aging_bucket_edges)
        build_buckets(self.aging_bucket_edges)

        if self.credit_expiry_days is not None and self.credit_expiry_days <= 0:
            raise ValueError("credit_expiry_days must be positive (or None for no expiry)")

        self.allocatable_statuses = tuple(
            InvoiceStatus(s) for s in self.allocatable_statuses
        )
        blocked = set(self.allocatable_statuses) & (
            PRE_SEND_STATUSES | {InvoiceStatus.CANCELLED}
        )
        if blocked:
            raise ValueError(
                f"allocatable_statuses cannot include {sorted(s.value for s in blocked)}"
            )

        logger.info(
            "receivables_config_initialized",
            extra={
                "currency_decimal_places": self.currency_decimal_places,
                "aging_bucket_edges": list(self.aging_bucket_edges),
                "credit_expiry_days": self.credit_expiry_days,
                "auto_apply_credits": self.auto_apply_credits,
                "allow_invoice_level_disputes": self.allow_invoice_level_disputes,
                "allocatable_statuses": [s.value for s in self.allocatable_statuses],
            },
        )

    @classmethod
    def with_defaults(cls) -> Self:
        """Create config with default settings."""
        logger.info("receivables_config_created_with_defaults")
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Create config from dictionary (e.g., loaded from a YAML file)."""
        logger.info(
            "receivables_config_loading_from_dict",
            extra={"keys": sorted(data.keys())},
        )
        data = dict(data)
        if "aging_bucket_edges" in data:
            data["aging_bucket_edges"] = tuple(data["aging_bucket_edges"])
        if "allocatable_statuses" in data:
            data["allocatable_statuses"] = tuple(data["allocatable_statuses"])
        return cls(**data)


def load_config(path: str | Path) -> ReceivablesConfig:
    """
    Load a ReceivablesConfig from a YAML file.

    The settings may sit at the top level or under a ``receivables:`` key.
    An empty file yields the defaults.
    """
    path = Path(path)
    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: expected a mapping, got {type(raw).__name__}")
    data = raw.get("receivables", raw)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: 'receivables' must be a mapping")

    logger.info("receivables_config_file_loaded", extra={"path": str(path)})
    return ReceivablesConfig.from_dict(data)
