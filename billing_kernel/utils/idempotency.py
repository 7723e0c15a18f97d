"""
Idempotency key generation utilities.

Idempotency keys ensure that re-submitting the same allocation batch or the
same processor payment is rejected instead of double-counted.
"""

from decimal import Decimal
from uuid import UUID

from billing_kernel.utils.hashing import hash_payload


def allocation_batch_key(
    source_kind: str,
    source_id: UUID | str,
    targets: list[tuple[UUID | str, UUID | str | None, Decimal]],
) -> str:
    """
    Fingerprint an allocation batch.

    Format: source_kind:source_id:<sha256 prefix of sorted targets>

    Target order does not matter; the same set of
    (invoice_id, line_item_id, amount) triples always yields the same key.

    Example:
        >>> allocation_batch_key("payment", pid, [(inv, None, Decimal("100"))])
        "payment:550e8400-...:3f1a9c0e5b7d2a41"
    """
    normalized = sorted(
        [str(invoice_id), str(line_id) if line_id else "", str(amount.normalize())]
        for invoice_id, line_id, amount in targets
    )
    digest = hash_payload(normalized)[:16]
    return f"{source_kind}:{source_id}:{digest}"


def payment_idempotency_key(
    invoice_id: UUID | str | None,
    amount: Decimal,
    method: str,
    reference: str | None,
) -> str:
    """
    Derive a duplicate-detection key for processor payments.

    Format: invoice:amount:method:reference
    """
    return ":".join(
        [
            str(invoice_id) if invoice_id else "none",
            str(amount.normalize()),
            method,
            reference or "none",
        ]
    )
