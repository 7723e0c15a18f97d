"""Utility modules for the billing kernel."""

from billing_kernel.utils.hashing import canonical_form, canonicalize_json, hash_payload
from billing_kernel.utils.idempotency import allocation_batch_key, payment_idempotency_key

__all__ = [
    "hash_payload",
    "canonicalize_json",
    "canonical_form",
    "allocation_batch_key",
    "payment_idempotency_key",
]
