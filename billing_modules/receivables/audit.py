"""Audit trail writer shared by every receivables mutation."""

from typing import Any
from uuid import UUID, uuid4

from billing_kernel.domain.clock import Clock
from billing_kernel.utils.hashing import canonical_form, hash_payload
from billing_modules.receivables.models import AuditEntry
from billing_modules.receivables.repository import LedgerUnitOfWork


def record_audit(
    uow: LedgerUnitOfWork,
    clock: Clock,
    entity_type: str,
    entity_id: UUID,
    action: str,
    payload: dict[str, Any],
) -> AuditEntry:
    """Append one audit entry in the caller's unit of work."""
    normalized = canonical_form(payload)
    entry = AuditEntry(
        id=uuid4(),
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        payload=normalized,
        payload_hash=hash_payload(normalized),
        created_at=clock.now(),
        actor_id=uow.actor_id,
    )
    return uow.add_audit_entry(entry)
