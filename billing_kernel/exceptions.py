"""
Typed Exception Hierarchy for the Billing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Allocation callers (the UI, the payment-processor webhook, cron jobs) must be
able to tell exactly which constraint was violated.  Parsing message strings
is fragile, so every error:
  1. Has a TYPED exception class (catch by type, not message)
  2. Has a CODE class attribute (machine-readable, API-safe)
  3. Carries structured DATA (amounts, ids) as attributes

Example:
    try:
        service.allocate(payment_id, targets)
    except OverAllocationError as e:
        api_response(code=e.code, excess=str(e.excess))
    except ConcurrentModificationError:
        # re-read balances, then retry with corrected amounts
        ...

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BillingKernelError (base)
    |
    +-- ValidationError                 caller mistake, never retried
    |   +-- InvalidAmountError
    |   +-- InvalidStateError
    |   +-- NotFoundError
    |   |   +-- InvoiceNotFoundError
    |   |   +-- LineItemNotFoundError
    |   |   +-- PaymentNotFoundError
    |   |   +-- CreditNotFoundError
    |   |   +-- DisputeNotFoundError
    |   +-- AllocationError
    |   |   +-- OverAllocationError
    |   |   +-- PaymentExceededError
    |   |   +-- CreditExceededError
    |   |   +-- InvalidTargetError
    |   |   +-- AlreadyAllocatedError
    |   |   +-- PaymentVoidedError
    |   +-- PaymentError
    |   |   +-- DuplicatePaymentError
    |   +-- CreditError
    |   |   +-- CreditExpiredError
    |   |   +-- CreditNotAvailableError
    |   +-- DisputeError
    |       +-- DisputeAmountExceededError
    |       +-- DisputeNotOpenError
    |
    +-- ConcurrencyError                transient, caller re-reads and retries
    |   +-- ConcurrentModificationError
    |
    +-- IntegrityError                  fatal defect, manual reconciliation
        +-- InvariantViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                        | When Raised
-------------|-----------------------------|-----------------------------------
Allocation   | OVER_ALLOCATION             | Target amount > target balance
             | PAYMENT_EXCEEDED            | Batch > payment's unallocated rest
             | CREDIT_EXCEEDED             | Amount > credit remaining_amount
             | INVALID_TARGET              | Wrong client/org/status/line
             | ALREADY_ALLOCATED           | Same batch committed before
             | PAYMENT_VOIDED              | Allocating a voided payment
-------------|-----------------------------|-----------------------------------
Credit       | CREDIT_EXPIRED              | Credit expired (status or date)
             | CREDIT_NOT_AVAILABLE        | Credit applied or refunded
-------------|-----------------------------|-----------------------------------
Dispute      | DISPUTE_AMOUNT_EXCEEDED     | Disputing a paid/disputed portion
             | DISPUTE_NOT_OPEN            | Resolving a closed dispute
-------------|-----------------------------|-----------------------------------
Payment      | DUPLICATE_PAYMENT           | Idempotency key already recorded
-------------|-----------------------------|-----------------------------------
Concurrency  | CONCURRENT_MODIFICATION     | Version check failed on write
-------------|-----------------------------|-----------------------------------
Integrity    | INVARIANT_VIOLATION         | Write would break a ledger law
"""

from decimal import Decimal


def _fmt(amount: Decimal) -> str:
    return f"${amount:,.2f}"


class BillingKernelError(Exception):
    """
    Base exception for all billing kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "BILLING_KERNEL_ERROR"

    def log_fields(self) -> dict:
        """Structured attributes (amounts, ids) for JSON log records."""
        return {k: v for k, v in vars(self).items() if not k.startswith("_")}


# Validation errors


class ValidationError(BillingKernelError):
    """Base exception for caller mistakes. Raised before any write."""

    code: str = "VALIDATION_ERROR"


class InvalidAmountError(ValidationError):
    """Monetary amount is zero, negative, or otherwise unusable."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, field: str, amount: Decimal, reason: str = "must be positive"):
        self.field = field
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid {field} {amount}: {reason}")


class InvalidStateError(ValidationError):
    """Entity is not in a state that permits the requested operation."""

    code: str = "INVALID_STATE"

    def __init__(self, entity_type: str, entity_id: str, state: str, operation: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.state = state
        self.operation = operation
        super().__init__(
            f"Cannot {operation} {entity_type} {entity_id} in status '{state}'"
        )


class NotFoundError(ValidationError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"
    entity_type: str = "entity"

    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(f"{self.entity_type.capitalize()} not found: {entity_id}")


class InvoiceNotFoundError(NotFoundError):
    code: str = "INVOICE_NOT_FOUND"
    entity_type = "invoice"


class LineItemNotFoundError(NotFoundError):
    code: str = "LINE_ITEM_NOT_FOUND"
    entity_type = "line item"


class PaymentNotFoundError(NotFoundError):
    code: str = "PAYMENT_NOT_FOUND"
    entity_type = "payment"


class CreditNotFoundError(NotFoundError):
    code: str = "CREDIT_NOT_FOUND"
    entity_type = "credit"


class DisputeNotFoundError(NotFoundError):
    code: str = "DISPUTE_NOT_FOUND"
    entity_type = "dispute"


# Allocation errors


class AllocationError(ValidationError):
    """Base exception for allocation validation failures."""

    code: str = "ALLOCATION_ERROR"


class OverAllocationError(AllocationError):
    """A target amount exceeds the target's remaining balance."""

    code: str = "OVER_ALLOCATION"

    def __init__(
        self,
        invoice_id: str,
        requested: Decimal,
        remaining: Decimal,
        line_item_id: str | None = None,
    ):
        self.invoice_id = invoice_id
        self.line_item_id = line_item_id
        self.requested = requested
        self.remaining = remaining
        self.excess = requested - remaining
        target = "line item balance" if line_item_id else "invoice balance"
        super().__init__(
            f"Allocation exceeds {target} by {_fmt(self.excess)} "
            f"(requested {_fmt(requested)}, remaining {_fmt(remaining)})"
        )


class PaymentExceededError(AllocationError):
    """The batch total exceeds the payment's unallocated remainder."""

    code: str = "PAYMENT_EXCEEDED"

    def __init__(self, payment_id: str, requested: Decimal, unallocated: Decimal):
        self.payment_id = payment_id
        self.requested = requested
        self.unallocated = unallocated
        self.excess = requested - unallocated
        super().__init__(
            f"Allocation exceeds unallocated payment amount by {_fmt(self.excess)} "
            f"(requested {_fmt(requested)}, unallocated {_fmt(unallocated)})"
        )


class CreditExceededError(AllocationError):
    """The requested amount exceeds the credit's remaining amount."""

    code: str = "CREDIT_EXCEEDED"

    def __init__(self, credit_id: str, requested: Decimal, remaining: Decimal):
        self.credit_id = credit_id
        self.requested = requested
        self.remaining = remaining
        self.excess = requested - remaining
        super().__init__(
            f"Credit application exceeds remaining credit by {_fmt(self.excess)} "
            f"(requested {_fmt(requested)}, remaining {_fmt(remaining)})"
        )


class InvalidTargetError(AllocationError):
    """Invoice or line item cannot receive this allocation."""

    code: str = "INVALID_TARGET"

    def __init__(self, invoice_id: str, reason: str, line_item_id: str | None = None):
        self.invoice_id = invoice_id
        self.line_item_id = line_item_id
        self.reason = reason
        super().__init__(f"Invalid allocation target invoice {invoice_id}: {reason}")


class AlreadyAllocatedError(AllocationError):
    """
    The same allocation batch was already committed for this payment.

    Callers must re-read state instead of blindly retrying.
    """

    code: str = "ALREADY_ALLOCATED"

    def __init__(self, payment_id: str, batch_key: str):
        self.payment_id = payment_id
        self.batch_key = batch_key
        super().__init__(
            f"Allocation batch {batch_key} already committed for payment {payment_id}"
        )


class PaymentVoidedError(AllocationError):
    """Voided payments cannot be allocated or credited."""

    code: str = "PAYMENT_VOIDED"

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment {payment_id} is voided")


# Payment intake errors


class PaymentError(ValidationError):
    code: str = "PAYMENT_ERROR"


class DuplicatePaymentError(PaymentError):
    """A payment with this idempotency key was already recorded."""

    code: str = "DUPLICATE_PAYMENT"

    def __init__(self, idempotency_key: str, existing_payment_id: str):
        self.idempotency_key = idempotency_key
        self.existing_payment_id = existing_payment_id
        super().__init__(
            f"Duplicate payment detected: key {idempotency_key} "
            f"already recorded as {existing_payment_id}"
        )


# Credit errors


class CreditError(ValidationError):
    code: str = "CREDIT_ERROR"


class CreditExpiredError(CreditError):
    """Expired credits can never be applied."""

    code: str = "CREDIT_EXPIRED"

    def __init__(self, credit_id: str, expires_at: str | None = None):
        self.credit_id = credit_id
        self.expires_at = expires_at
        suffix = f" (expired at {expires_at})" if expires_at else ""
        super().__init__(f"Credit {credit_id} is expired{suffix}")


class CreditNotAvailableError(CreditError):
    """Credit was fully applied or refunded."""

    code: str = "CREDIT_NOT_AVAILABLE"

    def __init__(self, credit_id: str, status: str):
        self.credit_id = credit_id
        self.status = status
        super().__init__(f"Credit {credit_id} is not available (status '{status}')")


# Dispute errors


class DisputeError(ValidationError):
    code: str = "DISPUTE_ERROR"


class DisputeAmountExceededError(DisputeError):
    """Disputed amount exceeds the unpaid, undisputed portion of the target."""

    code: str = "DISPUTE_AMOUNT_EXCEEDED"

    def __init__(self, target_id: str, requested: Decimal, disputable: Decimal):
        self.target_id = target_id
        self.requested = requested
        self.disputable = disputable
        self.excess = requested - disputable
        super().__init__(
            f"Dispute exceeds disputable balance by {_fmt(self.excess)} "
            f"(requested {_fmt(requested)}, disputable {_fmt(disputable)})"
        )


class DisputeNotOpenError(DisputeError):
    code: str = "DISPUTE_NOT_OPEN"

    def __init__(self, dispute_id: str, status: str):
        self.dispute_id = dispute_id
        self.status = status
        super().__init__(f"Dispute {dispute_id} is not open (status '{status}')")


# Concurrency errors


class ConcurrencyError(BillingKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class ConcurrentModificationError(ConcurrencyError):
    """
    A row read during validation was changed by another transaction.

    Transient: re-read current balances and retry with corrected amounts.
    The engine never retries on its own.
    """

    code: str = "CONCURRENT_MODIFICATION"

    def __init__(self, entity_type: str, entity_id: str, detail: str | None = None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.detail = detail
        message = (
            f"Concurrent modification of {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


# Integrity errors


class IntegrityError(BillingKernelError):
    """Base exception for data-integrity defects."""

    code: str = "INTEGRITY_ERROR"


class InvariantViolationError(IntegrityError):
    """
    A write would persist a state that breaks a ledger invariant.

    Must never happen if validation is correct.  Requires manual
    reconciliation; never auto-corrected.
    """

    code: str = "INVARIANT_VIOLATION"

    def __init__(self, invariant: str, entity_type: str, entity_id: str, detail: str):
        self.invariant = invariant
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.detail = detail
        super().__init__(
            f"Invariant {invariant} violated on {entity_type} {entity_id}: {detail}"
        )
