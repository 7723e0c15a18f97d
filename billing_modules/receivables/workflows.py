"""
Receivables Workflows.

State machines for the explicit lifecycle steps of invoices, credits and
disputes.  Payment-driven invoice states (partial, paid, overdue,
disputed) are derived by the recalculator, not transitioned here.
"""

from dataclasses import dataclass

from billing_kernel.exceptions import InvalidStateError
from billing_kernel.logging_config import get_logger

logger = get_logger("modules.receivables.workflows")


@dataclass(frozen=True)
class Transition:
    """A valid state transition."""
    from_state: str
    to_state: str
    action: str


@dataclass(frozen=True)
class Workflow:
    """A state machine definition."""
    name: str
    entity_type: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]

    def target_state(self, from_state: str, action: str) -> str | None:
        for transition in self.transitions:
            if transition.from_state == from_state and transition.action == action:
                return transition.to_state
        return None

    def require(self, entity_id: object, from_state: str, action: str) -> str:
        """
        Return the state ``action`` leads to from ``from_state``.

        Raises:
            InvalidStateError: If the workflow has no such transition.
        """
        to_state = self.target_state(from_state, action)
        if to_state is None:
            logger.warning(
                "workflow_transition_rejected",
                extra={
                    "workflow_name": self.name,
                    "entity_id": str(entity_id),
                    "from_state": from_state,
                    "action": action,
                },
            )
            raise InvalidStateError(self.entity_type, str(entity_id), from_state, action)
        return to_state


# Invoices accept payments from every sent-or-later state.
_RECEIVABLE_STATES = ("sent", "partial", "overdue", "disputed", "paid")

INVOICE_WORKFLOW = Workflow(
    name="rcv_invoice",
    entity_type="invoice",
    initial_state="draft",
    states=("draft", "finalized", *_RECEIVABLE_STATES, "cancelled"),
    transitions=(
        Transition("draft", "draft", action="edit_lines"),
        Transition("draft", "finalized", action="finalize"),
        Transition("draft", "cancelled", action="cancel"),
        Transition("finalized", "sent", action="send"),
        Transition("finalized", "cancelled", action="cancel"),
        *(Transition(state, "cancelled", action="cancel") for state in _RECEIVABLE_STATES),
    ),
)

CREDIT_WORKFLOW = Workflow(
    name="rcv_credit",
    entity_type="credit",
    initial_state="available",
    states=("available", "applied", "expired", "refunded"),
    transitions=(
        Transition("available", "applied", action="apply"),
        Transition("available", "expired", action="expire"),
        Transition("available", "refunded", action="refund"),
    ),
)

DISPUTE_WORKFLOW = Workflow(
    name="rcv_dispute",
    entity_type="dispute",
    initial_state="open",
    states=("open", "resolved", "rejected"),
    transitions=(
        Transition("open", "resolved", action="approve"),
        Transition("open", "rejected", action="reject"),
    ),
)
