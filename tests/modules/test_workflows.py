"""Tests for the receivables state machines."""

import pytest

from billing_kernel.exceptions import InvalidStateError
from billing_modules.receivables.workflows import (
    CREDIT_WORKFLOW,
    DISPUTE_WORKFLOW,
    INVOICE_WORKFLOW,
)


class TestInvoiceWorkflow:
    def test_happy_path(self):
        assert INVOICE_WORKFLOW.require("inv", "draft", "finalize") == "finalized"
        assert INVOICE_WORKFLOW.require("inv", "finalized", "send") == "sent"

    @pytest.mark.parametrize("state", ["draft", "finalized", "sent", "partial", "overdue", "disputed", "paid"])
    def test_cancellable_states(self, state):
        assert INVOICE_WORKFLOW.target_state(state, "cancel") == "cancelled"

    def test_cancelled_is_terminal(self):
        assert not [t for t in INVOICE_WORKFLOW.transitions if t.from_state == "cancelled"]

    def test_lines_editable_only_in_draft(self):
        assert INVOICE_WORKFLOW.target_state("draft", "edit_lines") == "draft"
        assert INVOICE_WORKFLOW.target_state("finalized", "edit_lines") is None

    def test_invalid_transition_raises(self, captured_logs):
        with pytest.raises(InvalidStateError) as exc_info:
            INVOICE_WORKFLOW.require("inv-1", "sent", "finalize")

        assert exc_info.value.code == "INVALID_STATE"
        rejected = [r for r in captured_logs() if r["message"] == "workflow_transition_rejected"]
        assert rejected[0]["workflow_name"] == "rcv_invoice"

    def test_every_transition_uses_known_states(self):
        for workflow in (INVOICE_WORKFLOW, CREDIT_WORKFLOW, DISPUTE_WORKFLOW):
            for transition in workflow.transitions:
                assert transition.from_state in workflow.states
                assert transition.to_state in workflow.states
            assert workflow.initial_state in workflow.states


class TestCreditWorkflow:
    @pytest.mark.parametrize(
        "action, target", [("apply", "applied"), ("expire", "expired"), ("refund", "refunded")]
    )
    def test_available_exits(self, action, target):
        assert CREDIT_WORKFLOW.require("cr", "available", action) == target

    @pytest.mark.parametrize("state", ["applied", "expired", "refunded"])
    def test_end_states_are_terminal(self, state):
        with pytest.raises(InvalidStateError):
            CREDIT_WORKFLOW.require("cr", state, "refund")


class TestDisputeWorkflow:
    def test_outcomes(self):
        assert DISPUTE_WORKFLOW.require("d", "open", "approve") == "resolved"
        assert DISPUTE_WORKFLOW.require("d", "open", "reject") == "rejected"

    def test_resolution_is_one_way(self):
        with pytest.raises(InvalidStateError):
            DISPUTE_WORKFLOW.require("d", "rejected", "approve")
