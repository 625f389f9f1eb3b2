# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Tests for the customer support workflow (routing, refunds, decode failures)."""

import pytest

from switchboard.core.errors import ClassificationDecodeError, ExternalCallFailure
from switchboard.core.retry import ExponentialBackoffStrategy, NoRetryStrategy
from switchboard.framework.checkpointer import ThreadStatus
from switchboard.framework.engine import OutcomeStatus
from switchboard.framework.graph import END
from switchboard.framework.state import Role
from switchboard.models.client import parse_structured
from switchboard.workflows.support import (
    BillingRoute,
    InitialRoute,
    Representative,
    build_support_graph,
    chat_input,
    last_reply,
    resume_input,
)

HOLD = "Let me transfer you to billing."
BILLING_REPLY = "I can refund the duplicate charge."


def refund_script():
    return [
        HOLD,
        '{"nextRepresentative": "BILLING"}',
        BILLING_REPLY,
        '{"nextRepresentative": "REFUND"}',
    ]


def roles(state):
    return [m.role for m in state["messages"]]


class TestClassificationModels:
    """Tests for the handover decision models."""

    def test_lowercase_decision_is_normalized(self):
        """Test decisions are matched case-insensitively."""
        route = parse_structured('{"nextRepresentative": " technical "}', InitialRoute)

        assert route.next_representative == Representative.TECHNICAL

    def test_fenced_json_is_accepted(self):
        """Test replies wrapped in a markdown fence still decode."""
        raw = 'Sure!\n```json\n{"nextRepresentative": "REFUND"}\n```'

        assert parse_structured(raw, BillingRoute).next_representative.value == "REFUND"

    def test_value_outside_closed_set_is_rejected(self):
        """Test a decision outside the enum raises instead of defaulting."""
        with pytest.raises(ClassificationDecodeError) as exc_info:
            parse_structured('{"nextRepresentative": "TECHNICAL"}', BillingRoute)

        assert exc_info.value.expected == ["REFUND", "RESPOND"]
        assert exc_info.value.retryable


class TestRouting:
    """Tests for frontline routing."""

    @pytest.mark.asyncio
    async def test_respond_ends_at_frontline(self, scripted_model, checkpointer):
        """Test RESPOND ends the run after frontline support."""
        model = scripted_model(["Happy to help!", '{"nextRepresentative": "RESPOND"}'])
        app = build_support_graph(model, checkpointer=checkpointer)

        outcome = await app.invoke(chat_input("What are your opening hours?"))

        assert outcome.status == OutcomeStatus.COMPLETED
        assert outcome.node_history == ["initial_support"]
        assert outcome.state["messages"][-1].content == "Happy to help!"
        assert outcome.state["messages"][-1].name == "initial_support"
        assert model.calls[1]["json_mode"] is True

    @pytest.mark.asyncio
    async def test_technical_drops_handover_message(self, scripted_model):
        """Test the technical representative does not see the frontline hand-off."""
        model = scripted_model(
            [
                "One moment, connecting you to technical support.",
                '{"nextRepresentative": "technical"}',
                "Try restarting the router.",
            ]
        )
        app = build_support_graph(model)

        outcome = await app.invoke(chat_input("My internet is down"))

        assert outcome.node_history == ["initial_support", "technical_support"]
        technical_request = model.calls[2]["messages"]
        assert [m.role for m in technical_request] == [Role.SYSTEM, Role.USER]
        assert roles(outcome.state) == [Role.USER, Role.ASSISTANT, Role.ASSISTANT]
        assert last_reply(outcome.state) == "Try restarting the router."

    @pytest.mark.asyncio
    async def test_billing_respond_ends(self, scripted_model):
        """Test billing can answer without a refund."""
        model = scripted_model(
            [HOLD, '{"nextRepresentative": "BILLING"}', "Your invoice is attached.",
             '{"nextRepresentative": "RESPOND"}']
        )
        app = build_support_graph(model)

        outcome = await app.invoke(chat_input("Where is my invoice?"))

        assert outcome.completed
        assert outcome.node_history == ["initial_support", "billing_support"]
        categorize_request = model.calls[3]["messages"]
        assert "Your invoice is attached." in categorize_request[-1].content


class TestRefundInterrupt:
    """Tests for the human-authorized refund."""

    @pytest.mark.asyncio
    async def test_refund_pauses_for_authorization(self, scripted_model, checkpointer):
        """Test a refund decision pauses the thread at handle_refund."""
        model = scripted_model(refund_script())
        app = build_support_graph(model, checkpointer=checkpointer)

        outcome = await app.invoke(chat_input("I was charged twice"), thread_id="conv-1")

        assert outcome.status == OutcomeStatus.INTERRUPTED
        assert outcome.interrupt.node == "handle_refund"
        assert outcome.interrupt.reason == "Human authorization required."
        assert outcome.node_history == ["initial_support", "billing_support"]
        assert roles(outcome.state) == [Role.USER, Role.ASSISTANT, Role.ASSISTANT]

        latest = await checkpointer.load("conv-1")
        assert latest.pending_node == "handle_refund"
        assert latest.status == ThreadStatus.INTERRUPTED

    @pytest.mark.asyncio
    async def test_authorized_resume_adds_exactly_one_message(self, scripted_model, checkpointer):
        """Test resuming with authorization completes with one confirmation message."""
        model = scripted_model(refund_script())
        app = build_support_graph(model, checkpointer=checkpointer)
        paused = await app.invoke(chat_input("I was charged twice"), thread_id="conv-1")

        resumed = await app.invoke(resume_input(True), thread_id="conv-1", resume=True)

        assert resumed.completed
        assert resumed.node_history == ["handle_refund"]
        assert len(resumed.state["messages"]) == len(paused.state["messages"]) + 1
        confirmation = resumed.state["messages"][-1]
        assert confirmation.content == "Refund processed successfully."
        assert confirmation.name == "handle_refund"
        assert model.remaining == 0
        assert (await checkpointer.load("conv-1")).pending_node == END

    @pytest.mark.asyncio
    async def test_unauthorized_resume_stays_paused(self, scripted_model, checkpointer):
        """Test resuming without authorization pauses again without new messages."""
        model = scripted_model(refund_script())
        app = build_support_graph(model, checkpointer=checkpointer)
        paused = await app.invoke(chat_input("I was charged twice"), thread_id="conv-1")

        again = await app.invoke(resume_input(False), thread_id="conv-1", resume=True)

        assert again.interrupted
        assert again.state["messages"] == paused.state["messages"]

    @pytest.mark.asyncio
    async def test_preauthorized_run_matches_resumed_run(self, scripted_model, checkpointer):
        """Test a paused and resumed conversation ends like one never paused."""
        app = build_support_graph(
            scripted_model(refund_script() + refund_script()), checkpointer=checkpointer
        )

        straight = await app.invoke(
            {**chat_input("I was charged twice"), "refund_authorized": True}, thread_id="a"
        )
        await app.invoke(chat_input("I was charged twice"), thread_id="b")
        resumed = await app.invoke(resume_input(True), thread_id="b", resume=True)

        assert resumed.state == straight.state

    @pytest.mark.asyncio
    async def test_authorization_does_not_carry_into_next_turn(self, scripted_model, checkpointer):
        """Test a second refund on the same thread needs its own authorization."""
        model = scripted_model(refund_script() + refund_script())
        app = build_support_graph(model, checkpointer=checkpointer)
        await app.invoke(chat_input("I was charged twice"), thread_id="conv-1")
        first = await app.invoke(resume_input(True), thread_id="conv-1", resume=True)

        second = await app.invoke(chat_input("Refund my other order too"), thread_id="conv-1")

        assert first.completed
        assert second.interrupted
        assert second.interrupt.node == "handle_refund"
        assert second.node_history == ["initial_support", "billing_support"]
        assert second.state["refund_authorized"] is False

        third = await app.invoke(resume_input(True), thread_id="conv-1", resume=True)

        assert third.completed
        assert third.node_history == ["handle_refund"]
        assert model.remaining == 0


class TestClassificationFailure:
    """Tests for undecodable handover decisions."""

    @pytest.mark.asyncio
    async def test_garbage_classification_fails_without_state_change(
        self, scripted_model, checkpointer
    ):
        """Test a bad decision fails the run and leaves the thread at frontline."""
        model = scripted_model(["Sure, let me look.", "I think billing should handle it"])
        app = build_support_graph(model, checkpointer=checkpointer)

        outcome = await app.invoke(chat_input("Refund please"), thread_id="conv-1")

        assert outcome.status == OutcomeStatus.FAILED
        assert isinstance(outcome.error, ClassificationDecodeError)
        assert outcome.error.raw_output == "I think billing should handle it"
        assert outcome.node_history == []
        assert roles(outcome.state) == [Role.USER]

        latest = await checkpointer.load("conv-1")
        assert latest.pending_node == "initial_support"
        assert latest.status == ThreadStatus.FAILED
        assert len(latest.state["messages"]) == 1

    @pytest.mark.asyncio
    async def test_retry_after_decode_failure(self, scripted_model, checkpointer):
        """Test the failed turn can be retried without repeating the user message."""
        model = scripted_model(
            [
                "Sure, let me look.",
                "not json",
                "Here is the answer.",
                '{"nextRepresentative": "RESPOND"}',
            ]
        )
        app = build_support_graph(model, checkpointer=checkpointer)
        await app.invoke(chat_input("Refund please"), thread_id="conv-1")

        retried = await app.invoke({}, thread_id="conv-1", resume=True)

        assert retried.completed
        assert roles(retried.state) == [Role.USER, Role.ASSISTANT]
        assert retried.state["messages"][-1].content == "Here is the answer."


class TestModelFailures:
    """Tests for provider failures during a conversation turn."""

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, scripted_model):
        """Test a 503 from the provider is retried at the stage boundary."""
        model = scripted_model(
            [
                ExternalCallFailure("unavailable", status_code=503),
                "Happy to help!",
                '{"nextRepresentative": "RESPOND"}',
            ]
        )
        app = build_support_graph(
            model, retry=ExponentialBackoffStrategy(max_attempts=2, base_delay=0)
        )

        outcome = await app.invoke(chat_input("Hello"))

        assert outcome.completed
        assert model.remaining == 0

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, scripted_model, checkpointer):
        """Test a 401 fails the run immediately and keeps the thread resumable."""
        model = scripted_model([ExternalCallFailure("unauthorized", status_code=401)])
        app = build_support_graph(model, checkpointer=checkpointer, retry=NoRetryStrategy())

        outcome = await app.invoke(chat_input("Hello"), thread_id="conv-1")

        assert outcome.failed
        assert isinstance(outcome.error, ExternalCallFailure)
        assert outcome.error.status_code == 401
        assert (await checkpointer.load("conv-1")).pending_node == "initial_support"
