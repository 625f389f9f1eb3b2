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

"""Customer support routing workflow.

A conversation enters at frontline support, which either answers directly or
hands over to billing or technical support. Billing may hand over to the
refund stage, which pauses until a human authorizes the refund.

    initial_support --BILLING--> billing_support --REFUND--> handle_refund --> END
          |                            |
          |                            +--RESPOND--> END
          +--TECHNICAL--> technical_support --> END
          +--RESPOND--> END

Every handover decision is a structured model call validated against a
closed Enum. Output outside that set raises ClassificationDecodeError; the
conversation is never routed by a guessed default.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from switchboard.core.retry import BaseRetryStrategy, ExponentialBackoffStrategy
from switchboard.framework.checkpointer import CheckpointerProtocol
from switchboard.framework.engine import CompiledGraph, interrupt
from switchboard.framework.graph import END, StateGraph
from switchboard.framework.state import Message, Role, StateField, StateSchema, messages_field
from switchboard.models.client import ChatModelProtocol, complete_structured
from switchboard.workflows.prompts import render

logger = logging.getLogger(__name__)


class SupportStage(str, Enum):
    """Stages (representatives) of the support workflow."""

    INITIAL_SUPPORT = "initial_support"
    BILLING_SUPPORT = "billing_support"
    TECHNICAL_SUPPORT = "technical_support"
    HANDLE_REFUND = "handle_refund"


class Representative(str, Enum):
    """Frontline handover decision."""

    BILLING = "BILLING"
    TECHNICAL = "TECHNICAL"
    RESPOND = "RESPOND"


class BillingDecision(str, Enum):
    """Billing handover decision."""

    REFUND = "REFUND"
    RESPOND = "RESPOND"


class _Classification(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    @field_validator("next_representative", mode="before", check_fields=False)
    @classmethod
    def normalize(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v


class InitialRoute(_Classification):
    next_representative: Representative = Field(alias="nextRepresentative")


class BillingRoute(_Classification):
    next_representative: BillingDecision = Field(alias="nextRepresentative")


SUPPORT_SCHEMA = StateSchema(
    messages_field(),
    StateField("next_representative"),
    StateField("refund_authorized", default=False, external=True, turn_scoped=True),
)


def _without_handover(messages: list[Message]) -> list[Message]:
    # Drop the previous representative's "please hold" reply
    if messages and messages[-1].role == Role.ASSISTANT:
        return messages[:-1]
    return messages


class SupportAgents:
    """Stage functions of the support workflow, bound to a chat model."""

    def __init__(self, model: ChatModelProtocol):
        self.model = model

    async def initial_support(self, state: dict[str, Any]) -> dict[str, Any]:
        messages: list[Message] = state["messages"]
        reply = await self.model.complete(
            [Message.system(render("support", "initial_system")), *messages]
        )

        route = await complete_structured(
            self.model,
            [
                Message.system(render("support", "initial_categorization_system")),
                *messages,
                Message.assistant(reply),
                Message.user(render("support", "initial_categorization_human")),
            ],
            InitialRoute,
        )
        logger.info(f"Frontline support routed to {route.next_representative.value}")
        return {
            "messages": [Message.assistant(reply, name=SupportStage.INITIAL_SUPPORT.value)],
            "next_representative": route.next_representative.value,
        }

    async def billing_support(self, state: dict[str, Any]) -> dict[str, Any]:
        history = _without_handover(state["messages"])
        reply = await self.model.complete(
            [Message.system(render("support", "billing_system")), *history]
        )

        route = await complete_structured(
            self.model,
            [
                Message.system(render("support", "billing_categorization_system")),
                Message.user(render("support", "billing_categorization_human", content=reply)),
            ],
            BillingRoute,
        )
        logger.info(f"Billing support decided {route.next_representative.value}")
        return {
            "messages": [Message.assistant(reply, name=SupportStage.BILLING_SUPPORT.value)],
            "next_representative": route.next_representative.value,
        }

    async def technical_support(self, state: dict[str, Any]) -> dict[str, Any]:
        history = _without_handover(state["messages"])
        reply = await self.model.complete(
            [Message.system(render("support", "technical_system")), *history]
        )
        return {"messages": [Message.assistant(reply, name=SupportStage.TECHNICAL_SUPPORT.value)]}

    async def handle_refund(self, state: dict[str, Any]) -> dict[str, Any]:
        if not state["refund_authorized"]:
            interrupt("Human authorization required.", action="refund")

        logger.info("Refund authorized, processing")
        return {
            "messages": [
                Message.assistant(
                    render("support", "refund_confirmation"),
                    name=SupportStage.HANDLE_REFUND.value,
                )
            ]
        }


def route_after_initial(state: dict[str, Any]) -> str:
    return state["next_representative"]


def route_after_billing(state: dict[str, Any]) -> str:
    return state["next_representative"]


def build_support_graph(
    model: ChatModelProtocol,
    checkpointer: Optional[CheckpointerProtocol] = None,
    retry: Optional[BaseRetryStrategy] = None,
    **config: Any,
) -> CompiledGraph:
    """Compile the support workflow.

    Args:
        model: Chat model used by every representative
        checkpointer: Thread store for conversations
        retry: Retry strategy for model-calling stages (default: 3 attempts)
        **config: ExecutionConfig overrides

    Returns:
        CompiledGraph named "customer_support"
    """
    agents = SupportAgents(model)
    retry = retry or ExponentialBackoffStrategy(max_attempts=3, base_delay=0.5)

    graph = StateGraph(SUPPORT_SCHEMA, stages=SupportStage, name="customer_support")
    graph.add_node(SupportStage.INITIAL_SUPPORT, agents.initial_support, retry=retry)
    graph.add_node(SupportStage.BILLING_SUPPORT, agents.billing_support, retry=retry)
    graph.add_node(SupportStage.TECHNICAL_SUPPORT, agents.technical_support, retry=retry)
    graph.add_node(SupportStage.HANDLE_REFUND, agents.handle_refund)

    graph.set_entry_point(SupportStage.INITIAL_SUPPORT)
    graph.add_conditional_edge(
        SupportStage.INITIAL_SUPPORT,
        route_after_initial,
        {
            Representative.BILLING: SupportStage.BILLING_SUPPORT,
            Representative.TECHNICAL: SupportStage.TECHNICAL_SUPPORT,
            Representative.RESPOND: END,
        },
        outputs=list(Representative),
    )
    graph.add_conditional_edge(
        SupportStage.BILLING_SUPPORT,
        route_after_billing,
        {
            BillingDecision.REFUND: SupportStage.HANDLE_REFUND,
            BillingDecision.RESPOND: END,
        },
        outputs=list(BillingDecision),
    )
    graph.add_edge(SupportStage.TECHNICAL_SUPPORT, END)
    graph.add_edge(SupportStage.HANDLE_REFUND, END)

    return graph.compile(checkpointer=checkpointer, **config)


def chat_input(message: str) -> dict[str, Any]:
    """Caller delta for a new user message."""
    return {"messages": [Message.user(message)]}


def resume_input(authorization: bool, message: Optional[str] = None) -> dict[str, Any]:
    """Caller delta resuming a paused conversation."""
    delta: dict[str, Any] = {"refund_authorized": authorization}
    if message:
        delta["messages"] = [Message.user(message)]
    return delta


def last_reply(delta: dict[str, Any]) -> Optional[str]:
    """Content of the last assistant message in a stage delta, if any."""
    for message in reversed(delta.get("messages") or []):
        if message.role == Role.ASSISTANT:
            return message.content if isinstance(message.content, str) else str(message.content)
    return None


__all__ = [
    "SupportStage",
    "Representative",
    "BillingDecision",
    "InitialRoute",
    "BillingRoute",
    "SUPPORT_SCHEMA",
    "SupportAgents",
    "build_support_graph",
    "chat_input",
    "resume_input",
    "last_reply",
]
