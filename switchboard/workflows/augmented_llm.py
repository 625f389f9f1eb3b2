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

"""Augmented LLM: a model call extended with structured output and tools.

    plan_search --> call_model --TOOLS--> run_tools --> call_model ...
                         |
                         +--FINISH--> END

plan_search turns the question into a web search query validated against a
pydantic model. call_model answers with tools bound; every tool call it
requests is executed by run_tools and answered with a tool message before the
model is called again. The loop is bounded by the run's step limit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from switchboard.framework.checkpointer import CheckpointerProtocol
from switchboard.framework.engine import CompiledGraph
from switchboard.framework.graph import END, StateGraph
from switchboard.framework.state import Message, StateField, StateSchema, ToolCall, messages_field
from switchboard.models.client import ChatModelProtocol, ToolDefinition, complete_structured
from switchboard.workflows.prompts import render

logger = logging.getLogger(__name__)


class AugmentedStage(str, Enum):
    PLAN_SEARCH = "plan_search"
    CALL_MODEL = "call_model"
    RUN_TOOLS = "run_tools"


class ToolRoute(str, Enum):
    TOOLS = "TOOLS"
    FINISH = "FINISH"


class SearchQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    search_query: str = Field(
        alias="searchQuery", description="Query that is optimized web search."
    )
    justification: str = Field(
        description="Why this query is relevant to the user's request."
    )


class MultiplyArguments(BaseModel):
    a: float = Field(description="the first number")
    b: float = Field(description="the second number")


@dataclass(frozen=True)
class LocalTool:
    """A tool definition paired with the Python function that runs it."""

    definition: ToolDefinition
    arguments: type[BaseModel]
    func: Callable[..., Any]

    @property
    def name(self) -> str:
        return self.definition.name

    def run(self, call: ToolCall) -> Any:
        """Validate the call's arguments and invoke the function.

        Raises:
            pydantic.ValidationError: If the arguments do not match the schema
        """
        arguments = self.arguments.model_validate(call.arguments)
        return self.func(**arguments.model_dump())


def _multiply(a: float, b: float) -> float:
    return a * b


MULTIPLY = LocalTool(
    definition=ToolDefinition.from_model(
        "multiply", "multiplies two numbers together", MultiplyArguments
    ),
    arguments=MultiplyArguments,
    func=_multiply,
)

DEFAULT_TOOLS = (MULTIPLY,)

AUGMENTED_LLM_SCHEMA = StateSchema(
    messages_field(),
    StateField("question"),
    StateField("search_query", turn_scoped=True),
    StateField("justification", turn_scoped=True),
    StateField("answer", turn_scoped=True),
)


def route_tools(state: dict[str, Any]) -> ToolRoute:
    """Run tools while the last assistant message requests any."""
    messages: list[Message] = state["messages"]
    if messages and messages[-1].tool_calls:
        return ToolRoute.TOOLS
    return ToolRoute.FINISH


def build_augmented_llm_graph(
    model: ChatModelProtocol,
    checkpointer: Optional[CheckpointerProtocol] = None,
    tools: tuple[LocalTool, ...] = DEFAULT_TOOLS,
    **config: Any,
) -> CompiledGraph:
    tools_by_name = {tool.name: tool for tool in tools}
    definitions = [tool.definition for tool in tools]

    async def plan_search(state: dict[str, Any]) -> dict[str, Any]:
        query = await complete_structured(
            model,
            [
                Message.system(render("augmented_llm", "search_query_system")),
                Message.user(state["question"]),
            ],
            SearchQuery,
        )
        return {"search_query": query.search_query, "justification": query.justification}

    async def call_model(state: dict[str, Any]) -> dict[str, Any]:
        reply = await model.chat(state["messages"], tools=definitions)
        delta: dict[str, Any] = {"messages": [reply]}
        if not reply.tool_calls:
            delta["answer"] = reply.content
        return delta

    def run_tools(state: dict[str, Any]) -> dict[str, Any]:
        results: list[Message] = []
        for call in state["messages"][-1].tool_calls:
            tool = tools_by_name.get(call.name)
            if tool is None:
                logger.warning(f"Model requested unknown tool '{call.name}'")
                content: Any = {"error": f"Unknown tool: {call.name}"}
            else:
                try:
                    content = tool.run(call)
                except ValidationError as e:
                    # Reported back to the model so it can correct the call
                    logger.warning(f"Invalid arguments for tool '{call.name}': {e}")
                    content = {"error": f"Invalid arguments: {e.error_count()} error(s)"}
            results.append(Message.tool(content, tool_call_id=call.id))
        return {"messages": results}

    graph = StateGraph(AUGMENTED_LLM_SCHEMA, stages=AugmentedStage, name="augmented_llm")
    graph.add_node(AugmentedStage.PLAN_SEARCH, plan_search)
    graph.add_node(AugmentedStage.CALL_MODEL, call_model)
    graph.add_node(AugmentedStage.RUN_TOOLS, run_tools)

    graph.set_entry_point(AugmentedStage.PLAN_SEARCH)
    graph.add_edge(AugmentedStage.PLAN_SEARCH, AugmentedStage.CALL_MODEL)
    graph.add_conditional_edge(
        AugmentedStage.CALL_MODEL,
        route_tools,
        {ToolRoute.TOOLS: AugmentedStage.RUN_TOOLS, ToolRoute.FINISH: END},
    )
    graph.add_edge(AugmentedStage.RUN_TOOLS, AugmentedStage.CALL_MODEL)

    return graph.compile(checkpointer=checkpointer, **config)


def question_input(question: str) -> dict[str, Any]:
    """Caller delta asking a new question."""
    return {"question": question, "messages": [Message.user(question)]}


__all__ = [
    "AugmentedStage",
    "ToolRoute",
    "SearchQuery",
    "LocalTool",
    "MULTIPLY",
    "AUGMENTED_LLM_SCHEMA",
    "route_tools",
    "build_augmented_llm_graph",
    "question_input",
]
