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

"""Prompt chaining: generate a joke, gate it, then improve and polish it.

Each model call processes the output of the previous one. The gate after
generation is a plain programmatic check; a joke without a punchline ends
the run early.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from switchboard.framework.checkpointer import CheckpointerProtocol
from switchboard.framework.engine import CompiledGraph
from switchboard.framework.graph import END, StateGraph
from switchboard.framework.state import Message, StateField, StateSchema
from switchboard.models.client import ChatModelProtocol
from switchboard.workflows.prompts import render


class JokeStage(str, Enum):
    GENERATE_JOKE = "generate_joke"
    IMPROVE_JOKE = "improve_joke"
    POLISH_JOKE = "polish_joke"


class Verdict(str, Enum):
    PASS = "Pass"
    FAIL = "Fail"


PROMPT_CHAIN_SCHEMA = StateSchema(
    StateField("topic"),
    StateField("joke", turn_scoped=True),
    StateField("improved_joke", turn_scoped=True),
    StateField("final_joke", turn_scoped=True),
)


def check_punchline(state: dict[str, Any]) -> Verdict:
    """Pass if the joke contains "?" or "!"."""
    joke = state.get("joke") or ""
    if "?" in joke or "!" in joke:
        return Verdict.PASS
    return Verdict.FAIL


def build_prompt_chain_graph(
    model: ChatModelProtocol,
    checkpointer: Optional[CheckpointerProtocol] = None,
    **config: Any,
) -> CompiledGraph:
    async def generate_joke(state: dict[str, Any]) -> dict[str, Any]:
        prompt = render("prompt_chain", "generate", topic=state["topic"])
        return {"joke": await model.complete([Message.user(prompt)])}

    async def improve_joke(state: dict[str, Any]) -> dict[str, Any]:
        prompt = render("prompt_chain", "improve", joke=state["joke"])
        return {"improved_joke": await model.complete([Message.user(prompt)])}

    async def polish_joke(state: dict[str, Any]) -> dict[str, Any]:
        prompt = render("prompt_chain", "polish", improved_joke=state["improved_joke"])
        return {"final_joke": await model.complete([Message.user(prompt)])}

    graph = StateGraph(PROMPT_CHAIN_SCHEMA, stages=JokeStage, name="prompt_chain")
    graph.add_node(JokeStage.GENERATE_JOKE, generate_joke)
    graph.add_node(JokeStage.IMPROVE_JOKE, improve_joke)
    graph.add_node(JokeStage.POLISH_JOKE, polish_joke)

    graph.set_entry_point(JokeStage.GENERATE_JOKE)
    graph.add_conditional_edge(
        JokeStage.GENERATE_JOKE,
        check_punchline,
        {Verdict.PASS: JokeStage.IMPROVE_JOKE, Verdict.FAIL: END},
    )
    graph.add_edge(JokeStage.IMPROVE_JOKE, JokeStage.POLISH_JOKE)
    graph.set_finish_point(JokeStage.POLISH_JOKE)

    return graph.compile(checkpointer=checkpointer, **config)
