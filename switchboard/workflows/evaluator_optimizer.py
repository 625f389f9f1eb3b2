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

"""Evaluator-optimizer: one model call writes, another grades and critiques.

The generator rewrites with the evaluator's feedback until the joke is graded
funny or max_attempts generations were made.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, field_validator

from switchboard.framework.checkpointer import CheckpointerProtocol
from switchboard.framework.engine import CompiledGraph
from switchboard.framework.graph import END, StateGraph
from switchboard.framework.state import Message, StateField, StateSchema
from switchboard.models.client import ChatModelProtocol, complete_structured
from switchboard.workflows.prompts import render


class RefineStage(str, Enum):
    GENERATOR = "generator"
    EVALUATOR = "evaluator"


class Grade(str, Enum):
    FUNNY = "funny"
    NOT_FUNNY = "not funny"


class Evaluation(BaseModel):
    grade: Grade
    feedback: str = ""

    @field_validator("grade", mode="before")
    @classmethod
    def normalize(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v


class Review(str, Enum):
    ACCEPTED = "Accepted"
    REJECTED = "Rejected + Feedback"
    EXHAUSTED = "Exhausted"


EVALUATOR_OPTIMIZER_SCHEMA = StateSchema(
    StateField("topic"),
    StateField("joke", turn_scoped=True),
    StateField("feedback", turn_scoped=True),
    StateField("grade", turn_scoped=True),
    StateField("attempts", default=0, turn_scoped=True),
    StateField("max_attempts", default=3, external=True, turn_scoped=True),
)


def route_joke(state: dict[str, Any]) -> Review:
    """Accept a funny joke; otherwise retry until attempts run out."""
    if state["grade"] == Grade.FUNNY.value:
        return Review.ACCEPTED
    if state["attempts"] >= state["max_attempts"]:
        return Review.EXHAUSTED
    return Review.REJECTED


def build_evaluator_optimizer_graph(
    model: ChatModelProtocol,
    checkpointer: Optional[CheckpointerProtocol] = None,
    **config: Any,
) -> CompiledGraph:
    async def generator(state: dict[str, Any]) -> dict[str, Any]:
        if state.get("feedback"):
            prompt = render(
                "evaluator_optimizer",
                "generate_with_feedback",
                topic=state["topic"],
                feedback=state["feedback"],
            )
        else:
            prompt = render("evaluator_optimizer", "generate", topic=state["topic"])
        joke = await model.complete([Message.user(prompt)])
        return {"joke": joke, "attempts": state["attempts"] + 1}

    async def evaluator(state: dict[str, Any]) -> dict[str, Any]:
        evaluation = await complete_structured(
            model,
            [Message.user(render("evaluator_optimizer", "evaluate", joke=state["joke"]))],
            Evaluation,
        )
        return {"grade": evaluation.grade.value, "feedback": evaluation.feedback}

    graph = StateGraph(EVALUATOR_OPTIMIZER_SCHEMA, stages=RefineStage, name="evaluator_optimizer")
    graph.add_node(RefineStage.GENERATOR, generator)
    graph.add_node(RefineStage.EVALUATOR, evaluator)

    graph.set_entry_point(RefineStage.GENERATOR)
    graph.add_edge(RefineStage.GENERATOR, RefineStage.EVALUATOR)
    graph.add_conditional_edge(
        RefineStage.EVALUATOR,
        route_joke,
        {
            Review.ACCEPTED: END,
            Review.REJECTED: RefineStage.GENERATOR,
            Review.EXHAUSTED: END,
        },
    )

    return graph.compile(checkpointer=checkpointer, **config)
