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

"""Orchestrator-worker: plan a report, write each section, synthesize.

The orchestrator decides the sections at run time, so the number of workers
is not known when the graph is compiled. A map edge dispatches one worker
per planned section; the synthesizer runs after every worker has finished.
Sections are assembled in plan order, whichever worker finished first.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from switchboard.framework.checkpointer import CheckpointerProtocol
from switchboard.framework.engine import CompiledGraph
from switchboard.framework.graph import StateGraph
from switchboard.framework.state import Message, MergePolicy, StateField, StateSchema
from switchboard.models.client import ChatModelProtocol, complete_structured
from switchboard.workflows.prompts import render

logger = logging.getLogger(__name__)

SECTION_SEPARATOR = "\n\n---\n\n"


class ReportStage(str, Enum):
    ORCHESTRATOR = "orchestrator"
    WRITE_SECTION = "write_section"
    SYNTHESIZER = "synthesizer"


class Section(BaseModel):
    name: str = Field(description="Name for this section of the report.")
    description: str = Field(
        description="Brief overview of the main topics and concepts of the section."
    )


class Sections(BaseModel):
    sections: list[Section] = Field(min_length=1)


ORCHESTRATOR_WORKER_SCHEMA = StateSchema(
    StateField("topic"),
    StateField("sections", default_factory=list, turn_scoped=True),
    StateField("completed_sections", policy=MergePolicy.APPEND, turn_scoped=True),
    StateField("final_report", turn_scoped=True),
)


def assign_workers(state: dict[str, Any]) -> list[dict[str, Any]]:
    """One worker input per planned section."""
    return [{"section": section} for section in state["sections"]]


def synthesize(state: dict[str, Any]) -> dict[str, Any]:
    return {"final_report": SECTION_SEPARATOR.join(state["completed_sections"])}


def build_orchestrator_worker_graph(
    model: ChatModelProtocol,
    checkpointer: Optional[CheckpointerProtocol] = None,
    **config: Any,
) -> CompiledGraph:
    async def orchestrator(state: dict[str, Any]) -> dict[str, Any]:
        plan = await complete_structured(
            model,
            [Message.user(render("orchestrator_worker", "plan", topic=state["topic"]))],
            Sections,
        )
        logger.info(f"Planned {len(plan.sections)} report section(s)")
        return {"sections": [section.model_dump() for section in plan.sections]}

    async def write_section(state: dict[str, Any]) -> dict[str, Any]:
        section = state["section"]
        text = await model.complete(
            [
                Message.system(render("orchestrator_worker", "write_system")),
                Message.user(
                    render(
                        "orchestrator_worker",
                        "write_human",
                        name=section["name"],
                        description=section["description"],
                    )
                ),
            ]
        )
        return {"completed_sections": [text]}

    graph = StateGraph(ORCHESTRATOR_WORKER_SCHEMA, stages=ReportStage, name="orchestrator_worker")
    graph.add_node(ReportStage.ORCHESTRATOR, orchestrator)
    graph.add_node(ReportStage.WRITE_SECTION, write_section)
    graph.add_node(ReportStage.SYNTHESIZER, synthesize)

    graph.set_entry_point(ReportStage.ORCHESTRATOR)
    graph.add_map_edge(
        ReportStage.ORCHESTRATOR,
        assign_workers,
        worker=ReportStage.WRITE_SECTION,
        join=ReportStage.SYNTHESIZER,
    )
    graph.add_edge(ReportStage.WRITE_SECTION, ReportStage.SYNTHESIZER)
    graph.set_finish_point(ReportStage.SYNTHESIZER)

    return graph.compile(checkpointer=checkpointer, **config)
