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

"""Parallelization (sectioning): a joke, a story and a poem written at once.

The three writers fan out from the start of the run and join at the
aggregator, which combines them in a fixed order.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from switchboard.framework.checkpointer import CheckpointerProtocol
from switchboard.framework.engine import CompiledGraph
from switchboard.framework.graph import START, StateGraph
from switchboard.framework.state import Message, MergePolicy, StateField, StateSchema
from switchboard.models.client import ChatModelProtocol
from switchboard.workflows.prompts import render


class WriterStage(str, Enum):
    WRITE_JOKE = "write_joke"
    WRITE_STORY = "write_story"
    WRITE_POEM = "write_poem"
    AGGREGATOR = "aggregator"


PARALLELIZATION_SCHEMA = StateSchema(
    StateField("topic"),
    StateField("joke", turn_scoped=True),
    StateField("story", turn_scoped=True),
    StateField("poem", turn_scoped=True),
    # Every writer also appends its piece here
    StateField("outputs", policy=MergePolicy.APPEND, turn_scoped=True),
    StateField("combined_output", turn_scoped=True),
)


def aggregate(state: dict[str, Any]) -> dict[str, Any]:
    combined = render(
        "parallelization",
        "combined",
        topic=state["topic"],
        story=state["story"],
        joke=state["joke"],
        poem=state["poem"],
    )
    return {"combined_output": combined}


def build_parallelization_graph(
    model: ChatModelProtocol,
    checkpointer: Optional[CheckpointerProtocol] = None,
    **config: Any,
) -> CompiledGraph:
    def writer(kind: str):
        async def write(state: dict[str, Any]) -> dict[str, Any]:
            prompt = render("parallelization", kind, topic=state["topic"])
            text = await model.complete([Message.user(prompt)])
            return {kind: text, "outputs": [text]}

        write.__name__ = f"write_{kind}"
        return write

    graph = StateGraph(PARALLELIZATION_SCHEMA, stages=WriterStage, name="parallelization")
    graph.add_node(WriterStage.WRITE_JOKE, writer("joke"))
    graph.add_node(WriterStage.WRITE_STORY, writer("story"))
    graph.add_node(WriterStage.WRITE_POEM, writer("poem"))
    graph.add_node(WriterStage.AGGREGATOR, aggregate)

    graph.add_fan_out(
        START,
        [WriterStage.WRITE_JOKE, WriterStage.WRITE_STORY, WriterStage.WRITE_POEM],
        join=WriterStage.AGGREGATOR,
    )
    graph.add_edge(WriterStage.WRITE_JOKE, WriterStage.AGGREGATOR)
    graph.add_edge(WriterStage.WRITE_STORY, WriterStage.AGGREGATOR)
    graph.add_edge(WriterStage.WRITE_POEM, WriterStage.AGGREGATOR)
    graph.set_finish_point(WriterStage.AGGREGATOR)

    return graph.compile(checkpointer=checkpointer, **config)
