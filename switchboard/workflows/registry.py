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

"""Registry of invocable workflows.

Each entry names a workflow, the input fields a caller must supply, whether
it streams per-stage results, and how to build its compiled graph. The API
and CLI expose exactly the workflows registered here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional

from switchboard.core.errors import StateSchemaError
from switchboard.core.retry import ExponentialBackoffStrategy, NoRetryStrategy
from switchboard.framework.checkpointer import CheckpointerProtocol
from switchboard.framework.engine import CompiledGraph
from switchboard.models.client import ChatModelProtocol
from switchboard.workflows.augmented_llm import build_augmented_llm_graph, question_input
from switchboard.workflows.evaluator_optimizer import build_evaluator_optimizer_graph
from switchboard.workflows.orchestrator_worker import build_orchestrator_worker_graph
from switchboard.workflows.parallelization import build_parallelization_graph
from switchboard.workflows.prompt_chain import build_prompt_chain_graph
from switchboard.workflows.support import build_support_graph, chat_input

if TYPE_CHECKING:
    from switchboard.config.settings import Settings

logger = logging.getLogger(__name__)

GraphBuilder = Callable[..., CompiledGraph]


def _topic_input(payload: dict[str, Any]) -> dict[str, Any]:
    return dict(payload)


def _support_input(payload: dict[str, Any]) -> dict[str, Any]:
    return chat_input(payload["message"])


def _question_input(payload: dict[str, Any]) -> dict[str, Any]:
    return question_input(payload["question"])


def _refine_input(payload: dict[str, Any]) -> dict[str, Any]:
    delta = dict(payload)
    if "max_attempts" in delta:
        try:
            delta["max_attempts"] = int(delta["max_attempts"])
        except (TypeError, ValueError) as e:
            raise StateSchemaError(
                f"max_attempts must be an integer, got {delta['max_attempts']!r}",
                field_name="max_attempts",
            ) from e
    return delta


@dataclass(frozen=True)
class WorkflowSpec:
    """Description of one invocable workflow.

    Attributes:
        name: Public name (URL segment and CLI argument)
        description: One-line summary
        required_inputs: Fields a caller must supply
        streams: Whether per-stage results are streamed to callers
        builder: Builds the CompiledGraph from a model and thread store
        to_input: Converts validated caller fields into the run's input delta
        optional_inputs: Fields a caller may supply
    """

    name: str
    description: str
    required_inputs: tuple[str, ...]
    streams: bool
    builder: GraphBuilder
    to_input: Callable[[dict[str, Any]], dict[str, Any]] = _topic_input
    optional_inputs: tuple[str, ...] = field(default_factory=tuple)

    def make_input(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Validate caller fields and build the input delta.

        Raises:
            StateSchemaError: If a required field is missing or an unknown
                field is supplied
        """
        missing = [name for name in self.required_inputs if payload.get(name) in (None, "")]
        if missing:
            raise StateSchemaError(
                f"Workflow '{self.name}' requires input(s): {', '.join(missing)}",
                field_name=missing[0],
            )
        allowed = set(self.required_inputs) | set(self.optional_inputs)
        unknown = sorted(set(payload) - allowed)
        if unknown:
            raise StateSchemaError(
                f"Workflow '{self.name}' does not accept input(s): {', '.join(unknown)}",
                field_name=unknown[0],
            )
        return self.to_input(payload)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "required_inputs": list(self.required_inputs),
            "optional_inputs": list(self.optional_inputs),
            "streams": self.streams,
        }


WORKFLOWS: dict[str, WorkflowSpec] = {
    spec.name: spec
    for spec in (
        WorkflowSpec(
            name="customer-support",
            description="Route a customer through frontline, billing, technical and refund support",
            required_inputs=("message",),
            streams=True,
            builder=build_support_graph,
            to_input=_support_input,
        ),
        WorkflowSpec(
            name="augmented-llm",
            description="Plan a search query with structured output, then answer using tools",
            required_inputs=("question",),
            streams=True,
            builder=build_augmented_llm_graph,
            to_input=_question_input,
        ),
        WorkflowSpec(
            name="prompt-chain",
            description="Generate a joke, check it for a punchline, improve and polish it",
            required_inputs=("topic",),
            streams=False,
            builder=build_prompt_chain_graph,
        ),
        WorkflowSpec(
            name="parallelization",
            description="Write a joke, a story and a poem concurrently and combine them",
            required_inputs=("topic",),
            streams=False,
            builder=build_parallelization_graph,
        ),
        WorkflowSpec(
            name="orchestrator-worker",
            description="Plan report sections, write each in parallel, and synthesize",
            required_inputs=("topic",),
            streams=True,
            builder=build_orchestrator_worker_graph,
        ),
        WorkflowSpec(
            name="evaluator-optimizer",
            description="Rewrite a joke with evaluator feedback until it is graded funny",
            required_inputs=("topic",),
            streams=True,
            builder=build_evaluator_optimizer_graph,
            to_input=_refine_input,
            optional_inputs=("max_attempts",),
        ),
    )
}


def list_workflows() -> list[WorkflowSpec]:
    return list(WORKFLOWS.values())


def get_workflow(name: str) -> Optional[WorkflowSpec]:
    return WORKFLOWS.get(name)


def build_graphs(
    model: ChatModelProtocol,
    checkpointer: Optional[CheckpointerProtocol],
    settings: "Settings",
) -> dict[str, CompiledGraph]:
    """Compile every registered workflow with limits taken from settings."""
    if settings.model_max_retries > 0:
        retry = ExponentialBackoffStrategy(max_attempts=settings.model_max_retries + 1)
    else:
        retry = NoRetryStrategy()

    graphs = {
        name: spec.builder(
            model,
            checkpointer=checkpointer,
            retry=retry,
            max_steps=settings.max_steps,
            stage_timeout=settings.stage_timeout,
            fan_out_concurrency=settings.fan_out_concurrency,
        )
        for name, spec in WORKFLOWS.items()
    }
    logger.info(f"Compiled {len(graphs)} workflow(s): {', '.join(graphs)}")
    return graphs


__all__ = ["WorkflowSpec", "WORKFLOWS", "list_workflows", "get_workflow", "build_graphs"]
