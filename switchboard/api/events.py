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

"""Request payloads and stream events exchanged with clients.

Field names on the wire are camelCase (threadId, stepCount, totalSteps);
models accept either spelling on input and emit camelCase with
``model_dump(by_alias=True)``.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from switchboard.core.errors import SwitchboardError
from switchboard.framework.engine import CompiledGraph, RunHandle, error_details
from switchboard.workflows.support import last_reply

logger = logging.getLogger(__name__)


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# =============================================================================
# Requests
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "healthy"
    version: str = "0.1.0"


class ChatRequest(_WireModel):
    """New user message, optionally continuing an existing thread."""

    message: str = Field(min_length=1)
    thread_id: Optional[str] = Field(default=None, alias="threadId")


class ResumeRequest(_WireModel):
    """Resume a paused thread with an authorization decision."""

    thread_id: str = Field(alias="threadId", min_length=1)
    authorization: bool
    message: Optional[str] = None


class WorkflowRequest(_WireModel):
    """Invocation of a registered workflow."""

    inputs: dict[str, Any] = Field(default_factory=dict)
    thread_id: Optional[str] = Field(default=None, alias="threadId")


# =============================================================================
# Stream events
# =============================================================================


class ResponseEvent(_WireModel):
    """One executed stage."""

    type: Literal["response"] = "response"
    thread_id: str = Field(alias="threadId")
    step_count: int = Field(alias="stepCount")
    step: int
    representative: str
    content: Optional[str] = None
    delta: dict[str, Any] = Field(default_factory=dict)


class InterruptedEvent(_WireModel):
    """Run paused; resume the thread to continue."""

    type: Literal["interrupted"] = "interrupted"
    thread_id: str = Field(alias="threadId")
    total_steps: int = Field(alias="totalSteps")
    reason: str
    node: str


class CompletedEvent(_WireModel):
    """Run reached the end of the workflow."""

    type: Literal["completed"] = "completed"
    thread_id: str = Field(alias="threadId")
    total_steps: int = Field(alias="totalSteps")


class ErrorEvent(_WireModel):
    """Run failed; details never include stack traces."""

    type: Literal["error"] = "error"
    content: str
    details: dict[str, Any] = Field(default_factory=dict)
    thread_id: Optional[str] = Field(default=None, alias="threadId")


StreamEvent = Union[ResponseEvent, InterruptedEvent, CompletedEvent, ErrorEvent]


def describe_delta(delta: dict[str, Any]) -> Optional[str]:
    """Human-readable content of a stage delta.

    The last assistant reply if the stage spoke, otherwise the first text
    value it wrote.
    """
    reply = last_reply(delta)
    if reply is not None:
        return reply
    for value in delta.values():
        if isinstance(value, str):
            return value
    return None


async def stream_events(graph: CompiledGraph, handle: RunHandle) -> AsyncIterator[StreamEvent]:
    """Translate a run into client events, in stage execution order.

    Yields one ResponseEvent per stage, then exactly one terminal event
    (CompletedEvent, InterruptedEvent or ErrorEvent).
    """
    step_count = 0
    try:
        async for result in handle:
            step_count += 1
            yield ResponseEvent(
                thread_id=handle.thread_id,
                step_count=step_count,
                step=result.step,
                representative=result.node_name,
                content=describe_delta(result.state_delta),
                delta=graph.dump_state(result.state_delta),
            )
    except SwitchboardError as e:
        # Rejected before any stage ran (unknown thread, invalid input)
        logger.warning(f"Run on thread {handle.thread_id} rejected: {e}")
        yield ErrorEvent(content=e.message, details=e.to_dict(), thread_id=handle.thread_id)
        return

    outcome = handle.outcome
    if outcome is None:
        return

    if outcome.interrupted and outcome.interrupt is not None:
        yield InterruptedEvent(
            thread_id=outcome.thread_id,
            total_steps=step_count,
            reason=outcome.interrupt.reason,
            node=outcome.interrupt.node,
        )
    elif outcome.failed:
        yield ErrorEvent(
            content="Failed to process message",
            details=error_details(outcome.error) if outcome.error else {},
            thread_id=outcome.thread_id,
        )
    else:
        logger.info(f"Stream completed. Total steps: {step_count}")
        yield CompletedEvent(thread_id=outcome.thread_id, total_steps=step_count)


__all__ = [
    "HealthResponse",
    "ChatRequest",
    "ResumeRequest",
    "WorkflowRequest",
    "ResponseEvent",
    "InterruptedEvent",
    "CompletedEvent",
    "ErrorEvent",
    "StreamEvent",
    "describe_delta",
    "stream_events",
]
