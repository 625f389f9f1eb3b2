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

"""
Switchboard - chat orchestration workflows with resumable conversations.

A conversation is routed through named stages ("representatives") of a
fixed workflow graph. Each stage may call a language model, classify its own
output and pick the next stage. Conversations are checkpointed per thread id
at every stage boundary, so a run paused for human authorization (or stopped
by a failure) resumes at exactly the stage it stopped in.

Example:
    from switchboard import MemoryCheckpointer, Message, build_support_graph
    from switchboard.models.client import create_chat_model
    from switchboard.config.settings import load_settings

    app = build_support_graph(create_chat_model(load_settings()), MemoryCheckpointer())
    outcome = await app.invoke({"messages": [Message.user("I was charged twice")]})
"""

__version__ = "0.1.0"
__license__ = "Apache-2.0"

from switchboard.core.errors import (
    ClassificationDecodeError,
    ExternalCallFailure,
    GraphDefinitionError,
    RoutingError,
    SwitchboardError,
)
from switchboard.framework import (
    END,
    START,
    CompiledGraph,
    MemoryCheckpointer,
    Message,
    OutcomeStatus,
    RunOutcome,
    SQLiteCheckpointer,
    StageResult,
    StateGraph,
    interrupt,
)
from switchboard.workflows.support import build_support_graph

__all__ = [
    "__version__",
    "SwitchboardError",
    "GraphDefinitionError",
    "RoutingError",
    "ClassificationDecodeError",
    "ExternalCallFailure",
    "StateGraph",
    "CompiledGraph",
    "StageResult",
    "RunOutcome",
    "OutcomeStatus",
    "Message",
    "MemoryCheckpointer",
    "SQLiteCheckpointer",
    "interrupt",
    "END",
    "START",
    "build_support_graph",
]
