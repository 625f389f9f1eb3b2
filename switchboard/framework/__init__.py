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

"""Workflow framework: state, graph builder, execution engine and thread stores."""

from switchboard.framework.checkpointer import (
    CheckpointerProtocol,
    MemoryCheckpointer,
    SQLiteCheckpointer,
    ThreadCheckpoint,
    ThreadStatus,
    create_checkpointer,
)
from switchboard.framework.engine import (
    CompiledGraph,
    ExecutionConfig,
    OutcomeStatus,
    RunHandle,
    RunOutcome,
    StageResult,
    interrupt,
)
from switchboard.framework.graph import END, START, StateGraph
from switchboard.framework.state import (
    MergePolicy,
    Message,
    Role,
    StateField,
    StateSchema,
    messages_field,
)

__all__ = [
    "StateGraph",
    "CompiledGraph",
    "ExecutionConfig",
    "RunHandle",
    "RunOutcome",
    "OutcomeStatus",
    "StageResult",
    "interrupt",
    "END",
    "START",
    "Message",
    "Role",
    "MergePolicy",
    "StateField",
    "StateSchema",
    "messages_field",
    "CheckpointerProtocol",
    "MemoryCheckpointer",
    "SQLiteCheckpointer",
    "ThreadCheckpoint",
    "ThreadStatus",
    "create_checkpointer",
]
