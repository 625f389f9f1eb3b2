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

"""Conversation state: messages, declared fields and merge policies.

State is a plain dict threaded through a run. Its keys are declared up front
by a StateSchema, and every field names its merge policy explicitly:

    - REPLACE: last write wins
    - APPEND: lists are concatenated, prior items are never dropped

Stage functions return partial deltas; the engine folds them into the running
state with StateSchema.merge(). Deltas naming undeclared fields are rejected
instead of being silently stored.

Example:
    schema = StateSchema(
        messages_field(),
        StateField("next_representative"),
        StateField("refund_authorized", default=False, external=True, turn_scoped=True),
    )

    state = schema.initial_state({"messages": [Message.user("hi")]})
    state = schema.merge(state, {"messages": [Message.assistant("hello")]})
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from switchboard.core.errors import StateSchemaError

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Author of a conversation message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by an assistant message."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": dict(self.arguments)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        return cls(id=data["id"], name=data["name"], arguments=data.get("arguments", {}))


@dataclass(frozen=True)
class Message:
    """Single conversation message.

    Attributes:
        role: Author of the message
        content: Text, or a structured payload for tool traffic
        tool_call_id: For tool results, the id of the call being answered
        name: Representative label that produced the message, if any
        tool_calls: Tool invocations requested by an assistant message
    """

    role: Role
    content: Any
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    tool_calls: tuple[ToolCall, ...] = ()

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(
        cls,
        content: Any,
        name: Optional[str] = None,
        tool_calls: Optional[list[ToolCall]] = None,
    ) -> "Message":
        return cls(
            role=Role.ASSISTANT,
            content=content,
            name=name,
            tool_calls=tuple(tool_calls or ()),
        )

    @classmethod
    def tool(cls, content: Any, tool_call_id: str) -> "Message":
        return cls(role=Role.TOOL, content=content, tool_call_id=tool_call_id)

    def to_dict(self) -> dict[str, Any]:
        """Serialize message to a JSON-compatible dictionary."""
        data: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            data["name"] = self.name
        if self.tool_calls:
            data["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        """Deserialize message from dictionary."""
        return cls(
            role=Role(data["role"]),
            content=data.get("content", ""),
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
            tool_calls=tuple(ToolCall.from_dict(c) for c in data.get("tool_calls", [])),
        )


def validate_tool_messages(messages: list[Message]) -> None:
    """Check that every tool result answers an outstanding call.

    A tool message must follow (directly, or after sibling tool results) an
    assistant message that requested a call with the same id, and each call
    can be answered only once.

    Raises:
        StateSchemaError: If a tool message has no matching outstanding call
    """
    outstanding: set[str] = set()
    for index, message in enumerate(messages):
        if message.role == Role.TOOL:
            if message.tool_call_id is None or message.tool_call_id not in outstanding:
                raise StateSchemaError(
                    f"Tool message at index {index} answers unknown call "
                    f"'{message.tool_call_id}'",
                    field_name="messages",
                )
            outstanding.discard(message.tool_call_id)
        elif message.role == Role.ASSISTANT:
            outstanding = {call.id for call in message.tool_calls}
        else:
            outstanding = set()


class MergePolicy(str, Enum):
    """How a delta value is combined with the existing field value."""

    REPLACE = "replace"
    APPEND = "append"


@dataclass(frozen=True)
class StateField:
    """Declaration of a single state field.

    Attributes:
        name: Key in the state dict
        policy: Merge policy applied to deltas
        default: Initial value (copied per state)
        default_factory: Callable producing the initial value
        external: Written only by callers (e.g. authorization flags); a stage
            delta touching it is rejected
        turn_scoped: Reset to its initial value when a completed thread
            starts a new turn (e.g. a one-shot authorization)
        encode: Converts the value to a JSON-compatible form for checkpoints
        decode: Inverse of encode
        validator: Called with the merged value; raises StateSchemaError
    """

    name: str
    policy: MergePolicy = MergePolicy.REPLACE
    default: Any = None
    default_factory: Optional[Callable[[], Any]] = None
    external: bool = False
    turn_scoped: bool = False
    encode: Optional[Callable[[Any], Any]] = None
    decode: Optional[Callable[[Any], Any]] = None
    validator: Optional[Callable[[Any], None]] = None

    def initial(self) -> Any:
        if self.default_factory is not None:
            return self.default_factory()
        if self.policy == MergePolicy.APPEND and self.default is None:
            return []
        return copy.deepcopy(self.default)


def _encode_messages(messages: list[Message]) -> list[dict[str, Any]]:
    return [m.to_dict() for m in messages]


def _decode_messages(data: list[dict[str, Any]]) -> list[Message]:
    return [Message.from_dict(m) for m in data]


def messages_field(name: str = "messages") -> StateField:
    """Declare an append-only list of Message objects."""
    return StateField(
        name=name,
        policy=MergePolicy.APPEND,
        default_factory=list,
        encode=_encode_messages,
        decode=_decode_messages,
        validator=validate_tool_messages,
    )


class StateSchema:
    """Declared fields of a workflow's conversation state."""

    def __init__(self, *fields: StateField):
        self._fields: dict[str, StateField] = {}
        for state_field in fields:
            if state_field.name in self._fields:
                raise StateSchemaError(
                    f"Field '{state_field.name}' declared twice", field_name=state_field.name
                )
            self._fields[state_field.name] = state_field

    @property
    def fields(self) -> dict[str, StateField]:
        return dict(self._fields)

    def __contains__(self, name: object) -> bool:
        return name in self._fields

    def __repr__(self) -> str:
        return f"StateSchema({', '.join(self._fields)})"

    def initial_state(self, values: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Build a state with every field at its default, then merge values.

        Values are merged as an external (caller) update, so external fields
        such as authorization flags may be set here.
        """
        state = {name: f.initial() for name, f in self._fields.items()}
        if values:
            state = self.merge(state, values, external=True)
        return state

    def start_turn(self, state: dict[str, Any]) -> dict[str, Any]:
        """Return state with every turn-scoped field back at its initial value.

        Called when a completed thread receives a new turn, so authorizations
        and per-run counters never carry over from a previous turn.
        """
        reset = dict(state)
        for name, state_field in self._fields.items():
            if state_field.turn_scoped:
                reset[name] = state_field.initial()
        return reset

    def merge(
        self,
        state: dict[str, Any],
        delta: Optional[dict[str, Any]],
        *,
        external: bool = False,
    ) -> dict[str, Any]:
        """Fold a partial delta into state using each field's policy.

        The input state is not mutated.

        Args:
            state: Current state
            delta: Partial update returned by a stage or supplied by a caller
            external: True when the delta comes from outside the graph

        Returns:
            New merged state

        Raises:
            StateSchemaError: If the delta names an undeclared field, a stage
                writes an external field, or an APPEND value is not a list
        """
        if not delta:
            return dict(state)

        merged = dict(state)
        for key, value in delta.items():
            state_field = self._fields.get(key)
            if state_field is None:
                raise StateSchemaError(
                    f"Undeclared state field '{key}'. Declared: {sorted(self._fields)}",
                    field_name=key,
                )
            if state_field.external and not external:
                raise StateSchemaError(
                    f"Field '{key}' can only be set by an external caller", field_name=key
                )

            if state_field.policy == MergePolicy.APPEND:
                if not isinstance(value, (list, tuple)):
                    raise StateSchemaError(
                        f"Append field '{key}' expects a list, got {type(value).__name__}",
                        field_name=key,
                    )
                current = merged.get(key) or []
                merged[key] = [*current, *value]
            else:
                merged[key] = value

            if state_field.validator is not None:
                state_field.validator(merged[key])

        return merged

    def dump(self, state: dict[str, Any]) -> dict[str, Any]:
        """Convert state to a JSON-compatible dict for checkpoints."""
        data: dict[str, Any] = {}
        for name, value in state.items():
            state_field = self._fields.get(name)
            if state_field is not None and state_field.encode is not None and value is not None:
                data[name] = state_field.encode(value)
            else:
                data[name] = value
        return data

    def load(self, data: dict[str, Any]) -> dict[str, Any]:
        """Inverse of dump(); missing fields fall back to defaults."""
        state = {name: f.initial() for name, f in self._fields.items()}
        for name, value in data.items():
            state_field = self._fields.get(name)
            if state_field is None:
                logger.warning(f"Dropping unknown field '{name}' from checkpoint")
                continue
            if state_field.decode is not None and value is not None:
                state[name] = state_field.decode(value)
            else:
                state[name] = value
        return state


__all__ = [
    "Role",
    "ToolCall",
    "Message",
    "validate_tool_messages",
    "MergePolicy",
    "StateField",
    "StateSchema",
    "messages_field",
]
