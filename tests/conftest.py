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

"""Shared pytest fixtures and configuration."""

from typing import Any, Callable, Union

import pytest

from switchboard.framework.checkpointer import MemoryCheckpointer
from switchboard.framework.state import Message


class ScriptedChatModel:
    """Chat model double that replays scripted replies in order.

    A reply may be a string, a Message (for chat()), an exception instance
    (raised instead), or a callable receiving the request messages. Every
    request is recorded.
    """

    def __init__(self, replies: list[Union[str, Message, BaseException, Callable[..., Any]]]):
        self.replies = list(replies)
        self.calls: list[dict[str, Any]] = []

    async def complete(self, messages: list[Message], *, json_mode: bool = False) -> str:
        self.calls.append({"messages": list(messages), "json_mode": json_mode})
        return self._next_reply(messages)

    async def chat(self, messages: list[Message], *, tools=None) -> Message:
        """Replay a reply as an assistant Message; Message replies pass through."""
        self.calls.append({"messages": list(messages), "tools": list(tools or [])})
        reply = self._next_reply(messages)
        return reply if isinstance(reply, Message) else Message.assistant(reply)

    def _next_reply(self, messages: list[Message]) -> Any:
        if not self.replies:
            raise AssertionError(f"Unexpected model call #{len(self.calls)}")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return reply(messages)
        return reply

    async def close(self) -> None:
        pass

    @property
    def remaining(self) -> int:
        return len(self.replies)


@pytest.fixture(autouse=True)
def isolate_environment_variables(monkeypatch):
    """Keep tests independent of .env files and SWITCHBOARD_* variables."""
    monkeypatch.setenv("SWITCHBOARD_SKIP_ENV_FILE", "1")
    for var in (
        "SWITCHBOARD_MODEL_API_KEY",
        "SWITCHBOARD_MODEL_BASE_URL",
        "SWITCHBOARD_MODEL_NAME",
        "SWITCHBOARD_CHECKPOINT_BACKEND",
        "SWITCHBOARD_MAX_STEPS",
        "SWITCHBOARD_LOG_LEVEL",
    ):
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def scripted_model():
    """Factory for ScriptedChatModel instances."""
    return ScriptedChatModel


@pytest.fixture
def checkpointer():
    """Fresh in-memory thread store."""
    return MemoryCheckpointer()
