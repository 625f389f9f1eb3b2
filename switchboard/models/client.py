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

"""Chat model clients.

Stages talk to a language model through ChatModelProtocol. The default
implementation posts to any OpenAI-compatible ``/chat/completions`` endpoint
(Together AI unless configured otherwise) with httpx, and maps transport and
provider failures onto ExternalCallFailure / ModelTimeoutError.

Structured ("augmented") calls ask the model for a JSON object and validate
it with a pydantic model. Output that does not parse raises
ClassificationDecodeError; there is no fallback value.

Tool-bound calls go through chat(): the model may answer with tool calls,
returned as Message.tool_calls for the caller to execute.

Example:
    model = create_chat_model(load_settings())
    text = await model.complete([Message.system("Be brief."), Message.user("Hi")])

    class Route(BaseModel):
        next_representative: Representative = Field(alias="nextRepresentative")

    route = await complete_structured(model, messages, Route)
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, Protocol, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from switchboard.core.errors import (
    ClassificationDecodeError,
    ExternalCallFailure,
    ModelTimeoutError,
)
from switchboard.framework.state import Message, ToolCall

if TYPE_CHECKING:
    from switchboard.config.settings import Settings

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class ChatModelProtocol(Protocol):
    """Minimal chat completion interface used by workflow stages."""

    async def complete(self, messages: list[Message], *, json_mode: bool = False) -> str:
        """Return the assistant's reply text for messages."""
        ...

    async def chat(
        self, messages: list[Message], *, tools: Optional[list["ToolDefinition"]] = None
    ) -> Message:
        """Return the assistant's reply, including any requested tool calls."""
        ...


@dataclass(frozen=True)
class ToolDefinition:
    """A tool the model may call.

    Attributes:
        name: Function name the model calls
        description: What the tool does
        parameters: JSON Schema of the arguments object
    """

    name: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    @classmethod
    def from_model(
        cls, name: str, description: str, arguments: type[BaseModel]
    ) -> "ToolDefinition":
        """Build a definition whose parameters are a pydantic model's schema."""
        return cls(name=name, description=description, parameters=arguments.model_json_schema())

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def to_wire(message: Message) -> dict[str, Any]:
    """Convert a Message to the OpenAI chat message format."""
    content = message.content
    data: dict[str, Any] = {
        "role": message.role.value,
        "content": content if isinstance(content, str) else json.dumps(content),
    }
    if message.tool_call_id is not None:
        data["tool_call_id"] = message.tool_call_id
    if message.tool_calls:
        data["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
            }
            for call in message.tool_calls
        ]
    return data


class OpenAICompatibleModel:
    """Chat model backed by an OpenAI-compatible HTTP API."""

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: Optional[str] = None,
        temperature: float = 0.0,
        max_tokens: int = 1024,
        timeout: float = 60.0,
        provider: str = "together",
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the model client.

        Args:
            model: Model identifier sent with every request
            base_url: API root, e.g. https://api.together.xyz/v1
            api_key: Bearer token (omitted from requests if None)
            temperature: Sampling temperature
            max_tokens: Completion token limit
            timeout: Deadline in seconds for a single call
            provider: Provider label used in errors and logs
            client: Pre-built httpx client (tests inject a MockTransport here)
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.provider = provider
        self._api_key = api_key
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=httpx.Timeout(self.timeout),
            )
        return self._client

    async def complete(self, messages: list[Message], *, json_mode: bool = False) -> str:
        """Send a chat completion request.

        Args:
            messages: Conversation so far
            json_mode: Ask the provider to constrain output to a JSON object

        Returns:
            Assistant reply text

        Raises:
            ModelTimeoutError: If the call exceeded its deadline
            ExternalCallFailure: On connection errors, non-2xx responses or
                malformed response bodies
        """
        payload = self._build_payload(messages)
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        content = (await self._request(payload)).get("content")
        logger.debug(f"{self.provider} completion: {len(content or '')} chars")
        return content or ""

    async def chat(
        self, messages: list[Message], *, tools: Optional[list[ToolDefinition]] = None
    ) -> Message:
        """Send a chat completion request with tools bound.

        Args:
            messages: Conversation so far, including earlier tool results
            tools: Tools the model may call (tool_choice is "auto")

        Returns:
            Assistant message; tool_calls holds any calls the model requested

        Raises:
            ModelTimeoutError: If the call exceeded its deadline
            ExternalCallFailure: On transport errors, non-2xx responses or
                malformed response bodies and tool calls
        """
        payload = self._build_payload(messages)
        if tools:
            payload["tools"] = [tool.to_wire() for tool in tools]
            payload["tool_choice"] = "auto"

        message = await self._request(payload)
        tool_calls = self._normalize_tool_calls(message.get("tool_calls") or [])
        if tool_calls:
            logger.debug(
                f"{self.provider} requested tool(s): {', '.join(c.name for c in tool_calls)}"
            )
        return Message.assistant(message.get("content") or "", tool_calls=tool_calls)

    def _build_payload(self, messages: list[Message]) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [to_wire(m) for m in messages],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

    def _normalize_tool_calls(self, raw_calls: list[dict[str, Any]]) -> list[ToolCall]:
        """Convert OpenAI-format tool calls, decoding their JSON arguments."""
        calls: list[ToolCall] = []
        for raw in raw_calls:
            try:
                function = raw["function"]
                arguments = function.get("arguments") or {}
                if isinstance(arguments, str):
                    arguments = json.loads(arguments) if arguments.strip() else {}
                if not isinstance(arguments, dict):
                    raise TypeError(f"arguments must be an object, got {type(arguments).__name__}")
                calls.append(ToolCall(id=raw["id"], name=function["name"], arguments=arguments))
            except (ValueError, KeyError, TypeError) as e:
                raise ExternalCallFailure(
                    f"Malformed tool call from {self.provider}: {raw!r}",
                    provider=self.provider,
                    cause=e,
                ) from e
        return calls

    async def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        """POST a completion request and return the first choice's message."""
        client = self._get_client()
        try:
            response = await client.post("/chat/completions", json=payload)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.error(f"Model request to {self.provider} timed out after {self.timeout}s")
            raise ModelTimeoutError(
                f"{self.provider} request timed out", provider=self.provider, timeout=self.timeout
            ) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"Model request to {self.provider} failed with HTTP {status}")
            raise ExternalCallFailure(
                f"{self.provider} returned HTTP {status}",
                provider=self.provider,
                status_code=status,
                cause=e,
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Model request to {self.provider} failed: {e}")
            raise ExternalCallFailure(
                f"Failed to reach {self.provider}: {e}", provider=self.provider, cause=e
            ) from e

        try:
            message = response.json()["choices"][0]["message"]
            if not isinstance(message, dict):
                raise TypeError(f"message must be an object, got {type(message).__name__}")
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExternalCallFailure(
                f"Malformed completion response from {self.provider}",
                provider=self.provider,
                cause=e,
            ) from e
        return message

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _expected_values(response_model: type[BaseModel]) -> list[str]:
    values: list[str] = []
    for info in response_model.model_fields.values():
        annotation = info.annotation
        if isinstance(annotation, type) and issubclass(annotation, Enum):
            values.extend(str(member.value) for member in annotation)
    return values


def parse_structured(raw: str, response_model: type[ModelT]) -> ModelT:
    """Validate a model reply against response_model.

    Markdown code fences and text around the outermost JSON object are
    ignored.

    Raises:
        ClassificationDecodeError: If the reply is not conforming JSON
    """
    text = _FENCE.sub("", raw.strip())
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        text = text[start : end + 1]

    try:
        return response_model.model_validate_json(text)
    except ValidationError as e:
        expected = _expected_values(response_model)
        logger.warning(f"Could not decode {response_model.__name__} from model output: {raw!r}")
        raise ClassificationDecodeError(
            f"Model output does not match {response_model.__name__}: "
            f"{e.error_count()} validation error(s)",
            raw_output=raw,
            expected=expected,
            cause=e,
        ) from e


async def complete_structured(
    model: ChatModelProtocol,
    messages: list[Message],
    response_model: type[ModelT],
) -> ModelT:
    """Ask the model for a JSON object and validate it.

    Raises:
        ClassificationDecodeError: If the reply does not validate
        ExternalCallFailure: If the model call itself failed
    """
    raw = await model.complete(messages, json_mode=True)
    return parse_structured(raw, response_model)


def create_chat_model(settings: "Settings") -> OpenAICompatibleModel:
    """Build the configured chat model client."""
    logger.info(f"Using {settings.model_provider} model {settings.model_name}")
    return OpenAICompatibleModel(
        model=settings.model_name,
        base_url=settings.model_base_url,
        api_key=settings.model_api_key,
        temperature=settings.model_temperature,
        max_tokens=settings.model_max_tokens,
        timeout=settings.model_timeout,
        provider=settings.model_provider,
    )


__all__ = [
    "ChatModelProtocol",
    "ToolDefinition",
    "OpenAICompatibleModel",
    "to_wire",
    "parse_structured",
    "complete_structured",
    "create_chat_model",
]
