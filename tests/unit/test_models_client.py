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

"""Tests for the OpenAI-compatible chat model client."""

import json

import httpx
import pytest
from pydantic import BaseModel

from switchboard.config.settings import Settings
from switchboard.core.errors import (
    ClassificationDecodeError,
    ExternalCallFailure,
    ModelTimeoutError,
)
from switchboard.framework.state import Message, Role, ToolCall
from switchboard.models.client import (
    OpenAICompatibleModel,
    ToolDefinition,
    complete_structured,
    create_chat_model,
    parse_structured,
    to_wire,
)
from switchboard.workflows.support import InitialRoute, Representative

BASE_URL = "https://llm.test/v1"


def completion(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def make_model(handler, **kwargs):
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return OpenAICompatibleModel(
        model="test-model", base_url=BASE_URL, provider="test", client=client, **kwargs
    )


class TestToWire:
    """Tests for message conversion."""

    def test_plain_message(self):
        """Test role and content are emitted."""
        assert to_wire(Message.user("hi")) == {"role": "user", "content": "hi"}

    def test_tool_calls_and_results(self):
        """Test tool calls and tool results use the OpenAI shape."""
        call = ToolCall(id="call-1", name="lookup", arguments={"order": 7})
        wire = to_wire(Message.assistant("", tool_calls=[call]))
        result = to_wire(Message.tool({"status": "shipped"}, tool_call_id="call-1"))

        assert wire["tool_calls"][0]["function"] == {
            "name": "lookup",
            "arguments": json.dumps({"order": 7}),
        }
        assert result == {
            "role": "tool",
            "content": json.dumps({"status": "shipped"}),
            "tool_call_id": "call-1",
        }


class TestComplete:
    """Tests for OpenAICompatibleModel.complete()."""

    @pytest.mark.asyncio
    async def test_success(self):
        """Test the reply text is returned and the request is well-formed."""
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return httpx.Response(200, json=completion("Hello!"))

        model = make_model(handler, temperature=0.3)

        reply = await model.complete([Message.user("Hi")], json_mode=True)
        await model.close()

        assert reply == "Hello!"
        body = requests[0]
        assert body["model"] == "test-model"
        assert body["messages"] == [{"role": "user", "content": "Hi"}]
        assert body["temperature"] == 0.3
        assert body["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        """Test 5xx responses map to a retryable ExternalCallFailure."""
        model = make_model(lambda request: httpx.Response(503, text="overloaded"))

        with pytest.raises(ExternalCallFailure) as exc_info:
            await model.complete([Message.user("Hi")])

        assert exc_info.value.status_code == 503
        assert exc_info.value.provider == "test"
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_client_error_is_not_retryable(self):
        """Test 4xx responses other than 429 are final."""
        model = make_model(lambda request: httpx.Response(401, json={"error": "bad key"}))

        with pytest.raises(ExternalCallFailure) as exc_info:
            await model.complete([Message.user("Hi")])

        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Test transport timeouts map to ModelTimeoutError."""

        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        model = make_model(handler, timeout=5.0)

        with pytest.raises(ModelTimeoutError) as exc_info:
            await model.complete([Message.user("Hi")])

        assert exc_info.value.timeout == 5.0

    @pytest.mark.asyncio
    async def test_connection_error(self):
        """Test connection failures map to ExternalCallFailure."""

        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        model = make_model(handler)

        with pytest.raises(ExternalCallFailure, match="Failed to reach test"):
            await model.complete([Message.user("Hi")])

    @pytest.mark.asyncio
    async def test_malformed_body(self):
        """Test a response without choices is an ExternalCallFailure."""
        model = make_model(lambda request: httpx.Response(200, json={"unexpected": True}))

        with pytest.raises(ExternalCallFailure, match="Malformed"):
            await model.complete([Message.user("Hi")])


class TestChat:
    """Tests for OpenAICompatibleModel.chat() with tools bound."""

    MULTIPLY = ToolDefinition(
        name="multiply",
        description="multiplies two numbers together",
        parameters={
            "type": "object",
            "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
            "required": ["a", "b"],
        },
    )

    @pytest.mark.asyncio
    async def test_tools_sent_and_tool_calls_parsed(self):
        """Test tool definitions are sent and returned calls are decoded."""
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={
                    "choices": [
                        {
                            "message": {
                                "role": "assistant",
                                "content": None,
                                "tool_calls": [
                                    {
                                        "id": "call_123",
                                        "type": "function",
                                        "function": {
                                            "name": "multiply",
                                            "arguments": '{"a": 2, "b": 3}',
                                        },
                                    }
                                ],
                            },
                            "finish_reason": "tool_calls",
                        }
                    ]
                },
            )

        model = make_model(handler)

        reply = await model.chat([Message.user("What is 2 times 3")], tools=[self.MULTIPLY])

        assert reply.role == Role.ASSISTANT
        assert reply.content == ""
        assert reply.tool_calls == (
            ToolCall(id="call_123", name="multiply", arguments={"a": 2, "b": 3}),
        )
        body = requests[0]
        assert body["tools"] == [self.MULTIPLY.to_wire()]
        assert body["tools"][0]["type"] == "function"
        assert body["tools"][0]["function"]["name"] == "multiply"
        assert body["tool_choice"] == "auto"
        assert "response_format" not in body

    @pytest.mark.asyncio
    async def test_plain_reply_has_no_tool_calls(self):
        """Test a text answer comes back without tool calls or a tools payload."""
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return httpx.Response(200, json=completion("6"))

        model = make_model(handler)

        reply = await model.chat([Message.user("What is 2 times 3")])

        assert reply == Message.assistant("6")
        assert "tools" not in requests[0]

    @pytest.mark.asyncio
    async def test_malformed_tool_arguments(self):
        """Test tool call arguments that are not a JSON object are an ExternalCallFailure."""
        body = {
            "choices": [
                {
                    "message": {
                        "role": "assistant",
                        "content": "",
                        "tool_calls": [
                            {
                                "id": "call_1",
                                "type": "function",
                                "function": {"name": "multiply", "arguments": "{not json"},
                            }
                        ],
                    }
                }
            ]
        }
        model = make_model(lambda request: httpx.Response(200, json=body))

        with pytest.raises(ExternalCallFailure, match="Malformed tool call"):
            await model.chat([Message.user("hi")], tools=[self.MULTIPLY])

    def test_definition_from_pydantic_model(self):
        """Test parameters are taken from the arguments model's JSON schema."""

        class Arguments(BaseModel):
            a: float
            b: float

        definition = ToolDefinition.from_model("multiply", "multiplies", Arguments)

        assert definition.parameters["properties"].keys() == {"a", "b"}
        assert definition.parameters["required"] == ["a", "b"]


class TestStructuredOutput:
    """Tests for parse_structured() and complete_structured()."""

    class Plan(BaseModel):
        steps: list[str]

    def test_plain_json(self):
        """Test a bare JSON object validates."""
        assert parse_structured('{"steps": ["a", "b"]}', self.Plan).steps == ["a", "b"]

    def test_surrounding_text_ignored(self):
        """Test text around the JSON object is dropped."""
        raw = 'Here you go: {"nextRepresentative": "BILLING"} Hope that helps.'

        assert parse_structured(raw, InitialRoute).next_representative == Representative.BILLING

    def test_not_json(self):
        """Test prose raises ClassificationDecodeError with the raw output."""
        with pytest.raises(ClassificationDecodeError) as exc_info:
            parse_structured("BILLING", InitialRoute)

        assert exc_info.value.raw_output == "BILLING"
        assert exc_info.value.expected == ["BILLING", "TECHNICAL", "RESPOND"]

    def test_missing_field(self):
        """Test a JSON object without the decision is rejected."""
        with pytest.raises(ClassificationDecodeError):
            parse_structured('{"route": "BILLING"}', InitialRoute)

    @pytest.mark.asyncio
    async def test_complete_structured_requests_json(self, scripted_model):
        """Test structured calls ask for JSON mode."""
        model = scripted_model(['{"nextRepresentative": "RESPOND"}'])

        route = await complete_structured(model, [Message.user("hi")], InitialRoute)

        assert route.next_representative == Representative.RESPOND
        assert model.calls[0]["json_mode"] is True


class TestCreateChatModel:
    """Tests for create_chat_model()."""

    def test_uses_settings(self):
        """Test the client is configured from settings."""
        settings = Settings(
            _env_file=None,
            model_provider="local",
            model_base_url="http://localhost:11434/v1/",
            model_name="llama3",
            model_timeout=5,
        )

        model = create_chat_model(settings)

        assert model.provider == "local"
        assert model.base_url == "http://localhost:11434/v1"
        assert model.model == "llama3"
        assert model.timeout == 5
