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

"""Tests for the FastAPI server (HTTP, SSE and WebSocket)."""

import json

import pytest
from fastapi.testclient import TestClient

from switchboard import __version__
from switchboard.api.server import SwitchboardServer
from switchboard.config.settings import Settings
from switchboard.core.errors import ExternalCallFailure
from switchboard.framework.checkpointer import MemoryCheckpointer

REFUND_SCRIPT = [
    "Let me transfer you to billing.",
    '{"nextRepresentative": "BILLING"}',
    "I can refund that.",
    '{"nextRepresentative": "REFUND"}',
]


@pytest.fixture
def make_client(scripted_model):
    """Factory for a TestClient backed by scripted replies."""
    clients = []

    def factory(replies=()):
        server = SwitchboardServer(
            settings=Settings(_env_file=None, model_max_retries=0),
            model=scripted_model(list(replies)),
            checkpointer=MemoryCheckpointer(),
        )
        client = TestClient(server.app)
        client.server = server
        client.__enter__()
        clients.append(client)
        return client

    yield factory

    for client in clients:
        client.__exit__(None, None, None)


def sse_events(response):
    lines = [line for line in response.text.splitlines() if line.startswith("data: ")]
    assert lines[-1] == "data: [DONE]"
    return [json.loads(line[len("data: ") :]) for line in lines[:-1]]


class TestSystemEndpoints:
    """Tests for health and workflow discovery."""

    def test_health(self, make_client):
        """Test the health endpoint."""
        response = make_client().get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "version": __version__}

    def test_list_workflows(self, make_client):
        """Test every registered workflow is listed with its inputs."""
        workflows = make_client().get("/workflows").json()["workflows"]

        by_name = {w["name"]: w for w in workflows}
        assert set(by_name) == {
            "customer-support",
            "prompt-chain",
            "parallelization",
            "orchestrator-worker",
            "evaluator-optimizer",
            "augmented-llm",
        }
        assert by_name["customer-support"]["required_inputs"] == ["message"]
        assert by_name["customer-support"]["streams"] is True

    def test_workflow_graph(self, make_client):
        """Test the graph description endpoint."""
        graph = make_client().get("/workflows/customer-support/graph").json()

        assert graph["entry_point"] == "initial_support"
        assert "handle_refund" in graph["nodes"]

    def test_unknown_workflow(self, make_client):
        """Test unknown workflow names are 404."""
        assert make_client().get("/workflows/nope/graph").status_code == 404

    def test_unregistered_graph_is_not_invocable(self, make_client):
        """Test a compiled graph without a registry entry is a 404, not a server error."""
        client = make_client()
        server = client.server
        server.graphs["scratch"] = server.graphs["prompt-chain"]

        response = client.post("/workflows/scratch", json={"inputs": {"topic": "cats"}})

        assert response.status_code == 404
        assert response.json()["detail"] == "Unknown workflow: scratch"


class TestWorkflowEndpoints:
    """Tests for generic workflow invocation."""

    def test_run_prompt_chain(self, make_client):
        """Test a workflow runs to completion and returns its state."""
        client = make_client(["Why? Because!", "better", "best"])

        response = client.post("/workflows/prompt-chain", json={"inputs": {"topic": "cats"}})

        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "completed"
        assert body["state"]["final_joke"] == "best"
        assert body["node_history"] == ["generate_joke", "improve_joke", "polish_joke"]

    def test_run_augmented_llm(self, make_client):
        """Test the tool-calling workflow returns encoded messages."""
        client = make_client(['{"searchQuery": "q", "justification": "j"}', "Hello!"])

        response = client.post("/workflows/augmented-llm", json={"inputs": {"question": "Hi"}})

        body = response.json()
        assert body["status"] == "completed"
        assert body["state"]["answer"] == "Hello!"
        assert body["state"]["messages"][-1] == {"role": "assistant", "content": "Hello!"}

    def test_missing_input(self, make_client):
        """Test a missing required input is a 400 with a schema error."""
        response = make_client().post("/workflows/prompt-chain", json={"inputs": {}})

        assert response.status_code == 400
        assert response.json()["category"] == "state_schema"

    def test_failed_run_reports_error(self, make_client):
        """Test provider failures are reported in the outcome without a stack trace."""
        client = make_client([ExternalCallFailure("down", provider="test", status_code=500)])

        body = client.post("/workflows/prompt-chain", json={"inputs": {"topic": "x"}}).json()

        assert body["status"] == "failed"
        assert body["pending_node"] == "generate_joke"
        assert body["error"]["category"] == "external_call"
        assert "Traceback" not in json.dumps(body)

    def test_stream_workflow(self, make_client):
        """Test SSE emits one event per stage, then a terminal event."""
        client = make_client(["No punchline here."])

        response = client.post("/workflows/prompt-chain/stream", json={"inputs": {"topic": "x"}})

        assert response.headers["content-type"].startswith("text/event-stream")
        events = sse_events(response)
        assert [e["type"] for e in events] == ["response", "completed"]
        assert events[0]["representative"] == "generate_joke"
        assert events[0]["content"] == "No punchline here."
        assert events[1]["totalSteps"] == 1


class TestCustomerSupport:
    """Tests for the customer support chat endpoints."""

    def test_chat_respond(self, make_client):
        """Test a conversational reply completes in one step."""
        client = make_client(["Hi there!", '{"nextRepresentative": "RESPOND"}'])

        body = client.post("/customer-support/chat", json={"message": "Hello"}).json()

        thread_id = body["threadId"]
        assert thread_id
        response, completed = body["events"]
        assert response["type"] == "response"
        assert response["threadId"] == thread_id
        assert response["stepCount"] == 1
        assert response["representative"] == "initial_support"
        assert response["content"] == "Hi there!"
        assert response["delta"]["next_representative"] == "RESPOND"
        assert completed == {"type": "completed", "threadId": thread_id, "totalSteps": 1}

    def test_refund_interrupt_and_resume(self, make_client):
        """Test a refund pauses the thread and resuming completes it."""
        client = make_client(REFUND_SCRIPT)

        first = client.post("/customer-support/chat", json={"message": "Charged twice"}).json()
        thread_id = first["threadId"]

        assert [e["type"] for e in first["events"]] == ["response", "response", "interrupted"]
        interrupted = first["events"][-1]
        assert interrupted["node"] == "handle_refund"
        assert interrupted["reason"] == "Human authorization required."
        assert interrupted["totalSteps"] == 2

        second = client.post(
            "/customer-support/resume", json={"threadId": thread_id, "authorization": True}
        ).json()

        assert [e["type"] for e in second["events"]] == ["response", "completed"]
        assert second["events"][0]["representative"] == "handle_refund"
        assert second["events"][0]["content"] == "Refund processed successfully."

        thread = client.get(f"/threads/{thread_id}").json()
        assert thread["pending_node"] == "__end__"
        assert thread["status"] == "completed"
        assert len(thread["state"]["messages"]) == 4

    def test_next_refund_on_same_thread_needs_authorization(self, make_client):
        """Test an earlier authorization does not approve a later refund on the thread."""
        client = make_client(REFUND_SCRIPT + REFUND_SCRIPT)
        first = client.post("/customer-support/chat", json={"message": "Charged twice"}).json()
        thread_id = first["threadId"]
        client.post("/customer-support/resume", json={"threadId": thread_id, "authorization": True})

        again = client.post(
            "/customer-support/chat",
            json={"message": "Refund my other order too", "threadId": thread_id},
        ).json()

        assert [e["type"] for e in again["events"]] == ["response", "response", "interrupted"]
        assert again["events"][-1]["node"] == "handle_refund"

    def test_resume_unknown_thread(self, make_client):
        """Test resuming a thread that does not exist is a 404."""
        response = make_client().post(
            "/customer-support/resume", json={"threadId": "missing", "authorization": True}
        )

        assert response.status_code == 404
        assert response.json()["category"] == "thread_not_found"

    def test_resume_requires_authorization(self, make_client):
        """Test the resume payload is validated."""
        response = make_client().post("/customer-support/resume", json={"threadId": "x"})

        assert response.status_code == 422

    def test_decode_failure_keeps_thread_resumable(self, make_client):
        """Test a bad classification yields an error event and a resumable thread."""
        client = make_client(["One moment.", "definitely billing"])

        body = client.post("/customer-support/chat", json={"message": "Refund!"}).json()

        (error,) = body["events"]
        assert error["type"] == "error"
        assert error["content"] == "Failed to process message"
        assert error["details"]["category"] == "classification_decode"

        thread = client.get(f"/threads/{body['threadId']}").json()
        assert thread["pending_node"] == "initial_support"
        assert thread["status"] == "failed"
        assert len(thread["state"]["messages"]) == 1

    def test_support_stream(self, make_client):
        """Test the SSE variant of the chat endpoint."""
        client = make_client(["Hi there!", '{"nextRepresentative": "RESPOND"}'])

        response = client.post("/customer-support/stream", json={"message": "Hello"})

        assert [e["type"] for e in sse_events(response)] == ["response", "completed"]

    def test_thread_history(self, make_client):
        """Test every checkpoint of a thread is listed oldest first."""
        client = make_client(REFUND_SCRIPT)
        thread_id = client.post("/customer-support/chat", json={"message": "Refund"}).json()[
            "threadId"
        ]

        checkpoints = client.get(f"/threads/{thread_id}/history").json()["checkpoints"]

        assert [c["pending_node"] for c in checkpoints] == [
            "billing_support",
            "handle_refund",
            "handle_refund",
        ]
        assert checkpoints[-1]["status"] == "interrupted"

    def test_unknown_thread(self, make_client):
        """Test unknown thread ids are 404."""
        client = make_client()

        assert client.get("/threads/missing").status_code == 404
        assert client.get("/threads/missing/history").status_code == 404


class TestWebSocket:
    """Tests for the WebSocket chat gateway."""

    def test_chat(self, make_client):
        """Test a chat message streams response and completion events."""
        client = make_client(["Hi there!", '{"nextRepresentative": "RESPOND"}'])

        with client.websocket_connect("/ws/customer-support") as ws:
            ws.send_json({"data": {"message": "Hello"}})
            response = ws.receive_json()
            completed = ws.receive_json()

        assert response["type"] == "response"
        assert response["content"] == "Hi there!"
        assert completed["type"] == "completed"
        assert completed["threadId"] == response["threadId"]

    def test_refund_resume(self, make_client):
        """Test interrupt and resume over one connection."""
        client = make_client(REFUND_SCRIPT)

        with client.websocket_connect("/ws/customer-support") as ws:
            ws.send_json({"type": "chat", "message": "Charged twice"})
            events = [ws.receive_json() for _ in range(3)]
            thread_id = events[-1]["threadId"]
            ws.send_json({"type": "resume", "threadId": thread_id, "authorization": True})
            resumed = [ws.receive_json() for _ in range(2)]

        assert events[-1]["type"] == "interrupted"
        assert resumed[0]["representative"] == "handle_refund"
        assert resumed[1]["type"] == "completed"

    def test_missing_message(self, make_client):
        """Test a chat payload without a message yields an error event."""
        with make_client().websocket_connect("/ws/customer-support") as ws:
            ws.send_json({"type": "chat"})
            error = ws.receive_json()

        assert error["type"] == "error"
        assert error["content"] == "No message provided in payload"

    def test_unknown_type(self, make_client):
        """Test unknown message types are rejected."""
        with make_client().websocket_connect("/ws/customer-support") as ws:
            ws.send_json({"type": "dance"})
            error = ws.receive_json()

        assert error["content"] == "Unknown message type: dance"

    def test_resume_unknown_thread(self, make_client):
        """Test resuming an unknown thread over the socket yields an error event."""
        with make_client().websocket_connect("/ws/customer-support") as ws:
            ws.send_json({"type": "resume", "threadId": "missing", "authorization": True})
            error = ws.receive_json()

        assert error["type"] == "error"
        assert error["details"]["category"] == "thread_not_found"
