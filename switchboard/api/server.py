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

"""FastAPI-based HTTP API Server for Switchboard.

Features:
- One invocation endpoint per registered workflow
- Server-Sent Events (SSE) for per-stage streaming
- WebSocket chat gateway for the customer support workflow
- Resume of interrupted conversations and checkpoint inspection
- CORS support for browser-based clients
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from switchboard import __version__
from switchboard.api.events import (
    ChatRequest,
    ErrorEvent,
    HealthResponse,
    ResumeRequest,
    StreamEvent,
    WorkflowRequest,
    stream_events,
)
from switchboard.config.settings import Settings, load_settings
from switchboard.core.errors import ErrorCategory, SwitchboardError, ThreadNotFoundError
from switchboard.framework.checkpointer import CheckpointerProtocol, create_checkpointer
from switchboard.framework.engine import CompiledGraph
from switchboard.models.client import ChatModelProtocol, create_chat_model
from switchboard.workflows.registry import (
    WorkflowSpec,
    build_graphs,
    get_workflow,
    list_workflows,
)
from switchboard.workflows.support import chat_input, resume_input

logger = logging.getLogger(__name__)

SUPPORT_WORKFLOW = "customer-support"

_STATUS_BY_CATEGORY = {
    ErrorCategory.THREAD_NOT_FOUND: 404,
    ErrorCategory.STATE_SCHEMA: 400,
    ErrorCategory.EXTERNAL_CALL: 502,
    ErrorCategory.EXTERNAL_TIMEOUT: 504,
}


class SwitchboardServer:
    """FastAPI server exposing the registered workflows."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        model: Optional[ChatModelProtocol] = None,
        checkpointer: Optional[CheckpointerProtocol] = None,
    ):
        """Initialize the server.

        Args:
            settings: Application settings (loaded from the environment if None)
            model: Chat model shared by all workflows (built from settings if None)
            checkpointer: Thread store (built from settings if None)
        """
        self.settings = settings or load_settings()
        self.host = self.settings.host
        self.port = self.settings.port
        self.model = model or create_chat_model(self.settings)
        self.checkpointer = checkpointer or create_checkpointer(self.settings)
        self.graphs: dict[str, CompiledGraph] = build_graphs(
            self.model, self.checkpointer, self.settings
        )

        self._ws_clients: list[WebSocket] = []

        self.app = FastAPI(
            title="Switchboard API",
            description="Chat orchestration workflows with resumable conversations",
            version=__version__,
            lifespan=self._lifespan,
        )

        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=self.settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        self._setup_routes()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI) -> AsyncIterator[None]:
        """Manage server lifespan."""
        logger.info(f"Starting Switchboard server on {self.host}:{self.port}")
        yield
        for ws in list(self._ws_clients):
            try:
                await ws.close()
            except RuntimeError:
                # Already closed by the client
                pass
        close_model = getattr(self.model, "close", None)
        if close_model is not None:
            await close_model()
        close_store = getattr(self.checkpointer, "close", None)
        if close_store is not None:
            close_store()
        logger.info("Switchboard server shutdown complete")

    def _graph(self, name: str) -> CompiledGraph:
        graph = self.graphs.get(name)
        if graph is None:
            raise HTTPException(status_code=404, detail=f"Unknown workflow: {name}")
        return graph

    def _workflow(self, name: str) -> tuple[WorkflowSpec, CompiledGraph]:
        spec = get_workflow(name)
        if spec is None:
            raise HTTPException(status_code=404, detail=f"Unknown workflow: {name}")
        return spec, self._graph(name)

    def _setup_routes(self) -> None:
        """Set up API routes."""
        app = self.app

        @app.exception_handler(SwitchboardError)
        async def switchboard_error_handler(
            request: Request, exc: SwitchboardError
        ) -> JSONResponse:
            status = _STATUS_BY_CATEGORY.get(exc.category, 500)
            return JSONResponse(exc.to_dict(), status_code=status)

        @app.get("/health", response_model=HealthResponse, tags=["System"])
        async def health() -> HealthResponse:
            """Health check endpoint."""
            return HealthResponse(version=__version__)

        @app.get("/workflows", tags=["Workflows"])
        async def workflows() -> JSONResponse:
            """List invocable workflows."""
            return JSONResponse({"workflows": [spec.to_dict() for spec in list_workflows()]})

        @app.get("/workflows/{name}/graph", tags=["Workflows"])
        async def workflow_graph(name: str) -> JSONResponse:
            """Describe a workflow's nodes and edges."""
            return JSONResponse(self._graph(name).get_graph_schema())

        @app.post("/workflows/{name}", tags=["Workflows"])
        async def run_workflow(name: str, request: WorkflowRequest) -> JSONResponse:
            """Run a workflow to its outcome."""
            spec, graph = self._workflow(name)
            outcome = await graph.invoke(
                spec.make_input(request.inputs), thread_id=request.thread_id
            )
            return JSONResponse(outcome.to_dict(graph.schema))

        @app.post("/workflows/{name}/stream", tags=["Workflows"])
        async def stream_workflow(name: str, request: WorkflowRequest) -> StreamingResponse:
            """Run a workflow, streaming one event per stage (Server-Sent Events)."""
            spec, graph = self._workflow(name)
            handle = graph.stream(spec.make_input(request.inputs), thread_id=request.thread_id)
            return self._sse(graph, handle)

        # Customer support
        @app.post("/customer-support/chat", tags=["Customer Support"])
        async def support_chat(request: ChatRequest) -> JSONResponse:
            """Send a message and run the conversation to its next stop."""
            graph = self._graph(SUPPORT_WORKFLOW)
            handle = graph.stream(chat_input(request.message), thread_id=request.thread_id)
            events = [event.to_wire() async for event in stream_events(graph, handle)]
            return JSONResponse({"threadId": handle.thread_id, "events": events})

        @app.post("/customer-support/resume", tags=["Customer Support"])
        async def support_resume(request: ResumeRequest) -> JSONResponse:
            """Resume a paused conversation with an authorization decision."""
            graph = self._graph(SUPPORT_WORKFLOW)
            await self._require_thread(graph, request.thread_id)
            handle = graph.stream(
                resume_input(request.authorization, request.message),
                thread_id=request.thread_id,
                resume=True,
            )
            events = [event.to_wire() async for event in stream_events(graph, handle)]
            return JSONResponse({"threadId": handle.thread_id, "events": events})

        @app.post("/customer-support/stream", tags=["Customer Support"])
        async def support_stream(request: ChatRequest) -> StreamingResponse:
            """Send a message, streaming one event per stage (Server-Sent Events)."""
            graph = self._graph(SUPPORT_WORKFLOW)
            handle = graph.stream(chat_input(request.message), thread_id=request.thread_id)
            return self._sse(graph, handle)

        # Threads
        @app.get("/threads/{thread_id}", tags=["Threads"])
        async def get_thread(thread_id: str) -> JSONResponse:
            """Latest persisted checkpoint of a conversation."""
            checkpoint = await self.checkpointer.load(thread_id)
            if checkpoint is None:
                raise ThreadNotFoundError(thread_id)
            return JSONResponse(checkpoint.to_dict())

        @app.get("/threads/{thread_id}/history", tags=["Threads"])
        async def get_thread_history(thread_id: str) -> JSONResponse:
            """Every checkpoint of a conversation, oldest first."""
            checkpoints = await self.checkpointer.list(thread_id)
            if not checkpoints:
                raise ThreadNotFoundError(thread_id)
            return JSONResponse({"checkpoints": [c.to_dict() for c in checkpoints]})

        # WebSocket endpoint
        @app.websocket("/ws/customer-support")
        async def support_websocket(websocket: WebSocket) -> None:
            """Customer support chat gateway."""
            await websocket.accept()
            self._ws_clients.append(websocket)
            logger.info(f"WebSocket client connected. Total: {len(self._ws_clients)}")

            try:
                while True:
                    data = await websocket.receive_json()
                    await self._handle_ws_message(websocket, data)
            except WebSocketDisconnect:
                pass
            finally:
                if websocket in self._ws_clients:
                    self._ws_clients.remove(websocket)
                logger.info(f"WebSocket client disconnected. Total: {len(self._ws_clients)}")

    # =========================================================================
    # Helper Methods
    # =========================================================================

    async def _require_thread(self, graph: CompiledGraph, thread_id: str) -> None:
        if await graph.get_state(thread_id) is None:
            raise ThreadNotFoundError(thread_id)

    def _sse(self, graph: CompiledGraph, handle: Any) -> StreamingResponse:
        async def event_generator() -> AsyncIterator[str]:
            async for event in stream_events(graph, handle):
                yield f"data: {json.dumps(event.to_wire())}\n\n"
            yield "data: [DONE]\n\n"

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )

    async def _handle_ws_message(self, websocket: WebSocket, data: Any) -> None:
        """Dispatch one client message ("chat" or "resume")."""
        if not isinstance(data, dict):
            await self._send(websocket, ErrorEvent(content="Payload must be a JSON object"))
            return

        # Accept both {"message": ...} and {"data": {"message": ...}}
        payload = {**data.get("data", {}), **data} if isinstance(data.get("data"), dict) else data
        message_type = payload.get("type", "chat")
        graph = self._graph(SUPPORT_WORKFLOW)

        try:
            if message_type == "chat":
                request = ChatRequest.model_validate(payload)
                thread_id = request.thread_id or str(uuid.uuid4())
                logger.info(f"Processing message on thread {thread_id}")
                handle = graph.stream(chat_input(request.message), thread_id=thread_id)
            elif message_type == "resume":
                resume = ResumeRequest.model_validate(payload)
                await self._require_thread(graph, resume.thread_id)
                handle = graph.stream(
                    resume_input(resume.authorization, resume.message),
                    thread_id=resume.thread_id,
                    resume=True,
                )
            else:
                await self._send(
                    websocket, ErrorEvent(content=f"Unknown message type: {message_type}")
                )
                return
        except ValidationError as e:
            logger.error(f"Invalid WebSocket payload: {e.error_count()} error(s)")
            await self._send(
                websocket,
                ErrorEvent(
                    content=(
                        "No message provided in payload"
                        if message_type == "chat"
                        else "Resume requires threadId and authorization"
                    ),
                    details={"errors": json.loads(e.json(include_url=False))},
                ),
            )
            return
        except SwitchboardError as e:
            await self._send(websocket, ErrorEvent(content=e.message, details=e.to_dict()))
            return

        async for event in stream_events(graph, handle):
            await self._send(websocket, event)

    @staticmethod
    async def _send(websocket: WebSocket, event: StreamEvent) -> None:
        await websocket.send_json(event.to_wire())

    def run(self) -> None:
        """Run the server synchronously."""
        import uvicorn

        uvicorn.run(self.app, host=self.host, port=self.port)

    async def start_async(self) -> "SwitchboardServer":
        """Start the server asynchronously and return self for cleanup."""
        import uvicorn

        config = uvicorn.Config(self.app, host=self.host, port=self.port, log_level="info")
        self._server = uvicorn.Server(config)
        asyncio.create_task(self._server.serve())
        logger.info(f"Switchboard server running on {self.host}:{self.port}")
        return self

    async def shutdown(self) -> None:
        """Shutdown the server."""
        if hasattr(self, "_server"):
            self._server.should_exit = True


def create_fastapi_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create the FastAPI application."""
    server = SwitchboardServer(settings=settings)
    return server.app
