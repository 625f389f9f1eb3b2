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

"""Execution engine for compiled workflow graphs.

Each run follows one thread of conversation:

    1. Acquire the thread's lock (one run per thread id at a time)
    2. Load the thread checkpoint and merge the caller input into it
    3. Invoke the pending stage
    4. Merge its delta using the declared field policies
    5. Resolve the successor
    6. Persist the checkpoint (pending node = successor)
    7. Emit a StageResult
    8. Repeat until END

A stage that calls interrupt() stops the run with an INTERRUPTED outcome. A
stage error or an unmapped router key stops it with a FAILED outcome. In both
cases the state from before the stage ran is persisted with the stage still
pending, so the thread can be resumed at exactly that node.

Example:
    app = graph.compile(checkpointer=MemoryCheckpointer())

    handle = app.stream({"messages": [Message.user("My card was charged twice")]})
    async for result in handle:
        print(result.step, result.node_name, result.state_delta)

    if handle.outcome.interrupted:
        outcome = await app.invoke(
            {"refund_authorized": True}, thread_id=handle.thread_id, resume=True
        )
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, NoReturn, Optional

from switchboard.core.errors import (
    ModelTimeoutError,
    RecursionLimitError,
    RoutingError,
    StateSchemaError,
    SwitchboardError,
    ThreadNotFoundError,
)
from switchboard.core.retry import BaseRetryStrategy, RetryExecutor
from switchboard.framework.checkpointer import (
    CheckpointerProtocol,
    ThreadCheckpoint,
    ThreadLockRegistry,
    ThreadStatus,
)
from switchboard.framework.graph import END, START, Edge, EdgeType, Node, route_key
from switchboard.framework.state import StateSchema

logger = logging.getLogger(__name__)

# Pending-node pointer for a fork point whose branches have not joined yet
FAN_OUT_PREFIX = "__fan_out__:"


class NodeInterrupt(Exception):
    """Raised inside a stage to pause the run for external input.

    Never escapes the engine; it becomes an INTERRUPTED outcome.
    """

    def __init__(self, reason: str, payload: Optional[dict[str, Any]] = None):
        super().__init__(reason)
        self.reason = reason
        self.payload = payload or {}


def interrupt(reason: str, **payload: Any) -> NoReturn:
    """Pause the current run until a caller resumes the thread.

    The calling stage's delta is discarded and the stage runs again from the
    top on resume, so everything before the interrupt() call must be safe to
    repeat.

    Args:
        reason: Human-readable reason reported in the outcome
        **payload: Extra data for the caller (e.g. what needs approval)
    """
    raise NodeInterrupt(reason, payload)


class OutcomeStatus(str, Enum):
    """Terminal status of a run."""

    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    FAILED = "failed"


@dataclass(frozen=True)
class StageResult:
    """One executed stage, emitted after its checkpoint was persisted.

    Attributes:
        node_name: Stage that ran
        state_delta: Partial update the stage returned
        step: Thread-wide step number of this stage execution
    """

    node_name: str
    state_delta: dict[str, Any]
    step: int


@dataclass(frozen=True)
class InterruptInfo:
    """Where and why a run paused."""

    node: str
    reason: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"node": self.node, "reason": self.reason, "payload": dict(self.payload)}


@dataclass
class RunOutcome:
    """Result of a run.

    Attributes:
        status: COMPLETED, INTERRUPTED or FAILED
        thread_id: Thread the run advanced
        state: Conversation state at the last persisted boundary
        steps: Stages executed by this run
        total_steps: Stages executed on this thread across all runs
        node_history: Stages executed by this run, in emission order
        pending_node: Node a resume would start at (END once completed)
        error: Failure cause, for FAILED outcomes
        interrupt: Pause details, for INTERRUPTED outcomes
    """

    status: OutcomeStatus
    thread_id: str
    state: dict[str, Any]
    steps: int = 0
    total_steps: int = 0
    node_history: list[str] = field(default_factory=list)
    pending_node: str = END
    error: Optional[Exception] = None
    interrupt: Optional[InterruptInfo] = None

    @property
    def completed(self) -> bool:
        return self.status == OutcomeStatus.COMPLETED

    @property
    def interrupted(self) -> bool:
        return self.status == OutcomeStatus.INTERRUPTED

    @property
    def failed(self) -> bool:
        return self.status == OutcomeStatus.FAILED

    def to_dict(self, schema: Optional[StateSchema] = None) -> dict[str, Any]:
        """Serialize for API responses; state is encoded with schema if given."""
        data: dict[str, Any] = {
            "status": self.status.value,
            "thread_id": self.thread_id,
            "state": schema.dump(self.state) if schema is not None else self.state,
            "steps": self.steps,
            "total_steps": self.total_steps,
            "node_history": list(self.node_history),
            "pending_node": self.pending_node,
        }
        if self.error is not None:
            data["error"] = error_details(self.error)
        if self.interrupt is not None:
            data["interrupt"] = self.interrupt.to_dict()
        return data


def error_details(error: Exception) -> dict[str, Any]:
    """User-visible summary of a failure; stack traces stay in the logs."""
    if isinstance(error, SwitchboardError):
        return error.to_dict()
    return {"error": str(error) or type(error).__name__, "category": "unknown"}


@dataclass
class ExecutionConfig:
    """Run limits of a compiled graph.

    Attributes:
        max_steps: Maximum stage executions per run
        stage_timeout: Default per-stage deadline in seconds
        fan_out_concurrency: Maximum branches running at once in one fan-out
        retry: Default retry strategy for stages without their own
    """

    max_steps: int = 50
    stage_timeout: Optional[float] = None
    fan_out_concurrency: int = 4
    retry: Optional[BaseRetryStrategy] = None


# Shared by all compiled graphs; thread ids are global to a deployment
_thread_locks = ThreadLockRegistry()


class IterationController:
    """Enforces the per-run step limit."""

    def __init__(self, max_steps: int):
        self.max_steps = max_steps
        self.steps = 0

    def advance(self, node_id: str) -> None:
        """Count one stage execution.

        Raises:
            RecursionLimitError: If the run already used all its steps
        """
        if self.steps >= self.max_steps:
            raise RecursionLimitError(self.max_steps, node_id)
        self.steps += 1


class NodeExecutor:
    """Invokes one stage under its timeout and retry strategy."""

    def __init__(self, config: ExecutionConfig):
        self._config = config

    async def execute(
        self,
        node: Node,
        state: dict[str, Any],
    ) -> dict[str, Any]:
        """Run a stage and return its delta.

        Args:
            node: Stage to run
            state: Current merged state (the stage receives a private copy)

        Returns:
            Partial state delta ({} if the stage returned None)
        """
        strategy = node.retry or self._config.retry
        timeout = node.timeout if node.timeout is not None else self._config.stage_timeout
        return await RetryExecutor(strategy).execute(self._attempt, node, state, timeout)

    async def _attempt(
        self,
        node: Node,
        state: dict[str, Any],
        timeout: Optional[float],
    ) -> dict[str, Any]:
        view = copy.deepcopy(state)
        try:
            if timeout:
                result = await asyncio.wait_for(self._call(node, view), timeout)
            else:
                result = await self._call(node, view)
        except asyncio.TimeoutError as e:
            raise ModelTimeoutError(
                f"Stage '{node.id}' timed out after {timeout}s", timeout=timeout
            ) from e

        if result is None:
            return {}
        if not isinstance(result, dict):
            raise StateSchemaError(
                f"Stage '{node.id}' returned {type(result).__name__}, expected a dict"
            )
        return result

    @staticmethod
    async def _call(node: Node, state: dict[str, Any]) -> Any:
        result = node.func(state)
        if inspect.isawaitable(result):
            result = await result
        return result


class FanOutExecutor:
    """Runs fan-out branches or map workers concurrently.

    Fail-fast: the first branch error cancels every other branch and
    propagates. Branch deltas are merged in declaration order once all
    branches finish, whatever order they completed in.
    """

    def __init__(
        self,
        nodes: dict[str, Node],
        edges: dict[str, Edge],
        schema: StateSchema,
        executor: NodeExecutor,
        concurrency: int,
    ):
        self._nodes = nodes
        self._edges = edges
        self._schema = schema
        self._executor = executor
        self._concurrency = max(1, concurrency)

    async def run(
        self,
        edge: Edge,
        state: dict[str, Any],
        controller: IterationController,
    ) -> tuple[list[tuple[str, dict[str, Any]]], dict[str, Any]]:
        """Execute all branches of edge.

        Returns:
            Tuple of (executed (node, delta) pairs in completion order,
            state with every branch delta merged)
        """
        semaphore = asyncio.Semaphore(self._concurrency)

        if edge.edge_type == EdgeType.MAP:
            items = edge.router(state) if edge.router else []
            if not isinstance(items, (list, tuple)):
                raise StateSchemaError(
                    f"Map router for '{edge.source}' returned "
                    f"{type(items).__name__}, expected a list"
                )
            coros = [
                self._run_worker(index, edge.worker or "", item, state, semaphore, controller)
                for index, item in enumerate(items)
            ]
        else:
            coros = [
                self._run_branch(index, target, edge.join or "", state, semaphore, controller)
                for index, target in enumerate(edge.targets)
            ]

        logger.debug(f"Fan-out from '{edge.source}': {len(coros)} branch(es)")
        tasks = [asyncio.create_task(coro) for coro in coros]
        finished: list[tuple[int, list[tuple[str, dict[str, Any]]]]] = []
        try:
            for next_done in asyncio.as_completed(tasks):
                finished.append(await next_done)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        merged = state
        for _, results in sorted(finished, key=lambda item: item[0]):
            for _, delta in results:
                merged = self._schema.merge(merged, delta)

        completion_order = [pair for _, results in finished for pair in results]
        return completion_order, merged

    async def _run_branch(
        self,
        index: int,
        start: str,
        join: str,
        state: dict[str, Any],
        semaphore: asyncio.Semaphore,
        controller: IterationController,
    ) -> tuple[int, list[tuple[str, dict[str, Any]]]]:
        results: list[tuple[str, dict[str, Any]]] = []
        branch_state = state
        current = start
        async with semaphore:
            # Branch chains are validated at compile time to reach the join
            while current != join:
                controller.advance(current)
                delta = await self._executor.execute(self._nodes[current], branch_state)
                branch_state = self._schema.merge(branch_state, delta)
                results.append((current, delta))
                current = self._edges[current].target or join
        return index, results

    async def _run_worker(
        self,
        index: int,
        worker: str,
        item: dict[str, Any],
        state: dict[str, Any],
        semaphore: asyncio.Semaphore,
        controller: IterationController,
    ) -> tuple[int, list[tuple[str, dict[str, Any]]]]:
        async with semaphore:
            controller.advance(worker)
            delta = await self._executor.execute(self._nodes[worker], {**state, **item})
            # Surface undeclared fields from this worker rather than at the join
            self._schema.merge(state, delta)
        return index, [(worker, delta)]


class GraphCheckpointManager:
    """Reads and writes thread checkpoints for one graph."""

    def __init__(
        self,
        checkpointer: Optional[CheckpointerProtocol],
        schema: StateSchema,
        graph_name: str,
    ):
        self._checkpointer = checkpointer
        self._schema = schema
        self._graph_name = graph_name

    async def load(self, thread_id: str) -> Optional[ThreadCheckpoint]:
        if self._checkpointer is None:
            return None
        return await self._checkpointer.load(thread_id)

    async def save(
        self,
        thread_id: str,
        state: dict[str, Any],
        pending_node: str,
        status: ThreadStatus,
        step: int,
        **metadata: Any,
    ) -> None:
        if self._checkpointer is None:
            return
        checkpoint = ThreadCheckpoint(
            thread_id=thread_id,
            pending_node=pending_node,
            state=self._schema.dump(state),
            status=status,
            step=step,
            metadata={"graph": self._graph_name, **metadata},
        )
        await self._checkpointer.save(checkpoint)


class RunHandle:
    """Async iterator over the StageResults of one run.

    The outcome is available on ``outcome`` once iteration finishes.
    """

    def __init__(
        self,
        graph: "CompiledGraph",
        input: Optional[dict[str, Any]],
        thread_id: Optional[str],
        checkpointer: Optional[CheckpointerProtocol],
        resume: bool,
    ):
        self.thread_id = thread_id or uuid.uuid4().hex
        self.input = dict(input or {})
        self.checkpointer = checkpointer
        self.resume = resume
        self.outcome: Optional[RunOutcome] = None
        self._graph = graph
        self._iterator: Optional[AsyncIterator[StageResult]] = None

    def __aiter__(self) -> AsyncIterator[StageResult]:
        if self._iterator is None:
            self._iterator = self._graph._execute(self)
        return self._iterator

    async def collect(self) -> list[StageResult]:
        """Drain the run, returning every StageResult."""
        return [result async for result in self]


class CompiledGraph:
    """Validated, immutable workflow graph ready for execution.

    Created by StateGraph.compile(). Runs of different threads may proceed
    concurrently; runs of the same thread are serialized.
    """

    def __init__(
        self,
        name: str,
        schema: StateSchema,
        nodes: dict[str, Node],
        edges: dict[str, Edge],
        entry_point: str,
        checkpointer: Optional[CheckpointerProtocol] = None,
        config: Optional[ExecutionConfig] = None,
    ):
        self.name = name
        self._schema = schema
        self._nodes = nodes
        self._edges = edges
        self._entry_point = entry_point
        self._checkpointer = checkpointer
        self._config = config or ExecutionConfig()
        self._executor = NodeExecutor(self._config)
        self._fan_out = FanOutExecutor(
            nodes, edges, schema, self._executor, self._config.fan_out_concurrency
        )

    @property
    def schema(self) -> StateSchema:
        return self._schema

    @property
    def checkpointer(self) -> Optional[CheckpointerProtocol]:
        return self._checkpointer

    @property
    def config(self) -> ExecutionConfig:
        return self._config

    def stream(
        self,
        input: Optional[dict[str, Any]] = None,
        *,
        thread_id: Optional[str] = None,
        checkpointer: Optional[CheckpointerProtocol] = None,
        resume: bool = False,
    ) -> RunHandle:
        """Start a run and stream its stage results.

        Args:
            input: Caller delta merged into the thread state (new messages,
                authorization flags); external fields may be set here
            thread_id: Thread to advance (a new id is generated if None)
            checkpointer: Thread store overriding the compiled default
            resume: Require an existing checkpoint (ThreadNotFoundError if none)

        Returns:
            RunHandle to iterate with ``async for``
        """
        return RunHandle(
            self,
            input,
            thread_id,
            checkpointer if checkpointer is not None else self._checkpointer,
            resume,
        )

    async def invoke(
        self,
        input: Optional[dict[str, Any]] = None,
        *,
        thread_id: Optional[str] = None,
        checkpointer: Optional[CheckpointerProtocol] = None,
        resume: bool = False,
    ) -> RunOutcome:
        """Run to an outcome without observing intermediate stages."""
        handle = self.stream(input, thread_id=thread_id, checkpointer=checkpointer, resume=resume)
        await handle.collect()
        assert handle.outcome is not None
        return handle.outcome

    async def get_state(
        self,
        thread_id: str,
        checkpointer: Optional[CheckpointerProtocol] = None,
    ) -> Optional[ThreadCheckpoint]:
        """Latest persisted checkpoint of a thread, or None."""
        store = checkpointer if checkpointer is not None else self._checkpointer
        if store is None:
            return None
        return await store.load(thread_id)

    def dump_state(self, state: dict[str, Any]) -> dict[str, Any]:
        return self._schema.dump(state)

    def get_graph_schema(self) -> dict[str, Any]:
        """Describe nodes and edges for visualization and the API."""
        edges: list[dict[str, Any]] = []
        for source, edge in self._edges.items():
            entry: dict[str, Any] = {"source": source, "type": edge.edge_type.value}
            if edge.edge_type == EdgeType.NORMAL:
                entry["target"] = edge.target
            elif edge.edge_type == EdgeType.CONDITIONAL:
                entry["branches"] = dict(edge.branches)
            elif edge.edge_type == EdgeType.FAN_OUT:
                entry["targets"] = list(edge.targets)
                entry["join"] = edge.join
            else:
                entry["worker"] = edge.worker
                entry["join"] = edge.join
            edges.append(entry)

        return {
            "name": self.name,
            "entry_point": self._entry_point,
            "nodes": list(self._nodes),
            "edges": edges,
            "state_fields": list(self._schema.fields),
        }

    def _entry_pointer(self) -> str:
        if self._entry_point == START:
            return FAN_OUT_PREFIX + START
        return self._entry_point

    def _next(self, node_id: str, state: dict[str, Any]) -> str:
        """Resolve the successor pointer of node_id.

        Raises:
            RoutingError: If a router returns a key with no matching edge
        """
        edge = self._edges[node_id]

        if edge.edge_type == EdgeType.NORMAL:
            return edge.target or END

        if edge.edge_type == EdgeType.CONDITIONAL:
            key = route_key(edge.router(state)) if edge.router else ""
            target = edge.branches.get(key)
            if target is not None:
                return target
            if edge.unmapped_to_end:
                logger.info(f"Router for '{node_id}' returned unmapped '{key}', ending run")
                return END
            raise RoutingError(node_id, key, sorted(edge.branches))

        return FAN_OUT_PREFIX + node_id

    async def _execute(self, handle: RunHandle) -> AsyncIterator[StageResult]:
        thread_id = handle.thread_id
        store = GraphCheckpointManager(handle.checkpointer, self._schema, self.name)
        controller = IterationController(self._config.max_steps)
        history: list[str] = []

        async with _thread_locks.hold(thread_id):
            checkpoint = await store.load(thread_id)
            if checkpoint is None:
                if handle.resume:
                    raise ThreadNotFoundError(thread_id)
                state = self._schema.initial_state()
                current = self._entry_pointer()
                step = 0
            else:
                state = self._schema.load(checkpoint.state)
                current = checkpoint.pending_node
                step = checkpoint.step
                if current == END:
                    # Completed conversation: a new turn starts at the entry
                    current = self._entry_pointer()
                    state = self._schema.start_turn(state)

            state = self._schema.merge(state, handle.input, external=True)
            logger.info(f"[{self.name}] Run on thread {thread_id} starting at '{current}'")

            while current != END:
                try:
                    if current.startswith(FAN_OUT_PREFIX):
                        edge = self._edges[current[len(FAN_OUT_PREFIX) :]]
                        results, new_state = await self._fan_out.run(edge, state, controller)
                        successor = edge.join or END
                    else:
                        controller.advance(current)
                        logger.debug(f"[{self.name}] Executing node: {current}")
                        delta = await self._executor.execute(self._nodes[current], state)
                        new_state = self._schema.merge(state, delta)
                        successor = self._next(current, new_state)
                        results = [(current, delta)]
                except NodeInterrupt as e:
                    info = InterruptInfo(node=current, reason=e.reason, payload=e.payload)
                    logger.info(
                        f"[{self.name}] Thread {thread_id} interrupted at '{current}': {e.reason}"
                    )
                    await store.save(
                        thread_id,
                        state,
                        current,
                        ThreadStatus.INTERRUPTED,
                        step,
                        interrupt=info.to_dict(),
                    )
                    handle.outcome = RunOutcome(
                        status=OutcomeStatus.INTERRUPTED,
                        thread_id=thread_id,
                        state=state,
                        steps=len(history),
                        total_steps=step,
                        node_history=history,
                        pending_node=current,
                        interrupt=info,
                    )
                    return
                except Exception as e:
                    if isinstance(e, SwitchboardError):
                        logger.error(f"[{self.name}] Thread {thread_id} failed at '{current}': {e}")
                    else:
                        logger.exception(f"[{self.name}] Unexpected error at '{current}'")
                    await store.save(
                        thread_id,
                        state,
                        current,
                        ThreadStatus.FAILED,
                        step,
                        error=error_details(e),
                    )
                    handle.outcome = RunOutcome(
                        status=OutcomeStatus.FAILED,
                        thread_id=thread_id,
                        state=state,
                        steps=len(history),
                        total_steps=step,
                        node_history=history,
                        pending_node=current,
                        error=e,
                    )
                    return

                first_step = step + 1
                step += len(results)
                status = ThreadStatus.COMPLETED if successor == END else ThreadStatus.RUNNING
                await store.save(thread_id, new_state, successor, status, step)
                state = new_state

                for offset, (node_name, delta) in enumerate(results):
                    history.append(node_name)
                    yield StageResult(
                        node_name=node_name, state_delta=delta, step=first_step + offset
                    )

                current = successor

            logger.info(f"[{self.name}] Thread {thread_id} completed after {len(history)} step(s)")
            handle.outcome = RunOutcome(
                status=OutcomeStatus.COMPLETED,
                thread_id=thread_id,
                state=state,
                steps=len(history),
                total_steps=step,
                node_history=history,
                pending_node=END,
            )


__all__ = [
    "CompiledGraph",
    "RunHandle",
    "RunOutcome",
    "OutcomeStatus",
    "StageResult",
    "InterruptInfo",
    "ExecutionConfig",
    "NodeInterrupt",
    "interrupt",
    "error_details",
    "FAN_OUT_PREFIX",
]
