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

"""StateGraph - builder and compiler for conversation workflows.

A workflow is a fixed directed graph of stages. Stage identifiers form a
closed Enum handed to the builder, so a misspelled node or edge target is
rejected when the graph is defined, never when a conversation is routed.

Edge kinds:
    - Normal: always continue to one target
    - Conditional: a router maps state to a key, a fixed table maps the key
      to a target; every output the router declares must be in the table
    - Fan-out: run several branches concurrently, join at one node
    - Map: a router returns one input per worker invocation; all worker
      runs join at one node

Example:
    class Stage(str, Enum):
        GENERATE = "generate"
        IMPROVE = "improve"
        POLISH = "polish"

    class Verdict(str, Enum):
        PASS = "Pass"
        FAIL = "Fail"

    def check_punchline(state) -> Verdict:
        ...

    graph = StateGraph(JokeSchema, stages=Stage)
    graph.add_node(Stage.GENERATE, generate)
    graph.add_node(Stage.IMPROVE, improve)
    graph.add_node(Stage.POLISH, polish)
    graph.set_entry_point(Stage.GENERATE)
    graph.add_conditional_edge(
        Stage.GENERATE, check_punchline, {Verdict.PASS: Stage.IMPROVE, Verdict.FAIL: END}
    )
    graph.add_edge(Stage.IMPROVE, Stage.POLISH)
    graph.add_edge(Stage.POLISH, END)

    app = graph.compile()
    outcome = await app.invoke({"topic": "cats"})
"""

from __future__ import annotations

import logging
import typing
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Generic,
    Mapping,
    Optional,
    TypeVar,
    Union,
)

from switchboard.core.errors import GraphDefinitionError
from switchboard.core.retry import BaseRetryStrategy
from switchboard.framework.state import StateSchema

if TYPE_CHECKING:
    from switchboard.framework.checkpointer import CheckpointerProtocol
    from switchboard.framework.engine import CompiledGraph

logger = logging.getLogger(__name__)

StageT = TypeVar("StageT", bound=Enum)

NodeName = Union[str, Enum]
StageDelta = Optional[dict[str, Any]]
StageFunction = Callable[[dict[str, Any]], Union[StageDelta, Awaitable[StageDelta]]]
Router = Callable[[dict[str, Any]], Any]

# Sentinels
END = "__end__"
START = "__start__"


def route_key(value: Any) -> str:
    """Normalize a router return value or table key to a string key."""
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def declared_outputs(router: Router) -> Optional[tuple[str, ...]]:
    """Infer a router's possible outputs from its return annotation.

    An Enum subclass or a Literal[...] return annotation declares a closed
    set of outputs. Anything else returns None (outputs unknown).
    """
    try:
        hints = typing.get_type_hints(router)
    except Exception:
        return None

    returns = hints.get("return")
    if isinstance(returns, type) and issubclass(returns, Enum):
        return tuple(route_key(member) for member in returns)
    if typing.get_origin(returns) is typing.Literal:
        return tuple(route_key(arg) for arg in typing.get_args(returns))
    return None


class EdgeType(Enum):
    """Types of edges in the graph."""

    NORMAL = "normal"
    CONDITIONAL = "conditional"
    FAN_OUT = "fan_out"
    MAP = "map"


@dataclass(frozen=True)
class Edge:
    """Outgoing edge declaration of one node.

    Attributes:
        source: Source node ID (or START)
        edge_type: Edge kind
        target: Target of a normal edge
        branches: Router key -> target table of a conditional edge
        router: Router function (conditional and map edges)
        outputs: Declared router outputs (None if unknown)
        unmapped_to_end: Treat router keys missing from the table as END
        targets: Branch start nodes of a fan-out edge
        worker: Worker node of a map edge
        join: Node where fan-out branches or map workers converge
    """

    source: str
    edge_type: EdgeType
    target: Optional[str] = None
    branches: Mapping[str, str] = field(default_factory=dict)
    router: Optional[Router] = None
    outputs: Optional[tuple[str, ...]] = None
    unmapped_to_end: bool = False
    targets: tuple[str, ...] = ()
    worker: Optional[str] = None
    join: Optional[str] = None

    def successors(self) -> list[str]:
        """All node IDs this edge may lead to."""
        if self.edge_type == EdgeType.NORMAL:
            return [self.target] if self.target else []
        if self.edge_type == EdgeType.CONDITIONAL:
            found = list(self.branches.values())
            if self.unmapped_to_end:
                found.append(END)
            return found
        if self.edge_type == EdgeType.FAN_OUT:
            return [*self.targets, *([self.join] if self.join else [])]
        return [n for n in (self.worker, self.join) if n]


@dataclass(frozen=True)
class Node:
    """A stage bound to its function.

    Attributes:
        id: Unique node identifier (value of a stage Enum member)
        func: Stage function, sync or async, returning a partial state delta
        retry: Retry strategy wrapped around this stage's invocation
        timeout: Per-stage deadline in seconds
        metadata: Additional node metadata
    """

    id: str
    func: StageFunction
    retry: Optional[BaseRetryStrategy] = None
    timeout: Optional[float] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


class StateGraph(Generic[StageT]):
    """Builder for stateful conversation workflows.

    Problems found while the graph is declared are collected rather than
    raised, and compile() reports all of them together in one
    GraphDefinitionError.
    """

    def __init__(
        self,
        schema: StateSchema,
        stages: Optional[type[StageT]] = None,
        name: Optional[str] = None,
    ):
        """Initialize StateGraph.

        Args:
            schema: Declared state fields and merge policies
            stages: Closed Enum of stage identifiers (recommended)
            name: Workflow name used in logs
        """
        self._schema = schema
        self._stages = stages
        self._name = name or (stages.__name__ if stages else "graph")
        self._nodes: dict[str, Node] = {}
        self._edges: dict[str, Edge] = {}
        self._entry_point: Optional[str] = None
        self._violations: list[str] = []

    @property
    def name(self) -> str:
        return self._name

    def _resolve(self, name: NodeName, where: str, allow_sentinels: bool = False) -> str:
        """Coerce a node reference to its string id, recording violations."""
        if allow_sentinels and name in (END, START):
            return str(name)

        if self._stages is None:
            return route_key(name)

        if isinstance(name, self._stages):
            return route_key(name)

        valid = {route_key(member) for member in self._stages}
        key = route_key(name)
        if key not in valid:
            self._violations.append(
                f"{where}: '{key}' is not a {self._stages.__name__} stage"
            )
        return key

    def add_node(
        self,
        node_id: NodeName,
        func: StageFunction,
        *,
        retry: Optional[BaseRetryStrategy] = None,
        timeout: Optional[float] = None,
        **metadata: Any,
    ) -> "StateGraph[StageT]":
        """Add a stage to the graph.

        Args:
            node_id: Stage identifier
            func: Stage function returning a partial delta (or None)
            retry: Optional retry strategy for this stage
            timeout: Optional deadline in seconds for this stage
            **metadata: Additional metadata

        Returns:
            Self for chaining
        """
        key = self._resolve(node_id, "add_node")
        if key in (END, START):
            self._violations.append(f"add_node: '{key}' is a reserved name")
            return self
        if key in self._nodes:
            self._violations.append(f"Duplicate node name: '{key}'")
            return self

        self._nodes[key] = Node(
            id=key,
            func=func,
            retry=retry,
            timeout=timeout,
            metadata=MappingProxyType(dict(metadata)),
        )
        logger.debug(f"Added node: {key}")
        return self

    def _add_edge(self, edge: Edge) -> "StateGraph[StageT]":
        if edge.source == END:
            self._violations.append("END cannot have outgoing edges")
            return self
        if edge.source in self._edges:
            self._violations.append(f"Node '{edge.source}' has more than one outgoing edge")
            return self
        self._edges[edge.source] = edge
        return self

    def add_edge(self, source: NodeName, target: NodeName) -> "StateGraph[StageT]":
        """Add a normal edge between nodes.

        Args:
            source: Source node ID (or START)
            target: Target node ID (or END)

        Returns:
            Self for chaining
        """
        src = self._resolve(source, "add_edge source", allow_sentinels=True)
        dst = self._resolve(target, "add_edge target", allow_sentinels=True)
        if src == START:
            return self.set_entry_point(target)

        logger.debug(f"Added edge: {src} -> {dst}")
        return self._add_edge(Edge(source=src, edge_type=EdgeType.NORMAL, target=dst))

    def add_conditional_edge(
        self,
        source: NodeName,
        router: Router,
        branches: Mapping[Any, NodeName],
        *,
        outputs: Optional[list[Any]] = None,
        unmapped_to_end: bool = False,
    ) -> "StateGraph[StageT]":
        """Add a conditional edge.

        Args:
            source: Source node ID
            router: Function of the merged state returning a branch key
            branches: Fixed mapping from branch keys to target node IDs
            outputs: Possible router outputs; inferred from an Enum or
                Literal return annotation when omitted
            unmapped_to_end: Terminate instead of failing when the router
                returns a key missing from branches

        Returns:
            Self for chaining
        """
        src = self._resolve(source, "add_conditional_edge source")
        table = {
            route_key(key): self._resolve(
                target, f"branch '{route_key(key)}'", allow_sentinels=True
            )
            for key, target in branches.items()
        }
        if outputs is not None:
            declared: Optional[tuple[str, ...]] = tuple(route_key(o) for o in outputs)
        else:
            declared = declared_outputs(router)
        if declared is None:
            logger.debug(f"Router for '{src}' declares no outputs; table keys are trusted")

        logger.debug(f"Added conditional edge: {src} -> {sorted(set(table.values()))}")
        return self._add_edge(
            Edge(
                source=src,
                edge_type=EdgeType.CONDITIONAL,
                branches=MappingProxyType(table),
                router=router,
                outputs=declared,
                unmapped_to_end=unmapped_to_end,
            )
        )

    def add_fan_out(
        self,
        source: NodeName,
        targets: list[NodeName],
        join: NodeName,
    ) -> "StateGraph[StageT]":
        """Fork into concurrent branches that converge at a join node.

        Each branch is a chain of normal edges from one of targets to join.
        The join node runs only after every branch has finished; branch
        deltas are merged with the declared field policies, in the order of
        targets.

        Args:
            source: Fork point (a node, or START to fan out at entry)
            targets: First node of each branch
            join: Node where branches converge

        Returns:
            Self for chaining
        """
        src = self._resolve(source, "add_fan_out source", allow_sentinels=True)
        resolved = tuple(self._resolve(t, "add_fan_out target") for t in targets)
        join_id = self._resolve(join, "add_fan_out join")

        if len(resolved) < 2:
            self._violations.append(f"Fan-out from '{src}' requires at least 2 targets")
        if src == START:
            self._entry_point = START

        logger.debug(f"Added fan-out: {src} -> {list(resolved)} (join: {join_id})")
        return self._add_edge(
            Edge(source=src, edge_type=EdgeType.FAN_OUT, targets=resolved, join=join_id)
        )

    def add_map_edge(
        self,
        source: NodeName,
        router: Callable[[dict[str, Any]], list[dict[str, Any]]],
        worker: NodeName,
        join: NodeName,
    ) -> "StateGraph[StageT]":
        """Dispatch one worker run per item returned by router.

        The worker sees the merged state overlaid with its own item; its
        delta is merged like any other stage delta. All worker runs finish
        before join runs.

        Args:
            source: Node after which workers are dispatched
            router: Returns the list of per-worker inputs
            worker: Worker node ID
            join: Node where worker results converge

        Returns:
            Self for chaining
        """
        src = self._resolve(source, "add_map_edge source")
        worker_id = self._resolve(worker, "add_map_edge worker")
        join_id = self._resolve(join, "add_map_edge join")
        logger.debug(f"Added map edge: {src} -> {worker_id}* (join: {join_id})")
        return self._add_edge(
            Edge(
                source=src,
                edge_type=EdgeType.MAP,
                router=router,
                worker=worker_id,
                join=join_id,
            )
        )

    def set_entry_point(self, node_id: NodeName) -> "StateGraph[StageT]":
        """Set the entry point node."""
        self._entry_point = self._resolve(node_id, "set_entry_point")
        return self

    def set_finish_point(self, node_id: NodeName) -> "StateGraph[StageT]":
        """Set a node as finish point (adds edge to END)."""
        return self.add_edge(node_id, END)

    def compile(
        self,
        checkpointer: Optional["CheckpointerProtocol"] = None,
        **config_kwargs: Any,
    ) -> "CompiledGraph":
        """Validate the graph and return an executable form.

        Args:
            checkpointer: Default thread store for runs of this graph
            **config_kwargs: ExecutionConfig overrides (max_steps,
                stage_timeout, fan_out_concurrency, retry)

        Returns:
            Immutable CompiledGraph, invocable any number of times

        Raises:
            GraphDefinitionError: Listing every violation found
        """
        from switchboard.framework.engine import CompiledGraph, ExecutionConfig

        violations = self.validate()
        if violations:
            raise GraphDefinitionError(violations)

        logger.info(
            f"Compiled graph '{self._name}' ({len(self._nodes)} nodes, entry: {self._entry_point})"
        )
        return CompiledGraph(
            name=self._name,
            schema=self._schema,
            nodes=dict(self._nodes),
            edges=dict(self._edges),
            entry_point=self._entry_point or "",
            checkpointer=checkpointer,
            config=ExecutionConfig(**config_kwargs),
        )

    def validate(self) -> list[str]:
        """Validate graph structure.

        Returns:
            List of violation messages (empty if valid)
        """
        errors = list(self._violations)

        if not self._nodes:
            errors.append("Graph has no nodes")

        if not self._entry_point:
            errors.append("No entry point set")
        elif self._entry_point == START:
            if START not in self._edges:
                errors.append("Entry fans out from START but no fan-out edge is declared")
        elif self._entry_point not in self._nodes:
            errors.append(f"Entry point '{self._entry_point}' not found")

        def known(target: Optional[str]) -> bool:
            return target == END or target in self._nodes

        for source, edge in self._edges.items():
            if source != START and source not in self._nodes:
                errors.append(f"Edge source '{source}' not found")

            if edge.edge_type == EdgeType.NORMAL:
                if not known(edge.target):
                    errors.append(f"Edge target '{edge.target}' not found (from '{source}')")

            elif edge.edge_type == EdgeType.CONDITIONAL:
                for branch, target in edge.branches.items():
                    if not known(target):
                        errors.append(
                            f"Conditional target '{target}' not found (branch: {branch})"
                        )
                if edge.outputs is not None and not edge.unmapped_to_end:
                    missing = [o for o in edge.outputs if o not in edge.branches]
                    if missing:
                        errors.append(
                            f"Router for '{source}' can return {missing} "
                            f"with no matching edge"
                        )

            elif edge.edge_type == EdgeType.FAN_OUT:
                errors.extend(self._validate_fan_out(edge))

            elif edge.edge_type == EdgeType.MAP:
                for node_id in (edge.worker, edge.join):
                    if node_id not in self._nodes:
                        errors.append(f"Map edge node '{node_id}' not found (from '{source}')")
                worker_edge = self._edges.get(edge.worker or "")
                if edge.worker in self._nodes and (
                    worker_edge is None
                    or worker_edge.edge_type != EdgeType.NORMAL
                    or worker_edge.target != edge.join
                ):
                    errors.append(
                        f"Map worker '{edge.worker}' must have a normal edge to '{edge.join}'"
                    )

        for node_id in self._nodes:
            if node_id not in self._edges:
                errors.append(f"Node '{node_id}' has no outgoing edge")

        if self._entry_point and (
            self._entry_point in self._nodes or self._entry_point == START
        ):
            reachable = self._find_reachable()
            for node_id in self._nodes:
                if node_id not in reachable:
                    errors.append(f"Node '{node_id}' is unreachable")

        return errors

    def _validate_fan_out(self, edge: Edge) -> list[str]:
        errors = []
        if edge.join not in self._nodes:
            errors.append(f"Fan-out join '{edge.join}' not found (from '{edge.source}')")
            return errors

        for target in edge.targets:
            if target not in self._nodes:
                errors.append(f"Fan-out target '{target}' not found (from '{edge.source}')")
                continue
            # Walk the branch chain; it must reach the join through normal edges
            seen: set[str] = set()
            current: Optional[str] = target
            while current is not None and current != edge.join:
                if current in seen or current not in self._nodes:
                    current = None
                    break
                seen.add(current)
                next_edge = self._edges.get(current)
                if next_edge is None or next_edge.edge_type != EdgeType.NORMAL:
                    current = None
                    break
                current = next_edge.target
            if current != edge.join:
                errors.append(
                    f"Fan-out branch '{target}' does not lead to join '{edge.join}' "
                    f"through normal edges"
                )
        return errors

    def _find_reachable(self) -> set[str]:
        """Find all nodes reachable from entry point."""
        reachable: set[str] = set()
        to_visit = [self._entry_point or ""]

        while to_visit:
            node_id = to_visit.pop()
            if node_id in reachable or node_id == END:
                continue
            reachable.add(node_id)

            edge = self._edges.get(node_id)
            if edge is not None:
                to_visit.extend(edge.successors())

        return reachable


__all__ = [
    "StateGraph",
    "Node",
    "Edge",
    "EdgeType",
    "END",
    "START",
    "route_key",
    "declared_outputs",
]
