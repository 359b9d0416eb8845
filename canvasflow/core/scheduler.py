"""Dependency scheduler for workflow graph runs.

Tracks, for one run, which nodes are waiting, ready, running or terminal.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass

from canvasflow.core.graph_schema import NodeStatus, NodeType, WorkflowGraph

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.SKIPPED})


class SchedulerError(Exception):
    """Error in dependency scheduler."""

    pass


class CyclicDependencyError(SchedulerError):
    """Circular dependency detected in the workflow graph."""

    pass


class DependencyNotFoundError(SchedulerError):
    """An edge or data reference names a node that does not exist."""

    pass


class InternalSchedulingError(SchedulerError):
    """A run invariant was violated (a node ran before its dependencies finished,
    or a result was written twice). Always a bug, never a node failure."""

    pass


@dataclass
class DependencyEdge:
    """Represents a dependency relationship."""

    from_id: str  # The dependency (must reach a terminal state first)
    to_id: str  # The node that depends on from_id
    edge_type: str  # "edge" (drawn on the canvas) or "reference" (data reference)
    branch: str | None = None  # "true"/"false" for edges leaving a CONDITION node


class DependencyScheduler:
    """Release workflow nodes in dependency order.

    DEPENDENCY SEMANTICS:
    1. Edges: the edge source must reach a terminal state before the target
    2. Data references: a node reading another node's output (input sources,
       merge sources, output/memory source nodes) waits for that node too,
       even without an edge between them

    READINESS:
    When every dependency of a node is terminal, the node becomes READY if it
    has no incoming edges or at least one live incoming edge. Otherwise it is
    SKIPPED, and the skip propagates to its own dependents.

    An edge is live when its source COMPLETED (and, for a condition branch
    edge, the branch matches the condition result), or it is an untagged edge
    whose source FAILED while continue_on_error is on. A failed condition
    takes no branch, so its true/false edges are dead.

    Without continue_on_error, a node with a FAILED dependency is skipped.

    Example:
        input -> check (condition)
        check --true--> writer (agent)
        check --false--> fallback (assign)

        check completes with result False:
        fallback becomes READY, writer is SKIPPED
    """

    def __init__(self, workflow: WorkflowGraph, continue_on_error: bool = False):
        self.workflow = workflow
        self.continue_on_error = continue_on_error
        # Position in the node list; ready ties break on it
        self._order: dict[str, int] = {node.id: idx for idx, node in enumerate(workflow.nodes)}
        self._node_types: dict[str, NodeType] = {
            node.id: node.node_type for node in workflow.nodes
        }
        # Adjacency list: node -> list of nodes that depend on it
        self._dependents: dict[str, list[str]] = {}
        # Reverse: node -> list of its dependencies
        self._dependencies: dict[str, list[str]] = {}
        # Canvas edges into each node (liveness is decided on these)
        self._incoming: dict[str, list[DependencyEdge]] = {}
        self._remaining: dict[str, int] = {}
        self._status: dict[str, NodeStatus] = {}
        # Branch taken by each completed CONDITION node
        self._branches: dict[str, str] = {}
        self._ready: list[str] = []
        self._built = False

    def build(self) -> None:
        """Build the dependency graph and compute the initial ready set.

        Raises:
            CyclicDependencyError: If circular dependencies detected
            DependencyNotFoundError: If an edge names a node not in the graph
        """
        node_ids = list(self._order)
        self._dependents = {n: [] for n in node_ids}
        self._dependencies = {n: [] for n in node_ids}
        self._incoming = {n: [] for n in node_ids}
        self._status = {n: NodeStatus.PENDING for n in node_ids}
        self._branches = {}
        self._ready = []

        # Step 1: canvas edges
        for edge in self.workflow.edges:
            for endpoint in (edge.source, edge.target):
                if endpoint not in self._order:
                    raise DependencyNotFoundError(
                        f"Edge {edge.id} references node '{endpoint}' which doesn't exist"
                    )
            branch = None
            if self._node_types[edge.source] == NodeType.CONDITION and edge.branch:
                branch = edge.branch.value
            dep = DependencyEdge(edge.source, edge.target, "edge", branch)
            self._incoming[edge.target].append(dep)
            if edge.source not in self._dependencies[edge.target]:
                self._add_edge(dep)

        # Step 2: implicit data-reference dependencies
        for source, target in self.workflow.data_dependencies():
            if source not in self._dependencies[target]:
                self._add_edge(DependencyEdge(source, target, "reference"))

        # Step 3: validate - detect cycles using Kahn's algorithm
        self._validate_no_cycles()

        self._remaining = {n: len(deps) for n, deps in self._dependencies.items()}
        for node_id in node_ids:
            if self._remaining[node_id] == 0:
                self._status[node_id] = NodeStatus.READY
                self._ready.append(node_id)
        self._built = True

        logger.debug(
            f"Built schedule for workflow '{self.workflow.id}': "
            f"{len(node_ids)} nodes, "
            f"{sum(len(deps) for deps in self._dependencies.values())} dependencies, "
            f"{len(self._ready)} initially ready"
        )

    def _add_edge(self, edge: DependencyEdge) -> None:
        """Add a dependency edge: from_id must finish before to_id."""
        self._dependents[edge.from_id].append(edge.to_id)
        self._dependencies[edge.to_id].append(edge.from_id)

    def _validate_no_cycles(self) -> None:
        """Validate the graph has no cycles using Kahn's algorithm.

        Raises:
            CyclicDependencyError: If cycle detected, includes cycle members
        """
        in_degree = {node: len(deps) for node, deps in self._dependencies.items()}
        queue = deque(node for node, deg in in_degree.items() if deg == 0)
        visited = 0

        while queue:
            node = queue.popleft()
            visited += 1
            for dependent in self._dependents.get(node, []):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if visited != len(self._dependencies):
            cycle_members = [n for n, deg in in_degree.items() if deg > 0]
            raise CyclicDependencyError(
                f"Circular dependency detected among nodes: {sorted(cycle_members)}. "
                f"Check edges and data references for these nodes."
            )

    def _require_built(self) -> None:
        if not self._built:
            raise SchedulerError("build() must be called before scheduling")

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def pop_ready(self, limit: int | None = None) -> list[str]:
        """Take up to ``limit`` ready nodes (node-list order) and mark them RUNNING."""
        self._require_built()
        self._ready.sort(key=self._order.__getitem__)
        taken = self._ready if limit is None else self._ready[:limit]
        self._ready = self._ready[len(taken):]
        for node_id in taken:
            self._status[node_id] = NodeStatus.RUNNING
        return list(taken)

    def mark_finished(
        self, node_id: str, status: NodeStatus, output: dict | None = None
    ) -> list[str]:
        """Record a node's terminal state and release its dependents.

        Args:
            node_id: Node that finished
            status: COMPLETED, FAILED or SKIPPED
            output: The node's output (used to read CONDITION results)

        Returns:
            Ids of nodes skipped as a consequence, in the order they were skipped.

        Raises:
            InternalSchedulingError: If the node was not running or ready
        """
        self._require_built()
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {status}")
        current = self._status.get(node_id)
        if current not in (NodeStatus.READY, NodeStatus.RUNNING):
            raise InternalSchedulingError(
                f"Node '{node_id}' cannot finish from state "
                f"'{current.value if current else 'unknown'}'"
            )
        if node_id in self._ready:
            self._ready.remove(node_id)

        if (
            status == NodeStatus.COMPLETED
            and self._node_types[node_id] == NodeType.CONDITION
            and isinstance(output, dict)
            and "result" in output
        ):
            self._branches[node_id] = "true" if output["result"] else "false"

        self._status[node_id] = status
        skipped: list[str] = []
        self._release_dependents(node_id, skipped)
        if skipped:
            logger.debug(f"Skipped after '{node_id}' finished: {skipped}")
        return skipped

    def _release_dependents(self, node_id: str, skipped: list[str]) -> None:
        for dependent in self._dependents[node_id]:
            if self._status[dependent] != NodeStatus.PENDING:
                continue
            self._remaining[dependent] -= 1
            if self._remaining[dependent] > 0:
                continue
            if self._should_run(dependent):
                self._status[dependent] = NodeStatus.READY
                self._ready.append(dependent)
            else:
                self._status[dependent] = NodeStatus.SKIPPED
                skipped.append(dependent)
                self._release_dependents(dependent, skipped)

    def _should_run(self, node_id: str) -> bool:
        if not self.continue_on_error and any(
            self._status[dep] == NodeStatus.FAILED for dep in self._dependencies[node_id]
        ):
            return False
        incoming = self._incoming[node_id]
        if not incoming:
            return True
        return any(self.is_edge_live(edge) for edge in incoming)

    def is_edge_live(self, edge: DependencyEdge) -> bool:
        """Whether an edge carries control to its target."""
        status = self._status.get(edge.from_id)
        if status == NodeStatus.COMPLETED:
            return edge.branch is None or self._branches.get(edge.from_id) == edge.branch
        if status == NodeStatus.FAILED:
            # A failed condition takes no branch
            return self.continue_on_error and edge.branch is None
        return False

    def skip_remaining(self) -> list[str]:
        """Mark every PENDING or READY node SKIPPED (run halted or cancelled).

        Returns:
            Ids of the newly skipped nodes, in node-list order.
        """
        self._require_built()
        skipped = [
            node_id
            for node_id in self._order
            if self._status[node_id] in (NodeStatus.PENDING, NodeStatus.READY)
        ]
        for node_id in skipped:
            self._status[node_id] = NodeStatus.SKIPPED
        self._ready = []
        return skipped

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self, node_id: str) -> NodeStatus:
        return self._status[node_id]

    def statuses(self) -> dict[str, NodeStatus]:
        return dict(self._status)

    def has_ready(self) -> bool:
        return bool(self._ready)

    def is_finished(self) -> bool:
        """True when every node reached a terminal state."""
        return all(s in TERMINAL_STATUSES for s in self._status.values())

    def order_of(self, node_id: str) -> int:
        return self._order[node_id]

    def dependencies(self, node_id: str) -> list[str]:
        return list(self._dependencies.get(node_id, []))

    def upstream(self, node_id: str) -> list[str]:
        """Direct upstream nodes over canvas edges, in edge order."""
        seen: list[str] = []
        for edge in self._incoming.get(node_id, []):
            if edge.from_id not in seen:
                seen.append(edge.from_id)
        return seen
