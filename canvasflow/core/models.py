"""Data models for workflow runs.

Uses Pydantic for run options, node results and the execution report; plain
classes for the per-run mutable state (result store, run context, control).
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import ConfigDict, Field, field_validator

from canvasflow.core.graph_schema import NodeStatus, NodeType, SchemaModel, WorkflowGraph
from canvasflow.core.scheduler import TERMINAL_STATUSES, InternalSchedulingError
from canvasflow.core.utils import utc_now
from canvasflow.core.variables import VariableScope


class RunStatus(str, Enum):
    """Final status of a workflow run."""

    COMPLETED = "completed"  # Every node completed or was skipped by branching
    FAILED = "failed"  # At least one node failed
    CANCELLED = "cancelled"  # Stopped through RunControl.cancel()


class ExecutionOptions(SchemaModel):
    """Options for one run."""

    input: dict[str, Any] = Field(default_factory=dict)
    continue_on_error: bool = False
    logging: bool = True  # False: node lifecycle messages drop to DEBUG
    max_concurrent_nodes: int = Field(default=3, ge=1)
    node_timeout: float | None = Field(default=None, gt=0)  # Seconds, any node type
    agent_timeout: float | None = Field(default=None, gt=0)  # Seconds per agent call
    retry_on_failure: bool = False
    max_retries: int = Field(default=0, ge=0)


class NodeResult(SchemaModel):
    """Terminal result of one node. Immutable once written."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    node_type: NodeType
    status: NodeStatus
    output: dict[str, Any] | None = None
    error: str | None = None
    input: dict[str, Any] | None = None
    attempts: int = 0
    skip_reason: str | None = None
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime = Field(default_factory=utc_now)

    @field_validator("status")
    @classmethod
    def require_terminal_status(cls, v):
        if v not in TERMINAL_STATUSES:
            raise ValueError(f"NodeResult status must be terminal, got '{v.value}'")
        return v

    @property
    def duration(self) -> float:
        """Seconds between start and finish."""
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def succeeded(self) -> bool:
        return self.status == NodeStatus.COMPLETED


class ExecutionReport(SchemaModel):
    """Outcome of a workflow run."""

    run_id: str
    workflow_id: str
    status: RunStatus
    node_results: list[NodeResult] = Field(default_factory=list)  # Node-list order
    outputs: dict[str, Any] = Field(default_factory=dict)  # Collected by OUTPUT nodes
    variables: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    started_at: datetime
    finished_at: datetime

    @property
    def success(self) -> bool:
        return self.status == RunStatus.COMPLETED

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def get_result(self, node_id: str) -> NodeResult | None:
        for result in self.node_results:
            if result.node_id == node_id:
                return result
        return None

    def statuses(self) -> dict[str, NodeStatus]:
        return {r.node_id: r.status for r in self.node_results}

    def nodes_with_status(self, status: NodeStatus) -> list[str]:
        return [r.node_id for r in self.node_results if r.status == status]


class ResultStore:
    """Append-only store of node results for one run."""

    def __init__(self) -> None:
        self._results: dict[str, NodeResult] = {}

    def record(self, result: NodeResult) -> None:
        """Store a result.

        Raises:
            InternalSchedulingError: If the node already has a result
        """
        if result.node_id in self._results:
            raise InternalSchedulingError(
                f"Result for node '{result.node_id}' was already recorded"
            )
        self._results[result.node_id] = result

    def get(self, node_id: str) -> NodeResult | None:
        return self._results.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._results

    def __len__(self) -> int:
        return len(self._results)

    def values(self) -> list[NodeResult]:
        return list(self._results.values())

    def completed_outputs(self) -> dict[str, dict[str, Any]]:
        """Outputs of COMPLETED nodes, keyed by node id."""
        return {
            node_id: result.output
            for node_id, result in self._results.items()
            if result.status == NodeStatus.COMPLETED and result.output is not None
        }


class RunControl:
    """Cancel, pause and resume a run from outside the orchestrator loop.

    Cancel and pause only stop new nodes from starting; nodes already
    running finish normally.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._resumed = asyncio.Event()
        self._resumed.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def paused(self) -> bool:
        return not self._resumed.is_set()

    def cancel(self) -> None:
        self._cancelled = True
        self._resumed.set()

    def pause(self) -> None:
        if not self._cancelled:
            self._resumed.clear()

    def resume(self) -> None:
        self._resumed.set()

    async def wait_resumed(self) -> None:
        await self._resumed.wait()


def _new_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:12]}"


@dataclass
class RunContext:
    """Mutable state of one run; created fresh for every execution."""

    workflow: WorkflowGraph
    options: ExecutionOptions
    control: RunControl = field(default_factory=RunControl)
    run_id: str = field(default_factory=_new_run_id)
    results: ResultStore = field(default_factory=ResultStore)
    variables: dict[str, Any] = field(default_factory=dict)
    memories: dict[str, str] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utc_now)

    def scope(self, inputs: dict[str, Any] | None = None) -> VariableScope:
        """Names visible to ``${}`` references, seen from a node's input bag."""
        return VariableScope(
            inputs=inputs or {},
            outputs=self.results.completed_outputs(),
            variables={**self.memories, **self.variables},
            workflow_input=self.options.input,
        )
